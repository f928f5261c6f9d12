from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path

import pytest

from buybackbot.adapters.dex import MockLiquidityProvider, MockSwapProvider, MockTokenBurner
from buybackbot.config import Settings
from buybackbot.domain.models import NATIVE_SOL_MINT, AllocationConfig, FeeEvent
from buybackbot.risk.circuit_breaker import CircuitBreaker, CircuitBreakerOptions
from buybackbot.risk.manager import RiskManager, RiskParameters
from buybackbot.services.fee_sources import InMemoryFeeSource
from buybackbot.services.orchestrator import ExecutionOrchestrator
from buybackbot.services.report_writer import ReportWriter

TARGET_MINT = "TokenMint1111111111111111111111111111111111"


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    settings_env_keys: set[str] = set()
    for field in Settings.model_fields.values():
        if isinstance(field.alias, str):
            settings_env_keys.add(field.alias)

    for key in list(os.environ):
        if key in settings_env_keys:
            monkeypatch.delenv(key, raising=False)

    yield

    Settings.model_config["env_file"] = original_env_file


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def make_fee(amount: int, ref: str, *, asset_id: str = NATIVE_SOL_MINT) -> FeeEvent:
    return FeeEvent(
        amount=amount,
        asset_id=asset_id,
        observed_at=datetime(2024, 1, 1, tzinfo=UTC),
        source_ref=ref,
    )


def default_risk_parameters(**overrides: object) -> RiskParameters:
    values: dict[str, object] = {
        "max_budget_per_epoch": 1_000_000_000,
        "min_interval_seconds": 900,
        "max_slippage_bps": 300,
        "max_price_impact_bps": 500,
        "min_liquidity_threshold": 10_000_000_000,
    }
    values.update(overrides)
    return RiskParameters(**values)  # type: ignore[arg-type]


class Harness:
    """Orchestrator wired to in-memory collaborators for one test."""

    def __init__(
        self,
        *,
        reports_dir: Path,
        clock: FakeClock,
        dry_run: bool = True,
        allocation: AllocationConfig | None = None,
        risk_parameters: RiskParameters | None = None,
        failure_threshold: int = 3,
        breaker_timeout_seconds: float = 3600,
        swap_provider: MockSwapProvider | None = None,
        liquidity_provider: MockLiquidityProvider | None = None,
        token_burner: MockTokenBurner | None = None,
    ) -> None:
        self.clock = clock
        self.fee_source = InMemoryFeeSource(now_provider=clock)
        self.fee_source.initialize()
        self.swap_provider = swap_provider or MockSwapProvider()
        self.swap_provider.initialize()
        self.liquidity_provider = liquidity_provider or MockLiquidityProvider()
        self.liquidity_provider.initialize()
        self.token_burner = token_burner or MockTokenBurner()
        self.risk_manager = RiskManager(
            risk_parameters or default_risk_parameters(), now_provider=clock
        )
        self.circuit_breaker = CircuitBreaker(
            CircuitBreakerOptions(
                failure_threshold=failure_threshold,
                timeout_seconds=breaker_timeout_seconds,
            ),
            now_provider=clock,
        )
        self.report_writer = ReportWriter(reports_dir, now_provider=clock)
        self.orchestrator = ExecutionOrchestrator(
            fee_source=self.fee_source,
            swap_provider=self.swap_provider,
            liquidity_provider=self.liquidity_provider,
            token_burner=self.token_burner,
            risk_manager=self.risk_manager,
            circuit_breaker=self.circuit_breaker,
            report_writer=self.report_writer,
            allocation=allocation
            or AllocationConfig(
                buyback_pct=Decimal("60"),
                add_liquidity_pct=Decimal("40"),
                burn_pct_of_buyback=Decimal("25"),
            ),
            native_asset=NATIVE_SOL_MINT,
            target_asset=TARGET_MINT,
            owner_credential=None if dry_run else "operator-key",
            dry_run=dry_run,
            swap_slippage_bps=300,
            now_provider=clock,
        )

    def report_files(self) -> list[Path]:
        return self.report_writer.list_reports()


@pytest.fixture
def harness_factory(tmp_path: Path, clock: FakeClock):
    def _build(**kwargs: object) -> Harness:
        reports_dir = tmp_path / "reports"
        return Harness(reports_dir=reports_dir, clock=clock, **kwargs)  # type: ignore[arg-type]

    return _build


@pytest.fixture
def fee_factory():
    return make_fee
