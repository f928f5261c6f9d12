from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import pytest
from pydantic import ValidationError

from buybackbot.config import Settings


def test_defaults_are_safe() -> None:
    settings = Settings()

    assert settings.dry_run is True
    assert settings.fee_source_type == "mock"
    assert settings.epoch_interval_seconds == 1800
    assert settings.allocation_config().buyback_pct == Decimal("60")
    assert settings.risk_parameters().max_budget_per_epoch == 1_000_000_000
    assert settings.circuit_breaker_options().failure_threshold == 3


def test_reads_environment_aliases(monkeypatch) -> None:
    monkeypatch.setenv("BUYBACK_PCT", "50")
    monkeypatch.setenv("ADD_LP_PCT", "30")
    monkeypatch.setenv("TREASURY_PCT", "20")
    monkeypatch.setenv("MAX_BUDGET_PER_EPOCH_SOL", "2.5")
    monkeypatch.setenv("EPOCH_INTERVAL_SECONDS", "30")

    settings = Settings()

    allocation = settings.allocation_config()
    assert (allocation.buyback_pct, allocation.add_liquidity_pct, allocation.treasury_pct) == (
        Decimal("50"),
        Decimal("30"),
        Decimal("20"),
    )
    assert settings.risk_parameters().max_budget_per_epoch == 2_500_000_000
    assert settings.epoch_interval_seconds == 30


def test_allocation_must_sum_to_hundred() -> None:
    with pytest.raises(ValidationError, match="must sum to 100%"):
        Settings(BUYBACK_PCT="70", ADD_LP_PCT="40")


def test_allocation_sum_within_tolerance_is_accepted() -> None:
    settings = Settings(BUYBACK_PCT="60.005", ADD_LP_PCT="40")

    assert settings.buyback_pct == Decimal("60.005")


@pytest.mark.parametrize(
    "overrides",
    [
        {"EPOCH_INTERVAL_SECONDS": "0"},
        {"MAX_SLIPPAGE_BPS": "0"},
        {"MAX_PRICE_IMPACT_BPS": "10001"},
        {"MAX_BUDGET_PER_EPOCH_SOL": "0"},
        {"CIRCUIT_BREAKER_FAILURE_THRESHOLD": "0"},
        {"BURN_PCT_OF_BUYBACK": "101"},
        {"FEE_SOURCE_TYPE": "carrier-pigeon"},
        {"TOKEN_DECIMALS": "19"},
    ],
)
def test_rejects_out_of_range_values(overrides: dict[str, str]) -> None:
    with pytest.raises(ValidationError):
        Settings(**overrides)


def test_api_source_requires_url() -> None:
    with pytest.raises(ValidationError, match="FEE_API_URL"):
        Settings(FEE_SOURCE_TYPE="api")


def test_live_mode_requires_mint_and_credential() -> None:
    with pytest.raises(ValidationError, match="TOKEN_MINT_ADDRESS"):
        Settings(DRY_RUN="false")
    with pytest.raises(ValidationError, match="OPERATOR_CREDENTIAL"):
        Settings(DRY_RUN="false", TOKEN_MINT_ADDRESS="Mint111")

    settings = Settings(DRY_RUN="false", TOKEN_MINT_ADDRESS="Mint111", OPERATOR_CREDENTIAL="k")
    assert settings.target_asset_id() == "Mint111"
    assert settings.operator_credential is not None
    assert "k" not in repr(settings.operator_credential)


def test_loads_values_from_env_file(monkeypatch, tmp_path: Path) -> None:
    (tmp_path / ".env").write_text(
        "\n".join(["EPOCH_INTERVAL_SECONDS=120", "REPORTS_DIR=./out"]) + "\n",
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)

    settings = Settings(_env_file=".env")

    assert settings.epoch_interval_seconds == 120
    assert settings.reports_dir == "./out"
