from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum, StrEnum

from buybackbot.domain.amounts import MAX_U64, lamports_to_sol, to_decimal

NATIVE_SOL_MINT = "So11111111111111111111111111111111111111112"

_ALLOCATION_SUM_TOLERANCE = Decimal("0.01")


def stable_hash_payload(payload: object) -> str:
    def _default(value: object) -> str:
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, datetime):
            return value.astimezone(UTC).isoformat()
        if isinstance(value, Enum):
            return value.value
        raise TypeError(f"Unsupported stable hash payload type: {type(value).__name__}")

    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=_default)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class FeeEvent:
    """A single observed inbound fee payment, in the asset's smallest unit."""

    amount: int
    asset_id: str
    observed_at: datetime
    source_ref: str | None = None
    metadata: Mapping[str, object] | None = None

    def __post_init__(self) -> None:
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise TypeError("FeeEvent.amount must be an int")
        if self.amount < 0 or self.amount > MAX_U64:
            raise ValueError(f"FeeEvent.amount out of u64 range: {self.amount}")
        if not self.asset_id:
            raise ValueError("FeeEvent.asset_id must be non-empty")
        if self.observed_at.tzinfo is None:
            object.__setattr__(self, "observed_at", self.observed_at.replace(tzinfo=UTC))
        if self.metadata is not None:
            object.__setattr__(self, "metadata", dict(self.metadata))

    @property
    def fee_key(self) -> str:
        if self.source_ref:
            return self.source_ref
        return stable_hash_payload(
            {
                "amount": str(self.amount),
                "asset_id": self.asset_id,
                "observed_at": self.observed_at,
            }
        )[:32]

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "amount": str(self.amount),
            "asset_id": self.asset_id,
            "observed_at": self.observed_at.astimezone(UTC).isoformat(),
        }
        if self.source_ref is not None:
            payload["source_ref"] = self.source_ref
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload


@dataclass(frozen=True)
class AllocationConfig:
    buyback_pct: Decimal
    add_liquidity_pct: Decimal
    treasury_pct: Decimal = Decimal("0")
    burn_pct_of_buyback: Decimal = Decimal("0")

    def __post_init__(self) -> None:
        for name in ("buyback_pct", "add_liquidity_pct", "treasury_pct", "burn_pct_of_buyback"):
            value = to_decimal(getattr(self, name))
            if value < 0 or value > 100:
                raise ValueError(f"{name} must be within [0, 100], got {value}")
            object.__setattr__(self, name, value)
        total = self.buyback_pct + self.add_liquidity_pct + self.treasury_pct
        if abs(total - Decimal(100)) > _ALLOCATION_SUM_TOLERANCE:
            raise ValueError(
                "Fee allocation must sum to 100%. "
                f"Got: {total}% (buyback: {self.buyback_pct}%, "
                f"add_lp: {self.add_liquidity_pct}%, treasury: {self.treasury_pct}%)"
            )


@dataclass(frozen=True)
class AllocationPlan:
    """Split of one cycle's native fee total, all in lamports."""

    buyback_amount: int
    add_liquidity_amount: int
    treasury_amount: int
    total_amount: int

    @property
    def rounding_remainder(self) -> int:
        return self.total_amount - (
            self.buyback_amount + self.add_liquidity_amount + self.treasury_amount
        )

    def as_display(self) -> dict[str, Decimal]:
        return {
            "buyback_sol": lamports_to_sol(self.buyback_amount),
            "add_liquidity_sol": lamports_to_sol(self.add_liquidity_amount),
            "treasury_sol": lamports_to_sol(self.treasury_amount),
            "total_sol": lamports_to_sol(self.total_amount),
        }

    def to_payload(self) -> dict[str, object]:
        return {
            "buyback_amount": self.buyback_amount,
            "add_liquidity_amount": self.add_liquidity_amount,
            "treasury_amount": self.treasury_amount,
            "total_amount": self.total_amount,
        }


class TransactionKind(StrEnum):
    BUYBACK = "buyback"
    BURN = "burn"
    ADD_LIQUIDITY = "add_liquidity"


@dataclass(frozen=True)
class TransactionRecord:
    kind: TransactionKind
    reference: str
    details: Mapping[str, object] = field(default_factory=dict)

    def to_payload(self) -> dict[str, object]:
        return {"type": self.kind.value, "reference": self.reference, **dict(self.details)}


@dataclass(frozen=True)
class SwapParams:
    input_asset: str
    output_asset: str
    amount_in: int
    max_slippage_bps: int
    min_output_amount: int | None = None


@dataclass(frozen=True)
class SwapQuote:
    output_amount: int
    price_impact_bps: int
    fee: int


@dataclass(frozen=True)
class SwapResult:
    reference: str
    amount_in: int
    amount_out: int
    price_impact_bps: int


@dataclass(frozen=True)
class LiquidityParams:
    token_asset: str
    quote_asset: str
    token_amount: int
    quote_amount: int
    max_slippage_bps: int | None = None


@dataclass(frozen=True)
class LiquidityResult:
    reference: str
    token_amount: int
    quote_amount: int
    lp_tokens_received: int


class ReportStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ExecutionReport:
    epoch_id: int
    timestamp: datetime
    dry_run: bool
    fees: tuple[FeeEvent, ...]
    plan: AllocationPlan
    transactions: tuple[TransactionRecord, ...]
    summary: str
    status: ReportStatus = ReportStatus.COMPLETED
    failed_step: str | None = None
    error: str | None = None

    def hashed_fields(self) -> dict[str, object]:
        return {
            "epoch_id": self.epoch_id,
            "timestamp": self.timestamp.astimezone(UTC).isoformat(),
            "fees": [fee.to_payload() for fee in self.fees],
            "plan": self.plan.to_payload(),
            "transactions": [tx.to_payload() for tx in self.transactions],
        }

    def to_payload(self) -> dict[str, object]:
        payload = self.hashed_fields()
        payload.update(
            {
                "dry_run": self.dry_run,
                "summary": self.summary,
                "status": self.status.value,
                "failed_step": self.failed_step,
                "error": self.error,
            }
        )
        return payload


class CycleStatus(StrEnum):
    COMPLETED = "completed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class CycleResult:
    epoch_id: int
    status: CycleStatus
    reason: str | None = None
    plan: AllocationPlan | None = None
    report: ExecutionReport | None = None

    @property
    def skipped(self) -> bool:
        return self.status == CycleStatus.SKIPPED
