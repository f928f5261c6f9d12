from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import TypeVar

from buybackbot.adapters.dex import LiquidityProvider, SwapProvider, TokenBurner
from buybackbot.domain.amounts import (
    apply_slippage,
    calculate_bps,
    format_sol,
    format_token_amount,
    percentage_of,
)
from buybackbot.domain.models import (
    AllocationConfig,
    AllocationPlan,
    CycleResult,
    CycleStatus,
    ExecutionReport,
    FeeEvent,
    LiquidityParams,
    ReportStatus,
    SwapParams,
    TransactionKind,
    TransactionRecord,
)
from buybackbot.logging_context import epoch_context, mark_cycle_step
from buybackbot.risk.circuit_breaker import CircuitBreaker
from buybackbot.risk.manager import RiskManager, SwapCheck
from buybackbot.services.errors import (
    CircuitOpenError,
    CycleError,
    CycleStep,
    CycleStepError,
    LiquidityRejectedError,
    PlanRejectedError,
    SwapRejectedError,
)
from buybackbot.services.fee_sources import FeeSource
from buybackbot.services.planner import build_allocation_plan, burn_amount_for, sum_native_fees
from buybackbot.services.report_writer import ReportWriter

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _CycleProgress:
    epoch_id: int
    started_at: datetime
    step: CycleStep = CycleStep.FETCH_FEES
    fees: list[FeeEvent] = field(default_factory=list)
    plan: AllocationPlan | None = None
    transactions: list[TransactionRecord] = field(default_factory=list)
    report_written: bool = False


class ExecutionOrchestrator:
    """Runs one epoch cycle end to end.

    Order: breaker gate, interval gate, fee fetch, plan, plan validation,
    buyback (+ burn), liquidity add, report, fee acknowledgment. Fees are only
    acknowledged after every earlier step succeeded, so a failed cycle leaves
    them pending for the next one (at-least-once processing).
    """

    def __init__(
        self,
        *,
        fee_source: FeeSource,
        swap_provider: SwapProvider,
        liquidity_provider: LiquidityProvider,
        token_burner: TokenBurner,
        risk_manager: RiskManager,
        circuit_breaker: CircuitBreaker,
        report_writer: ReportWriter,
        allocation: AllocationConfig,
        native_asset: str,
        target_asset: str,
        owner_credential: str | None = None,
        dry_run: bool = True,
        swap_slippage_bps: int = 300,
        token_decimals: int = 9,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        if not dry_run and not owner_credential:
            raise ValueError("owner_credential is required when dry_run is disabled")
        self.fee_source = fee_source
        self.swap_provider = swap_provider
        self.liquidity_provider = liquidity_provider
        self.token_burner = token_burner
        self.risk_manager = risk_manager
        self.circuit_breaker = circuit_breaker
        self.report_writer = report_writer
        self.allocation = allocation
        self.native_asset = native_asset
        self.target_asset = target_asset
        self.owner_credential = owner_credential
        self.dry_run = dry_run
        self.swap_slippage_bps = swap_slippage_bps
        self.token_decimals = token_decimals
        self.now_provider = now_provider or (lambda: datetime.now(UTC))

    def run_cycle(self, epoch_id: int) -> CycleResult:
        with epoch_context(epoch_id):
            if not self.circuit_breaker.can_execute():
                logger.error(
                    "cycle_refused_circuit_open",
                    extra={"extra": {"epoch_id": epoch_id}},
                )
                raise CircuitOpenError("Circuit breaker is open")

            if not self.risk_manager.can_execute_now():
                wait = self.risk_manager.time_until_next_execution()
                logger.info(
                    "cycle_skipped",
                    extra={
                        "extra": {
                            "epoch_id": epoch_id,
                            "reason": "min_interval_not_elapsed",
                            "seconds_remaining": int(wait.total_seconds()),
                        }
                    },
                )
                return CycleResult(
                    epoch_id=epoch_id,
                    status=CycleStatus.SKIPPED,
                    reason="min_interval_not_elapsed",
                )

            progress = _CycleProgress(epoch_id=epoch_id, started_at=self.now_provider())
            try:
                result = self._run_steps(progress)
            except Exception as exc:
                self.circuit_breaker.record_failure()
                self._write_failure_report(progress, exc)
                logger.exception(
                    "cycle_failed",
                    extra={
                        "extra": {
                            "epoch_id": epoch_id,
                            "failed_step": progress.step.value,
                            "transactions_completed": len(progress.transactions),
                        }
                    },
                )
                raise

            if result.status == CycleStatus.COMPLETED:
                self.risk_manager.record_execution()
                self.circuit_breaker.record_success()
                logger.info(
                    "cycle_completed",
                    extra={
                        "extra": {
                            "epoch_id": epoch_id,
                            "dry_run": self.dry_run,
                            "transactions": len(progress.transactions),
                        }
                    },
                )
            return result

    def _enter_step(self, progress: _CycleProgress, step: CycleStep) -> None:
        progress.step = step
        mark_cycle_step(step.value)

    def _call(self, progress: _CycleProgress, step: CycleStep, fn: Callable[..., T], *args) -> T:
        self._enter_step(progress, step)
        try:
            return fn(*args)
        except CycleError:
            raise
        except Exception as exc:
            raise CycleStepError(step, exc) from exc

    def _run_steps(self, progress: _CycleProgress) -> CycleResult:
        fees = self._call(progress, CycleStep.FETCH_FEES, self.fee_source.get_available_fees)
        if not fees:
            logger.info(
                "cycle_skipped",
                extra={"extra": {"epoch_id": progress.epoch_id, "reason": "no_fees"}},
            )
            return CycleResult(
                epoch_id=progress.epoch_id, status=CycleStatus.SKIPPED, reason="no_fees"
            )
        progress.fees = list(fees)

        total, ignored = sum_native_fees(progress.fees, self.native_asset)
        for fee in ignored:
            # no conversion path yet: kept in the report, left out of the total
            logger.warning(
                "non_native_fee_ignored",
                extra={"extra": {"asset_id": fee.asset_id, "amount": str(fee.amount)}},
            )

        plan = build_allocation_plan(total, self.allocation)
        progress.plan = plan
        logger.info(
            "execution_plan_built",
            extra={
                "extra": {
                    "fee_count": len(progress.fees),
                    "ignored_fee_count": len(ignored),
                    **{key: str(value) for key, value in plan.as_display().items()},
                }
            },
        )

        self._enter_step(progress, CycleStep.VALIDATE_PLAN)
        validation = self.risk_manager.validate_plan(plan)
        if not validation.valid:
            raise PlanRejectedError(validation.reason or "plan rejected")

        if self.dry_run:
            self._log_dry_run(plan)
        else:
            retained_tokens = 0
            if plan.buyback_amount > 0:
                retained_tokens = self._execute_buyback(progress, plan)
            if plan.add_liquidity_amount > 0:
                self._execute_add_liquidity(progress, plan, retained_tokens)

        report = self._build_report(progress, status=ReportStatus.COMPLETED)
        self._call(progress, CycleStep.WRITE_REPORT, self.report_writer.write_report, report)
        progress.report_written = True
        self._call(
            progress, CycleStep.ACKNOWLEDGE, self.fee_source.acknowledge_fees, progress.fees
        )
        return CycleResult(
            epoch_id=progress.epoch_id,
            status=CycleStatus.COMPLETED,
            plan=plan,
            report=report,
        )

    def _execute_buyback(self, progress: _CycleProgress, plan: AllocationPlan) -> int:
        """Swap, then burn the configured share; returns the bought tokens left unburned."""
        params = SwapParams(
            input_asset=self.native_asset,
            output_asset=self.target_asset,
            amount_in=plan.buyback_amount,
            max_slippage_bps=self.swap_slippage_bps,
        )
        quote = self._call(progress, CycleStep.QUOTE, self.swap_provider.get_quote, params)
        min_output = apply_slippage(quote.output_amount, self.swap_slippage_bps)
        check = self.risk_manager.validate_swap(
            SwapCheck(
                input_amount=params.amount_in,
                expected_output=quote.output_amount,
                min_output_amount=min_output,
                actual_slippage_bps=self.swap_slippage_bps,
                price_impact_bps=quote.price_impact_bps,
            )
        )
        if not check.valid:
            raise SwapRejectedError(check.reason or "swap rejected")

        result = self._call(
            progress,
            CycleStep.SWAP,
            self.swap_provider.swap,
            replace(params, min_output_amount=min_output),
        )
        realized_slippage_bps = (
            calculate_bps(quote.output_amount, result.amount_out)
            if result.amount_out < quote.output_amount
            else 0
        )
        progress.transactions.append(
            TransactionRecord(
                kind=TransactionKind.BUYBACK,
                reference=result.reference,
                details={
                    "amount_in": result.amount_in,
                    "amount_out": result.amount_out,
                    "price_impact_bps": result.price_impact_bps,
                    "realized_slippage_bps": realized_slippage_bps,
                },
            )
        )

        burn_amount = burn_amount_for(result.amount_out, self.allocation)
        if burn_amount > 0:
            logger.info("burn_started", extra={"extra": {"amount": str(burn_amount)}})
            reference = self._call(
                progress,
                CycleStep.BURN,
                self.token_burner.burn,
                self.owner_credential,
                self.target_asset,
                burn_amount,
            )
            progress.transactions.append(
                TransactionRecord(
                    kind=TransactionKind.BURN,
                    reference=reference,
                    details={"amount": burn_amount, "asset_id": self.target_asset},
                )
            )
        return result.amount_out - burn_amount

    def _execute_add_liquidity(
        self, progress: _CycleProgress, plan: AllocationPlan, token_amount: int
    ) -> None:
        pool_liquidity = self._call(
            progress,
            CycleStep.ADD_LIQUIDITY,
            self.liquidity_provider.get_pool_liquidity,
            self.target_asset,
            self.native_asset,
        )
        if pool_liquidity is not None:
            check = self.risk_manager.validate_liquidity(pool_liquidity)
            if not check.valid:
                raise LiquidityRejectedError(check.reason or "liquidity rejected")

        result = self._call(
            progress,
            CycleStep.ADD_LIQUIDITY,
            self.liquidity_provider.add_liquidity,
            LiquidityParams(
                token_asset=self.target_asset,
                quote_asset=self.native_asset,
                token_amount=token_amount,
                quote_amount=plan.add_liquidity_amount,
                max_slippage_bps=self.swap_slippage_bps,
            ),
        )
        progress.transactions.append(
            TransactionRecord(
                kind=TransactionKind.ADD_LIQUIDITY,
                reference=result.reference,
                details={
                    "token_amount": result.token_amount,
                    "quote_amount": result.quote_amount,
                    "lp_tokens_received": result.lp_tokens_received,
                },
            )
        )

    def _log_dry_run(self, plan: AllocationPlan) -> None:
        if plan.buyback_amount > 0:
            logger.info(
                "dry_run_buyback_skipped",
                extra={
                    "extra": {
                        "amount_sol": format_sol(plan.buyback_amount),
                        "burn_pct_of_buyback": str(self.allocation.burn_pct_of_buyback),
                    }
                },
            )
        if plan.add_liquidity_amount > 0:
            logger.info(
                "dry_run_add_liquidity_skipped",
                extra={"extra": {"amount_sol": format_sol(plan.add_liquidity_amount)}},
            )

    def _build_report(
        self,
        progress: _CycleProgress,
        *,
        status: ReportStatus,
        error: BaseException | None = None,
    ) -> ExecutionReport:
        plan = progress.plan or AllocationPlan(0, 0, 0, 0)
        failed_step = progress.step.value if status == ReportStatus.FAILED else None
        error_text = f"{type(error).__name__}: {error}" if error is not None else None
        return ExecutionReport(
            epoch_id=progress.epoch_id,
            timestamp=progress.started_at,
            dry_run=self.dry_run,
            fees=tuple(progress.fees),
            plan=plan,
            transactions=tuple(progress.transactions),
            summary=self._summary(
                progress.epoch_id,
                plan,
                progress.transactions,
                failed_step=failed_step,
                error=error_text,
            ),
            status=status,
            failed_step=failed_step,
            error=error_text,
        )

    def _write_failure_report(self, progress: _CycleProgress, exc: BaseException) -> None:
        if progress.plan is None:
            return
        if progress.step == CycleStep.WRITE_REPORT:
            return
        report = self._build_report(progress, status=ReportStatus.FAILED, error=exc)
        try:
            self.report_writer.write_report(report)
        except Exception:  # noqa: BLE001
            logger.warning(
                "failure_report_write_failed",
                extra={"extra": {"epoch_id": progress.epoch_id}},
                exc_info=True,
            )

    def _summary(
        self,
        epoch_id: int,
        plan: AllocationPlan,
        transactions: list[TransactionRecord],
        *,
        failed_step: str | None = None,
        error: str | None = None,
    ) -> str:
        burned_worth = percentage_of(plan.buyback_amount, self.allocation.burn_pct_of_buyback)
        bought = sum(
            int(tx.details.get("amount_out", 0))
            for tx in transactions
            if tx.kind == TransactionKind.BUYBACK
        )
        burned = sum(
            int(tx.details.get("amount", 0))
            for tx in transactions
            if tx.kind == TransactionKind.BURN
        )
        lines = [
            f"Epoch {epoch_id}",
            "",
            f"Fees: {format_sol(plan.total_amount)} SOL",
            f"Buyback: {format_sol(plan.buyback_amount)} SOL",
            f"Burned: {format_sol(burned_worth)} SOL worth",
            f"LP Added: {format_sol(plan.add_liquidity_amount)} SOL",
            f"Treasury: {format_sol(plan.treasury_amount)} SOL",
            f"Transactions: {len(transactions)}",
        ]
        if bought:
            lines.append(f"Tokens Bought: {format_token_amount(bought, self.token_decimals)}")
        if burned:
            lines.append(f"Tokens Burned: {format_token_amount(burned, self.token_decimals)}")
        lines += ["", "DRY RUN" if self.dry_run else "LIVE"]
        if failed_step is not None:
            lines.append(f"FAILED at {failed_step}: {error}")
        return "\n".join(lines)
