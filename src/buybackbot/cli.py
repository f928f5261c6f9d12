from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from dataclasses import dataclass
from uuid import uuid4

from pydantic import ValidationError

from buybackbot.config import Settings
from buybackbot.domain.amounts import format_sol
from buybackbot.logging_context import run_context
from buybackbot.logging_utils import setup_logging
from buybackbot.risk.circuit_breaker import CircuitBreaker
from buybackbot.risk.manager import RiskManager
from buybackbot.security.redaction import redact_data
from buybackbot.services.component_factory import DexComponents, build_dex, build_fee_source
from buybackbot.services.errors import ConfigurationError
from buybackbot.services.fee_sources import FeeSource
from buybackbot.services.orchestrator import ExecutionOrchestrator
from buybackbot.services.report_writer import ReportWriter, verify_report
from buybackbot.services.scheduler import EpochOutcome, EpochScheduler, OutcomeStatus

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    fee_source: FeeSource
    dex: DexComponents
    report_writer: ReportWriter
    orchestrator: ExecutionOrchestrator

    def initialize(self) -> None:
        self.fee_source.initialize()
        self.dex.swap_provider.initialize()
        self.dex.liquidity_provider.initialize()

    def shutdown(self) -> None:
        for component in (
            self.fee_source,
            self.dex.swap_provider,
            self.dex.liquidity_provider,
        ):
            try:
                component.shutdown()
            except Exception:  # noqa: BLE001
                logger.warning(
                    "component_shutdown_failed",
                    extra={"extra": {"component": type(component).__name__}},
                    exc_info=True,
                )


def build_runtime(settings: Settings, *, force_dry_run: bool = False) -> Runtime:
    dry_run = settings.dry_run or force_dry_run
    if settings.fee_source_type == "webhook":
        # The CLI process has no HTTP ingress, so a webhook queue would never fill.
        raise ConfigurationError(
            "FEE_SOURCE_TYPE=webhook needs an embedding HTTP server; use 'api' or 'mock'"
        )
    fee_source = build_fee_source(settings)
    dex = build_dex(settings)
    report_writer = ReportWriter(settings.reports_dir)
    credential = (
        settings.operator_credential.get_secret_value()
        if settings.operator_credential is not None
        else None
    )
    orchestrator = ExecutionOrchestrator(
        fee_source=fee_source,
        swap_provider=dex.swap_provider,
        liquidity_provider=dex.liquidity_provider,
        token_burner=dex.token_burner,
        risk_manager=RiskManager(settings.risk_parameters()),
        circuit_breaker=CircuitBreaker(settings.circuit_breaker_options()),
        report_writer=report_writer,
        allocation=settings.allocation_config(),
        native_asset=settings.native_asset_id,
        target_asset=settings.target_asset_id(),
        owner_credential=credential,
        dry_run=dry_run,
        swap_slippage_bps=settings.swap_slippage_bps,
        token_decimals=settings.token_decimals,
    )
    return Runtime(
        settings=settings,
        fee_source=fee_source,
        dex=dex,
        report_writer=report_writer,
        orchestrator=orchestrator,
    )


def _outcome_payload(outcome: EpochOutcome) -> dict[str, object]:
    payload: dict[str, object] = {"status": outcome.status.value, "epoch_id": outcome.epoch_id}
    if outcome.result is not None:
        payload["reason"] = outcome.result.reason
        if outcome.result.plan is not None:
            payload["plan"] = {
                key: str(value) for key, value in outcome.result.plan.as_display().items()
            }
    if outcome.error is not None:
        payload["error"] = outcome.error
    return payload


def _print_side_effects_state(settings: Settings, *, force_dry_run: bool) -> None:
    dry_run = settings.dry_run or force_dry_run
    print(
        "Effective side effects: "
        f"dry_run={dry_run} fee_source={settings.fee_source_type} "
        f"dex={settings.dex_provider} interval={settings.epoch_interval_seconds}s"
    )


def run_runtime(settings: Settings, *, force_dry_run: bool, once: bool) -> int:
    try:
        runtime = build_runtime(settings, force_dry_run=force_dry_run)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}")
        return 2

    runtime.initialize()
    scheduler = EpochScheduler(
        interval_seconds=settings.epoch_interval_seconds,
        cycle_fn=runtime.orchestrator.run_cycle,
        initial_epoch_id=runtime.report_writer.latest_epoch_id(),
        run_immediately=True,
    )
    try:
        if once:
            outcome = scheduler.trigger_now(trigger="cli")
            print(json.dumps(_outcome_payload(outcome), sort_keys=True))
            return 1 if outcome.status == OutcomeStatus.FAILED else 0
        return _run_until_stopped(scheduler)
    finally:
        runtime.shutdown()


def _run_until_stopped(scheduler: EpochScheduler) -> int:
    def _handle_sigterm(signum: int, _frame: object) -> None:
        logger.info("shutdown_signal_received", extra={"extra": {"signal": signum}})
        scheduler.stop()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, _handle_sigterm)

    scheduler.start()
    try:
        while not scheduler.wait_stopped(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("scheduler_interrupted", extra={"extra": {"reason": "keyboard_interrupt"}})
        print("run: interrupted, waiting for in-flight cycle to finish")
    scheduler.stop(wait=True)
    stats = scheduler.stats()
    logger.info(
        "runtime_stopped",
        extra={
            "extra": {
                "last_epoch_id": stats.current_epoch_id,
                "completed": stats.completed,
                "skipped": stats.skipped,
                "failed": stats.failed,
                "dropped": stats.dropped,
            }
        },
    )
    return 0


def run_status(settings: Settings) -> int:
    writer = ReportWriter(settings.reports_dir)
    reports = writer.list_reports()
    allocation = settings.allocation_config()
    params = settings.risk_parameters()
    payload = {
        "dry_run": settings.dry_run,
        "fee_source_type": settings.fee_source_type,
        "dex_provider": settings.dex_provider,
        "epoch_interval_seconds": settings.epoch_interval_seconds,
        "allocation": {
            "buyback_pct": str(allocation.buyback_pct),
            "add_liquidity_pct": str(allocation.add_liquidity_pct),
            "treasury_pct": str(allocation.treasury_pct),
            "burn_pct_of_buyback": str(allocation.burn_pct_of_buyback),
        },
        "max_budget_per_epoch_sol": format_sol(params.max_budget_per_epoch),
        "reports_dir": settings.reports_dir,
        "report_count": len(reports),
        "latest_epoch_id": writer.latest_epoch_id(),
        "latest_report": str(reports[-1]) if reports else None,
    }
    print(json.dumps(redact_data(payload), indent=2, sort_keys=True))
    return 0


def run_verify_report(path: str) -> int:
    if verify_report(path):
        print(f"OK: {path}")
        return 0
    print(f"MISMATCH: {path}")
    return 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="buybackbot")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the epoch scheduler")
    run_parser.add_argument("--dry-run", action="store_true", help="Force dry run for this process")
    run_parser.add_argument("--once", action="store_true", help="Run a single epoch and exit")

    subparsers.add_parser("status", help="Show effective configuration and report state")

    verify_parser = subparsers.add_parser(
        "verify-report", help="Check a report file against its stamped hash"
    )
    verify_parser.add_argument("path", help="Path to an epoch-*.json report")

    args = parser.parse_args(argv)

    if args.command == "verify-report":
        return run_verify_report(args.path)

    try:
        settings = Settings()
    except ValidationError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    setup_logging(settings.log_level)

    with run_context(uuid4().hex):
        logger.info(
            "runtime_prepared",
            extra={
                "extra": {
                    "command": args.command,
                    "dry_run": settings.dry_run or bool(getattr(args, "dry_run", False)),
                    "fee_source_type": settings.fee_source_type,
                }
            },
        )
        if args.command == "run":
            _print_side_effects_state(settings, force_dry_run=args.dry_run)
            return run_runtime(settings, force_dry_run=args.dry_run, once=args.once)
        if args.command == "status":
            return run_status(settings)

    parser.error(f"unknown command {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
