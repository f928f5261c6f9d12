from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from buybackbot.domain.models import ExecutionReport, stable_hash_payload
from buybackbot.services.errors import ReportWriteError

logger = logging.getLogger(__name__)

_REPORT_NAME = re.compile(r"^epoch-(?P<epoch>\d+)-(?P<digest>[0-9a-f]{12})\.json$")
_HASHED_KEYS = ("epoch_id", "timestamp", "fees", "plan", "transactions")


def hash_report(report: ExecutionReport) -> str:
    return stable_hash_payload(report.hashed_fields())


@dataclass(frozen=True)
class WrittenReport:
    epoch_id: int
    hash: str
    json_path: Path
    summary_path: Path


def _write_atomic(path: Path, text: str) -> None:
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        handle.write(text)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


class ReportWriter:
    """One JSON document plus a plain-text summary per cycle, named by content digest."""

    def __init__(
        self,
        reports_dir: str | Path = "./reports",
        *,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.reports_dir = Path(reports_dir)
        self.now_provider = now_provider or (lambda: datetime.now(UTC))

    def write_report(self, report: ExecutionReport) -> WrittenReport:
        digest = hash_report(report)
        stem = f"epoch-{report.epoch_id}-{digest[:12]}"
        json_path = self.reports_dir / f"{stem}.json"
        summary_path = self.reports_dir / f"{stem}-summary.txt"

        payload = report.to_payload()
        payload["hash"] = digest
        payload["created_at"] = self.now_provider().astimezone(UTC).isoformat()
        try:
            self.reports_dir.mkdir(parents=True, exist_ok=True)
            _write_atomic(json_path, json.dumps(payload, indent=2, sort_keys=True) + "\n")
            _write_atomic(summary_path, report.summary + "\n")
        except OSError as exc:
            raise ReportWriteError(f"failed to write report {json_path}: {exc}") from exc

        logger.info(
            "report_written",
            extra={
                "extra": {
                    "epoch_id": report.epoch_id,
                    "status": report.status.value,
                    "path": str(json_path),
                    "hash": digest,
                }
            },
        )
        return WrittenReport(
            epoch_id=report.epoch_id,
            hash=digest,
            json_path=json_path,
            summary_path=summary_path,
        )

    def list_reports(self) -> list[Path]:
        if not self.reports_dir.is_dir():
            return []
        matches = [path for path in self.reports_dir.iterdir() if _REPORT_NAME.match(path.name)]
        return sorted(matches, key=lambda path: int(_REPORT_NAME.match(path.name)["epoch"]))

    def latest_epoch_id(self) -> int:
        reports = self.list_reports()
        if not reports:
            return 0
        return int(_REPORT_NAME.match(reports[-1].name)["epoch"])


def verify_report(path: str | Path) -> bool:
    """Recompute the digest of a written report and compare with its stamped hash."""
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return False
    if not isinstance(payload, dict) or not isinstance(payload.get("hash"), str):
        return False
    hashed = {key: payload.get(key) for key in _HASHED_KEYS}
    return stable_hash_payload(hashed) == payload["hash"]
