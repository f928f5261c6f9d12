from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from buybackbot import cli


@pytest.fixture(autouse=True)
def restore_root_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def _last_json_line(text: str) -> dict[str, object]:
    lines = [line for line in text.strip().splitlines() if line.startswith("{")]
    return json.loads(lines[-1])


def test_run_once_dry_run_writes_report(monkeypatch, tmp_path: Path, capsys) -> None:
    reports_dir = tmp_path / "reports"
    monkeypatch.setenv("REPORTS_DIR", str(reports_dir))

    rc = cli.main(["run", "--once", "--dry-run"])

    assert rc == 0
    out = capsys.readouterr().out
    assert "dry_run=True" in out
    outcome = _last_json_line(out)
    assert outcome["status"] == "completed"
    assert outcome["epoch_id"] == 1
    reports = sorted(reports_dir.glob("epoch-1-*.json"))
    assert len(reports) == 1
    assert cli.main(["verify-report", str(reports[0])]) == 0


def test_run_once_resumes_epoch_numbering(monkeypatch, tmp_path: Path, capsys) -> None:
    monkeypatch.setenv("REPORTS_DIR", str(tmp_path))
    assert cli.main(["run", "--once"]) == 0
    capsys.readouterr()

    assert cli.main(["run", "--once"]) == 0

    assert _last_json_line(capsys.readouterr().out)["epoch_id"] == 2


def test_run_once_reports_failure_exit_code(monkeypatch, tmp_path: Path, capsys) -> None:
    monkeypatch.setenv("REPORTS_DIR", str(tmp_path))
    monkeypatch.setenv("MAX_BUDGET_PER_EPOCH_SOL", "0.01")

    rc = cli.main(["run", "--once"])

    assert rc == 1
    outcome = _last_json_line(capsys.readouterr().out)
    assert outcome["status"] == "failed"
    assert "PlanRejectedError" in str(outcome["error"])


def test_unknown_dex_provider_is_configuration_error(monkeypatch, tmp_path: Path, capsys) -> None:
    monkeypatch.setenv("REPORTS_DIR", str(tmp_path))
    monkeypatch.setenv("DEX_PROVIDER", "orca")

    assert cli.main(["run", "--once"]) == 2
    assert "Configuration error" in capsys.readouterr().out


def test_invalid_settings_exit_code(monkeypatch, capsys) -> None:
    monkeypatch.setenv("BUYBACK_PCT", "90")

    assert cli.main(["status"]) == 2
    assert "Invalid configuration" in capsys.readouterr().err


def test_status_lists_report_state(monkeypatch, tmp_path: Path, capsys) -> None:
    monkeypatch.setenv("REPORTS_DIR", str(tmp_path))
    cli.main(["run", "--once"])
    capsys.readouterr()

    assert cli.main(["status"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["latest_epoch_id"] == 1
    assert payload["report_count"] == 1
    assert payload["dry_run"] is True
    assert payload["allocation"]["buyback_pct"] == "60"


def test_verify_report_flags_tampered_file(tmp_path: Path, capsys) -> None:
    report = tmp_path / "epoch-1-000000000000.json"
    report.write_text(json.dumps({"epoch_id": 1, "hash": "deadbeef"}), encoding="utf-8")

    assert cli.main(["verify-report", str(report)]) == 1
    assert "MISMATCH" in capsys.readouterr().out


def test_webhook_fee_source_rejected_without_ingress(monkeypatch, tmp_path: Path, capsys) -> None:
    monkeypatch.setenv("REPORTS_DIR", str(tmp_path))
    monkeypatch.setenv("FEE_SOURCE_TYPE", "webhook")
    monkeypatch.setenv("WEBHOOK_SECRET", "hook-secret")

    assert cli.main(["run", "--once"]) == 2
    assert "FEE_SOURCE_TYPE=webhook" in capsys.readouterr().out
    assert list(tmp_path.glob("epoch-*.json")) == []
