from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from typing import Any, TextIO

from buybackbot.logging_context import current_log_fields
from buybackbot.security.redaction import redact_data

# third-party loggers and the env var that overrides each one's level
_CHATTY_LOGGERS = {"httpx": "HTTPX_LOG_LEVEL", "httpcore": "HTTPCORE_LOG_LEVEL"}


class JsonFormatter(logging.Formatter):
    """One redacted JSON object per record.

    Key order: ``ts``, ``level``, ``logger``, ``event``, then the bound
    run/epoch/trigger/step fields, then the record's ``extra`` payload.
    Extra keys never overwrite the bound fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        payload.update(current_log_fields())

        extras = getattr(record, "extra", None)
        if isinstance(extras, dict):
            for key, value in extras.items():
                payload.setdefault(key, value)

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, _ = record.exc_info
            payload["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": self.formatException(record.exc_info),
            }
        elif record.exc_text:
            payload["exception"] = {"traceback": record.exc_text}

        return json.dumps(redact_data(payload), default=str)


def _parse_level(raw: str | int | None, default: int) -> int:
    if isinstance(raw, int):
        return raw
    if raw is None or not str(raw).strip():
        return default
    resolved = logging.getLevelName(str(raw).strip().upper())
    return resolved if isinstance(resolved, int) else default


def setup_logging(level: str | int | None = None, *, stream: TextIO | None = None) -> int:
    """Routes the root logger through ``JsonFormatter``; returns the level applied.

    ``level`` falls back to ``LOG_LEVEL``, then INFO. The fee API client's
    per-request INFO lines are held at WARNING unless the bot runs at DEBUG or
    ``HTTPX_LOG_LEVEL``/``HTTPCORE_LOG_LEVEL`` say otherwise.
    """
    root_level = _parse_level(level if level is not None else os.getenv("LOG_LEVEL"), logging.INFO)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(root_level)

    chatty_default = logging.DEBUG if root_level <= logging.DEBUG else logging.WARNING
    for name, env_name in _CHATTY_LOGGERS.items():
        logging.getLogger(name).setLevel(_parse_level(os.getenv(env_name), chatty_default))
    return root_level
