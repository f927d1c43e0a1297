"""
src/medcenter/core/logging.py

JSON structured logging + request/owner contextvars for MedCenter.

Usage:
    from medcenter.core.logging import setup_json_logging, request_id_ctx, owner_id_ctx

    setup_json_logging()  # call once at app startup

    request_id_ctx.set("some-uuid")
    owner_id_ctx.set("user-uuid")
"""
from __future__ import annotations

import json
import logging
import os
import sys
import time
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

__all__ = [
    "request_id_ctx",
    "owner_id_ctx",
    "setup_json_logging",
]

# ── Context variables shared across the request lifecycle ────────────────────
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")
owner_id_ctx: ContextVar[str] = ContextVar("owner_id", default="")


# ── JSON log formatter ────────────────────────────────────────────────────────

# attributes every LogRecord carries; anything else came in through ``extra=``
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


class _JsonFormatter(logging.Formatter):
    """Emit one JSON object per log record.

    Fields always present:
        timestamp  ISO-8601 UTC
        level      DEBUG / INFO / WARNING / ERROR / CRITICAL
        logger     logger name
        message    formatted log message
        request_id from request_id_ctx
        owner_id   from owner_id_ctx

    Values passed with ``extra=`` are added as top-level fields and win
    over the context values (the access log passes its own ``owner_id``).

    For records carrying exc_info the ``exc`` field is added (type + str).
    Outside production the formatted traceback is included as ``trace``.
    """

    _PROD_LEVELS = {"production", "prod"}

    def __init__(self) -> None:
        super().__init__()
        self._production = os.getenv("ENV", "development").lower() in self._PROD_LEVELS

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self._utc_iso(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_ctx.get(""),
            "owner_id": owner_id_ctx.get(""),
        }
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS and not key.startswith("_") and value not in ("", None):
                payload[key] = value

        if record.exc_info:
            exc_type, exc_val, _ = record.exc_info
            payload["exc"] = {
                "type": exc_type.__name__ if exc_type else "Unknown",
                "detail": str(exc_val),
            }
            if not self._production:
                payload["trace"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)

    @staticmethod
    def _utc_iso(created: float) -> str:
        t = time.gmtime(created)
        ms = int((created % 1) * 1000)
        return (
            f"{t.tm_year:04d}-{t.tm_mon:02d}-{t.tm_mday:02d}"
            f"T{t.tm_hour:02d}:{t.tm_min:02d}:{t.tm_sec:02d}.{ms:03d}Z"
        )


# ── Public setup ─────────────────────────────────────────────────────────────

def setup_json_logging(level: str | None = None, log_file: str | None = None) -> None:
    """Configure root logger with JSON formatter.

    Safe to call multiple times; won't add duplicate handlers.
    When ``log_file`` is given a rotating file handler (5MB x 3) is added too.
    """
    root = logging.getLogger()

    if any(isinstance(h.formatter, _JsonFormatter) for h in root.handlers):
        return

    effective_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    root.setLevel(effective_level)

    formatter = _JsonFormatter()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path,
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
