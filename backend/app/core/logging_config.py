"""
Log output for the triage service.

Two renderings of the same records:
    • json    one object per line for the log shipper, carrying the
              signal / responder / channel fields attached via ``extra``
    • pretty  a single console line per record with the request id and
              the acting identity, for local runs

Every record emitted while a request is in flight picks up the
request-scoped context the middleware sets (request id, actor or
responder id, endpoint).

Usage:
    from backend.app.core.logging_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.info("Signal escalated", extra={"sos_id": sid, "escalation_level": 1})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from backend.app.core.config import settings

_request_context: ContextVar[Dict[str, Any]] = ContextVar(
    "request_context", default={}
)

# Record attributes (passed through ``extra``) that the JSON output keeps
STRUCTURED_FIELDS = (
    "sos_id", "responder_id", "notification_id", "channel",
    "escalation_level", "duration_ms", "status_code", "endpoint",
)

# Third-party loggers capped at WARNING; request lines come from our middleware
_NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def set_request_context(**kwargs: Any) -> None:
    """Replace the request-scoped context; call with no arguments to clear it."""
    _request_context.set({k: v for k, v in kwargs.items() if v is not None})


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


def _exception_summary(record: logging.LogRecord) -> Optional[Dict[str, str]]:
    if not record.exc_info or record.exc_info[1] is None:
        return None
    exc = record.exc_info[1]
    return {"type": type(exc).__name__, "message": str(exc)}


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        ctx = get_request_context()
        if ctx:
            entry["context"] = dict(ctx)

        for key in STRUCTURED_FIELDS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)

        exc = _exception_summary(record)
        if exc:
            entry["exception"] = exc

        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """
    ``HH:MM:SS LEVEL [request] <who> logger: message [sos_id]``

    ``who`` is the admin actor when present, else the responder. The
    signal id is appended only when the message does not already name it.
    """

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True) -> None:
        super().__init__()
        self.use_color = use_color

    def _level(self, levelname: str) -> str:
        text = f"{levelname:8s}"
        if not self.use_color:
            return text
        return f"{self.LEVEL_COLORS.get(levelname, '')}{text}{self.RESET}"

    def format(self, record: logging.LogRecord) -> str:
        parts = [self.formatTime(record, "%H:%M:%S"), self._level(record.levelname)]

        ctx = get_request_context()
        if ctx.get("request_id"):
            parts.append(f"[{ctx['request_id'][:8]}]")
        who = ctx.get("actor_id") or ctx.get("responder_id")
        if who:
            parts.append(f"<{who}>")

        msg = record.getMessage()
        sos_id = getattr(record, "sos_id", None)
        if sos_id and sos_id not in msg:
            msg = f"{msg} [{sos_id}]"
        parts.append(f"{record.name}: {msg}")

        line = " ".join(parts)
        exc = _exception_summary(record)
        if exc:
            line += f"\n  {exc['type']}: {exc['message']}"
        return line


def _use_json(log_format: str) -> bool:
    fmt = log_format.lower()
    if fmt == "auto":
        return settings.is_production
    if fmt not in ("json", "pretty"):
        raise ValueError(f"LOG_FORMAT must be auto, json or pretty, not {log_format!r}")
    return fmt == "json"


def setup_logging(level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """Install a single stdout handler on the root logger (idempotent)."""
    root = logging.getLogger()
    level_name = (level or settings.LOG_LEVEL).upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if _use_json(log_format or settings.LOG_FORMAT):
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(PrettyFormatter(use_color=sys.stdout.isatty()))
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
