"""
Logging setup for the form engine.

Two output formats: `text` for development and `json` for services.
Fields bound with LogContext (form_id, phase, request_id, ...) are stamped
on every record emitted inside the block.

INVARIANTS:
- Context is per task (contextvars), so concurrent requests never see each
  other's fields.
- Leaving a LogContext restores exactly the fields that were bound before.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

# Attributes every LogRecord carries; anything else came in through `extra=`
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

# Third-party loggers that are noisy at INFO
QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore")

_context: ContextVar[Dict[str, Any]] = ContextVar("formengine_log_context", default={})


class LogContext:
    """
    Bind fields to every log record emitted inside the block.

    Usage:
        with LogContext(form_id="intake", phase="submit"):
            logger.info("Validating form")
    """

    def __init__(self, **fields: Any):
        self._fields = fields
        self._tokens: List[Any] = []

    def __enter__(self) -> "LogContext":
        merged = dict(_context.get())
        merged.update(self._fields)
        self._tokens.append(_context.set(merged))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        _context.reset(self._tokens.pop())

    @staticmethod
    def current() -> Dict[str, Any]:
        """Copy of the fields bound in the current task."""
        return dict(_context.get())


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS}


class JSONFormatter(logging.Formatter):
    """One JSON object per record: core fields, source location, context and extras."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": {"file": record.pathname, "line": record.lineno, "function": record.funcName},
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        payload.update(LogContext.current())
        payload.update(_extra_fields(record))
        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    """`time | LEVEL | logger | message`, followed by bound context fields."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = LogContext.current()
        if not context:
            return line
        return line + " | " + " ".join(f"{key}={context[key]}" for key in sorted(context))


def configure_logging(
    level: str = "INFO",
    format_type: str = "text",
    quiet: Optional[Iterable[str]] = QUIET_LOGGERS,
) -> None:
    """
    Install a single stdout handler on the root logger.

    Args:
        level: Root level name (DEBUG, INFO, WARNING, ...); unknown names mean INFO
        format_type: "json" or "text"
        quiet: Logger names raised to WARNING
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if format_type.lower() == "json" else TextFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in quiet or ():
        logging.getLogger(name).setLevel(logging.WARNING)
