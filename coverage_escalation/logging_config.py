"""Structured logging for the escalation service.

Call sites pass context as keyword arguments (``logger.info("...",
record_id=r.id)``); the adapter returned by ``get_logger`` files them on the
log record and the formatters render them as JSON lines or ``key=value``
text. Anything logged while an escalation tick runs is stamped with the
tick's id.
"""

import json
import logging
import logging.config
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

tick_id_ctx: ContextVar[str | None] = ContextVar("tick_id", default=None)

# LogRecord attribute holding the keyword fields of one call
FIELDS_ATTR = "fields"

_LOGGING_KWARGS = ("exc_info", "stack_info", "stacklevel", "extra")


class _EscalationFormatter(logging.Formatter):
    def __init__(self, service_name: str = "coverage-escalation"):
        super().__init__()
        self.service_name = service_name

    def context(self, record: logging.LogRecord) -> dict[str, Any]:
        """Tick id first, then the call's own fields in the order given."""
        context: dict[str, Any] = {}
        tick_id = tick_id_ctx.get()
        if tick_id:
            context["tick_id"] = tick_id
        context.update(getattr(record, FIELDS_ATTR, None) or {})
        return context

    @staticmethod
    def created_at(record: logging.LogRecord) -> datetime:
        return datetime.fromtimestamp(record.created, UTC)


class JsonFormatter(_EscalationFormatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.created_at(record).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
            **self.context(record),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class TextFormatter(_EscalationFormatter):
    """``2025-01-01 12:00:00 INFO    coverage_escalation.scheduler: message key=value``"""

    def format(self, record: logging.LogRecord) -> str:
        line = (
            f"{self.created_at(record):%Y-%m-%d %H:%M:%S} {record.levelname:<7} "
            f"{record.name}: {record.getMessage()}"
        )
        context = self.context(record)
        if context:
            line += " " + " ".join(f"{k}={v}" for k, v in context.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    log_format: str = "json",
    log_level: str = "INFO",
    service_name: str = "coverage-escalation",
) -> None:
    """Route the root logger to stdout through the chosen formatter.

    ``log_format`` is ``"json"`` or ``"text"``; unknown level names fall back
    to INFO.
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    formatter = JsonFormatter if log_format.lower() == "json" else TextFormatter

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "escalation": {"()": formatter, "service_name": service_name},
            },
            "handlers": {
                "stdout": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stdout",
                    "formatter": "escalation",
                },
            },
            "root": {"level": level, "handlers": ["stdout"]},
            "loggers": {
                "uvicorn.access": {"level": "WARNING"},
                "apscheduler": {"level": "WARNING"},
            },
        }
    )


class StructuredLogger(logging.LoggerAdapter):
    """Adapter that turns keyword arguments into structured log fields."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        passthrough = {k: kwargs.pop(k) for k in _LOGGING_KWARGS if k in kwargs}
        if kwargs:
            extra = dict(passthrough.get("extra") or {})
            extra[FIELDS_ATTR] = dict(kwargs)
            passthrough["extra"] = extra
        return msg, passthrough


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(logging.getLogger(name), {})
