"""
Structured logging for the billing service.

Console output is human readable; the optional log file receives one JSON
object per line. Billing audit events (tariff versions, completions,
reconciliation runs) go through ``log_business_event`` on the ``app.audit``
logger, timings through ``log_performance`` on ``app.performance``.
"""
import logging
import logging.config
import json
import sys
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, Any, Optional
from pathlib import Path

_MANAGED_LOGGERS = ("app", "uvicorn", "sqlalchemy.engine")


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        # amounts keep their exact decimal text
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


class JSONFormatter(logging.Formatter):
    """One JSON object per record; structured fields are merged at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
            "thread": record.threadName,
        }
        fields = getattr(record, "fields", None)
        if fields:
            entry.update(fields)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=_json_default)


class StructuredLogger:
    """Thin wrapper that accepts keyword fields on every call."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _log_with_extra(self, level: int, message: str, **kwargs):
        if not self.logger.isEnabledFor(level):
            return
        exc_info = kwargs.pop("exc_info", False)
        fields = {k: v for k, v in kwargs.items() if v is not None}
        self.logger.log(level, message, exc_info=exc_info, extra={"fields": fields})

    def debug(self, message: str, **kwargs):
        self._log_with_extra(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log_with_extra(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log_with_extra(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log_with_extra(logging.ERROR, message, **kwargs)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True
) -> None:
    """
    Configure the ``app`` logger tree plus uvicorn and SQLAlchemy.

    Args:
        log_level: Level name for the application loggers
        log_file: JSON-lines file, rotated at 10MB with five backups
        enable_console: Also write plain text to stdout
    """
    handlers: Dict[str, Dict[str, Any]] = {}
    if enable_console:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "stream": sys.stdout,
            "formatter": "plain",
            "level": log_level,
        }
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "formatter": "json",
            "level": log_level,
        }

    names = list(handlers)
    levels = {"app": log_level, "uvicorn": "INFO", "sqlalchemy.engine": "WARNING"}
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JSONFormatter},
            "plain": {
                "format": "%(asctime)s %(levelname)-7s %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": {
            name: {"level": levels[name], "handlers": names, "propagate": False}
            for name in _MANAGED_LOGGERS
        },
        "root": {"level": log_level, "handlers": names},
    })


def get_logger(name: str) -> StructuredLogger:
    """Structured logger under the ``app`` tree (``__name__`` is the usual argument)."""
    if name == "app" or name.startswith("app."):
        return StructuredLogger(name)
    return StructuredLogger(f"app.{name}")


def log_business_event(
    event_type: str,
    details: Dict[str, Any],
    run_id: Optional[int] = None,
    request_id: Optional[str] = None
) -> None:
    """
    Audit record of a billing event.

    Args:
        event_type: e.g. 'tariff_version_created', 'session_completed', 'reconciliation_run_completed'
        details: Event fields; must not repeat event_type, run_id or request_id
        run_id: Reconciliation run the event belongs to
        request_id: Originating HTTP request
    """
    get_logger("audit").info(
        f"Billing event: {event_type}",
        event_type=event_type,
        run_id=run_id,
        request_id=request_id,
        **details
    )


def log_performance(
    operation: str,
    duration_ms: float,
    additional_data: Optional[Dict[str, Any]] = None
) -> None:
    """Timing of one operation in milliseconds, with optional context fields."""
    get_logger("performance").info(
        f"Timing: {operation}",
        operation=operation,
        duration_ms=round(duration_ms, 2),
        **(additional_data or {})
    )
