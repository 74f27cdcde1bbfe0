"""
Centralized logging configuration.

Console output is plain text with the structured context appended; the rotating
file handler writes one JSON object per line. The request id bound by the HTTP
middleware is stamped onto every record emitted while that request is served,
including records from the pipeline and the dispatcher.
"""
import logging
import logging.config
import json
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path

ROOT_LOGGER_NAME = "postback_relay"

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def bind_request_id(request_id: Optional[str]):
    """Bind a request id to the current context; returns the reset token."""
    return _request_id.set(request_id)


def reset_request_id(token) -> None:
    _request_id.reset(token)


def current_request_id() -> Optional[str]:
    return _request_id.get()


def _context_of(record: logging.LogRecord) -> Dict[str, Any]:
    context = dict(getattr(record, "extra_data", None) or {})
    bound = current_request_id()
    if bound and "request_id" not in context:
        context["request_id"] = bound
    return context


class JSONFormatter(logging.Formatter):
    """One JSON document per record; keyword context becomes top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(_context_of(record))
        entry["process_id"] = record.process
        return json.dumps(entry, ensure_ascii=False, default=str)


class ContextFormatter(logging.Formatter):
    """Console formatter that appends structured context as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        context = _context_of(record)
        if not context:
            return base
        return f"{base} | " + " ".join(f"{k}={v}" for k, v in context.items())


class StructuredLogger:
    """
    Thin wrapper over ``logging.Logger`` taking keyword context.

    ``logger.info("Postback ignored", identifier=..., reason=...)``; keys whose
    value is ``None`` are dropped.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _emit(self, level: int, message: str, exc_info: bool = False, **context):
        if not self.logger.isEnabledFor(level):
            return
        extra_data = {k: v for k, v in context.items() if v is not None}
        self.logger.log(level, message, exc_info=exc_info, extra={"extra_data": extra_data}, stacklevel=3)

    def debug(self, message: str, **context):
        self._emit(logging.DEBUG, message, **context)

    def info(self, message: str, **context):
        self._emit(logging.INFO, message, **context)

    def warning(self, message: str, **context):
        self._emit(logging.WARNING, message, **context)

    def error(self, message: str, **context):
        self._emit(logging.ERROR, message, **context)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True
) -> None:
    """
    Configure the ``postback_relay`` logger tree plus uvicorn, APScheduler and
    SQLAlchemy loggers.

    Args:
        log_level: Level name for the application loggers
        log_file: Path of the rotating JSON log; parent directories are created
        enable_console: Attach the plain-text stdout handler
    """
    handlers: Dict[str, Dict[str, Any]] = {}
    if enable_console:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "stream": sys.stdout,
            "formatter": "console",
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

    # Third-party loggers stay quieter than the application tree
    levels = {
        ROOT_LOGGER_NAME: log_level,
        "uvicorn": "INFO",
        "apscheduler": "WARNING",
        "aiohttp": "WARNING",
        "sqlalchemy.engine": "WARNING",
    }
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JSONFormatter},
            "console": {
                "()": ContextFormatter,
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": {
            name: {"level": level, "handlers": list(names), "propagate": False}
            for name, level in levels.items()
        },
        "root": {"level": log_level, "handlers": list(names)},
    })


def get_logger(name: str) -> StructuredLogger:
    """Structured logger under the ``postback_relay`` tree (``scheduler`` -> ``postback_relay.scheduler``)."""
    if name == ROOT_LOGGER_NAME or name.startswith(f"{ROOT_LOGGER_NAME}."):
        return StructuredLogger(name)
    return StructuredLogger(f"{ROOT_LOGGER_NAME}.{name}")


def log_business_event(
    event_type: str,
    details: Dict[str, Any],
    request_id: Optional[str] = None
) -> None:
    """
    Record a business event (``deposit_delivered``, ``audit_completed`` ...)
    on the ``postback_relay.events`` logger.
    """
    get_logger("events").info(
        f"Business event: {event_type}",
        event_type=event_type,
        request_id=request_id,
        **details
    )


def log_performance(
    operation: str,
    duration_ms: float,
    additional_data: Optional[Dict[str, Any]] = None
) -> None:
    """Record an operation timing on the ``postback_relay.performance`` logger."""
    data = {"duration_ms": round(duration_ms, 2)}
    if additional_data:
        data.update(additional_data)
    get_logger("performance").info(f"Performance: {operation}", operation=operation, **data)
