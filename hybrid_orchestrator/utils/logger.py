"""
Logging utilities for Hybrid Orchestrator

Structured JSON logging for the orchestrator and the vault. Log context
(job_id, user_id, component) lives in a ContextVar, so each asyncio task
driving a job carries its own context and concurrent jobs never see each
other's fields.
"""

import contextvars
import logging
import sys
import json
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path


_log_context: contextvars.ContextVar = contextvars.ContextVar("hybrid_orchestrator_log_context", default={})

# Attributes every LogRecord carries; anything else arrived through ``extra``
# or the context filter
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))) | {"message", "asctime"}

PLAIN_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class StructuredFormatter(logging.Formatter):
    """
    Renders each record as one JSON object per line.

    Fields passed via ``extra`` and context fields added by JobContextFilter
    are grouped under ``"extra"``.
    """

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": self.formatException(record.exc_info),
            }

        if self.include_extra:
            extra = {key: value for key, value in vars(record).items() if key not in _STANDARD_ATTRS}
            if extra:
                entry["extra"] = extra

        return json.dumps(entry, default=str, ensure_ascii=False)


class JobContextFilter(logging.Filter):
    """
    Copies the current task's log context onto each record.

    Values passed explicitly through ``extra`` win over context values.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _log_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def _build_handler(handler: logging.Handler, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    # Filters sit on handlers so records propagated from child loggers get context too
    handler.addFilter(JobContextFilter())
    return handler


def setup_logger(
    name: str = "hybrid_orchestrator",
    level: str = "INFO",
    structured: bool = True,
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Attach console (and optionally file) handlers to a logger.

    Calling it again for an already configured logger is a no-op. The
    package's own NullHandler does not count as configuration.

    Args:
        name: Logger name; configure ``hybrid_orchestrator`` to see every module
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        structured: JSON lines when True, plain text otherwise
        log_file: Optional path; parent directories are created

    Returns:
        The configured logger
    """
    logger = logging.getLogger(name)
    if any(not isinstance(handler, logging.NullHandler) for handler in logger.handlers):
        return logger

    numeric_level = getattr(logging, level.upper())
    logger.setLevel(numeric_level)
    formatter = StructuredFormatter() if structured else logging.Formatter(PLAIN_FORMAT)

    logger.addHandler(_build_handler(logging.StreamHandler(sys.stdout), numeric_level, formatter))
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.addHandler(_build_handler(logging.FileHandler(log_file), numeric_level, formatter))

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)


def get_log_context() -> Dict[str, Any]:
    """Context fields visible to the current task."""
    return dict(_log_context.get())


def set_log_context(**kwargs):
    """Add context fields for the current task and tasks it spawns."""
    context = dict(_log_context.get())
    context.update(kwargs)
    _log_context.set(context)


def clear_log_context():
    _log_context.set({})


class LoggerContext:
    """
    Context manager for temporary log context.

    Fields are visible inside the block and in tasks created there; the
    previous context is restored on exit.
    """

    def __init__(self, **kwargs):
        self.context = kwargs
        self._token = None

    def __enter__(self):
        context = dict(_log_context.get())
        context.update(self.context)
        self._token = _log_context.set(context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None
