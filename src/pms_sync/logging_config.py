"""Structured logging configuration with sync-run context.

This module provides structured JSON logging with:
- A run id shared by every record emitted during one sync run
- Contextual fields (job, share class)
- Masking of credentials before they reach a handler
"""
from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from .constants import LoggingDefaults

sync_run_id_var: ContextVar[Optional[str]] = ContextVar("sync_run_id", default=None)
job_var: ContextVar[Optional[str]] = ContextVar("job", default=None)
share_class_var: ContextVar[Optional[str]] = ContextVar("share_class", default=None)

_CONTEXT_FIELDS = ("sync_run_id", "job", "share_class")

# Attributes every LogRecord has; anything else came in through `extra=`
_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "message", "pathname", "process",
    "processName", "relativeCreated", "thread", "threadName", "exc_info",
    "exc_text", "stack_info", "taskName", *_CONTEXT_FIELDS,
})


class SyncContextFilter(logging.Filter):
    """Logging filter that stamps the current sync context onto records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.sync_run_id = sync_run_id_var.get()
        record.job = job_var.get()
        record.share_class = share_class_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key in _CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(mask_credentials(log_data), default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure structured logging for the service.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON structured logging (True) or simple format (False)
        log_file: Optional file path for logging output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - "
            "[%(sync_run_id)s %(share_class)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(SyncContextFilter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(SyncContextFilter())
        root_logger.addHandler(file_handler)


def mask_credentials(data: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of ``data`` with secret-looking values masked (recursively)."""
    masked: dict[str, Any] = {}
    for key, value in data.items():
        if str(key).lower() in LoggingDefaults.SENSITIVE_KEYS:
            masked[key] = LoggingDefaults.MASK_PATTERN
        elif isinstance(value, Mapping):
            masked[key] = mask_credentials(value)
        else:
            masked[key] = value
    return masked


def generate_sync_run_id() -> str:
    return f"run_{uuid.uuid4().hex[:16]}"


def bind_sync_context(job: str, run_id: Optional[str] = None) -> str:
    """Set job and run id for the current task; returns the run id."""
    run_id = run_id or generate_sync_run_id()
    sync_run_id_var.set(run_id)
    job_var.set(job)
    return run_id


def set_share_class_context(name: Optional[str]) -> None:
    share_class_var.set(name)


def clear_context() -> None:
    """Clear all context variables."""
    sync_run_id_var.set(None)
    job_var.set(None)
    share_class_var.set(None)
