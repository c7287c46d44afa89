"""Logging Configuration

Console logging with JSON or text output. Client addresses and token-like
strings are masked before records reach a handler.
"""

import json
import logging
import sys
from logging import Filter, Formatter
from typing import Optional

from webflasher.config import settings
from webflasher.core.security import sanitize_log_data

# LogRecord attributes that are not user supplied extras
_RESERVED_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "message", "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "exc_info", "exc_text", "stack_info", "taskName",
}


class SensitiveDataFilter(Filter):
    """Mask client IPs and secrets in log records"""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = sanitize_log_data(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = {
                    k: sanitize_log_data(v) if isinstance(v, str) else v
                    for k, v in record.args.items()
                }
            else:
                record.args = tuple(
                    sanitize_log_data(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )

        return True


class JSONFormatter(Formatter):
    """JSON log formatter"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = sanitize_log_data(self.formatException(record.exc_info))

        # Extra fields passed through logger.info(..., extra={...})
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            if isinstance(value, str):
                log_data[key] = sanitize_log_data(value)
            elif isinstance(value, (int, float, bool)) or value is None:
                log_data[key] = value
            else:
                log_data[key] = str(value)

        return json.dumps(log_data)


class TextFormatter(Formatter):
    """Human-readable log formatter"""

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None):
        super().__init__(
            fmt=fmt or "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt=datefmt or "%Y-%m-%d %H:%M:%S",
        )


def setup_logging(log_format: Optional[str] = None, level: Optional[str] = None) -> logging.Logger:
    """Setup application logging"""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))

    # Remove existing handlers
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)
    console_handler.addFilter(SensitiveDataFilter())

    if (log_format or settings.LOG_FORMAT).lower() == "json":
        formatter: Formatter = JSONFormatter()
    else:
        formatter = TextFormatter()

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Set levels for third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root_logger
