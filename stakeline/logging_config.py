"""
Structured Logging Configuration

Provides:
- Correlation IDs tying every log line of one submission together
- Operation and signature context for transaction tracing
- JSON formatting for machine parsing
- Log rotation support
"""

import contextvars
import json
import logging
import logging.handlers
import sys
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union
from uuid import uuid4


# Context variables for correlation tracking
correlation_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "correlation_id", default=None
)
operation_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "operation", default=None
)
signature_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "signature", default=None
)


class CorrelationContext:
    """Context manager for setting correlation context."""

    def __init__(
        self,
        correlation_id: Optional[str] = None,
        operation: Optional[str] = None,
        signature: Optional[str] = None,
    ):
        self.correlation_id = correlation_id or str(uuid4())
        self.operation = operation
        self.signature = signature
        self._tokens = []

    def __enter__(self):
        # Store (var, token) pairs to reset correctly
        self._tokens.append((correlation_id_var, correlation_id_var.set(self.correlation_id)))
        if self.operation:
            self._tokens.append((operation_var, operation_var.set(self.operation)))
        if self.signature:
            self._tokens.append((signature_var, signature_var.set(self.signature)))
        return self

    def bind_signature(self, signature: Optional[str]) -> None:
        """Attach a broadcast signature for the rest of this context."""
        if signature:
            self.signature = signature
            self._tokens.append((signature_var, signature_var.set(signature)))

    def __exit__(self, *args):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()


def _context_fields() -> Dict[str, str]:
    fields = {}
    correlation_id = correlation_id_var.get()
    operation = operation_var.get()
    signature = signature_var.get()
    if correlation_id:
        fields["correlation_id"] = correlation_id
    if operation:
        fields["operation"] = operation
    if signature:
        fields["signature"] = signature
    return fields


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(
        self,
        include_traceback: bool = True,
        include_context: bool = True,
        extra_fields: Optional[Dict[str, Any]] = None,
    ):
        super().__init__()
        self.include_traceback = include_traceback
        self.include_context = include_context
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if self.include_context:
            log_data.update(_context_fields())

        log_data.update(self.extra_fields)

        if record.exc_info and self.include_traceback:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        if hasattr(record, "extra_data"):
            log_data["extra"] = record.extra_data

        return json.dumps(log_data, default=str)


class StructuredFormatter(logging.Formatter):
    """Human-readable structured formatter for console output."""

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color
        self.colors = {
            "DEBUG": "\033[36m",  # Cyan
            "INFO": "\033[32m",  # Green
            "WARNING": "\033[33m",  # Yellow
            "ERROR": "\033[31m",  # Red
            "CRITICAL": "\033[35m",  # Magenta
            "RESET": "\033[0m",
        }

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with structure and color."""
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
            "%Y-%m-%d %H:%M:%S"
        )

        level = record.levelname
        if self.use_color and sys.stdout.isatty():
            color = self.colors.get(level, "")
            reset = self.colors["RESET"]
            level = f"{color}{level}{reset}"

        parts = [
            f"[{timestamp}]",
            f"[{level}]",
            f"[{record.name}]",
            record.getMessage(),
        ]

        context = _context_fields()
        context_parts = []
        if "correlation_id" in context:
            context_parts.append(f"correlation_id={context['correlation_id'][:8]}")
        if "operation" in context:
            context_parts.append(f"operation={context['operation']}")
        if "signature" in context:
            context_parts.append(f"signature={context['signature'][:16]}")

        if context_parts:
            parts.append(f"[{', '.join(context_parts)}]")

        if record.exc_info:
            exc_text = "\n".join(traceback.format_exception(*record.exc_info))
            parts.append(f"\n{exc_text}")

        return " ".join(parts)


class StructuredLogger:
    """Logger wrapper that attaches keyword arguments as structured data."""

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def _log_with_extra(
        self, level: int, msg: str, extra_data: Optional[Dict[str, Any]] = None, **kwargs
    ):
        if extra_data:
            kwargs.setdefault("extra", {})["extra_data"] = extra_data
        self._logger.log(level, msg, **kwargs)

    def debug(self, msg: str, **extra_data):
        self._log_with_extra(logging.DEBUG, msg, extra_data or None)

    def info(self, msg: str, **extra_data):
        self._log_with_extra(logging.INFO, msg, extra_data or None)

    def warning(self, msg: str, **extra_data):
        self._log_with_extra(logging.WARNING, msg, extra_data or None)

    def error(self, msg: str, exc_info: bool = False, **extra_data):
        self._log_with_extra(logging.ERROR, msg, extra_data or None, exc_info=exc_info)

    def critical(self, msg: str, exc_info: bool = False, **extra_data):
        self._log_with_extra(logging.CRITICAL, msg, extra_data or None, exc_info=exc_info)

    def exception(self, msg: str, **extra_data):
        self._log_with_extra(logging.ERROR, msg, extra_data or None, exc_info=True)


def setup_logging(
    log_dir: Union[str, Path] = "logs",
    log_file: str = "stakeline.log",
    level: Union[str, int] = logging.INFO,
    json_format: bool = True,
    console_output: bool = True,
    max_bytes: int = 20 * 1024 * 1024,  # 20MB
    backup_count: int = 5,
    extra_fields: Optional[Dict[str, Any]] = None,
) -> logging.Logger:
    """
    Configure structured logging for the application.

    Args:
        log_dir: Directory for log files
        log_file: Name of the log file
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting for file logs
        console_output: Enable console output
        max_bytes: Max size of log file before rotation
        backup_count: Number of backup files to keep
        extra_fields: Additional fields to include in all logs

    Returns:
        Configured root logger
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    file_handler = logging.handlers.RotatingFileHandler(
        log_path / log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(level)

    if json_format:
        file_formatter = JSONFormatter(
            include_traceback=True,
            include_context=True,
            extra_fields=extra_fields,
        )
    else:
        file_formatter = StructuredFormatter(use_color=False)

    file_handler.setFormatter(file_formatter)
    root_logger.addHandler(file_handler)

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(StructuredFormatter(use_color=True))
        root_logger.addHandler(console_handler)

    return root_logger


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger for a module."""
    return StructuredLogger(logging.getLogger(name))


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set correlation ID for current context, generating one if not provided."""
    cid = correlation_id or str(uuid4())
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> Optional[str]:
    """Get current correlation ID."""
    return correlation_id_var.get()

