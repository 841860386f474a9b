"""
regopack Core Logging Module

Provides structured logging for the compilation layer. Supports console
output for development and JSON output for log shipping.

Usage:
    from regopack.core.logging import setup_logging, get_logger

    # Initialize logging (call once at startup)
    setup_logging(level="INFO", json_output=True)

    # Get a logger instance
    logger = get_logger(__name__)
    logger.info("compilation_succeeded", source="policy.rego")
    logger.error("compilation_failed", error=str(e), source="policy.rego")
"""

from __future__ import annotations

import logging
import os
import sys
import traceback
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator

import structlog
from pydantic import BaseModel, Field

# Context variable for per-compilation tracing
compile_id_var: ContextVar[str | None] = ContextVar("compile_id", default=None)


class LogLevel(str, Enum):
    """Supported log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class ErrorContext(BaseModel):
    """Structured error context for tracking."""

    error_id: str = Field(..., description="Unique error identifier")
    error_type: str = Field(..., description="Exception class name")
    error_message: str = Field(..., description="Error message")
    timestamp: str = Field(..., description="ISO 8601 timestamp")
    module: str = Field(..., description="Module where error occurred")
    function: str = Field(..., description="Function where error occurred")
    line_number: int | None = Field(None, description="Line number")
    stack_trace: str | None = Field(None, description="Full stack trace")
    context: dict[str, Any] = Field(default_factory=dict, description="Additional context")
    compile_id: str | None = Field(None, description="Compilation ID if available")


def add_context_processor(
    logger: structlog.typing.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Add the current compilation ID to log events."""
    if compile_id := compile_id_var.get():
        event_dict.setdefault("compile_id", compile_id)
    return event_dict


def setup_logging(
    level: str | LogLevel = LogLevel.INFO,
    json_output: bool = False,
    log_file: str | None = None,
) -> None:
    """
    Configure structured logging for regopack.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL); anything
            else raises ValueError
        json_output: Output JSON format (for log shipping)
        log_file: Optional file path for logging
    """
    if isinstance(level, LogLevel):
        level = level.value
    log_level = LogLevel(os.environ.get("REGOPACK_LOG_LEVEL", level).upper())

    shared_processors: list[structlog.typing.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        add_context_processor,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=renderer,
            foreign_pre_chain=shared_processors,
        )
    )

    handlers: list[logging.Handler] = [handler]
    if log_file or os.environ.get("REGOPACK_LOG_FILE"):
        file_path = log_file or os.environ.get("REGOPACK_LOG_FILE")
        file_handler = logging.FileHandler(file_path)
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=structlog.processors.JSONRenderer(),
                foreign_pre_chain=shared_processors,
            )
        )
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.handlers = handlers
    root_logger.setLevel(getattr(logging, log_level.value))

    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Bound structlog logger
    """
    return structlog.get_logger(name)


def log_error(
    logger: structlog.stdlib.BoundLogger,
    error: BaseException,
    message: str | None = None,
    **context: Any,
) -> ErrorContext:
    """
    Log an error with full context.

    Args:
        logger: Logger instance
        error: Exception to log
        message: Optional custom message
        **context: Additional context

    Returns:
        ErrorContext with error details
    """
    tb = traceback.extract_tb(error.__traceback__)
    last_frame = tb[-1] if tb else None

    error_context = ErrorContext(
        error_id=str(uuid.uuid4()),
        error_type=type(error).__name__,
        error_message=str(error),
        timestamp=datetime.now(timezone.utc).isoformat(),
        module=last_frame.filename if last_frame else "unknown",
        function=last_frame.name if last_frame else "unknown",
        line_number=last_frame.lineno if last_frame else None,
        stack_trace="".join(traceback.format_exception(type(error), error, error.__traceback__)),
        context=context,
        compile_id=compile_id_var.get(),
    )

    logger.error(
        message or error_context.error_message,
        error_id=error_context.error_id,
        error_type=error_context.error_type,
        exc_info=(type(error), error, error.__traceback__),
        **context,
    )

    return error_context


@contextmanager
def compilation_context(**context: Any) -> Iterator[str]:
    """
    Bind a fresh compilation ID and extra context to every log event
    emitted inside the block.

    Usage:
        with compilation_context(source=path, backend="cli") as compile_id:
            ...
    """
    compile_id = uuid.uuid4().hex[:12]
    token = compile_id_var.set(compile_id)
    try:
        with structlog.contextvars.bound_contextvars(**context):
            yield compile_id
    finally:
        compile_id_var.reset(token)


__all__ = [
    "setup_logging",
    "get_logger",
    "log_error",
    "compilation_context",
    "ErrorContext",
    "LogLevel",
]
