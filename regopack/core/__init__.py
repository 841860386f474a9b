"""regopack Core Module."""

from regopack.core.errors import (
    BackendUnavailableError,
    BadResultError,
    CompilationFailedError,
    InvalidInputError,
    MalformedCapabilitiesError,
    MissingOutputArtifactError,
    RegoCompilationError,
    ResourceCleanupError,
    ToolNotFoundError,
)
from regopack.core.logging import (
    ErrorContext,
    LogLevel,
    compilation_context,
    get_logger,
    log_error,
    setup_logging,
)
from regopack.core.options import (
    BackendKind,
    CompilationParameters,
    CompilerOptions,
)

__all__ = [
    "setup_logging",
    "get_logger",
    "log_error",
    "compilation_context",
    "ErrorContext",
    "LogLevel",
    "BackendKind",
    "CompilerOptions",
    "CompilationParameters",
    "RegoCompilationError",
    "BackendUnavailableError",
    "ToolNotFoundError",
    "InvalidInputError",
    "MalformedCapabilitiesError",
    "CompilationFailedError",
    "BadResultError",
    "MissingOutputArtifactError",
    "ResourceCleanupError",
]
