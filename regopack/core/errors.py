"""
regopack Error Types

Every failure surfaced by the compilation layer is one of the types below.
Each carries the source identifier (path, or a placeholder for in-memory
input) and, when the backend produced any, its raw diagnostic text.
"""

from __future__ import annotations


class RegoCompilationError(Exception):
    """Base class for compilation layer failures."""

    def __init__(
        self,
        message: str,
        source: str | None = None,
        diagnostics: str | None = None,
    ):
        self.message = message
        self.source = source
        self.diagnostics = diagnostics
        super().__init__(message)

    def __str__(self) -> str:
        if self.source:
            return f"{self.source}: {self.message}"
        return self.message


class BackendUnavailableError(RegoCompilationError):
    """Compiler backend (library or executable) is missing or unusable."""


class ToolNotFoundError(BackendUnavailableError):
    """The opa executable could not be located or launched."""


class InvalidInputError(RegoCompilationError):
    """A compile input (source path, capabilities file, extra arguments) is unusable."""


class MalformedCapabilitiesError(RegoCompilationError):
    """Capabilities document is not JSON or has no `builtins` array."""


class CompilationFailedError(RegoCompilationError):
    """The backend reported a compile-time error."""


class BadResultError(RegoCompilationError):
    """The backend reported success but delivered no usable bundle."""


class MissingOutputArtifactError(RegoCompilationError):
    """Expected output file is absent after a backend run."""


class ResourceCleanupError(RegoCompilationError):
    """A temp artifact could not be removed. Logged, never raised."""


__all__ = [
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
