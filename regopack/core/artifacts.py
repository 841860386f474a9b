"""
Temporary compilation artifacts.

A TempArtifact owns one file path for the duration of a compile call and
removes it exactly once on cleanup, unless ownership was handed to the
caller with `detach()`. DeleteOnCloseFile removes its backing file when
the caller closes it.
"""

from __future__ import annotations

import io
import os
import uuid
from pathlib import Path

import structlog

from regopack.core.errors import ResourceCleanupError
from regopack.core.metrics import track_cleanup_failure

logger = structlog.get_logger(__name__)


def _remove(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        track_cleanup_failure()
        error = ResourceCleanupError(f"Failed to remove {path}: {e}", source=str(path))
        logger.warning("temp_artifact_cleanup_failed", path=str(path), error=str(error))


class TempArtifact:
    """Uniquely named transient file inside a directory."""

    def __init__(self, path: Path):
        self.path = path
        self._released = False

    @classmethod
    def create(cls, directory: str | Path, suffix: str) -> "TempArtifact":
        """Reserve a collision-resistant name; the file itself is not created."""
        return cls(Path(directory) / f"{uuid.uuid4().hex}{suffix}")

    def detach(self) -> Path:
        """Transfer ownership of the file; cleanup will leave it alone."""
        self._released = True
        return self.path

    def cleanup(self) -> None:
        if self._released:
            return
        self._released = True
        _remove(self.path)
        logger.debug("temp_artifact_removed", path=str(self.path))

    def __enter__(self) -> "TempArtifact":
        return self

    def __exit__(self, *exc_info) -> None:
        self.cleanup()

    def __repr__(self) -> str:
        return f"TempArtifact({str(self.path)!r})"


class DeleteOnCloseFile(io.FileIO):
    """Read-only file stream that deletes its file once closed."""

    def __init__(self, path: str | os.PathLike):
        self._path = Path(path)
        self._deleted = False
        super().__init__(path, "rb")

    def close(self) -> None:
        try:
            super().close()
        finally:
            if not self._deleted:
                self._deleted = True
                _remove(self._path)
