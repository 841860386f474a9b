"""
Policy Bundle Writer

Writes files into an OPA policy bundle (tar inside gzip). The bundle is
only readable after `close()` has flushed the gzip trailer.

Usage:
    buffer = io.BytesIO()

    with BundleWriter(buffer) as writer:
        writer.write_entry("package test", "policy.rego")

    # Now the bundle has been constructed.
    buffer.seek(0)
"""

from __future__ import annotations

import gzip
import io
import posixpath
import re
import tarfile
import time
from typing import BinaryIO, Union

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

MANIFEST_PATH = "/.manifest"
POLICY_PATH = "/policy.wasm"
DATA_PATH = "/data.json"

_DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")

EntryContent = Union[bytes, bytearray, str, BinaryIO]


class BundleManifest(BaseModel):
    """Bundle metadata written as the `/.manifest` entry."""

    revision: str = Field(default="", description="Bundle revision identifier")
    metadata: dict[str, str] = Field(
        default_factory=dict, description="Free-form key/value metadata"
    )


def normalize_bundle_path(path: str) -> str:
    """
    Normalize a path to a forward-slash path rooted at `/`.

    `c:\\a\\data.json` -> `/a/data.json`, `.\\x\\y.json` -> `/x/y.json`.
    """
    if not path:
        raise ValueError("Bundle entry path must not be empty")

    norm = path.replace("\\", "/")
    norm = _DRIVE_PREFIX.sub("", norm, count=1)
    norm = posixpath.normpath("/" + norm.lstrip("/"))

    if norm == "/":
        raise ValueError(f"Bundle entry path does not name a file: {path!r}")

    return norm


class BundleWriter:
    """Writes entries into a tar+gzip policy bundle."""

    def __init__(self, stream: BinaryIO, manifest: BundleManifest | None = None):
        """
        Open a bundle over a destination stream.

        Args:
            stream: Destination stream; it is left open on close
            manifest: Optional manifest written as the first entry
        """
        if stream is None:
            raise ValueError("Destination stream is required")

        self._gzip = gzip.GzipFile(fileobj=stream, mode="wb")
        self._tar = tarfile.open(fileobj=self._gzip, mode="w", format=tarfile.PAX_FORMAT)
        self._closed = False
        self._mtime = int(time.time())

        if manifest is not None:
            self.write_entry(manifest.model_dump_json().encode("utf-8"), MANIFEST_PATH)

    @property
    def closed(self) -> bool:
        return self._closed

    def write_entry(self, content: EntryContent, path: str) -> str:
        """
        Write one entry into the bundle.

        Args:
            content: bytes, text (UTF-8 encoded) or a binary stream
            path: Relative file path inside the bundle

        Returns:
            The normalized entry name
        """
        if self._closed:
            raise ValueError("Bundle writer is closed")
        if content is None:
            raise ValueError("Entry content is required")

        name = normalize_bundle_path(path)

        if isinstance(content, str):
            content = content.encode("utf-8")

        if isinstance(content, (bytes, bytearray)):
            size = len(content)
            stream: BinaryIO = io.BytesIO(content)
        elif content.seekable():
            start = content.tell()
            size = content.seek(0, io.SEEK_END) - start
            content.seek(start)
            stream = content
        else:
            data = content.read()
            size = len(data)
            stream = io.BytesIO(data)

        info = tarfile.TarInfo(name)
        info.size = size
        info.mtime = self._mtime
        info.mode = 0o644
        self._tar.addfile(info, stream)

        logger.debug("bundle_entry_written", path=name, size=size)
        return name

    def close(self) -> None:
        """Flush the tar end blocks and the gzip trailer."""
        if self._closed:
            return
        self._closed = True
        try:
            self._tar.close()
        finally:
            self._gzip.close()

    def __enter__(self) -> "BundleWriter":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
