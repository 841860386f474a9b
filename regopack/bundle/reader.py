"""
Policy Bundle Reader

Re-expands a compiled bundle into its policy, data and manifest entries.
When an entry name occurs more than once the first occurrence wins.
"""

from __future__ import annotations

import gzip
import json
import tarfile
import zlib
from typing import BinaryIO

from pydantic import BaseModel, Field, ValidationError

from regopack.bundle.writer import (
    DATA_PATH,
    MANIFEST_PATH,
    POLICY_PATH,
    BundleManifest,
    normalize_bundle_path,
)
from regopack.core.errors import BadResultError


class PolicyBundle(BaseModel):
    """Contents of a compiled policy bundle."""

    policy: bytes = Field(..., description="Compiled policy.wasm module")
    data: bytes | None = Field(default=None, description="data.json document, if any")
    manifest: BundleManifest | None = Field(default=None, description="Bundle manifest, if any")
    entries: list[str] = Field(default_factory=list, description="Entry names in archive order")


def read_bundle(stream: BinaryIO, source: str | None = None) -> PolicyBundle:
    """
    Read a tar+gzip policy bundle.

    Args:
        stream: Bundle stream, positioned at the start of the archive
        source: Identifier used in error messages

    Returns:
        PolicyBundle
    """
    if stream is None:
        raise ValueError("Bundle stream is required")

    found: dict[str, bytes] = {}
    entries: list[str] = []

    try:
        with tarfile.open(fileobj=stream, mode="r:gz") as tar:
            for member in tar:
                if not member.isfile():
                    continue

                name = normalize_bundle_path(member.name)
                entries.append(name)

                key = name.lower()
                if key in found or key not in (POLICY_PATH, DATA_PATH, MANIFEST_PATH):
                    continue

                extracted = tar.extractfile(member)
                if extracted is None:
                    raise BadResultError(f"Failed to read {member.name}", source=source)
                found[key] = extracted.read()
    except (tarfile.TarError, gzip.BadGzipFile, zlib.error, EOFError) as e:
        raise BadResultError(f"Failed to read bundle: {e}", source=source) from e

    policy = found.get(POLICY_PATH)
    if not policy:
        raise BadResultError("Bundle does not contain policy.wasm file", source=source)

    manifest = None
    if MANIFEST_PATH in found:
        try:
            manifest = BundleManifest(**json.loads(found[MANIFEST_PATH]))
        except (ValueError, TypeError, ValidationError) as e:
            raise BadResultError(f"Malformed bundle manifest: {e}", source=source) from e

    return PolicyBundle(
        policy=policy,
        data=found.get(DATA_PATH),
        manifest=manifest,
        entries=entries,
    )
