"""
Capabilities document merging.

A capabilities document lists the builtin functions a compile target
accepts. Merging appends a custom document's builtins to a version-pinned
baseline so both can be compiled against as one input.
"""

from __future__ import annotations

import json
from typing import Any, BinaryIO, Union

from regopack.core.errors import MalformedCapabilitiesError

CapabilitiesSource = Union[bytes, bytearray, str, BinaryIO]


def _load(document: CapabilitiesSource, label: str) -> dict[str, Any]:
    if document is None:
        raise MalformedCapabilitiesError(f"Capabilities document {label} is missing")

    if hasattr(document, "read"):
        document = document.read()

    try:
        tree = json.loads(document)
    except (ValueError, TypeError) as e:
        raise MalformedCapabilitiesError(
            f"Capabilities document {label} is not valid JSON: {e}"
        ) from e

    if not isinstance(tree, dict) or not isinstance(tree.get("builtins"), list):
        raise MalformedCapabilitiesError(
            f"Capabilities document {label} has no builtins array"
        )

    return tree


def merge_capabilities(
    document: CapabilitiesSource,
    extension: CapabilitiesSource,
) -> bytes:
    """
    Append the builtins of `extension` to those of `document`.

    No de-duplication is done; a builtin declared in both documents appears
    twice. Keys other than `builtins` are taken from `document` unchanged.

    Returns:
        UTF-8 encoded JSON of the merged document
    """
    base = _load(document, "1")
    extra = _load(extension, "2")

    base["builtins"].extend(extra["builtins"])

    return json.dumps(base).encode("utf-8")
