"""
Compiler backend interface.

Both backends (the `opa` executable and the native interop library) take
the same BuildArgs record and must leave the compiled bundle at
`BuildArgs.output_file`. The orchestrator only talks to this interface.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, TypeVar

from pydantic import BaseModel, Field

from regopack.core.options import CompilerOptions

T = TypeVar("T")

BUILD_TARGET = "wasm"


class CompilerVersion(BaseModel):
    """Compiler version information."""

    version: str | None = Field(default=None, description="OPA library version")
    go_version: str | None = Field(default=None, description="Go runtime version")
    commit: str | None = Field(default=None, description="Build commit hash")
    platform: str | None = Field(default=None, description="Platform triple")


@dataclass(frozen=True)
class BuildArgs:
    """Normalized build parameters handed to a backend."""

    source_path: str
    output_file: str
    bundle_mode: bool = False
    entrypoints: tuple[str, ...] = ()
    capabilities_file: str | None = None
    capabilities_version: str | None = None
    optimization_level: int = 0
    prune_unused: bool = False
    debug: bool = False
    ignore: tuple[str, ...] = ()
    extra_arguments: str | None = None
    target: str = BUILD_TARGET


class CompilerBackend(ABC):
    """A mechanism that turns policy sources into a compiled bundle."""

    name: str = "backend"

    # Whether raw source may be handed over wrapped in a bundle archive.
    # Backends that can't read archives get a plain .rego file instead.
    supports_bundle_archive: bool = True

    def __init__(self, options: CompilerOptions | None = None):
        self.options = options or CompilerOptions()

    @abstractmethod
    async def version(self) -> CompilerVersion:
        """Return compiler version information."""

    @abstractmethod
    async def capabilities(self, version: str) -> bytes:
        """Return the baseline capabilities document for an OPA version."""

    @abstractmethod
    async def build(self, args: BuildArgs) -> None:
        """Compile `args.source_path` into `args.output_file`."""


async def run_to_completion(awaitable: Awaitable[T]) -> T:
    """
    Await `awaitable` without letting caller cancellation interrupt it.

    A running process or foreign call cannot be torn down safely, so on
    cancellation this waits for the work to finish and then re-raises.
    """
    task = asyncio.ensure_future(awaitable)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        await asyncio.wait({task})
        if not task.cancelled():
            task.exception()
        raise
