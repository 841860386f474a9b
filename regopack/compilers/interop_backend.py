"""
Compiles OPA bundles in-process through the native interop library.

Foreign calls and the output write are blocking; they run on a worker thread and are always
allowed to finish so foreign memory is released by its owner.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import replace
from pathlib import Path

import structlog

from regopack.compilers.base import (
    BuildArgs,
    CompilerBackend,
    CompilerVersion,
    run_to_completion,
)
from regopack.compilers.interop_abi import NativeLibrary
from regopack.core.options import CompilerOptions

logger = structlog.get_logger(__name__)


class InteropBackend(CompilerBackend):
    """Calls the OPA compiler through its C ABI."""

    name = "interop"

    def __init__(
        self,
        options: CompilerOptions | None = None,
        library: NativeLibrary | None = None,
    ):
        super().__init__(options)
        self._library = library
        self._lock = threading.Lock()

    @property
    def library(self) -> NativeLibrary:
        """The native library, loaded on first use."""
        with self._lock:
            if self._library is None:
                self._library = NativeLibrary.load(self.options.interop_library_path)
            return self._library

    async def version(self) -> CompilerVersion:
        return await run_to_completion(asyncio.to_thread(lambda: self.library.version()))

    async def capabilities(self, version: str) -> bytes:
        return await run_to_completion(
            asyncio.to_thread(lambda: self.library.capabilities(version))
        )

    async def build(self, args: BuildArgs) -> None:
        source = args.source_path
        if source.startswith("./"):
            source = source[2:]

        if args.extra_arguments:
            logger.debug("interop_extra_arguments_ignored", extra_arguments=args.extra_arguments)

        native_args = replace(args, source_path=source)
        size = await run_to_completion(
            asyncio.to_thread(self._build_to_file, native_args)
        )

        logger.debug("interop_bundle_written", path=args.output_file, size=size)

    def _build_to_file(self, args: BuildArgs) -> int:
        payload = self.library.build(args)
        return Path(args.output_file).write_bytes(payload)
