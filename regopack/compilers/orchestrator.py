"""
regopack Compilation Orchestrator

Purpose: Turn policy source, a bundle directory, a bundle archive or an
archive stream into a compiled OPA bundle using the configured backend.

Per call the stages run in order:
    resolve input -> resolve capabilities -> provision artifacts
    -> invoke backend -> validate output -> cleanup -> return

Every temp artifact created along the way is registered on one ExitStack,
so cleanup runs in reverse order whichever stage fails. A successfully
produced output file is detached from the stack and handed to the caller.
"""

from __future__ import annotations

import io
import os
import shutil
import tempfile
from contextlib import ExitStack
from pathlib import Path
from typing import BinaryIO, Callable, Iterable

import structlog

from regopack.bundle.capabilities import merge_capabilities
from regopack.bundle.writer import BundleWriter
from regopack.compilers.base import BuildArgs, CompilerBackend, CompilerVersion
from regopack.compilers.cli_backend import CliBackend
from regopack.compilers.interop_backend import InteropBackend
from regopack.core.artifacts import DeleteOnCloseFile, TempArtifact
from regopack.core.errors import (
    InvalidInputError,
    MalformedCapabilitiesError,
    MissingOutputArtifactError,
    RegoCompilationError,
)
from regopack.core.logging import compilation_context, log_error
from regopack.core.metrics import track_compilation
from regopack.core.options import (
    BackendKind,
    CompilationParameters,
    CompilerOptions,
    unique_ordered,
)

logger = structlog.get_logger(__name__)

SOURCE_ENTRY = "policy.rego"
STREAM_SOURCE = "<stream>"
INLINE_SOURCE = "<source>"

# Returns the filesystem path the backend should compile.
Materializer = Callable[[ExitStack, Path], str]

BACKENDS: dict[BackendKind, type[CompilerBackend]] = {
    BackendKind.CLI: CliBackend,
    BackendKind.INTEROP: InteropBackend,
}


def create_backend(options: CompilerOptions) -> CompilerBackend:
    """Instantiate the backend named by `options.backend`."""
    return BACKENDS[BackendKind(options.backend)](options)


def normalize_path(path: str | os.PathLike) -> str:
    return os.fspath(path).replace("\\", "/")


class RegoCompiler:
    """
    Compiles OPA policy bundles.

    Usage:
        compiler = RegoCompiler(CompilerOptions(backend="cli"))
        with await compiler.compile_source(source, ["example/allow"]) as bundle:
            policy = read_bundle(bundle)
    """

    def __init__(
        self,
        options: CompilerOptions | None = None,
        backend: CompilerBackend | None = None,
    ):
        self.options = options or CompilerOptions()
        self.backend = backend or create_backend(self.options)

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def version(self) -> CompilerVersion:
        """Compiler version information."""
        return await self.backend.version()

    async def compile_bundle(
        self,
        bundle_path: str | os.PathLike,
        entrypoints: Iterable[str] | None = None,
        capabilities_file: str | os.PathLike | None = None,
    ) -> BinaryIO:
        """
        Compile a bundle directory or bundle archive.

        Args:
            bundle_path: Bundle directory or bundle archive path
            entrypoints: Documents that will be queried for policy decisions
            capabilities_file: Capabilities JSON the policies may depend on

        Returns:
            Compiled bundle stream
        """
        if not bundle_path:
            raise ValueError("bundle_path must not be empty")

        parameters = CompilationParameters(
            is_bundle=True,
            entrypoints=unique_ordered(entrypoints),
            capabilities_file=os.fspath(capabilities_file) if capabilities_file else None,
        )
        return await self.compile_path(bundle_path, parameters)

    async def compile_file(
        self,
        source_file_path: str | os.PathLike,
        entrypoints: Iterable[str] | None = None,
    ) -> BinaryIO:
        """Compile a single .rego source file."""
        if not source_file_path:
            raise ValueError("source_file_path must not be empty")

        parameters = CompilationParameters(
            is_bundle=False,
            entrypoints=unique_ordered(entrypoints),
        )
        return await self.compile_path(source_file_path, parameters)

    async def compile_stream_source(
        self,
        bundle: BinaryIO,
        entrypoints: Iterable[str] | None = None,
        capabilities_json: BinaryIO | None = None,
    ) -> BinaryIO:
        """Compile a bundle archive held in a stream."""
        parameters = CompilationParameters(
            is_bundle=True,
            entrypoints=unique_ordered(entrypoints),
            capabilities_stream=capabilities_json,
        )
        return await self.compile_stream(bundle, parameters)

    async def compile_source(
        self,
        source: str,
        entrypoints: Iterable[str] | None = None,
    ) -> BinaryIO:
        """Compile Rego policy source text."""
        if not source:
            raise ValueError("source must not be empty")

        entrypoints = unique_ordered(entrypoints)

        if self.backend.supports_bundle_archive:
            buffer = io.BytesIO()
            with BundleWriter(buffer) as writer:
                writer.write_entry(source, SOURCE_ENTRY)
            buffer.seek(0)

            parameters = CompilationParameters(is_bundle=True, entrypoints=entrypoints)
            return await self._compile_stream(buffer, parameters, INLINE_SOURCE)

        def materialize(stack: ExitStack, output_dir: Path) -> str:
            artifact = stack.enter_context(TempArtifact.create(output_dir, ".rego"))
            artifact.path.write_text(source, encoding="utf-8")
            return normalize_path(artifact.path)

        parameters = CompilationParameters(is_bundle=False, entrypoints=entrypoints)
        return await self._compile(INLINE_SOURCE, parameters, materialize)

    async def compile_path(
        self,
        path: str | os.PathLike,
        parameters: CompilationParameters,
    ) -> BinaryIO:
        """Compile a source file, bundle directory or bundle archive."""
        if not path:
            raise ValueError("path must not be empty")
        if parameters is None:
            raise ValueError("parameters are required")

        source_id = normalize_path(path)

        def materialize(stack: ExitStack, output_dir: Path) -> str:
            full_path = Path(source_id).resolve()
            if not full_path.exists():
                raise InvalidInputError(f"Source {full_path} was not found", source=source_id)
            return normalize_path(full_path)

        return await self._compile(source_id, parameters, materialize)

    async def compile_stream(
        self,
        bundle: BinaryIO,
        parameters: CompilationParameters,
    ) -> BinaryIO:
        """Compile a bundle archive stream; it is persisted to a temp file first."""
        if bundle is None:
            raise ValueError("bundle stream is required")
        if parameters is None:
            raise ValueError("parameters are required")

        return await self._compile_stream(bundle, parameters, STREAM_SOURCE)

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    async def _compile_stream(
        self,
        bundle: BinaryIO,
        parameters: CompilationParameters,
        source_id: str,
    ) -> BinaryIO:
        def materialize(stack: ExitStack, output_dir: Path) -> str:
            artifact = stack.enter_context(TempArtifact.create(output_dir, ".tar.gz"))
            with open(artifact.path, "xb") as fs:
                shutil.copyfileobj(bundle, fs)
            return normalize_path(artifact.path)

        return await self._compile(source_id, parameters, materialize)

    def _output_dir(self) -> Path:
        if self.options.output_path:
            return Path(normalize_path(self.options.output_path))
        return Path(tempfile.gettempdir())

    async def _compile(
        self,
        source_id: str,
        parameters: CompilationParameters,
        materialize: Materializer,
    ) -> BinaryIO:
        output_dir = self._output_dir()

        with compilation_context(source=source_id, backend=self.backend.name), \
                track_compilation(self.backend.name):
            try:
                with ExitStack() as stack:
                    source_path = materialize(stack, output_dir)
                    capabilities_file = await self._resolve_capabilities(
                        stack, parameters, output_dir, source_id
                    )
                    output = stack.enter_context(TempArtifact.create(output_dir, ".tar.gz"))

                    args = BuildArgs(
                        source_path=source_path,
                        output_file=normalize_path(output.path),
                        bundle_mode=parameters.is_bundle,
                        entrypoints=parameters.entrypoints,
                        capabilities_file=capabilities_file,
                        capabilities_version=self._capabilities_version(parameters),
                        optimization_level=self.options.optimization_level,
                        prune_unused=self.options.prune_unused,
                        debug=self.options.debug,
                        ignore=unique_ordered(self.options.ignore),
                        extra_arguments=self.options.extra_arguments,
                    )

                    await self.backend.build(args)

                    if not output.path.is_file():
                        raise MissingOutputArtifactError(
                            f"Failed to locate expected output file {output.path}",
                            source=source_id,
                        )

                    result = self._open_result(output)
            except RegoCompilationError as e:
                log_error(logger, e, "compilation_failed", source=source_id)
                raise
            except OSError as e:
                error = RegoCompilationError(f"Build artifact I/O failed: {e}", source=source_id)
                log_error(logger, error, "compilation_failed", source=source_id)
                raise error from e

            logger.info("compilation_succeeded", source=source_id)
            return result

    def _capabilities_version(self, parameters: CompilationParameters) -> str | None:
        return parameters.capabilities_version or self.options.capabilities_version

    async def _resolve_capabilities(
        self,
        stack: ExitStack,
        parameters: CompilationParameters,
        output_dir: Path,
        source_id: str,
    ) -> str | None:
        """
        Reduce the capabilities inputs to at most one file path.

        With a version tag and a custom document, the baseline for that
        version is fetched from the backend and the two are merged into a
        fresh temp file.
        """
        version = self._capabilities_version(parameters)

        if parameters.capabilities_file:
            caps_path = Path(normalize_path(parameters.capabilities_file)).resolve()
            if not caps_path.is_file():
                raise InvalidInputError(
                    f"Capabilities file {caps_path} was not found", source=source_id
                )
            if not version:
                return normalize_path(caps_path)
            document = caps_path.read_bytes()
        elif parameters.capabilities_stream is not None:
            document = parameters.capabilities_stream.read()
            if not version:
                return self._write_capabilities(stack, output_dir, document)
        else:
            return None

        try:
            baseline = await self.backend.capabilities(version)
        except RegoCompilationError as e:
            raise type(e)(
                f"Failed to fetch capabilities {version}: {e.message}",
                source=source_id,
                diagnostics=e.diagnostics,
            ) from e

        try:
            merged = merge_capabilities(baseline, document)
        except MalformedCapabilitiesError as e:
            raise MalformedCapabilitiesError(
                f"Failed to parse capabilities: {e.message}", source=source_id
            ) from e

        logger.debug("capabilities_merged", version=version)
        return self._write_capabilities(stack, output_dir, merged)

    def _write_capabilities(self, stack: ExitStack, output_dir: Path, document: bytes) -> str:
        artifact = stack.enter_context(TempArtifact.create(output_dir, ".json"))
        with open(artifact.path, "xb") as fs:
            fs.write(document)
        return normalize_path(artifact.path)

    def _open_result(self, output: TempArtifact) -> BinaryIO:
        if self.options.preserve_build_artifacts:
            stream: BinaryIO = open(output.path, "rb")
        else:
            stream = DeleteOnCloseFile(output.path)

        output.detach()
        return stream
