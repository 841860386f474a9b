"""
Compiles OPA bundles with the `opa` command line tool.

The tool is run as a child process per call. Standard error is scanned for
error text; everything else the tool prints is forwarded to the debug log.
"""

from __future__ import annotations

import asyncio
import re
import shlex
from dataclasses import dataclass

import structlog

from regopack.compilers.base import (
    BuildArgs,
    CompilerBackend,
    CompilerVersion,
    run_to_completion,
)
from regopack.core.errors import (
    CompilationFailedError,
    InvalidInputError,
    ToolNotFoundError,
)

logger = structlog.get_logger(__name__)

DEFAULT_TOOL = "opa"

_ERROR_TEXT = re.compile(
    r"^\s*error\b|\b\d+ errors? occurred\b|\brego_\w+_error\b",
    re.IGNORECASE | re.MULTILINE,
)

_VERSION_FIELDS = {
    "version": "version",
    "go version": "go_version",
    "build commit": "commit",
    "platform": "platform",
}


def build_argv(args: BuildArgs) -> list[str]:
    """
    Arguments for `opa build`, source path last.

    Raises:
        InvalidInputError: extra arguments are not valid shell syntax
    """
    argv = ["build", "-t", args.target]

    if args.bundle_mode:
        argv.append("-b")

    for entrypoint in args.entrypoints:
        argv.extend(["-e", entrypoint])

    if args.capabilities_file:
        argv.extend(["--capabilities", args.capabilities_file])
    elif args.capabilities_version:
        argv.extend(["--capabilities", args.capabilities_version])

    argv.extend(["--optimize", str(args.optimization_level)])

    if args.prune_unused:
        argv.append("--prune-unused")

    if args.debug:
        argv.append("--debug")

    for pattern in args.ignore:
        argv.extend(["--ignore", pattern])

    argv.extend(["-o", args.output_file])

    if args.extra_arguments and args.extra_arguments.strip():
        try:
            argv.extend(shlex.split(args.extra_arguments))
        except ValueError as e:
            raise InvalidInputError(
                f"Malformed extra arguments {args.extra_arguments!r}: {e}",
                source=args.source_path,
            ) from e

    argv.append(args.source_path)
    return argv


def parse_version(text: str) -> CompilerVersion:
    """Parse `opa version` output (`Key: value` lines)."""
    values: dict[str, str] = {}

    for line in text.splitlines():
        key, sep, value = line.partition(":")
        if not sep:
            continue
        field = _VERSION_FIELDS.get(key.strip().lower())
        if field and value.strip():
            values[field] = value.strip()

    return CompilerVersion(**values)


@dataclass
class ProcessResult:
    returncode: int
    stdout: str
    stderr: str


class CliBackend(CompilerBackend):
    """Runs the `opa` executable."""

    name = "cli"

    @property
    def tool_path(self) -> str:
        path = self.options.opa_tool_path
        return path if path and path.strip() else DEFAULT_TOOL

    async def _run(self, *argv: str, source: str | None = None) -> ProcessResult:
        try:
            process = await asyncio.create_subprocess_exec(
                self.tool_path,
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ToolNotFoundError(
                f"Failed to launch {self.tool_path}: {e}", source=source
            ) from e

        logger.debug("opa_started", tool=self.tool_path, argv=list(argv), pid=process.pid)

        stdout, stderr = await run_to_completion(process.communicate())
        return ProcessResult(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    def _check(
        self, result: ProcessResult, source: str | None, log_stdout: bool = True
    ) -> None:
        """Forward tool output to the log, raise on errors."""
        if log_stdout and result.stdout.strip():
            logger.debug("opa_output", output=result.stdout.strip())

        failed = result.returncode != 0 or bool(_ERROR_TEXT.search(result.stderr))

        if not failed:
            if result.stderr.strip():
                logger.debug("opa_output", output=result.stderr.strip())
            return

        diagnostics = result.stderr.strip() or result.stdout.strip()
        message = diagnostics or f"opa exited with code {result.returncode}"
        raise CompilationFailedError(message, source=source, diagnostics=diagnostics or None)

    async def version(self) -> CompilerVersion:
        result = await self._run("version")
        self._check(result, None)
        return parse_version(result.stdout)

    async def capabilities(self, version: str) -> bytes:
        result = await self._run("capabilities", "--version", version)
        self._check(result, version, log_stdout=False)
        return result.stdout.encode("utf-8")

    async def build(self, args: BuildArgs) -> None:
        result = await self._run(*build_argv(args), source=args.source_path)
        self._check(result, args.source_path)
