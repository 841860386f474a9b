"""
regopack Compiler Options

Options are an explicit value handed to a compiler at construction time.
`CompilerOptions.from_env()` builds one from REGOPACK_* environment
variables for hosts that configure through the environment.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Iterable

from pydantic import BaseModel, Field, field_validator


class BackendKind(str, Enum):
    """Available compiler backends."""

    CLI = "cli"
    INTEROP = "interop"


class CompilerOptions(BaseModel):
    """Members that affect compiler behavior."""

    backend: BackendKind = Field(
        default=BackendKind.CLI, description="Backend used to run compilations"
    )
    output_path: str | None = Field(
        default=None,
        description="Directory for intermediate artifacts; must exist and be writable",
    )
    capabilities_version: str | None = Field(
        default=None,
        description="OPA capabilities version merged with any custom capabilities",
    )
    preserve_build_artifacts: bool = Field(
        default=False, description="Keep the compiled bundle file after the stream is closed"
    )
    debug: bool = Field(default=False, description="Ask the compiler for debug output")
    prune_unused: bool = Field(default=False, description="Exclude dependents of entrypoints")
    optimization_level: int = Field(default=0, ge=0, le=2, description="Optimization level")
    ignore: list[str] = Field(
        default_factory=list,
        description="File and directory names to ignore during loading (e.g. '.*')",
    )

    # cli backend
    opa_tool_path: str | None = Field(default=None, description="Path to the opa executable")
    extra_arguments: str | None = Field(
        default=None, description="Extra arguments appended to `opa build`"
    )

    # interop backend
    interop_library_path: str | None = Field(
        default=None, description="Path to the native OPA interop library"
    )

    @field_validator("extra_arguments")
    @classmethod
    def validate_extra_arguments(cls, v: str | None) -> str | None:
        """Extra arguments must split like a shell command line."""
        if v:
            shlex.split(v)
        return v

    @classmethod
    def from_env(cls, **overrides) -> "CompilerOptions":
        """Build options from REGOPACK_* environment variables."""
        env = os.environ
        values: dict = {
            "backend": env.get("REGOPACK_BACKEND", BackendKind.CLI.value),
            "output_path": env.get("REGOPACK_OUTPUT_PATH") or None,
            "capabilities_version": env.get("REGOPACK_CAPABILITIES_VERSION") or None,
            "preserve_build_artifacts": _env_flag("REGOPACK_PRESERVE_BUILD_ARTIFACTS"),
            "debug": _env_flag("REGOPACK_DEBUG"),
            "prune_unused": _env_flag("REGOPACK_PRUNE_UNUSED"),
            "optimization_level": int(env.get("REGOPACK_OPTIMIZATION_LEVEL", "0")),
            "ignore": [p for p in env.get("REGOPACK_IGNORE", "").split(",") if p],
            "opa_tool_path": env.get("REGOPACK_OPA_PATH") or None,
            "extra_arguments": env.get("REGOPACK_EXTRA_ARGUMENTS") or None,
            "interop_library_path": env.get("REGOPACK_INTEROP_LIBRARY") or None,
        }
        values.update(overrides)
        return cls(**values)


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "false").lower() in ("1", "true", "yes")


def unique_ordered(values: Iterable[str] | None) -> tuple[str, ...]:
    """De-duplicate while keeping first-seen order."""
    if not values:
        return ()
    return tuple(dict.fromkeys(values))


@dataclass(frozen=True)
class CompilationParameters:
    """Per-call compilation inputs."""

    is_bundle: bool = False
    entrypoints: tuple[str, ...] = ()
    # Takes precedence over capabilities_stream when both are set.
    capabilities_file: str | None = None
    capabilities_stream: BinaryIO | None = None
    capabilities_version: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "entrypoints", unique_ordered(self.entrypoints))


__all__ = [
    "BackendKind",
    "CompilerOptions",
    "CompilationParameters",
    "unique_ordered",
]
