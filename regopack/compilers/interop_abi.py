"""
ctypes binding for the native OPA interop library, ABI version 1.

C declarations of the pinned layout:

    struct OpaVersion {
        char* libVersion;
        char* goVersion;
        char* commit;
        char* platform;
    };

    struct OpaBuildParams {
        int abiVersion;
        char* source;
        char* target;
        char* capabilitiesFile;
        char* capabilitiesVersion;
        int bundleMode;
        char** entrypoints;
        int entrypointsLen;
        int optimizationLevel;
        int pruneUnused;
        int debug;
        char** ignore;
        int ignoreLen;
    };

    struct OpaBuildResult {
        void* result;
        int resultLen;
        char* errors;
        char* log;
    };

    int OpaAbiVersion(void);
    struct OpaVersion* OpaGetVersion(void);
    void OpaFreeVersion(struct OpaVersion*);
    int OpaGetCapabilities(char* version, struct OpaBuildResult** result);
    int OpaBuildEx(struct OpaBuildParams* params, struct OpaBuildResult** result);
    void OpaFree(struct OpaBuildResult*);
    void* OpaAlloc(size_t size);
    void OpaFreeMem(void* ptr);

Any change to these structs requires bumping ABI_VERSION.
"""

from __future__ import annotations

import ctypes
import ctypes.util
import os
from contextlib import ExitStack, contextmanager
from typing import Any, Iterator, Sequence

import structlog

from regopack.compilers.base import BuildArgs, CompilerVersion
from regopack.core.errors import (
    BackendUnavailableError,
    BadResultError,
    CompilationFailedError,
)

logger = structlog.get_logger(__name__)

ABI_VERSION = 1
LIBRARY_NAME = "opa-interop"
LIBRARY_ENV = "REGOPACK_INTEROP_LIBRARY"


class OpaVersion(ctypes.Structure):
    _fields_ = [
        ("lib_version", ctypes.c_char_p),
        ("go_version", ctypes.c_char_p),
        ("commit", ctypes.c_char_p),
        ("platform", ctypes.c_char_p),
    ]


class OpaBuildParams(ctypes.Structure):
    _fields_ = [
        ("abi_version", ctypes.c_int),
        ("source", ctypes.c_char_p),
        ("target", ctypes.c_char_p),
        ("capabilities_file", ctypes.c_char_p),
        ("capabilities_version", ctypes.c_char_p),
        ("bundle_mode", ctypes.c_int),
        ("entrypoints", ctypes.POINTER(ctypes.c_char_p)),
        ("entrypoints_len", ctypes.c_int),
        ("optimization_level", ctypes.c_int),
        ("prune_unused", ctypes.c_int),
        ("debug", ctypes.c_int),
        ("ignore", ctypes.POINTER(ctypes.c_char_p)),
        ("ignore_len", ctypes.c_int),
    ]


class OpaBuildResult(ctypes.Structure):
    _fields_ = [
        ("result", ctypes.c_void_p),
        ("result_len", ctypes.c_int),
        ("errors", ctypes.c_char_p),
        ("log", ctypes.c_char_p),
    ]


_SIGNATURES: dict[str, tuple[Any, list[Any]]] = {
    "OpaAbiVersion": (ctypes.c_int, []),
    "OpaGetVersion": (ctypes.POINTER(OpaVersion), []),
    "OpaFreeVersion": (None, [ctypes.POINTER(OpaVersion)]),
    "OpaGetCapabilities": (
        ctypes.c_int,
        [ctypes.c_char_p, ctypes.POINTER(ctypes.POINTER(OpaBuildResult))],
    ),
    "OpaBuildEx": (
        ctypes.c_int,
        [ctypes.POINTER(OpaBuildParams), ctypes.POINTER(ctypes.POINTER(OpaBuildResult))],
    ),
    "OpaFree": (None, [ctypes.POINTER(OpaBuildResult)]),
    "OpaAlloc": (ctypes.c_void_p, [ctypes.c_size_t]),
    "OpaFreeMem": (None, [ctypes.c_void_p]),
}


def _encode(value: str | None) -> bytes | None:
    return value.encode("utf-8") if value else None


def _decode(value: bytes | None) -> str | None:
    return value.decode("utf-8", errors="replace") if value else None


# -----------------------------------------------------------------------------
# Foreign allocation guards
# -----------------------------------------------------------------------------


@contextmanager
def foreign_string(lib: Any, value: str) -> Iterator[int]:
    """NUL-terminated copy of `value` in library-owned memory."""
    data = value.encode("utf-8")
    address = lib.OpaAlloc(len(data) + 1)
    if not address:
        raise MemoryError(f"OpaAlloc failed for {len(data) + 1} bytes")
    try:
        ctypes.memmove(address, data, len(data))
        ctypes.memset(address + len(data), 0, 1)
        yield address
    finally:
        lib.OpaFreeMem(address)


@contextmanager
def foreign_string_array(lib: Any, values: Sequence[str]) -> Iterator[tuple[Any, int]]:
    """`char**` array of individually allocated strings, plus its length."""
    if not values:
        yield None, 0
        return

    with ExitStack() as stack:
        addresses = [stack.enter_context(foreign_string(lib, v)) for v in values]

        array = lib.OpaAlloc(ctypes.sizeof(ctypes.c_void_p) * len(addresses))
        if not array:
            raise MemoryError("OpaAlloc failed for string array")
        stack.callback(lib.OpaFreeMem, array)

        slots = (ctypes.c_void_p * len(addresses)).from_address(array)
        for i, address in enumerate(addresses):
            slots[i] = address

        yield ctypes.cast(array, ctypes.POINTER(ctypes.c_char_p)), len(addresses)


@contextmanager
def result_handle(lib: Any) -> Iterator[Any]:
    """Out-parameter receiving an OpaBuildResult; freed with OpaFree."""
    handle = ctypes.POINTER(OpaBuildResult)()
    try:
        yield handle
    finally:
        if handle:
            lib.OpaFree(handle)


@contextmanager
def version_handle(lib: Any) -> Iterator[Any]:
    handle = lib.OpaGetVersion()
    try:
        yield handle
    finally:
        if handle:
            lib.OpaFreeVersion(handle)


# -----------------------------------------------------------------------------
# Library
# -----------------------------------------------------------------------------


class NativeLibrary:
    """A loaded interop library with its ABI checked."""

    def __init__(self, lib: Any):
        for name, (restype, argtypes) in _SIGNATURES.items():
            try:
                func = getattr(lib, name)
            except AttributeError as e:
                raise BackendUnavailableError(
                    f"Interop library does not export {name}"
                ) from e
            func.restype = restype
            func.argtypes = argtypes

        abi = lib.OpaAbiVersion()
        if abi != ABI_VERSION:
            raise BackendUnavailableError(
                f"Interop library ABI version {abi} is not supported (expected {ABI_VERSION})"
            )

        self._lib = lib

    @classmethod
    def load(cls, path: str | None = None) -> "NativeLibrary":
        """
        Locate and load the library.

        Lookup order: explicit path, $REGOPACK_INTEROP_LIBRARY, then the
        platform library search for `opa-interop`.
        """
        path = path or os.environ.get(LIBRARY_ENV) or ctypes.util.find_library(LIBRARY_NAME)
        if not path:
            raise BackendUnavailableError(
                f"Interop library {LIBRARY_NAME} not found; set {LIBRARY_ENV}"
            )

        try:
            lib = ctypes.CDLL(path)
        except OSError as e:
            raise BackendUnavailableError(f"Failed to load interop library {path}: {e}") from e

        logger.debug("interop_library_loaded", path=path)
        return cls(lib)

    def version(self) -> CompilerVersion:
        with version_handle(self._lib) as handle:
            if not handle:
                raise BackendUnavailableError("Failed to get version")
            v = handle.contents
            return CompilerVersion(
                version=_decode(v.lib_version),
                go_version=_decode(v.go_version),
                commit=_decode(v.commit),
                platform=_decode(v.platform),
            )

    def capabilities(self, version: str) -> bytes:
        with result_handle(self._lib) as handle:
            status = self._lib.OpaGetCapabilities(_encode(version), ctypes.pointer(handle))
            return self._take_payload(handle, status, version)

    def build(self, args: BuildArgs) -> bytes:
        with ExitStack() as stack:
            entrypoints, entrypoints_len = stack.enter_context(
                foreign_string_array(self._lib, args.entrypoints)
            )
            ignore, ignore_len = stack.enter_context(
                foreign_string_array(self._lib, args.ignore)
            )

            # A capabilities file already carries any merged version baseline.
            version = None if args.capabilities_file else args.capabilities_version

            params = OpaBuildParams(
                abi_version=ABI_VERSION,
                source=_encode(args.source_path),
                target=_encode(args.target),
                capabilities_file=_encode(args.capabilities_file),
                capabilities_version=_encode(version),
                bundle_mode=int(args.bundle_mode),
                entrypoints=entrypoints,
                entrypoints_len=entrypoints_len,
                optimization_level=args.optimization_level,
                prune_unused=int(args.prune_unused),
                debug=int(args.debug),
                ignore=ignore,
                ignore_len=ignore_len,
            )

            handle = stack.enter_context(result_handle(self._lib))
            status = self._lib.OpaBuildEx(ctypes.pointer(params), ctypes.pointer(handle))
            return self._take_payload(handle, status, args.source_path)

    def _take_payload(self, handle: Any, status: int, source: str) -> bytes:
        """Copy the payload out of a result; the handle is freed by the caller."""
        if not handle:
            if status == 0:
                raise BadResultError("Bad result", source=source)
            raise CompilationFailedError("Compilation failed", source=source)

        result = handle.contents
        log = _decode(result.log)
        errors = _decode(result.errors)

        if log and log.strip():
            logger.debug("interop_build_log", log=log.strip())

        if errors and errors.strip():
            raise CompilationFailedError(errors.strip(), source=source, diagnostics=errors)

        if status != 0:
            raise CompilationFailedError("Unknown compilation error", source=source)

        if not result.result or result.result_len <= 0:
            raise BadResultError("Bad result", source=source)

        return ctypes.string_at(result.result, result.result_len)
