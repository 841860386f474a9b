"""
Shared fixtures: a fake `opa` executable, a fake interop library and a
scriptable in-process backend.
"""

import ctypes
import io
import json
import os
import stat
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

from regopack.bundle.writer import BundleWriter
from regopack.compilers.base import BuildArgs, CompilerBackend, CompilerVersion
from regopack.compilers.interop_abi import OpaBuildResult, OpaVersion

SIMPLE_POLICY_SOURCE = """package example
import future.keywords.if
default allow := false
"""

SIMPLE_POLICY_ENTRYPOINTS = ["example/allow"]

BASELINE_CAPABILITIES = {"builtins": [{"name": "baseline_fn"}], "wasm_abi_versions": []}

WASM_MODULE = b"\x00asm\x01\x00\x00\x00fake-module"


def make_compiled_bundle(policy: bytes = WASM_MODULE, data: bytes | None = b"{}") -> bytes:
    """A bundle as the compiler would produce it."""
    buffer = io.BytesIO()
    with BundleWriter(buffer) as writer:
        writer.write_entry(policy, "/policy.wasm")
        if data is not None:
            writer.write_entry(data, "/data.json")
    return buffer.getvalue()


# =============================================================================
# Fake opa executable
# =============================================================================

FAKE_OPA_SCRIPT = r'''
import io
import json
import os
import sys
import tarfile

LOG = os.path.join(os.path.dirname(os.path.abspath(__file__)), "calls.jsonl")
BASELINE = {baseline!r}


def log(record):
    with open(LOG, "a") as f:
        f.write(json.dumps(record) + "\n")


def read_sources(path):
    if os.path.isdir(path):
        texts = []
        for root, _, files in os.walk(path):
            for name in files:
                if name.endswith(".rego"):
                    with open(os.path.join(root, name)) as f:
                        texts.append(f.read())
        return texts
    if path.endswith(".tar.gz"):
        texts = []
        with tarfile.open(path, "r:gz") as tar:
            for member in tar:
                if member.isfile() and member.name.endswith(".rego"):
                    texts.append(tar.extractfile(member).read().decode())
        return texts
    with open(path) as f:
        return [f.read()]


def option_values(argv, flag):
    return [argv[i + 1] for i, a in enumerate(argv[:-1]) if a == flag]


def main(argv):
    if argv[0] == "version":
        print("Version: 0.60.0")
        print("Build Commit: abc123")
        print("Build Timestamp: 2024-01-01T00:00:00Z")
        print("Go Version: go1.21.5")
        print("Platform: linux/amd64")
        print("WebAssembly: available")
        return 0

    if argv[0] == "capabilities":
        version = option_values(argv, "--version")[0]
        log({{"argv": argv}})
        if version == "v0.0.0":
            print("error: no such capabilities version", file=sys.stderr)
            return 1
        print(json.dumps(BASELINE))
        return 0

    if argv[0] != "build":
        print("error: unknown command " + argv[0], file=sys.stderr)
        return 1

    caps = option_values(argv, "--capabilities")
    record = {{"argv": argv, "capabilities": None}}
    if caps and os.path.isfile(caps[0]):
        with open(caps[0]) as f:
            record["capabilities"] = json.load(f)
    log(record)

    source = argv[-1]
    output = option_values(argv, "-o")[0]
    entrypoints = option_values(argv, "-e")

    print("debug: loading " + source)

    for text in read_sources(source):
        if "package " not in text:
            print("error: 1 error occurred: policy.rego:1: rego_parse_error: package expected",
                  file=sys.stderr)
            return 1

    if "no/output" in entrypoints:
        return 0

    if "warn/stderr" in entrypoints:
        print("warning: something to look at", file=sys.stderr)

    if "fail/stderr" in entrypoints:
        print("error: 1 error occurred: rego_type_error: undefined function", file=sys.stderr)
        return 0

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, data in (("/policy.wasm", {wasm!r}), ("/data.json", b"{{}}")):
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    with open(output, "wb") as f:
        f.write(buffer.getvalue())
    return 0


sys.exit(main(sys.argv[1:]))
'''


class FakeOpa:
    """Handle on the fake executable and the calls it recorded."""

    def __init__(self, directory: Path):
        self.directory = directory
        self.path = directory / "opa"
        self.path.write_text(
            f"#!{sys.executable}\n"
            + FAKE_OPA_SCRIPT.format(baseline=BASELINE_CAPABILITIES, wasm=WASM_MODULE)
        )
        self.path.chmod(self.path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    @property
    def calls(self) -> list[dict]:
        log = self.directory / "calls.jsonl"
        if not log.exists():
            return []
        return [json.loads(line) for line in log.read_text().splitlines() if line]

    @property
    def build_calls(self) -> list[dict]:
        return [c for c in self.calls if c["argv"][0] == "build"]


@pytest.fixture
def fake_opa(tmp_path):
    """A fake `opa` executable in its own directory."""
    if os.name == "nt":
        pytest.skip("fake opa script needs a POSIX shebang")
    tool_dir = tmp_path / "tool"
    tool_dir.mkdir()
    return FakeOpa(tool_dir)


# =============================================================================
# Fake interop library
# =============================================================================

class FakeInteropLibrary:
    """
    Python stand-in for the native library.

    Works on real ctypes memory and tracks every allocation so tests can
    assert that everything handed out was released exactly once.
    """

    def __init__(
        self,
        payload: bytes | None = None,
        errors: str | None = None,
        log: str | None = None,
        status: int = 0,
        abi: int = 1,
        null_result: bool = False,
        capabilities: bytes | None = None,
    ):
        self.payload = make_compiled_bundle() if payload is None else payload
        self.errors = errors
        self.log = log
        self.status = status
        self.abi = abi
        self.null_result = null_result
        self.capabilities = (
            json.dumps(BASELINE_CAPABILITIES).encode() if capabilities is None else capabilities
        )
        self.allocations: dict[int, object] = {}
        self.results: dict[int, tuple] = {}
        self.versions: dict[int, object] = {}
        self.calls: list[dict] = []
        self.capability_requests: list[str] = []
        self.freed: list[int] = []

    def _respond(self, result_pp, payload: bytes) -> int:
        if self.null_result:
            return self.status

        result = OpaBuildResult()
        keep = []
        if payload:
            buffer = ctypes.create_string_buffer(payload, len(payload))
            keep.append(buffer)
            result.result = ctypes.addressof(buffer)
            result.result_len = len(payload)
        if self.errors:
            result.errors = self.errors.encode()
        if self.log:
            result.log = self.log.encode()

        self.results[ctypes.addressof(result)] = (result, keep)
        result_pp[0] = ctypes.pointer(result)
        return self.status

    def namespace(self) -> SimpleNamespace:
        fake = self

        def OpaAbiVersion():
            return fake.abi

        def OpaAlloc(size):
            buffer = ctypes.create_string_buffer(size)
            address = ctypes.addressof(buffer)
            fake.allocations[address] = buffer
            return address

        def OpaFreeMem(address):
            del fake.allocations[address]
            fake.freed.append(address)

        def OpaGetVersion():
            version = OpaVersion(b"0.60.0", b"go1.21.5", b"abc123", b"linux/amd64")
            fake.versions[ctypes.addressof(version)] = version
            return ctypes.pointer(version)

        def OpaFreeVersion(pointer):
            del fake.versions[ctypes.addressof(pointer.contents)]

        def OpaBuildEx(params_p, result_pp):
            params = params_p.contents
            fake.calls.append({
                "abi_version": params.abi_version,
                "source": params.source.decode(),
                "target": params.target.decode(),
                "capabilities_file": (params.capabilities_file or b"").decode() or None,
                "capabilities_version": (params.capabilities_version or b"").decode() or None,
                "bundle_mode": params.bundle_mode,
                "entrypoints": [
                    params.entrypoints[i].decode() for i in range(params.entrypoints_len)
                ],
                "ignore": [params.ignore[i].decode() for i in range(params.ignore_len)],
                "prune_unused": params.prune_unused,
                "debug": params.debug,
                "live_allocations": len(fake.allocations),
            })
            return fake._respond(result_pp, fake.payload)

        def OpaGetCapabilities(version, result_pp):
            fake.capability_requests.append(version.decode())
            return fake._respond(result_pp, fake.capabilities)

        def OpaFree(pointer):
            del fake.results[ctypes.addressof(pointer.contents)]

        return SimpleNamespace(
            OpaAbiVersion=OpaAbiVersion,
            OpaAlloc=OpaAlloc,
            OpaFreeMem=OpaFreeMem,
            OpaGetVersion=OpaGetVersion,
            OpaFreeVersion=OpaFreeVersion,
            OpaBuildEx=OpaBuildEx,
            OpaGetCapabilities=OpaGetCapabilities,
            OpaFree=OpaFree,
        )

    @property
    def leaked(self) -> int:
        return len(self.allocations) + len(self.results) + len(self.versions)


# =============================================================================
# Scriptable in-process backend
# =============================================================================

class ScriptedBackend(CompilerBackend):
    """Backend that records BuildArgs and does what the test asks."""

    name = "scripted"

    def __init__(
        self,
        options=None,
        write_output: bool = True,
        error: Exception | None = None,
        supports_bundle_archive: bool = True,
        capabilities_document: bytes | None = None,
        capabilities_error: Exception | None = None,
    ):
        super().__init__(options)
        self.capabilities_error = capabilities_error
        self.write_output = write_output
        self.error = error
        self.supports_bundle_archive = supports_bundle_archive
        self.capabilities_document = (
            json.dumps(BASELINE_CAPABILITIES).encode()
            if capabilities_document is None
            else capabilities_document
        )
        self.builds: list[BuildArgs] = []
        self.sources_seen: list[bytes] = []
        self.capabilities_seen: list[dict | None] = []
        self.capability_requests: list[str] = []

    async def version(self) -> CompilerVersion:
        return CompilerVersion(version="0.60.0", go_version="go1.21.5", commit="abc", platform="test")

    async def capabilities(self, version: str) -> bytes:
        self.capability_requests.append(version)
        if self.capabilities_error is not None:
            raise self.capabilities_error
        return self.capabilities_document

    async def build(self, args: BuildArgs) -> None:
        self.builds.append(args)

        source = Path(args.source_path)
        self.sources_seen.append(source.read_bytes() if source.is_file() else b"")

        caps = None
        if args.capabilities_file:
            caps = json.loads(Path(args.capabilities_file).read_text())
        self.capabilities_seen.append(caps)

        if self.error is not None:
            if self.write_output:
                Path(args.output_file).write_bytes(b"partial")
            raise self.error

        if self.write_output:
            Path(args.output_file).write_bytes(make_compiled_bundle())
