"""
Tests for the opa command line backend.

Process tests run against a fake `opa` script (see conftest.py) that
records its arguments and mimics the real tool's output.
"""

import asyncio
import io
import json
import tarfile

import pytest

from regopack.compilers.base import BuildArgs
from regopack.compilers.cli_backend import CliBackend, build_argv, parse_version
from regopack.core.errors import (
    BackendUnavailableError,
    CompilationFailedError,
    InvalidInputError,
    ToolNotFoundError,
)
from regopack.core.options import CompilerOptions

from conftest import BASELINE_CAPABILITIES, SIMPLE_POLICY_SOURCE, WASM_MODULE


@pytest.fixture
def backend(fake_opa):
    """CLI backend pointed at the fake opa."""
    return CliBackend(CompilerOptions(opa_tool_path=str(fake_opa.path)))


@pytest.fixture
def policy_file(tmp_path):
    path = tmp_path / "policy.rego"
    path.write_text(SIMPLE_POLICY_SOURCE)
    return path


def build_args(source, output, **kwargs) -> BuildArgs:
    return BuildArgs(source_path=str(source), output_file=str(output), **kwargs)


# =============================================================================
# Argument Tests
# =============================================================================

class TestBuildArgv:
    """Tests for build_argv."""

    def test_minimal(self):
        """Test the minimal argument list."""
        argv = build_argv(BuildArgs(source_path="p.rego", output_file="out.tar.gz"))

        assert argv == ["build", "-t", "wasm", "--optimize", "0", "-o", "out.tar.gz", "p.rego"]

    def test_full_ordering(self):
        """Test every option lands in order with the source last."""
        argv = build_argv(BuildArgs(
            source_path="bundle.tar.gz",
            output_file="out.tar.gz",
            bundle_mode=True,
            entrypoints=("example/allow", "example/deny"),
            capabilities_file="caps.json",
            optimization_level=2,
            prune_unused=True,
            debug=True,
            ignore=(".*", "tests"),
            extra_arguments="--v1-compatible --scope 'a b'",
        ))

        assert argv == [
            "build", "-t", "wasm", "-b",
            "-e", "example/allow", "-e", "example/deny",
            "--capabilities", "caps.json",
            "--optimize", "2",
            "--prune-unused",
            "--debug",
            "--ignore", ".*", "--ignore", "tests",
            "-o", "out.tar.gz",
            "--v1-compatible", "--scope", "a b",
            "bundle.tar.gz",
        ]

    def test_capabilities_file_beats_version(self):
        """Test a capabilities file takes precedence over a version tag."""
        argv = build_argv(BuildArgs(
            source_path="p.rego",
            output_file="o",
            capabilities_file="caps.json",
            capabilities_version="v0.55.0",
        ))

        assert argv.count("--capabilities") == 1
        assert argv[argv.index("--capabilities") + 1] == "caps.json"

    def test_capabilities_version(self):
        """Test a bare version tag is passed through."""
        argv = build_argv(BuildArgs(
            source_path="p.rego", output_file="o", capabilities_version="v0.55.0"
        ))

        assert argv[argv.index("--capabilities") + 1] == "v0.55.0"

    def test_blank_extra_arguments_ignored(self):
        """Test whitespace-only extra arguments add nothing."""
        argv = build_argv(BuildArgs(source_path="p.rego", output_file="o", extra_arguments="   "))

        assert argv[-3:] == ["-o", "o", "p.rego"]

    def test_malformed_extra_arguments(self):
        """Test unbalanced quoting raises a typed error naming the source."""
        with pytest.raises(InvalidInputError, match="Malformed extra arguments") as exc_info:
            build_argv(BuildArgs(
                source_path="p.rego", output_file="o", extra_arguments="--scope 'a b"
            ))

        assert exc_info.value.source == "p.rego"
        assert isinstance(exc_info.value.__cause__, ValueError)


class TestParseVersion:
    """Tests for parse_version."""

    def test_parse(self):
        """Test the fields of `opa version` are extracted."""
        version = parse_version(
            "Version: 0.60.0\n"
            "Build Commit: 1a2b3c\n"
            "Build Timestamp: 2024-01-01T00:00:00Z\n"
            "Build Hostname: builder\n"
            "Go Version: go1.21.5\n"
            "Platform: darwin/arm64\n"
            "WebAssembly: unavailable\n"
        )

        assert version.version == "0.60.0"
        assert version.commit == "1a2b3c"
        assert version.go_version == "go1.21.5"
        assert version.platform == "darwin/arm64"

    def test_parse_partial(self):
        """Test missing fields stay None."""
        version = parse_version("Version: 1.0.0\nnoise without separator\n")

        assert version.version == "1.0.0"
        assert version.platform is None


# =============================================================================
# Process Tests
# =============================================================================

class TestCliBackend:
    """Tests for CliBackend against the fake opa."""

    def test_default_tool(self):
        """Test `opa` on PATH is used when no path is configured."""
        assert CliBackend().tool_path == "opa"
        assert CliBackend(CompilerOptions(opa_tool_path="  ")).tool_path == "opa"

    def test_version(self, backend):
        """Test version output is parsed."""
        version = asyncio.run(backend.version())

        assert version.version == "0.60.0"
        assert version.go_version == "go1.21.5"
        assert version.commit == "abc123"
        assert version.platform == "linux/amd64"

    def test_capabilities(self, backend, fake_opa):
        """Test the baseline document for a version is returned."""
        document = asyncio.run(backend.capabilities("v0.55.0"))

        assert json.loads(document) == BASELINE_CAPABILITIES
        assert fake_opa.calls[-1]["argv"] == ["capabilities", "--version", "v0.55.0"]

    def test_capabilities_unknown_version(self, backend):
        """Test an unknown version tag fails."""
        with pytest.raises(CompilationFailedError) as exc_info:
            asyncio.run(backend.capabilities("v0.0.0"))

        assert exc_info.value.source == "v0.0.0"
        assert "no such capabilities version" in exc_info.value.diagnostics

    def test_build(self, backend, fake_opa, policy_file, tmp_path):
        """Test a successful build writes the output file."""
        output = tmp_path / "out.tar.gz"

        asyncio.run(backend.build(build_args(
            policy_file, output, entrypoints=("example/allow",)
        )))

        with tarfile.open(output, "r:gz") as tar:
            assert tar.extractfile("/policy.wasm").read() == WASM_MODULE
        assert fake_opa.build_calls[0]["argv"][-1] == str(policy_file)

    def test_build_parse_error(self, backend, tmp_path):
        """Test a non-zero exit raises with the tool's diagnostics."""
        source = tmp_path / "bad.rego"
        source.write_text("allow { true }")

        with pytest.raises(CompilationFailedError) as exc_info:
            asyncio.run(backend.build(build_args(source, tmp_path / "out.tar.gz")))

        error = exc_info.value
        assert "rego_parse_error" in error.message
        assert "rego_parse_error" in error.diagnostics
        assert error.source == str(source)
        assert not (tmp_path / "out.tar.gz").exists()

    def test_error_text_on_zero_exit(self, backend, policy_file, tmp_path):
        """Test error text on stderr fails the build even with exit code 0."""
        with pytest.raises(CompilationFailedError, match="rego_type_error"):
            asyncio.run(backend.build(build_args(
                policy_file, tmp_path / "out.tar.gz", entrypoints=("fail/stderr",)
            )))

    def test_warning_on_stderr_tolerated(self, backend, policy_file, tmp_path):
        """Test stderr output without error text does not fail the build."""
        output = tmp_path / "out.tar.gz"

        asyncio.run(backend.build(build_args(
            policy_file, output, entrypoints=("warn/stderr",)
        )))

        assert output.exists()

    def test_bundle_directory(self, backend, fake_opa, tmp_path):
        """Test a bundle directory is compiled in bundle mode."""
        bundle_dir = tmp_path / "bundle"
        (bundle_dir / "authz").mkdir(parents=True)
        (bundle_dir / "authz" / "policy.rego").write_text(SIMPLE_POLICY_SOURCE)
        output = tmp_path / "out.tar.gz"

        asyncio.run(backend.build(build_args(bundle_dir, output, bundle_mode=True)))

        assert "-b" in fake_opa.build_calls[0]["argv"]
        assert output.exists()

    def test_bundle_archive(self, backend, tmp_path):
        """Test a bundle archive is accepted as the source."""
        archive = tmp_path / "src.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            data = SIMPLE_POLICY_SOURCE.encode()
            info = tarfile.TarInfo("/policy.rego")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
        output = tmp_path / "out.tar.gz"

        asyncio.run(backend.build(build_args(archive, output, bundle_mode=True)))

        assert output.exists()

    def test_tool_not_found(self, tmp_path, policy_file):
        """Test a missing executable reports an unavailable backend."""
        backend = CliBackend(CompilerOptions(opa_tool_path=str(tmp_path / "no-such-opa")))

        with pytest.raises(ToolNotFoundError) as exc_info:
            asyncio.run(backend.build(build_args(policy_file, tmp_path / "out.tar.gz")))

        assert isinstance(exc_info.value, BackendUnavailableError)
        assert exc_info.value.source == str(policy_file)
