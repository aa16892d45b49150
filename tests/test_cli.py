"""Tests for the qemu-runner command-line interface.

The engine is never started: run_pipeline and host binary lookup are patched.
"""

import json
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from qemu_runner.cli import EXIT_RUNNER_ERROR, EXIT_TIMEOUT, main
from qemu_runner.exceptions import BootTimeoutError, ConfigError, ProcessDiedError
from qemu_runner.settings import EngineSettings


@pytest.fixture(autouse=True)
def no_log_handler() -> Iterator[None]:
    """Keep the CLI from installing its stderr log handler during tests."""
    with patch("qemu_runner.cli.configure_logging"):
        yield


@pytest.fixture
def spec_file(tmp_path: Path) -> Path:
    path = tmp_path / "pipeline.json"
    path.write_text(json.dumps({"settings": {"image": "debian"}, "steps": [{"name": "build", "command": "make"}]}))
    return path


class TestExec:
    def test_exit_code_of_pipeline(self, spec_file: Path, tmp_path: Path) -> None:
        with patch("qemu_runner.cli.run_pipeline", new=AsyncMock(return_value=3)) as mock_run:
            result = CliRunner().invoke(main, ["exec", str(spec_file), "--image-dir", str(tmp_path)])

        assert result.exit_code == 3
        engine, spec, _output = mock_run.call_args.args
        assert engine.settings.image_dir == tmp_path
        assert spec.steps[0].command == "make"

    def test_success(self, spec_file: Path) -> None:
        with patch("qemu_runner.cli.run_pipeline", new=AsyncMock(return_value=0)):
            result = CliRunner().invoke(main, ["exec", str(spec_file)])
        assert result.exit_code == 0

    def test_boot_timeout_exit_code(self, spec_file: Path) -> None:
        error = BootTimeoutError("Machine did not come online within 180.0s")
        with patch("qemu_runner.cli.run_pipeline", new=AsyncMock(side_effect=error)):
            result = CliRunner().invoke(main, ["exec", str(spec_file)])
        assert result.exit_code == EXIT_TIMEOUT
        assert "Machine did not come online" in result.output

    @pytest.mark.parametrize(
        "error",
        [ProcessDiedError("Hypervisor process died (exit code 1)", exit_code=1), ConfigError("Invalid image name")],
    )
    def test_runner_errors_exit_code(self, spec_file: Path, error: Exception) -> None:
        with patch("qemu_runner.cli.run_pipeline", new=AsyncMock(side_effect=error)):
            result = CliRunner().invoke(main, ["exec", str(spec_file)])
        assert result.exit_code == EXIT_RUNNER_ERROR
        assert "Error:" in result.output

    def test_invalid_spec(self, tmp_path: Path) -> None:
        path = tmp_path / "pipeline.json"
        path.write_text(json.dumps({"steps": []}))
        result = CliRunner().invoke(main, ["exec", str(path)])
        assert result.exit_code == 2
        assert "Invalid spec" in result.output

    def test_missing_spec_file(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(main, ["exec", str(tmp_path / "missing.json")])
        assert result.exit_code == 2


class TestPing:
    def test_ok(self) -> None:
        with patch("qemu_runner.engine.shutil.which", return_value="/usr/bin/tool"):
            result = CliRunner().invoke(main, ["ping"])
        assert result.exit_code == 0
        assert "ok" in result.output

    def test_missing_binaries(self) -> None:
        with patch("qemu_runner.engine.shutil.which", return_value=None):
            result = CliRunner().invoke(main, ["ping"])
        assert result.exit_code == EXIT_RUNNER_ERROR
        assert EngineSettings().qemu_img_bin in result.output


class TestVersion:
    def test_version(self) -> None:
        result = CliRunner().invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "qemu-runner" in result.output
