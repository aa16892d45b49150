"""Command-line interface for qemu-runner.

Usage:
    qemu-runner exec pipeline.json --image-dir /var/lib/qemu-runner/images
    qemu-runner ping
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import NoReturn

import click
from pydantic import ValidationError

from qemu_runner import __version__
from qemu_runner._logging import configure_logging
from qemu_runner.engine import Engine
from qemu_runner.exceptions import BootTimeoutError, ProcessDiedError, RunnerError
from qemu_runner.models import Spec
from qemu_runner.runtime import run_pipeline
from qemu_runner.settings import EngineSettings

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_CLI_ERROR = 2
EXIT_TIMEOUT = 124  # Matches `timeout` command
EXIT_RUNNER_ERROR = 125


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern."""
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def load_spec(path: Path) -> Spec:
    """Read a compiled pipeline spec (JSON) from disk.

    Raises:
        click.UsageError: Unreadable or invalid spec
    """
    try:
        return Spec.model_validate_json(path.read_bytes())
    except OSError as e:
        raise click.UsageError(f"Cannot read spec {path}: {e}") from e
    except ValidationError as e:
        raise click.UsageError(f"Invalid spec {path}: {e}") from e


def write_output(chunk: bytes) -> None:
    sys.stdout.buffer.write(chunk)
    sys.stdout.buffer.flush()


async def run_spec(spec: Spec, settings: EngineSettings) -> int:
    """Run a pipeline and map failures to CLI exit codes."""
    try:
        return await run_pipeline(Engine(settings), spec, write_output)

    except BootTimeoutError as e:
        click.echo(
            format_error(
                "Machine did not come online",
                e.message,
                [
                    "Check that the image runs sshd and accepts the configured key",
                    "Raise QEMU_RUNNER_BOOT_TIMEOUT_SECONDS for slow images",
                ],
            ),
            err=True,
        )
        return EXIT_TIMEOUT

    except ProcessDiedError as e:
        click.echo(
            format_error(
                "QEMU exited during boot",
                e.message,
                ["Run with -v to see the hypervisor's output", "Check that KVM is available (/dev/kvm)"],
            ),
            err=True,
        )
        return EXIT_RUNNER_ERROR

    except RunnerError as e:
        click.echo(format_error("Runner error", e.message), err=True)
        return EXIT_RUNNER_ERROR


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging")
@click.option("-q", "--quiet", is_flag=True, help="Only show errors")
@click.version_option(__version__, "-V", "--version", prog_name="qemu-runner")
def main(verbose: bool, quiet: bool) -> None:
    """Run pipelines inside ephemeral QEMU virtual machines."""
    configure_logging(level="DEBUG" if verbose else "INFO", quiet=quiet)


@main.command("exec")
@click.argument("spec_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--image-dir", type=click.Path(file_okay=False, path_type=Path), help="Base image directory")
@click.option("--temp-dir", type=click.Path(file_okay=False, path_type=Path), help="Directory for ephemeral images")
def exec_command(spec_path: Path, image_dir: Path | None, temp_dir: Path | None) -> NoReturn:
    """Run the compiled pipeline SPEC_PATH step by step.

    Exits with the first failing step's exit code, 0 if every step passed.
    """
    overrides: dict[str, Path] = {}
    if image_dir is not None:
        overrides["image_dir"] = image_dir
    if temp_dir is not None:
        overrides["temp_dir"] = temp_dir
    settings = EngineSettings(**overrides)  # type: ignore[arg-type]

    spec = load_spec(spec_path)
    sys.exit(asyncio.run(run_spec(spec, settings)))


@main.command("ping")
def ping_command() -> NoReturn:
    """Check that qemu-img, ssh and scp are installed."""
    try:
        asyncio.run(Engine(EngineSettings()).ping())
    except RunnerError as e:
        click.echo(format_error("Missing dependency", e.message), err=True)
        sys.exit(EXIT_RUNNER_ERROR)
    click.echo("ok")
    sys.exit(EXIT_SUCCESS)


if __name__ == "__main__":
    main()
