"""Shared pytest fixtures for qemu-runner tests.

Nothing here needs QEMU or a real SSH server; process-level tests use small
/bin/sh scripts in place of qemu-img, ssh and launch scripts.
"""

import stat
from collections.abc import Callable
from pathlib import Path

import pytest

from qemu_runner.models import File, PipelineSettings, Spec, Step
from qemu_runner.settings import EngineSettings


@pytest.fixture
def settings(tmp_path: Path) -> EngineSettings:
    """Engine settings rooted in tmp_path with fast boot probing."""
    image_dir = tmp_path / "images"
    temp_dir = tmp_path / "tmp"
    image_dir.mkdir()
    temp_dir.mkdir()
    return EngineSettings(
        image_dir=image_dir,
        temp_dir=temp_dir,
        boot_timeout_seconds=1.0,
        boot_probe_interval_seconds=0.01,
        stop_timeout_seconds=2.0,
    )


@pytest.fixture
def make_script(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write an executable /bin/sh script and return its path."""

    def _make(name: str, body: str) -> Path:
        path = tmp_path / name
        path.write_text(f"#!/bin/sh\n{body}\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _make


@pytest.fixture
def spec() -> Spec:
    return Spec(
        root="/drone",
        settings=PipelineSettings(image="debian"),
        files=[File(path="/drone/.netrc", data=b"machine example.com", mode=0o600)],
        steps=[
            Step(name="build", command="/bin/sh", args=["-e", "/drone/build.sh"], working_dir="/drone/src"),
            Step(name="test", command="/bin/sh", args=["-e", "/drone/test.sh"], working_dir="/drone/src"),
        ],
    )
