"""Tests for ephemeral overlay creation.

qemu-img is replaced by small shell scripts so the real subprocess path is
exercised without QEMU installed.
"""

import asyncio
from collections.abc import Callable
from pathlib import Path

import psutil
import pytest

from qemu_runner.exceptions import ProvisionError
from qemu_runner.image import (
    build_create_cmd,
    create_ephemeral_image,
    ephemeral_image_path,
    remove_ephemeral_image,
)


class TestEphemeralImagePath:
    def test_unique_qcow2_in_temp_dir(self, tmp_path: Path) -> None:
        first = ephemeral_image_path(tmp_path)
        second = ephemeral_image_path(tmp_path)
        assert first != second
        assert first.parent == tmp_path
        assert first.name.startswith("qemu-runner-")
        assert first.suffix == ".qcow2"


class TestBuildCreateCmd:
    def test_overlay_arguments(self) -> None:
        cmd = build_create_cmd("qemu-img", Path("/images/debian.img"), "raw", Path("/tmp/overlay.qcow2"))
        assert cmd == [
            "qemu-img",
            "create",
            "-f",
            "qcow2",
            "-b",
            "/images/debian.img",
            "-F",
            "raw",
            "/tmp/overlay.qcow2",
        ]


class TestCreateEphemeralImage:
    async def test_success(self, tmp_path: Path, make_script: Callable[[str, str], Path]) -> None:
        # Last argument is the destination
        qemu_img = make_script("qemu-img", 'for last; do :; done; echo overlay > "$last"')
        dest = tmp_path / "overlay.qcow2"
        await create_ephemeral_image(Path("/images/debian.img"), "raw", dest, qemu_img_bin=str(qemu_img))
        assert dest.read_text() == "overlay\n"

    async def test_failure_carries_stderr_and_leaves_nothing(
        self, tmp_path: Path, make_script: Callable[[str, str], Path]
    ) -> None:
        qemu_img = make_script(
            "qemu-img",
            'for last; do :; done; touch "$last"; echo "Could not open backing file" >&2; exit 1',
        )
        dest = tmp_path / "overlay.qcow2"
        with pytest.raises(ProvisionError) as exc_info:
            await create_ephemeral_image(Path("/missing.img"), "raw", dest, qemu_img_bin=str(qemu_img))

        assert exc_info.value.stderr == "Could not open backing file"
        assert exc_info.value.context["exit_code"] == 1
        assert not dest.exists()

    async def test_missing_binary(self, tmp_path: Path) -> None:
        with pytest.raises(ProvisionError, match="Failed to run"):
            await create_ephemeral_image(
                Path("/images/debian.img"),
                "raw",
                tmp_path / "overlay.qcow2",
                qemu_img_bin=str(tmp_path / "no-such-qemu-img"),
            )

    async def test_cancellation_stops_qemu_img_and_removes_dest(
        self, tmp_path: Path, make_script: Callable[[str, str], Path]
    ) -> None:
        pid_file = tmp_path / "qemu-img.pid"
        qemu_img = make_script("qemu-img", f'for last; do :; done; touch "$last"; echo $$ > "{pid_file}"; exec sleep 30')
        dest = tmp_path / "overlay.qcow2"
        task = asyncio.create_task(
            create_ephemeral_image(Path("/images/debian.img"), "raw", dest, qemu_img_bin=str(qemu_img))
        )
        for _ in range(100):
            if pid_file.exists() and pid_file.read_text().strip():
                break
            await asyncio.sleep(0.05)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not dest.exists()
        assert not psutil.pid_exists(int(pid_file.read_text()))


class TestRemoveEphemeralImage:
    async def test_removes_file(self, tmp_path: Path) -> None:
        image = tmp_path / "overlay.qcow2"
        image.write_bytes(b"x")
        assert await remove_ephemeral_image(image) is True
        assert not image.exists()

    async def test_none_and_missing_are_fine(self, tmp_path: Path) -> None:
        assert await remove_ephemeral_image(None) is True
        assert await remove_ephemeral_image(tmp_path / "gone.qcow2") is True
