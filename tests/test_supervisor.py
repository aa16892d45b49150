"""Tests for hypervisor process supervision.

A per-image launch script stands in for QEMU, so these run real processes
(process groups, signals, exit watcher) without a hypervisor installed.
"""

import asyncio
import stat
from pathlib import Path

import pytest

from qemu_runner.exceptions import ProvisionError
from qemu_runner.settings import EngineSettings
from qemu_runner.supervisor import VmSupervisor, pick_ssh_port


def write_launch_script(image_dir: Path, image: str, body: str) -> Path:
    path = image_dir / f"{image}.qemu.sh"
    path.write_text(f"#!/bin/sh\n{body}\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


class TestPickSshPort:
    def test_in_unprivileged_range(self) -> None:
        for _ in range(1000):
            assert 1025 <= pick_ssh_port() <= 65535


# ============================================================================
# Launch Command
# ============================================================================


class TestBuildLaunchCmd:
    def test_direct_qemu_without_script(self, settings: EngineSettings) -> None:
        cmd = VmSupervisor(settings).build_launch_cmd(settings.image_dir, "debian", Path("/tmp/o.qcow2"), 40022)
        assert cmd[0] == settings.qemu_bin
        assert not any("readonly=on" in arg for arg in cmd)

    def test_seed_drive_when_present(self, settings: EngineSettings) -> None:
        (settings.image_dir / "debian.seed.img").write_bytes(b"")
        cmd = VmSupervisor(settings).build_launch_cmd(settings.image_dir, "debian", Path("/tmp/o.qcow2"), 40022)
        assert any("debian.seed.img" in arg and "readonly=on" in arg for arg in cmd)

    def test_launch_script_takes_precedence(self, settings: EngineSettings) -> None:
        script = write_launch_script(settings.image_dir, "debian", "exit 0")
        cmd = VmSupervisor(settings).build_launch_cmd(settings.image_dir, "debian", Path("/tmp/o.qcow2"), 40022)
        assert cmd == [str(script)]


# ============================================================================
# Start / Stop
# ============================================================================


class TestStartStop:
    async def test_script_receives_image_and_port(self, settings: EngineSettings, tmp_path: Path) -> None:
        out = tmp_path / "launch.out"
        write_launch_script(settings.image_dir, "debian", 'echo "$QEMU_IMAGE $QEMU_SSH_PORT" > "$OUT"')
        supervisor = VmSupervisor(settings)
        image = tmp_path / "overlay.qcow2"

        handle = await supervisor.start(settings.image_dir, "debian", image, env_overrides={"OUT": str(out)})
        assert await asyncio.wait_for(handle.exited, timeout=5) == 0
        await supervisor.stop(handle)

        assert out.read_text().split() == [str(image), str(handle.ssh_port)]

    async def test_exit_code_reported_once(self, settings: EngineSettings, tmp_path: Path) -> None:
        write_launch_script(settings.image_dir, "debian", "exit 3")
        supervisor = VmSupervisor(settings)
        handle = await supervisor.start(settings.image_dir, "debian", tmp_path / "o.qcow2")

        assert await asyncio.wait_for(handle.exited, timeout=5) == 3
        assert await supervisor.stop(handle) is True
        assert handle.watcher.done()

    async def test_stop_interrupts_running_process(self, settings: EngineSettings, tmp_path: Path) -> None:
        write_launch_script(settings.image_dir, "debian", "exec sleep 60")
        supervisor = VmSupervisor(settings)
        handle = await supervisor.start(settings.image_dir, "debian", tmp_path / "o.qcow2")
        assert not handle.exited.done()

        assert await supervisor.stop(handle) is True
        assert handle.exited.done()
        assert handle.process.returncode is not None
        assert handle.log_task is not None and handle.log_task.done()

    async def test_stop_escalates_to_kill(self, settings: EngineSettings, tmp_path: Path) -> None:
        """A process group that ignores SIGINT is killed after the stop timeout."""
        settings.stop_timeout_seconds = 0.2
        ready = tmp_path / "ready"
        write_launch_script(settings.image_dir, "debian", "trap '' INT\n: > \"$READY\"\nsleep 60")
        supervisor = VmSupervisor(settings)
        handle = await supervisor.start(
            settings.image_dir, "debian", tmp_path / "o.qcow2", env_overrides={"READY": str(ready)}
        )
        for _ in range(100):
            if ready.exists():
                break
            await asyncio.sleep(0.05)

        assert await supervisor.stop(handle) is True
        assert handle.exited.done()
        assert handle.process.returncode == -9

    async def test_stop_none_is_noop(self, settings: EngineSettings) -> None:
        assert await VmSupervisor(settings).stop(None) is True

    async def test_missing_binary_raises_provision_error(self, settings: EngineSettings, tmp_path: Path) -> None:
        settings.qemu_bin = str(tmp_path / "no-such-qemu")
        with pytest.raises(ProvisionError, match="failed to start"):
            await VmSupervisor(settings).start(settings.image_dir, "debian", tmp_path / "o.qcow2")
