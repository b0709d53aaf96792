"""Tests for CleanupManager and the resource cleanup helpers."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import psutil
import pytest

from vm_provisioner.lifecycle import CleanupManager
from vm_provisioner.platform_utils import ProcessWrapper
from vm_provisioner.resource_cleanup import cleanup_directory, cleanup_file, cleanup_process
from vm_provisioner.workdir import RunWorkingDirectory

# ============================================================================
# Helpers
# ============================================================================


def _make_tracked(calls: list[str]) -> tuple[MagicMock, MagicMock, MagicMock]:
    transport = MagicMock()
    transport.close = AsyncMock(side_effect=lambda: calls.append("transport"))
    vm = MagicMock()
    vm.process = MagicMock(name="process")
    vm.stop_draining = AsyncMock(side_effect=lambda: calls.append("drain"))
    workdir = MagicMock()
    workdir.cleanup = AsyncMock(side_effect=lambda: calls.append("workdir") or True)
    return transport, vm, workdir


def _alive(pid: int) -> bool:
    """Running and not a zombie waiting for its new parent to reap it."""
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


async def _spawn_sleeper() -> ProcessWrapper:
    return ProcessWrapper(
        await asyncio.create_subprocess_exec(
            sys.executable,
            "-c",
            "import time; time.sleep(60)",
            start_new_session=True,
        )
    )


# ============================================================================
# CleanupManager
# ============================================================================


class TestCleanupManager:
    async def test_release_order(self) -> None:
        calls: list[str] = []
        transport, vm, workdir = _make_tracked(calls)
        manager = CleanupManager("run-1")
        manager.track_workdir(workdir)
        manager.track_transport(transport)
        manager.track_vm(vm)

        async def fake_cleanup_process(*args: object, **kwargs: object) -> bool:
            calls.append("qemu")
            return True

        with patch("vm_provisioner.lifecycle.cleanup_process", side_effect=fake_cleanup_process):
            results = await manager.release()

        assert calls == ["transport", "drain", "qemu", "workdir"]
        assert results == {"transport": True, "qemu": True, "workdir": True}

    async def test_release_is_idempotent(self) -> None:
        calls: list[str] = []
        transport, _vm, workdir = _make_tracked(calls)
        manager = CleanupManager("run-1")
        manager.track_transport(transport)
        manager.track_workdir(workdir)

        first = await manager.release()
        second = await manager.release()

        assert first == second
        assert manager.release_count == 1
        transport.close.assert_awaited_once()
        workdir.cleanup.assert_awaited_once()

    async def test_nothing_tracked(self) -> None:
        manager = CleanupManager("run-1")
        assert await manager.release() == {}
        assert manager.released

    async def test_context_manager_releases_on_error(self) -> None:
        calls: list[str] = []
        _transport, _vm, workdir = _make_tracked(calls)
        with pytest.raises(RuntimeError, match="boom"):
            async with CleanupManager("run-1") as manager:
                manager.track_workdir(workdir)
                raise RuntimeError("boom")
        assert calls == ["workdir"]

    async def test_transport_close_failure_does_not_stop_cleanup(self) -> None:
        calls: list[str] = []
        transport, _vm, workdir = _make_tracked(calls)
        transport.close = AsyncMock(side_effect=OSError("bad fd"))
        manager = CleanupManager("run-1")
        manager.track_transport(transport)
        manager.track_workdir(workdir)

        results = await manager.release()

        assert results == {"transport": False, "workdir": True}
        assert calls == ["workdir"]

    async def test_release_completes_when_caller_cancelled(self, tmp_path: Path) -> None:
        workdir = await RunWorkingDirectory.create(tmp_path, "run-1")
        transport = MagicMock()

        async def slow_close() -> None:
            await asyncio.sleep(0.1)

        transport.close = slow_close
        manager = CleanupManager("run-1")
        manager.track_workdir(workdir)
        manager.track_transport(transport)

        task = asyncio.create_task(manager.release())
        await asyncio.sleep(0.02)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert manager.released
        assert not workdir.path.exists()

    async def test_real_process_terminated(self) -> None:
        process = await _spawn_sleeper()
        vm = MagicMock()
        vm.process = process
        vm.stop_draining = AsyncMock()
        manager = CleanupManager("run-1")
        manager.track_vm(vm)

        results = await manager.release()

        assert results == {"qemu": True}
        assert process.returncode is not None
        assert not psutil.pid_exists(process.pid)


# ============================================================================
# Cleanup helpers
# ============================================================================


class TestCleanupHelpers:
    async def test_cleanup_process_none(self) -> None:
        assert await cleanup_process(None, "QEMU", "run-1") is True

    async def test_cleanup_process_kills_descendants(self) -> None:
        """Children forked by the process are reaped with it."""
        parent = ProcessWrapper(
            await asyncio.create_subprocess_exec(
                sys.executable,
                "-c",
                (
                    "import subprocess, sys, time; "
                    "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)']); "
                    "time.sleep(60)"
                ),
                start_new_session=True,
            )
        )
        child_pids: list[int] = []
        async with asyncio.timeout(5):
            while not child_pids:
                child_pids = [c.pid for c in await parent.children()]
                await asyncio.sleep(0.02)

        assert await cleanup_process(parent, "QEMU", "run-1", term_timeout=2, kill_timeout=2)
        assert not any(_alive(pid) for pid in child_pids)

    async def test_cleanup_process_already_exited(self) -> None:
        process = ProcessWrapper(await asyncio.create_subprocess_exec(sys.executable, "-c", "pass"))
        await process.wait()
        assert await cleanup_process(process, "QEMU", "run-1") is True

    async def test_cleanup_file_missing_is_success(self, tmp_path: Path) -> None:
        assert await cleanup_file(tmp_path / "gone", "run-1") is True

    async def test_cleanup_file_removes(self, tmp_path: Path) -> None:
        path = tmp_path / "scratch-disk.img"
        path.write_bytes(b"x")
        assert await cleanup_file(path, "run-1", "scratch disk") is True
        assert not path.exists()

    async def test_cleanup_directory(self, tmp_path: Path) -> None:
        target = tmp_path / "run-x"
        (target / "boot").mkdir(parents=True)
        assert await cleanup_directory(target, "run-1") is True
        assert not target.exists()
        assert await cleanup_directory(target, "run-1") is True
