"""Tests for RunWorkingDirectory."""

from __future__ import annotations

import errno
import stat
from pathlib import Path
from unittest.mock import patch

import pytest

from vm_provisioner.exceptions import LaunchError
from vm_provisioner.workdir import RunWorkingDirectory


async def test_create_unique_directories(tmp_path: Path) -> None:
    a = await RunWorkingDirectory.create(tmp_path / "tmp", "run-a")
    b = await RunWorkingDirectory.create(tmp_path / "tmp", "run-b")
    assert a.path != b.path
    assert a.path.parent == tmp_path / "tmp"
    assert a.name.startswith("run-")


async def test_layout(tmp_path: Path) -> None:
    workdir = await RunWorkingDirectory.create(tmp_path, "run-a")
    assert workdir.serial_base == workdir.path / "guest"
    assert workdir.guest_in == workdir.path / "guest.in"
    assert workdir.guest_out == workdir.path / "guest.out"
    assert workdir.scratch_disk == workdir.path / "scratch-disk.img"
    assert workdir.guest_output == workdir.path / "output"


async def test_console_fifos(tmp_path: Path) -> None:
    workdir = await RunWorkingDirectory.create(tmp_path, "run-a")
    guest_in, guest_out = await workdir.create_console_fifos()
    assert stat.S_ISFIFO(guest_in.stat().st_mode)
    assert stat.S_ISFIFO(guest_out.stat().st_mode)
    assert stat.S_IMODE(guest_in.stat().st_mode) & 0o077 == 0


async def test_scratch_disk_preallocated(tmp_path: Path) -> None:
    workdir = await RunWorkingDirectory.create(tmp_path, "run-a")
    disk = await workdir.allocate_scratch_disk(1024 * 1024)
    assert disk.stat().st_size == 1024 * 1024


async def test_scratch_disk_no_space(tmp_path: Path) -> None:
    workdir = await RunWorkingDirectory.create(tmp_path, "run-a")
    with (
        patch("vm_provisioner.workdir.os.posix_fallocate", side_effect=OSError(errno.ENOSPC, "No space left on device")),
        pytest.raises(LaunchError, match="No space left on device") as exc_info,
    ):
        await workdir.allocate_scratch_disk(4 * 1024**3)
    assert exc_info.value.context["size_bytes"] == 4 * 1024**3


async def test_cleanup_removes_everything(tmp_path: Path) -> None:
    workdir = await RunWorkingDirectory.create(tmp_path, "run-a")
    await workdir.create_console_fifos()
    await workdir.allocate_scratch_disk(4096)
    (workdir.guest_output / "nested").mkdir(parents=True)

    assert await workdir.cleanup() is True
    assert workdir.removed
    assert not workdir.path.exists()
    assert await workdir.cleanup() is True
