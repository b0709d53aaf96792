"""Per-run working directory.

All temporary files of one run live in a single directory below the work
root: the console FIFOs, the scratch disk, extracted boot files and the
directory the guest copies its output into. Removing the directory removes
everything, so cleanup is a single rmtree after the FIFOs and disk image.

Layout:
    <work_root>/run-XXXXXXXX/
        guest.in             host -> guest console FIFO
        guest.out            guest -> host console FIFO
        scratch-disk.img     preallocated scratch disk
        boot/                kernel + initrd extracted from the ISO
        output/              written by the guest over 9p
"""

from __future__ import annotations

import asyncio
import os
import tempfile
from pathlib import Path

import aiofiles.os

from vm_provisioner import constants
from vm_provisioner._logging import get_logger
from vm_provisioner.exceptions import LaunchError
from vm_provisioner.resource_cleanup import cleanup_directory, cleanup_file

logger = get_logger(__name__)


class RunWorkingDirectory:
    """Temporary directory owning every file created for one run."""

    def __init__(self, path: Path, run_id: str) -> None:
        self.path = path
        self.run_id = run_id
        self._removed = False

    @classmethod
    async def create(cls, work_root: Path, run_id: str) -> RunWorkingDirectory:
        """Create a fresh, uniquely named directory under ``work_root``."""
        await aiofiles.os.makedirs(work_root, exist_ok=True)
        path = Path(await asyncio.to_thread(tempfile.mkdtemp, prefix="run-", dir=work_root))
        logger.debug("Working directory created", extra={"run_id": run_id, "path": str(path)})
        return cls(path, run_id)

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def serial_base(self) -> Path:
        """Base path for QEMU's ``-serial pipe:`` backend."""
        return self.path / constants.SERIAL_PIPE_BASENAME

    @property
    def guest_in(self) -> Path:
        return self.path / f"{constants.SERIAL_PIPE_BASENAME}.in"

    @property
    def guest_out(self) -> Path:
        return self.path / f"{constants.SERIAL_PIPE_BASENAME}.out"

    @property
    def scratch_disk(self) -> Path:
        return self.path / constants.SCRATCH_DISK_NAME

    @property
    def boot_dir(self) -> Path:
        return self.path / "boot"

    @property
    def guest_output(self) -> Path:
        """Where the guest's build output lands on the host side."""
        return self.path / constants.GUEST_OUTPUT_DIR_NAME

    @property
    def removed(self) -> bool:
        return self._removed

    async def create_console_fifos(self) -> tuple[Path, Path]:
        """Create the guest.in / guest.out FIFOs for QEMU's pipe backend."""
        for fifo in (self.guest_in, self.guest_out):
            await asyncio.to_thread(os.mkfifo, fifo, 0o600)
        return self.guest_in, self.guest_out

    async def allocate_scratch_disk(self, size_bytes: int) -> Path:
        """Create the scratch disk with every block allocated up front.

        A sparse file would let the build run out of host disk space hours
        in; posix_fallocate fails right here instead.

        Raises:
            LaunchError: Not enough space (or fallocate unsupported)
        """

        def _allocate() -> None:
            fd = os.open(self.scratch_disk, os.O_RDWR | os.O_CREAT | os.O_EXCL, 0o600)
            try:
                os.posix_fallocate(fd, 0, size_bytes)
            finally:
                os.close(fd)

        try:
            await asyncio.to_thread(_allocate)
        except OSError as e:
            raise LaunchError(
                f"Could not preallocate {size_bytes} byte scratch disk: {e.strerror or e}",
                context={"run_id": self.run_id, "path": str(self.scratch_disk), "size_bytes": size_bytes},
            ) from e
        logger.debug(
            "Scratch disk allocated",
            extra={"run_id": self.run_id, "path": str(self.scratch_disk), "size_bytes": size_bytes},
        )
        return self.scratch_disk

    async def cleanup(self) -> bool:
        """Remove FIFOs, scratch disk, then the whole directory. Never raises."""
        if self._removed:
            return True
        results = [
            await cleanup_file(self.guest_in, self.run_id, "console fifo"),
            await cleanup_file(self.guest_out, self.run_id, "console fifo"),
            await cleanup_file(self.scratch_disk, self.run_id, "scratch disk"),
            await cleanup_directory(self.path, self.run_id, "working directory"),
        ]
        self._removed = all(results)
        return self._removed
