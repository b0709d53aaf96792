"""QEMU process launcher.

Starts QEMU in its own session with stdout/stderr drained in the background
and fails fast when the VM cannot possibly come up: a missing boot artifact,
an unexecutable binary, or QEMU exiting during the startup grace period
(bad arguments, KVM permission problems, a missing 9p backend).
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path

import aiofiles.os

from vm_provisioner import constants
from vm_provisioner._logging import get_logger
from vm_provisioner.boot_media import BootMedia
from vm_provisioner.config import ProvisionConfig
from vm_provisioner.exceptions import LaunchError
from vm_provisioner.platform_utils import ProcessWrapper
from vm_provisioner.qemu_cmd import build_qemu_cmd
from vm_provisioner.resource_cleanup import cleanup_process
from vm_provisioner.settings import Settings
from vm_provisioner.subprocess_utils import drain_subprocess_output, log_task_exception
from vm_provisioner.workdir import RunWorkingDirectory

logger = get_logger(__name__)


@dataclass
class LaunchedVM:
    """A running QEMU process and its diagnostics ring buffer."""

    run_id: str
    process: ProcessWrapper
    cmd: list[str]
    output_lines: deque[str] = field(default_factory=lambda: deque(maxlen=constants.QEMU_OUTPUT_RING_LINES))
    drain_task: asyncio.Task[None] | None = None

    def output_tail(self, lines: int = 20) -> str:
        """Last ``lines`` lines QEMU wrote to stdout/stderr."""
        tail = list(self.output_lines)[-lines:]
        return "\n".join(tail) if tail else "(empty)"

    async def stop_draining(self) -> None:
        if self.drain_task is not None and not self.drain_task.done():
            self.drain_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.drain_task


async def _check_artifacts(paths: dict[str, Path], run_id: str) -> None:
    missing = {name: str(path) for name, path in paths.items() if not await aiofiles.os.path.exists(path)}
    if missing:
        raise LaunchError(
            f"Boot artifact(s) missing: {', '.join(f'{k}={v}' for k, v in missing.items())}",
            context={"run_id": run_id, "missing": missing},
        )


async def launch_vm(
    settings: Settings,
    config: ProvisionConfig,
    workdir: RunWorkingDirectory,
    media: BootMedia,
) -> LaunchedVM:
    """Allocate the scratch disk and start QEMU.

    The console FIFOs must already be open on the host side (see
    ConsoleTransport.open_fifos) so no boot output is lost.

    Raises:
        LaunchError: Artifact missing, no space for the scratch disk, QEMU
            binary not executable, or QEMU exited within the grace period
    """
    await _check_artifacts(
        {"iso": media.iso, "kernel": media.kernel, "initrd": media.initrd, "source_dir": config.source_dir},
        workdir.run_id,
    )
    scratch_disk = await workdir.allocate_scratch_disk(config.scratch_disk_bytes)
    cmd = build_qemu_cmd(settings, config, workdir, media, scratch_disk=scratch_disk)

    try:
        process = ProcessWrapper(
            await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        )
    except OSError as e:
        raise LaunchError(
            f"Failed to launch QEMU: {e}",
            context={"run_id": workdir.run_id, "qemu_bin": str(settings.qemu_bin)},
        ) from e

    vm = LaunchedVM(run_id=workdir.run_id, process=process, cmd=cmd)
    vm.drain_task = asyncio.create_task(
        drain_subprocess_output(
            process,
            process_name="QEMU",
            context_id=workdir.run_id,
            line_handler=vm.output_lines.append,
        ),
        name=f"qemu-drain-{workdir.run_id}",
    )
    vm.drain_task.add_done_callback(log_task_exception)
    logger.info(
        "QEMU started",
        extra={"run_id": workdir.run_id, "pid": process.pid, "cpus": config.cpu_count, "memory_mb": config.memory_mb},
    )

    # The drain task owns stdout/stderr, so a plain wait() cannot block on a full pipe
    try:
        async with asyncio.timeout(settings.launch_grace_seconds):
            await process.wait()
    except TimeoutError:
        return vm

    # Exited during the grace period: let the drain task collect the last words
    with contextlib.suppress(TimeoutError):
        await asyncio.wait_for(asyncio.shield(vm.drain_task), timeout=1.0)
    await vm.stop_draining()
    await cleanup_process(process, "QEMU", workdir.run_id)
    raise LaunchError(
        f"QEMU exited during startup (exit code {process.returncode}):\n{vm.output_tail()}",
        context={"run_id": workdir.run_id, "returncode": process.returncode, "cmd": cmd},
    )
