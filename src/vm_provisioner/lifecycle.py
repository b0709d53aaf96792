"""Run lifecycle: unconditional release of everything a run acquired.

Resources are registered the moment they exist, so a failure at any point
(boot media, launch, a timed-out step, Ctrl+C) releases exactly what was
acquired and nothing more.

Release order (reverse dependency):
1. Console transport (stops the pump, closes both FIFO ends)
2. QEMU process tree (SIGTERM -> wait -> SIGKILL -> wait, via psutil)
3. Working directory (FIFOs, scratch disk, extracted boot files)

Example:
    ```python
    async with CleanupManager(run_id) as cleanup:
        workdir = cleanup.track_workdir(await RunWorkingDirectory.create(root, run_id))
        ...
    # everything released here, whatever happened inside
    ```
"""

from __future__ import annotations

import asyncio
from types import TracebackType
from typing import TYPE_CHECKING, Self

from vm_provisioner._logging import get_logger
from vm_provisioner.resource_cleanup import cleanup_process

if TYPE_CHECKING:
    from vm_provisioner.launcher import LaunchedVM
    from vm_provisioner.transport import ConsoleTransport
    from vm_provisioner.workdir import RunWorkingDirectory

logger = get_logger(__name__)


class CleanupManager:
    """Tracks run resources and releases them exactly once.

    Attributes:
        run_id: Run identifier for log correlation
        release_count: How many times resources were actually released (0 or 1)
    """

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        self.workdir: RunWorkingDirectory | None = None
        self.transport: ConsoleTransport | None = None
        self.vm: LaunchedVM | None = None
        self.release_count = 0
        self._release_task: asyncio.Task[dict[str, bool]] | None = None

    def track_workdir(self, workdir: RunWorkingDirectory) -> RunWorkingDirectory:
        self.workdir = workdir
        return workdir

    def track_transport(self, transport: ConsoleTransport) -> ConsoleTransport:
        self.transport = transport
        return transport

    def track_vm(self, vm: LaunchedVM) -> LaunchedVM:
        self.vm = vm
        return vm

    @property
    def released(self) -> bool:
        return self._release_task is not None and self._release_task.done()

    async def release(self) -> dict[str, bool]:
        """Release every tracked resource. Idempotent, never raises.

        Shielded from cancellation: a cancelled caller still waits for the
        release to finish, then sees CancelledError.

        Returns:
            Cleanup status per resource (True = released cleanly)
        """
        if self._release_task is None:
            self._release_task = asyncio.create_task(self._release_all(), name=f"release-{self.run_id}")
        try:
            return await asyncio.shield(self._release_task)
        except asyncio.CancelledError:
            await self._release_task
            raise

    async def _release_all(self) -> dict[str, bool]:
        self.release_count += 1
        logger.info("Releasing run resources", extra={"run_id": self.run_id})
        results: dict[str, bool] = {}

        if self.transport is not None:
            try:
                await self.transport.close()
                results["transport"] = True
            except Exception as e:
                logger.error(
                    "Console transport close failed",
                    extra={"run_id": self.run_id, "error": str(e), "error_type": type(e).__name__},
                )
                results["transport"] = False

        if self.vm is not None:
            await self.vm.stop_draining()
            results["qemu"] = await cleanup_process(self.vm.process, "QEMU", self.run_id)

        if self.workdir is not None:
            results["workdir"] = await self.workdir.cleanup()

        success_count = sum(results.values())
        if success_count == len(results):
            logger.info("Cleanup completed successfully", extra={"run_id": self.run_id, "results": results})
        else:
            logger.warning(
                "Cleanup completed with errors",
                extra={"run_id": self.run_id, "results": results, "success": success_count, "total": len(results)},
            )
        return results

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.release()
