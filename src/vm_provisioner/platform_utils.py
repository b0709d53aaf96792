"""PID-reuse safe process handle.

QEMU is started in its own session; everything it forks (helper daemons,
virtfs proxies) is tracked through psutil so cleanup can terminate the
whole tree and wait for actual exit rather than just signal delivery.
"""

import asyncio
import contextlib

import psutil


class ProcessWrapper:
    """asyncio subprocess paired with a psutil handle taken at spawn time.

    Signals go through psutil, which refuses to signal a recycled PID, so a
    late cleanup can never hit an unrelated process that inherited QEMU's PID.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None

        if async_proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                self.psutil_proc = psutil.Process(async_proc.pid)

    @property
    def pid(self) -> int | None:
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        """Exit status, None while running."""
        return self.async_proc.returncode

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self.async_proc.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self.async_proc.stderr

    async def _alive(self) -> bool:
        if self.async_proc.returncode is not None:
            return False
        if self.psutil_proc is None:
            return True
        try:
            return await asyncio.to_thread(self.psutil_proc.is_running)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    async def wait(self) -> int:
        return await self.async_proc.wait()

    async def wait_with_timeout(self, timeout: float) -> int:
        """wait() bounded by ``timeout``.

        Raises:
            TimeoutError: Process still running after ``timeout`` seconds
        """
        async with asyncio.timeout(timeout):
            return await self.async_proc.wait()

    async def communicate(self, input: bytes | None = None) -> tuple[bytes, bytes]:
        """Feed ``input``, read both pipes to EOF and wait for exit."""
        return await self.async_proc.communicate(input)

    async def children(self) -> list[psutil.Process]:
        """Snapshot of all live descendants (recursive).

        Taken before signalling the parent: once QEMU dies its children are
        reparented and can no longer be found through it.
        """
        if self.psutil_proc is None:
            return []
        try:
            return await asyncio.to_thread(self.psutil_proc.children, recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return []

    async def _signal(self, method: str) -> None:
        if self.psutil_proc is not None and await self._alive():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(getattr(self.psutil_proc, method))
        elif self.async_proc.returncode is None:
            getattr(self.async_proc, method)()

    async def terminate(self) -> None:
        """SIGTERM."""
        await self._signal("terminate")

    async def kill(self) -> None:
        """SIGKILL."""
        await self._signal("kill")
