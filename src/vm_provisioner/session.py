"""Session - the live console connection to one provisioning VM.

A Session pairs the console transport with the QEMU process handle so every
wait can tell "the guest is slow" apart from "the guest is gone". The
guest's error trap powers the VM off on the first failed command; without
the process race an await would sit out its full idle timeout staring at a
console that will never print again.

Example:
    ```python
    session = Session(transport, process=vm.process)
    await session.send("uname -a\\n")
    await session.expect("[manjaro-gnome ~]# ")
    ```

Lifecycle:
    - Created after QEMU is launched (or over a simulated console in tests)
    - send()/expect() drive the guest, strictly one at a time
    - Released by CleanupManager, which closes the transport
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING

from vm_provisioner import constants
from vm_provisioner._logging import get_logger
from vm_provisioner.exceptions import ExpectTimeoutError, GuestShutdownError
from vm_provisioner.matcher import expect as expect_target

if TYPE_CHECKING:
    from vm_provisioner.platform_utils import ProcessWrapper
    from vm_provisioner.transport import ConsoleTransport

logger = get_logger(__name__)


class Session:
    """Console session with an optional VM process handle.

    Attributes:
        transport: Console transport (bytes in, bytes out, sink mirroring)
        process: QEMU process, or None for a simulated console
        default_timeout: Idle timeout for awaits without an override
        poweroff_timeout: Maximum wait for the VM to exit after shutdown
    """

    def __init__(
        self,
        transport: ConsoleTransport,
        process: ProcessWrapper | None = None,
        *,
        default_timeout: float = constants.DEFAULT_EXPECT_TIMEOUT_SECONDS,
        poweroff_timeout: float = constants.POWEROFF_TIMEOUT_SECONDS,
    ) -> None:
        self.transport = transport
        self.process = process
        self.default_timeout = default_timeout
        self.poweroff_timeout = poweroff_timeout

    @property
    def cursor(self) -> int:
        """Bytes delivered to the sinks so far. Never decreases."""
        return self.transport.mirrored

    @property
    def position(self) -> int:
        """Bytes consumed by awaits so far. Never decreases."""
        return self.transport.consumed

    @property
    def closed(self) -> bool:
        return self.transport.closed

    async def send(self, text: str) -> None:
        """Type ``text`` into the guest console, byte for byte.

        Raises:
            SessionClosedError: Transport already released
        """
        if not text:
            return
        await self.transport.write(text.encode())
        logger.debug("Sent to console", extra={"context_id": self.transport.name, "bytes": len(text.encode())})

    async def expect(self, target: str, timeout: float | None = None) -> int:
        """Wait for ``target`` on the console, racing against VM exit.

        Args:
            target: Literal text to wait for
            timeout: Idle seconds allowed between console bytes
                (default: ``default_timeout``)

        Returns:
            Console position right after the target.

        Raises:
            ExpectTimeoutError: Console silent for ``timeout`` seconds
            GuestShutdownError: QEMU exited and the target is not in the output
                it left in the console pipe
            ConsoleClosedError: Console reached EOF before the target appeared
        """
        idle = timeout if timeout is not None else self.default_timeout
        if self.process is None:
            return await expect_target(self.transport, target, idle)

        expect_task = asyncio.create_task(expect_target(self.transport, target, idle))
        death_task = asyncio.create_task(self.process.wait())
        try:
            done, _pending = await asyncio.wait({expect_task, death_task}, return_when=asyncio.FIRST_COMPLETED)
            if expect_task in done:
                return expect_task.result()
            # A target printed right before exit may still be in the pipe
            done, _pending = await asyncio.wait({expect_task}, timeout=constants.EXIT_DRAIN_SECONDS)
            if expect_task in done and expect_task.exception() is None:
                return expect_task.result()
            raise GuestShutdownError(
                f"VM exited (code {self.process.returncode}) while waiting for {target!r}",
                context={"target": target, "position": self.transport.consumed, "returncode": self.process.returncode},
                returncode=self.process.returncode,
            )
        finally:
            for task in (expect_task, death_task):
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task

    async def wait_for_poweroff(self, timeout: float | None = None) -> int | None:
        """Wait for the guest to power itself off.

        Completes when QEMU exits or, for a simulated console, when the
        console reaches EOF.

        Returns:
            QEMU exit code, or None without a process.

        Raises:
            ExpectTimeoutError: Still running after ``timeout`` seconds
        """
        limit = timeout if timeout is not None else self.poweroff_timeout
        try:
            async with asyncio.timeout(limit):
                if self.process is not None:
                    returncode = await self.process.wait()
                    logger.info(
                        "VM powered off",
                        extra={"context_id": self.transport.name, "returncode": returncode},
                    )
                    return returncode
                await self.transport.wait_closed()
                return None
        except TimeoutError:
            raise ExpectTimeoutError(
                f"VM did not power off within {limit:g}s",
                context={"timeout_seconds": limit, "position": self.transport.consumed},
            ) from None
