"""Console transport: the VM's serial line as a pair of byte pipes.

QEMU's ``-serial pipe:<base>`` backend reads keystrokes from ``<base>.in``
and writes console output to ``<base>.out``. Both are FIFOs created before
QEMU starts and opened O_RDWR by the host:

- opening O_RDWR never blocks waiting for the other side, so the host can
  hold both ends before QEMU exists and no boot output is lost;
- the host's own write end on ``guest.out`` means the read side never sees
  a spurious EOF while QEMU (re)opens the FIFO. QEMU exiting is detected
  through its process handle instead (see Session).

Output duplication (the ``tee``):

    guest.out ──► pump task ──► sinks (stdout, transcript)   [first]
                          └──► matcher buffer (read_byte)    [second]

One producer, two consumers. The pump hands each chunk to the sinks before
the matcher can see it, so anything the matcher matched has already been
shown to the operator, in emission order, without loss.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections.abc import Sequence
from typing import IO, TYPE_CHECKING, Protocol

from vm_provisioner import constants
from vm_provisioner._logging import get_logger
from vm_provisioner.exceptions import SessionClosedError
from vm_provisioner.subprocess_utils import log_task_exception

if TYPE_CHECKING:
    from vm_provisioner.workdir import RunWorkingDirectory

logger = get_logger(__name__)


class ConsoleWriter(Protocol):
    """Write side of the console (keystrokes into the guest)."""

    async def write(self, data: bytes) -> None: ...

    def close(self) -> None: ...


class FdWriter:
    """Unbuffered writer over a blocking pipe/FIFO descriptor.

    os.write runs in a worker thread so a full FIFO (guest not reading)
    blocks the thread, not the event loop.
    """

    def __init__(self, fd: int) -> None:
        self._fd: int | None = fd

    async def write(self, data: bytes) -> None:
        if self._fd is None:
            raise SessionClosedError("Console writer is closed")
        view = memoryview(data)
        while view:
            written = await asyncio.to_thread(os.write, self._fd, view)
            view = view[written:]

    def close(self) -> None:
        if self._fd is not None:
            with contextlib.suppress(OSError):
                os.close(self._fd)
            self._fd = None


class ConsoleTransport:
    """Bidirectional console byte channel with live mirroring to sinks.

    Attributes:
        mirrored: Bytes delivered to the sinks so far (the sink cursor).
        consumed: Bytes handed to the matcher so far. Always <= mirrored.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: ConsoleWriter,
        *,
        sinks: Sequence[IO[bytes]] = (),
        name: str = "console",
        read_transport: asyncio.ReadTransport | None = None,
    ) -> None:
        self.name = name
        self._raw = reader
        self._writer = writer
        self._sinks: list[IO[bytes]] = list(sinks)
        self._read_transport = read_transport
        self._stream = asyncio.StreamReader(limit=constants.CONSOLE_BUFFER_LIMIT)
        self._eof = asyncio.Event()
        self._pump_task: asyncio.Task[None] | None = None
        self._closed = False
        self.mirrored = 0
        self.consumed = 0

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @classmethod
    async def from_fds(
        cls,
        read_fd: int,
        write_fd: int,
        *,
        sinks: Sequence[IO[bytes]] = (),
        name: str = "console",
    ) -> ConsoleTransport:
        """Build a started transport over raw pipe descriptors (ownership transfers)."""
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=constants.CONSOLE_BUFFER_LIMIT)
        read_transport, _protocol = await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(reader),
            os.fdopen(read_fd, "rb", buffering=0),
        )
        transport = cls(reader, FdWriter(write_fd), sinks=sinks, name=name, read_transport=read_transport)
        transport.start()
        return transport

    @classmethod
    async def open_fifos(
        cls,
        workdir: RunWorkingDirectory,
        *,
        sinks: Sequence[IO[bytes]] = (),
    ) -> ConsoleTransport:
        """Create and open the console FIFOs before QEMU is launched."""
        await workdir.create_console_fifos()
        read_fd = os.open(workdir.guest_out, os.O_RDWR)
        try:
            write_fd = os.open(workdir.guest_in, os.O_RDWR)
        except OSError:
            os.close(read_fd)
            raise
        logger.debug(
            "Console FIFOs opened",
            extra={"run_id": workdir.run_id, "guest_in": str(workdir.guest_in), "guest_out": str(workdir.guest_out)},
        )
        return await cls.from_fds(read_fd, write_fd, sinks=sinks, name=workdir.run_id)

    def start(self) -> None:
        """Start the pump task copying console output to sinks and matcher."""
        if self._pump_task is None:
            self._pump_task = asyncio.create_task(self._pump(), name=f"console-pump-{self.name}")
            self._pump_task.add_done_callback(log_task_exception)

    # -------------------------------------------------------------------------
    # Pump
    # -------------------------------------------------------------------------

    async def _pump(self) -> None:
        try:
            while True:
                chunk = await self._raw.read(constants.CONSOLE_READ_CHUNK_BYTES)
                if not chunk:
                    logger.debug("Console reached EOF", extra={"context_id": self.name, "mirrored": self.mirrored})
                    break
                self._mirror(chunk)
                self._stream.feed_data(chunk)
        finally:
            self._stream.feed_eof()
            self._eof.set()

    def _mirror(self, chunk: bytes) -> None:
        for sink in list(self._sinks):
            try:
                sink.write(chunk)
                sink.flush()
            except (OSError, ValueError) as e:
                logger.warning(
                    "Console sink failed, no longer mirroring to it",
                    extra={"context_id": self.name, "error": str(e), "error_type": type(e).__name__},
                )
                self._sinks.remove(sink)
        self.mirrored += len(chunk)

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def at_eof(self) -> bool:
        """True once the guest side closed and every byte was consumed."""
        return self._eof.is_set() and self._stream.at_eof()

    async def write(self, data: bytes) -> None:
        """Send raw bytes to the guest console, unbuffered.

        Raises:
            SessionClosedError: Transport already closed
        """
        if self._closed:
            raise SessionClosedError("Console transport is closed", context={"context_id": self.name})
        await self._writer.write(data)

    async def read_byte(self) -> bytes:
        """Next console byte in emission order, or b"" at EOF.

        Cancellation-safe: a cancelled read consumes nothing.
        """
        data = await self._stream.read(1)
        self.consumed += len(data)
        return data

    async def wait_closed(self) -> None:
        """Wait until the guest side of the console reaches EOF."""
        await self._eof.wait()

    async def close(self) -> None:
        """Stop the pump and release both pipe ends. Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self._pump_task is not None and not self._pump_task.done():
            self._pump_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._pump_task
        if self._read_transport is not None:
            self._read_transport.close()
        self._writer.close()
        for sink in self._sinks:
            with contextlib.suppress(OSError, ValueError):
                sink.flush()
        logger.debug(
            "Console transport closed",
            extra={"context_id": self.name, "mirrored": self.mirrored, "consumed": self.consumed},
        )
