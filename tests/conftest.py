"""Shared pytest fixtures for vm-provisioner tests."""

from __future__ import annotations

import asyncio
import contextlib
import io
import os
import stat
import sys
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest

from vm_provisioner.subprocess_utils import log_task_exception
from vm_provisioner.transport import ConsoleTransport

PROMPT = b"[manjaro-gnome ~]# "

# ============================================================================
# Simulated console
# ============================================================================


class SimulatedConsole:
    """A scripted guest on the far side of two plain pipes.

    The host side is a real ConsoleTransport (with a BytesIO sink); the guest
    side reads whatever the host sends line by line and answers from a reply
    table. No VM, no FIFOs.
    """

    def __init__(
        self,
        transport: ConsoleTransport,
        sink: io.BytesIO,
        out_w: int,
        guest_reader: asyncio.StreamReader,
        guest_read_transport: asyncio.ReadTransport,
    ) -> None:
        self.transport = transport
        self.sink = sink
        self.received: list[bytes] = []
        self._out_w: int | None = out_w
        self._guest_reader = guest_reader
        self._guest_read_transport = guest_read_transport
        self._serve_task: asyncio.Task[None] | None = None

    @classmethod
    async def create(cls) -> SimulatedConsole:
        out_r, out_w = os.pipe()  # guest -> host
        in_r, in_w = os.pipe()  # host -> guest
        sink = io.BytesIO()
        transport = await ConsoleTransport.from_fds(out_r, in_w, sinks=[sink], name="sim")

        loop = asyncio.get_running_loop()
        guest_reader = asyncio.StreamReader()
        guest_read_transport, _ = await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(guest_reader),
            os.fdopen(in_r, "rb", buffering=0),
        )
        return cls(transport, sink, out_w, guest_reader, guest_read_transport)

    def emit(self, data: bytes) -> None:
        """Guest prints ``data`` on the console."""
        assert self._out_w is not None, "guest already hung up"
        os.write(self._out_w, data)

    def hangup(self) -> None:
        """Guest side closes the console (host sees EOF)."""
        if self._out_w is not None:
            os.close(self._out_w)
            self._out_w = None

    async def next_line(self) -> bytes:
        return await self._guest_reader.readline()

    def serve(
        self,
        replies: dict[bytes, bytes],
        *,
        banner: bytes = b"",
        hangup_on: bytes | None = b"shutdown now",
    ) -> None:
        """Answer each received line from ``replies`` in the background."""

        async def _serve() -> None:
            if banner:
                self.emit(banner)
            while True:
                line = await self._guest_reader.readline()
                if not line:
                    return
                command = line.rstrip(b"\n")
                self.received.append(command)
                if hangup_on is not None and command == hangup_on:
                    self.hangup()
                    return
                reply = replies.get(command)
                if reply is not None:
                    self.emit(reply)

        self._serve_task = asyncio.create_task(_serve())
        self._serve_task.add_done_callback(log_task_exception)

    async def close(self) -> None:
        if self._serve_task is not None and not self._serve_task.done():
            self._serve_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._serve_task
        await self.transport.close()
        self.hangup()
        self._guest_read_transport.close()


@pytest.fixture
async def console() -> AsyncGenerator[SimulatedConsole]:
    """Simulated guest console wired to a started ConsoleTransport."""
    sim = await SimulatedConsole.create()
    yield sim
    await sim.close()


# ============================================================================
# Fake QEMU
# ============================================================================

FAKE_QEMU = """\
#!{python}
# Stands in for qemu-system-x86_64: speaks the login/shell dialogue over the
# -serial pipe FIFOs and copies a build output directory over the "9p share".
import os
import sys
import time

args = sys.argv[1:]
base = args[args.index("-serial") + 1].removeprefix("pipe:")
virtfs = dict(kv.split("=", 1) for kv in args[args.index("-virtfs") + 1].split(",") if "=" in kv)
source = virtfs["path"]
mode = os.environ.get("FAKE_QEMU_MODE", "ok")

if mode == "crash":
    print("qemu-system-x86_64: failed to initialize kvm: Permission denied", file=sys.stderr)
    sys.exit(1)

out = os.open(base + ".out", os.O_WRONLY)
inp = open(base + ".in", "rb", buffering=0)
prompt = b"[manjaro-gnome ~]# "

def emit(data):
    os.write(out, data)

emit(b"\\r\\nManjaro Linux (ttyS0)\\r\\n\\r\\nmanjaro-gnome login: ")
while True:
    line = inp.readline()
    if not line:
        sys.exit(0)
    command = line.rstrip(b"\\n").decode()
    if command == "root":
        emit(b"Password: ")
    elif command == "shutdown now":
        emit(b"[  OK  ] Reached target Power-Off.\\r\\n")
        sys.exit(0)
    elif mode == "hang" and command == "bash":
        time.sleep(3600)
    elif mode == "fail_build" and command.startswith("bash -x"):
        emit(b"+ qemu-img convert failed\\r\\n")
        sys.exit(1)
    else:
        if command.startswith("cp -vr"):
            dest = command.split()[-1].replace("/mnt/arch-boxes", source, 1)
            os.makedirs(os.path.join(dest, "output"), exist_ok=True)
            with open(os.path.join(dest, "output", "box.img"), "wb") as f:
                f.write(b"disk image bytes")
            emit(b"'output/box.img' -> '" + dest.encode() + b"output/box.img'\\r\\n")
        emit(prompt)
"""


@pytest.fixture
def fake_qemu(tmp_path: Path) -> Path:
    """Executable fake QEMU speaking over the real console FIFOs."""
    path = tmp_path / "fake-qemu"
    path.write_text(FAKE_QEMU.format(python=sys.executable))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def boot_files(tmp_path: Path) -> dict[str, Path]:
    """Dummy ISO, kernel and initrd (contents are never read by the fake QEMU)."""
    media = tmp_path / "media"
    media.mkdir()
    files = {
        "iso": media / "manjaro-gnome-test.iso",
        "kernel": media / "vmlinuz-x86_64",
        "initrd": media / "initramfs-x86_64.img",
    }
    for path in files.values():
        path.write_bytes(b"\0" * 16)
    return files
