"""Literal pattern matching over the console byte stream.

Why byte-at-a-time: the text being waited for (a shell prompt, a login
banner) is usually *not* followed by a newline. Anything that buffers up to
a line terminator, including ``readline``-based grep, can block forever on
a prompt that is already on screen. Reading single bytes and tracking how
much of the target has been seen detects the target the moment its last
byte arrives, mid-line or not.

Matching is exact and case-sensitive on the UTF-8 bytes of the target; no
regular expressions.

MatchProgress keeps the length of the longest target prefix that ends at
the last byte read. On a byte that breaks the current prefix it falls back
to the longest shorter prefix the recent bytes still support (precomputed
failure table), and to zero when there is none. This is what makes
``"aab"`` match inside ``"aaab"`` while a broken ``"aba"`` + ``"x"`` against
``"abab"`` restarts from zero.

This departs from the simple expect loop that resets to zero and discards
the mismatching byte: that loop misses overlapping occurrences such as
``"aab"`` in ``"aaab"``. With the fallback, an await succeeds exactly when
the target occurs contiguously in the bytes read.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

from vm_provisioner._logging import get_logger
from vm_provisioner.exceptions import ConsoleClosedError, ExpectTimeoutError
from vm_provisioner.models import ExpectRequest

logger = get_logger(__name__)


class ByteSource(Protocol):
    """Anything that yields console bytes one at a time."""

    consumed: int

    async def read_byte(self) -> bytes: ...


def _failure_table(target: bytes) -> list[int]:
    """fail[i] = length of the longest proper prefix of target[:i+1] that is also its suffix."""
    fail = [0] * len(target)
    k = 0
    for i in range(1, len(target)):
        while k and target[i] != target[k]:
            k = fail[k - 1]
        if target[i] == target[k]:
            k += 1
        fail[i] = k
    return fail


class MatchProgress:
    """How many leading bytes of ``target`` have been matched so far.

    Invariant: ``0 <= matched <= len(target)``.
    """

    __slots__ = ("_fail", "matched", "target")

    def __init__(self, target: bytes) -> None:
        if not target:
            raise ValueError("target must not be empty")
        self.target = target
        self.matched = 0
        self._fail = _failure_table(target)

    @property
    def complete(self) -> bool:
        return self.matched == len(self.target)

    def advance(self, byte: int) -> bool:
        """Feed one byte; return True when the whole target has been seen.

        After a completed match, progress restarts from zero so a second
        occurrence must be made of fresh bytes.
        """
        if self.complete:
            self.matched = 0
        k = self.matched
        while k and self.target[k] != byte:
            k = self._fail[k - 1]
        if self.target[k] == byte:
            k += 1
        self.matched = k
        return self.complete

    def reset(self) -> None:
        self.matched = 0


async def expect(source: ByteSource, target: str, timeout: float) -> int:
    """Block until ``target`` has appeared on ``source``.

    The timeout bounds the wait for each *next* byte, not the whole call:
    a chatty console that never prints the target keeps the call alive.

    Args:
        source: Console byte source (normally a ConsoleTransport)
        target: Literal text to wait for (non-empty)
        timeout: Max idle seconds between two bytes

    Returns:
        Stream position (bytes consumed) right after the target's last byte.

    Raises:
        ExpectTimeoutError: No byte arrived within ``timeout`` seconds
        ConsoleClosedError: Console reached EOF before the target appeared
        pydantic.ValidationError: Empty target or non-positive timeout
    """
    request = ExpectRequest(target=target, timeout_seconds=timeout)
    progress = MatchProgress(request.target_bytes)
    start = source.consumed

    while True:
        try:
            async with asyncio.timeout(request.timeout_seconds):
                data = await source.read_byte()
        except TimeoutError:
            raise ExpectTimeoutError(
                f"Timed out after {request.timeout_seconds:g}s of console silence waiting for {request.target!r}",
                context={
                    "target": request.target,
                    "timeout_seconds": request.timeout_seconds,
                    "matched": progress.matched,
                    "position": source.consumed,
                    "bytes_scanned": source.consumed - start,
                },
            ) from None

        if not data:
            raise ConsoleClosedError(
                f"Console closed while waiting for {request.target!r}",
                context={"target": request.target, "matched": progress.matched, "position": source.consumed},
            )

        if progress.advance(data[0]):
            logger.debug(
                "Console target matched",
                extra={"target": request.target, "position": source.consumed, "bytes_scanned": source.consumed - start},
            )
            return source.consumed
