"""Centralized logging for vm-provisioner.

Library logging conventions:
- NullHandler on the library root logger, nothing else unless asked
- Support VM_PROVISIONER_LOG_LEVEL env var for level control
- Provide configure_logging() for the CLI

Output streams:
    Console bytes from the guest are mirrored to stdout by the transport.
    Log records go to stderr, so the transcript can be redirected on its own:
        INFO [2026-02-25 10:02:54] vm_provisioner.script - Step complete [run=3f9c0a1b7d2e]

Records are queued and written by a listener thread. A full queue drops
records rather than stalling the control task while it reads the console.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "vm_provisioner"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

# Honor VM_PROVISIONER_LOG_LEVEL env var (e.g. "DEBUG", "WARNING")
_env_level = os.environ.get("VM_PROVISIONER_LOG_LEVEL", "").strip().upper()
_env_level_value = logging.getLevelNamesMapping().get(_env_level)
if _env_level_value:  # excludes NOTSET (0) and missing keys (None)
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level_value)

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

_QUEUE_CAPACITY = 4096


class _RunFormatter(logging.Formatter):
    """Appends ``run=<id>`` when the record carries a run id.

    Modules pass either ``run_id`` or ``context_id`` in ``extra``; both name
    the same thing, the twelve hex digits chosen when the run starts.
    """

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        run_id = getattr(record, "run_id", None) or getattr(record, "context_id", None)
        return f"{line} [run={run_id}]" if run_id else line


class _StderrHandler(logging.Handler):
    """Writes formatted records to stderr through click (dim).

    Runs on the listener thread. click.echo() drops the ANSI styling when
    stderr is not a terminal.
    """

    def __init__(self) -> None:
        super().__init__()
        self.formatter = _RunFormatter(fmt=_FMT, datefmt=_DATEFMT)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(click.style(self.format(record), dim=True), err=True)
        except BlockingIOError:
            pass  # stderr pipe full, record lost
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _QueueingHandler(logging.handlers.QueueHandler):
    """Hands records to a listener thread; drops them when the queue is full."""

    def __init__(self) -> None:
        records: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(records)
        self._listener = logging.handlers.QueueListener(records, _StderrHandler(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Same process: the record needs no pickling-safe copy
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Logger below the ``vm_provisioner`` hierarchy for module ``name``."""
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Route library logs to stderr for the CLI.

    Installs the queueing handler once; calling again only changes the
    level. Applications that attach their own handlers are left alone.

    Args:
        level: Log level (e.g. logging.DEBUG, "WARNING"). Overrides the env var.
        quiet: Only errors. Wins over ``level``.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _QueueingHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_QueueingHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
