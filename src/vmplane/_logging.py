"""Logging for vmplane.

The package root logger ``vmplane`` only carries a NullHandler; handlers are
the application's business. ``VMPLANE_LOG_LEVEL`` sets the root level at
import time, and the CLI calls configure_logging() to get output on stderr.

Records emitted with ``extra={"vm_id": ...}`` are tagged with the VM they
concern:

    WARNING [2026-02-25 10:02:54] vmplane.supervisor [vm 3f2a9c] - QEMU exited unexpectedly

Exit watchers and QMP read loops log from the event loop, so stderr writes
happen on a QueueListener thread. The queue is bounded and a full queue drops
records rather than blocking the loop.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "vmplane"

_FMT = "%(levelname)s [%(asctime)s] %(name)s%(vm_tag)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"
_QUEUE_CAPACITY = 4096
_VM_TAG_CHARS = 12

_root = logging.getLogger(LIBRARY_LOGGER_NAME)
_root.addHandler(logging.NullHandler())

_env_level = logging.getLevelNamesMapping().get(os.environ.get("VMPLANE_LOG_LEVEL", "").strip().upper())
if _env_level:  # NOTSET and unknown names leave the level alone
    _root.setLevel(_env_level)


class _VmTagFormatter(logging.Formatter):
    """Formatter that renders the ``vm_id`` extra as a short ``[vm ...]`` tag."""

    def format(self, record: logging.LogRecord) -> str:
        vm_id = getattr(record, "vm_id", None)
        record.vm_tag = f" [vm {str(vm_id)[:_VM_TAG_CHARS]}]" if vm_id else ""
        return super().format(record)


class _StderrHandler(logging.Handler):
    """Echo records to stderr, dimmed. Runs on the listener thread."""

    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(_VmTagFormatter(fmt=_FMT, datefmt=_DATEFMT))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(click.style(self.format(record), dim=True), err=True)
        except BlockingIOError:
            pass  # stderr is full
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _QueuedStderrHandler(logging.handlers.QueueHandler):
    """Hands records to a listener thread; drops them when the queue is full."""

    def __init__(self) -> None:
        records: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(records)
        self._listener = logging.handlers.QueueListener(records, _StderrHandler())
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Same process: keep the record intact so extras reach the formatter
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Logger for a vmplane module (``get_logger(__name__)``)."""
    return logging.getLogger(name)


def configure_logging(*, level: int | str | None = None, quiet: bool = False) -> None:
    """Send vmplane logs to stderr. Safe to call more than once.

    Args:
        level: Level name or number; overrides ``VMPLANE_LOG_LEVEL``.
        quiet: Only errors. Wins over ``level``.
    """
    if not any(isinstance(h, _QueuedStderrHandler) for h in _root.handlers):
        _root.addHandler(_QueuedStderrHandler())

    if quiet:
        _root.setLevel(logging.ERROR)
    elif level is not None:
        _root.setLevel(level)
