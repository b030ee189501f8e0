"""Subprocess lifecycle utilities.

- drain_subprocess_output: concurrent stdout/stderr draining (prevents pipe-buffer deadlock)
- log_task_exception: done-callback that surfaces failures of background tasks
- wait_for_socket: poll for a Unix socket created by a child process after fork+exec
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any, Literal, TypeVar, overload

from vmplane._logging import get_logger

if TYPE_CHECKING:
    from collections import deque
    from collections.abc import Callable, Coroutine
    from pathlib import Path

    from vmplane.platform_utils import ProcessWrapper

logger = get_logger(__name__)

T = TypeVar("T")

_READ_CHUNK_BYTES = 64 * 1024

# Longer output lines are split
_MAX_LINE_BYTES = 1024 * 1024


async def drain_subprocess_output(
    process: ProcessWrapper,
    *,
    process_name: str,
    context_id: str,
    stderr_tail: deque[str] | None = None,
    stdout_handler: Callable[[str], None] | None = None,
    stderr_handler: Callable[[str], None] | None = None,
) -> None:
    """Drain subprocess stdout/stderr concurrently until both reach EOF.

    Without concurrent draining a chatty hypervisor blocks once one pipe's
    kernel buffer fills while nobody reads it.

    Args:
        process: ProcessWrapper with stdout/stderr pipes
        process_name: Identifier for log lines (e.g. "qemu")
        context_id: VM id for log correlation
        stderr_tail: Optional bounded deque receiving the most recent stderr lines
        stdout_handler: Callback for stdout lines (default: debug log)
        stderr_handler: Callback for stderr lines (default: warning log)
    """
    if stdout_handler is None:

        def default_stdout_handler(line: str) -> None:
            logger.debug(f"[{process_name} stdout] {line}", extra={"vm_id": context_id, "output": line})

        stdout_handler = default_stdout_handler

    if stderr_handler is None:

        def default_stderr_handler(line: str) -> None:
            logger.warning(f"[{process_name} stderr] {line}", extra={"vm_id": context_id, "output": line})

        stderr_handler = default_stderr_handler

    async def pump(stream: asyncio.StreamReader, handler: Callable[[str], None], tail: deque[str] | None) -> None:
        def emit(raw: bytes | bytearray) -> None:
            decoded = raw.decode(errors="replace").rstrip()
            if not decoded:
                return
            if tail is not None:
                tail.append(decoded)
            handler(decoded)

        # Chunked reads: StreamReader line iteration fails on lines over its 64 KiB limit
        buffer = bytearray()
        while chunk := await stream.read(_READ_CHUNK_BYTES):
            buffer.extend(chunk)
            while (newline := buffer.find(b"\n")) >= 0:
                emit(buffer[:newline])
                del buffer[: newline + 1]
            if len(buffer) > _MAX_LINE_BYTES:
                emit(buffer)
                buffer.clear()
        if buffer:
            emit(buffer)

    async with asyncio.TaskGroup() as tg:
        if process.stdout:
            tg.create_task(pump(process.stdout, stdout_handler, None))
        if process.stderr:
            tg.create_task(pump(process.stderr, stderr_handler, stderr_tail))


def log_task_exception(task: asyncio.Task[Any]) -> None:
    """Log exceptions from background tasks.

    Usage:
        task = asyncio.create_task(some_coroutine())
        task.add_done_callback(log_task_exception)
    """
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            extra={"task_name": task.get_name()},
            exc_info=exc,
        )


async def run_to_completion(coro: Coroutine[Any, Any, T]) -> T:
    """Await ``coro`` in its own task so cancelling the caller does not interrupt it.

    The caller still sees CancelledError; the task keeps running and logs
    its failure, if any, when it finishes.
    """
    task = asyncio.ensure_future(coro)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        if not task.done():
            task.add_done_callback(log_task_exception)
        raise


@overload
async def wait_for_socket(
    path: Path,
    *,
    timeout: float,
    poll_interval: float = ...,
    abort_check: Callable[[], None] | None = ...,
    keep_connection: Literal[True],
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]: ...


@overload
async def wait_for_socket(
    path: Path,
    *,
    timeout: float,
    poll_interval: float = ...,
    abort_check: Callable[[], None] | None = ...,
    keep_connection: Literal[False] = ...,
) -> None: ...


async def wait_for_socket(
    path: Path,
    *,
    timeout: float,
    poll_interval: float = 0.01,
    abort_check: Callable[[], None] | None = None,
    keep_connection: bool = False,
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter] | None:
    """Wait for a Unix socket file to appear and accept connections.

    Two-phase wait: the file must exist, then a probe connect must succeed.
    QEMU creates the file before it calls listen(), so existence alone is not
    enough.

    Args:
        path: Socket path.
        timeout: Maximum seconds to wait.
        poll_interval: Seconds between checks.
        abort_check: Called every iteration; raises to abort early
            (e.g. when the spawning process has already exited).
        keep_connection: Return the connected streams instead of closing the
            probe. The QMP chardev serves one client at a time, so the
            supervisor hands this connection straight to the protocol client.

    Returns:
        ``(reader, writer)`` when *keep_connection* is True, else ``None``.

    Raises:
        TimeoutError: Socket did not become connectable within ``timeout``.
    """
    async with asyncio.timeout(timeout):
        while not path.exists():
            if abort_check is not None:
                abort_check()
            await asyncio.sleep(poll_interval)

        while True:
            if abort_check is not None:
                abort_check()
            try:
                r, w = await asyncio.open_unix_connection(str(path))
            except (ConnectionRefusedError, ConnectionResetError, FileNotFoundError):
                await asyncio.sleep(poll_interval)
                continue
            if keep_connection:
                return r, w
            w.close()
            with contextlib.suppress(ConnectionResetError, BrokenPipeError):
                await w.wait_closed()
            return None
