"""QMP (QEMU Monitor Protocol) client with concurrent command correlation.

One client owns one control-socket connection to one QEMU process.

Wire format: one JSON object per line.
- Server greeting on connect: ``{"QMP": {"version": ..., "capabilities": [...]}}``
- Client must send ``qmp_capabilities`` before anything else.
- Command: ``{"execute": "stop", "arguments": {...}, "id": 7}``
- Response: ``{"return": {...}, "id": 7}`` or
  ``{"error": {"class": "GenericError", "desc": "..."}, "id": 7}``
- Event: ``{"event": "STOP", "data": {...}, "timestamp": {...}}``

Architecture:
- A single read loop task drains the socket, reassembles lines from partial
  reads, and routes each message: responses to the waiter registered under
  their id, events to every subscriber queue in arrival order.
- Any number of callers may have commands in flight; each awaits only its own
  future. The server may answer them in any order.
- On disconnect every pending waiter fails with ConnectionLostError and every
  subscriber receives end-of-stream. There is no reconnect: a dropped
  connection usually means QEMU exited, which the supervisor must see.

Usage:
    client = QMPClient(socket_path)
    await client.connect()
    await client.pause()
    async for event in client.events():
        ...
    await client.close()
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections import deque
from typing import TYPE_CHECKING, Any, Self, TypeAlias

from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from vmplane import constants
from vmplane._logging import get_logger
from vmplane.exceptions import CommandTimeoutError, ConnectionLostError, ProtocolError

if TYPE_CHECKING:
    import types
    from collections.abc import AsyncIterator
    from pathlib import Path

logger = get_logger(__name__)

# Recent events kept for callers that subscribe late (e.g. diagnostics)
_EVENT_BACKLOG = 64

# Pushed to subscriber queues when the connection ends
_END_OF_STREAM = None

EventQueue: TypeAlias = asyncio.Queue[dict[str, Any] | None]


class QMPClient:
    """Async QMP client for one QEMU control socket.

    Attributes:
        socket_path: Path of the QMP Unix socket
    """

    __slots__ = (
        "_closed",
        "_command_timeout",
        "_connect_timeout",
        "_event_backlog",
        "_greeting",
        "_lock",
        "_negotiated",
        "_next_id",
        "_pending",
        "_read_task",
        "_reader",
        "_subscribers",
        "_vm_id",
        "_writer",
        "socket_path",
    )

    def __init__(
        self,
        socket_path: Path,
        *,
        vm_id: str = "",
        connect_timeout: float = constants.QMP_CONNECT_TIMEOUT_SECONDS,
        command_timeout: float = constants.QMP_COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self.socket_path = socket_path
        self._vm_id = vm_id
        self._connect_timeout = connect_timeout
        self._command_timeout = command_timeout
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._read_task: asyncio.Task[None] | None = None
        self._greeting: asyncio.Future[dict[str, Any]] | None = None
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._subscribers: list[EventQueue] = []
        self._event_backlog: deque[dict[str, Any]] = deque(maxlen=_EVENT_BACKLOG)
        self._next_id = 0
        self._negotiated = False
        self._closed = False
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        """Connection is open and the read loop is running."""
        return self._read_task is not None and not self._closed

    @property
    def negotiated(self) -> bool:
        return self._negotiated

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def greeting(self) -> dict[str, Any] | None:
        g = self._greeting
        if g is None or not g.done() or g.cancelled() or g.exception() is not None:
            return None
        return g.result()

    @property
    def pending_count(self) -> int:
        """Commands sent and still awaiting a response."""
        return len(self._pending)

    def recent_events(self) -> list[dict[str, Any]]:
        return list(self._event_backlog)

    async def wait_closed(self) -> None:
        """Wait until the read loop has seen end-of-stream (or was stopped)."""
        task = self._read_task
        if task is not None and not task.done():
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.shield(task)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(
        self,
        streams: tuple[asyncio.StreamReader, asyncio.StreamWriter] | None = None,
        *,
        negotiate: bool = True,
    ) -> dict[str, Any]:
        """Open the socket, read the greeting and negotiate capabilities.

        Args:
            streams: Already-connected reader/writer to adopt (e.g. from
                ``wait_for_socket(keep_connection=True)``) instead of dialing.
            negotiate: Send ``qmp_capabilities``. Only tests turn this off.

        Returns:
            The server greeting.

        Raises:
            ConnectionLostError: Socket could not be opened or dropped during handshake
            ProtocolError: Greeting missing/malformed or negotiation rejected
            CommandTimeoutError: Handshake exceeded the connect timeout
        """
        async with self._lock:
            if self._read_task is not None:
                msg = "QMP client already connected"
                raise ProtocolError(msg, context={"socket": str(self.socket_path)})
            if self._closed:
                msg = "QMP client is closed"
                raise ConnectionLostError(msg, context={"socket": str(self.socket_path)})

            try:
                if streams is None:
                    streams = await self._dial()
                self._reader, self._writer = streams
                loop = asyncio.get_running_loop()
                self._greeting = loop.create_future()
                self._read_task = asyncio.create_task(self._read_loop(), name=f"qmp-read-{self._vm_id}")

                try:
                    async with asyncio.timeout(self._connect_timeout):
                        greeting = await asyncio.shield(self._greeting)
                except TimeoutError as e:
                    self._greeting.cancel()
                    msg = f"No QMP greeting within {self._connect_timeout}s"
                    raise CommandTimeoutError(msg, context={"socket": str(self.socket_path)}) from e

                logger.debug(
                    "QMP greeting received",
                    extra={"vm_id": self._vm_id, "version": greeting["QMP"].get("version")},
                )

                if negotiate:
                    try:
                        await self._send("qmp_capabilities", None, self._connect_timeout)
                    except ProtocolError as e:
                        msg = f"QMP capabilities negotiation failed: {e.message}"
                        raise ProtocolError(msg, context=e.context, error_class=e.error_class) from e
                    self._negotiated = True
                    logger.debug("QMP capabilities negotiated", extra={"vm_id": self._vm_id})
                return greeting

            except BaseException:
                await self._shutdown("handshake failed")
                raise

    async def _dial(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        try:
            async with asyncio.timeout(self._connect_timeout):
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(constants.QMP_CONNECT_RETRY_ATTEMPTS),
                    wait=wait_random_exponential(multiplier=0.02, min=0.01, max=0.25),
                    # QEMU creates the socket file before listen(); refused means "not yet"
                    retry=retry_if_exception_type((ConnectionRefusedError, FileNotFoundError)),
                    before_sleep=before_sleep_log(logger, logging.DEBUG),
                    reraise=True,
                ):
                    with attempt:
                        return await asyncio.open_unix_connection(str(self.socket_path))
        except TimeoutError as e:
            msg = f"QMP connect timed out after {self._connect_timeout}s"
            raise CommandTimeoutError(msg, context={"socket": str(self.socket_path)}) from e
        except OSError as e:
            msg = f"QMP connect failed: {e}"
            raise ConnectionLostError(msg, context={"socket": str(self.socket_path)}) from e
        msg = "QMP connect gave up"  # unreachable: reraise=True
        raise ConnectionLostError(msg, context={"socket": str(self.socket_path)})

    async def close(self) -> None:
        """Close the connection. Idempotent.

        Pending commands fail with ConnectionLostError and subscribers see
        end-of-stream.
        """
        async with self._lock:
            await self._shutdown("client closed")

    async def _shutdown(self, reason: str) -> None:
        self._mark_disconnected(reason)
        task, self._read_task = self._read_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        writer, self._writer = self._writer, None
        if writer is not None:
            writer.close()
            with contextlib.suppress(TimeoutError, OSError):
                await asyncio.wait_for(writer.wait_closed(), timeout=1.0)
        self._reader = None

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def execute(
        self,
        command: str,
        arguments: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send one command and wait for its own response.

        Cancelling the awaiting task withdraws only this command's waiter.

        Args:
            command: QMP command name
            arguments: Optional command arguments
            timeout: Response deadline (default: client command timeout)

        Returns:
            The response's ``return`` value.

        Raises:
            ProtocolError: Server answered with ``error``
            ConnectionLostError: Not connected, or connection dropped before the answer
            CommandTimeoutError: No response within the deadline
        """
        if not self._negotiated and command != "qmp_capabilities":
            msg = f"QMP command {command!r} sent before capabilities negotiation"
            raise ProtocolError(msg, context={"socket": str(self.socket_path), "command": command})
        return await self._send(command, arguments, self._command_timeout if timeout is None else timeout)

    async def _send(self, command: str, arguments: dict[str, Any] | None, timeout: float) -> Any:
        writer = self._writer
        if writer is None or self._closed:
            msg = f"QMP not connected (command {command!r})"
            raise ConnectionLostError(msg, context={"socket": str(self.socket_path), "command": command})

        self._next_id += 1
        cmd_id = self._next_id
        fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[cmd_id] = fut

        payload: dict[str, Any] = {"execute": command, "id": cmd_id}
        if arguments:
            payload["arguments"] = arguments

        try:
            async with asyncio.timeout(timeout):
                writer.write(json.dumps(payload).encode() + b"\n")
                await writer.drain()
                return await fut
        except TimeoutError as e:
            msg = f"QMP command {command!r} timed out after {timeout}s"
            raise CommandTimeoutError(msg, context={"command": command, "id": cmd_id}) from e
        except (ConnectionError, OSError) as e:
            msg = f"QMP connection lost while sending {command!r}: {e}"
            raise ConnectionLostError(msg, context={"command": command, "id": cmd_id}) from e
        finally:
            self._pending.pop(cmd_id, None)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self) -> EventQueue:
        """Register a queue receiving every event from now on.

        ``None`` is delivered once when the connection ends.
        """
        q: EventQueue = asyncio.Queue()
        if self._closed:
            q.put_nowait(_END_OF_STREAM)
        else:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: EventQueue) -> None:
        with contextlib.suppress(ValueError):
            self._subscribers.remove(q)

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        """Yield events in arrival order until the connection ends."""
        q = self.subscribe()
        try:
            while True:
                event = await q.get()
                if event is _END_OF_STREAM:
                    return
                yield event
        finally:
            self.unsubscribe(q)

    # ------------------------------------------------------------------
    # Read loop
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        """Drain the socket, split on newlines, dispatch each message."""
        reader = self._reader
        if reader is None:
            return
        buffer = bytearray()
        reason = "connection closed by peer"
        try:
            while True:
                chunk = await reader.read(constants.QMP_READ_CHUNK_BYTES)
                if not chunk:
                    break
                buffer.extend(chunk)
                while (newline := buffer.find(b"\n")) >= 0:
                    line = bytes(buffer[:newline])
                    del buffer[: newline + 1]
                    self._dispatch_line(line)
                if len(buffer) > constants.QMP_MAX_LINE_BYTES:
                    logger.warning(
                        "QMP line exceeds size limit, discarding buffer",
                        extra={"vm_id": self._vm_id, "buffered": len(buffer)},
                    )
                    buffer.clear()
        except (ConnectionError, OSError) as e:
            reason = f"connection error: {e}"
        finally:
            self._mark_disconnected(reason)

    def _dispatch_line(self, line: bytes) -> None:
        line = line.strip()
        if not line:
            return
        try:
            msg = json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning(
                "Malformed QMP message, discarding",
                extra={"vm_id": self._vm_id, "raw": line[:200]},
            )
            return
        if not isinstance(msg, dict):
            logger.warning(
                "Non-object QMP message, discarding",
                extra={"vm_id": self._vm_id, "raw": line[:200]},
            )
            return

        if "QMP" in msg:
            if self._greeting is not None and not self._greeting.done():
                if isinstance(msg["QMP"], dict):
                    self._greeting.set_result(msg)
                else:
                    self._greeting.set_exception(ProtocolError("Malformed QMP greeting", context={"greeting": msg}))
            return

        if "event" in msg:
            self._event_backlog.append(msg)
            for q in list(self._subscribers):
                q.put_nowait(msg)
            return

        if "return" in msg or "error" in msg:
            self._resolve(msg)
            return

        logger.warning("Unrecognized QMP message shape", extra={"vm_id": self._vm_id, "keys": sorted(msg)})

    def _resolve(self, msg: dict[str, Any]) -> None:
        cmd_id = msg.get("id")
        fut = self._pending.get(cmd_id) if isinstance(cmd_id, int) else None
        if fut is None:
            # Withdrawn (timeout/cancel) or id-less server error (e.g. JSON parse error)
            logger.debug(
                "QMP response without a waiter",
                extra={"vm_id": self._vm_id, "id": cmd_id, "error": msg.get("error")},
            )
            return
        if fut.done():
            return
        if "error" in msg:
            err = msg["error"] if isinstance(msg["error"], dict) else {"desc": str(msg["error"])}
            fut.set_exception(
                ProtocolError(
                    str(err.get("desc", "QMP command failed")),
                    context={"id": cmd_id, "error": err},
                    error_class=err.get("class"),
                )
            )
        else:
            fut.set_result(msg["return"])

    def _mark_disconnected(self, reason: str) -> None:
        if self._closed:
            return
        self._closed = True
        context = {"socket": str(self.socket_path), "reason": reason}

        if self._greeting is not None and not self._greeting.done():
            self._greeting.set_exception(ConnectionLostError(f"QMP disconnected before greeting: {reason}", context))

        pending, self._pending = self._pending, {}
        for cmd_id, fut in pending.items():
            if not fut.done():
                fut.set_exception(ConnectionLostError(f"QMP disconnected: {reason}", {**context, "id": cmd_id}))

        subscribers, self._subscribers = self._subscribers, []
        for q in subscribers:
            q.put_nowait(_END_OF_STREAM)

        logger.debug(
            "QMP connection ended",
            extra={"vm_id": self._vm_id, "reason": reason, "failed_commands": len(pending)},
        )

    # ------------------------------------------------------------------
    # Commands used by the supervisor
    # ------------------------------------------------------------------

    async def query_status(self) -> dict[str, Any]:
        """``query-status``: ``{"running": bool, "status": "running" | "paused" | ...}``."""
        return await self.execute("query-status")

    async def pause(self) -> None:
        """Stop all vCPUs (guest-visible, resumable)."""
        await self.execute("stop")

    async def resume(self) -> None:
        await self.execute("cont")

    async def system_powerdown(self) -> None:
        """Send an ACPI power button press so the guest can shut down cleanly."""
        await self.execute("system_powerdown")

    async def quit(self) -> None:
        """Ask QEMU to exit immediately.

        QEMU may close the socket before or after answering, so a lost
        connection here counts as success.
        """
        with contextlib.suppress(ConnectionLostError):
            await self.execute("quit")
