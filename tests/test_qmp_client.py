"""Tests for QMPClient against an in-process scripted QMP server.

The server is a real asyncio Unix socket server; each test decides when and
in which order responses are written, so correlation, partial reads and
disconnects are exercised over an actual socket.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest

from vmplane.exceptions import CommandTimeoutError, ConnectionLostError, ProtocolError
from vmplane.qmp_client import QMPClient

GREETING = {"QMP": {"version": {"qemu": {"major": 9, "minor": 1, "micro": 0}, "package": ""}, "capabilities": []}}

# ============================================================================
# Test Helpers
# ============================================================================


class ScriptedQmpServer:
    """One-connection QMP server whose replies are written by the test.

    ``qmp_capabilities`` is answered automatically (or rejected); every other
    command is queued on ``commands`` for the test to answer with ``reply``.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.greeting: dict[str, Any] | None = GREETING
        self.reject_capabilities = False
        self.received: list[dict[str, Any]] = []
        self.commands: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self.writer: asyncio.StreamWriter | None = None
        self._server: asyncio.Server | None = None

    async def start(self) -> None:
        self._server = await asyncio.start_unix_server(self._handle, path=str(self.path))

    def stop(self) -> None:
        if self.writer is not None:
            self.writer.close()
        if self._server is not None:
            self._server.close()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.writer = writer
        if self.greeting is not None:
            self.send(self.greeting)
        async for raw in reader:
            cmd = json.loads(raw)
            self.received.append(cmd)
            if cmd["execute"] == "qmp_capabilities":
                if self.reject_capabilities:
                    self.send({"error": {"class": "GenericError", "desc": "capabilities rejected"}, "id": cmd["id"]})
                else:
                    self.send({"return": {}, "id": cmd["id"]})
            else:
                await self.commands.put(cmd)

    def send(self, msg: dict[str, Any] | bytes) -> None:
        assert self.writer is not None
        data = msg if isinstance(msg, bytes) else json.dumps(msg).encode() + b"\n"
        self.writer.write(data)

    def reply(self, cmd: dict[str, Any], value: Any = None) -> None:
        self.send({"return": {} if value is None else value, "id": cmd["id"]})


@pytest.fixture
async def qmp_server(socket_dir: Path) -> AsyncGenerator[ScriptedQmpServer, None]:
    server = ScriptedQmpServer(socket_dir / "qmp.sock")
    await server.start()
    yield server
    server.stop()


@pytest.fixture
async def client(qmp_server: ScriptedQmpServer) -> AsyncGenerator[QMPClient, None]:
    c = QMPClient(qmp_server.path, vm_id="test", connect_timeout=2.0, command_timeout=2.0)
    await c.connect()
    yield c
    await c.close()


# ============================================================================
# Connect / negotiate
# ============================================================================


class TestConnect:
    """Greeting, capabilities negotiation and connect failures."""

    async def test_negotiates_capabilities_first(self, qmp_server: ScriptedQmpServer) -> None:
        async with QMPClient(qmp_server.path) as c:
            assert c.connected
            assert c.negotiated
            assert c.greeting == GREETING
        assert qmp_server.received[0] == {"execute": "qmp_capabilities", "id": 1}

    async def test_adopts_existing_streams(self, qmp_server: ScriptedQmpServer) -> None:
        streams = await asyncio.open_unix_connection(str(qmp_server.path))
        c = QMPClient(qmp_server.path)
        greeting = await c.connect(streams)
        assert greeting == GREETING
        assert c.negotiated
        await c.close()

    async def test_missing_socket(self, socket_dir: Path) -> None:
        c = QMPClient(socket_dir / "missing.sock", connect_timeout=2.0)
        with pytest.raises(ConnectionLostError):
            await c.connect()
        assert not c.connected

    async def test_no_greeting_times_out(self, qmp_server: ScriptedQmpServer) -> None:
        qmp_server.greeting = None
        c = QMPClient(qmp_server.path, connect_timeout=0.2)
        with pytest.raises(CommandTimeoutError, match="No QMP greeting"):
            await c.connect()
        assert c.closed

    async def test_malformed_greeting(self, qmp_server: ScriptedQmpServer) -> None:
        qmp_server.greeting = {"QMP": "not-an-object"}
        c = QMPClient(qmp_server.path, connect_timeout=1.0)
        with pytest.raises(ProtocolError, match="Malformed QMP greeting"):
            await c.connect()

    async def test_rejected_negotiation(self, qmp_server: ScriptedQmpServer) -> None:
        qmp_server.reject_capabilities = True
        c = QMPClient(qmp_server.path, connect_timeout=1.0)
        with pytest.raises(ProtocolError, match="negotiation failed") as exc_info:
            await c.connect()
        assert exc_info.value.error_class == "GenericError"
        assert c.closed

    async def test_command_before_negotiation_rejected_locally(self, qmp_server: ScriptedQmpServer) -> None:
        c = QMPClient(qmp_server.path)
        await c.connect(negotiate=False)
        with pytest.raises(ProtocolError, match="before capabilities negotiation"):
            await c.execute("query-status")
        assert qmp_server.received == []
        await c.close()

    async def test_connect_twice_rejected(self, client: QMPClient) -> None:
        with pytest.raises(ProtocolError, match="already connected"):
            await client.connect()


# ============================================================================
# Command correlation
# ============================================================================


class TestExecute:
    """Responses are matched to waiters by id."""

    async def test_returns_result(self, client: QMPClient, qmp_server: ScriptedQmpServer) -> None:
        task = asyncio.create_task(client.query_status())
        cmd = await qmp_server.commands.get()
        assert cmd == {"execute": "query-status", "id": 2}
        qmp_server.reply(cmd, {"running": True, "status": "running"})
        assert await task == {"running": True, "status": "running"}

    async def test_arguments_sent(self, client: QMPClient, qmp_server: ScriptedQmpServer) -> None:
        task = asyncio.create_task(client.execute("human-monitor-command", {"command-line": "info version"}))
        cmd = await qmp_server.commands.get()
        assert cmd["arguments"] == {"command-line": "info version"}
        qmp_server.reply(cmd, "9.1.0")
        assert await task == "9.1.0"

    async def test_out_of_order_responses(self, client: QMPClient, qmp_server: ScriptedQmpServer) -> None:
        first = asyncio.create_task(client.execute("query-a"))
        second = asyncio.create_task(client.execute("query-b"))
        cmd_a = await qmp_server.commands.get()
        cmd_b = await qmp_server.commands.get()
        assert cmd_a["id"] != cmd_b["id"]

        qmp_server.reply(cmd_b, "b")
        qmp_server.reply(cmd_a, "a")

        assert await first == "a"
        assert await second == "b"
        assert client.pending_count == 0

    async def test_error_response(self, client: QMPClient, qmp_server: ScriptedQmpServer) -> None:
        task = asyncio.create_task(client.execute("bogus"))
        cmd = await qmp_server.commands.get()
        qmp_server.send({"error": {"class": "CommandNotFound", "desc": "The command bogus has not been found"}, "id": cmd["id"]})
        with pytest.raises(ProtocolError, match="has not been found") as exc_info:
            await task
        assert exc_info.value.error_class == "CommandNotFound"

    async def test_timeout_withdraws_only_that_waiter(self, client: QMPClient, qmp_server: ScriptedQmpServer) -> None:
        with pytest.raises(CommandTimeoutError) as exc_info:
            await client.execute("slow", timeout=0.1)
        assert isinstance(exc_info.value, TimeoutError)
        assert client.pending_count == 0

        late = await qmp_server.commands.get()
        qmp_server.reply(late, "too late")

        task = asyncio.create_task(client.execute("fast"))
        cmd = await qmp_server.commands.get()
        qmp_server.reply(cmd, "ok")
        assert await task == "ok"

    async def test_cancel_isolated(self, client: QMPClient, qmp_server: ScriptedQmpServer) -> None:
        doomed = asyncio.create_task(client.execute("a"))
        survivor = asyncio.create_task(client.execute("b"))
        cmd_a = await qmp_server.commands.get()
        cmd_b = await qmp_server.commands.get()

        doomed.cancel()
        with pytest.raises(asyncio.CancelledError):
            await doomed

        qmp_server.reply(cmd_a, "a")
        qmp_server.reply(cmd_b, "b")
        assert await survivor == "b"
        assert client.connected

    async def test_partial_reads_reassembled(self, client: QMPClient, qmp_server: ScriptedQmpServer) -> None:
        task = asyncio.create_task(client.execute("query-chunked"))
        cmd = await qmp_server.commands.get()
        payload = json.dumps({"return": {"value": "x" * 1000}, "id": cmd["id"]}).encode() + b"\n"
        assert qmp_server.writer is not None
        for i in range(0, len(payload), 7):
            qmp_server.send(payload[i : i + 7])
            await qmp_server.writer.drain()
            await asyncio.sleep(0)
        assert await task == {"value": "x" * 1000}

    async def test_malformed_lines_skipped(self, client: QMPClient, qmp_server: ScriptedQmpServer) -> None:
        task = asyncio.create_task(client.execute("query-x"))
        cmd = await qmp_server.commands.get()
        qmp_server.send(b"this is not json\n")
        qmp_server.send(b"[1, 2, 3]\n")
        qmp_server.send(b"\n")
        qmp_server.send({"return": "unknown id", "id": 9999})
        qmp_server.reply(cmd, "fine")
        assert await task == "fine"
        assert client.connected


# ============================================================================
# Events
# ============================================================================


class TestEvents:
    """Asynchronous events reach every subscriber in arrival order."""

    async def test_subscribers_receive_in_order(self, client: QMPClient, qmp_server: ScriptedQmpServer) -> None:
        q1 = client.subscribe()
        q2 = client.subscribe()
        for name in ("STOP", "RESUME", "POWERDOWN"):
            qmp_server.send({"event": name, "data": {}, "timestamp": {"seconds": 0, "microseconds": 0}})

        for q in (q1, q2):
            names = [(await q.get())["event"] for _ in range(3)]
            assert names == ["STOP", "RESUME", "POWERDOWN"]

    async def test_events_interleaved_with_responses(self, client: QMPClient, qmp_server: ScriptedQmpServer) -> None:
        q = client.subscribe()
        task = asyncio.create_task(client.pause())
        cmd = await qmp_server.commands.get()
        assert cmd["execute"] == "stop"
        qmp_server.send({"event": "STOP", "data": {}})
        qmp_server.reply(cmd)
        await task
        event = await q.get()
        assert event is not None
        assert event["event"] == "STOP"
        assert client.recent_events()[-1]["event"] == "STOP"

    async def test_events_iterator_ends_on_disconnect(self, client: QMPClient, qmp_server: ScriptedQmpServer) -> None:
        async def collect() -> list[str]:
            return [event["event"] async for event in client.events()]

        collector = asyncio.create_task(collect())
        await asyncio.sleep(0.01)
        qmp_server.send({"event": "SHUTDOWN", "data": {"guest": True}})
        assert qmp_server.writer is not None
        await qmp_server.writer.drain()
        await asyncio.sleep(0.01)
        qmp_server.stop()
        assert await asyncio.wait_for(collector, timeout=2.0) == ["SHUTDOWN"]

    async def test_unsubscribe(self, client: QMPClient, qmp_server: ScriptedQmpServer) -> None:
        q = client.subscribe()
        client.unsubscribe(q)
        client.unsubscribe(q)
        qmp_server.send({"event": "STOP", "data": {}})
        await asyncio.sleep(0.05)
        assert q.empty()


# ============================================================================
# Disconnect / close
# ============================================================================


class TestDisconnect:
    """Connection loss fails waiters and ends event streams."""

    async def test_peer_close_fails_pending(self, client: QMPClient, qmp_server: ScriptedQmpServer) -> None:
        q = client.subscribe()
        first = asyncio.create_task(client.execute("a"))
        second = asyncio.create_task(client.execute("b"))
        await qmp_server.commands.get()
        await qmp_server.commands.get()

        qmp_server.stop()

        for task in (first, second):
            with pytest.raises(ConnectionLostError):
                await task
        assert await asyncio.wait_for(q.get(), timeout=2.0) is None
        assert client.closed
        assert not client.connected

    async def test_execute_after_disconnect(self, client: QMPClient, qmp_server: ScriptedQmpServer) -> None:
        qmp_server.stop()
        await asyncio.wait_for(client.wait_closed(), timeout=2.0)
        with pytest.raises(ConnectionLostError):
            await client.execute("query-status")

    async def test_close_idempotent(self, client: QMPClient) -> None:
        await client.close()
        await client.close()
        assert client.closed
        with pytest.raises(ConnectionLostError):
            await client.execute("query-status")

    async def test_close_fails_pending(self, client: QMPClient, qmp_server: ScriptedQmpServer) -> None:
        task = asyncio.create_task(client.execute("a"))
        await qmp_server.commands.get()
        await client.close()
        with pytest.raises(ConnectionLostError):
            await task

    async def test_subscribe_after_close_gets_end_of_stream(self, client: QMPClient) -> None:
        await client.close()
        q = client.subscribe()
        assert q.get_nowait() is None

    async def test_quit_tolerates_disconnect(self, client: QMPClient, qmp_server: ScriptedQmpServer) -> None:
        task = asyncio.create_task(client.quit())
        cmd = await qmp_server.commands.get()
        assert cmd["execute"] == "quit"
        qmp_server.stop()
        await task

    async def test_connect_after_close_rejected(self, qmp_server: ScriptedQmpServer) -> None:
        c = QMPClient(qmp_server.path)
        await c.close()
        with pytest.raises(ConnectionLostError, match="closed"):
            await c.connect()
