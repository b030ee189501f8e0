"""Stand-in for qemu-system-* used by the lifecycle tests.

Speaks enough QMP on the ``-qmp unix:PATH,...`` socket from argv to drive the
supervisor: greeting, capabilities negotiation, query-status, stop, cont,
system_powerdown and quit, with the matching events. Also answers the
``--version`` and ``-accel help`` probes.

Behaviour switches (environment):
    FAKE_QEMU_MODE=normal            default
    FAKE_QEMU_MODE=ignore_powerdown  guest never reacts to system_powerdown
    FAKE_QEMU_MODE=exit_early        print an error and exit 1 before creating the socket
    FAKE_QEMU_MODE=no_socket         never create the socket
    FAKE_QEMU_MODE=no_greeting       accept connections but never greet
    FAKE_QEMU_GUEST_SHUTDOWN_AFTER=S guest powers itself off after S seconds
    FAKE_QEMU_ARGS_FILE=PATH         write argv (JSON) to PATH on startup
"""

import asyncio
import contextlib
import json
import os
import sys
import time
from pathlib import Path

MODE = os.environ.get("FAKE_QEMU_MODE", "normal")


def _qmp_path(argv: list[str]) -> Path:
    spec = argv[argv.index("-qmp") + 1]
    # unix:PATH,server=on,wait=off with "," in PATH doubled
    value = spec.removeprefix("unix:").replace(",,", "\0").split(",")[0]
    return Path(value.replace("\0", ","))


class FakeQemu:
    def __init__(self, socket_path: Path) -> None:
        self.socket_path = socket_path
        self.status = "running"
        self.done = asyncio.Event()
        self.exit_code = 0
        self.writers: list[asyncio.StreamWriter] = []

    def emit(self, name: str, data: dict | None = None) -> None:
        now = time.time()
        event = {
            "event": name,
            "data": data or {},
            "timestamp": {"seconds": int(now), "microseconds": int(now % 1 * 1_000_000)},
        }
        for writer in list(self.writers):
            with contextlib.suppress(ConnectionError, RuntimeError):
                writer.write(json.dumps(event).encode() + b"\n")

    def shutdown(self, *, guest: bool, delay: float = 0.05) -> None:
        reason = "guest-shutdown" if guest else "host-qmp-quit"
        self.emit("SHUTDOWN", {"guest": guest, "reason": reason})
        asyncio.get_running_loop().call_later(delay, self.done.set)

    async def serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.writers.append(writer)
        try:
            if MODE == "no_greeting":
                await reader.read()
                return
            greeting = {
                "QMP": {"version": {"qemu": {"major": 9, "minor": 1, "micro": 0}, "package": ""}, "capabilities": ["oob"]}
            }
            writer.write(json.dumps(greeting).encode() + b"\n")
            negotiated = False
            async for raw in reader:
                if not raw.strip():
                    continue
                cmd = json.loads(raw)
                name = cmd.get("execute")
                reply: dict = {"return": {}}
                if not negotiated and name != "qmp_capabilities":
                    reply = {
                        "error": {
                            "class": "CommandNotFound",
                            "desc": "Expecting capabilities negotiation with 'qmp_capabilities'",
                        }
                    }
                elif name == "qmp_capabilities":
                    negotiated = True
                elif name == "query-status":
                    running = self.status == "running"
                    reply = {"return": {"running": running, "singlestep": False, "status": self.status}}
                elif name == "stop":
                    self.status = "paused"
                    self.emit("STOP")
                elif name == "cont":
                    self.status = "running"
                    self.emit("RESUME")
                elif name == "system_powerdown":
                    self.emit("POWERDOWN")
                    if MODE != "ignore_powerdown" and self.status == "running":
                        self.shutdown(guest=True, delay=0.1)
                elif name == "quit":
                    self.shutdown(guest=False)
                else:
                    reply = {"error": {"class": "CommandNotFound", "desc": f"The command {name} has not been found"}}
                if "id" in cmd:
                    reply["id"] = cmd["id"]
                writer.write(json.dumps(reply).encode() + b"\n")
                await writer.drain()
        except (ConnectionError, json.JSONDecodeError):
            pass
        finally:
            self.writers.remove(writer)
            writer.close()

    async def run(self) -> int:
        server = await asyncio.start_unix_server(self.serve, path=str(self.socket_path))
        print("fake-qemu: control socket ready", flush=True)
        guest_shutdown_after = os.environ.get("FAKE_QEMU_GUEST_SHUTDOWN_AFTER")
        if guest_shutdown_after:
            loop = asyncio.get_running_loop()
            loop.call_later(float(guest_shutdown_after), lambda: self.shutdown(guest=True))
        await self.done.wait()
        # No wait_closed(): it would block on the still-connected client
        server.close()
        for writer in list(self.writers):
            writer.close()
        with contextlib.suppress(FileNotFoundError):
            self.socket_path.unlink()
        return self.exit_code


def main(argv: list[str]) -> int:
    if "--version" in argv:
        print("QEMU emulator version 9.1.0\nCopyright (c) 2003-2024 Fabrice Bellard and the QEMU Project developers")
        return 0
    if argv[:2] == ["-accel", "help"]:
        print("Accelerators supported in QEMU binary:\ntcg\nkvm")
        return 0

    args_file = os.environ.get("FAKE_QEMU_ARGS_FILE")
    if args_file:
        Path(args_file).write_text(json.dumps(argv))

    if MODE == "exit_early":
        print("qemu-system-x86_64: -drive file=disk.qcow2: Could not open backing file", file=sys.stderr, flush=True)
        return 1
    if MODE == "no_socket":
        time.sleep(3600)
        return 0

    print("fake-qemu: starting", file=sys.stderr, flush=True)
    return asyncio.run(FakeQemu(_qmp_path(argv)).run())


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
