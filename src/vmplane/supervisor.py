"""Process supervisor: one QEMU process and one QMP session per VM.

Owns the live lifecycle state machine. Every transition for a VM runs under
that VM's lock, so start/stop/pause/resume for one id are serialized while
different ids proceed independently.

State machine (see vm_types.VALID_STATE_TRANSITIONS):

    Stopped/Error --start--> Starting --> Running
    Running --pause--> Pausing --> Paused --resume--> Resuming --> Running
    Running/Paused/Starting --stop--> Stopping --> Stopped
    any live state --process exits on its own--> Error (or Stopped after a
                                                  guest-initiated shutdown)

A failed start leaves the VM in Error with nothing running and no socket file
left behind. A failed pause/resume/stop restores the state it started from.

Usage:
    async with ProcessSupervisor(settings, disks=disks, probe=probe, registry=registry) as sup:
        await sup.start(vm_id, config)
        await sup.pause(vm_id)
        await sup.stop(vm_id)
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Self

import aiofiles.os

from vmplane import constants
from vmplane._logging import get_logger
from vmplane.exceptions import (
    AlreadyRunningError,
    CommandTimeoutError,
    ControlPlaneError,
    NotRunningError,
    RegistryError,
    SpawnError,
)
from vmplane.launch_plan import build_launch_args
from vmplane.models import utcnow
from vmplane.platform_utils import ProcessWrapper
from vmplane.qmp_client import QMPClient
from vmplane.resource_cleanup import cancel_task, cleanup_file, cleanup_process
from vmplane.settings import Settings
from vmplane.subprocess_utils import drain_subprocess_output, log_task_exception, run_to_completion, wait_for_socket
from vmplane.system_probes import find_qemu_binary
from vmplane.vm_types import LIVE_STATES, VALID_STATE_TRANSITIONS, LifecycleState, VmStatus, status_for

if TYPE_CHECKING:
    import types
    from collections.abc import AsyncIterator
    from pathlib import Path

    from vmplane.disk_manager import DiskManager
    from vmplane.models import VMConfiguration
    from vmplane.registry import VMRegistry
    from vmplane.system_probes import CapabilityProbe

logger = get_logger(__name__)

# Bounded wait for the QMP read loop to drain after QEMU exits, so a SHUTDOWN
# event written just before exit is not missed
_EVENT_DRAIN_TIMEOUT_SECONDS = 1.0


@dataclass(slots=True)
class ProcessHandle:
    """The running hypervisor process and what was created alongside it."""

    pid: int
    process: ProcessWrapper
    control_socket: Path
    stderr_tail: deque[str]
    drain_task: asyncio.Task[None] | None = None


@dataclass(slots=True)
class _SupervisedVm:
    vm_id: str
    state: LifecycleState = LifecycleState.STOPPED
    handle: ProcessHandle | None = None
    qmp: QMPClient | None = None
    watcher: asyncio.Task[None] | None = None
    event_task: asyncio.Task[None] | None = None
    stopping: bool = False
    guest_shutdown: bool = False
    last_error: str | None = None
    started_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class SupervisedVmInfo:
    """Read-only snapshot of one supervisor entry."""

    vm_id: str
    state: LifecycleState
    pid: int | None = None
    control_socket: Path | None = None
    started_at: datetime | None = None
    last_error: str | None = None
    stderr_tail: list[str] = field(default_factory=list)


class ProcessSupervisor:
    """Starts, stops, pauses and resumes QEMU processes, one per VM id.

    Attributes:
        settings: Timeouts, binaries and socket directory
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        disks: DiskManager,
        probe: CapabilityProbe,
        registry: VMRegistry | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self._disks = disks
        self._probe = probe
        self._registry = registry
        self._entries: dict[str, _SupervisedVm] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def state_of(self, vm_id: str) -> LifecycleState | None:
        """Current lifecycle state, or None if the VM was never supervised."""
        entry = self._entries.get(vm_id)
        return entry.state if entry is not None else None

    def is_running(self, vm_id: str) -> bool:
        """True while a hypervisor process is alive for ``vm_id``."""
        return self.state_of(vm_id) in LIVE_STATES

    @property
    def active_count(self) -> int:
        return sum(1 for entry in self._entries.values() if entry.handle is not None)

    def info(self, vm_id: str) -> SupervisedVmInfo | None:
        entry = self._entries.get(vm_id)
        if entry is None:
            return None
        handle = entry.handle
        return SupervisedVmInfo(
            vm_id=vm_id,
            state=entry.state,
            pid=handle.pid if handle else None,
            control_socket=handle.control_socket if handle else None,
            started_at=entry.started_at,
            last_error=entry.last_error,
            stderr_tail=list(handle.stderr_tail) if handle else [],
        )

    def forget(self, vm_id: str) -> None:
        """Drop a non-live entry (after the VM is deleted).

        Raises:
            AlreadyRunningError: The VM still has a live process.
        """
        entry = self._entries.get(vm_id)
        if entry is None:
            return
        if entry.state in LIVE_STATES:
            msg = f"VM {vm_id} is {entry.state.value}; stop it first"
            raise AlreadyRunningError(msg, context={"vm_id": vm_id, "state": entry.state.value})
        del self._entries[vm_id]
        lock = self._locks.get(vm_id)
        if lock is not None and not lock.locked():
            del self._locks[vm_id]

    async def query_status(self, vm_id: str) -> dict[str, Any]:
        """Live ``query-status`` round trip to the VM's QEMU."""
        entry = self._entries.get(vm_id)
        if entry is None or entry.qmp is None or entry.state not in LIVE_STATES:
            msg = f"VM {vm_id} is not running"
            raise NotRunningError(msg, context={"vm_id": vm_id})
        return await entry.qmp.query_status()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def locked(self, vm_id: str) -> AsyncIterator[None]:
        """Hold the lifecycle lock of ``vm_id``.

        Callers that must read or write VM state atomically with respect to
        start/stop use this, and call start_locked()/stop_locked() inside it.
        The lock is not reentrant: start()/stop()/pause()/resume() deadlock here.
        """
        async with self._lock_for(vm_id):
            yield

    async def start(self, vm_id: str, config: VMConfiguration) -> None:
        """Launch QEMU for ``vm_id`` and wait until its QMP session is up.

        Raises:
            AlreadyRunningError: VM is not Stopped or Error
            SpawnError: QEMU missing, failed to exec, or exited during startup
            ProtocolError / ConnectionLostError / CommandTimeoutError: QMP handshake failed
            StorageError: Disk could not be allocated
            RegistryError: VM is Running but its status could not be persisted
        """
        await run_to_completion(self._start(vm_id, config))

    async def stop(self, vm_id: str) -> None:
        """Shut the VM down: ACPI powerdown, then quit, then signals.

        Raises:
            NotRunningError: VM is not Running, Paused or Starting
            CommandTimeoutError: The process survived SIGKILL (state unchanged)
        """
        await run_to_completion(self._stop(vm_id))

    async def pause(self, vm_id: str) -> None:
        """Stop the guest's vCPUs (Running -> Paused)."""
        await run_to_completion(
            self._toggle(vm_id, LifecycleState.RUNNING, LifecycleState.PAUSING, LifecycleState.PAUSED)
        )

    async def resume(self, vm_id: str) -> None:
        """Restart the guest's vCPUs (Paused -> Running)."""
        await run_to_completion(
            self._toggle(vm_id, LifecycleState.PAUSED, LifecycleState.RESUMING, LifecycleState.RUNNING)
        )

    async def shutdown(self) -> None:
        """Stop every live VM. Failures are logged, not raised."""
        live = [vm_id for vm_id, entry in self._entries.items() if entry.state in LIVE_STATES]
        if not live:
            return
        logger.info("Stopping all supervised VMs", extra={"count": len(live)})
        results = await asyncio.gather(*(self.stop(vm_id) for vm_id in live), return_exceptions=True)
        for vm_id, result in zip(live, results, strict=True):
            if isinstance(result, BaseException) and not isinstance(result, NotRunningError):
                logger.error(
                    "Failed to stop VM during shutdown",
                    extra={"vm_id": vm_id, "error": str(result), "error_type": type(result).__name__},
                )

    # ------------------------------------------------------------------
    # Transition bodies (run under the VM lock)
    # ------------------------------------------------------------------

    async def _start(self, vm_id: str, config: VMConfiguration) -> None:
        async with self._lock_for(vm_id):
            await self.start_locked(vm_id, config)

    async def start_locked(self, vm_id: str, config: VMConfiguration) -> None:
        """Body of start(). The caller holds ``locked(vm_id)``."""
        entry = self._entries.get(vm_id)
        if entry is not None and entry.state not in (LifecycleState.STOPPED, LifecycleState.ERROR):
            msg = f"VM {vm_id} is already {entry.state.value}"
            raise AlreadyRunningError(msg, context={"vm_id": vm_id, "state": entry.state.value})
        if entry is None:
            entry = _SupervisedVm(vm_id=vm_id)
            self._entries[vm_id] = entry

        self._transition(entry, LifecycleState.STARTING)
        entry.last_error = None
        entry.guest_shutdown = False
        entry.stopping = False

        try:
            handle = await self._launch(entry, config)
        except BaseException as e:
            entry.last_error = str(e)
            logger.error(
                "VM start failed",
                extra={"vm_id": vm_id, "error": str(e), "error_type": type(e).__name__},
            )
            await self._release(entry)
            self._transition(entry, LifecycleState.ERROR)
            await self._persist_best_effort(vm_id, VmStatus.ERROR)
            raise

        entry.started_at = utcnow()
        self._transition(entry, LifecycleState.RUNNING)
        entry.watcher = asyncio.create_task(self._watch_exit(entry, handle), name=f"exit-watcher-{vm_id}")
        entry.watcher.add_done_callback(log_task_exception)
        logger.info(
            "VM started",
            extra={"vm_id": vm_id, "pid": handle.pid, "socket": str(handle.control_socket)},
        )
        await self._persist(vm_id, VmStatus.RUNNING)

    async def _launch(self, entry: _SupervisedVm, config: VMConfiguration) -> ProcessHandle:
        vm_id = entry.vm_id
        binary = find_qemu_binary(self.settings.qemu_binary)
        if binary is None:
            msg = "QEMU system emulator not found"
            raise SpawnError(msg, context={"vm_id": vm_id, "qemu_binary": str(self.settings.qemu_binary)})

        disk_path = await self._disks.allocate(vm_id, config.disk_size_gib)
        accel = await self._probe.preferred_acceleration_mode()

        socket_path = self._socket_path(vm_id)
        await aiofiles.os.makedirs(socket_path.parent, exist_ok=True)
        await cleanup_file(socket_path, vm_id, "stale control socket")

        args = build_launch_args(vm_id, config, disk_path, socket_path, accel, str(binary))
        logger.debug("Launching QEMU", extra={"vm_id": vm_id, "args": args})

        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            msg = f"Failed to launch QEMU: {e}"
            raise SpawnError(msg, context={"vm_id": vm_id, "binary": str(binary)}) from e

        process = ProcessWrapper(proc)
        tail: deque[str] = deque(maxlen=constants.STDERR_TAIL_LINES)
        handle = ProcessHandle(pid=proc.pid, process=process, control_socket=socket_path, stderr_tail=tail)
        entry.handle = handle
        handle.drain_task = asyncio.create_task(
            drain_subprocess_output(process, process_name="qemu", context_id=vm_id, stderr_tail=tail),
            name=f"qemu-output-{vm_id}",
        )
        handle.drain_task.add_done_callback(log_task_exception)

        def abort_if_exited() -> None:
            if process.returncode is not None:
                msg = f"QEMU exited during startup (exit code {process.returncode})"
                raise SpawnError(
                    msg,
                    context={"vm_id": vm_id, "returncode": process.returncode, "stderr": list(tail)},
                )

        try:
            streams = await wait_for_socket(
                socket_path,
                timeout=self.settings.socket_wait_timeout,
                abort_check=abort_if_exited,
                keep_connection=True,
            )
        except TimeoutError as e:
            msg = f"QEMU control socket not ready within {self.settings.socket_wait_timeout}s"
            raise SpawnError(msg, context={"vm_id": vm_id, "socket": str(socket_path), "stderr": list(tail)}) from e

        qmp = QMPClient(
            socket_path,
            vm_id=vm_id,
            connect_timeout=self.settings.qmp_connect_timeout,
            command_timeout=self.settings.qmp_command_timeout,
        )
        entry.qmp = qmp
        await qmp.connect(streams)
        entry.event_task = asyncio.create_task(self._consume_events(entry, qmp), name=f"qmp-events-{vm_id}")
        entry.event_task.add_done_callback(log_task_exception)
        return handle

    async def _stop(self, vm_id: str) -> None:
        async with self._lock_for(vm_id):
            await self.stop_locked(vm_id)

    async def stop_locked(self, vm_id: str) -> None:
        """Body of stop(). The caller holds ``locked(vm_id)``."""
        entry = self._entries.get(vm_id)
        allowed = (LifecycleState.RUNNING, LifecycleState.PAUSED, LifecycleState.STARTING)
        if entry is None or entry.state not in allowed:
            msg = f"VM {vm_id} is not running"
            context = {"vm_id": vm_id, "state": entry.state.value if entry else None}
            raise NotRunningError(msg, context=context)

        previous = entry.state
        entry.stopping = True
        self._transition(entry, LifecycleState.STOPPING)
        try:
            await self._terminate(entry, previous)
        except BaseException:
            entry.stopping = False
            self._transition(entry, previous)
            raise

        watcher, entry.watcher = entry.watcher, None
        await cancel_task(watcher)
        await self._release(entry)
        entry.stopping = False
        self._transition(entry, LifecycleState.STOPPED)
        logger.info("VM stopped", extra={"vm_id": vm_id})
        await self._persist(vm_id, VmStatus.STOPPED)

    async def _terminate(self, entry: _SupervisedVm, previous: LifecycleState) -> None:
        """Escalating shutdown. Returns once the process is reaped."""
        handle = entry.handle
        if handle is None:
            return
        process = handle.process
        qmp = entry.qmp

        if qmp is not None and qmp.connected:
            try:
                if previous is LifecycleState.RUNNING:
                    await qmp.system_powerdown()
                    if await self._wait_exit(process, self.settings.graceful_stop_timeout):
                        return
                    logger.warning(
                        "Guest did not power off in time, sending quit",
                        extra={"vm_id": entry.vm_id, "timeout": self.settings.graceful_stop_timeout},
                    )
                await qmp.quit()
                if await self._wait_exit(process, self.settings.quit_timeout):
                    return
            except ControlPlaneError as e:
                logger.warning(
                    "Graceful stop failed, escalating to signals",
                    extra={"vm_id": entry.vm_id, "error": str(e), "error_type": type(e).__name__},
                )

        stopped = await cleanup_process(
            process,
            "qemu",
            entry.vm_id,
            term_timeout=self.settings.term_timeout,
            kill_timeout=self.settings.kill_timeout,
        )
        if not stopped:
            msg = f"QEMU process {handle.pid} for VM {entry.vm_id} could not be terminated"
            raise CommandTimeoutError(msg, context={"vm_id": entry.vm_id, "pid": handle.pid})

    async def _toggle(
        self,
        vm_id: str,
        required: LifecycleState,
        transient: LifecycleState,
        target: LifecycleState,
    ) -> None:
        async with self._lock_for(vm_id):
            entry = self._entries.get(vm_id)
            if entry is None or entry.state is not required or entry.qmp is None:
                msg = f"VM {vm_id} is not {required.value}"
                context = {"vm_id": vm_id, "state": entry.state.value if entry else None}
                raise NotRunningError(msg, context=context)

            self._transition(entry, transient)
            try:
                if target is LifecycleState.PAUSED:
                    await entry.qmp.pause()
                else:
                    await entry.qmp.resume()
            except BaseException:
                self._transition(entry, required)
                raise
            self._transition(entry, target)
            logger.info(f"VM {target.value}", extra={"vm_id": vm_id})
            await self._persist(vm_id, status_for(target))

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    async def _watch_exit(self, entry: _SupervisedVm, handle: ProcessHandle) -> None:
        """Observe QEMU exiting on its own and move the VM to Error/Stopped."""
        returncode = await handle.process.wait()
        if entry.stopping or entry.handle is not handle:
            return

        async with self._lock_for(entry.vm_id):
            if entry.stopping or entry.handle is not handle:
                return

            qmp = entry.qmp
            if qmp is not None:
                with contextlib.suppress(TimeoutError):
                    async with asyncio.timeout(_EVENT_DRAIN_TIMEOUT_SECONDS):
                        await qmp.wait_closed()
                entry.guest_shutdown = entry.guest_shutdown or _saw_guest_shutdown(qmp)

            clean = returncode == 0 and entry.guest_shutdown
            if clean:
                entry.last_error = None
                logger.info("Guest powered off", extra={"vm_id": entry.vm_id})
            else:
                entry.last_error = f"QEMU exited unexpectedly (exit code {returncode})"
                logger.warning(
                    "QEMU exited unexpectedly",
                    extra={"vm_id": entry.vm_id, "returncode": returncode, "stderr": list(handle.stderr_tail)},
                )

            entry.watcher = None
            await self._release(entry)
            self._transition(entry, LifecycleState.STOPPED if clean else LifecycleState.ERROR)
            await self._persist_best_effort(entry.vm_id, status_for(entry.state))

    async def _consume_events(self, entry: _SupervisedVm, qmp: QMPClient) -> None:
        async for event in qmp.events():
            name = event.get("event")
            data = event.get("data") or {}
            logger.debug("QMP event", extra={"vm_id": entry.vm_id, "event": name, "data": data})
            if name == "SHUTDOWN" and data.get("guest"):
                entry.guest_shutdown = True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lock_for(self, vm_id: str) -> asyncio.Lock:
        return self._locks.setdefault(vm_id, asyncio.Lock())

    def _socket_path(self, vm_id: str) -> Path:
        # Hashed: AF_UNIX paths are limited to ~104 bytes and ids may be long
        digest = hashlib.sha256(vm_id.encode()).hexdigest()[:16]
        return self.settings.resolved_socket_dir() / f"qmp-{digest}.sock"

    def _transition(self, entry: _SupervisedVm, new: LifecycleState) -> None:
        if new not in VALID_STATE_TRANSITIONS[entry.state]:
            msg = f"Invalid state transition {entry.state.value} -> {new.value}"
            raise ControlPlaneError(msg, context={"vm_id": entry.vm_id})
        logger.debug(
            "VM state transition",
            extra={"vm_id": entry.vm_id, "from": entry.state.value, "to": new.value},
        )
        entry.state = new

    async def _release(self, entry: _SupervisedVm) -> None:
        """Tear down the QMP session, process and socket file of an entry."""
        qmp, entry.qmp = entry.qmp, None
        if qmp is not None:
            await qmp.close()
        event_task, entry.event_task = entry.event_task, None
        await cancel_task(event_task)

        handle, entry.handle = entry.handle, None
        if handle is None:
            return
        await cleanup_process(
            handle.process,
            "qemu",
            entry.vm_id,
            term_timeout=self.settings.term_timeout,
            kill_timeout=self.settings.kill_timeout,
        )
        await cancel_task(handle.drain_task)
        await cleanup_file(handle.control_socket, entry.vm_id, "control socket")

    @staticmethod
    async def _wait_exit(process: ProcessWrapper, timeout: float) -> bool:
        try:
            await process.wait_with_timeout(timeout)
        except TimeoutError:
            return False
        return True

    async def _persist(self, vm_id: str, status: VmStatus) -> None:
        """Write ``status`` to the registry row for ``vm_id``.

        Raises:
            RegistryError: Row missing or the write failed.
        """
        if self._registry is None:
            return
        record = await self._registry.get(vm_id)
        if record is None:
            msg = f"VM {vm_id} not found"
            raise RegistryError(msg, context={"vm_id": vm_id})
        await self._registry.update(record.with_status(status))

    async def _persist_best_effort(self, vm_id: str, status: VmStatus) -> None:
        try:
            await self._persist(vm_id, status)
        except RegistryError as e:
            logger.error(
                "Failed to persist VM status",
                extra={"vm_id": vm_id, "status": status.value, "error": str(e)},
            )


def _saw_guest_shutdown(qmp: QMPClient) -> bool:
    return any(
        event.get("event") == "SHUTDOWN" and (event.get("data") or {}).get("guest")
        for event in qmp.recent_events()
    )
