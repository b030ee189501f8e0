"""Caller-facing operations: one coroutine per lifecycle verb.

ControlPlane wires the registry, disk manager, capability probe, supervisor
and display manager together. Every operation validates its VM id (and
configuration, where given) before touching any collaborator, so a rejected
request has no side effects.

``handle()`` is the seam for an RPC layer: it dispatches by operation name
and folds every ControlPlaneError into an OperationResult instead of raising.

Usage:
    async with ControlPlane() as plane:
        vm = await plane.create({"name": "dev", "memory_mib": 2048, "cpu_cores": 2, "disk_size_gib": 20})
        await plane.start(vm.id)
        session = await plane.open_display(vm.id)
        print(session.uri)
"""

from __future__ import annotations

import inspect
import re
import uuid
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Self

from pydantic import BaseModel

from vmplane import constants
from vmplane._logging import get_logger
from vmplane.disk_manager import QemuImgDiskManager
from vmplane.display import DisplaySessionManager
from vmplane.exceptions import (
    AlreadyRunningError,
    ConfigValidationError,
    ControlPlaneError,
    NotFoundError,
    RegistryError,
    StorageError,
)
from vmplane.models import OperationResult, VMConfigPatch, VMConfiguration, VMRecord, parse_config, parse_patch
from vmplane.registry import SqliteRegistry
from vmplane.settings import Settings
from vmplane.subprocess_utils import run_to_completion
from vmplane.supervisor import ProcessSupervisor
from vmplane.system_probes import HostCapabilityProbe
from vmplane.vm_types import VmStatus, status_for

if TYPE_CHECKING:
    import types
    from collections.abc import Awaitable, Callable

    from vmplane.disk_manager import DiskManager
    from vmplane.models import DisplaySession, HostCapabilities, HypervisorInfo
    from vmplane.registry import VMRegistry

logger = get_logger(__name__)

_VM_ID_RE = re.compile(constants.VM_ID_PATTERN)


def validate_vm_id(vm_id: str) -> str:
    """Check a VM id before it reaches any collaborator.

    Raises:
        ConfigValidationError: Empty, too long, or outside ``[A-Za-z0-9_-]``.
    """
    if not vm_id:
        raise ConfigValidationError("VM ID cannot be empty")
    if len(vm_id) > constants.MAX_VM_ID_LENGTH:
        msg = f"VM ID must be at most {constants.MAX_VM_ID_LENGTH} characters"
        raise ConfigValidationError(msg, context={"vm_id": vm_id[:64]})
    if not _VM_ID_RE.match(vm_id):
        msg = "VM ID may only contain letters, digits, '-' and '_'"
        raise ConfigValidationError(msg, context={"vm_id": vm_id})
    return vm_id


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_to_jsonable(v) for v in value]
    return value


class ControlPlane:
    """Local VM control plane.

    Collaborators default to the shipped implementations built from
    ``settings``; pass your own to swap storage or probing.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        registry: VMRegistry | None = None,
        disks: DiskManager | None = None,
        probe: HostCapabilityProbe | None = None,
        supervisor: ProcessSupervisor | None = None,
        display: DisplaySessionManager | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.registry = registry or SqliteRegistry(self.settings.resolved_registry_path())
        self.disks = disks or QemuImgDiskManager(self.settings.resolved_disks_dir(), self.settings.qemu_img_binary)
        self.probe = probe or HostCapabilityProbe(
            self.settings.qemu_binary, force_emulation=self.settings.force_emulation
        )
        self.supervisor = supervisor or ProcessSupervisor(
            self.settings, disks=self.disks, probe=self.probe, registry=self.registry
        )
        self.display = display or DisplaySessionManager(self.supervisor.state_of)

        self._operations: dict[str, Callable[..., Awaitable[Any]]] = {
            "create": self.create,
            "update": self.update,
            "start": self.start,
            "stop": self.stop,
            "pause": self.pause,
            "resume": self.resume,
            "list": self.list,
            "get": self.get,
            "delete": self.delete,
            "open_display": self.open_display,
            "get_display": self.get_display,
            "close_display": self.close_display,
            "detect_hypervisor": self.detect_hypervisor,
            "get_host_capabilities": self.get_host_capabilities,
        }

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.supervisor.shutdown()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def create(self, config: VMConfiguration | Mapping[str, Any]) -> VMRecord:
        """Validate ``config``, allocate a disk and register a stopped VM.

        Raises:
            ConfigValidationError: Invalid configuration (nothing allocated)
            StorageError: Disk allocation failed (nothing registered)
            RegistryError: Registry write failed (disk removed again)
        """
        config = parse_config(config)
        vm_id = uuid.uuid4().hex
        await self.disks.allocate(vm_id, config.disk_size_gib)

        record = VMRecord.from_config(vm_id, config)
        try:
            await self.registry.create(record)
        except RegistryError:
            try:
                await self.disks.delete(vm_id)
            except StorageError as e:
                logger.error("Failed to roll back disk allocation", extra={"vm_id": vm_id, "error": str(e)})
            raise

        logger.info("VM created", extra={"vm_id": vm_id, "vm_name": config.name})
        return record

    async def update(self, vm_id: str, patch: VMConfigPatch | Mapping[str, Any]) -> VMRecord:
        """Apply a partial configuration change to a stopped VM.

        The merged configuration is validated in full before the single
        registry write, so a rejected patch changes nothing.

        Raises:
            NotFoundError: Unknown VM
            AlreadyRunningError: VM has a live process
            ConfigValidationError: Patch or merged configuration invalid
        """
        validate_vm_id(vm_id)
        patch = parse_patch(patch)
        async with self.supervisor.locked(vm_id):
            record = await self._require(vm_id)
            if self.supervisor.is_running(vm_id):
                msg = f"VM {vm_id} is running; stop it before changing its configuration"
                raise AlreadyRunningError(msg, context={"vm_id": vm_id})

            updated = record.with_config(patch.apply(record.config))
            await self.registry.update(updated)
        logger.info(
            "VM updated",
            extra={"vm_id": vm_id, "fields": sorted(patch.model_dump(exclude_unset=True))},
        )
        return self._reconcile(updated)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, vm_id: str) -> VMRecord:
        validate_vm_id(vm_id)
        await run_to_completion(self._start_under_lock(vm_id))
        return await self.get(vm_id)

    async def stop(self, vm_id: str) -> VMRecord:
        await self._require(validate_vm_id(vm_id))
        await self.supervisor.stop(vm_id)
        return await self.get(vm_id)

    async def pause(self, vm_id: str) -> VMRecord:
        await self._require(validate_vm_id(vm_id))
        await self.supervisor.pause(vm_id)
        return await self.get(vm_id)

    async def resume(self, vm_id: str) -> VMRecord:
        await self._require(validate_vm_id(vm_id))
        await self.supervisor.resume(vm_id)
        return await self.get(vm_id)

    async def delete(self, vm_id: str) -> None:
        """Stop (best-effort), remove the disk, then remove the registry row.

        Raises:
            NotFoundError: Unknown VM
            StorageError: Disk could not be removed (registry row kept)
        """
        validate_vm_id(vm_id)
        await run_to_completion(self._delete_under_lock(vm_id))
        logger.info("VM deleted", extra={"vm_id": vm_id})

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, vm_id: str) -> VMRecord:
        return self._reconcile(await self._require(validate_vm_id(vm_id)))

    async def list(self) -> list[VMRecord]:
        """All VMs, newest first, with live status from the supervisor."""
        return [self._reconcile(record) for record in await self.registry.list()]

    # ------------------------------------------------------------------
    # Display
    # ------------------------------------------------------------------

    async def open_display(self, vm_id: str) -> DisplaySession:
        await self._require(validate_vm_id(vm_id))
        return self.display.open(vm_id)

    async def get_display(self, vm_id: str) -> DisplaySession | None:
        """The VM's display session, or None if none was ever opened."""
        await self._require(validate_vm_id(vm_id))
        return self.display.get(vm_id)

    async def close_display(self, vm_id: str) -> DisplaySession | None:
        """Close the VM's display session. Nothing to close is not an error."""
        await self._require(validate_vm_id(vm_id))
        return self.display.close(vm_id)

    # ------------------------------------------------------------------
    # Host
    # ------------------------------------------------------------------

    async def detect_hypervisor(self) -> HypervisorInfo:
        return await self.probe.detect_hypervisor()

    async def get_host_capabilities(self) -> HostCapabilities:
        return await self.probe.host_capabilities()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    @property
    def operations(self) -> list[str]:
        return sorted(self._operations)

    async def handle(self, operation: str, **params: Any) -> OperationResult:
        """Run ``operation`` by name and wrap the outcome.

        Names accept either ``open_display`` or ``open-display``. Model
        results are returned as JSON-compatible dicts.
        """
        method = self._operations.get(operation.replace("-", "_"))
        if method is None:
            return OperationResult(
                success=False,
                error=f"Unknown operation: {operation}",
                error_type="UnknownOperation",
            )
        try:
            inspect.signature(method).bind(**params)
        except TypeError as e:
            return OperationResult(
                success=False,
                error=f"Invalid parameters for {operation}: {e}",
                error_type="TypeError",
            )

        try:
            result = await method(**params)
        except ControlPlaneError as e:
            logger.warning(
                "Operation failed",
                extra={"operation": operation, "error": e.message, "error_type": type(e).__name__},
            )
            return OperationResult(success=False, error=e.message, error_type=type(e).__name__)
        return OperationResult(success=True, data=_to_jsonable(result))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _start_under_lock(self, vm_id: str) -> None:
        # Config is read under the lock so an update cannot interleave with the launch
        async with self.supervisor.locked(vm_id):
            record = await self._require(vm_id)
            await self.supervisor.start_locked(vm_id, record.config)

    async def _delete_under_lock(self, vm_id: str) -> None:
        async with self.supervisor.locked(vm_id):
            await self._require(vm_id)

            if self.supervisor.is_running(vm_id):
                try:
                    await self.supervisor.stop_locked(vm_id)
                except ControlPlaneError as e:
                    logger.warning(
                        "Failed to stop VM before delete",
                        extra={"vm_id": vm_id, "error": str(e), "error_type": type(e).__name__},
                    )

            await self.disks.delete(vm_id)
            await self.registry.delete(vm_id)
            self.display.forget(vm_id)
            if self.supervisor.is_running(vm_id):
                logger.warning("Deleted VM still has a live process", extra={"vm_id": vm_id})
            else:
                self.supervisor.forget(vm_id)

    async def _require(self, vm_id: str) -> VMRecord:
        record = await self.registry.get(vm_id)
        if record is None:
            msg = f"VM {vm_id} not found"
            raise NotFoundError(msg, context={"vm_id": vm_id})
        return record

    def _reconcile(self, record: VMRecord) -> VMRecord:
        """Overlay the supervisor's live state on a persisted record."""
        state = self.supervisor.state_of(record.id)
        if state is not None:
            status = status_for(state)
        elif record.status in (VmStatus.RUNNING, VmStatus.PAUSED):
            # Persisted by a previous process that is gone now
            status = VmStatus.STOPPED
        else:
            return record
        if status is record.status:
            return record
        return record.model_copy(update={"status": status})
