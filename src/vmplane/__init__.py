"""vmplane: a control plane for local QEMU virtual machines.

Turns a declarative VM configuration into a supervised QEMU process and
exposes lifecycle operations with well-defined state transitions.

Quick Start:
    ```python
    from vmplane import ControlPlane

    async with ControlPlane() as plane:
        vm = await plane.create(
            {"name": "dev", "memory_mib": 2048, "cpu_cores": 2, "disk_size_gib": 20}
        )
        await plane.start(vm.id)
        session = await plane.open_display(vm.id)
        print(session.uri)  # "spice://127.0.0.1:59xx"
        await plane.stop(vm.id)
    ```

Building blocks (usable on their own):
    - build_launch_args: VM configuration -> QEMU command line (pure)
    - QMPClient: async QMP client with concurrent command correlation
    - ProcessSupervisor: per-VM process ownership and state machine
    - DisplaySessionManager: SPICE endpoint and reachability tracking

Requirements:
    - QEMU (qemu-system-* and qemu-img) on PATH
    - KVM (Linux) or HVF (macOS) for hardware acceleration, TCG otherwise
    - Python 3.12+
"""

from vmplane.control_plane import ControlPlane, validate_vm_id
from vmplane.display import DisplaySessionManager
from vmplane.exceptions import (
    AlreadyRunningError,
    CommandTimeoutError,
    ConfigValidationError,
    ConnectionLostError,
    ControlPlaneError,
    InputValidationError,
    NotFoundError,
    NotRunningError,
    PermanentError,
    ProtocolError,
    RegistryError,
    SpawnError,
    StorageError,
    TransientError,
)
from vmplane.launch_plan import build_launch_args, display_port_for
from vmplane.models import (
    BootOrder,
    DisplaySession,
    DisplayStatus,
    HostCapabilities,
    HypervisorInfo,
    NetworkMode,
    OperationResult,
    VMConfigPatch,
    VMConfiguration,
    VMRecord,
)
from vmplane.qmp_client import QMPClient
from vmplane.settings import Settings
from vmplane.supervisor import ProcessSupervisor
from vmplane.vm_types import AccelType, LifecycleState, VmStatus

__all__ = [
    "AccelType",
    "AlreadyRunningError",
    "BootOrder",
    "CommandTimeoutError",
    "ConfigValidationError",
    "ConnectionLostError",
    "ControlPlane",
    "ControlPlaneError",
    "DisplaySession",
    "DisplaySessionManager",
    "DisplayStatus",
    "HostCapabilities",
    "HypervisorInfo",
    "InputValidationError",
    "LifecycleState",
    "NetworkMode",
    "NotFoundError",
    "NotRunningError",
    "OperationResult",
    "PermanentError",
    "ProcessSupervisor",
    "ProtocolError",
    "QMPClient",
    "RegistryError",
    "Settings",
    "SpawnError",
    "StorageError",
    "TransientError",
    "VMConfigPatch",
    "VMConfiguration",
    "VMRecord",
    "VmStatus",
    "build_launch_args",
    "display_port_for",
    "validate_vm_id",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("vmplane")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
