"""Lifecycle and acceleration enums shared by the supervisor and its callers."""

from enum import Enum


class LifecycleState(str, Enum):
    """Authoritative live state of one supervised VM."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    PAUSING = "pausing"
    PAUSED = "paused"
    RESUMING = "resuming"
    STOPPING = "stopping"
    ERROR = "error"


class VmStatus(str, Enum):
    """Four-valued status persisted in the registry and shown to callers."""

    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    ERROR = "error"


class AccelType(str, Enum):
    """QEMU accelerator passed to ``-accel``."""

    KVM = "kvm"
    HVF = "hvf"
    WHPX = "whpx"
    TCG = "tcg"


# Transitions not listed here are programming errors in the supervisor.
# Failure paths revert (e.g. PAUSING -> RUNNING) so they appear as edges too.
VALID_STATE_TRANSITIONS: dict[LifecycleState, set[LifecycleState]] = {
    LifecycleState.STOPPED: {LifecycleState.STARTING},
    LifecycleState.ERROR: {LifecycleState.STARTING},
    LifecycleState.STARTING: {LifecycleState.RUNNING, LifecycleState.STOPPING, LifecycleState.ERROR},
    LifecycleState.RUNNING: {
        LifecycleState.PAUSING,
        LifecycleState.STOPPING,
        LifecycleState.STOPPED,
        LifecycleState.ERROR,
    },
    LifecycleState.PAUSING: {LifecycleState.PAUSED, LifecycleState.RUNNING, LifecycleState.ERROR},
    LifecycleState.PAUSED: {
        LifecycleState.RESUMING,
        LifecycleState.STOPPING,
        LifecycleState.STOPPED,
        LifecycleState.ERROR,
    },
    LifecycleState.RESUMING: {LifecycleState.RUNNING, LifecycleState.PAUSED, LifecycleState.ERROR},
    LifecycleState.STOPPING: {
        LifecycleState.STOPPED,
        LifecycleState.RUNNING,
        LifecycleState.PAUSED,
        LifecycleState.STARTING,
        LifecycleState.ERROR,
    },
}

# States in which the hypervisor process is alive and owned by the supervisor.
LIVE_STATES: frozenset[LifecycleState] = frozenset(
    {
        LifecycleState.STARTING,
        LifecycleState.RUNNING,
        LifecycleState.PAUSING,
        LifecycleState.PAUSED,
        LifecycleState.RESUMING,
        LifecycleState.STOPPING,
    }
)

_STATUS_BY_STATE: dict[LifecycleState, VmStatus] = {
    LifecycleState.STOPPED: VmStatus.STOPPED,
    LifecycleState.STARTING: VmStatus.STOPPED,
    LifecycleState.RUNNING: VmStatus.RUNNING,
    LifecycleState.PAUSING: VmStatus.RUNNING,
    LifecycleState.STOPPING: VmStatus.RUNNING,
    LifecycleState.PAUSED: VmStatus.PAUSED,
    LifecycleState.RESUMING: VmStatus.PAUSED,
    LifecycleState.ERROR: VmStatus.ERROR,
}


def status_for(state: LifecycleState) -> VmStatus:
    """Project a live lifecycle state onto the persisted four-valued status."""
    return _STATUS_BY_STATE[state]
