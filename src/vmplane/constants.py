"""Constants for vmplane configuration and limits."""

from typing import Final

# ============================================================================
# VM Resource Limits
# ============================================================================

MIN_MEMORY_MIB: Final[int] = 512
"""Minimum guest memory accepted by VMConfiguration."""

MIN_CPU_CORES: Final[int] = 1

MIN_DISK_SIZE_GIB: Final[int] = 1

MAX_VM_NAME_LENGTH: Final[int] = 128

MAX_VM_ID_LENGTH: Final[int] = 128
"""Upper bound on VM id length (ids are uuid4 hex, 32 chars, when generated here)."""

VM_ID_PATTERN: Final[str] = r"^[A-Za-z0-9_-]+$"
"""Allowed VM id characters. Ids end up in file and socket names."""

DEFAULT_GUEST_OS: Final[str] = "linux"

# ============================================================================
# Remote Display
# ============================================================================

DISPLAY_PROTOCOL: Final[str] = "spice"

DISPLAY_HOST: Final[str] = "127.0.0.1"
"""Display server bind address. Loopback only: ticketing is disabled."""

DISPLAY_BASE_PORT: Final[int] = 5900

DISPLAY_PORT_WINDOW: Final[int] = 1000
"""Ports are derived into [DISPLAY_BASE_PORT, DISPLAY_BASE_PORT + DISPLAY_PORT_WINDOW)."""

DISPLAY_HASH_MULTIPLIER: Final[int] = 31

# ============================================================================
# Control Protocol (QMP)
# ============================================================================

QMP_CONNECT_TIMEOUT_SECONDS: Final[float] = 5.0
"""Greeting + capabilities negotiation deadline."""

QMP_COMMAND_TIMEOUT_SECONDS: Final[float] = 5.0
"""Default per-command response deadline."""

QMP_CONNECT_RETRY_ATTEMPTS: Final[int] = 5

QMP_READ_CHUNK_BYTES: Final[int] = 64 * 1024

QMP_MAX_LINE_BYTES: Final[int] = 16 * 1024 * 1024
"""A single protocol line larger than this is a protocol error (buffer discarded)."""

# ============================================================================
# Process Lifecycle Timeouts
# ============================================================================

SOCKET_WAIT_TIMEOUT_SECONDS: Final[float] = 10.0
"""How long start() waits for the hypervisor to create its control socket."""

GRACEFUL_STOP_TIMEOUT_SECONDS: Final[float] = 10.0
"""Bounded wait after system_powerdown before escalating."""

QUIT_TIMEOUT_SECONDS: Final[float] = 3.0
"""Bounded wait after the QMP quit command before signalling."""

TERM_TIMEOUT_SECONDS: Final[float] = 3.0
"""SIGTERM grace period in cleanup_process."""

KILL_TIMEOUT_SECONDS: Final[float] = 2.0
"""SIGKILL reap deadline in cleanup_process."""

STDERR_TAIL_LINES: Final[int] = 20
"""Hypervisor stderr lines kept for SpawnError context."""

PROBE_TIMEOUT_SECONDS: Final[float] = 5.0
"""Deadline for capability probe subprocesses (qemu --version, sysctl, ...)."""

# ============================================================================
# Hypervisor Discovery
# ============================================================================

QEMU_SEARCH_PATHS: Final[tuple[str, ...]] = (
    "/opt/homebrew/bin",
    "/usr/local/bin",
    "/usr/bin",
    "/bin",
    "/usr/sbin",
    "/sbin",
)
"""Searched after $PATH when looking for QEMU binaries."""

QEMU_IMG_TIMEOUT_SECONDS: Final[float] = 30.0
"""Deadline for one qemu-img invocation."""
