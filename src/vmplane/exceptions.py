"""Exception hierarchy for vmplane.

All exceptions inherit from ControlPlaneError.

Hierarchy:
    ControlPlaneError (base)
    ├── PermanentError (caller must change something before retrying)
    │   ├── ConfigValidationError  ← bad VMConfiguration / VM id (also InputValidationError)
    │   ├── NotFoundError          ← unknown VM id or display session
    │   ├── AlreadyRunningError    ← start/update on a live VM
    │   ├── NotRunningError        ← stop/pause/resume/open-display on a non-live VM
    │   ├── SpawnError             ← hypervisor process could not be started
    │   └── ProtocolError          ← malformed message, negotiation failure, server error
    └── TransientError (may succeed on retry)
        ├── ConnectionLostError    ← control socket dropped
        ├── CommandTimeoutError    ← command or graceful-stop deadline exceeded
        ├── StorageError           ← disk allocation/deletion failure
        └── RegistryError          ← durable store failure
"""

from __future__ import annotations

from typing import Any


class ControlPlaneError(Exception):
    """Base exception for all control-plane errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Marker bases
# =============================================================================


class TransientError(ControlPlaneError):
    """Base for errors caused by the environment that may clear on retry."""


class PermanentError(ControlPlaneError):
    """Base for errors that will recur until the request or host changes."""


class InputValidationError(ControlPlaneError):
    """Base for caller bugs: nothing was touched, fix the input and retry."""


# =============================================================================
# Permanent errors
# =============================================================================


class ConfigValidationError(PermanentError, InputValidationError):
    """Invalid VM configuration, patch, or identifier.

    Always raised before any side effect (disk allocation, registry write,
    process spawn).
    """


class NotFoundError(PermanentError):
    """Unknown VM id (or no display session for it)."""


class AlreadyRunningError(PermanentError):
    """Lifecycle transition requires a VM that is not live."""


class NotRunningError(PermanentError):
    """Lifecycle transition requires a supervised, live VM."""


class SpawnError(PermanentError):
    """Hypervisor process could not be started or died during startup.

    ``context`` carries the exit code and the tail of stderr when available.
    """


class ProtocolError(PermanentError):
    """Control protocol violation or server-reported command failure.

    Attributes:
        error_class: QMP error class from the server (e.g. "GenericError"), if any
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        error_class: str | None = None,
    ):
        super().__init__(message, context)
        self.error_class = error_class


# =============================================================================
# Transient errors
# =============================================================================


class ConnectionLostError(TransientError):
    """Control socket disconnected while a command was outstanding."""


class CommandTimeoutError(TransientError, TimeoutError):
    """A protocol command or a bounded lifecycle wait exceeded its deadline.

    Also a builtins.TimeoutError so generic timeout handlers catch it.
    """


class StorageError(TransientError):
    """Disk image allocation, deletion or inspection failed.

    Attributes:
        stderr: Standard error output from qemu-img (if available)
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, stderr: str = ""):
        super().__init__(message, context)
        self.stderr = stderr


class RegistryError(TransientError):
    """Durable registry read or write failed."""
