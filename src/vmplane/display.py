"""Remote-display (SPICE) session tracking.

QEMU serves SPICE itself; this module only tracks, per VM, whether a viewer
endpoint was handed out and whether it is still reachable. Reachability is
derived from the supervisor's lifecycle state on every read, so a session
never reports Connected for a VM that is not Running.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from vmplane import constants
from vmplane._logging import get_logger
from vmplane.exceptions import NotRunningError
from vmplane.launch_plan import display_port_for
from vmplane.models import DisplaySession, DisplayStatus
from vmplane.vm_types import LifecycleState

if TYPE_CHECKING:
    from collections.abc import Callable

logger = get_logger(__name__)

_DISCONNECT_REASONS: dict[LifecycleState | None, str] = {
    LifecycleState.ERROR: "VM exited unexpectedly",
    LifecycleState.PAUSING: "VM paused",
    LifecycleState.PAUSED: "VM paused",
    LifecycleState.RESUMING: "VM paused",
}


class DisplaySessionManager:
    """Tracks one DisplaySession per VM id.

    Args:
        state_of: Returns the VM's lifecycle state, or None if unsupervised
            (normally ``ProcessSupervisor.state_of``)
        host: Address the display server listens on
    """

    def __init__(
        self,
        state_of: Callable[[str], LifecycleState | None],
        *,
        host: str = constants.DISPLAY_HOST,
    ) -> None:
        self._state_of = state_of
        self._host = host
        self._sessions: dict[str, DisplaySession] = {}

    def open(self, vm_id: str) -> DisplaySession:
        """Hand out the display endpoint for a running VM.

        Raises:
            NotRunningError: VM is not Running
        """
        state = self._state_of(vm_id)
        if state is not LifecycleState.RUNNING:
            msg = f"VM {vm_id} is not running"
            raise NotRunningError(msg, context={"vm_id": vm_id, "state": state.value if state else None})

        session = self._sessions.get(vm_id)
        if session is None:
            session = DisplaySession(vm_id=vm_id, host=self._host, port=display_port_for(vm_id))
            logger.info("Display session opened", extra={"vm_id": vm_id, "uri": session.uri})
        elif session.status is not DisplayStatus.CONNECTED:
            session = session.model_copy(
                update={
                    "status": DisplayStatus.CONNECTED,
                    "reconnect_attempts": session.reconnect_attempts + 1,
                    "last_error": None,
                }
            )
            logger.info(
                "Display session reconnected",
                extra={"vm_id": vm_id, "uri": session.uri, "attempts": session.reconnect_attempts},
            )
        self._sessions[vm_id] = session
        return session

    def close(self, vm_id: str) -> DisplaySession | None:
        """Mark the session Disconnected.

        Returns None, and changes nothing, when no session was ever opened
        for ``vm_id``.
        """
        session = self._sessions.get(vm_id)
        if session is None:
            return None
        session = session.model_copy(
            update={"status": DisplayStatus.DISCONNECTED, "last_error": "Display session closed"}
        )
        self._sessions[vm_id] = session
        logger.info("Display session closed", extra={"vm_id": vm_id})
        return session

    def get(self, vm_id: str) -> DisplaySession | None:
        """Current session for ``vm_id`` after reconciling with the VM state."""
        if vm_id not in self._sessions:
            return None
        return self._reconcile(vm_id)

    def reconcile_all(self) -> list[DisplaySession]:
        return [self._reconcile(vm_id) for vm_id in list(self._sessions)]

    def forget(self, vm_id: str) -> None:
        self._sessions.pop(vm_id, None)

    def _reconcile(self, vm_id: str) -> DisplaySession:
        session = self._sessions[vm_id]
        if session.status is not DisplayStatus.CONNECTED:
            return session
        state = self._state_of(vm_id)
        if state is LifecycleState.RUNNING:
            return session

        reason = _DISCONNECT_REASONS.get(state, "VM stopped")
        session = session.model_copy(update={"status": DisplayStatus.DISCONNECTED, "last_error": reason})
        self._sessions[vm_id] = session
        logger.info("Display session lost", extra={"vm_id": vm_id, "reason": reason})
        return session
