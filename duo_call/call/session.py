"""Call session model: roles, call state and its transitions."""

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum

from duo_call.exceptions import InvalidTransitionError

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """The two fixed call identities. Only A sends offers."""

    A = "A"
    B = "B"

    @property
    def other(self) -> "Role":
        return Role.B if self is Role.A else Role.A


class CallState(Enum):
    """Call lifecycle states, in order."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ENDED = "ended"


# Allowed edges. Anything else (backwards, repeated, skipping CONNECTING on
# the way to CONNECTED) is rejected.
_TRANSITIONS = {
    CallState.IDLE: {CallState.CONNECTING, CallState.ENDED},
    CallState.CONNECTING: {CallState.CONNECTED, CallState.ENDED},
    CallState.CONNECTED: {CallState.ENDED},
    CallState.ENDED: set(),
}


@dataclass
class Session:
    """One call attempt between the local role and the remote role.

    A Session is created fresh for every call and never reused after it
    reaches ENDED.

    Attributes:
        local_role: Role of this party
        call_id: Relay-level call identifier shared by both parties
        session_id: Unique id of this attempt
        call_state: Current lifecycle state (written only by the coordinator)
    """

    local_role: Role
    call_id: str
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    call_state: CallState = CallState.IDLE

    @classmethod
    def create(cls, local_role, call_id: str) -> "Session":
        """Create a new IDLE session for ``local_role`` ("A"/"B" or Role)."""
        return cls(local_role=Role(local_role), call_id=call_id)

    @property
    def remote_role(self) -> Role:
        return self.local_role.other

    @property
    def ended(self) -> bool:
        return self.call_state is CallState.ENDED

    def can_transition(self, to: CallState) -> bool:
        return to in _TRANSITIONS[self.call_state]

    def transition(self, to: CallState) -> None:
        """Move to ``to``.

        Raises:
            InvalidTransitionError: If the edge is not allowed
        """
        if not self.can_transition(to):
            raise InvalidTransitionError(
                f"Session {self.session_id}: {self.call_state.name} -> {to.name} not allowed"
            )
        logger.info(
            f"Session {self.session_id} ({self.local_role.value}): "
            f"{self.call_state.name} -> {to.name}"
        )
        self.call_state = to
