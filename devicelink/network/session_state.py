"""Connection state tracking for the device log socket."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


class ConnectionState(enum.Enum):
    """Lifecycle of the single streaming socket."""

    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    OPEN = "OPEN"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


@dataclass
class ConnectionTracker:
    """In-memory connection metadata."""

    state: ConnectionState = ConnectionState.IDLE
    last_close_code: Optional[int] = None
    last_transition_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    def transition(self, next_state: ConnectionState) -> None:
        """Move the connection into a new state, validating allowed transitions."""

        if not self._is_valid_transition(self.state, next_state):
            raise ValueError(f"Invalid transition {self.state.value} → {next_state.value}")
        self.state = next_state
        self.last_transition_at = datetime.now(tz=timezone.utc)

    @staticmethod
    def _is_valid_transition(current: ConnectionState, nxt: ConnectionState) -> bool:
        allowed = {
            ConnectionState.IDLE: {ConnectionState.CONNECTING},
            ConnectionState.CONNECTING: {
                ConnectionState.OPEN,
                ConnectionState.CLOSING,
                ConnectionState.CLOSED,
            },
            ConnectionState.OPEN: {ConnectionState.CLOSING},
            ConnectionState.CLOSING: {ConnectionState.CLOSED},
            ConnectionState.CLOSED: {ConnectionState.CONNECTING},
        }
        return nxt in allowed.get(current, set())
