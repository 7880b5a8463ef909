"""Network stack (transport/session/backoff) for the device link."""

from devicelink.network.backoff import BackoffPolicy
from devicelink.network.session import NotConnected, TransportSession, split_log_lines
from devicelink.network.session_state import ConnectionState, ConnectionTracker
from devicelink.network.status import StatusProbe, StatusProbeError
from devicelink.network.transport.base import BaseTransport, TransportClosed
from devicelink.network.transport.dummy import DummyTransport
from devicelink.network.transport.websocket import WebSocketTransport

__all__ = [
    "BackoffPolicy",
    "TransportSession",
    "NotConnected",
    "split_log_lines",
    "ConnectionState",
    "ConnectionTracker",
    "StatusProbe",
    "StatusProbeError",
    "BaseTransport",
    "TransportClosed",
    "DummyTransport",
    "WebSocketTransport",
]
