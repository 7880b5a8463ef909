"""Transport implementations for the device log socket."""

from .base import BaseTransport, TransportClosed, is_clean_close
from .dummy import DummyTransport
from .websocket import WebSocketTransport

__all__ = ["BaseTransport", "TransportClosed", "is_clean_close", "DummyTransport", "WebSocketTransport"]
