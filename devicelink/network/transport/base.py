"""Transport abstractions for the device log socket."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

# 1006 is what browsers and `websockets` report when no close frame arrived.
ABNORMAL_CLOSURE = 1006
CLEAN_CLOSE_CODES = frozenset({1000, 1001})


def is_clean_close(code: Optional[int]) -> bool:
    return code in CLEAN_CLOSE_CODES


def wire_close_code(code: Optional[int]) -> int:
    """Map a requested close code onto one that may be sent in a close frame."""

    if code is None:
        return 1000
    if 1000 <= code <= 1003 or 1007 <= code <= 1014 or 3000 <= code <= 4999:
        return code
    return 1000


class TransportClosed(RuntimeError):
    """Raised by ``receive`` once the peer or the network ended the connection."""

    def __init__(self, code: Optional[int] = None, reason: str = "") -> None:
        super().__init__(f"transport closed code={code} reason={reason!r}")
        self.code = ABNORMAL_CLOSURE if code is None else code
        self.reason = reason


class BaseTransport(ABC):
    """Abstract WebSocket-like transport carrying plain text frames."""

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def send(self, message: str) -> None:
        ...

    @abstractmethod
    async def receive(self) -> str:
        ...

    @abstractmethod
    async def close(self, code: int = 1000) -> None:
        ...
