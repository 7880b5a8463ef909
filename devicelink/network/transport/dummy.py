"""No-op transport for offline runs."""

from __future__ import annotations

import asyncio
import logging

from devicelink.config import LinkSettings

from .base import BaseTransport, TransportClosed

LOGGER = logging.getLogger(__name__)


class DummyTransport(BaseTransport):
    """Transport that connects instantly and never delivers a frame."""

    def __init__(self, settings: LinkSettings | None = None) -> None:
        self._settings = settings
        self._closed = asyncio.Event()
        self._close_code = 1000

    async def connect(self) -> None:
        LOGGER.debug("Dummy transport connect()")
        self._closed.clear()

    async def send(self, message: str) -> None:
        LOGGER.debug("Dummy transport send(): %s", message)

    async def receive(self) -> str:
        LOGGER.debug("Dummy transport receive() (no-op)")
        await self._closed.wait()
        raise TransportClosed(self._close_code)

    async def close(self, code: int = 1000) -> None:
        LOGGER.debug("Dummy transport close(%s)", code)
        self._close_code = code
        self._closed.set()
