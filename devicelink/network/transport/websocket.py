"""WebSocket transport implementation."""

from __future__ import annotations

import logging
from typing import Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from devicelink.config import LinkSettings
from devicelink.network.transport.base import ABNORMAL_CLOSURE, BaseTransport, TransportClosed

LOGGER = logging.getLogger(__name__)


class WebSocketTransport(BaseTransport):
    """WebSocket transport for the device's serial log stream."""

    def __init__(self, settings: LinkSettings) -> None:
        self._settings = settings
        self._ws: Optional[ClientConnection] = None

    async def connect(self) -> None:
        LOGGER.info("Connecting to device WebSocket at %s", self._settings.device_ws_url)
        self._ws = await connect(
            str(self._settings.device_ws_url),
            open_timeout=self._settings.connect_timeout_seconds,
        )

    async def send(self, message: str) -> None:
        if not self._ws:
            raise RuntimeError("WebSocket transport not connected")
        LOGGER.debug("WebSocket send: %s", message)
        try:
            await self._ws.send(message)
        except ConnectionClosed as exc:
            raise TransportClosed(_close_code(exc), _close_reason(exc)) from exc

    async def receive(self) -> str:
        if not self._ws:
            raise RuntimeError("WebSocket transport not connected")
        try:
            raw = await self._ws.recv()
        except ConnectionClosed as exc:
            raise TransportClosed(_close_code(exc), _close_reason(exc)) from exc
        LOGGER.debug("WebSocket receive: %s", raw)
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        return raw

    async def close(self, code: int = 1000) -> None:
        if self._ws:
            LOGGER.info("Closing WebSocket transport code=%s", code)
            ws, self._ws = self._ws, None
            await ws.close(code=code)


def _close_code(exc: ConnectionClosed) -> int:
    if exc.rcvd is not None:
        return exc.rcvd.code
    return ABNORMAL_CLOSURE


def _close_reason(exc: ConnectionClosed) -> str:
    if exc.rcvd is not None:
        return exc.rcvd.reason
    return ""
