"""Streaming-socket session with backoff reconnection."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, List, Optional

from devicelink.config import LinkSettings
from devicelink.network.backoff import BackoffPolicy
from devicelink.network.session_state import ConnectionState, ConnectionTracker
from devicelink.network.transport.base import (
    ABNORMAL_CLOSURE,
    BaseTransport,
    TransportClosed,
    is_clean_close,
    wire_close_code,
)

LOGGER = logging.getLogger(__name__)

OpenedCallback = Callable[[], Awaitable[None]]
MessageCallback = Callable[[str], Awaitable[None]]
ClosedCallback = Callable[[Optional[int], bool, Optional[int]], Awaitable[None]]


class NotConnected(RuntimeError):
    """Raised when sending while the socket is not open."""


def split_log_lines(raw: str) -> List[str]:
    """Split a (possibly batched) frame into non-empty log lines."""

    return [line.rstrip("\r") for line in raw.split("\n") if line.strip("\r")]


class TransportSession:
    """Owns at most one live socket and reconnects it after abnormal closures.

    ``connect`` never blocks: it only schedules the open. Underlying failures
    are logged and fed into the reconnect scheduler instead of being raised, so
    callers see them only through ``on_closed``.
    """

    def __init__(
        self,
        settings: LinkSettings,
        transport_factory: Callable[[LinkSettings], BaseTransport],
        *,
        backoff: Optional[BackoffPolicy] = None,
        on_opened: Optional[OpenedCallback] = None,
        on_message: Optional[MessageCallback] = None,
        on_closed: Optional[ClosedCallback] = None,
    ) -> None:
        self._settings = settings
        self._transport_factory = transport_factory
        self._backoff = backoff or BackoffPolicy.from_settings(settings)
        self._tracker = ConnectionTracker()
        self._transport: Optional[BaseTransport] = None
        self._open_task: Optional[asyncio.Task[None]] = None
        self._recv_task: Optional[asyncio.Task[None]] = None
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._attempt = 0
        self._auto_reconnect = True
        self._deferred_connect = False
        self._weak_signal = False
        self._stopped = False
        self.on_opened = on_opened
        self.on_message = on_message
        self.on_closed = on_closed

    @property
    def state(self) -> ConnectionState:
        return self._tracker.state

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def auto_reconnect(self) -> bool:
        return self._auto_reconnect

    @property
    def pending_reconnects(self) -> int:
        task = self._reconnect_task
        return 1 if task is not None and not task.done() else 0

    def set_signal_quality(self, rssi: Optional[int]) -> None:
        self._weak_signal = self._backoff.is_weak(rssi)

    def suppress_reconnect(self) -> None:
        """Disable the backoff loop and drop any pending reconnect."""

        self._auto_reconnect = False
        self._cancel_reconnect()

    def resume_reconnect(self) -> None:
        self._auto_reconnect = True

    def connect(self) -> None:
        """Schedule a connection attempt unless one is live or in flight."""

        if self._stopped:
            LOGGER.debug("Session stopped; ignoring connect()")
            return
        state = self.state
        if state in {ConnectionState.CONNECTING, ConnectionState.OPEN}:
            LOGGER.debug("Socket already %s; skipping connect()", state.value)
            return
        if state is ConnectionState.CLOSING:
            LOGGER.debug("Socket is closing; connect() deferred")
            self._deferred_connect = True
            return
        self._set_state(ConnectionState.CONNECTING)
        self._open_task = asyncio.create_task(self._open(), name="link-open")

    async def send(self, message: str) -> None:
        transport = self._transport
        if self.state is not ConnectionState.OPEN or transport is None:
            raise NotConnected(f"Cannot send while socket is {self.state.value}")
        try:
            await transport.send(message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Socket send failed, treating as disconnect: %s", exc)
            code = exc.code if isinstance(exc, TransportClosed) else ABNORMAL_CLOSURE
            await self._on_transport_lost(transport, code)

    async def close(self, code: Optional[int] = None) -> None:
        """Close the socket; 1000/1001 suppress the automatic reconnect."""

        expected = is_clean_close(code)
        state = self.state
        if state in {ConnectionState.IDLE, ConnectionState.CLOSED}:
            if expected:
                self._cancel_reconnect()
                self._deferred_connect = False
            return
        if state is ConnectionState.CLOSING:
            return
        self._deferred_connect = False
        self._set_state(ConnectionState.CLOSING)
        await self._teardown(wire_close_code(code))
        self._set_state(ConnectionState.CLOSED)
        self._tracker.last_close_code = code
        LOGGER.info("Socket closed locally code=%s expected=%s", code, expected)
        await self._handle_closed(code, expected)

    async def stop(self) -> None:
        """Tear everything down; no callback runs after this returns."""

        self._stopped = True
        self._deferred_connect = False
        self._cancel_reconnect()
        if self.state in {ConnectionState.CONNECTING, ConnectionState.OPEN}:
            self._set_state(ConnectionState.CLOSING)
        await self._teardown(1001)
        if self.state is ConnectionState.CLOSING:
            self._set_state(ConnectionState.CLOSED)

    def _set_state(self, next_state: ConnectionState) -> None:
        self._tracker.transition(next_state)
        if next_state is not ConnectionState.CLOSED:
            # a pending reconnect only makes sense while closed
            self._cancel_reconnect()

    async def _open(self) -> None:
        transport = self._transport_factory(self._settings)
        try:
            await transport.connect()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Socket connect failed (attempt %s): %s", self._attempt + 1, exc)
            self._open_task = None
            if self.state is ConnectionState.CONNECTING:
                self._set_state(ConnectionState.CLOSED)
                self._tracker.last_close_code = ABNORMAL_CLOSURE
                await self._handle_closed(ABNORMAL_CLOSURE, False)
            return
        if self.state is not ConnectionState.CONNECTING:
            try:
                await transport.close(1000)
            except Exception:  # noqa: BLE001
                LOGGER.debug("Suppress transport close error", exc_info=True)
            return
        self._open_task = None
        self._transport = transport
        self._attempt = 0
        self._set_state(ConnectionState.OPEN)
        LOGGER.info("Socket connected to %s", self._settings.device_ws_url)
        self._recv_task = asyncio.create_task(self._receive_loop(transport), name="link-recv")
        await self._notify(self.on_opened)

    async def _receive_loop(self, transport: BaseTransport) -> None:
        code = ABNORMAL_CLOSURE
        try:
            while True:
                raw = await transport.receive()
                for line in split_log_lines(raw):
                    if transport is not self._transport:
                        return
                    await self._notify(self.on_message, line)
        except asyncio.CancelledError:
            raise
        except TransportClosed as exc:
            LOGGER.info("Socket closed by peer code=%s reason=%s", exc.code, exc.reason)
            code = exc.code
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Receive loop error: %s", exc)
        if self._recv_task is asyncio.current_task():
            self._recv_task = None
        await self._on_transport_lost(transport, code)

    async def _on_transport_lost(self, transport: BaseTransport, code: int) -> None:
        if self.state is not ConnectionState.OPEN or transport is not self._transport:
            return
        self._set_state(ConnectionState.CLOSING)
        await self._teardown(wire_close_code(code))
        self._set_state(ConnectionState.CLOSED)
        self._tracker.last_close_code = code
        await self._handle_closed(code, is_clean_close(code))

    async def _teardown(self, wire_code: int) -> None:
        await self._cancel_task(self._open_task)
        self._open_task = None
        await self._cancel_task(self._recv_task)
        self._recv_task = None
        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                await transport.close(wire_code)
            except Exception:  # noqa: BLE001
                LOGGER.debug("Suppress transport close error", exc_info=True)

    async def _handle_closed(self, code: Optional[int], expected: bool) -> None:
        reconnect_in: Optional[int] = None
        if self._stopped:
            return
        if self._deferred_connect:
            self._deferred_connect = False
            self.connect()
        elif not expected and self._auto_reconnect:
            reconnect_in = self._schedule_reconnect()
        await self._notify(self.on_closed, code, expected, reconnect_in)

    def _schedule_reconnect(self) -> int:
        self._cancel_reconnect()
        delay_ms = self._backoff.delay(self._attempt, self._weak_signal)
        self._attempt += 1
        LOGGER.warning(
            "Socket lost; reconnect attempt %s in %sms%s",
            self._attempt,
            delay_ms,
            " (weak signal)" if self._weak_signal else "",
        )
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay_ms / 1000.0),
            name="link-reconnect",
        )
        return delay_ms

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        if self._stopped or not self._auto_reconnect:
            return
        self.connect()

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    @staticmethod
    async def _cancel_task(task: Optional[asyncio.Task[Any]]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _notify(self, callback: Optional[Callable[..., Awaitable[None]]], *args: Any) -> None:
        if callback is None or self._stopped:
            return
        try:
            await callback(*args)
        except Exception:  # noqa: BLE001
            LOGGER.debug("Suppress session callback error", exc_info=True)
