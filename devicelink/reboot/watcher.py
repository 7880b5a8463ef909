"""Post-update reboot handshake: reconnect, wait for the ready marker, fall back."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from devicelink.config import LinkSettings
from devicelink.network.session import TransportSession
from devicelink.network.session_state import ConnectionState

LOGGER = logging.getLogger(__name__)

ReadyCallback = Callable[[str], Awaitable[None]]


class RebootPhase(enum.Enum):
    INACTIVE = 0
    AWAITING_RECONNECT = 1
    AWAITING_READY_MARKER = 2
    DONE = 3


@dataclass
class RebootWaitState:
    """One reboot wait; phases only ever move forward."""

    marker: str
    fallback_ms: int
    phase: RebootPhase = RebootPhase.INACTIVE
    deadline: Optional[float] = None
    ready_reason: Optional[str] = None

    def advance(self, next_phase: RebootPhase) -> None:
        if next_phase.value <= self.phase.value:
            raise ValueError(f"Invalid reboot phase transition {self.phase.name} → {next_phase.name}")
        self.phase = next_phase


class RebootWatcher:
    """Bridges "update accepted" to "device ready" exactly once per ``arm``.

    While armed the session's backoff reconnect is suppressed and replaced by a
    fixed-interval loop that starts after a quiet delay. The first reconnect
    starts the ``fallback_ms`` timer; the ready marker or that timer, whichever
    comes first, fires ``on_ready``. Until the reconnect happens the wait is
    bounded by ``reboot_reconnect_timeout_ms`` so the user never waits forever.
    """

    def __init__(
        self,
        settings: LinkSettings,
        session: TransportSession,
        *,
        on_ready: Optional[ReadyCallback] = None,
    ) -> None:
        self._settings = settings
        self._session = session
        self._on_ready = on_ready
        self._state: Optional[RebootWaitState] = None
        self._loop_task: Optional[asyncio.Task[None]] = None
        self._fallback_task: Optional[asyncio.Task[None]] = None

    @property
    def state(self) -> Optional[RebootWaitState]:
        return self._state

    @property
    def phase(self) -> RebootPhase:
        if self._state is None:
            return RebootPhase.INACTIVE
        return self._state.phase

    @property
    def active(self) -> bool:
        return self.phase in {RebootPhase.AWAITING_RECONNECT, RebootPhase.AWAITING_READY_MARKER}

    async def arm(
        self,
        expected_ready_marker: Optional[str] = None,
        fallback_ms: Optional[int] = None,
    ) -> RebootWaitState:
        """Start waiting for the device to come back from its reboot."""

        if self.active:
            LOGGER.warning("Reboot wait already active; ignoring arm()")
            assert self._state is not None
            return self._state
        state = RebootWaitState(
            marker=expected_ready_marker or self._settings.ready_marker,
            fallback_ms=fallback_ms if fallback_ms is not None else self._settings.ready_fallback_ms,
        )
        self._state = state
        state.advance(RebootPhase.AWAITING_RECONNECT)
        LOGGER.info(
            "Waiting for device reboot (quiet %sms, retry every %sms, marker %r)",
            self._settings.reboot_quiet_delay_ms,
            self._settings.reboot_reconnect_interval_ms,
            state.marker,
        )
        self._session.suppress_reconnect()
        self._start_timer(state, self._settings.reboot_reconnect_timeout_ms, "reconnect-timeout")
        self._loop_task = asyncio.create_task(self._reconnect_loop(state), name="reboot-reconnect")
        await self._session.close(1000)
        return state

    def handle_opened(self) -> None:
        """The session reconnected; start listening for the ready marker."""

        state = self._state
        if state is None or state.phase is not RebootPhase.AWAITING_RECONNECT:
            return
        state.advance(RebootPhase.AWAITING_READY_MARKER)
        LOGGER.info("Device reachable again; waiting up to %sms for %r", state.fallback_ms, state.marker)
        self._cancel(self._loop_task)
        self._loop_task = None
        self._start_timer(state, state.fallback_ms, "fallback")

    async def handle_line(self, line: str) -> bool:
        state = self._state
        if state is None or state.phase is not RebootPhase.AWAITING_READY_MARKER:
            return False
        if state.marker not in line:
            return False
        return await self._fire(state, "marker")

    async def cancel(self) -> None:
        """Abandon the wait without firing ``on_ready``."""

        state = self._state
        if state is not None and state.phase is not RebootPhase.DONE:
            state.advance(RebootPhase.DONE)
            state.ready_reason = "cancelled"
        for task in (self._loop_task, self._fallback_task):
            if task is None or task.done() or task is asyncio.current_task():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._loop_task = None
        self._fallback_task = None

    async def _reconnect_loop(self, state: RebootWaitState) -> None:
        await asyncio.sleep(self._settings.reboot_quiet_delay_ms / 1000.0)
        interval = self._settings.reboot_reconnect_interval_ms / 1000.0
        while state.phase is RebootPhase.AWAITING_RECONNECT:
            if self._session.state in {ConnectionState.IDLE, ConnectionState.CLOSED}:
                LOGGER.info("Attempting reconnect after reboot")
                self._session.connect()
            await asyncio.sleep(interval)

    def _start_timer(self, state: RebootWaitState, delay_ms: int, reason: str) -> None:
        self._cancel(self._fallback_task)
        loop = asyncio.get_running_loop()
        state.deadline = loop.time() + delay_ms / 1000.0
        self._fallback_task = asyncio.create_task(
            self._fire_after(state, delay_ms / 1000.0, reason),
            name=f"reboot-{reason}",
        )

    async def _fire_after(self, state: RebootWaitState, delay: float, reason: str) -> None:
        await asyncio.sleep(delay)
        if state.phase is RebootPhase.DONE:
            return
        LOGGER.warning("No ready marker before %s; assuming the device is up", reason)
        await self._fire(state, reason)

    async def _fire(self, state: RebootWaitState, reason: str) -> bool:
        if state is not self._state or state.phase is RebootPhase.DONE:
            return False
        state.advance(RebootPhase.DONE)
        state.ready_reason = reason
        self._cancel(self._loop_task)
        self._cancel(self._fallback_task)
        self._loop_task = None
        self._fallback_task = None
        LOGGER.info("Device ready (%s)", reason)
        if self._on_ready is not None:
            try:
                await self._on_ready(reason)
            except Exception:  # noqa: BLE001
                LOGGER.debug("Suppress reboot ready callback error", exc_info=True)
        return True

    @staticmethod
    def _cancel(task: Optional[asyncio.Task[Any]]) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
