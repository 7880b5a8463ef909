"""Composition root: socket session + upload monitor + reboot watcher."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Optional

from devicelink.config import LinkSettings
from devicelink.events import (
    Connected,
    DeviceReady,
    Disconnected,
    LinkEvent,
    LogLine,
    UploadProgress,
    UploadResolved,
)
from devicelink.network.session import TransportSession
from devicelink.network.session_state import ConnectionState
from devicelink.network.status import StatusProbe, StatusProbeError
from devicelink.network.transport.base import BaseTransport
from devicelink.reboot.watcher import RebootWatcher
from devicelink.upload.http import AbortableSession
from devicelink.upload.monitor import UploadInProgress, UploadMonitor, UploadTarget
from devicelink.upload.outcome import UploadOutcome

LOGGER = logging.getLogger(__name__)


@dataclass
class LinkManager:
    """Owns the device link and publishes one ordered event stream."""

    settings: LinkSettings
    transport_factory: Callable[[LinkSettings], BaseTransport]
    http_factory: Callable[[], Any] = AbortableSession
    status_probe: Optional[StatusProbe] = None

    session: TransportSession = field(init=False, repr=False)
    uploads: UploadMonitor = field(init=False, repr=False)
    watcher: RebootWatcher = field(init=False, repr=False)
    _events: "asyncio.Queue[Optional[LinkEvent]]" = field(default_factory=asyncio.Queue, init=False, repr=False)
    _upload_task: Optional[asyncio.Task[None]] = field(default=None, init=False, repr=False)
    _status_task: Optional[asyncio.Task[None]] = field(default=None, init=False, repr=False)
    _last_percent: Optional[int] = field(default=None, init=False, repr=False)
    _closed: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        self.session = TransportSession(
            self.settings,
            self.transport_factory,
            on_opened=self._on_opened,
            on_message=self._on_message,
            on_closed=self._on_closed,
        )
        self.uploads = UploadMonitor(self.settings, http_factory=self.http_factory)
        self.watcher = RebootWatcher(self.settings, self.session, on_ready=self._on_ready)

    async def start(self) -> None:
        self.session.connect()
        interval = float(self.settings.status_poll_interval_seconds)
        if self.status_probe is not None and interval > 0:
            self._status_task = asyncio.create_task(self._status_loop(interval), name="link-status")

    async def events(self) -> AsyncIterator[LinkEvent]:
        """Async iterator of link events; ends after ``close``."""

        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    def upload(
        self,
        payload: bytes,
        target: UploadTarget,
        *,
        filename: Optional[str] = None,
    ) -> asyncio.Future[UploadOutcome]:
        """Start an image upload; success arms the reboot watcher."""

        if self._closed:
            raise RuntimeError("Link manager is closed")
        if self.watcher.active:
            raise UploadInProgress("Device is still rebooting from the previous update")
        self._last_percent = None
        future = self.uploads.start(payload, target, filename=filename, on_progress=self._on_upload_progress)
        self._upload_task = asyncio.create_task(self._follow_upload(future), name="link-upload")
        return future

    def update_signal_quality(self, rssi: Optional[int]) -> None:
        self.session.set_signal_quality(rssi)

    async def close(self) -> None:
        """Cancel timers, requests and the socket; nothing is published afterwards."""

        if self._closed:
            return
        self._closed = True
        for task in (self._status_task, self._upload_task):
            if task is None or task.done():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._status_task = None
        self._upload_task = None
        self.uploads.cancel()
        await self.uploads.wait_stopped(self.settings.connect_timeout_seconds)
        await self.watcher.cancel()
        await self.session.stop()
        self._events.put_nowait(None)

    async def _follow_upload(self, future: asyncio.Future[UploadOutcome]) -> None:
        try:
            outcome = await future
        except asyncio.CancelledError:
            LOGGER.debug("Upload cancelled before resolving")
            return
        self._publish(UploadResolved.from_outcome(outcome))
        if outcome.succeeded:
            await self.watcher.arm(self.settings.ready_marker, self.settings.ready_fallback_ms)

    def _on_upload_progress(self, sent: int, total: int) -> None:
        percent = min(100, int(sent * 100 / total + 0.5)) if total else 0
        if percent == self._last_percent:
            return
        self._last_percent = percent
        self._publish(UploadProgress(percent=percent, bytes_sent=sent, total_bytes=total))

    async def _on_opened(self) -> None:
        self.watcher.handle_opened()
        self._publish(Connected())

    async def _on_message(self, line: str) -> None:
        self._publish(LogLine(line=line))
        await self.watcher.handle_line(line)

    async def _on_closed(self, code: Optional[int], expected: bool, reconnect_in_ms: Optional[int]) -> None:
        self._publish(Disconnected(code=code, reconnect_in_ms=reconnect_in_ms))

    async def _on_ready(self, reason: str) -> None:
        self.session.resume_reconnect()
        if self.session.state in {ConnectionState.IDLE, ConnectionState.CLOSED}:
            self.session.connect()
        self._publish(DeviceReady(reason=reason))

    async def _status_loop(self, interval: float) -> None:
        assert self.status_probe is not None
        while not self._closed:
            if not self.watcher.active:
                try:
                    rssi = await asyncio.to_thread(self.status_probe.fetch_rssi)
                except StatusProbeError as exc:
                    LOGGER.debug("Status probe failed: %s", exc)
                else:
                    self.update_signal_quality(rssi)
            await asyncio.sleep(interval)

    def _publish(self, event: LinkEvent) -> None:
        if self._closed:
            return
        LOGGER.debug("Link event: %s", event.type)
        self._events.put_nowait(event)
