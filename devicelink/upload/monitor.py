"""Multipart image upload whose completion is inferred from transport signals."""

from __future__ import annotations

import asyncio
import enum
import logging
import threading
from typing import Any, Callable, Dict, Iterator, Optional

import requests
from requests.auth import HTTPBasicAuth
from urllib3 import encode_multipart_formdata

from devicelink.config import LinkSettings
from devicelink.upload.http import AbortableSession
from devicelink.upload.outcome import OutcomeResolver, UploadOutcome

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
_CHUNK_SIZE = 16 * 1024


class InvalidPayload(ValueError):
    """Raised when asked to upload an empty image."""


class UploadInProgress(RuntimeError):
    """Raised when a second upload starts before the first one resolved."""


class UploadCancelled(Exception):
    """Raised inside the request worker once the upload was cancelled."""


class UploadTarget(str, enum.Enum):
    FIRMWARE = "firmware"
    FILESYSTEM = "filesystem"


class _ProgressReader:
    """File-like view of the request body that reports how much was written.

    ``requests`` streams objects exposing ``read`` and sizes them through
    ``__len__``, so the body goes out with a Content-Length header in chunks.
    The sender only asks for the next chunk after writing the previous one, so
    a chunk is reported on the following ``read`` (the last one at EOF).
    """

    def __init__(
        self,
        body: bytes,
        report: ProgressCallback,
        cancelled: threading.Event,
        chunk_size: int = _CHUNK_SIZE,
    ) -> None:
        self._body = body
        self._report = report
        self._cancelled = cancelled
        self._chunk_size = chunk_size
        self._offset = 0
        self._reported = 0

    def __len__(self) -> int:
        return len(self._body)

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self.read(self._chunk_size)
            if not chunk:
                return
            yield chunk

    def read(self, size: int = -1) -> bytes:
        if self._cancelled.is_set():
            raise UploadCancelled("upload cancelled")
        if self._offset > self._reported:
            self._reported = self._offset
            self._report(self._reported, len(self._body))
        if size is None or size < 0:
            size = len(self._body) - self._offset
        chunk = self._body[self._offset:self._offset + size]
        self._offset += len(chunk)
        return chunk


class UploadMonitor:
    """Drives one upload at a time and resolves it to exactly one outcome."""

    def __init__(
        self,
        settings: LinkSettings,
        *,
        http_factory: Callable[[], Any] = AbortableSession,
    ) -> None:
        self._settings = settings
        self._http_factory = http_factory
        self._resolver: Optional[OutcomeResolver] = None
        self._future: Optional[asyncio.Future[UploadOutcome]] = None
        self._on_progress: Optional[ProgressCallback] = None
        self._grace_handle: Optional[asyncio.TimerHandle] = None
        self._request_task: Optional[asyncio.Task[None]] = None
        self._http: Any = None
        self._cancelled: Optional[threading.Event] = None

    @property
    def in_flight(self) -> bool:
        return self._future is not None and not self._future.done()

    def endpoint_for(self, target: UploadTarget) -> str:
        if target is UploadTarget.FIRMWARE:
            path = self._settings.firmware_path
        else:
            path = self._settings.filesystem_path
        return self._settings.endpoint_url(path)

    def start(
        self,
        payload: bytes,
        target: UploadTarget,
        *,
        filename: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> asyncio.Future[UploadOutcome]:
        """Begin uploading ``payload``; the returned future holds the outcome."""

        if not payload:
            raise InvalidPayload("Upload payload is empty")
        if self.in_flight:
            raise UploadInProgress("An upload is already in flight")
        loop = asyncio.get_running_loop()
        future: asyncio.Future[UploadOutcome] = loop.create_future()
        resolver = OutcomeResolver(
            near_complete_percent=self._settings.upload_near_complete_percent,
            on_resolved=lambda outcome: self._finish(future, outcome),
        )
        self._resolver = resolver
        self._future = future
        self._on_progress = on_progress

        url = self.endpoint_for(target)
        body, content_type = encode_multipart_formdata(
            {
                self._settings.upload_field_name: (
                    filename or f"{target.value}.bin",
                    bytes(payload),
                    "application/octet-stream",
                )
            }
        )
        LOGGER.info("Uploading %s image (%s bytes) to %s", target.value, len(payload), url)

        def emit(signal: str, *args: Any) -> None:
            try:
                loop.call_soon_threadsafe(self._on_signal, resolver, signal, *args)
            except RuntimeError:
                LOGGER.debug("Event loop closed; dropping upload %s signal", signal)

        cancelled = threading.Event()
        self._cancelled = cancelled
        self._http = self._http_factory()
        task = asyncio.create_task(
            asyncio.to_thread(self._perform, self._http, url, body, content_type, emit, cancelled),
            name=f"upload-{target.value}",
        )
        self._request_task = task

        def _finalise(completed: asyncio.Task[None]) -> None:
            if completed.cancelled():
                return
            exc = completed.exception()
            if exc is not None:
                LOGGER.error("Upload request worker failed: %s", exc, exc_info=exc)

        task.add_done_callback(_finalise)
        return future

    def cancel(self) -> None:
        """Abort the in-flight upload; late transport signals are dropped.

        The request worker stops at its next body chunk, and sockets already
        blocked in a send or a response read are shut down.
        """

        if self._resolver is not None:
            self._resolver.close()
        self._cancel_grace()
        if self._cancelled is not None:
            self._cancelled.set()
        if self._http is not None:
            try:
                abort = getattr(self._http, "abort", None)
                if abort is not None:
                    abort()
                self._http.close()
            except Exception:  # noqa: BLE001
                LOGGER.debug("Suppress upload session close error", exc_info=True)
            self._http = None
        if self._future is not None and not self._future.done():
            self._future.cancel()
        self._on_progress = None

    async def wait_stopped(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for the request worker to exit."""

        task = self._request_task
        if task is None or task.done():
            return True
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            LOGGER.warning("Upload worker still running %.1fs after cancel", timeout)
        return bool(done)

    def _perform(
        self,
        http: Any,
        url: str,
        body: bytes,
        content_type: str,
        emit: Callable[..., None],
        cancelled: threading.Event,
    ) -> None:
        reader = _ProgressReader(body, lambda sent, total: emit("progress", sent, total), cancelled)
        auth = None
        if self._settings.auth_username:
            auth = HTTPBasicAuth(self._settings.auth_username, self._settings.auth_password or "")
        try:
            response = http.post(
                url,
                data=reader,
                headers={"Content-Type": content_type},
                auth=auth,
                timeout=(self._settings.connect_timeout_seconds, self._settings.upload_timeout_seconds),
            )
        except UploadCancelled:
            LOGGER.info("Upload aborted while sending the body")
        except requests.RequestException as exc:
            if cancelled.is_set():
                LOGGER.info("Upload aborted: %s", exc)
            elif isinstance(exc, requests.Timeout):
                LOGGER.warning("Upload request timed out: %s", exc)
                emit("timeout")
            else:
                LOGGER.warning("Upload request failed: %s", exc)
                emit("error", str(exc))
        else:
            LOGGER.debug("Upload response status=%s", response.status_code)
            emit("response", response.status_code)
            response.close()
        finally:
            emit("loadend")
            try:
                http.close()
            except Exception:  # noqa: BLE001
                LOGGER.debug("Suppress upload session close error", exc_info=True)

    def _on_signal(self, resolver: OutcomeResolver, signal: str, *args: Any) -> None:
        if resolver is not self._resolver or resolver.closed or resolver.resolved:
            LOGGER.debug("Dropping late upload %s signal", signal)
            return
        if signal == "progress":
            self._on_progress_signal(resolver, *args)
            return
        handlers: Dict[str, Callable[..., bool]] = {
            "response": resolver.on_response,
            "error": resolver.on_error,
            "timeout": resolver.on_timeout,
            "loadend": resolver.on_loadend,
        }
        handler = handlers.get(signal)
        if handler is None:
            LOGGER.debug("Unknown upload signal %s", signal)
            return
        handler(*args)

    def _on_progress_signal(self, resolver: OutcomeResolver, sent: int, total: int) -> None:
        reached_end = resolver.on_progress(sent, total)
        if self._on_progress is not None:
            try:
                self._on_progress(sent, total)
            except Exception:  # noqa: BLE001
                LOGGER.debug("Suppress upload progress callback error", exc_info=True)
        if reached_end:
            LOGGER.info("Upload body fully sent; waiting %sms for a response", self._settings.upload_grace_ms)
            loop = asyncio.get_running_loop()
            self._cancel_grace()
            self._grace_handle = loop.call_later(
                self._settings.upload_grace_ms / 1000.0,
                resolver.on_grace_elapsed,
            )

    def _finish(self, future: asyncio.Future[UploadOutcome], outcome: UploadOutcome) -> None:
        self._cancel_grace()
        if not future.done():
            future.set_result(outcome)

    def _cancel_grace(self) -> None:
        handle, self._grace_handle = self._grace_handle, None
        if handle is not None:
            handle.cancel()
