import asyncio
import threading

import pytest
import requests
from requests.auth import HTTPBasicAuth

from devicelink.config import LinkSettings
from devicelink.upload.monitor import (
    InvalidPayload,
    UploadCancelled,
    UploadInProgress,
    UploadMonitor,
    UploadTarget,
    _ProgressReader,
)
from devicelink.upload.outcome import OutcomeKind


class _Response:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        self.closed = False

    def close(self) -> None:
        self.closed = True


class _FakeHttp:
    """Stands in for ``requests.Session``; ``behaviour`` consumes the streamed body."""

    def __init__(self, behaviour) -> None:
        self.behaviour = behaviour
        self.calls = []
        self.closed = False

    def post(self, url, data=None, headers=None, auth=None, timeout=None):
        self.calls.append({"url": url, "headers": headers, "auth": auth, "timeout": timeout})
        return self.behaviour(data)

    def close(self) -> None:
        self.closed = True


def _drain(data) -> bytes:
    return b"".join(iter(data))


def _ok(data):
    _drain(data)
    return _Response(200)


async def _settle(monitor: UploadMonitor) -> None:
    task = monitor._request_task
    if task is not None:
        await asyncio.wait_for(task, timeout=2)


@pytest.mark.asyncio
async def test_empty_payload_is_rejected(settings):
    monitor = UploadMonitor(settings, http_factory=lambda: _FakeHttp(_ok))

    with pytest.raises(InvalidPayload):
        monitor.start(b"", UploadTarget.FIRMWARE)
    assert not monitor.in_flight


@pytest.mark.asyncio
async def test_http_200_resolves_success_and_reports_progress(settings):
    http = _FakeHttp(_ok)
    monitor = UploadMonitor(settings, http_factory=lambda: http)
    progress = []

    future = monitor.start(b"\x01" * 50_000, UploadTarget.FIRMWARE, on_progress=lambda s, t: progress.append((s, t)))
    outcome = await asyncio.wait_for(future, timeout=2)
    await _settle(monitor)

    assert outcome.kind is OutcomeKind.SUCCEEDED
    assert outcome.http_status == 200
    assert progress, "progress callbacks expected"
    sent = [s for s, _ in progress]
    assert sent == sorted(sent)
    assert progress[-1][0] == progress[-1][1]
    assert http.calls[0]["url"] == "http://device.test/update"
    assert http.closed


@pytest.mark.asyncio
async def test_filesystem_target_uses_multipart_update_field(settings):
    bodies = []

    def _capture(data):
        bodies.append(_drain(data))
        return _Response(200)

    http = _FakeHttp(_capture)
    monitor = UploadMonitor(settings, http_factory=lambda: http)

    future = monitor.start(b"littlefs-image", UploadTarget.FILESYSTEM, filename="fs.bin")
    await asyncio.wait_for(future, timeout=2)
    await _settle(monitor)

    call = http.calls[0]
    assert call["url"] == "http://device.test/update-fs"
    assert call["headers"]["Content-Type"].startswith("multipart/form-data; boundary=")
    assert b'name="update"; filename="fs.bin"' in bodies[0]
    assert b"littlefs-image" in bodies[0]


@pytest.mark.asyncio
async def test_basic_auth_is_attached_when_configured():
    settings = LinkSettings(device_base_url="http://device.test", auth_username="admin", auth_password="admin")
    http = _FakeHttp(_ok)
    monitor = UploadMonitor(settings, http_factory=lambda: http)

    await asyncio.wait_for(monitor.start(b"x", UploadTarget.FIRMWARE), timeout=2)
    await _settle(monitor)

    assert http.calls[0]["auth"] == HTTPBasicAuth("admin", "admin")


@pytest.mark.asyncio
async def test_non_200_response_fails(settings):
    def _reject(data):
        _drain(data)
        return _Response(500)

    monitor = UploadMonitor(settings, http_factory=lambda: _FakeHttp(_reject))

    outcome = await asyncio.wait_for(monitor.start(b"abc", UploadTarget.FIRMWARE), timeout=2)
    await _settle(monitor)

    assert outcome.kind is OutcomeKind.FAILED
    assert outcome.http_status == 500


@pytest.mark.asyncio
async def test_reset_after_full_body_is_inferred_success(settings):
    def _reboot_mid_response(data):
        _drain(data)
        raise requests.ConnectionError("connection reset by peer")

    monitor = UploadMonitor(settings, http_factory=lambda: _FakeHttp(_reboot_mid_response))

    outcome = await asyncio.wait_for(monitor.start(b"\x00" * 4096, UploadTarget.FIRMWARE), timeout=2)
    await _settle(monitor)

    assert outcome.kind is OutcomeKind.INFERRED_SUCCESS
    assert outcome.succeeded


@pytest.mark.asyncio
async def test_reset_early_in_body_fails(settings):
    def _drop_early(data):
        data.read(int(len(data) * 0.4))
        raise requests.ConnectionError("network unreachable")

    monitor = UploadMonitor(settings, http_factory=lambda: _FakeHttp(_drop_early))

    outcome = await asyncio.wait_for(monitor.start(b"\x00" * 10_000, UploadTarget.FIRMWARE), timeout=2)
    await _settle(monitor)

    assert outcome.kind is OutcomeKind.FAILED
    assert "network unreachable" in outcome.reason


@pytest.mark.asyncio
async def test_timeout_before_completion_fails(settings):
    def _stall(data):
        data.read(10)
        raise requests.ReadTimeout("read timed out")

    monitor = UploadMonitor(settings, http_factory=lambda: _FakeHttp(_stall))

    outcome = await asyncio.wait_for(monitor.start(b"\x00" * 1000, UploadTarget.FIRMWARE), timeout=2)
    await _settle(monitor)

    assert outcome.kind is OutcomeKind.FAILED
    assert outcome.reason == "timeout"


@pytest.mark.asyncio
async def test_silence_after_full_body_resolves_after_grace(settings):
    release = threading.Event()

    def _silent_device(data):
        _drain(data)
        release.wait(2)
        raise requests.ReadTimeout("read timed out")

    monitor = UploadMonitor(settings, http_factory=lambda: _FakeHttp(_silent_device))
    loop = asyncio.get_running_loop()
    started = loop.time()

    outcome = await asyncio.wait_for(monitor.start(b"\x00" * 2048, UploadTarget.FIRMWARE), timeout=2)
    elapsed = loop.time() - started
    release.set()
    await _settle(monitor)
    await asyncio.sleep(0.01)

    assert outcome.kind is OutcomeKind.INFERRED_SUCCESS
    assert outcome.reason == "no response after upload completed"
    assert elapsed >= settings.upload_grace_ms / 1000.0 * 0.9
    assert monitor._resolver.outcome is outcome


@pytest.mark.asyncio
async def test_second_upload_while_in_flight_is_rejected(settings):
    release = threading.Event()

    def _hold(data):
        release.wait(2)
        _drain(data)
        return _Response(200)

    monitor = UploadMonitor(settings, http_factory=lambda: _FakeHttp(_hold))
    future = monitor.start(b"first", UploadTarget.FIRMWARE)

    with pytest.raises(UploadInProgress):
        monitor.start(b"second", UploadTarget.FIRMWARE)

    release.set()
    assert (await asyncio.wait_for(future, timeout=2)).succeeded
    await _settle(monitor)


@pytest.mark.asyncio
async def test_cancel_drops_late_signals(settings):
    release = threading.Event()

    def _hold(data):
        release.wait(2)
        _drain(data)
        return _Response(200)

    http = _FakeHttp(_hold)
    monitor = UploadMonitor(settings, http_factory=lambda: http)
    progress = []
    future = monitor.start(b"payload", UploadTarget.FIRMWARE, on_progress=lambda s, t: progress.append(s))

    monitor.cancel()
    release.set()
    await _settle(monitor)
    await asyncio.sleep(0.02)

    assert future.cancelled()
    assert progress == []
    assert not monitor._resolver.resolved
    assert http.closed


def test_reader_reports_a_chunk_once_the_next_one_is_requested():
    reports = []
    reader = _ProgressReader(b"x" * 10, lambda sent, total: reports.append(sent), threading.Event(), chunk_size=4)

    assert reader.read(4) == b"xxxx"
    assert reports == []
    reader.read(4)
    assert reports == [4]
    reader.read(4)
    assert reports == [4, 8]
    assert reader.read(4) == b""
    assert reports == [4, 8, 10]


def test_reader_stops_once_cancelled():
    cancelled = threading.Event()
    reader = _ProgressReader(b"x" * 10, lambda sent, total: None, cancelled, chunk_size=4)
    reader.read(4)

    cancelled.set()

    with pytest.raises(UploadCancelled):
        reader.read(4)


class _StuckHttp(_FakeHttp):
    """Sends the whole body, then blocks on the response until aborted."""

    def __init__(self) -> None:
        super().__init__(self._wait_for_reply)
        self.sent_all = threading.Event()
        self.shutdown = threading.Event()
        self.aborted = False

    def _wait_for_reply(self, data):
        _drain(data)
        self.sent_all.set()
        if self.shutdown.wait(5):
            raise requests.ConnectionError("connection aborted")
        return _Response(200)

    def abort(self) -> None:
        self.aborted = True
        self.shutdown.set()


@pytest.mark.asyncio
async def test_cancel_aborts_request_blocked_on_response(settings, wait):
    settings = settings.model_copy(update={"upload_grace_ms": 5000})
    http = _StuckHttp()
    monitor = UploadMonitor(settings, http_factory=lambda: http)
    future = monitor.start(b"\x00" * 4096, UploadTarget.FIRMWARE)
    assert await wait(http.sent_all.is_set)
    loop = asyncio.get_running_loop()
    started = loop.time()

    monitor.cancel()

    assert await monitor.wait_stopped(1.0)
    assert loop.time() - started < 0.5
    assert http.aborted
    assert future.cancelled()
    assert not monitor._resolver.resolved
