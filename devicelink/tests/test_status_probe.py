import logging

import pytest
import requests

from devicelink.bootstrap import build_manager, log_event
from devicelink.events import Disconnected, LogLine
from devicelink.network.status import StatusProbe, StatusProbeError
from devicelink.network.transport.dummy import DummyTransport
from devicelink.network.transport.websocket import WebSocketTransport
from devicelink.upload.http import AbortableSession


class _Response:
    def __init__(self, payload=None, status_code=200, error=None):
        self._payload = payload
        self.status_code = status_code
        self._error = error

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        if self._error is not None:
            raise self._error
        return self._payload


class _FakeHttp:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.urls = []
        self.closed = False

    def get(self, url, timeout=None):
        self.urls.append(url)
        if self.exc is not None:
            raise self.exc
        return self.response

    def close(self):
        self.closed = True


def _probe(settings, http):
    return StatusProbe(settings, http_factory=lambda: http)


def test_fetch_rssi_reads_status_document(settings):
    http = _FakeHttp(_Response({"rssi": "-72", "uptime": 12}))

    assert _probe(settings, http).fetch_rssi() == -72
    assert http.urls == ["http://device.test/api/status"]
    assert http.closed


@pytest.mark.parametrize("payload", [{}, {"rssi": None}, {"rssi": "n/a"}])
def test_missing_or_garbled_rssi_is_unknown(settings, payload):
    assert _probe(settings, _FakeHttp(_Response(payload))).fetch_rssi() is None


@pytest.mark.parametrize(
    "http",
    [
        _FakeHttp(exc=requests.ConnectionError("unreachable")),
        _FakeHttp(_Response(status_code=503)),
        _FakeHttp(_Response(error=ValueError("not json"))),
        _FakeHttp(_Response(["rssi", -50])),
    ],
)
def test_status_failures_raise_probe_error(settings, http):
    with pytest.raises(StatusProbeError):
        _probe(settings, http).fetch_rssi()


def test_build_manager_wires_websocket_transport(settings):
    manager = build_manager(settings)

    assert isinstance(manager.transport_factory(settings), WebSocketTransport)
    assert isinstance(manager.status_probe, StatusProbe)
    assert isinstance(manager.http_factory(), AbortableSession)


def test_build_manager_selects_dummy_transport_offline(settings):
    offline = settings.model_copy(update={"transport": "dummy"})
    manager = build_manager(offline)

    assert isinstance(manager.transport_factory(offline), DummyTransport)
    assert manager.status_probe is None


def test_log_event_formats_lines_and_events(caplog):
    caplog.set_level(logging.INFO, logger="devicelink.bootstrap")

    log_event(LogLine(line="[wifi] connected"))
    log_event(Disconnected(code=1006, reconnect_in_ms=2000))

    assert "device> [wifi] connected" in caplog.text
    assert "link event disconnected" in caplog.text
    assert '"reconnectInMs":2000' in caplog.text
