import asyncio
from typing import List, Optional

import pytest
import pytest_asyncio

from devicelink.config import LinkSettings
from devicelink.network.transport.base import TransportClosed
from devicelink.network.transport.dummy import DummyTransport


class ScriptedTransport(DummyTransport):
    """In-memory socket whose frames and closures are pushed by the test."""

    def __init__(self, hub: "TransportHub") -> None:
        super().__init__(None)
        self.hub = hub
        self.frames: asyncio.Queue = asyncio.Queue()
        self.sent: List[str] = []
        self.close_codes: List[int] = []

    async def connect(self) -> None:
        self.hub.attempts += 1
        if self.hub.connect_delay:
            await asyncio.sleep(self.hub.connect_delay)
        if self.hub.refuse:
            raise OSError("connection refused")
        self.hub.live.append(self)

    async def send(self, message: str) -> None:
        self.sent.append(message)

    async def receive(self) -> str:
        item = await self.frames.get()
        if isinstance(item, TransportClosed):
            raise item
        return item

    async def close(self, code: int = 1000) -> None:
        self.close_codes.append(code)
        if self.hub.close_delay:
            await asyncio.sleep(self.hub.close_delay)
        self.frames.put_nowait(TransportClosed(code))

    def push(self, raw: str) -> None:
        self.frames.put_nowait(raw)

    def drop(self, code: int = 1006) -> None:
        self.frames.put_nowait(TransportClosed(code))


class TransportHub:
    def __init__(self) -> None:
        self.attempts = 0
        self.refuse = False
        self.connect_delay = 0.0
        self.close_delay = 0.0
        self.live: List[ScriptedTransport] = []

    def factory(self, settings: Optional[LinkSettings]) -> ScriptedTransport:
        return ScriptedTransport(self)

    @property
    def current(self) -> ScriptedTransport:
        return self.live[-1]


@pytest.fixture
def hub() -> TransportHub:
    return TransportHub()


@pytest.fixture
def settings() -> LinkSettings:
    return LinkSettings(
        device_base_url="http://device.test",
        device_ws_url="ws://device.test/ws",
        reconnect_base_delay_ms=20,
        reconnect_max_delay_ms=200,
        upload_grace_ms=30,
        reboot_quiet_delay_ms=30,
        reboot_reconnect_interval_ms=10,
        ready_fallback_ms=80,
        reboot_reconnect_timeout_ms=150,
        status_poll_interval_seconds=0,
    )


async def wait_for(predicate, *, timeout: float = 1.0, interval: float = 0.005) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


@pytest.fixture
def wait():
    return wait_for


class SilentDevice:
    """HTTP peer that swallows the request body and never answers."""

    def __init__(self) -> None:
        self.received = 0
        self.disconnected = asyncio.Event()
        self.server: Optional[asyncio.AbstractServer] = None

    @property
    def base_url(self) -> str:
        assert self.server is not None
        host, port = self.server.sockets[0].getsockname()[:2]
        return f"http://{host}:{port}"

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                self.received += len(data)
        except ConnectionError:
            pass
        finally:
            self.disconnected.set()
            writer.close()


@pytest_asyncio.fixture
async def silent_device(monkeypatch):
    for name in ("HTTP_PROXY", "http_proxy", "HTTPS_PROXY", "https_proxy", "ALL_PROXY", "all_proxy"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("NO_PROXY", "127.0.0.1,localhost")
    device = SilentDevice()
    device.server = await asyncio.start_server(device._handle, "127.0.0.1", 0)
    yield device
    device.server.close()
    await device.server.wait_closed()
