"""Link bootstrap entrypoint: wiring plus a console event consumer."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Dict, Optional, Type

from devicelink.config import LinkSettings, get_settings
from devicelink.events import DeviceReady, LinkEvent, LogLine, UploadResolved
from devicelink.manager import LinkManager
from devicelink.network.status import StatusProbe
from devicelink.network.transport.base import BaseTransport
from devicelink.network.transport.dummy import DummyTransport
from devicelink.network.transport.websocket import WebSocketTransport
from devicelink.upload.monitor import UploadTarget

LOGGER = logging.getLogger(__name__)

TRANSPORTS: Dict[str, Type[BaseTransport]] = {
    "dummy": DummyTransport,
    "websocket": WebSocketTransport,
}


def build_manager(settings: Optional[LinkSettings] = None) -> LinkManager:
    """Construct a link manager wired to the configured log transport."""

    settings = settings or get_settings()
    resolved_cls = TRANSPORTS[settings.transport]
    LOGGER.debug("Initialising device link via %s", resolved_cls.__name__)
    return LinkManager(
        settings=settings,
        transport_factory=lambda s: resolved_cls(s),
        status_probe=StatusProbe(settings) if settings.transport == "websocket" else None,
    )


def log_event(event: LinkEvent) -> None:
    if isinstance(event, LogLine):
        LOGGER.info("device> %s", event.line)
        return
    LOGGER.info("link event %s %s", event.type, event.model_dump_json(by_alias=True, exclude={"type"}))


async def serve_forever(
    *,
    image: Optional[Path] = None,
    target: UploadTarget = UploadTarget.FIRMWARE,
    exit_when_ready: bool = False,
) -> None:
    """Run the link, optionally push one image, and log every event."""

    manager = build_manager()
    await manager.start()
    try:
        if image is not None:
            payload = image.read_bytes()
            manager.upload(payload, target, filename=image.name)
        async for event in manager.events():
            log_event(event)
            if not exit_when_ready:
                continue
            if isinstance(event, UploadResolved) and not event.succeeded:
                return
            if isinstance(event, DeviceReady):
                return
    except asyncio.CancelledError:
        LOGGER.info("Link shutdown requested")
        raise
    finally:
        await manager.close()
