"""Link-quality probe backed by the device status endpoint."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

import requests

from devicelink.config import LinkSettings

LOGGER = logging.getLogger(__name__)


class StatusProbeError(Exception):
    """Raised when the status endpoint cannot be read."""


class StatusProbe:
    """Reads the Wi-Fi RSSI the device reports in its status document."""

    def __init__(
        self,
        settings: LinkSettings,
        *,
        http_factory: Callable[[], Any] = requests.Session,
    ) -> None:
        self._settings = settings
        self._http_factory = http_factory

    @property
    def url(self) -> str:
        return self._settings.endpoint_url(self._settings.status_path)

    def fetch_rssi(self) -> Optional[int]:
        """Return the last RSSI (dBm) or None when the device omits it."""

        http = self._http_factory()
        try:
            response = http.get(self.url, timeout=self._settings.connect_timeout_seconds)
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            raise StatusProbeError(f"Status request failed: {exc}") from exc
        except ValueError as exc:
            raise StatusProbeError("Status response is not JSON") from exc
        finally:
            http.close()
        if not isinstance(payload, dict):
            raise StatusProbeError("Status response must be a JSON object")
        rssi = payload.get("rssi")
        if rssi is None:
            return None
        try:
            return int(rssi)
        except (TypeError, ValueError):
            LOGGER.debug("Ignoring non-numeric rssi %r", rssi)
            return None
