"""Device-link configuration loading and validation."""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, ClassVar, Dict, Iterable, Literal

import yaml
from pydantic import AnyUrl, Field, PositiveInt
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_LOCATIONS: tuple[Path, ...] = (
    Path("/etc/devicelink/link.yaml"),
    Path("/etc/devicelink/link.yml"),
    Path("./config/link.yaml"),
    Path("./config/link.yml"),
)


class LinkSettings(BaseSettings):
    """Validated settings for the device link."""

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_prefix="DEVICELINK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Device endpoints
    device_base_url: AnyUrl = Field(
        default="http://heater.local",
        description="HTTP base URL of the device (uploads and status).",
    )
    device_ws_url: AnyUrl = Field(
        default="ws://heater.local/ws",
        description="Streaming log socket of the device.",
    )
    transport: Literal["dummy", "websocket"] = Field(
        default="websocket",
        description="Log socket implementation; `dummy` runs without a device.",
    )
    firmware_path: str = Field(
        default="/update",
        description="Upload endpoint for firmware images.",
    )
    filesystem_path: str = Field(
        default="/update-fs",
        description="Upload endpoint for filesystem images.",
    )
    status_path: str = Field(
        default="/api/status",
        description="Status endpoint whose `rssi` field feeds the weak-signal hint.",
    )
    upload_field_name: str = Field(
        default="update",
        description="Multipart field carrying the binary image.",
    )
    auth_username: str | None = Field(
        default=None,
        description="HTTP basic auth user for upload requests.",
    )
    auth_password: str | None = Field(
        default=None,
        description="HTTP basic auth password for upload requests.",
        repr=False,
    )

    # Reconnect backoff
    reconnect_base_delay_ms: PositiveInt = Field(
        default=2000,
        description="Base delay for transport reconnection backoff.",
    )
    reconnect_max_delay_ms: PositiveInt = Field(
        default=30000,
        description="Maximum delay for transport reconnection backoff.",
    )
    weak_signal_multiplier: float = Field(
        default=1.5,
        ge=1.0,
        description="Backoff multiplier applied while the link quality is weak.",
    )
    weak_signal_rssi_dbm: int = Field(
        default=-70,
        description="RSSI below which the link counts as weak.",
    )
    connect_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for opening the streaming socket.",
    )

    # Upload
    upload_grace_ms: PositiveInt = Field(
        default=500,
        description="Wait after 100% progress before inferring success without a response.",
    )
    upload_near_complete_percent: int = Field(
        default=98,
        ge=0,
        le=100,
        description="Progress at or above which a network error counts as reboot-induced.",
    )
    upload_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Read timeout for the upload request.",
    )

    # Reboot handshake
    ready_marker: str = Field(
        default="=== Setup complete ===",
        description="Log line the device prints once its boot sequence completes.",
    )
    reboot_quiet_delay_ms: PositiveInt = Field(
        default=10000,
        description="Quiet period before the first reboot reconnect attempt.",
    )
    reboot_reconnect_interval_ms: PositiveInt = Field(
        default=2000,
        description="Fixed interval between reboot reconnect attempts.",
    )
    ready_fallback_ms: PositiveInt = Field(
        default=8000,
        description="Wait for the ready marker after reconnecting before assuming readiness.",
    )
    reboot_reconnect_timeout_ms: PositiveInt = Field(
        default=60000,
        description="Upper bound on waiting for the device to come back after an update.",
    )

    # Status probe
    status_poll_interval_seconds: float = Field(
        default=30.0,
        ge=0,
        description="RSSI polling period; 0 disables polling.",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Minimum log level for the link process.",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        if isinstance(value, str):
            return value.upper()
        return value

    @field_validator("firmware_path", "filesystem_path", "status_path")
    @classmethod
    def _normalize_path(cls, value: str) -> str:
        if not value.startswith("/"):
            return f"/{value}"
        return value

    config_path: Path | None = Field(
        default=None,
        description="Resolved path to the on-disk config that seeded the settings.",
        exclude=True,
    )

    def endpoint_url(self, path: str) -> str:
        return str(self.device_base_url).rstrip("/") + path

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[LinkSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            cls._file_settings_source,
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )

    @staticmethod
    def _file_settings_source(settings_cls: type[LinkSettings] | None = None) -> Dict[str, Any]:
        candidates: Iterable[Path] = LinkSettings._resolve_candidate_paths()

        for path in candidates:
            data = LinkSettings._load_file(path)
            if data is not None:
                data.setdefault("config_path", path)
                return data
        return {}

    @staticmethod
    def _resolve_candidate_paths() -> Iterable[Path]:
        explicit = os.getenv("DEVICELINK_CONFIG_FILE")
        if explicit:
            yield Path(explicit).expanduser()
        yield from DEFAULT_CONFIG_LOCATIONS

    @staticmethod
    def _load_file(path: Path) -> Dict[str, Any] | None:
        if not path.is_file():
            return None
        suffix = path.suffix.lower()
        try:
            with path.open("r", encoding="utf-8") as handle:
                if suffix in {".yaml", ".yml"}:
                    raw = yaml.safe_load(handle)
                elif suffix == ".json":
                    raw = json.load(handle)
                else:
                    return None
        except OSError as exc:
            raise RuntimeError(f"Failed to read link config file {path}") from exc
        except (yaml.YAMLError, json.JSONDecodeError) as exc:
            raise ValueError(f"Invalid link config file {path}") from exc

        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise ValueError(f"Link config file {path} must contain a mapping at top level.")
        return raw


@lru_cache()
def get_settings() -> LinkSettings:
    """Return memoized link settings."""

    return LinkSettings()
