"""Events published by the link manager to the presentation layer."""

from __future__ import annotations

from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from devicelink.upload.outcome import OutcomeKind, UploadOutcome


class Connected(BaseModel):
    type: Literal["connected"] = "connected"


class Disconnected(BaseModel):
    """Socket lost; ``reconnect_in_ms`` is None when no reconnect is scheduled."""

    type: Literal["disconnected"] = "disconnected"
    code: Optional[int] = None
    reconnect_in_ms: Optional[int] = Field(default=None, alias="reconnectInMs")

    model_config = ConfigDict(populate_by_name=True)


class LogLine(BaseModel):
    type: Literal["log_line"] = "log_line"
    line: str


class UploadProgress(BaseModel):
    type: Literal["upload_progress"] = "upload_progress"
    percent: int
    bytes_sent: int = Field(alias="bytesSent")
    total_bytes: int = Field(alias="totalBytes")

    model_config = ConfigDict(populate_by_name=True)


class UploadResolved(BaseModel):
    type: Literal["upload_resolved"] = "upload_resolved"
    kind: OutcomeKind
    succeeded: bool
    reason: str = ""
    http_status: Optional[int] = Field(default=None, alias="httpStatus")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_outcome(cls, outcome: UploadOutcome) -> UploadResolved:
        return cls(
            kind=outcome.kind,
            succeeded=outcome.succeeded,
            reason=outcome.reason,
            http_status=outcome.http_status,
        )


class DeviceReady(BaseModel):
    type: Literal["device_ready"] = "device_ready"
    reason: str


LinkEvent = Union[Connected, Disconnected, LogLine, UploadProgress, UploadResolved, DeviceReady]

__all__ = [
    "Connected",
    "Disconnected",
    "LogLine",
    "UploadProgress",
    "UploadResolved",
    "DeviceReady",
    "LinkEvent",
]
