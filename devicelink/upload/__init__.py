"""Image upload with inferred completion."""

from .http import AbortableAdapter, AbortableSession
from .monitor import InvalidPayload, UploadCancelled, UploadInProgress, UploadMonitor, UploadTarget
from .outcome import OutcomeKind, OutcomeResolver, UploadOutcome

__all__ = [
    "AbortableAdapter",
    "AbortableSession",
    "UploadCancelled",
    "InvalidPayload",
    "UploadInProgress",
    "UploadMonitor",
    "UploadTarget",
    "OutcomeKind",
    "OutcomeResolver",
    "UploadOutcome",
]
