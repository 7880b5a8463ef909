"""Upload outcome model and the one-shot resolver behind it."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Optional

LOGGER = logging.getLogger(__name__)


class OutcomeKind(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    # The device went silent after receiving everything; assumed applied.
    INFERRED_SUCCESS = "inferred_success"
    FAILED = "failed"


@dataclass(frozen=True)
class UploadOutcome:
    kind: OutcomeKind
    reason: str = ""
    http_status: Optional[int] = None
    percent: int = 0

    @property
    def succeeded(self) -> bool:
        return self.kind in {OutcomeKind.SUCCEEDED, OutcomeKind.INFERRED_SUCCESS}

    @property
    def terminal(self) -> bool:
        return self.kind is not OutcomeKind.PENDING


PENDING = UploadOutcome(OutcomeKind.PENDING)


class OutcomeResolver:
    """Collapses the completion signals of one upload into a single outcome.

    Signals are applied in arrival order and the first one that decides the
    upload closes the latch; everything after that is logged and dropped.
    A device that received the whole image and then went quiet is treated as
    rebooting, so silence after 100% (grace expiry, load-end, timeout) and
    network errors at or above ``near_complete_percent`` resolve to
    ``INFERRED_SUCCESS``.
    """

    def __init__(
        self,
        *,
        near_complete_percent: int = 98,
        on_resolved: Optional[Callable[[UploadOutcome], None]] = None,
    ) -> None:
        self._near_complete = near_complete_percent
        self._on_resolved = on_resolved
        self._outcome = PENDING
        self._percent = 0
        self._complete = False
        self._closed = False

    @property
    def outcome(self) -> UploadOutcome:
        return self._outcome

    @property
    def percent(self) -> int:
        return self._percent

    @property
    def complete(self) -> bool:
        return self._complete

    @property
    def resolved(self) -> bool:
        return self._outcome.terminal

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Drop every later signal without resolving."""

        self._closed = True

    def on_progress(self, sent: int, total: int) -> bool:
        """Record progress; True exactly once, when the body is fully sent."""

        if self._closed or self.resolved or total <= 0:
            return False
        self._percent = min(100, max(0, int(sent * 100 / total + 0.5)))
        if sent >= total and not self._complete:
            self._complete = True
            self._percent = 100
            return True
        return False

    def on_grace_elapsed(self) -> bool:
        if not self._complete:
            return False
        return self._commit(
            UploadOutcome(OutcomeKind.INFERRED_SUCCESS, "no response after upload completed", percent=100),
            "grace",
        )

    def on_response(self, status: int) -> bool:
        if status == 200:
            return self._commit(UploadOutcome(OutcomeKind.SUCCEEDED, "http 200", 200, 100), "response")
        return self._commit(
            UploadOutcome(OutcomeKind.FAILED, f"http {status}", status, self._percent),
            "response",
        )

    def on_loadend(self) -> bool:
        if self._complete:
            return self._commit(
                UploadOutcome(OutcomeKind.INFERRED_SUCCESS, "connection ended after upload completed", percent=100),
                "loadend",
            )
        return self._commit(
            UploadOutcome(OutcomeKind.FAILED, "request ended before upload completed", percent=self._percent),
            "loadend",
        )

    def on_error(self, detail: str = "") -> bool:
        if self._complete or self._percent >= self._near_complete:
            return self._commit(
                UploadOutcome(
                    OutcomeKind.INFERRED_SUCCESS,
                    f"network error at {self._percent}% treated as reboot",
                    percent=self._percent,
                ),
                "error",
            )
        reason = f"transport error: {detail}" if detail else "transport error"
        return self._commit(UploadOutcome(OutcomeKind.FAILED, reason, percent=self._percent), "error")

    def on_timeout(self) -> bool:
        if self._complete:
            return self._commit(
                UploadOutcome(OutcomeKind.INFERRED_SUCCESS, "timeout after upload completed", percent=100),
                "timeout",
            )
        return self._commit(UploadOutcome(OutcomeKind.FAILED, "timeout", percent=self._percent), "timeout")

    def _commit(self, outcome: UploadOutcome, signal: str) -> bool:
        if self._closed:
            return False
        if self.resolved:
            LOGGER.debug("Ignoring %s signal; upload already %s", signal, self._outcome.kind.value)
            return False
        self._outcome = outcome
        LOGGER.info("Upload resolved via %s: %s (%s)", signal, outcome.kind.value, outcome.reason)
        if self._on_resolved is not None:
            self._on_resolved(outcome)
        return True
