"""Reconnect delay policy for the streaming socket."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from devicelink.config import LinkSettings

# 2**16 already exceeds any sane cap; larger attempt counts only risk overflow.
_MAX_EXPONENT = 16


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with a weak-signal stretch.

    ``delay(n)`` is ``base * 2**n`` (times ``weak_multiplier`` on a weak link),
    clamped to ``[base, max]``. The policy holds no state; attempt counting
    lives in the transport session.
    """

    base_ms: int = 2000
    max_ms: int = 30000
    weak_multiplier: float = 1.5
    weak_rssi_dbm: int = -70

    @classmethod
    def from_settings(cls, settings: LinkSettings) -> BackoffPolicy:
        return cls(
            base_ms=settings.reconnect_base_delay_ms,
            max_ms=max(settings.reconnect_max_delay_ms, settings.reconnect_base_delay_ms),
            weak_multiplier=settings.weak_signal_multiplier,
            weak_rssi_dbm=settings.weak_signal_rssi_dbm,
        )

    def delay(self, attempt: int, weak_signal: bool = False) -> int:
        """Return the reconnect delay in milliseconds for ``attempt``."""

        exponent = min(max(int(attempt), 0), _MAX_EXPONENT)
        delay = float(self.base_ms) * (2**exponent)
        if weak_signal:
            delay *= self.weak_multiplier
        return int(min(max(delay, self.base_ms), self.max_ms))

    def is_weak(self, rssi: Optional[int]) -> bool:
        if rssi is None:
            return False
        return rssi < self.weak_rssi_dbm
