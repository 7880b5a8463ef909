"""Reboot handshake after an accepted update."""

from .watcher import RebootPhase, RebootWaitState, RebootWatcher

__all__ = ["RebootPhase", "RebootWaitState", "RebootWatcher"]
