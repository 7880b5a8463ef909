"""``requests`` session whose in-flight request can be aborted from another thread."""

from __future__ import annotations

import logging
import socket
import threading
from typing import Any, List, Type

import requests
from requests.adapters import HTTPAdapter
from urllib3 import HTTPConnectionPool, HTTPSConnectionPool

LOGGER = logging.getLogger(__name__)


def _tracking_pool(base: Type[HTTPConnectionPool], adapter: "AbortableAdapter") -> Type[HTTPConnectionPool]:
    class _TrackingPool(base):  # type: ignore[valid-type, misc]
        def _new_conn(self):
            conn = super()._new_conn()
            adapter.track(conn)
            return conn

    _TrackingPool.__name__ = f"Tracking{base.__name__}"
    return _TrackingPool


class AbortableAdapter(HTTPAdapter):
    """HTTP adapter that remembers its connections so ``abort`` can shut their sockets.

    Closing a ``requests.Session`` only returns idle connections to the pool; a
    worker thread blocked in ``send``/``recv`` keeps waiting for its timeout.
    Shutting the socket down wakes that thread with a connection error.
    """

    def __init__(self, **kwargs: Any) -> None:
        self._lock = threading.Lock()
        self._connections: List[Any] = []
        super().__init__(**kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs) -> None:
        super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)
        self.poolmanager.pool_classes_by_scheme = {
            "http": _tracking_pool(HTTPConnectionPool, self),
            "https": _tracking_pool(HTTPSConnectionPool, self),
        }

    def track(self, conn: Any) -> None:
        with self._lock:
            self._connections.append(conn)

    def abort(self) -> int:
        """Shut down every socket opened through this adapter; returns how many."""

        with self._lock:
            connections, self._connections = self._connections, []
        aborted = 0
        for conn in connections:
            sock = getattr(conn, "sock", None)
            if sock is None:
                continue
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                LOGGER.debug("Suppress socket shutdown error", exc_info=True)
                continue
            aborted += 1
        return aborted


class AbortableSession(requests.Session):
    """``requests.Session`` with ``abort()`` for cancelling a blocked upload."""

    def __init__(self) -> None:
        super().__init__()
        self._abortable = AbortableAdapter()
        self.mount("http://", self._abortable)
        self.mount("https://", self._abortable)

    def abort(self) -> None:
        aborted = self._abortable.abort()
        LOGGER.debug("Aborted %s upload connection(s)", aborted)
