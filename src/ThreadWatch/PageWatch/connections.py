# === NAVMAP v1 ===
# {
#   "module": "ThreadWatch.PageWatch.connections",
#   "purpose": "Per-host connection admission with recyclable connection groups",
#   "sections": [
#     {"id": "connectionadmissioncontroller", "name": "ConnectionAdmissionController", "anchor": "class-connectionadmissioncontroller", "kind": "class"},
#     {"id": "connectionregistry", "name": "ConnectionRegistry", "anchor": "class-connectionregistry", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Per-host connection admission.

Each remote host gets one :class:`ConnectionAdmissionController` that lets at
most ``max_connections`` downloads talk to it at a time. A download checks out
an opaque connection group id, which the transfer client maps to its own
``httpx.Client``; ids are recycled through a stack so keep-alive connections
are reused by the next download.

After a failed attempt the download calls :meth:`rotate`: the transport
behind the old id is closed through the injected invalidator and a different
id is handed back, so the retry does not reuse a possibly broken socket. The
caller keeps its admission permit across the rotation.

**Usage:**

    registry = ConnectionRegistry(max_connections=4, invalidator=client.close_group)
    controller = registry.for_url(url)
    group = controller.obtain()
    try:
        ...
        group = controller.rotate(group, url)
    finally:
        controller.release(group)
"""

from __future__ import annotations

import logging
import threading
import uuid
from typing import Callable, Optional
from urllib.parse import urlsplit

from ..concurrency.semaphore import FairSemaphore

__all__ = ["ConnectionAdmissionController", "ConnectionRegistry", "DEFAULT_MAX_CONNECTIONS"]

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONNECTIONS = 4

Invalidator = Callable[[str], None]


class ConnectionAdmissionController:
    """FIFO-fair admission gate for one host.

    Attributes:
        host: Host name this controller guards
        max_connections: Concurrent checkout cap
    """

    def __init__(
        self,
        host: str,
        *,
        max_connections: int = DEFAULT_MAX_CONNECTIONS,
        invalidator: Optional[Invalidator] = None,
    ) -> None:
        self.host = host
        self.max_connections = max_connections
        self._semaphore = FairSemaphore(max_connections, max_connections)
        self._invalidator = invalidator
        self._lock = threading.Lock()
        self._group_ids: list[str] = []
        self._in_use = 0

    @property
    def in_use(self) -> int:
        """Number of connection groups currently checked out."""
        with self._lock:
            return self._in_use

    def obtain(self, timeout: Optional[float] = None) -> Optional[str]:
        """Block until admitted, then return a connection group id.

        Returns ``None`` only when ``timeout`` elapses first.
        """
        if not self._semaphore.acquire(timeout):
            return None
        with self._lock:
            self._in_use += 1
        return self._next_group_id()

    def release(self, group_id: str) -> None:
        """Return ``group_id`` for reuse and free the admission slot."""
        with self._lock:
            self._group_ids.append(group_id)
            self._in_use -= 1
        self._semaphore.release()

    def rotate(self, group_id: str, url: str) -> str:
        """Invalidate ``group_id``'s transport and return another id.

        The admission permit held by the caller is untouched.
        """
        if self._invalidator is not None:
            try:
                self._invalidator(group_id)
            except Exception as e:
                logger.warning(f"Failed to close connection group {group_id} for {url}: {e}")
        new_id = self._next_group_id()
        logger.debug("Rotated connection group for %s: %s -> %s", self.host, group_id, new_id)
        return new_id

    def _next_group_id(self) -> str:
        with self._lock:
            return self._group_ids.pop() if self._group_ids else str(uuid.uuid4())


class ConnectionRegistry:
    """Owned map of host name to :class:`ConnectionAdmissionController`."""

    def __init__(
        self,
        *,
        max_connections: int = DEFAULT_MAX_CONNECTIONS,
        invalidator: Optional[Invalidator] = None,
    ) -> None:
        self.max_connections = max_connections
        self._invalidator = invalidator
        self._lock = threading.Lock()
        self._controllers: dict[str, ConnectionAdmissionController] = {}

    def get(self, host: str) -> ConnectionAdmissionController:
        key = host.lower()
        with self._lock:
            controller = self._controllers.get(key)
            if controller is None:
                controller = ConnectionAdmissionController(
                    key,
                    max_connections=self.max_connections,
                    invalidator=self._invalidator,
                )
                self._controllers[key] = controller
            return controller

    def for_url(self, url: str) -> ConnectionAdmissionController:
        """Controller for the host part of ``url``."""
        return self.get(urlsplit(url).hostname or "")
