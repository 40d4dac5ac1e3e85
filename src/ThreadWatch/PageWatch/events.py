# === NAVMAP v1 ===
# {
#   "module": "ThreadWatch.PageWatch.events",
#   "purpose": "Status events and the single outbound event channel",
#   "sections": [
#     {"id": "statusevent", "name": "StatusEvent", "anchor": "class-statusevent", "kind": "dataclass"},
#     {"id": "eventchannel", "name": "EventChannel", "anchor": "class-eventchannel", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Status events published by watchers and downloads.

Every event is an immutable dataclass tagged with the id of the watcher that
produced it. Producers hand events to one :class:`EventChannel`; a dispatcher
thread delivers them to subscribers in emission order.

Producers never block on a slow subscriber: the channel buffer is bounded and
the oldest undelivered event is discarded when it is full. A subscriber that
raises is logged and the remaining subscribers still receive the event.

**Usage:**

    channel = EventChannel()
    unsubscribe = channel.subscribe(print)
    channel.publish(WaitStatus(watcher_id="example_b_1", ms_until_next_check=60000))
    channel.flush(timeout=1.0)
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from .models import DownloadKind, StopReason

__all__ = [
    "DownloadEnded",
    "DownloadProgress",
    "DownloadStarted",
    "DownloadStatus",
    "EventChannel",
    "FoundNewImage",
    "StatusEvent",
    "StopStatus",
    "WaitStatus",
]

logger = logging.getLogger(__name__)

DEFAULT_MAX_PENDING = 10_000


@dataclass(frozen=True)
class StatusEvent:
    watcher_id: str


@dataclass(frozen=True)
class DownloadStatus(StatusEvent):
    """Completed/total counts for pages, images or thumbnails of one check."""

    kind: DownloadKind
    completed: int
    total: int


@dataclass(frozen=True)
class WaitStatus(StatusEvent):
    ms_until_next_check: int


@dataclass(frozen=True)
class StopStatus(StatusEvent):
    reason: StopReason


@dataclass(frozen=True)
class FoundNewImage(StatusEvent):
    pass


@dataclass(frozen=True)
class DownloadStarted(StatusEvent):
    download_id: int
    url: str
    try_number: int
    total_size: Optional[int]


@dataclass(frozen=True)
class DownloadProgress(StatusEvent):
    download_id: int
    downloaded: int


@dataclass(frozen=True)
class DownloadEnded(StatusEvent):
    download_id: int
    downloaded: int
    successful: bool


Subscriber = Callable[[StatusEvent], None]


class EventChannel:
    """Bounded, drop-oldest channel delivering events on a dispatcher thread.

    Attributes:
        max_pending: Buffer size before the oldest events are discarded
        dropped: Number of events discarded so far
    """

    def __init__(self, max_pending: int = DEFAULT_MAX_PENDING) -> None:
        if max_pending < 1:
            raise ValueError(f"max_pending must be >= 1, got {max_pending}")
        self.max_pending = max_pending
        self.dropped = 0
        self._cond = threading.Condition()
        self._queue: deque[StatusEvent] = deque()
        self._subscribers: list[Subscriber] = []
        self._delivering = False
        self._closed = False
        self._thread: Optional[threading.Thread] = None

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register ``subscriber``; returns a callable that unregisters it."""
        with self._cond:
            self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            with self._cond:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return unsubscribe

    def publish(self, event: StatusEvent) -> None:
        with self._cond:
            if self._closed:
                logger.debug("Event channel closed; dropping %s", type(event).__name__)
                return
            if len(self._queue) >= self.max_pending:
                self._queue.popleft()
                self.dropped += 1
                if self.dropped == 1 or self.dropped % 1000 == 0:
                    logger.warning("Event channel full; %d events dropped so far", self.dropped)
            self._queue.append(event)
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name="event-channel", daemon=True)
                self._thread.start()
            self._cond.notify_all()

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every published event has been delivered.

        Returns:
            True if the buffer drained before ``timeout`` elapsed
        """
        with self._cond:
            return self._cond.wait_for(lambda: not self._queue and not self._delivering, timeout)

    def close(self, timeout: Optional[float] = None) -> None:
        """Deliver what is buffered, then stop the dispatcher thread."""
        with self._cond:
            self._closed = True
            thread = self._thread
            self._cond.notify_all()
        if thread is not None:
            thread.join(timeout)

    def _run(self) -> None:
        while True:
            with self._cond:
                self._cond.wait_for(lambda: self._queue or self._closed)
                if not self._queue:
                    self._thread = None
                    self._cond.notify_all()
                    return
                event = self._queue.popleft()
                subscribers = list(self._subscribers)
                self._delivering = True
            try:
                for subscriber in subscribers:
                    try:
                        subscriber(event)
                    except Exception:
                        logger.exception("Event subscriber failed on %s", type(event).__name__)
            finally:
                with self._cond:
                    self._delivering = False
                    self._cond.notify_all()
