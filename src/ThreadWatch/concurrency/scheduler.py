# === NAVMAP v1 ===
# {
#   "module": "ThreadWatch.concurrency.scheduler",
#   "purpose": "Due-time ordered dispatch of work items onto worker pools",
#   "sections": [
#     {"id": "workitem", "name": "WorkItem", "anchor": "class-workitem", "kind": "class"},
#     {"id": "timedscheduler", "name": "TimedScheduler", "anchor": "class-timedscheduler", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Timer loop that hands due work items to the pool registry.

Work items carry a due time in monotonic milliseconds (see
:mod:`ThreadWatch.concurrency.ticks`) and a pool group key. The scheduler keeps
them in a list sorted by due time; items with equal due times keep insertion
order. A single loop thread sleeps until the head item is due or until the
schedule changes, then removes every elapsed item and submits it to the
:class:`~ThreadWatch.concurrency.pool.PoolRegistry` under its group key.

The loop thread is started by the first ``schedule`` call and exits after it
has been idle for ``idle_timeout`` seconds with nothing scheduled; the next
``schedule`` starts a fresh one.
"""

from __future__ import annotations

import bisect
import logging
import threading
from typing import Callable, Optional

from .pool import DEFAULT_IDLE_TIMEOUT_S, PoolRegistry
from .ticks import now_ticks

__all__ = ["TimedScheduler", "WorkItem"]

logger = logging.getLogger(__name__)


class WorkItem:
    """Handle for one scheduled action.

    The due time may be changed until the item is dispatched; assigning
    ``due_ticks`` moves the item to its new position in the schedule.
    """

    def __init__(
        self,
        scheduler: "TimedScheduler",
        due_ticks: int,
        action: Callable[[], None],
        group: str,
    ) -> None:
        self._scheduler = scheduler
        self._due_ticks = due_ticks
        self.action = action
        self.group = group
        self._started = False

    @property
    def due_ticks(self) -> int:
        return self._due_ticks

    @due_ticks.setter
    def due_ticks(self, value: int) -> None:
        self._scheduler.reschedule(self, value)

    @property
    def has_started(self) -> bool:
        return self._started

    def cancel(self) -> bool:
        return self._scheduler.cancel(self)

    def __repr__(self) -> str:
        return f"WorkItem(due_ticks={self._due_ticks}, group={self.group!r}, started={self._started})"


class TimedScheduler:
    """Single-loop scheduler dispatching work items in due-time order."""

    def __init__(self, pools: PoolRegistry, *, idle_timeout: float = DEFAULT_IDLE_TIMEOUT_S) -> None:
        self._pools = pools
        self._idle_timeout = idle_timeout
        self._lock = threading.RLock()
        self._items: list[WorkItem] = []
        self._changed = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def schedule(self, due_ticks: int, action: Callable[[], None], group: str = "") -> WorkItem:
        """Schedule ``action`` to run on the ``group`` pool at ``due_ticks``."""
        item = WorkItem(self, due_ticks, action, group)
        with self._lock:
            self._insert(item)
            self._ensure_thread()
        return item

    def cancel(self, item: WorkItem) -> bool:
        """Remove ``item`` from the schedule.

        Returns:
            True if the item was pending, False if it already ran or was cancelled
        """
        with self._lock:
            if item not in self._items:
                return False
            self._items.remove(item)
            self._changed.set()
            return True

    def reschedule(self, item: WorkItem, due_ticks: int) -> bool:
        """Move ``item`` to ``due_ticks``; ignored once the item has started or was cancelled."""
        with self._lock:
            if item._started or item not in self._items:
                return False
            self._items.remove(item)
            item._due_ticks = due_ticks
            self._insert(item)
            return True

    def pending(self) -> list[WorkItem]:
        """Snapshot of the pending items in dispatch order."""
        with self._lock:
            return list(self._items)

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None

    def _insert(self, item: WorkItem) -> None:
        keys = [existing._due_ticks for existing in self._items]
        self._items.insert(bisect.bisect_right(keys, item._due_ticks), item)
        self._changed.set()

    def _ensure_thread(self) -> None:
        if self._thread is None:
            self._thread = threading.Thread(target=self._run, name="timed-scheduler", daemon=True)
            self._thread.start()
            logger.debug("Scheduler loop started")

    def _run(self) -> None:
        while True:
            with self._lock:
                self._changed.clear()
                wait_ms = self._items[0]._due_ticks - now_ticks() if self._items else None

            if wait_ms is None or wait_ms > 0:
                timeout = self._idle_timeout if wait_ms is None else wait_ms / 1000.0
                if self._changed.wait(timeout):
                    continue
                if wait_ms is None:
                    with self._lock:
                        if self._items or self._changed.is_set():
                            continue
                        self._thread = None
                    logger.debug("Scheduler loop idle; exiting")
                    return

            self._dispatch_due()

    def _dispatch_due(self) -> None:
        with self._lock:
            now = now_ticks()
            due: list[WorkItem] = []
            while self._items and self._items[0]._due_ticks <= now:
                item = self._items.pop(0)
                item._started = True
                due.append(item)
            for item in due:
                self._pools.submit(item.group, item.action)
