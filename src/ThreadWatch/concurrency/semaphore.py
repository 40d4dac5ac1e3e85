# === NAVMAP v1 ===
# {
#   "module": "ThreadWatch.concurrency.semaphore",
#   "purpose": "Counting semaphore with strict first-in-first-out wake order",
#   "sections": [
#     {"id": "semaphorefullerror", "name": "SemaphoreFullError", "anchor": "class-semaphorefullerror", "kind": "class"},
#     {"id": "fairsemaphore", "name": "FairSemaphore", "anchor": "class-fairsemaphore", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Fair counting semaphore.

``threading.Semaphore`` makes no promise about which waiter wakes first, so a
caller that arrived late can overtake one that has been blocked for seconds.
The per-host connection controller and the elastic worker pools need the
stronger guarantee: permits are handed out in exactly the order callers
started waiting.

**Design:**

Each blocked caller gets its own ``_Waiter`` (a condition plus two flags) that
is appended to a deque. ``release()`` pops waiters from the left and signals
the first one that has not given up; only when no live waiter remains does
the free count go up. A waiter that times out marks itself abandoned under
its own condition, so ``release()`` either sees the flag and skips it, or
signals it first and the waiter reports success.

**Usage:**

    sem = FairSemaphore(initial=4, maximum=4)
    if sem.acquire(timeout=0.5):
        try:
            ...
        finally:
            sem.release()
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Optional

__all__ = ["FairSemaphore", "SemaphoreFullError"]

logger = logging.getLogger(__name__)


class SemaphoreFullError(RuntimeError):
    """Raised when ``release()`` would push the count above its maximum."""


class _Waiter:
    """Wake-up slot for one blocked ``acquire`` call."""

    __slots__ = ("cond", "signaled", "abandoned")

    def __init__(self) -> None:
        self.cond = threading.Condition(threading.Lock())
        self.signaled = False
        self.abandoned = False


class FairSemaphore:
    """Counting semaphore whose permits are granted in FIFO order.

    Attributes:
        maximum: Upper bound for the free count
    """

    def __init__(self, initial: int, maximum: int) -> None:
        """Initialize the semaphore.

        Args:
            initial: Number of permits available immediately
            maximum: Largest number of permits the semaphore may hold

        Raises:
            ValueError: If ``initial`` is negative, ``maximum`` is below one, or
                ``initial`` exceeds ``maximum``
        """
        if initial < 0 or maximum < 1:
            raise ValueError(f"Invalid semaphore bounds: initial={initial}, maximum={maximum}")
        if initial > maximum:
            raise ValueError(f"initial ({initial}) must not exceed maximum ({maximum})")
        self.maximum = maximum
        self._count = initial
        self._lock = threading.Lock()
        self._waiters: deque[_Waiter] = deque()

    @property
    def count(self) -> int:
        """Currently free permits."""
        with self._lock:
            return self._count

    @property
    def waiting(self) -> int:
        """Number of queued waiters, including abandoned ones not yet skipped."""
        with self._lock:
            return len(self._waiters)

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """Take a permit, waiting in line behind earlier callers.

        Args:
            timeout: Seconds to wait (``None`` waits forever, ``0`` never blocks)

        Returns:
            True if a permit was obtained, False if the timeout elapsed
        """
        with self._lock:
            if self._count > 0:
                self._count -= 1
                return True
            if timeout is not None and timeout <= 0:
                return False
            waiter = _Waiter()
            self._waiters.append(waiter)

        with waiter.cond:
            if waiter.signaled:
                return True
            waiter.cond.wait_for(lambda: waiter.signaled, timeout)
            if waiter.signaled:
                return True
            waiter.abandoned = True
            return False

    def release(self) -> None:
        """Return a permit, waking the longest-waiting caller if there is one.

        Raises:
            SemaphoreFullError: If the count is already at ``maximum``
        """
        with self._lock:
            if self._count >= self.maximum:
                raise SemaphoreFullError(
                    f"Semaphore released beyond its maximum of {self.maximum}"
                )
            while self._waiters:
                waiter = self._waiters.popleft()
                with waiter.cond:
                    if waiter.abandoned:
                        continue
                    waiter.signaled = True
                    waiter.cond.notify()
                    return
            self._count += 1

    def __enter__(self) -> "FairSemaphore":
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
