# === NAVMAP v1 ===
# {
#   "module": "ThreadWatch.concurrency.pool",
#   "purpose": "Named worker groups that grow and shrink their threads on demand",
#   "sections": [
#     {"id": "workerthread", "name": "_WorkerThread", "anchor": "class-workerthread", "kind": "class"},
#     {"id": "elasticworkerpool", "name": "ElasticWorkerPool", "anchor": "class-elasticworkerpool", "kind": "class"},
#     {"id": "poolregistry", "name": "PoolRegistry", "anchor": "class-poolregistry", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Elastic worker pools keyed by concurrency domain.

Downloads for one host should not queue behind a slow transfer from another,
and a burst of submissions should not wait seconds for an idle thread. Each
:class:`ElasticWorkerPool` keeps a floor of reusable workers and creates an
extra dedicated thread whenever no idle worker frees up within a short
threshold.

**Architecture:**

    ElasticWorkerPool("boards.example.org")
      ├─ Dispatcher: private worker (no pool) that places each submission
      ├─ Idle stack: workers ready for work, mirrored by a FairSemaphore
      └─ Workers: one OS thread each, started lazily, private FIFO queue

A submission is handed to the dispatcher so the caller never blocks. The
dispatcher waits up to ``creation_delay`` for an idle permit; on timeout it
creates a new worker instead. Once the action finishes the worker queues a
follow-up that pushes itself back onto the idle stack and releases a permit.

Workers whose queue stays empty for ``idle_timeout`` let their OS thread end.
Above the floor the worker object is also reclaimed from the idle stack,
consuming the permit that represented it; at or below the floor it stays
parked and restarts a thread the next time it is handed work.

**Usage:**

    pools = PoolRegistry(min_threads=4)
    pools.submit("boards.example.org", lambda: download(url))
"""

from __future__ import annotations

import itertools
import logging
import sys
import threading
from collections import deque
from typing import Callable, Optional

from .semaphore import FairSemaphore

__all__ = ["ElasticWorkerPool", "PoolRegistry"]

logger = logging.getLogger(__name__)

Action = Callable[[], None]

DEFAULT_MIN_THREADS = 4
DEFAULT_CREATION_DELAY_S = 0.5
DEFAULT_IDLE_TIMEOUT_S = 15.0

_worker_ids = itertools.count(1)


class _WorkerThread:
    """A single worker with a private FIFO queue and a lazily started thread."""

    def __init__(
        self,
        pool: Optional["ElasticWorkerPool"],
        name: str,
        idle_timeout: float,
    ) -> None:
        self._pool = pool
        self.name = name
        self._idle_timeout = idle_timeout
        self._lock = threading.Lock()
        self._queue: deque[Action] = deque()
        self._thread: Optional[threading.Thread] = None
        self._has_work = threading.Event()

    @property
    def is_alive(self) -> bool:
        """True while an OS thread is attached to this worker."""
        with self._lock:
            return self._thread is not None

    def submit(self, action: Action) -> None:
        with self._lock:
            if self._thread is None:
                self._has_work = threading.Event()
                self._thread = threading.Thread(
                    target=self._run,
                    args=(self._has_work,),
                    name=self.name,
                    daemon=True,
                )
                self._thread.start()
            self._queue.append(action)
            self._has_work.set()

    def _run(self, has_work: threading.Event) -> None:
        logger.debug("Worker thread started: %s", self.name)
        while True:
            if not has_work.wait(self._idle_timeout) and self._try_exit():
                break
            with self._lock:
                action = self._queue.popleft() if self._queue else None
                if action is None:
                    has_work.clear()
            if action is not None:
                self._execute(action)
        logger.debug("Worker thread exiting: %s", self.name)
        if self._pool is not None:
            self._pool._on_worker_exit(self)

    def _try_exit(self) -> bool:
        # Exit is only granted when nothing was queued since the wait timed out.
        with self._lock:
            if self._queue:
                return False
            self._thread = None
            return True

    def _execute(self, action: Action) -> None:
        try:
            action()
        except Exception:
            logger.exception("Unhandled error in worker %s", self.name)


class ElasticWorkerPool:
    """Worker group that reuses idle threads and adds threads under burst load.

    Attributes:
        name: Group key this pool serves
        min_threads: Floor of workers kept parked on the idle stack
        creation_delay: Seconds to wait for an idle worker before creating one
        idle_timeout: Seconds a worker waits for work before its thread ends
    """

    def __init__(
        self,
        name: str,
        *,
        min_threads: int = DEFAULT_MIN_THREADS,
        creation_delay: float = DEFAULT_CREATION_DELAY_S,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT_S,
    ) -> None:
        if min_threads < 0:
            raise ValueError(f"min_threads must be >= 0, got {min_threads}")
        self.name = name
        self.min_threads = min_threads
        self.creation_delay = creation_delay
        self.idle_timeout = idle_timeout

        self._lock = threading.Lock()
        self._semaphore = FairSemaphore(0, sys.maxsize)
        self._idle: list[_WorkerThread] = []
        self._workers: set[_WorkerThread] = set()
        self._dispatcher = _WorkerThread(None, f"pool[{name}]-dispatch", idle_timeout)

        with self._lock:
            for _ in range(min_threads):
                self._idle.append(self._new_worker())
                self._semaphore.release()

        logger.debug(f"ElasticWorkerPool initialized: name={name}, min_threads={min_threads}")

    def submit(self, action: Action) -> None:
        """Queue ``action`` for execution without blocking the caller."""
        self._dispatcher.submit(lambda: self._dispatch(action))

    def thread_count(self) -> int:
        """Number of workers owned by the pool (idle or busy)."""
        with self._lock:
            return len(self._workers)

    def idle_count(self) -> int:
        """Number of workers currently parked on the idle stack."""
        with self._lock:
            return len(self._idle)

    def live_thread_count(self) -> int:
        """Number of workers with a running OS thread."""
        with self._lock:
            workers = list(self._workers)
        return sum(1 for worker in workers if worker.is_alive)

    def _new_worker(self) -> _WorkerThread:
        worker = _WorkerThread(
            self,
            f"pool[{self.name}]-worker-{next(_worker_ids)}",
            self.idle_timeout,
        )
        self._workers.add(worker)
        return worker

    def _dispatch(self, action: Action) -> None:
        if self._semaphore.acquire(self.creation_delay):
            with self._lock:
                worker = self._idle.pop()
        else:
            with self._lock:
                worker = self._new_worker()
                total = len(self._workers)
            logger.debug("Pool %s grew to %d workers", self.name, total)
        worker.submit(action)
        worker.submit(lambda: self._return_idle(worker))

    def _return_idle(self, worker: _WorkerThread) -> None:
        with self._lock:
            self._idle.append(worker)
            self._semaphore.release()

    def _on_worker_exit(self, worker: _WorkerThread) -> None:
        with self._lock:
            if len(self._idle) <= self.min_threads:
                return
            for index in range(len(self._idle) - 1, -1, -1):
                if self._idle[index] is worker:
                    # The permit that represented this idle entry goes with it. No free
                    # permit means a dispatch is about to pop this stack; keep the worker.
                    if not self._semaphore.acquire(timeout=0):
                        return
                    del self._idle[index]
                    self._workers.discard(worker)
                    logger.debug(
                        "Pool %s reclaimed %s; %d workers remain",
                        self.name,
                        worker.name,
                        len(self._workers),
                    )
                    return


class PoolRegistry:
    """Owned registry of :class:`ElasticWorkerPool` instances keyed by group.

    Group keys are compared case-insensitively so host names map to one pool
    regardless of how a URL spelled them.
    """

    def __init__(
        self,
        *,
        min_threads: int = DEFAULT_MIN_THREADS,
        creation_delay: float = DEFAULT_CREATION_DELAY_S,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT_S,
    ) -> None:
        self.min_threads = min_threads
        self.creation_delay = creation_delay
        self.idle_timeout = idle_timeout
        self._lock = threading.Lock()
        self._pools: dict[str, ElasticWorkerPool] = {}

    def get(self, group: str) -> ElasticWorkerPool:
        """Return the pool for ``group``, creating it on first use."""
        key = group.lower()
        with self._lock:
            pool = self._pools.get(key)
            if pool is None:
                pool = ElasticWorkerPool(
                    group,
                    min_threads=self.min_threads,
                    creation_delay=self.creation_delay,
                    idle_timeout=self.idle_timeout,
                )
                self._pools[key] = pool
            return pool

    def submit(self, group: str, action: Action) -> None:
        """Queue ``action`` on the pool serving ``group``."""
        self.get(group).submit(action)

    def groups(self) -> list[str]:
        """Return the (case-folded) keys of all pools created so far."""
        with self._lock:
            return sorted(self._pools)
