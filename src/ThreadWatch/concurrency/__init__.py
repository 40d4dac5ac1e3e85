"""Thread-based concurrency primitives used by the download engine.

Exports:
    FairSemaphore: FIFO counting semaphore
    ElasticWorkerPool / PoolRegistry: per-group worker threads
    TimedScheduler / WorkItem: due-time ordered dispatch onto pools
    now_ticks / ticks_until: monotonic millisecond clock
"""

from .pool import ElasticWorkerPool, PoolRegistry
from .scheduler import TimedScheduler, WorkItem
from .semaphore import FairSemaphore, SemaphoreFullError
from .ticks import now_ticks, ticks_until

__all__ = [
    "ElasticWorkerPool",
    "FairSemaphore",
    "PoolRegistry",
    "SemaphoreFullError",
    "TimedScheduler",
    "WorkItem",
    "now_ticks",
    "ticks_until",
]
