"""Engine context: the shared registries every watcher runs on.

One :class:`EngineContext` per process (or per test) owns the worker pools,
the timed scheduler, the HTTP transfer client, the per-host connection
controllers, the outbound event channel and the extractor table. Watchers
receive it explicitly instead of reaching for module globals.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..concurrency import PoolRegistry, TimedScheduler
from .config import ThreadWatchConfig
from .connections import ConnectionRegistry
from .events import EventChannel
from .extractors import ExtractorRegistry
from .net import HttpTransferClient

__all__ = ["EngineContext"]

logger = logging.getLogger(__name__)


class EngineContext:
    """Owner of the process-wide collaborators.

    Attributes:
        config: Effective configuration
        pools: Worker pools keyed by host
        scheduler: Timer-ordered dispatcher feeding ``pools``
        client: HTTP transfer client
        connections: Per-host connection admission controllers
        events: Outbound status event channel
        extractors: Extractor registration table
    """

    def __init__(
        self,
        config: Optional[ThreadWatchConfig] = None,
        *,
        transport: Optional[httpx.BaseTransport] = None,
        extractors: Optional[ExtractorRegistry] = None,
        events: Optional[EventChannel] = None,
    ) -> None:
        self.config = config or ThreadWatchConfig()
        concurrency = self.config.concurrency
        self.pools = PoolRegistry(
            min_threads=concurrency.pool_min_threads,
            creation_delay=concurrency.pool_creation_delay_s,
            idle_timeout=concurrency.pool_idle_timeout_s,
        )
        self.scheduler = TimedScheduler(self.pools, idle_timeout=concurrency.scheduler_idle_timeout_s)
        self.client = HttpTransferClient(
            self.config.http,
            transport=transport,
            max_workers=concurrency.transfer_workers,
        )
        self.connections = ConnectionRegistry(
            max_connections=concurrency.max_connections_per_host,
            invalidator=self.client.close_group,
        )
        self.events = events or EventChannel()
        self.extractors = extractors or ExtractorRegistry()
        self._closed = False

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Close the transfer client and drain the event channel."""
        if self._closed:
            return
        self._closed = True
        self.client.close()
        self.events.close(timeout)
        logger.debug("Engine context closed")

    def __enter__(self) -> "EngineContext":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
