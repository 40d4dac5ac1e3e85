# === NAVMAP v1 ===
# {
#   "module": "tests.conftest",
#   "purpose": "Shared pytest fixtures for suite",
#   "sections": [
#     {"id": "wait-until", "name": "wait_until", "anchor": "function-wait-until", "kind": "fixture"},
#     {"id": "fast-config", "name": "fast_config", "anchor": "function-fast-config", "kind": "fixture"},
#     {"id": "make-engine", "name": "make_engine", "anchor": "function-make-engine", "kind": "fixture"},
#     {"id": "make-download-context", "name": "make_download_context", "anchor": "function-make-download-context", "kind": "fixture"}
#   ]
# }
# === /NAVMAP ===

"""
Pytest Configuration

Puts ``src`` on ``sys.path`` and provides fixtures for the concurrency and
page watch suites: a polling helper for threaded assertions, a configuration
with short pool and scheduler timeouts, and factories wiring an
``httpx.MockTransport`` handler into an engine context or a download context.
"""

from __future__ import annotations

import sys
import time
from pathlib import Path
from typing import Callable, Optional

import httpx
import pytest

ROOT = Path(__file__).resolve().parent.parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from ThreadWatch.PageWatch.config import (  # noqa: E402
    ConcurrencySettings,
    ThreadWatchConfig,
    WatchSettings,
)
from ThreadWatch.PageWatch.connections import ConnectionRegistry  # noqa: E402
from ThreadWatch.PageWatch.download import DownloadContext  # noqa: E402
from ThreadWatch.PageWatch.engine import EngineContext  # noqa: E402
from ThreadWatch.PageWatch.net import HttpTransferClient  # noqa: E402

Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture
def wait_until():
    """Poll ``predicate`` until it is true or ``timeout`` seconds pass."""

    def _wait(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait


@pytest.fixture
def fast_config(tmp_path) -> ThreadWatchConfig:
    return ThreadWatchConfig(
        concurrency=ConcurrencySettings(
            pool_creation_delay_s=0.05,
            pool_idle_timeout_s=1.0,
            scheduler_idle_timeout_s=1.0,
        ),
        watch=WatchSettings(download_dir=str(tmp_path / "downloads")),
    )


@pytest.fixture
def make_engine(fast_config):
    """Build engine contexts over a mock transport; all are closed on teardown."""
    engines: list[EngineContext] = []

    def factory(handler: Handler, config: Optional[ThreadWatchConfig] = None, **kwargs) -> EngineContext:
        engine = EngineContext(config or fast_config, transport=httpx.MockTransport(handler), **kwargs)
        engines.append(engine)
        return engine

    yield factory
    for engine in engines:
        engine.close(timeout=1.0)


@pytest.fixture
def make_download_context():
    """Build a download context over a mock transport that records published events."""
    clients: list[HttpTransferClient] = []

    def factory(handler: Handler, **kwargs) -> tuple[DownloadContext, list]:
        client = HttpTransferClient(transport=httpx.MockTransport(handler), max_workers=8)
        clients.append(client)
        events: list = []
        ctx = DownloadContext(
            client=client,
            connections=ConnectionRegistry(invalidator=client.close_group),
            publish=events.append,
            watcher_id="test",
            **kwargs,
        )
        return ctx, events

    yield factory
    for client in clients:
        client.close()
