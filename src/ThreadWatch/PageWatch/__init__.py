"""Public API for the ThreadWatch page watcher.

A :class:`PageWatcher` re-fetches one page on an interval, extracts the images
and thumbnails it links to and downloads the ones not yet on disk. Watchers
share an :class:`EngineContext` holding the worker pools, the timed
scheduler, the HTTP transfer client, the per-host connection controllers and
the status event channel.

Example:
    from ThreadWatch.PageWatch import EngineContext, PageWatcher, load_config

    engine = EngineContext(load_config("threadwatch.yaml"))
    watcher = PageWatcher(engine, "https://boards.example.org/b/thread/123")
    watcher.start()
"""

from __future__ import annotations

from .config import ThreadWatchConfig, load_config
from .download import FileDownload, PageDownload
from .engine import EngineContext
from .events import EventChannel
from .extractors import ExtractionResult, ExtractorRegistry, GenericImageExtractor
from .html import HtmlParser
from .models import DownloadResult, StopReason
from .watcher import PageWatcher, WatchTarget

__all__ = [
    "DownloadResult",
    "EngineContext",
    "EventChannel",
    "ExtractionResult",
    "ExtractorRegistry",
    "FileDownload",
    "GenericImageExtractor",
    "HtmlParser",
    "PageDownload",
    "PageWatcher",
    "StopReason",
    "ThreadWatchConfig",
    "WatchTarget",
    "load_config",
]
