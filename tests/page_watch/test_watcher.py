"""End-to-end watch cycles over a mock transport."""

from __future__ import annotations

import threading

import httpx
import pytest

from ThreadWatch.PageWatch.events import DownloadStatus, FoundNewImage, StopStatus, WaitStatus
from ThreadWatch.PageWatch.extractors import ExtractorRegistry, GenericImageExtractor
from ThreadWatch.PageWatch.models import DownloadKind, StopReason
from ThreadWatch.PageWatch.watcher import PageWatcher, WatchTarget

PAGE_URL = "https://boards.example.org/b/thread/123"
PAGE = (
    "<html><body>\n"
    '<div class="post"><a href="/b/src/1.jpg"><img src="/b/thumb/1s.jpg"></a></div>\n'
    '<div class="post"><a href="/b/res/124">other thread</a></div>\n'
    "</body></html>"
)


class SiteHandler:
    """Route requests by path and record every path served."""

    def __init__(self, routes: dict) -> None:
        self.routes = routes
        self.paths: list[str] = []
        self._lock = threading.Lock()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.paths.append(request.url.path)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404)
        return route(request)


def _site() -> SiteHandler:
    return SiteHandler(
        {
            "/b/thread/123": lambda request: httpx.Response(
                200, headers={"Content-Type": "text/html; charset=utf-8"}, content=PAGE.encode("utf-8")
            ),
            "/b/src/1.jpg": lambda request: httpx.Response(200, content=b"full-image"),
            "/b/thumb/1s.jpg": lambda request: httpx.Response(200, content=b"thumb"),
        }
    )


def _collect(engine) -> list:
    events: list = []
    engine.events.subscribe(events.append)
    return events


def test_one_time_watch_downloads_and_rewrites_page(make_engine, tmp_path):
    handler = _site()
    engine = make_engine(handler)
    events = _collect(engine)
    watcher = PageWatcher(engine, PAGE_URL, one_time=True)

    watcher.start()
    assert watcher.wait_until_stopped(10.0)
    assert engine.events.flush(5.0)

    assert watcher.stop_reason is StopReason.DOWNLOAD_COMPLETE
    assert watcher.download_dir == str(tmp_path / "downloads" / "example_b_123")
    directory = tmp_path / "downloads" / "example_b_123"
    assert (directory / "1.jpg").read_bytes() == b"full-image"
    assert (directory / "thumbs" / "1s.jpg").read_bytes() == b"thumb"

    saved = (directory / "123.html").read_text(encoding="utf-8")
    assert '<a href="1.jpg"><img src="thumbs/1s.jpg"></a>' in saved
    assert 'href="https://boards.example.org/b/res/124"' in saved
    assert not (directory / "123.html.bak").exists()

    assert DownloadStatus("example_b_123", DownloadKind.PAGE, 1, 1) in events
    assert DownloadStatus("example_b_123", DownloadKind.IMAGE, 1, 1) in events
    assert DownloadStatus("example_b_123", DownloadKind.THUMBNAIL, 1, 1) in events
    assert FoundNewImage("example_b_123") in events
    stops = [event for event in events if isinstance(event, StopStatus)]
    assert stops == [StopStatus("example_b_123", StopReason.DOWNLOAD_COMPLETE)]
    assert watcher.last_image_on is not None


def test_existing_files_are_not_downloaded_again(make_engine, tmp_path):
    handler = _site()
    engine = make_engine(handler)
    directory = tmp_path / "downloads" / "example_b_123"
    directory.mkdir(parents=True)
    (directory / "1.jpg").write_bytes(b"already here")
    watcher = PageWatcher(engine, PAGE_URL, one_time=True)

    watcher.start()
    assert watcher.wait_until_stopped(10.0)

    assert "/b/src/1.jpg" not in handler.paths
    assert "/b/thumb/1s.jpg" in handler.paths
    assert (directory / "1.jpg").read_bytes() == b"already here"
    assert 'href="1.jpg"' in (directory / "123.html").read_text(encoding="utf-8")


def test_missing_page_stops_watcher(make_engine):
    engine = make_engine(SiteHandler({}))
    events = _collect(engine)
    watcher = PageWatcher(engine, PAGE_URL)

    watcher.start()
    assert watcher.wait_until_stopped(10.0)
    assert engine.events.flush(5.0)

    assert watcher.stop_reason is StopReason.PAGE_NOT_FOUND
    assert not watcher.is_running
    stops = [event for event in events if isinstance(event, StopStatus)]
    assert stops == [StopStatus("example_b_123", StopReason.PAGE_NOT_FOUND)]


def test_unusable_directory_stops_with_io_error(make_engine, tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    handler = _site()
    engine = make_engine(handler)
    watcher = PageWatcher(engine, PAGE_URL, download_dir=str(blocker / "thread"))

    watcher.start()
    assert watcher.wait_until_stopped(10.0)

    assert watcher.stop_reason is StopReason.IO_ERROR
    assert handler.paths == []


def test_stop_while_waiting_publishes_stop_once(make_engine, wait_until):
    engine = make_engine(_site())
    events = _collect(engine)
    watcher = PageWatcher(engine, PAGE_URL)

    watcher.start()
    assert wait_until(lambda: watcher.is_waiting, timeout=10.0)
    assert engine.events.flush(5.0)
    waits = [event for event in events if isinstance(event, WaitStatus)]
    assert len(waits) == 1
    assert 0 < waits[0].ms_until_next_check <= 60_000

    watcher.stop(StopReason.USER_REQUEST)
    watcher.stop(StopReason.EXITING)
    assert watcher.wait_until_stopped(5.0)
    assert engine.events.flush(5.0)

    assert not watcher.is_running
    assert watcher.stop_reason is StopReason.USER_REQUEST
    stops = [event for event in events if isinstance(event, StopStatus)]
    assert stops == [StopStatus("example_b_123", StopReason.USER_REQUEST)]


def test_start_twice_is_rejected(make_engine, wait_until):
    engine = make_engine(_site())
    watcher = PageWatcher(engine, PAGE_URL)
    watcher.start()
    with pytest.raises(RuntimeError):
        watcher.start()
    watcher.stop(StopReason.USER_REQUEST)
    assert watcher.wait_until_stopped(10.0)


def test_check_interval_is_clamped(make_engine):
    engine = make_engine(_site())
    watcher = PageWatcher(engine, PAGE_URL, check_interval_seconds=5)
    assert watcher.check_interval_seconds == 30

    watcher.check_interval_seconds = 120
    assert watcher.check_interval_seconds == 120
    watcher.check_interval_seconds = 1
    assert watcher.check_interval_seconds == 30


def test_snapshot_round_trip(make_engine, tmp_path):
    engine = make_engine(_site())
    watcher = PageWatcher(
        engine,
        PAGE_URL,
        page_auth="user:pass",
        check_interval_seconds=90,
        download_dir=str(tmp_path / "custom"),
        description="cats",
    )
    target = watcher.snapshot()
    assert target.global_id == "example_b_123"
    assert target.stop_reason is None

    restored = PageWatcher.from_target(engine, WatchTarget.model_validate(target.model_dump(mode="json")))
    assert restored.page_auth == "user:pass"
    assert restored.check_interval_seconds == 90
    assert restored.download_dir == str(tmp_path / "custom")
    assert restored.description == "cats"
    assert restored.added_on == watcher.added_on


def test_snapshot_keeps_stop_reason_except_exiting(make_engine):
    engine = make_engine(_site())
    watcher = PageWatcher(engine, PAGE_URL)
    watcher.stop(StopReason.PAGE_NOT_FOUND)
    target = watcher.snapshot()
    assert target.stop_reason is StopReason.PAGE_NOT_FOUND

    restored = PageWatcher.from_target(engine, target)
    assert restored.is_stopping
    assert restored.stop_reason is StopReason.PAGE_NOT_FOUND

    exiting = PageWatcher(engine, PAGE_URL)
    exiting.stop(StopReason.EXITING)
    assert exiting.snapshot().stop_reason is None


PAGE_TWO_URL = PAGE_URL + "/2"
PAGE_TWO = '<html><body><a href="/b/src/2.jpg"><img src="/b/thumb/2s.jpg"></a></body></html>'


def _html(body: str, **headers):
    headers.setdefault("Content-Type", "text/html; charset=utf-8")
    return lambda request: httpx.Response(200, headers=headers, content=body.encode("utf-8"))


def _paged_site() -> SiteHandler:
    handler = _site()
    handler.routes.update(
        {
            "/b/thread/123/2": _html(PAGE_TWO),
            "/b/src/2.jpg": lambda request: httpx.Response(200, content=b"second-image"),
            "/b/thumb/2s.jpg": lambda request: httpx.Response(200, content=b"thumb-2"),
        }
    )
    return handler


def _paged_registry(next_pages: dict) -> ExtractorRegistry:
    class PagedExtractor(GenericImageExtractor):
        def extract(self, parser, page_url):
            result = super().extract(parser, page_url)
            result.next_page_url = next_pages.get(page_url)
            return result

    registry = ExtractorRegistry()
    registry.register(lambda url: True, PagedExtractor)
    return registry


def _check_now(watcher, handler, path, count, wait_until) -> None:
    assert wait_until(lambda: watcher.is_waiting, timeout=10.0)
    watcher.ms_until_next_check = 0
    assert wait_until(lambda: handler.paths.count(path) >= count and watcher.is_waiting, timeout=10.0)


def test_next_page_is_followed_and_saved_with_suffix(make_engine, tmp_path):
    handler = _paged_site()
    engine = make_engine(handler, extractors=_paged_registry({PAGE_URL: PAGE_TWO_URL}))
    watcher = PageWatcher(engine, PAGE_URL, one_time=True)

    watcher.start()
    assert watcher.wait_until_stopped(10.0)

    assert watcher.stop_reason is StopReason.DOWNLOAD_COMPLETE
    assert handler.paths.count("/b/thread/123") == 1
    assert handler.paths.count("/b/thread/123/2") == 1
    directory = tmp_path / "downloads" / "example_b_123"
    assert (directory / "123.html").exists()
    assert 'href="2.jpg"' in (directory / "123_2.html").read_text(encoding="utf-8")
    assert (directory / "1.jpg").read_bytes() == b"full-image"
    assert (directory / "2.jpg").read_bytes() == b"second-image"


def test_pages_after_a_dropped_next_link_are_forgotten(make_engine, wait_until):
    handler = _paged_site()
    next_pages = {PAGE_URL: PAGE_TWO_URL}
    engine = make_engine(handler, extractors=_paged_registry(next_pages))
    watcher = PageWatcher(engine, PAGE_URL)

    watcher.start()
    assert wait_until(lambda: watcher.is_waiting, timeout=10.0)
    assert [page.url for page in watcher._pages] == [PAGE_URL, PAGE_TWO_URL]

    next_pages.clear()
    _check_now(watcher, handler, "/b/thread/123", 2, wait_until)

    assert [page.url for page in watcher._pages] == [PAGE_URL]
    assert handler.paths.count("/b/thread/123/2") == 1
    watcher.stop(StopReason.USER_REQUEST)
    assert watcher.wait_until_stopped(5.0)


def test_failing_extractor_stops_only_that_watcher(make_engine, tmp_path):
    class BrokenExtractor:
        def extract(self, parser, page_url):
            raise ValueError("unparseable page")

    other_url = "https://boards.example.org/b/thread/456"
    registry = ExtractorRegistry()
    registry.register(lambda url: url == PAGE_URL, BrokenExtractor)
    handler = _site()
    handler.routes["/b/thread/456"] = _html(PAGE)
    engine = make_engine(handler, extractors=registry)
    events = _collect(engine)
    broken = PageWatcher(engine, PAGE_URL)
    healthy = PageWatcher(engine, other_url, one_time=True)

    broken.start()
    healthy.start()
    assert broken.wait_until_stopped(10.0)
    assert healthy.wait_until_stopped(10.0)
    assert engine.events.flush(5.0)

    assert broken.stop_reason is StopReason.OTHER
    assert not broken.is_running
    assert healthy.stop_reason is StopReason.DOWNLOAD_COMPLETE
    assert (tmp_path / "downloads" / "example_b_456" / "1.jpg").read_bytes() == b"full-image"
    stops = [event for event in events if isinstance(event, StopStatus)]
    assert [stop for stop in stops if stop.watcher_id == "example_b_123"] == [
        StopStatus("example_b_123", StopReason.OTHER)
    ]


def test_pending_retries_drop_if_modified_since(make_engine, wait_until):
    last_modified = "Wed, 21 Oct 2015 07:28:00 GMT"
    page_headers: list = []
    image_requests: list = []
    lock = threading.Lock()

    def page(request: httpx.Request) -> httpx.Response:
        page_headers.append(request.headers.get("If-Modified-Since"))
        return _html(PAGE, **{"Last-Modified": last_modified})(request)

    def image(request: httpx.Request) -> httpx.Response:
        with lock:
            image_requests.append(request)
            failing = len(image_requests) <= 3
        if failing:
            return httpx.Response(503)
        return httpx.Response(200, content=b"full-image")

    handler = _site()
    handler.routes.update({"/b/thread/123": page, "/b/src/1.jpg": image})
    engine = make_engine(handler)
    watcher = PageWatcher(engine, PAGE_URL)

    watcher.start()
    assert wait_until(lambda: watcher.is_waiting, timeout=10.0)
    assert len(image_requests) == 3

    _check_now(watcher, handler, "/b/thread/123", 2, wait_until)
    _check_now(watcher, handler, "/b/thread/123", 3, wait_until)

    assert page_headers == [None, None, last_modified]
    watcher.stop(StopReason.USER_REQUEST)
    assert watcher.wait_until_stopped(5.0)


def test_stop_during_check_aborts_downloads_and_publishes_once(make_engine, tmp_path):
    entered = threading.Event()
    unblock = threading.Event()

    class SlowStream(httpx.SyncByteStream):
        def __iter__(self):
            yield b"part"
            entered.set()
            unblock.wait(10.0)
            yield b"rest"

    handler = _site()
    handler.routes["/b/src/1.jpg"] = lambda request: httpx.Response(200, stream=SlowStream())
    engine = make_engine(handler)
    events = _collect(engine)
    watcher = PageWatcher(engine, PAGE_URL)

    watcher.start()
    try:
        assert entered.wait(10.0)
        watcher.stop(StopReason.USER_REQUEST)
        assert watcher.wait_until_stopped(5.0)
    finally:
        unblock.set()
    assert engine.events.flush(5.0)

    assert watcher.stop_reason is StopReason.USER_REQUEST
    assert not watcher.is_running
    stops = [event for event in events if isinstance(event, StopStatus)]
    assert stops == [StopStatus("example_b_123", StopReason.USER_REQUEST)]
    assert not (tmp_path / "downloads" / "example_b_123" / "1.jpg").exists()
    assert "/b/thumb/1s.jpg" not in handler.paths
