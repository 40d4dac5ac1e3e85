"""MockTransport coverage for the page and file download state machine."""

from __future__ import annotations

import hashlib
import socketserver
import threading
from datetime import datetime, timezone

import httpx
import pytest

from ThreadWatch.PageWatch.connections import ConnectionRegistry
from ThreadWatch.PageWatch.download import DownloadContext, FileDownload, PageDownload
from ThreadWatch.PageWatch.events import DownloadEnded, DownloadProgress, DownloadStarted
from ThreadWatch.PageWatch.models import DownloadResult, HashType, StopReason
from ThreadWatch.PageWatch.net import HttpTransferClient

IMAGE_URL = "https://i.example.org/b/src/123.jpg"
PAGE_URL = "https://boards.example.org/b/thread/123"


class CountingHandler:
    """Serve a scripted sequence of responses, repeating the last one."""

    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []
        self._lock = threading.Lock()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
            index = min(len(self.requests), len(self.responses)) - 1
            factory = self.responses[index]
        return factory(request)


def _short_body(body: bytes, advertised: int):
    return lambda request: httpx.Response(200, headers={"Content-Length": str(advertised)}, content=body)


def _body(body: bytes, **headers):
    return lambda request: httpx.Response(200, headers=headers, content=body)


def _status(code: int):
    return lambda request: httpx.Response(code)


def test_file_download_completes_and_publishes_events(tmp_path, make_download_context):
    handler = CountingHandler(_body(b"image-bytes"))
    ctx, events = make_download_context(handler)
    path = tmp_path / "123.jpg"

    result = FileDownload(ctx, str(path), IMAGE_URL, referer=PAGE_URL).run()

    assert result is DownloadResult.COMPLETED
    assert path.read_bytes() == b"image-bytes"
    request = handler.requests[0]
    assert request.headers["Referer"] == PAGE_URL
    assert request.headers["Accept-Encoding"] == "identity"
    assert isinstance(events[0], DownloadStarted)
    assert events[0].total_size == len(b"image-bytes")
    assert any(isinstance(event, DownloadProgress) for event in events)
    assert events[-1] == DownloadEnded("test", events[0].download_id, len(b"image-bytes"), True)
    assert ctx.connections.for_url(IMAGE_URL).in_use == 0


def test_stable_short_response_accepted_on_second_try(tmp_path, make_download_context):
    handler = CountingHandler(_short_body(b"12345678", advertised=10))
    ctx, _ = make_download_context(handler)
    path = tmp_path / "short.jpg"

    download = FileDownload(ctx, str(path), IMAGE_URL)
    assert download.run() is DownloadResult.COMPLETED
    assert download.tries == 2
    assert len(handler.requests) == 2
    assert path.read_bytes() == b"12345678"


def test_changing_short_responses_exhaust_tries(tmp_path, make_download_context):
    bodies = iter([b"1234", b"123456", b"12345678", b"123"])
    handler = CountingHandler(lambda request: _short_body(next(bodies), advertised=10)(request))
    ctx, _ = make_download_context(handler)
    path = tmp_path / "short.jpg"

    download = FileDownload(ctx, str(path), IMAGE_URL)
    assert download.run() is DownloadResult.RETRY_LATER
    assert download.tries == 3
    assert not path.exists()


def test_stable_hash_mismatch_accepted_on_second_try(tmp_path, make_download_context):
    handler = CountingHandler(_body(b"served-bytes"))
    ctx, _ = make_download_context(handler)
    expected = hashlib.md5(b"other-bytes").digest()

    download = FileDownload(
        ctx, str(tmp_path / "a.jpg"), IMAGE_URL, hash_type=HashType.MD5, expected_hash=expected
    )
    assert download.run() is DownloadResult.COMPLETED
    assert download.tries == 2


def test_differing_corrupt_bytes_exhaust_tries(tmp_path, make_download_context):
    bodies = iter([b"first", b"second", b"third", b"fourth"])
    handler = CountingHandler(lambda request: httpx.Response(200, content=next(bodies)))
    ctx, _ = make_download_context(handler)
    expected = hashlib.sha256(b"correct").digest()

    download = FileDownload(
        ctx, str(tmp_path / "a.jpg"), IMAGE_URL, hash_type=HashType.SHA256, expected_hash=expected
    )
    assert download.run() is DownloadResult.RETRY_LATER
    assert download.tries == 3
    assert len(handler.requests) == 3


def test_matching_hash_completes_first_try(tmp_path, make_download_context):
    handler = CountingHandler(_body(b"correct"))
    ctx, _ = make_download_context(handler)
    download = FileDownload(
        ctx,
        str(tmp_path / "a.jpg"),
        IMAGE_URL,
        hash_type=HashType.SHA1,
        expected_hash=hashlib.sha1(b"correct").digest(),
    )
    assert download.run() is DownloadResult.COMPLETED
    assert download.tries == 1


def test_transient_errors_rotate_connection_then_succeed(tmp_path, make_download_context):
    handler = CountingHandler(_status(503), _body(b"ok"))
    ctx, _ = make_download_context(handler)
    closed: list[str] = []
    controller = ctx.connections.for_url(IMAGE_URL)
    controller._invalidator = closed.append

    download = FileDownload(ctx, str(tmp_path / "a.jpg"), IMAGE_URL)
    assert download.run() is DownloadResult.COMPLETED
    assert download.tries == 2
    assert len(closed) == 1
    assert controller.in_use == 0


def test_transport_error_is_retried(tmp_path, make_download_context):
    def fail_first(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    handler = CountingHandler(fail_first, _body(b"ok"))
    ctx, _ = make_download_context(handler)
    assert FileDownload(ctx, str(tmp_path / "a.jpg"), IMAGE_URL).run() is DownloadResult.COMPLETED
    assert len(handler.requests) == 2


def test_file_not_found_is_skipped_without_retry(tmp_path, make_download_context):
    handler = CountingHandler(_status(404))
    ctx, _ = make_download_context(handler)
    assert FileDownload(ctx, str(tmp_path / "a.jpg"), IMAGE_URL).run() is DownloadResult.SKIPPED
    assert len(handler.requests) == 1


def test_missing_directory_requests_io_error_stop(tmp_path, make_download_context):
    stops: list[StopReason] = []
    handler = CountingHandler(_body(b"data"))
    ctx, _ = make_download_context(handler, request_stop=stops.append)
    path = tmp_path / "missing" / "a.jpg"

    assert FileDownload(ctx, str(path), IMAGE_URL).run() is DownloadResult.SKIPPED
    assert stops == [StopReason.IO_ERROR]


def test_cancelled_download_reports_retry_later(tmp_path, make_download_context):
    handler = CountingHandler(_body(b"data"))
    ctx, _ = make_download_context(handler)
    ctx.cancel_event.set()
    assert FileDownload(ctx, str(tmp_path / "a.jpg"), IMAGE_URL).run() is DownloadResult.RETRY_LATER
    assert handler.requests == []


def test_abort_in_flight_transfer(tmp_path, make_download_context, wait_until):
    entered = threading.Event()
    unblock = threading.Event()

    class SlowStream(httpx.SyncByteStream):
        def __iter__(self):
            yield b"part"
            entered.set()
            unblock.wait(5.0)
            yield b"rest"

    handler = CountingHandler(lambda request: httpx.Response(200, stream=SlowStream()))
    ctx, _ = make_download_context(handler)
    path = tmp_path / "a.jpg"
    download = FileDownload(ctx, str(path), IMAGE_URL)
    results: list[DownloadResult] = []
    runner = threading.Thread(target=lambda: results.append(download.run()))
    runner.start()

    assert entered.wait(5.0)
    assert wait_until(lambda: len(ctx.aborters) == 1)
    ctx.cancel_event.set()
    assert ctx.aborters.abort_all() == 1
    runner.join(5.0)
    unblock.set()

    assert results == [DownloadResult.RETRY_LATER]
    assert download.tries == 1
    assert not path.exists()
    assert ctx.connections.for_url(IMAGE_URL).in_use == 0


def test_page_download_returns_content_and_removes_backup(tmp_path, make_download_context):
    last_modified = "Wed, 21 Oct 2015 07:28:00 GMT"
    handler = CountingHandler(
        _body(
            b"<html><body>new</body></html>",
            **{"Content-Type": "text/html; charset=utf-8", "Last-Modified": last_modified},
        )
    )
    ctx, _ = make_download_context(handler)
    path = tmp_path / "123.html"
    path.write_bytes(b"<html>old</html>")

    fetched = PageDownload(ctx, str(path), PAGE_URL, auth="user:pass").run()

    assert fetched.result is DownloadResult.COMPLETED
    assert fetched.content == "<html><body>new</body></html>"
    assert fetched.encoding == "utf-8"
    assert fetched.last_modified == datetime(2015, 10, 21, 7, 28, tzinfo=timezone.utc)
    assert path.read_bytes() == b"<html><body>new</body></html>"
    assert not (tmp_path / "123.html.bak").exists()
    assert handler.requests[0].headers["Authorization"].startswith("Basic ")


def test_page_failure_restores_backup(tmp_path, make_download_context):
    bodies = iter([b"<ht", b"<html", b"<html><bo"])
    handler = CountingHandler(lambda request: _short_body(next(bodies), advertised=100)(request))
    ctx, _ = make_download_context(handler)
    path = tmp_path / "123.html"
    path.write_bytes(b"<html>old</html>")

    fetched = PageDownload(ctx, str(path), PAGE_URL).run()

    assert fetched.result is DownloadResult.RETRY_LATER
    assert fetched.content is None
    assert path.read_bytes() == b"<html>old</html>"
    assert not (tmp_path / "123.html.bak").exists()


def test_page_not_modified_is_skipped(tmp_path, make_download_context):
    handler = CountingHandler(_status(304))
    ctx, _ = make_download_context(handler)
    path = tmp_path / "123.html"
    path.write_bytes(b"<html>cached</html>")
    since = datetime(2015, 10, 21, 7, 28, tzinfo=timezone.utc)

    fetched = PageDownload(ctx, str(path), PAGE_URL, if_modified_since=since).run()

    assert fetched.result is DownloadResult.SKIPPED
    assert handler.requests[0].headers["If-Modified-Since"] == "Wed, 21 Oct 2015 07:28:00 GMT"
    assert path.read_bytes() == b"<html>cached</html>"


def test_page_not_found_requests_stop(tmp_path, make_download_context):
    stops: list[StopReason] = []
    handler = CountingHandler(_status(404))
    ctx, _ = make_download_context(handler, request_stop=stops.append)

    fetched = PageDownload(ctx, str(tmp_path / "123.html"), PAGE_URL).run()

    assert fetched.result is DownloadResult.SKIPPED
    assert stops == [StopReason.PAGE_NOT_FOUND]


def test_final_transient_failure_does_not_rotate_connection(tmp_path, make_download_context):
    handler = CountingHandler(_status(503))
    ctx, _ = make_download_context(handler)
    closed: list[str] = []
    controller = ctx.connections.for_url(IMAGE_URL)
    controller._invalidator = closed.append

    download = FileDownload(ctx, str(tmp_path / "a.jpg"), IMAGE_URL)
    assert download.run() is DownloadResult.RETRY_LATER
    assert download.tries == 3
    assert len(handler.requests) == 3
    assert len(closed) == 2
    assert controller.in_use == 0


# -- real sockets -------------------------------------------------------------


class _DroppingHandler(socketserver.StreamRequestHandler):
    """Send the headers and part of a body, then close the connection."""

    def handle(self) -> None:
        while self.rfile.readline() not in (b"\r\n", b"\n", b""):
            pass
        self.server.requests += 1
        self.wfile.write(self.server.head + self.server.partial_body)
        self.wfile.flush()


class _DroppingServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, head: bytes, partial_body: bytes) -> None:
        super().__init__(("127.0.0.1", 0), _DroppingHandler)
        self.head = head
        self.partial_body = partial_body
        self.requests = 0

    @property
    def url(self) -> str:
        host, port = self.server_address[:2]
        return f"http://{host}:{port}/b/src/123.jpg"


@pytest.fixture
def dropping_server(monkeypatch):
    """Start loopback servers that cut their responses short."""
    for name in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy"):
        monkeypatch.delenv(name, raising=False)
    servers: list[_DroppingServer] = []

    def factory(head: bytes, partial_body: bytes) -> _DroppingServer:
        server = _DroppingServer(head, partial_body)
        threading.Thread(target=server.serve_forever, daemon=True).start()
        servers.append(server)
        return server

    yield factory
    for server in servers:
        server.shutdown()
        server.server_close()


@pytest.fixture
def socket_download_context():
    clients: list[HttpTransferClient] = []

    def factory() -> DownloadContext:
        client = HttpTransferClient(max_workers=4)
        clients.append(client)
        return DownloadContext(
            client=client,
            connections=ConnectionRegistry(invalidator=client.close_group),
            watcher_id="test",
        )

    yield factory
    for client in clients:
        client.close()


def test_connection_dropped_before_content_length_keeps_partial_bytes(
    tmp_path, dropping_server, socket_download_context
):
    server = dropping_server(
        b"HTTP/1.1 200 OK\r\nContent-Length: 10000\r\nConnection: close\r\n\r\n",
        b"x" * 4000,
    )
    ctx = socket_download_context()
    path = tmp_path / "123.jpg"

    download = FileDownload(ctx, str(path), server.url)
    assert download.run() is DownloadResult.COMPLETED
    assert download.tries == 2
    assert server.requests == 2
    assert path.stat().st_size == 4000
    assert ctx.connections.for_url(server.url).in_use == 0


def test_truncated_chunked_body_is_transient(tmp_path, dropping_server, socket_download_context):
    server = dropping_server(
        b"HTTP/1.1 200 OK\r\nTransfer-Encoding: chunked\r\nConnection: close\r\n\r\n",
        b"fa0\r\n" + b"x" * 1000,
    )
    ctx = socket_download_context()
    path = tmp_path / "123.jpg"

    download = FileDownload(ctx, str(path), server.url)
    assert download.run() is DownloadResult.RETRY_LATER
    assert download.tries == 3
    assert server.requests == 3
    assert not path.exists()
