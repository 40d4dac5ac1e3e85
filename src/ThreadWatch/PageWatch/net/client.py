# === NAVMAP v1 ===
# {
#   "module": "ThreadWatch.PageWatch.net.client",
#   "purpose": "Callback-driven streaming transfers over per-group httpx clients",
#   "sections": [
#     {"id": "transferrequest", "name": "TransferRequest", "anchor": "class-transferrequest", "kind": "dataclass"},
#     {"id": "transferresponse", "name": "TransferResponse", "anchor": "class-transferresponse", "kind": "dataclass"},
#     {"id": "transfercallbacks", "name": "TransferCallbacks", "anchor": "class-transfercallbacks", "kind": "dataclass"},
#     {"id": "httptransferclient", "name": "HttpTransferClient", "anchor": "class-httptransferclient", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Asynchronous HTTP transfers with abort support.

:meth:`HttpTransferClient.start` runs one GET on an executor thread and
reports through callbacks:

    on_response(TransferResponse)   headers received, status is 2xx
    on_chunk(bytes)                 once per body chunk, in order
    on_complete()                   body fully read
    on_failure(TransferFailure)     anything else, exactly once

Exactly one of ``on_complete`` / ``on_failure`` is called per transfer. The
returned abort callable is one-shot and idempotent: the first call reports
``ABORTED`` through ``on_failure`` (unless the transfer already finished) and
closes the response; later calls do nothing. Callbacks run while holding the
transfer's lock, so an abort never interleaves with a chunk being delivered.

**Connection groups:** every connection group id gets its own
``httpx.Client`` limited to one connection. :meth:`close_group` closes that
client, which is what connection rotation uses to drop a suspect socket.

**Timeouts:** ``request_timeout_s`` bounds connecting and waiting for the
response headers; ``read_timeout_s`` bounds each body read. Both surface as
``httpx.TimeoutException`` and are classified TRANSIENT.
"""

from __future__ import annotations

import base64
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import httpx

from ..config.models import HttpSettings
from ..encoding import format_http_date, parse_last_modified
from ..errors import ErrorKind, TransferFailure, classify_status, failure_from_exception

__all__ = [
    "HttpTransferClient",
    "TransferCallbacks",
    "TransferRequest",
    "TransferResponse",
    "basic_auth_header",
]

logger = logging.getLogger(__name__)

_DEFAULT_GROUP = ""


@dataclass(frozen=True)
class TransferRequest:
    """One GET to perform.

    Attributes:
        url: Absolute URL
        connection_group: Connection group id selecting the httpx client
        auth: ``user:password`` for HTTP basic auth
        referer: Value for the ``Referer`` header
        if_modified_since: Makes the request conditional
    """

    url: str
    connection_group: Optional[str] = None
    auth: Optional[str] = None
    referer: Optional[str] = None
    if_modified_since: Optional[datetime] = None


@dataclass(frozen=True)
class TransferResponse:
    status_code: int
    content_length: Optional[int]
    content_type: Optional[str]
    last_modified: Optional[datetime]


@dataclass(frozen=True)
class TransferCallbacks:
    on_response: Callable[[TransferResponse], None]
    on_chunk: Callable[[bytes], None]
    on_complete: Callable[[], None]
    on_failure: Callable[[TransferFailure], None]


def basic_auth_header(auth: str) -> str:
    """``Authorization`` value for ``user:password`` (ISO-8859-1 encoded)."""
    token = base64.b64encode(auth.encode("iso-8859-1")).decode("ascii")
    return f"Basic {token}"


def _content_length(response: httpx.Response) -> Optional[int]:
    if response.headers.get("Content-Encoding", "identity").lower() != "identity":
        return None
    value = response.headers.get("Content-Length")
    if value is None:
        return None
    try:
        length = int(value)
    except ValueError:
        return None
    return length if length >= 0 else None


class _Transfer:
    """State of one running transfer; ``abort`` is handed to the caller."""

    def __init__(
        self,
        owner: "HttpTransferClient",
        request: TransferRequest,
        callbacks: TransferCallbacks,
    ) -> None:
        self._owner = owner
        self._request = request
        self._callbacks = callbacks
        self._lock = threading.Lock()
        self._finished = False
        self._response: Optional[httpx.Response] = None

    def abort(self) -> None:
        with self._lock:
            if self._finished:
                return
            self._finished = True
            response = self._response
            self._callbacks.on_failure(TransferFailure(ErrorKind.ABORTED, "Download has been aborted."))
        if response is not None:
            try:
                response.close()
            except Exception as e:
                logger.debug(f"Error closing aborted response for {self._request.url}: {e}")

    def _fail(self, failure: TransferFailure) -> None:
        with self._lock:
            if self._finished:
                return
            self._finished = True
            self._callbacks.on_failure(failure)

    def _stream_body(self, response: httpx.Response) -> bool:
        """Deliver the body in ``chunk_size`` pieces; False once aborted.

        Pieces are taken as they arrive rather than buffered up to
        ``chunk_size``, so bytes received before a dropped connection are
        still delivered.
        """
        size = self._owner.chunk_size
        for piece in response.iter_bytes():
            for start in range(0, len(piece), size):
                with self._lock:
                    if self._finished:
                        return False
                    self._callbacks.on_chunk(piece[start : start + size])
        return True

    def run(self) -> None:
        request = self._request
        response: Optional[httpx.Response] = None
        try:
            client = self._owner._client_for(request.connection_group)
            http_request = client.build_request("GET", request.url, headers=self._owner.build_headers(request))
            with self._lock:
                if self._finished:
                    return
            response = client.send(http_request, stream=True)
            with self._lock:
                if self._finished:
                    return
                self._response = response

            kind = classify_status(response.status_code)
            if kind is not None:
                self._fail(
                    TransferFailure(
                        kind,
                        f"HTTP {response.status_code} for {request.url}",
                        status_code=response.status_code,
                    )
                )
                return

            info = TransferResponse(
                status_code=response.status_code,
                content_length=_content_length(response),
                content_type=response.headers.get("Content-Type"),
                last_modified=parse_last_modified(response.headers.get("Last-Modified")),
            )
            with self._lock:
                if self._finished:
                    return
                self._callbacks.on_response(info)

            try:
                if not self._stream_body(response):
                    return
            except httpx.RemoteProtocolError as exc:
                # Connection closed before Content-Length bytes arrived. The
                # downloader decides from the byte count whether that is corrupt.
                if info.content_length is None:
                    raise
                logger.debug(f"Body of {request.url} ended early: {exc}")

            with self._lock:
                if self._finished:
                    return
                self._callbacks.on_complete()
                self._finished = True
        except Exception as exc:
            logger.debug(f"Transfer of {request.url} failed: {type(exc).__name__}: {exc}")
            self._fail(failure_from_exception(exc))
        finally:
            if response is not None:
                try:
                    response.close()
                except Exception as e:
                    logger.debug(f"Error closing response for {request.url}: {e}")


class HttpTransferClient:
    """Starts transfers on its own executor threads.

    Args:
        settings: HTTP settings (user agent, timeouts, chunk size, TLS)
        transport: Optional transport shared by every group client; tests pass
            ``httpx.MockTransport`` here
        max_workers: Executor size, i.e. the number of concurrent transfers
    """

    def __init__(
        self,
        settings: Optional[HttpSettings] = None,
        *,
        transport: Optional[httpx.BaseTransport] = None,
        max_workers: int = 64,
    ) -> None:
        self.settings = settings or HttpSettings()
        self.chunk_size = self.settings.chunk_size
        self._transport = transport
        self._lock = threading.Lock()
        self._clients: dict[str, httpx.Client] = {}
        self._closed = False
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="transfer")

    def start(self, request: TransferRequest, callbacks: TransferCallbacks) -> Callable[[], None]:
        """Begin ``request`` in the background; returns its abort callable."""
        transfer = _Transfer(self, request, callbacks)
        self._executor.submit(transfer.run)
        return transfer.abort

    def build_headers(self, request: TransferRequest) -> dict[str, str]:
        headers = {
            "User-Agent": self.settings.user_agent,
            "Accept-Encoding": "identity",
        }
        if request.referer:
            headers["Referer"] = request.referer
        if request.if_modified_since is not None:
            headers["If-Modified-Since"] = format_http_date(request.if_modified_since)
        if request.auth:
            headers["Authorization"] = basic_auth_header(request.auth)
        return headers

    def close_group(self, group_id: str) -> None:
        """Close the client (and its pooled connection) behind ``group_id``."""
        with self._lock:
            client = self._clients.pop(group_id, None)
        if client is not None:
            client.close()
            logger.debug("Closed connection group %s", group_id)

    def close(self) -> None:
        """Close every group client and stop the executor."""
        with self._lock:
            self._closed = True
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            try:
                client.close()
            except Exception as e:
                logger.warning(f"Error closing HTTP client: {e}")
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "HttpTransferClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _client_for(self, group_id: Optional[str]) -> httpx.Client:
        key = group_id if group_id is not None else _DEFAULT_GROUP
        with self._lock:
            if self._closed:
                raise RuntimeError("HttpTransferClient is closed")
            client = self._clients.get(key)
            if client is None:
                client = self._build_client()
                self._clients[key] = client
            return client

    def _build_client(self) -> httpx.Client:
        cfg = self.settings
        timeout = httpx.Timeout(
            connect=cfg.request_timeout_s,
            read=cfg.read_timeout_s,
            write=cfg.request_timeout_s,
            pool=cfg.request_timeout_s,
        )
        transport = self._transport
        if transport is None:
            transport = httpx.HTTPTransport(
                verify=cfg.verify_tls,
                limits=httpx.Limits(max_connections=1, max_keepalive_connections=1),
            )
        return httpx.Client(
            transport=transport,
            timeout=timeout,
            follow_redirects=True,
        )
