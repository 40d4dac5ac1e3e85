# === NAVMAP v1 ===
# {
#   "module": "ThreadWatch.PageWatch.download",
#   "purpose": "Resumable page/file download state machine with corruption-aware retries",
#   "sections": [
#     {"id": "attemptsignature", "name": "AttemptSignature", "anchor": "class-attemptsignature", "kind": "dataclass"},
#     {"id": "abortregistry", "name": "AbortRegistry", "anchor": "class-abortregistry", "kind": "class"},
#     {"id": "downloadcontext", "name": "DownloadContext", "anchor": "class-downloadcontext", "kind": "dataclass"},
#     {"id": "pagedownload", "name": "PageDownload", "anchor": "class-pagedownload", "kind": "class"},
#     {"id": "filedownload", "name": "FileDownload", "anchor": "class-filedownload", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Download state machine for pages and files.

One logical download walks through:

    Requesting → Streaming → Verifying → {Completed | Skipped | RetryLater}

Each try is one transfer on :class:`~ThreadWatch.PageWatch.net.HttpTransferClient`.
The calling thread (a pool worker) blocks on the try's completion event and
then decides what the outcome means. Tries are driven by ``tenacity.Retrying``:
stop after ``max_tries`` or once the watcher's cancel event is set, retry
while the outcome is retryable, no wait between tries.

**Stability checks.** Servers sometimes serve the same wrong bytes every
time. After a complete body, a try is *corrupt* when

- a Content-Length was sent and the byte count differs, unless it equals the
  byte count of the previous corrupt try, or
- (files) an expected digest was given and the computed one differs, unless
  it equals the digest of the previous corrupt try.

So a consistently short or consistently mismatching response is accepted on
the second try instead of using up every try, even though the server
claims it is wrong.

**Failure handling.** Corrupt and transient tries are retried, rotating the
connection group first when another try follows. 304 and 404 end as
Skipped (a page 404 also asks the watcher to stop with ``PAGE_NOT_FOUND``).
Too-long paths end as Skipped; a missing or unwritable directory asks the
watcher to stop with ``IO_ERROR``. Aborted tries and exhausted tries end as
RetryLater.

**Pages** are written over the previous copy, which is first renamed to
``<path>.bak`` and put back if the try fails. The backup is removed once the
page completes.
"""

from __future__ import annotations

import hashlib
import itertools
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, BinaryIO, Callable, Optional

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_result,
    stop_after_attempt,
    stop_when_event_set,
    wait_none,
)

from .connections import ConnectionAdmissionController, ConnectionRegistry
from .encoding import decode_page
from .errors import ErrorKind, TransferFailure
from .events import DownloadEnded, DownloadProgress, DownloadStarted, StatusEvent
from .models import DownloadResult, HashType, StopReason
from .net.client import HttpTransferClient, TransferCallbacks, TransferRequest, TransferResponse

__all__ = [
    "AbortRegistry",
    "AttemptSignature",
    "DEFAULT_MAX_TRIES",
    "DownloadContext",
    "FileDownload",
    "PageDownload",
    "PageDownloadResult",
]

logger = logging.getLogger(__name__)

DEFAULT_MAX_TRIES = 3

_download_ids = itertools.count(1)


@dataclass(frozen=True)
class AttemptSignature:
    """Observed outcome of a corrupt try, compared against the next try."""

    size: int
    digest: Optional[bytes] = None


class AbortRegistry:
    """Abort callables of a watcher's in-flight transfers, keyed by download id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._aborters: dict[int, Callable[[], None]] = {}

    def add(self, download_id: int, abort: Callable[[], None]) -> None:
        with self._lock:
            self._aborters[download_id] = abort

    def remove(self, download_id: int) -> None:
        with self._lock:
            self._aborters.pop(download_id, None)

    def abort_all(self) -> int:
        """Invoke every registered abort; returns how many were called."""
        with self._lock:
            aborters = list(self._aborters.values())
        for abort in aborters:
            abort()
        return len(aborters)

    def __len__(self) -> int:
        with self._lock:
            return len(self._aborters)


def _ignore_stop(reason: StopReason) -> None:
    logger.debug("Stop requested with no watcher attached: %s", reason.value)


def _drop_event(event: StatusEvent) -> None:
    pass


@dataclass
class DownloadContext:
    """Collaborators shared by every download of one watcher.

    Attributes:
        client: Transfer client used for every try
        connections: Per-host admission controllers
        publish: Sink for status events
        watcher_id: Tag put on published events
        cancel_event: Set when the watcher stops
        aborters: In-flight transfer aborts, invoked on stop
        request_stop: Asks the owning watcher to stop
        max_tries: Try cap per logical download
    """

    client: HttpTransferClient
    connections: ConnectionRegistry
    publish: Callable[[StatusEvent], None] = _drop_event
    watcher_id: str = ""
    cancel_event: threading.Event = field(default_factory=threading.Event)
    aborters: AbortRegistry = field(default_factory=AbortRegistry)
    request_stop: Callable[[StopReason], None] = _ignore_stop
    max_tries: int = DEFAULT_MAX_TRIES


@dataclass
class _Attempt:
    download_id: int
    try_number: int
    total_size: Optional[int] = None
    transferred: int = 0
    content_type: Optional[str] = None
    last_modified: Optional[datetime] = None
    stream: Optional[BinaryIO] = None
    created_file: bool = False
    backed_up: bool = False
    buffer: Optional[bytearray] = None
    hasher: Any = None
    failure: Optional[TransferFailure] = None
    done: threading.Event = field(default_factory=threading.Event)


@dataclass(frozen=True)
class _Outcome:
    """What one try concluded; ``retryable`` outcomes feed the next try."""

    result: DownloadResult
    retryable: bool = False
    error: Optional[ErrorKind] = None


@dataclass(frozen=True)
class PageDownloadResult:
    result: DownloadResult
    content: Optional[str] = None
    last_modified: Optional[datetime] = None
    encoding: Optional[str] = None


class _Download:
    """Shared try loop; subclasses supply per-try file handling and verification."""

    def __init__(
        self,
        ctx: DownloadContext,
        path: str,
        url: str,
        *,
        auth: Optional[str] = None,
        referer: Optional[str] = None,
    ) -> None:
        self._ctx = ctx
        self.path = path
        self.url = url
        self.auth = auth
        self.referer = referer
        self.tries = 0
        self.previous: Optional[AttemptSignature] = None
        self._controller: ConnectionAdmissionController = ctx.connections.for_url(url)
        self._group: Optional[str] = None

    def admit(self) -> None:
        """Check out a connection group, blocking while the host is at its cap."""
        if self._group is None:
            self._group = self._controller.obtain()

    def _run(self) -> _Outcome:
        self.admit()
        try:
            retrying = Retrying(
                stop=stop_after_attempt(self._ctx.max_tries) | stop_when_event_set(self._ctx.cancel_event),
                retry=retry_if_result(lambda outcome: outcome.retryable),
                wait=wait_none(),
                retry_error_callback=self._give_up,
            )
            outcome = retrying(self._attempt)
        finally:
            if self._group is not None:
                self._controller.release(self._group)
                self._group = None
        if outcome.retryable:
            return _Outcome(DownloadResult.RETRY_LATER, error=outcome.error)
        return outcome

    def _give_up(self, state: RetryCallState) -> _Outcome:
        logger.info(f"Giving up on {self.url} after {state.attempt_number} tries")
        return state.outcome.result()

    def _attempt(self) -> _Outcome:
        if self._ctx.cancel_event.is_set():
            return _Outcome(DownloadResult.RETRY_LATER, error=ErrorKind.ABORTED)

        self.tries += 1
        attempt = _Attempt(download_id=next(_download_ids), try_number=self.tries)
        callbacks = TransferCallbacks(
            on_response=lambda response: self._on_response(attempt, response),
            on_chunk=lambda chunk: self._on_chunk(attempt, chunk),
            on_complete=lambda: self._on_end(attempt, None),
            on_failure=lambda failure: self._on_end(attempt, failure),
        )
        abort = self._ctx.client.start(self._request(), callbacks)
        self._ctx.aborters.add(attempt.download_id, abort)
        if self._ctx.cancel_event.is_set():
            abort()
        attempt.done.wait()
        self._ctx.aborters.remove(attempt.download_id)
        return self._conclude(attempt)

    def _request(self) -> TransferRequest:
        return TransferRequest(
            url=self.url,
            connection_group=self._group,
            auth=self.auth,
            referer=self.referer,
        )

    # -- transfer callbacks (run on the transfer thread) -------------------

    def _on_response(self, attempt: _Attempt, response: TransferResponse) -> None:
        self._prepare_destination(attempt)
        attempt.stream = open(self.path, "wb")
        attempt.created_file = True
        attempt.total_size = response.content_length
        attempt.content_type = response.content_type
        attempt.last_modified = response.last_modified
        self._begin(attempt)
        self._ctx.publish(
            DownloadStarted(
                self._ctx.watcher_id,
                attempt.download_id,
                self.url,
                attempt.try_number,
                attempt.total_size,
            )
        )

    def _on_chunk(self, attempt: _Attempt, chunk: bytes) -> None:
        attempt.stream.write(chunk)
        if attempt.buffer is not None:
            attempt.buffer.extend(chunk)
        if attempt.hasher is not None:
            attempt.hasher.update(chunk)
        attempt.transferred += len(chunk)
        self._ctx.publish(DownloadProgress(self._ctx.watcher_id, attempt.download_id, attempt.transferred))

    def _on_end(self, attempt: _Attempt, failure: Optional[TransferFailure]) -> None:
        attempt.failure = failure
        if attempt.stream is not None:
            try:
                attempt.stream.close()
            except OSError as e:
                logger.warning(f"Error closing {self.path}: {e}")
        attempt.done.set()

    # -- verification (runs on the downloading thread) ---------------------

    def _conclude(self, attempt: _Attempt) -> _Outcome:
        if attempt.failure is None:
            digest = attempt.hasher.digest() if attempt.hasher is not None else None
            if not self._is_corrupt(attempt, digest):
                self._ctx.publish(DownloadEnded(self._ctx.watcher_id, attempt.download_id, attempt.transferred, True))
                return self._complete(attempt)
            logger.info(
                f"Corrupt download of {self.url} (try {attempt.try_number}): "
                f"{attempt.transferred} of {attempt.total_size} bytes"
            )
            self.previous = AttemptSignature(attempt.transferred, digest)
            attempt.failure = TransferFailure(ErrorKind.CORRUPT, "Download is corrupt.")

        self._discard(attempt)
        self._ctx.publish(DownloadEnded(self._ctx.watcher_id, attempt.download_id, attempt.transferred, False))
        return self._classify(attempt.failure)

    def _is_corrupt(self, attempt: _Attempt, digest: Optional[bytes]) -> bool:
        previous = self.previous
        incomplete = (
            attempt.total_size is not None
            and attempt.transferred != attempt.total_size
            and (previous is None or attempt.transferred != previous.size)
        )
        return incomplete or self._is_wrong_hash(digest)

    def _is_wrong_hash(self, digest: Optional[bytes]) -> bool:
        return False

    def _classify(self, failure: TransferFailure) -> _Outcome:
        kind = failure.kind
        if kind is ErrorKind.NOT_MODIFIED:
            return _Outcome(DownloadResult.SKIPPED, error=kind)
        if kind is ErrorKind.NOT_FOUND:
            self._on_not_found()
            return _Outcome(DownloadResult.SKIPPED, error=kind)
        if kind is ErrorKind.PATH_TOO_LONG:
            logger.warning(f"Path too long, skipping {self.url}: {self.path}")
            return _Outcome(DownloadResult.SKIPPED, error=kind)
        if kind is ErrorKind.IO_FATAL:
            logger.error(f"Cannot write {self.path}: {failure.message}")
            self._ctx.request_stop(StopReason.IO_ERROR)
            return _Outcome(DownloadResult.SKIPPED, error=kind)
        if kind is ErrorKind.ABORTED:
            return _Outcome(DownloadResult.RETRY_LATER, error=kind)

        logger.debug(f"Retryable failure for {self.url}: {kind.value}: {failure.message}")
        if self._group is not None and self._has_tries_left():
            self._group = self._controller.rotate(self._group, self.url)
        return _Outcome(DownloadResult.RETRY_LATER, retryable=True, error=kind)

    def _has_tries_left(self) -> bool:
        return self.tries < self._ctx.max_tries and not self._ctx.cancel_event.is_set()

    def _discard(self, attempt: _Attempt) -> None:
        if not attempt.created_file:
            return
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove partial file {self.path}: {e}")

    # -- subclass hooks -----------------------------------------------------

    def _prepare_destination(self, attempt: _Attempt) -> None:
        pass

    def _begin(self, attempt: _Attempt) -> None:
        pass

    def _on_not_found(self) -> None:
        pass

    def _complete(self, attempt: _Attempt) -> _Outcome:
        return _Outcome(DownloadResult.COMPLETED)


class PageDownload(_Download):
    """Fetch a watched page, keeping a ``.bak`` of the previous copy.

    Args:
        ctx: Shared download collaborators
        path: Destination file
        url: Page URL
        auth: ``user:password`` for basic auth
        if_modified_since: Cached Last-Modified time for a conditional fetch
    """

    def __init__(
        self,
        ctx: DownloadContext,
        path: str,
        url: str,
        *,
        auth: Optional[str] = None,
        if_modified_since: Optional[datetime] = None,
    ) -> None:
        super().__init__(ctx, path, url, auth=auth)
        self.if_modified_since = if_modified_since
        self.backup_path = path + ".bak"
        self._content: Optional[str] = None
        self._encoding: Optional[str] = None
        self._last_modified: Optional[datetime] = None

    def run(self) -> PageDownloadResult:
        outcome = self._run()
        if outcome.result is DownloadResult.COMPLETED:
            return PageDownloadResult(
                DownloadResult.COMPLETED,
                content=self._content,
                last_modified=self._last_modified,
                encoding=self._encoding,
            )
        return PageDownloadResult(outcome.result)

    def _request(self) -> TransferRequest:
        return TransferRequest(
            url=self.url,
            connection_group=self._group,
            auth=self.auth,
            if_modified_since=self.if_modified_since,
        )

    def _prepare_destination(self, attempt: _Attempt) -> None:
        if os.path.exists(self.path):
            if os.path.exists(self.backup_path):
                os.remove(self.backup_path)
            os.replace(self.path, self.backup_path)
            attempt.backed_up = True

    def _begin(self, attempt: _Attempt) -> None:
        attempt.buffer = bytearray()

    def _on_not_found(self) -> None:
        logger.info(f"Page not found: {self.url}")
        self._ctx.request_stop(StopReason.PAGE_NOT_FOUND)

    def _discard(self, attempt: _Attempt) -> None:
        super()._discard(attempt)
        if attempt.backed_up:
            try:
                os.replace(self.backup_path, self.path)
            except OSError as e:
                logger.warning(f"Could not restore backup {self.backup_path}: {e}")

    def _complete(self, attempt: _Attempt) -> _Outcome:
        try:
            os.remove(self.backup_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove backup {self.backup_path}: {e}")
        self._content, self._encoding = decode_page(bytes(attempt.buffer or b""), attempt.content_type)
        self._last_modified = attempt.last_modified
        return _Outcome(DownloadResult.COMPLETED)


class FileDownload(_Download):
    """Fetch an image or thumbnail, optionally verifying its digest.

    Args:
        ctx: Shared download collaborators
        path: Destination file
        url: File URL
        auth: ``user:password`` for basic auth
        referer: ``Referer`` header value
        hash_type: Digest algorithm of ``expected_hash``
        expected_hash: Digest the file should have
    """

    def __init__(
        self,
        ctx: DownloadContext,
        path: str,
        url: str,
        *,
        auth: Optional[str] = None,
        referer: Optional[str] = None,
        hash_type: HashType = HashType.NONE,
        expected_hash: Optional[bytes] = None,
    ) -> None:
        super().__init__(ctx, path, url, auth=auth, referer=referer)
        if expected_hash is None:
            hash_type = HashType.NONE
        self.hash_type = hash_type
        self.expected_hash = expected_hash

    def run(self) -> DownloadResult:
        return self._run().result

    def _begin(self, attempt: _Attempt) -> None:
        if self.hash_type is not HashType.NONE:
            attempt.hasher = hashlib.new(self.hash_type.value)

    def _is_wrong_hash(self, digest: Optional[bytes]) -> bool:
        if self.hash_type is HashType.NONE or digest is None:
            return False
        previous = self.previous
        return digest != self.expected_hash and (previous is None or digest != previous.digest)
