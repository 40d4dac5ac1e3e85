# === NAVMAP v1 ===
# {
#   "module": "ThreadWatch.PageWatch.watcher",
#   "purpose": "Periodic watch cycle: fetch pages, fan out downloads, rewrite saved pages",
#   "sections": [
#     {"id": "watchtarget", "name": "WatchTarget", "anchor": "class-watchtarget", "kind": "model"},
#     {"id": "pagewatcher", "name": "PageWatcher", "anchor": "class-pagewatcher", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Watch cycle for one watched page.

A :class:`PageWatcher` schedules a *check* on the engine's timed scheduler,
under the pool group of the page host. Each check:

1. Initialises bookkeeping on the first run and creates the download
   directory. A directory that cannot be created stops the watcher with
   ``IO_ERROR``.
2. Walks the page list (pagination comes from the extractor's
   ``next_page_url``), fetching each page conditionally unless a previous check
   left retries pending, then extracts images and thumbnails. On the first run
   files already on disk are counted as completed.
3. Fans image and then thumbnail downloads out to the pool of each file's
   host. Admission to the host is obtained before the pool submission so a
   busy host throttles the fan-out instead of filling the pool.
4. Rewrites freshly downloaded pages so their links point at the local files,
   unless the watcher is stopping because of an IO error.
5. Stops one-time watchers with ``DOWNLOAD_COMPLETE``.

An unexpected exception inside a check is logged and stops this watcher with
``OTHER``; other watchers and the scheduler are unaffected. ``StopStatus`` is
published exactly once per stop, either by :meth:`PageWatcher.stop` when no
check is running or at the end of the running check.
"""

from __future__ import annotations

import html
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Callable, ClassVar, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field

from ..concurrency import WorkItem, now_ticks, ticks_until
from .download import DownloadContext, FileDownload, PageDownload
from .encoding import DEFAULT_ENCODING
from .engine import EngineContext
from .events import DownloadStatus, FoundNewImage, StopStatus, WaitStatus
from .extractors import global_thread_id, thread_name
from .files import (
    atomic_write_text,
    clean_file_name,
    effective_file_name,
    file_name_length_limit,
    relative_path,
    unique_file_name,
)
from .html import HtmlParser, add_other_replacements, apply_replacements
from .models import (
    DownloadInfo,
    DownloadKind,
    DownloadResult,
    HashType,
    ImageInfo,
    PageInfo,
    ReplaceKind,
    StopReason,
    ThumbnailInfo,
)

__all__ = ["PageWatcher", "WatchTarget"]

logger = logging.getLogger(__name__)

THUMBNAIL_DIR_NAME = "thumbs"


class WatchTarget(BaseModel):
    """Persistable description of a watcher, produced by :meth:`PageWatcher.snapshot`."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    page_url: str = Field(description="Watched page URL")
    global_id: str = Field(description="site_board_thread identifier")
    added_on: datetime = Field(description="When the watcher was created (UTC)")
    page_auth: Optional[str] = Field(default=None, description="user:password for the page")
    image_auth: Optional[str] = Field(default=None, description="user:password for images")
    use_original_file_names: bool = Field(default=False)
    one_time: bool = Field(default=False, description="Stop after the first complete check")
    check_interval_s: int = Field(description="Seconds between checks")
    download_dir: str = Field(description="Directory pages and images are saved to")
    description: str = Field(default="")
    last_image_on: Optional[datetime] = Field(default=None)
    stop_reason: Optional[StopReason] = Field(
        default=None, description="Set when the watcher was stopped for a reason other than exiting"
    )


class _Counts:
    def __init__(self, completed: int, total: int) -> None:
        self.completed = completed
        self.total = total


def _host(url: str) -> str:
    return (urlsplit(url).hostname or "").lower()


class PageWatcher:
    """Watch one page, downloading what it links to on every check.

    Args:
        engine: Shared registries (scheduler, pools, client, events)
        page_url: Page to watch
        page_auth: ``user:password`` for the page and thumbnails
        image_auth: ``user:password`` for full-size images
        one_time: Stop with ``DOWNLOAD_COMPLETE`` after the first check
        check_interval_seconds: Seconds between checks (clamped to the minimum)
        download_dir: Directory to save into; defaults to
            ``<watch.download_dir>/<site_board_thread>``
    """

    def __init__(
        self,
        engine: EngineContext,
        page_url: str,
        *,
        page_auth: Optional[str] = None,
        image_auth: Optional[str] = None,
        one_time: Optional[bool] = None,
        check_interval_seconds: Optional[int] = None,
        download_dir: Optional[str] = None,
        use_original_file_names: Optional[bool] = None,
        description: Optional[str] = None,
        added_on: Optional[datetime] = None,
        last_image_on: Optional[datetime] = None,
    ) -> None:
        config = engine.config
        self._engine = engine
        self.page_url = page_url
        self.page_host = _host(page_url)
        self.global_id = global_thread_id(page_url)
        self.added_on = added_on or datetime.now(timezone.utc)
        self.page_auth = page_auth
        self.image_auth = image_auth
        self.one_time = config.watch.one_time if one_time is None else one_time
        self.use_original_file_names = (
            config.download.use_original_file_names if use_original_file_names is None else use_original_file_names
        )
        self.min_check_interval_seconds = config.watch.min_check_interval_s
        self.description = description or self.global_id
        self.last_image_on = last_image_on
        self.download_dir = download_dir or os.path.join(
            config.watch.download_dir, clean_file_name(self.global_id)
        )
        self.page_base_file_name = clean_file_name(thread_name(page_url)) or "index"

        self._lock = threading.RLock()
        self._files_lock = threading.Lock()
        self._check_interval_seconds = max(
            config.watch.check_interval_s if check_interval_seconds is None else check_interval_seconds,
            self.min_check_interval_seconds,
        )
        self._next_check_ticks = 0
        self._next_item: Optional[WorkItem] = None
        self._check_finished = threading.Event()
        self._check_finished.set()
        self._stopped = threading.Event()
        self._stopped.set()
        self._stopping = False
        self._stop_reason = StopReason.OTHER
        self._waiting = False
        self._initialized = False

        self._cancel_event = threading.Event()
        self._downloads = DownloadContext(
            client=engine.client,
            connections=engine.connections,
            publish=engine.events.publish,
            watcher_id=self.global_id,
            cancel_event=self._cancel_event,
            request_stop=self.stop,
            max_tries=config.download.max_tries,
        )

        self._pages: list[PageInfo] = []
        self._image_disk_names: set[str] = set()
        self._completed_images: dict[str, DownloadInfo] = {}
        self._completed_thumbs: dict[str, DownloadInfo] = {}
        self._any_pending_retries = False
        self._image_name_limit: Optional[int] = None

    @classmethod
    def from_target(cls, engine: EngineContext, target: WatchTarget) -> "PageWatcher":
        """Recreate a watcher from a snapshot; a recorded stop reason is re-applied."""
        watcher = cls(
            engine,
            target.page_url,
            page_auth=target.page_auth,
            image_auth=target.image_auth,
            one_time=target.one_time,
            check_interval_seconds=target.check_interval_s,
            download_dir=target.download_dir,
            use_original_file_names=target.use_original_file_names,
            description=target.description,
            added_on=target.added_on,
            last_image_on=target.last_image_on,
        )
        if target.stop_reason is not None:
            watcher.stop(target.stop_reason)
        return watcher

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def image_dir(self) -> str:
        return self.download_dir

    @property
    def thumbnail_dir(self) -> str:
        return os.path.join(self.download_dir, THUMBNAIL_DIR_NAME)

    @property
    def is_running(self) -> bool:
        with self._lock:
            return not self._check_finished.is_set() or self._next_item is not None

    @property
    def is_waiting(self) -> bool:
        with self._lock:
            return self._waiting

    @property
    def is_stopping(self) -> bool:
        with self._lock:
            return self._stopping

    @property
    def stop_reason(self) -> StopReason:
        with self._lock:
            return self._stop_reason

    @property
    def check_interval_seconds(self) -> int:
        with self._lock:
            return self._check_interval_seconds

    @check_interval_seconds.setter
    def check_interval_seconds(self, value: int) -> None:
        with self._lock:
            value = max(value, self.min_check_interval_seconds)
            change = value - self._check_interval_seconds
            self._check_interval_seconds = value
            self._set_next_check_ticks(self._next_check_ticks + change * 1000)

    @property
    def ms_until_next_check(self) -> int:
        with self._lock:
            return ticks_until(self._next_check_ticks)

    @ms_until_next_check.setter
    def ms_until_next_check(self, value: int) -> None:
        with self._lock:
            self._set_next_check_ticks(now_ticks() + value)

    def _set_next_check_ticks(self, ticks: int) -> None:
        self._next_check_ticks = ticks
        if self._next_item is not None:
            self._next_item.due_ticks = ticks

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Schedule an immediate check.

        Raises:
            RuntimeError: If the watcher is already running
        """
        with self._lock:
            if self.is_running:
                raise RuntimeError("The watcher is already running.")
            self._stopping = False
            self._stop_reason = StopReason.OTHER
            self._initialized = False
            self._cancel_event.clear()
            self._stopped.clear()
            self._next_item = self._engine.scheduler.schedule(now_ticks(), self._check, self.page_host)
        logger.info(f"Watching {self.page_url} every {self.check_interval_seconds}s")

    def stop(self, reason: StopReason) -> None:
        """Stop watching; in-flight downloads of a running check are aborted.

        Only the first call has an effect.
        """
        with self._lock:
            if self._stopping:
                return
            self._stopping = True
            self._stop_reason = reason
            self._cancel_event.set()
            if self._next_item is not None:
                self._next_item.cancel()
                self._next_item = None
            check_finished = self._check_finished.is_set()
            if check_finished:
                self._waiting = False
        logger.info(f"Stopping watcher for {self.page_url}: {reason.value}")
        if check_finished:
            self._publish_stop()
        else:
            aborted = self._downloads.aborters.abort_all()
            logger.debug(f"Aborted {aborted} in-flight downloads for {self.page_url}")

    def wait_until_stopped(self, timeout: Optional[float] = None) -> bool:
        """Block until the watcher has stopped and no check is running."""
        return self._stopped.wait(timeout)

    def snapshot(self) -> WatchTarget:
        with self._lock:
            stop_reason = None
            if self._stopping and self._stop_reason is not StopReason.EXITING:
                stop_reason = self._stop_reason
            return WatchTarget(
                page_url=self.page_url,
                global_id=self.global_id,
                added_on=self.added_on,
                page_auth=self.page_auth,
                image_auth=self.image_auth,
                use_original_file_names=self.use_original_file_names,
                one_time=self.one_time,
                check_interval_s=self._check_interval_seconds,
                download_dir=self.download_dir,
                description=self.description,
                last_image_on=self.last_image_on,
                stop_reason=stop_reason,
            )

    def _publish_stop(self) -> None:
        self._engine.events.publish(StopStatus(self.global_id, self.stop_reason))
        self._stopped.set()

    # ------------------------------------------------------------------
    # Check cycle
    # ------------------------------------------------------------------

    def _check(self) -> None:
        with self._lock:
            self._next_item = None
            if self._stopping:
                return
            self._check_finished.clear()
            self._waiting = False
            first_run = not self._initialized
            if first_run:
                self._pages = [PageInfo(self.page_url)]
                self._image_disk_names = set()
                self._completed_images = {}
                self._completed_thumbs = {}
                self._image_name_limit = None
                self._initialized = True

        try:
            if self._create_directory(self.download_dir):
                self._run_check()
        except Exception:
            logger.exception(f"Check of {self.page_url} failed")
            self.stop(StopReason.OTHER)

        with self._lock:
            self._check_finished.set()
            if not self._stopping:
                self._next_item = self._engine.scheduler.schedule(
                    self._next_check_ticks, self._check, self.page_host
                )
                self._waiting = ticks_until(self._next_check_ticks) > 0
            stopping = self._stopping
            waiting = self._waiting
        if stopping:
            self._publish_stop()
        elif waiting:
            self._engine.events.publish(WaitStatus(self.global_id, self.ms_until_next_check))

    def _create_directory(self, path: str) -> bool:
        try:
            os.makedirs(path, exist_ok=True)
        except OSError as e:
            logger.error(f"Cannot create download directory {path}: {e}")
            self.stop(StopReason.IO_ERROR)
            return False
        return True

    def _run_check(self) -> None:
        settings = self._engine.config.download
        publish = self._engine.events.publish
        pending_images: list[ImageInfo] = []
        pending_thumbs: list[ThumbnailInfo] = []

        for page in self._pages:
            page.is_fresh = False

        page_index = 0
        any_page_skipped = False
        publish(DownloadStatus(self.global_id, DownloadKind.PAGE, 0, len(self._pages)))
        while page_index < len(self._pages) and not self.is_stopping:
            suffix = "" if page_index == 0 else f"_{page_index + 1}"
            page = self._pages[page_index]
            page.path = os.path.join(self.download_dir, f"{self.page_base_file_name}{suffix}.html")

            download = PageDownload(
                self._downloads,
                page.path,
                page.url,
                auth=self.page_auth,
                if_modified_since=None if self._any_pending_retries else page.cache_time,
            )
            fetched = download.run()
            if fetched.result is DownloadResult.COMPLETED:
                page.is_fresh = True
                page.cache_time = fetched.last_modified
                page.encoding = fetched.encoding
                page.replacements = [] if settings.save_thumbnails else None
                self._process_page(page, HtmlParser(fetched.content or ""), page_index, pending_images, pending_thumbs)
            else:
                any_page_skipped = True

            page_index += 1
            publish(DownloadStatus(self.global_id, DownloadKind.PAGE, page_index, len(self._pages)))

        if not any_page_skipped:
            self._any_pending_retries = False

        self.ms_until_next_check = self.check_interval_seconds * 1000

        if pending_images and not self.is_stopping:
            self.last_image_on = datetime.now(timezone.utc)
            publish(FoundNewImage(self.global_id))
            self._download_images(pending_images)

        if settings.save_thumbnails:
            if pending_thumbs and not self.is_stopping:
                self._download_thumbnails(pending_thumbs)
            if not self.is_stopping or self.stop_reason is not StopReason.IO_ERROR:
                for page in self._pages:
                    if page.is_fresh:
                        self._rewrite_page(page)

        if self.one_time:
            self.stop(StopReason.DOWNLOAD_COMPLETE)

    def _process_page(
        self,
        page: PageInfo,
        parser: HtmlParser,
        page_index: int,
        pending_images: list[ImageInfo],
        pending_thumbs: list[ThumbnailInfo],
    ) -> None:
        extraction = self._engine.extractors.create(page.url).extract(parser, page.url)
        if page.replacements is not None:
            page.replacements.extend(extraction.replacements)

        if not self._completed_images:
            self._mark_existing_files(extraction.images, extraction.thumbnails)

        pending_image_names = {image.file_name.lower() for image in pending_images}
        for image in extraction.images:
            key = image.file_name.lower()
            if key in self._completed_images or key in pending_image_names:
                continue
            pending_image_names.add(key)
            pending_images.append(image)
        pending_thumb_names = {thumb.file_name.lower() for thumb in pending_thumbs}
        for thumb in extraction.thumbnails:
            key = thumb.file_name.lower()
            if key in self._completed_thumbs or key in pending_thumb_names:
                continue
            pending_thumb_names.add(key)
            pending_thumbs.append(thumb)

        next_page_url = extraction.next_page_url
        if next_page_url:
            next_page = PageInfo(next_page_url)
            if page_index == len(self._pages) - 1:
                self._pages.append(next_page)
            elif self._pages[page_index + 1].url != next_page_url:
                self._pages[page_index + 1] = next_page
        elif page_index < len(self._pages) - 1:
            del self._pages[page_index + 1 :]

    def _mark_existing_files(self, images: list[ImageInfo], thumbnails: list[ThumbnailInfo]) -> None:
        if images:
            os.makedirs(self.image_dir, exist_ok=True)
            if self._image_name_limit is None:
                self._image_name_limit = file_name_length_limit(self.image_dir)
        if thumbnails:
            os.makedirs(self.thumbnail_dir, exist_ok=True)
        with self._files_lock:
            for image in images:
                name = unique_file_name(self._image_file_name(image), self._image_disk_names, peek=True)
                if os.path.exists(os.path.join(self.image_dir, name)):
                    self._image_disk_names.add(name.lower())
                    self._completed_images[image.file_name.lower()] = DownloadInfo(name)
            for thumb in thumbnails:
                if os.path.exists(os.path.join(self.thumbnail_dir, thumb.file_name)):
                    self._completed_thumbs[thumb.file_name.lower()] = DownloadInfo(thumb.file_name)

    def _image_file_name(self, image: ImageInfo) -> str:
        return effective_file_name(
            image.file_name,
            image.clean_original_file_name,
            use_original=self.use_original_file_names,
            force_original=image.force_original_file_name,
            max_length=self._image_name_limit,
        )

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def _fan_out(self, download: FileDownload, on_result: Callable[[DownloadResult], None]) -> threading.Event:
        done = threading.Event()
        download.admit()

        def action() -> None:
            result = DownloadResult.RETRY_LATER
            try:
                result = download.run()
            except Exception:
                logger.exception(f"Download of {download.url} failed")
            finally:
                try:
                    on_result(result)
                finally:
                    done.set()

        self._engine.pools.submit(_host(download.url), action)
        return done

    def _download_images(self, pending: list[ImageInfo]) -> None:
        verify = self._engine.config.download.verify_hashes
        with self._files_lock:
            completed = sum(1 for info in self._completed_images.values() if not info.skipped)
        counts = _Counts(completed, completed + len(pending))
        self._publish_counts(DownloadKind.IMAGE, counts)

        done_events = []
        for image in pending:
            if self.is_stopping:
                break
            with self._files_lock:
                name = unique_file_name(self._image_file_name(image), self._image_disk_names)
            download = FileDownload(
                self._downloads,
                os.path.join(self.image_dir, name),
                image.url,
                auth=self.image_auth,
                referer=image.referer,
                hash_type=image.hash_type if verify else HashType.NONE,
                expected_hash=image.hash,
            )

            def on_result(result: DownloadResult, image: ImageInfo = image, name: str = name) -> None:
                with self._files_lock:
                    if result is not DownloadResult.RETRY_LATER:
                        skipped = result is DownloadResult.SKIPPED
                        self._completed_images[image.file_name.lower()] = DownloadInfo(name, skipped=skipped)
                        if skipped:
                            counts.total -= 1
                        else:
                            counts.completed += 1
                        self._publish_counts(DownloadKind.IMAGE, counts)
                    if result is not DownloadResult.COMPLETED:
                        self._image_disk_names.discard(name.lower())
                        if result is DownloadResult.RETRY_LATER:
                            self._any_pending_retries = True

            done_events.append(self._fan_out(download, on_result))

        for done in done_events:
            done.wait()

    def _download_thumbnails(self, pending: list[ThumbnailInfo]) -> None:
        with self._files_lock:
            completed = sum(1 for info in self._completed_thumbs.values() if not info.skipped)
        counts = _Counts(completed, completed + len(pending))
        self._publish_counts(DownloadKind.THUMBNAIL, counts)

        done_events = []
        for thumb in pending:
            if self.is_stopping:
                break
            download = FileDownload(
                self._downloads,
                os.path.join(self.thumbnail_dir, thumb.file_name),
                thumb.url,
                auth=self.page_auth,
                referer=thumb.referer,
            )

            def on_result(result: DownloadResult, thumb: ThumbnailInfo = thumb) -> None:
                if result is DownloadResult.RETRY_LATER:
                    return
                with self._files_lock:
                    skipped = result is DownloadResult.SKIPPED
                    self._completed_thumbs[thumb.file_name.lower()] = DownloadInfo(thumb.file_name, skipped=skipped)
                    if skipped:
                        counts.total -= 1
                    else:
                        counts.completed += 1
                    self._publish_counts(DownloadKind.THUMBNAIL, counts)

            done_events.append(self._fan_out(download, on_result))

        for done in done_events:
            done.wait()

    def _publish_counts(self, kind: DownloadKind, counts: _Counts) -> None:
        self._engine.events.publish(DownloadStatus(self.global_id, kind, counts.completed, counts.total))

    # ------------------------------------------------------------------
    # Rewriting
    # ------------------------------------------------------------------

    def _rewrite_page(self, page: PageInfo) -> None:
        encoding = page.encoding or DEFAULT_ENCODING
        with open(page.path, encoding=encoding, errors="replace", newline="") as f:
            parser = HtmlParser(f.read())
        spans = page.replacements if page.replacements is not None else []
        for span in spans:
            if span.key is None:
                continue
            if span.kind is ReplaceKind.IMAGE_LINK_HREF:
                info = self._completed_images.get(span.key.lower())
                if info is not None:
                    span.value = self._local_link("href", self.image_dir, info)
            elif span.kind is ReplaceKind.IMAGE_SRC:
                info = self._completed_thumbs.get(span.key.lower())
                if info is not None:
                    span.value = self._local_link("src", self.thumbnail_dir, info)
        add_other_replacements(parser, page.url, spans)
        written = atomic_write_text(page.path, apply_replacements(parser.text, spans), encoding=encoding)
        logger.debug(f"Rewrote {page.path} ({written} bytes, {len(spans)} replacements)")

    def _local_link(self, attribute: str, directory: str, info: DownloadInfo) -> str:
        path = relative_path(os.path.join(directory, info.file_name), self.download_dir)
        return f'{attribute}="{html.escape(path, quote=True)}"'
