# === NAVMAP v1 ===
# {
#   "module": "ThreadWatch.PageWatch.models",
#   "purpose": "Result enums, resource descriptors and rewrite spans",
#   "sections": [
#     {"id": "downloadresult", "name": "DownloadResult", "anchor": "#class-downloadresult", "kind": "enum"},
#     {"id": "stopreason", "name": "StopReason", "anchor": "#class-stopreason", "kind": "enum"},
#     {"id": "replacekind", "name": "ReplaceKind", "anchor": "#class-replacekind", "kind": "enum"},
#     {"id": "imageinfo", "name": "ImageInfo", "anchor": "#class-imageinfo", "kind": "dataclass"},
#     {"id": "pageinfo", "name": "PageInfo", "anchor": "#class-pageinfo", "kind": "dataclass"}
#   ]
# }
# === /NAVMAP ===

"""Domain models shared by the download engine and the watch cycle.

**Download outcomes:**

    COMPLETED     file written and verified (or accepted as stable)
    SKIPPED       nothing to do: 304, 404, unusable path, fatal IO
    RETRY_LATER   try cap exhausted or cancelled; the next check retries

Extractors produce :class:`ImageInfo` / :class:`ThumbnailInfo` descriptors and
:class:`ReplaceSpan` entries. The watch cycle tracks per-page state in
:class:`PageInfo` and finished files in :class:`DownloadInfo`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from .files import clean_file_name, url_file_name

__all__ = [
    "DownloadInfo",
    "DownloadKind",
    "DownloadResult",
    "HashType",
    "ImageInfo",
    "PageInfo",
    "ReplaceKind",
    "ReplaceSpan",
    "StopReason",
    "ThumbnailInfo",
]


class DownloadResult(str, Enum):
    """Terminal outcome of one logical download."""

    COMPLETED = "completed"
    SKIPPED = "skipped"
    RETRY_LATER = "retry_later"


class StopReason(str, Enum):
    """Why a watcher stopped.

    - OTHER: Unexpected failure during a check
    - USER_REQUEST: Stopped by the operator
    - EXITING: Process shutdown
    - PAGE_NOT_FOUND: Watched page returned 404
    - DOWNLOAD_COMPLETE: One-time download finished
    - IO_ERROR: Download directory missing or not writable
    """

    OTHER = "other"
    USER_REQUEST = "user_request"
    EXITING = "exiting"
    PAGE_NOT_FOUND = "page_not_found"
    DOWNLOAD_COMPLETE = "download_complete"
    IO_ERROR = "io_error"


class ReplaceKind(str, Enum):
    OTHER = "other"
    IMAGE_LINK_HREF = "image_link_href"
    IMAGE_SRC = "image_src"


class DownloadKind(str, Enum):
    PAGE = "page"
    IMAGE = "image"
    THUMBNAIL = "thumbnail"


class HashType(str, Enum):
    """Digest algorithms accepted for image verification (``hashlib`` names)."""

    NONE = "none"
    MD5 = "md5"
    SHA1 = "sha1"
    SHA256 = "sha256"


@dataclass
class ReplaceSpan:
    """A range of the normalised page text to substitute when rewriting.

    Attributes:
        offset: Start index into the normalised text
        length: Number of characters replaced
        kind: What the span points at
        key: Correlation key (image or thumbnail file name) for link spans
        value: Replacement text; ``None`` or empty deletes the range
    """

    offset: int
    length: int
    kind: ReplaceKind = ReplaceKind.OTHER
    key: Optional[str] = None
    value: Optional[str] = None


@dataclass
class ImageInfo:
    """Full-size image discovered on a page."""

    url: str
    referer: Optional[str] = None
    original_file_name: Optional[str] = None
    force_original_file_name: bool = False
    hash_type: HashType = HashType.NONE
    hash: Optional[bytes] = None

    @property
    def file_name(self) -> str:
        """Sanitised last path segment of the URL, used as the identity key."""
        return clean_file_name(url_file_name(self.url))

    @property
    def clean_original_file_name(self) -> Optional[str]:
        if self.original_file_name is None:
            return None
        return clean_file_name(self.original_file_name)


@dataclass
class ThumbnailInfo:
    url: str
    referer: Optional[str] = None

    @property
    def file_name(self) -> str:
        return clean_file_name(url_file_name(self.url))


@dataclass
class DownloadInfo:
    """Bookkeeping for a finished (or permanently skipped) file."""

    file_name: str
    skipped: bool = False


@dataclass
class PageInfo:
    """Per-page state kept across checks.

    ``is_fresh`` is set when the page body was downloaded during the current
    check and therefore needs its links rewritten.
    """

    url: str
    cache_time: Optional[datetime] = None
    is_fresh: bool = False
    path: Optional[str] = None
    encoding: Optional[str] = None
    replacements: Optional[list[ReplaceSpan]] = field(default=None)
