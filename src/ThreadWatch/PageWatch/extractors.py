# === NAVMAP v1 ===
# {
#   "module": "ThreadWatch.PageWatch.extractors",
#   "purpose": "Link extraction contract, generic image extractor and registration table",
#   "sections": [
#     {"id": "extractionresult", "name": "ExtractionResult", "anchor": "class-extractionresult", "kind": "dataclass"},
#     {"id": "extractor", "name": "Extractor", "anchor": "class-extractor", "kind": "protocol"},
#     {"id": "genericimageextractor", "name": "GenericImageExtractor", "anchor": "class-genericimageextractor", "kind": "class"},
#     {"id": "extractorregistry", "name": "ExtractorRegistry", "anchor": "class-extractorregistry", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Resource extraction from watched pages.

An extractor turns a tokenized page into the images and thumbnails it links
to, plus the :class:`~ThreadWatch.PageWatch.models.ReplaceSpan` entries that
point those links at the local copies. Site-specific rules live outside this
package and are plugged in through :class:`ExtractorRegistry`:

    registry = ExtractorRegistry()
    registry.register(lambda url: "example.org" in url, ExampleExtractor)
    extractor = registry.create("https://example.org/b/thread/1")

The first matching registration wins; pages nobody claims get
:class:`GenericImageExtractor`.
"""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol
from urllib.parse import urlsplit

from .html import HtmlParser, absolute_url
from .files import url_file_name
from .models import ImageInfo, ReplaceKind, ReplaceSpan, ThumbnailInfo

__all__ = [
    "ExtractionResult",
    "Extractor",
    "ExtractorRegistry",
    "GenericImageExtractor",
    "board_name",
    "global_thread_id",
    "site_name",
    "thread_name",
]

logger = logging.getLogger(__name__)


@dataclass
class ExtractionResult:
    images: list[ImageInfo] = field(default_factory=list)
    thumbnails: list[ThumbnailInfo] = field(default_factory=list)
    replacements: list[ReplaceSpan] = field(default_factory=list)
    next_page_url: Optional[str] = None


class Extractor(Protocol):
    def extract(self, parser: HtmlParser, page_url: str) -> ExtractionResult: ...


# ============================================================================
# URL naming helpers
# ============================================================================


def _path_components(url: str) -> list[str]:
    return [part for part in urlsplit(url).path.split("/") if part]


def site_name(url: str) -> str:
    """Second-level label of the host (``boards.example.org`` → ``example``)."""
    labels = (urlsplit(url).hostname or "").split(".")
    return labels[-2] if len(labels) >= 2 else ""


def board_name(url: str) -> str:
    components = _path_components(url)
    return components[0] if len(components) >= 2 else ""


def thread_name(url: str) -> str:
    """Last path component without its extension, for URLs at least two levels deep."""
    components = _path_components(url)
    if len(components) < 2:
        return ""
    page = components[-1]
    pos = page.rfind(".")
    return page[:pos] if pos != -1 else page


def global_thread_id(url: str) -> str:
    return f"{site_name(url)}_{board_name(url)}_{thread_name(url)}"


# ============================================================================
# Generic extractor
# ============================================================================


class GenericImageExtractor:
    """Images linked as ``<a href=".../src/...">``, thumbnails as the ``<img>`` inside.

    When the link embeds a second absolute URL (a redirector), the embedded
    URL is downloaded and the full link is sent as the referer. Images and
    thumbnails are deduplicated by file name, ignoring case.
    """

    image_url_keyword = "/src/"

    def extract(self, parser: HtmlParser, page_url: str) -> ExtractionResult:
        result = ExtractionResult()
        image_names: set[str] = set()
        thumbnail_names: set[str] = set()
        keyword = self.image_url_keyword.lower()

        for link_tag in parser.find_start_tags("a"):
            attribute = link_tag.get_attribute("href")
            if attribute is None:
                continue
            url = absolute_url(page_url, html.unescape(attribute.value))
            if url is None or keyword not in url.lower():
                continue
            link_end_tag = parser.find_matching_end_tag(link_tag)
            if link_end_tag is None:
                continue

            image = ImageInfo(url=url, referer=page_url)
            if not image.file_name:
                continue
            lowered = url.lower()
            pos = max(lowered.rfind("http://"), lowered.rfind("https://"))
            if pos > 0:
                image.referer = url
                image.url = url[pos:]
            result.replacements.append(
                ReplaceSpan(attribute.offset, attribute.length, ReplaceKind.IMAGE_LINK_HREF, key=image.file_name)
            )

            thumbnail = None
            image_tag = parser.find_start_tag("img", after=link_tag, before=link_end_tag)
            src = image_tag.get_attribute("src") if image_tag is not None else None
            if src is not None:
                thumb_url = absolute_url(page_url, html.unescape(src.value))
                if thumb_url is not None and url_file_name(thumb_url):
                    thumbnail = ThumbnailInfo(url=thumb_url, referer=page_url)
                    result.replacements.append(
                        ReplaceSpan(src.offset, src.length, ReplaceKind.IMAGE_SRC, key=thumbnail.file_name)
                    )

            if image.file_name.lower() not in image_names:
                image_names.add(image.file_name.lower())
                result.images.append(image)
            if thumbnail is not None and thumbnail.file_name.lower() not in thumbnail_names:
                thumbnail_names.add(thumbnail.file_name.lower())
                result.thumbnails.append(thumbnail)

        logger.debug(
            f"Extracted {len(result.images)} images and {len(result.thumbnails)} thumbnails from {page_url}"
        )
        return result


# ============================================================================
# Registration table
# ============================================================================

ExtractorPredicate = Callable[[str], bool]
ExtractorFactory = Callable[[], Extractor]


class ExtractorRegistry:
    """Ordered ``(predicate, factory)`` pairs selecting an extractor per page URL."""

    def __init__(self, default: ExtractorFactory = GenericImageExtractor) -> None:
        self._entries: list[tuple[ExtractorPredicate, ExtractorFactory]] = []
        self._default = default

    def register(self, predicate: ExtractorPredicate, factory: ExtractorFactory) -> None:
        self._entries.append((predicate, factory))

    def register_host(self, host: str, factory: ExtractorFactory) -> None:
        """Match ``host`` and its subdomains, ignoring case."""
        host = host.lower()

        def matches(url: str) -> bool:
            candidate = (urlsplit(url).hostname or "").lower()
            return candidate == host or candidate.endswith("." + host)

        self.register(matches, factory)

    def create(self, url: str) -> Extractor:
        for predicate, factory in self._entries:
            if predicate(url):
                return factory()
        return self._default()

    def __len__(self) -> int:
        return len(self._entries)

