"""Apply replacement spans to page text and absolutise remaining links."""

from __future__ import annotations

import html
import logging
from typing import Iterable, Optional
from urllib.parse import urljoin

from ..models import ReplaceKind, ReplaceSpan
from .parser import HtmlParser

__all__ = ["absolute_url", "add_other_replacements", "apply_replacements"]

logger = logging.getLogger(__name__)

# Tag name -> attribute holding its URL.
_URL_ATTRIBUTES = {"a": "href", "link": "href", "img": "src", "script": "src"}


def absolute_url(base_url: str, url: str) -> Optional[str]:
    """Resolve ``url`` against ``base_url``; ``None`` if it cannot be parsed."""
    try:
        return urljoin(base_url, url.strip())
    except ValueError:
        logger.debug("Unresolvable URL %r on %s", url, base_url)
        return None


def apply_replacements(text: str, spans: Iterable[ReplaceSpan]) -> str:
    """Return ``text`` with ``spans`` substituted in ascending offset order.

    A span is dropped when it starts before the end of the previous applied
    span, has a negative length, or runs past the end of ``text``. A span
    without a value deletes its range.

    >>> apply_replacements("abcdef", [ReplaceSpan(1, 2, value="X"), ReplaceSpan(4, 1, value="Y")])
    'aXdYf'
    """
    out: list[str] = []
    cursor = 0
    for span in sorted(spans, key=lambda s: s.offset):
        if span.offset < cursor or span.length < 0:
            continue
        if span.offset + span.length > len(text):
            continue
        out.append(text[cursor : span.offset])
        if span.value:
            out.append(span.value)
        cursor = span.offset + span.length
    out.append(text[cursor:])
    return "".join(out)


def add_other_replacements(parser: HtmlParser, page_url: str, spans: list[ReplaceSpan]) -> None:
    """Extend ``spans`` so a saved page works offline.

    ``<base>`` tags are removed and the URL attribute of every a, link, img
    and script tag is made absolute, except attributes another span already
    targets. Links to anchors on the page itself keep only the fragment.
    """
    taken = {span.offset for span in spans}

    for tag in parser.find_start_tags("base"):
        spans.append(ReplaceSpan(tag.offset, tag.length, ReplaceKind.OTHER, value=""))

    for tag in parser.find_start_tags(*_URL_ATTRIBUTES):
        attribute = tag.get_attribute(_URL_ATTRIBUTES[tag.name])
        if attribute is None or attribute.offset in taken:
            continue
        new_url = absolute_url(page_url, html.unescape(attribute.value))
        if new_url is None:
            continue
        if (
            tag.name == "a"
            and len(new_url) > len(page_url)
            and new_url.startswith(page_url)
            and new_url[len(page_url)] == "#"
        ):
            new_url = new_url[len(page_url) :]
        spans.append(
            ReplaceSpan(
                attribute.offset,
                attribute.length,
                ReplaceKind.OTHER,
                value=f'{attribute.name}="{html.escape(new_url, quote=True)}"',
            )
        )
