# === NAVMAP v1 ===
# {
#   "module": "ThreadWatch.PageWatch.encoding",
#   "purpose": "Page charset detection and HTTP date helpers",
#   "sections": [
#     {"id": "detect-html-encoding", "name": "detect_html_encoding", "anchor": "function-detect-html-encoding", "kind": "function"},
#     {"id": "parse-last-modified", "name": "parse_last_modified", "anchor": "function-parse-last-modified", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Charset detection for fetched pages and HTTP date handling.

The charset is taken from, in order: the ``Content-Type`` header, a byte
order mark, then the document itself (an XML declaration for XML mime types,
otherwise ``<meta charset>`` or ``<meta http-equiv="Content-Type">``).
Unknown or missing charsets fall back to Windows-1252.

The returned value is a Python codec name so the same encoding can be used
to decode the page and to write the rewritten copy back to disk. Pages that
arrived with a BOM get a BOM-writing codec (``utf-8-sig`` / ``utf-16``).
"""

from __future__ import annotations

import codecs
import logging
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import Optional

from .html.parser import HtmlParser

__all__ = [
    "DEFAULT_ENCODING",
    "charset_from_content_type",
    "decode_page",
    "detect_html_encoding",
    "format_http_date",
    "mime_type_from_content_type",
    "parse_last_modified",
]

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = "cp1252"

_SNIFF_BYTES = 4096
_XML_MIME_TYPES = {"application/xhtml+xml", "application/xml", "text/xml"}


def mime_type_from_content_type(content_type: Optional[str]) -> Optional[str]:
    if content_type is None:
        return None
    mime = content_type.split(";", 1)[0].strip()
    return mime or None


def charset_from_content_type(content_type: Optional[str]) -> Optional[str]:
    """Extract the ``charset`` parameter of a Content-Type value."""
    if content_type is None:
        return None
    for part in content_type.split(";"):
        name, sep, value = part.partition("=")
        if not sep or name.strip().lower() != "charset":
            continue
        value = value.strip()
        if value[:1] in ("'", '"'):
            close = value.find(value[0], 1)
            value = value[1:close if close != -1 else len(value)].strip()
        return value or None
    return None


def _bom_charset(data: bytes) -> Optional[str]:
    if data.startswith(codecs.BOM_UTF8):
        return "utf-8"
    if data.startswith(codecs.BOM_UTF16_LE):
        return "utf-16le"
    if data.startswith(codecs.BOM_UTF16_BE):
        return "utf-16be"
    return None


def _sniff_text(data: bytes) -> str:
    # Drop NULs so UTF-16 markup still reads as ASCII tags.
    return data.replace(b"\x00", b"")[:_SNIFF_BYTES].decode("ascii", errors="replace")


def _charset_from_content(data: bytes, content_type: Optional[str]) -> Optional[str]:
    text = _sniff_text(data)
    mime = (mime_type_from_content_type(content_type) or "").lower()

    if mime in _XML_MIME_TYPES:
        if text[:5].lower() == "<?xml":
            declaration = HtmlParser("<" + text[2:])
            first = declaration.tags[0] if declaration.tags else None
            if first is not None and first.name == "xml" and first.offset == 0:
                charset = first.get_attribute_value("encoding")
                if charset:
                    return charset
        return "utf-8"

    for meta in HtmlParser(text).find_start_tags("meta"):
        charset = meta.get_attribute_value("charset")
        if charset:
            return charset
        if meta.get_attribute_value("http-equiv", "").strip().lower() == "content-type":
            charset = charset_from_content_type(meta.get_attribute_value("content"))
            if charset:
                return charset
    return None


def detect_html_encoding(data: bytes, content_type: Optional[str] = None) -> str:
    """Return the codec name to decode (and later re-encode) a page with."""
    charset = (
        charset_from_content_type(content_type)
        or _bom_charset(data)
        or _charset_from_content(data, content_type)
    )
    if charset is None:
        return DEFAULT_ENCODING

    has_bom = _bom_charset(data) is not None
    folded = charset.strip().lower()
    if folded in ("utf-8", "utf8"):
        return "utf-8-sig" if has_bom else "utf-8"
    if folded in ("utf-16", "utf-16le", "utf-16be"):
        if has_bom:
            return "utf-16"
        return "utf-16-be" if folded.endswith("be") else "utf-16-le"
    try:
        return codecs.lookup(folded).name
    except LookupError:
        logger.debug("Unknown charset %r; using %s", charset, DEFAULT_ENCODING)
        return DEFAULT_ENCODING


def decode_page(data: bytes, content_type: Optional[str] = None) -> tuple[str, str]:
    """Decode page bytes; returns ``(text, encoding)``."""
    encoding = detect_html_encoding(data, content_type)
    return data.decode(encoding, errors="replace"), encoding


def parse_last_modified(value: Optional[str]) -> Optional[datetime]:
    """Parse a ``Last-Modified`` header into an aware UTC datetime."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError) as e:
        logger.debug(f"Failed to parse Last-Modified {value!r}: {e}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_http_date(moment: datetime) -> str:
    """Format ``moment`` for ``If-Modified-Since``."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return format_datetime(moment.astimezone(timezone.utc), usegmt=True)
