# === NAVMAP v1 ===
# {
#   "module": "ThreadWatch.PageWatch.html.parser",
#   "purpose": "Single-pass, offset-preserving tag scanner with range queries",
#   "sections": [
#     {"id": "htmlattribute", "name": "HtmlAttribute", "anchor": "class-htmlattribute", "kind": "dataclass"},
#     {"id": "htmltag", "name": "HtmlTag", "anchor": "class-htmltag", "kind": "dataclass"},
#     {"id": "htmltagrange", "name": "HtmlTagRange", "anchor": "class-htmltagrange", "kind": "dataclass"},
#     {"id": "htmlparser", "name": "HtmlParser", "anchor": "class-htmlparser", "kind": "class"},
#     {"id": "normalize-newlines", "name": "normalize_newlines", "anchor": "function-normalize-newlines", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Offset-preserving markup tokenizer.

The scanner makes one forward pass over the page text after folding ``\\r\\n``
and ``\\r`` to ``\\n``, and records every tag with its offset and length in
that normalised text. Offsets are what the rewrite step needs: an extractor
finds the ``href`` attribute of an image link and records a
:class:`~ThreadWatch.PageWatch.models.ReplaceSpan` over exactly those
characters.

It is not a DOM builder. Tags are not paired while scanning; pairing happens
on demand in :meth:`HtmlParser.find_matching_end_tag` by counting depth over
same-named tags. The rules that matter for real pages:

- tag and attribute names are ASCII case-folded
- the first of several same-named attributes wins
- ``<x/>`` is flagged self-closing and acts as its own end tag
- script, style, title and textarea bodies are raw text: nothing inside is
  tokenized until the matching end tag (case-insensitive, followed by
  whitespace, ``/`` or ``>``)
- comments (``<!-- -->``, also closed by ``--!>``), bogus comments (``<?``,
  ``</`` not followed by a letter, ``<!``) and DOCTYPE produce no tags

**Usage:**

    parser = HtmlParser(text)
    for link in parser.find_start_tags("a"):
        end = parser.find_matching_end_tag(link)
        img = parser.find_start_tag("img", after=link, before=end)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, Optional, Union

__all__ = [
    "HtmlAttribute",
    "HtmlParser",
    "HtmlTag",
    "HtmlTagRange",
    "RAW_TEXT_ELEMENTS",
    "class_attribute_has",
    "normalize_newlines",
]

logger = logging.getLogger(__name__)

RAW_TEXT_ELEMENTS = frozenset({"script", "style", "title", "textarea"})

_WHITESPACE = frozenset(" \t\f\n")


def normalize_newlines(text: str) -> str:
    """Fold ``\\r\\n`` and lone ``\\r`` into ``\\n``."""
    if "\r" not in text:
        return text
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _lower(text: str) -> str:
    # ASCII-only folding keeps offsets and non-ASCII names untouched.
    return "".join(chr(ord(c) + 32) if "A" <= c <= "Z" else c for c in text)


@dataclass(frozen=True)
class HtmlAttribute:
    """One attribute of a tag; ``offset``/``length`` span ``name="value"``."""

    name: str
    value: str
    offset: int
    length: int

    def name_equals(self, name: str) -> bool:
        return self.name == _lower(name)


@dataclass(frozen=True)
class HtmlTag:
    """A start or end tag found by :class:`HtmlParser`.

    Attributes:
        name: Case-folded tag name
        offset: Index of ``<`` in the normalised text
        length: Characters up to and including ``>``
        is_end: True for ``</name>``
        is_self_closing: True for ``<name ... />``
        attributes: Attributes in source order, duplicates removed
    """

    name: str
    offset: int
    length: int
    is_end: bool = False
    is_self_closing: bool = False
    attributes: tuple[HtmlAttribute, ...] = ()

    @property
    def end_offset(self) -> int:
        return self.offset + self.length

    def name_equals(self, name: str) -> bool:
        return self.name == _lower(name)

    def name_equals_any(self, *names: str) -> bool:
        return any(self.name == _lower(name) for name in names)

    def get_attribute(self, name: str) -> Optional[HtmlAttribute]:
        folded = _lower(name)
        for attribute in self.attributes:
            if attribute.name == folded:
                return attribute
        return None

    def get_attribute_value(self, name: str, default: Optional[str] = None) -> Optional[str]:
        attribute = self.get_attribute(name)
        return attribute.value if attribute is not None else default


@dataclass(frozen=True)
class HtmlTagRange:
    start_tag: HtmlTag
    end_tag: HtmlTag


TagBound = Optional[Union[HtmlTag, HtmlTagRange]]


def class_attribute_has(tag_or_value: Union[HtmlTag, str, None], class_name: str) -> bool:
    """True if a ``class`` attribute lists ``class_name`` (exact, whitespace separated)."""
    if isinstance(tag_or_value, HtmlTag):
        tag_or_value = tag_or_value.get_attribute_value("class")
    if tag_or_value is None:
        return False
    return class_name in tag_or_value.split()


class HtmlParser:
    """Tokenize ``html`` once and answer positional tag queries.

    Attributes:
        text: The normalised text all offsets refer to
        tags: Every tag in document order
    """

    def __init__(self, html: str) -> None:
        self.text = normalize_newlines(html)
        self.tags: tuple[HtmlTag, ...] = tuple(_scan(self.text))
        self._offset_to_index = {tag.offset: index for index, tag in enumerate(self.tags)}

    def tag_index(self, tag: HtmlTag) -> int:
        """Position of ``tag`` in :attr:`tags`.

        Raises:
            ValueError: If ``tag`` was not produced by this parser
        """
        index = self._offset_to_index.get(tag.offset)
        if index is None or self.tags[index] != tag:
            raise ValueError(f"Tag <{tag.name}> at offset {tag.offset} does not belong to this parser")
        return index

    def iter_tags(self, after: TagBound = None, before: Optional[HtmlTag] = None) -> Iterator[HtmlTag]:
        """Yield tags strictly between ``after`` and ``before``.

        ``after`` may also be an :class:`HtmlTagRange`, meaning the tags inside it.
        """
        if isinstance(after, HtmlTagRange):
            after, before = after.start_tag, after.end_tag
        start = self.tag_index(after) + 1 if after is not None else 0
        stop = self.tag_index(before) if before is not None else len(self.tags)
        for index in range(start, stop):
            yield self.tags[index]

    def find_tags(
        self,
        is_end: bool,
        *names: str,
        after: TagBound = None,
        before: Optional[HtmlTag] = None,
    ) -> Iterator[HtmlTag]:
        for tag in self.iter_tags(after, before):
            if tag.is_end == is_end and tag.name_equals_any(*names):
                yield tag

    def find_tag(
        self,
        is_end: bool,
        *names: str,
        after: TagBound = None,
        before: Optional[HtmlTag] = None,
    ) -> Optional[HtmlTag]:
        return next(self.find_tags(is_end, *names, after=after, before=before), None)

    def find_start_tags(self, *names: str, after: TagBound = None, before: Optional[HtmlTag] = None) -> Iterator[HtmlTag]:
        return self.find_tags(False, *names, after=after, before=before)

    def find_start_tag(self, *names: str, after: TagBound = None, before: Optional[HtmlTag] = None) -> Optional[HtmlTag]:
        return self.find_tag(False, *names, after=after, before=before)

    def find_end_tags(self, *names: str, after: TagBound = None, before: Optional[HtmlTag] = None) -> Iterator[HtmlTag]:
        return self.find_tags(True, *names, after=after, before=before)

    def find_end_tag(self, *names: str, after: TagBound = None, before: Optional[HtmlTag] = None) -> Optional[HtmlTag]:
        return self.find_tag(True, *names, after=after, before=before)

    def find_matching_end_tag(self, tag: Optional[HtmlTag], before: Optional[HtmlTag] = None) -> Optional[HtmlTag]:
        """Find the end tag closing ``tag`` by depth-counting same-named tags.

        Self-closing tags are their own end tag. Returns ``None`` when the
        element is never closed before ``before``.

        Raises:
            ValueError: If ``tag`` is an end tag
        """
        if tag is None:
            return None
        if tag.is_end:
            raise ValueError("find_matching_end_tag expects a start tag")
        if tag.is_self_closing:
            return tag
        depth = 1
        for candidate in self.iter_tags(tag, before):
            if candidate.is_self_closing or candidate.name != tag.name:
                continue
            depth += -1 if candidate.is_end else 1
            if depth == 0:
                return candidate
        return None

    def tag_range(self, tag: Optional[HtmlTag], before: Optional[HtmlTag] = None) -> Optional[HtmlTagRange]:
        end_tag = self.find_matching_end_tag(tag, before)
        if tag is None or end_tag is None:
            return None
        return HtmlTagRange(tag, end_tag)

    def inner_html(self, start: Union[HtmlTag, HtmlTagRange], end: Optional[HtmlTag] = None) -> str:
        """Raw text between a start tag and its end tag (empty for self-closing)."""
        if isinstance(start, HtmlTagRange):
            start, end = start.start_tag, start.end_tag
        if start.is_self_closing:
            return ""
        if end is None:
            raise ValueError("inner_html needs an end tag or a tag range")
        return self.text[start.end_offset : end.offset]


def _skip_whitespace(text: str, pos: int, end: int) -> int:
    while pos < end and text[pos] in _WHITESPACE:
        pos += 1
    return pos


def _find_any(text: str, pos: int, end: int, stops: str) -> int:
    """Index of the first whitespace or ``stops`` character, or -1."""
    while pos < end:
        c = text[pos]
        if c in _WHITESPACE or c in stops:
            return pos
        pos += 1
    return -1


def _is_letter(text: str, pos: int, end: int) -> bool:
    return pos < end and ("a" <= text[pos] <= "z" or "A" <= text[pos] <= "Z")


def _scan(text: str) -> Iterator[HtmlTag]:
    end = len(text)
    pos = 0
    while pos < end:
        lt = text.find("<", pos)
        if lt == -1:
            return
        tag_offset = lt
        pos = lt + 1
        is_end = pos < end and text[pos] == "/"

        if _is_letter(text, pos + 1 if is_end else pos, end):
            if is_end:
                pos += 1
            name_end = _find_any(text, pos, end, "/>")
            if name_end == -1:
                return
            name = _lower(text[pos:name_end])
            pos = name_end

            attributes: list[HtmlAttribute] = []
            seen: set[str] = set()
            is_self_closing = False
            while True:
                pos = _skip_whitespace(text, pos, end)
                is_self_closing = pos < end and text[pos] == "/"
                if is_self_closing:
                    pos += 1
                if pos < end and text[pos] == ">":
                    pos += 1
                    break
                if is_self_closing:
                    continue
                if pos >= end:
                    return

                attr_offset = pos
                name_stop = _find_any(text, pos + 1, end, "=/>")
                if name_stop == -1:
                    return
                attr_name = _lower(text[pos:name_stop])
                pos = _skip_whitespace(text, name_stop, end)
                value = ""
                if pos < end and text[pos] == "=":
                    pos = _skip_whitespace(text, pos + 1, end)
                    if pos < end and text[pos] in "\"'":
                        close = text.find(text[pos], pos + 1)
                        if close == -1:
                            return
                        value = text[pos + 1 : close]
                        pos = close + 1
                    else:
                        close = _find_any(text, pos, end, ">")
                        if close == -1:
                            return
                        value = text[pos:close]
                        pos = close
                if attr_name not in seen:
                    seen.add(attr_name)
                    attributes.append(HtmlAttribute(attr_name, value, attr_offset, pos - attr_offset))

            yield HtmlTag(
                name=name,
                offset=tag_offset,
                length=pos - tag_offset,
                is_end=is_end,
                is_self_closing=is_self_closing,
                attributes=tuple(attributes),
            )

            if not is_end and not is_self_closing and name in RAW_TEXT_ELEMENTS:
                closing = "/" + name
                while True:
                    lt = text.find("<", pos)
                    if lt == -1:
                        return
                    pos = lt + 1
                    after = pos + len(closing)
                    if (
                        after < end
                        and _lower(text[pos:after]) == closing
                        and (text[after] in _WHITESPACE or text[after] in "/>")
                    ):
                        pos = lt
                        break
        elif text.startswith("!--", pos) and not text.startswith(">", pos + 3):
            pos += 3
            while True:
                dash = text.find("-", pos)
                if dash == -1:
                    return
                pos = dash + 1
                if text.startswith("->", pos):
                    pos += 2
                    break
                if text.startswith("-!>", pos):
                    pos += 3
                    break
        elif pos < end and text[pos] in "?/!":
            close = text.find(">", pos + 1)
            if close == -1:
                return
            pos = close + 1
