"""Markup tokenizer and page rewriting helpers."""

from .parser import (
    HtmlAttribute,
    HtmlParser,
    HtmlTag,
    HtmlTagRange,
    class_attribute_has,
    normalize_newlines,
)
from .rewrite import absolute_url, add_other_replacements, apply_replacements

__all__ = [
    "HtmlAttribute",
    "HtmlParser",
    "HtmlTag",
    "HtmlTagRange",
    "absolute_url",
    "add_other_replacements",
    "apply_replacements",
    "class_attribute_has",
    "normalize_newlines",
]
