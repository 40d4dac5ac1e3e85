# === NAVMAP v1 ===
# {
#   "module": "ThreadWatch.PageWatch.files",
#   "purpose": "File naming helpers and atomic page writes",
#   "sections": [
#     {"id": "clean-file-name", "name": "clean_file_name", "anchor": "function-clean-file-name", "kind": "function"},
#     {"id": "unique-file-name", "name": "unique_file_name", "anchor": "function-unique-file-name", "kind": "function"},
#     {"id": "max-file-name-length", "name": "max_file_name_length", "anchor": "function-max-file-name-length", "kind": "function"},
#     {"id": "effective-file-name", "name": "effective_file_name", "anchor": "function-effective-file-name", "kind": "function"},
#     {"id": "atomic-write-text", "name": "atomic_write_text", "anchor": "function-atomic-write-text", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""File naming helpers and atomic page writes.

Downloaded images are named after the last URL path segment (or the poster's
original file name), sanitised for every common file system, shortened to
what the destination directory accepts and made unique with a ``_N`` suffix.
Every loop here is bounded: name generation gives up with
:class:`FileNameExhaustedError` rather than spinning.

Rewritten pages are persisted with :func:`atomic_write_text` (temporary file in
the same directory, fsync, ``os.replace``) so a crash never leaves a half
written page behind.
"""

from __future__ import annotations

import errno
import logging
import os
import tempfile
from typing import MutableSet, Optional

__all__ = [
    "FILE_NAME_SUFFIX_RESERVE",
    "FileNameExhaustedError",
    "atomic_write_text",
    "clean_file_name",
    "effective_file_name",
    "file_name_length_limit",
    "max_file_name_length",
    "relative_path",
    "unique_file_name",
    "url_file_name",
]

logger = logging.getLogger(__name__)

# Characters rejected by at least one mainstream file system.
_INVALID_FILE_NAME_CHARS = frozenset('<>:"/\\|?*') | frozenset(chr(c) for c in range(32))

# Room left for a "_N" uniqueness suffix when shortening names.
FILE_NAME_SUFFIX_RESERVE = 4

_MAX_PROBE_LENGTH = 4096
_MAX_UNIQUE_ATTEMPTS = 10_000


class FileNameExhaustedError(RuntimeError):
    """Raised when no free candidate name is found within the attempt bound."""


def clean_file_name(name: Optional[str]) -> Optional[str]:
    """Drop characters that are not allowed in file names."""
    if name is None:
        return None
    return "".join(c for c in name if c not in _INVALID_FILE_NAME_CHARS)


def url_file_name(url: str) -> str:
    """Return the text after the last ``/`` of ``url`` (empty when there is none)."""
    pos = url.rfind("/")
    return url[pos + 1 :] if pos != -1 else ""


def unique_file_name(
    file_name: str,
    taken: MutableSet[str],
    *,
    peek: bool = False,
    max_attempts: int = _MAX_UNIQUE_ATTEMPTS,
) -> str:
    """Return ``file_name`` or the first ``stem_N.ext`` variant not in ``taken``.

    ``taken`` holds case-folded names; comparison ignores case. Unless
    ``peek`` is set, the chosen name is added to ``taken``.

    Raises:
        FileNameExhaustedError: If ``max_attempts`` candidates are all taken
    """
    stem, ext = os.path.splitext(file_name)
    for suffix in range(1, max_attempts + 1):
        candidate = stem + ("" if suffix == 1 else f"_{suffix}") + ext
        if candidate.lower() not in taken:
            if not peek:
                taken.add(candidate.lower())
            return candidate
    raise FileNameExhaustedError(f"No free name for {file_name!r} after {max_attempts} attempts")


def _is_file_name_too_long(directory: str, length: int) -> bool:
    if not os.path.isdir(directory):
        raise FileNotFoundError(errno.ENOENT, "Directory does not exist", directory)
    path = None
    for letter in "abcdefghijklmnopqrstuvwxyz":
        candidate = os.path.join(directory, letter * length)
        if not os.path.exists(candidate):
            path = candidate
            break
    if path is None:
        raise RuntimeError(f"Unable to probe file name length in {directory}")
    try:
        with open(path, "xb"):
            pass
    except OSError as exc:
        if exc.errno == errno.ENAMETOOLONG:
            return True
        raise
    try:
        os.remove(path)
    except OSError:
        logger.warning("Could not remove probe file %s", path)
    return False


def max_file_name_length(directory: str) -> int:
    """Find the longest file name ``directory`` accepts by probing the file system.

    Binary search over ``[0, 4096]`` that only learns whether the midpoint is
    too long, so it converges on the largest accepted length.
    """
    low, high = 0, _MAX_PROBE_LENGTH
    while high >= low + 2:
        mid = (low + high) // 2
        if _is_file_name_too_long(directory, mid):
            high = mid - 1
        else:
            low = mid
    if high > low:
        return low if _is_file_name_too_long(directory, high) else high
    return low


def file_name_length_limit(directory: str) -> int:
    """Maximum image file name length for ``directory``, leaving suffix room."""
    return max_file_name_length(directory) - FILE_NAME_SUFFIX_RESERVE


def effective_file_name(
    file_name: str,
    original_file_name: Optional[str],
    *,
    use_original: bool,
    force_original: bool = False,
    max_length: Optional[int] = None,
) -> str:
    """Choose the on-disk name for an image and shorten it to ``max_length``.

    The extension is preserved; only the stem is cut.
    """
    name = file_name
    if original_file_name and (use_original or force_original):
        name = original_file_name
    if max_length is not None and len(name) > max_length:
        stem, ext = os.path.splitext(name)
        keep = max(max_length - len(ext), 1)
        name = stem[:keep] + ext
    return name


def relative_path(path: str, base_dir: str) -> str:
    """``path`` relative to ``base_dir`` with forward slashes, for use in links."""
    return os.path.relpath(path, base_dir).replace(os.sep, "/")


def atomic_write_text(dest_path: str, text: str, *, encoding: str = "utf-8") -> int:
    """Write ``text`` to ``dest_path`` atomically.

    Uses a temporary file in the destination directory, fsync and
    ``os.replace`` so either the whole page lands or the previous file stays.

    Returns:
        Number of bytes written.
    """
    dest_dir = os.path.dirname(dest_path) or "."
    data = text.encode(encoding, errors="xmlcharrefreplace")

    fd, tmp_path = tempfile.mkstemp(dir=dest_dir, prefix=".part-", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb", buffering=0) as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, dest_path)
        return len(data)
    except Exception:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise

