"""Include/exclude rules for snapshot captures.

Patterns use a small, path-segment aware glob syntax:

- ``*`` matches any run of characters inside one path segment
- ``?`` matches exactly one character inside one path segment
- ``**`` (as a whole segment) matches any number of segments, including none

A pattern without a ``/`` is tested against every segment of a path, so
``.git`` matches ``.git/config`` and ``src/.git/HEAD`` but not
``my.github.txt``. A pattern containing ``/`` is anchored at the capture
root and matched segment by segment (``src/*.py``). A trailing ``/``
restricts a pattern to directories.

A pattern matches a path when it matches the path itself or any of its
ancestor directories, which is what makes excluding a directory exclude
everything below it.
"""

from functools import lru_cache
from typing import Iterable, List, Optional, Sequence
import re

from snapjournal.config import DEFAULT_EXCLUDES


@lru_cache(maxsize=1024)
def _segment_regex(segment: str) -> "re.Pattern[str]":
    """Translate one glob segment into an anchored regex."""
    out = []
    for ch in segment:
        if ch == "*":
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(ch))
    return re.compile("".join(out) + r"\Z", re.DOTALL)


def split_path(relative_path: str) -> List[str]:
    """Split a relative path into segments, accepting either separator."""
    normalized = relative_path.replace("\\", "/")
    return [part for part in normalized.split("/") if part not in ("", ".")]


def _match_segments(parts: Sequence[str], segments: Sequence[str]) -> bool:
    """Match pattern parts against path segments exactly (``**`` aware)."""
    if not parts:
        return not segments
    head = parts[0]
    if head == "**":
        # Collapse runs of ** and try every possible split point
        rest = parts[1:]
        for i in range(len(segments) + 1):
            if _match_segments(rest, segments[i:]):
                return True
        return False
    if not segments:
        return False
    if not _segment_regex(head).match(segments[0]):
        return False
    return _match_segments(parts[1:], segments[1:])


class GlobPattern:
    """One compiled include or exclude pattern."""

    def __init__(self, raw: str):
        self.raw = raw
        text = raw.strip().replace("\\", "/")
        self.dir_only = text.endswith("/")
        text = text.strip("/")
        self.anchored = "/" in text
        self.parts = [p for p in text.split("/") if p not in ("", ".")]

    @property
    def empty(self) -> bool:
        return not self.parts

    def _matches_exact(self, segments: Sequence[str]) -> bool:
        if self.anchored:
            return _match_segments(self.parts, segments)
        # Unanchored patterns have a single part tested against the last segment
        if len(self.parts) == 1 and self.parts[0] != "**":
            return bool(segments) and bool(_segment_regex(self.parts[0]).match(segments[-1]))
        return _match_segments(self.parts, segments[-len(self.parts):]) if segments else False

    def matches(self, segments: Sequence[str], is_dir: bool = False) -> bool:
        """True when the path or one of its ancestor directories matches."""
        if self.empty:
            return False
        count = len(segments)
        for end in range(1, count + 1):
            prefix_is_dir = end < count or is_dir
            if self.dir_only and not prefix_is_dir:
                continue
            if self._matches_exact(segments[:end]):
                return True
        return False

    def __repr__(self) -> str:
        return f"GlobPattern({self.raw!r})"


def compile_patterns(patterns: Optional[Iterable[str]]) -> List[GlobPattern]:
    """Compile patterns, dropping blanks and ``#`` comments."""
    compiled = []
    for raw in patterns or ():
        if not raw or not raw.strip() or raw.strip().startswith("#"):
            continue
        pattern = GlobPattern(raw)
        if not pattern.empty:
            compiled.append(pattern)
    return compiled


class PatternFilter:
    """
    Decides which relative paths belong in a capture.

    Excludes (defaults plus user supplied) are checked first and always win.
    When include patterns are given, a file must match at least one of them.
    Include patterns never prune directories; only excludes do.
    """

    def __init__(
        self,
        exclude_patterns: Optional[Iterable[str]] = None,
        include_patterns: Optional[Iterable[str]] = None,
        default_excludes: Optional[Iterable[str]] = None,
    ):
        if default_excludes is None:
            default_excludes = DEFAULT_EXCLUDES
        self.default_excludes = list(default_excludes)
        self.exclude_patterns = list(exclude_patterns or [])
        self.include_patterns = list(include_patterns or [])
        self._excludes = compile_patterns(self.default_excludes + self.exclude_patterns)
        self._includes = compile_patterns(self.include_patterns)

    def excluded(self, relative_path: str, is_dir: bool = False) -> bool:
        segments = split_path(relative_path)
        return any(p.matches(segments, is_dir) for p in self._excludes)

    def included(self, relative_path: str) -> bool:
        """Return True if the file at relative_path should be captured."""
        segments = split_path(relative_path)
        if not segments:
            return False
        if any(p.matches(segments, False) for p in self._excludes):
            return False
        if self._includes:
            return any(p.matches(segments, False) for p in self._includes)
        return True

    def included_dir(self, relative_path: str) -> bool:
        """Return True if the scanner should descend into this directory."""
        segments = split_path(relative_path)
        if not segments:
            return True
        return not any(p.matches(segments, True) for p in self._excludes)


def is_included(
    relative_path: str,
    default_excludes: Optional[Iterable[str]],
    user_excludes: Optional[Iterable[str]],
    user_includes: Optional[Iterable[str]],
) -> bool:
    """
    Functional form of PatternFilter.included for one-off checks.

    A default_excludes of None means DEFAULT_EXCLUDES, as for PatternFilter.
    """
    return PatternFilter(
        exclude_patterns=user_excludes,
        include_patterns=user_includes,
        default_excludes=default_excludes,
    ).included(relative_path)
