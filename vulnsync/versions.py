"""Structured version parsing and comparison.

Version strings are split into alphanumeric segments on ``.``, ``-``,
``_`` (and any other punctuation) and on transitions between letters
and digits, so ``1.2.0-beta3`` becomes ``1 2 0 beta 3``.
"""

import functools
import re
from dataclasses import dataclass

_SEGMENT_RE = re.compile(r"[a-z]+|\d+")


def _compare_segment(left: str, right: str) -> int:
    if left.isdigit() and right.isdigit():
        lv, rv = int(left), int(right)
    else:
        lv, rv = left, right
    return (lv > rv) - (lv < rv)


@functools.total_ordering
@dataclass(frozen=True, eq=False)
class Version:
    """A parsed version: an ordered tuple of lowercase segments.

    Segments compare numerically when both are digits and as strings
    otherwise (digits sort before letters).  When one version is a prefix
    of the other the shorter one is smaller, so ``1.2 < 1.2.1``.
    """

    segments: tuple[str, ...]

    def compare(self, other: "Version") -> int:
        for left, right in zip(self.segments, other.segments):
            result = _compare_segment(left, right)
            if result:
                return result
        return (len(self.segments) > len(other.segments)) - (len(self.segments) < len(other.segments))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.compare(other) == 0

    def __lt__(self, other: "Version") -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.compare(other) < 0

    def __hash__(self) -> int:
        return hash(tuple(str(int(s)) if s.isdigit() else s for s in self.segments))

    def __str__(self) -> str:
        return ".".join(self.segments)


def parse_version(text: str | None) -> Version | None:
    """Parse a version string into a ``Version``.

    Args:
        text: Version string, e.g. ``2.4.1`` or ``1.0-rc2``.

    Returns:
        The parsed version, or ``None`` if the text is empty or has no
        alphanumeric content.
    """
    if not text or not isinstance(text, str):
        return None
    segments = tuple(_SEGMENT_RE.findall(text.lower()))
    if not segments:
        return None
    return Version(segments)


def compare_versions(left: str | None, right: str | None) -> int | None:
    """Compare two version strings.

    Returns:
        A negative number, zero or a positive number as ``left`` is less
        than, equal to or greater than ``right``; ``None`` when either side
        cannot be parsed.
    """
    lv = parse_version(left)
    rv = parse_version(right)
    if lv is None or rv is None:
        return None
    return lv.compare(rv)
