"""Vulnerable-software records.

A ``VulnerableRecord`` pairs a CPE ``Identifier`` with the optional
version-range bounds from an NVD configuration node and a flag saying
whether the entry is vulnerable at all (non-vulnerable entries carve out
exceptions from wider records).
"""

import functools
from dataclasses import dataclass
from typing import Any

from .cpe import Identifier, parse_cpe
from .errors import CpeValidationError

RANGE_FIELDS = (
    "version_start_including",
    "version_start_excluding",
    "version_end_including",
    "version_end_excluding",
)


def _clean_bound(value: Any, name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise CpeValidationError(f"{name} must be a string, got {type(value).__name__}")
    value = value.strip()
    if not value:
        return None
    if any(ch.isspace() for ch in value):
        raise CpeValidationError(f"{name} '{value}' contains whitespace", value)
    return value


@functools.total_ordering
@dataclass(frozen=True)
class VulnerableRecord:
    """An identifier plus the version range it is (or is not) vulnerable in.

    Attributes:
        identifier: The catalogued CPE, possibly containing wildcards.
        version_start_including: Lowest affected version, inclusive.
        version_start_excluding: Lowest affected version, exclusive.
        version_end_including: Highest affected version, inclusive.
        version_end_excluding: Highest affected version, exclusive.
        vulnerable: ``False`` when the record asserts non-vulnerability.
    """

    identifier: Identifier
    version_start_including: str | None = None
    version_start_excluding: str | None = None
    version_end_including: str | None = None
    version_end_excluding: str | None = None
    vulnerable: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.identifier, Identifier):
            raise CpeValidationError("VulnerableRecord requires an Identifier")
        for name in RANGE_FIELDS:
            object.__setattr__(self, name, _clean_bound(getattr(self, name), name))
        object.__setattr__(self, "vulnerable", bool(self.vulnerable))

    @property
    def has_range(self) -> bool:
        """True when any of the four version bounds is set."""
        return any(getattr(self, name) is not None for name in RANGE_FIELDS)

    def sort_key(self) -> tuple:
        bounds = tuple((0, "") if b is None else (1, b) for b in (getattr(self, n) for n in RANGE_FIELDS))
        return self.identifier.sort_key() + bounds + (self.vulnerable,)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, VulnerableRecord):
            return NotImplemented
        return self.sort_key() < other.sort_key()

    def to_cpe23(self) -> str:
        return self.identifier.to_cpe23()

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the NVD ``cpe_match`` field names."""
        out: dict[str, Any] = {"cpe23Uri": self.to_cpe23(), "vulnerable": self.vulnerable}
        for name, key in zip(RANGE_FIELDS, _NVD_KEYS):
            value = getattr(self, name)
            if value is not None:
                out[key] = value
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VulnerableRecord":
        """Build a record from an NVD ``cpe_match`` style dict."""
        cpe = data.get("cpe23Uri") or data.get("criteria") or data.get("cpe")
        if not cpe:
            raise CpeValidationError("cpe_match entry has no CPE")
        return build_record(
            cpe,
            start_including=data.get("versionStartIncluding"),
            start_excluding=data.get("versionStartExcluding"),
            end_including=data.get("versionEndIncluding"),
            end_excluding=data.get("versionEndExcluding"),
            vulnerable=data.get("vulnerable", True),
        )

    def __str__(self) -> str:
        bounds = []
        if self.version_start_including:
            bounds.append(f">={self.version_start_including}")
        if self.version_start_excluding:
            bounds.append(f">{self.version_start_excluding}")
        if self.version_end_including:
            bounds.append(f"<={self.version_end_including}")
        if self.version_end_excluding:
            bounds.append(f"<{self.version_end_excluding}")
        suffix = f" [{', '.join(bounds)}]" if bounds else ""
        flag = "" if self.vulnerable else " (not vulnerable)"
        return f"{self.to_cpe23()}{suffix}{flag}"


_NVD_KEYS = (
    "versionStartIncluding",
    "versionStartExcluding",
    "versionEndIncluding",
    "versionEndExcluding",
)


def build_record(
    cpe: str | Identifier,
    *,
    start_including: str | None = None,
    start_excluding: str | None = None,
    end_including: str | None = None,
    end_excluding: str | None = None,
    vulnerable: bool = True,
) -> VulnerableRecord:
    """Validate and build a ``VulnerableRecord``.

    Args:
        cpe: A CPE string (2.3 formatted or 2.2 URI) or an ``Identifier``.
        start_including: Inclusive lower version bound.
        start_excluding: Exclusive lower version bound.
        end_including: Inclusive upper version bound.
        end_excluding: Exclusive upper version bound.
        vulnerable: Whether the record marks the range as vulnerable.

    Returns:
        The immutable record.  Empty-string bounds are treated as unset.

    Raises:
        CpeValidationError: if the CPE or a bound is malformed.
    """
    identifier = cpe if isinstance(cpe, Identifier) else parse_cpe(cpe)
    return VulnerableRecord(
        identifier=identifier,
        version_start_including=start_including,
        version_start_excluding=start_excluding,
        version_end_including=end_including,
        version_end_excluding=end_excluding,
        vulnerable=vulnerable,
    )
