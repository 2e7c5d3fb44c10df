"""CPE identifiers.

Parses CPE 2.3 formatted strings and CPE 2.2 URIs into immutable
``Identifier`` values.  Literal attribute values are kept in their
formatted-string form: alphanumerics, ``_``, ``.`` and ``-`` appear as-is,
any other punctuation is quoted with a backslash, and an unquoted ``*``
or ``?`` is a wildcard character.
"""

import enum
import functools
import re
from dataclasses import dataclass, fields
from typing import Union
from urllib.parse import unquote

from .errors import CpeValidationError

CPE23_PREFIX = "cpe:2.3:"
CPE22_PREFIX = "cpe:/"


class LogicalValue(enum.Enum):
    """Logical attribute values that stand in for a literal."""

    ANY = "*"
    NA = "-"

    def __str__(self) -> str:
        return self.value


class Part(enum.Enum):
    """The ``part`` component of a CPE."""

    APPLICATION = "a"
    OPERATING_SYSTEM = "o"
    HARDWARE_DEVICE = "h"

    def __str__(self) -> str:
        return self.value


Attribute = Union[str, LogicalValue]

ATTRIBUTES = (
    "vendor",
    "product",
    "version",
    "update",
    "edition",
    "language",
    "sw_edition",
    "target_sw",
    "target_hw",
    "other",
)

# Characters that may appear unquoted in a formatted-string literal.
_PLAIN_CHARS = re.compile(r"[A-Za-z0-9._\-]")
_WILDCARDS = "*?"


def quote_literal(text: str) -> str:
    """Quote a plain value so it can be used as a formatted-string literal.

    Args:
        text: Raw value such as ``c++`` or ``node.js``.

    Returns:
        The value with reserved punctuation escaped (``c\\+\\+``).
    """
    return "".join(ch if _PLAIN_CHARS.match(ch) else "\\" + ch for ch in text)


def unquote_literal(value: str) -> str:
    """Remove formatted-string quoting from a literal."""
    out = []
    escaped = False
    for ch in value:
        if escaped:
            out.append(ch)
            escaped = False
        elif ch == "\\":
            escaped = True
        else:
            out.append(ch)
    return "".join(out)


def has_wildcard(value: Attribute) -> bool:
    """Return True when a literal contains an unquoted ``*`` or ``?``."""
    if isinstance(value, LogicalValue):
        return False
    escaped = False
    for ch in value:
        if escaped:
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch in _WILDCARDS:
            return True
    return False


@functools.lru_cache(maxsize=4096)
def wildcard_pattern(value: str) -> re.Pattern:
    """Compile a literal containing wildcard characters into a regex.

    ``*`` matches any run of characters and ``?`` a single character;
    matching is case-insensitive.
    """
    parts = []
    escaped = False
    for ch in value:
        if escaped:
            parts.append(re.escape(ch))
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == "*":
            parts.append(".*")
        elif ch == "?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("^" + "".join(parts) + "$", re.IGNORECASE | re.DOTALL)


def validate_literal(value: str, name: str = "value") -> None:
    """Check that a formatted-string literal is well formed.

    Raises:
        CpeValidationError: if the literal is empty, contains whitespace or
            unquoted punctuation, ends with a lone backslash, or carries a
            wildcard anywhere but at its start or end.
    """
    if not value:
        raise CpeValidationError(f"CPE {name} must not be empty", value)
    if value in ("*", "-"):
        raise CpeValidationError(f"CPE {name} '{value}' is a logical value, not a literal", value)

    escaped = False
    wildcard_positions: list[int] = []
    for i, ch in enumerate(value):
        if ch.isspace():
            raise CpeValidationError(f"CPE {name} '{value}' contains whitespace", value)
        if escaped:
            escaped = False
            continue
        if ch == "\\":
            escaped = True
        elif ch in _WILDCARDS:
            wildcard_positions.append(i)
        elif not _PLAIN_CHARS.match(ch):
            raise CpeValidationError(f"CPE {name} '{value}' contains unquoted character '{ch}'", value)
    if escaped:
        raise CpeValidationError(f"CPE {name} '{value}' ends with an unquoted backslash", value)

    for pos in wildcard_positions:
        leading = all(value[j] in _WILDCARDS for j in range(0, pos + 1))
        trailing = all(value[j] in _WILDCARDS for j in range(pos, len(value)))
        if not (leading or trailing):
            raise CpeValidationError(f"CPE {name} '{value}' has an embedded wildcard", value)


def _normalize_attribute(value: Attribute | None, name: str) -> Attribute:
    if value is None:
        return LogicalValue.ANY
    if isinstance(value, LogicalValue):
        return value
    if not isinstance(value, str):
        raise CpeValidationError(f"CPE {name} must be a string or logical value, got {type(value).__name__}")
    if value == "*":
        return LogicalValue.ANY
    if value == "-":
        return LogicalValue.NA
    validate_literal(value, name)
    return value


def _normalize_part(value: Part | LogicalValue | str | None) -> Part | LogicalValue:
    if value is None:
        return LogicalValue.ANY
    if isinstance(value, (Part, LogicalValue)):
        return value
    if value == "*":
        return LogicalValue.ANY
    if value == "-":
        return LogicalValue.NA
    try:
        return Part(str(value).lower())
    except ValueError:
        raise CpeValidationError(f"Unknown CPE part '{value}'", str(value)) from None


def _attribute_key(value: Attribute | Part) -> tuple[int, str]:
    if value is LogicalValue.ANY:
        return (0, "")
    if value is LogicalValue.NA:
        return (1, "")
    text = value.value if isinstance(value, Part) else value
    return (2, text.lower())


@functools.total_ordering
@dataclass(frozen=True, eq=False)
class Identifier:
    """An immutable, well-formed CPE name.

    Every attribute defaults to ``LogicalValue.ANY``.  Plain ``"*"`` and
    ``"-"`` strings are converted to ``ANY`` and ``NA``; other strings must
    be well-formed literals or a ``CpeValidationError`` is raised.
    """

    part: Part | LogicalValue = Part.APPLICATION
    vendor: Attribute = LogicalValue.ANY
    product: Attribute = LogicalValue.ANY
    version: Attribute = LogicalValue.ANY
    update: Attribute = LogicalValue.ANY
    edition: Attribute = LogicalValue.ANY
    language: Attribute = LogicalValue.ANY
    sw_edition: Attribute = LogicalValue.ANY
    target_sw: Attribute = LogicalValue.ANY
    target_hw: Attribute = LogicalValue.ANY
    other: Attribute = LogicalValue.ANY

    def __post_init__(self) -> None:
        object.__setattr__(self, "part", _normalize_part(self.part))
        for name in ATTRIBUTES:
            object.__setattr__(self, name, _normalize_attribute(getattr(self, name), name))

    def sort_key(self) -> tuple:
        return tuple(_attribute_key(getattr(self, f.name)) for f in fields(self))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Identifier):
            return NotImplemented
        return self.sort_key() == other.sort_key()

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Identifier):
            return NotImplemented
        return self.sort_key() < other.sort_key()

    def __hash__(self) -> int:
        return hash(self.sort_key())

    def to_cpe23(self) -> str:
        """Serialize to a CPE 2.3 formatted string."""
        values = [str(self.part)] + [str(getattr(self, name)) for name in ATTRIBUTES]
        return CPE23_PREFIX + ":".join(values)

    def __str__(self) -> str:
        return self.to_cpe23()


def _split_formatted(text: str) -> list[str]:
    """Split a formatted string on unquoted colons."""
    parts: list[str] = []
    current: list[str] = []
    escaped = False
    for ch in text:
        if escaped:
            current.append(ch)
            escaped = False
        elif ch == "\\":
            current.append(ch)
            escaped = True
        elif ch == ":":
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
    parts.append("".join(current))
    return parts


def _from_uri_component(component: str) -> Attribute:
    if component == "":
        return LogicalValue.ANY
    if component == "-":
        return LogicalValue.NA
    decoded = unquote(component.replace("%01", "\x01").replace("%02", "\x02"))
    quoted = quote_literal(decoded)
    return quoted.replace("\\\x01", "?").replace("\\\x02", "*")


def _parse_uri(text: str) -> Identifier:
    body = text[len(CPE22_PREFIX):]
    components = body.split(":")
    if len(components) > 7:
        raise CpeValidationError(f"CPE URI has too many components: '{text}'", text)
    components += [""] * (7 - len(components))
    part, vendor, product, version, update, edition, language = components

    values = {
        "vendor": _from_uri_component(vendor),
        "product": _from_uri_component(product),
        "version": _from_uri_component(version),
        "update": _from_uri_component(update),
        "language": _from_uri_component(language),
    }
    if edition.startswith("~"):
        packed = edition[1:].split("~")
        if len(packed) != 5:
            raise CpeValidationError(f"CPE URI has a malformed packed edition: '{text}'", text)
        for name, component in zip(("edition", "sw_edition", "target_sw", "target_hw", "other"), packed):
            values[name] = _from_uri_component(component)
    else:
        values["edition"] = _from_uri_component(edition)

    return Identifier(part=part or "*", **values)


def parse_cpe(text: str) -> Identifier:
    """Parse a CPE 2.3 formatted string or a CPE 2.2 URI.

    Components missing from the end of the string default to ``ANY``.

    Args:
        text: e.g. ``cpe:2.3:a:apache:struts:2.3.1:*:*:*:*:*:*:*`` or
            ``cpe:/a:apache:struts:2.3.1``.

    Returns:
        The parsed ``Identifier``.

    Raises:
        CpeValidationError: if the text is not a well-formed CPE.
    """
    if not isinstance(text, str):
        raise CpeValidationError("CPE must be a string")
    text = text.strip()
    lowered = text.lower()
    if lowered.startswith(CPE22_PREFIX):
        return _parse_uri(text)
    if not lowered.startswith(CPE23_PREFIX):
        raise CpeValidationError(f"Not a CPE 2.3 string or CPE 2.2 URI: '{text}'", text)

    components = _split_formatted(text)[2:]
    if not components or len(components) > 11:
        raise CpeValidationError(f"CPE has the wrong number of components: '{text}'", text)
    components += ["*"] * (11 - len(components))
    part, *rest = components
    return Identifier(part=part, **dict(zip(ATTRIBUTES, rest)))
