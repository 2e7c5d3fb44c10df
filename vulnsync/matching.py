"""CPE matching engine.

Pure functions for deciding whether a target ``Identifier`` (normally a
scanned dependency, without wildcards) is matched by a catalogued
``VulnerableRecord``.  No I/O; the rule tables are plain data handed to
the engine so that engines built for different rule versions can coexist.
"""

import logging
import re
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field

from .cpe import ATTRIBUTES, Attribute, Identifier, LogicalValue, Part, has_wildcard, unquote_literal, wildcard_pattern
from .records import VulnerableRecord
from .store import VulnerabilityStore
from .versions import parse_version

logger = logging.getLogger(__name__)

# Attributes compared with plain attribute comparison; version and update
# have their own rules.
_PLAIN_ATTRIBUTES = tuple(a for a in ATTRIBUTES if a not in ("version", "update"))


@dataclass(frozen=True)
class MatchRules:
    """Constant rule tables used by ``MatchEngine``.

    Attributes:
        schema_version: Version of the matching rules.  Recorded alongside
            the sync watermarks; a change forces a catalog rebuild.
        update_prefixes: Single-letter update abbreviations and the word
            each one stands for (``b2`` is ``beta2``).
        update_fuzz_pattern: Pattern an update value must match before its
            abbreviation is expanded.
        update_separators: Characters ignored when comparing update values.
    """

    schema_version: str = "1.0"
    update_prefixes: tuple[tuple[str, str], ...] = (("a", "alpha"), ("b", "beta"), ("u", "update"))
    update_fuzz_pattern: str = r"^[aub]\d.*"
    update_separators: str = "-_"
    _fuzz_re: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_fuzz_re", re.compile(self.update_fuzz_pattern, re.IGNORECASE))

    def strip_separators(self, value: str) -> str:
        return "".join(ch for ch in value if ch not in self.update_separators)

    def expand_update(self, value: str) -> str | None:
        """Expand an abbreviated update (``b2`` → ``beta2``); None if not abbreviated."""
        if not self._fuzz_re.match(value):
            return None
        words = dict(self.update_prefixes)
        word = words.get(value[0].lower())
        if word is None:
            return None
        return word + value[1:]


DEFAULT_RULES = MatchRules()


@dataclass(frozen=True, order=True)
class Finding:
    """A vulnerability that affects a scanned identifier.

    Attributes:
        cve_id: The CVE identifier.
        records: The catalog records that matched, sorted.
    """

    cve_id: str
    records: tuple[VulnerableRecord, ...] = ()


def _text(value: Attribute | Part) -> Attribute:
    return value.value if isinstance(value, Part) else value


def compare_attribute(left: Attribute | Part, right: Attribute | Part) -> bool:
    """Compare a record attribute (left) with a target attribute (right).

    ``ANY`` on the left matches anything, ``NA`` matches only ``NA``,
    literals with wildcard characters are matched as patterns and other
    literals by case-insensitive equality.
    """
    left = _text(left)
    right = _text(right)
    if left is LogicalValue.ANY:
        return True
    if left is LogicalValue.NA:
        return right is LogicalValue.NA
    if isinstance(right, LogicalValue):
        return False
    if has_wildcard(left):
        return wildcard_pattern(left).match(unquote_literal(right)) is not None
    return unquote_literal(left).lower() == unquote_literal(right).lower()


class MatchEngine:
    """Decides whether vulnerable-software records match a target identifier."""

    def __init__(self, rules: MatchRules = DEFAULT_RULES):
        self.rules = rules

    @property
    def schema_version(self) -> str:
        return self.rules.schema_version

    def compare_update(self, left: Attribute, right: Attribute) -> bool:
        """Relaxed attribute comparison for the ``update`` attribute.

        On top of ``compare_attribute``, values that differ only by ``-``
        or ``_`` are equal, and an abbreviated alpha/beta/update value is
        equal to its spelled-out form (``b2`` and ``beta2``), in either
        direction.
        """
        if compare_attribute(left, right):
            return True
        if isinstance(left, LogicalValue) or isinstance(right, LogicalValue):
            return False

        lv = self.rules.strip_separators(unquote_literal(left).lower())
        rv = self.rules.strip_separators(unquote_literal(right).lower())
        if lv == rv:
            return True

        expanded = self.rules.expand_update(lv)
        if expanded is not None and expanded == rv:
            return True
        expanded = self.rules.expand_update(rv)
        return expanded is not None and expanded == lv

    def compare_version_range(self, record: VulnerableRecord, target_version: Attribute) -> bool:
        """Check a target version against the record's range bounds.

        Unparsable versions on either side yield ``False``.
        """
        if isinstance(target_version, LogicalValue):
            return False
        target = parse_version(unquote_literal(target_version))
        if target is None:
            logger.debug("Unparsable target version '%s'", target_version)
            return False

        checks = (
            (record.version_end_excluding, lambda bound: bound > target),
            (record.version_start_excluding, lambda bound: bound < target),
            (record.version_end_including, lambda bound: bound >= target),
            (record.version_start_including, lambda bound: bound <= target),
        )
        for raw, check in checks:
            if raw is None:
                continue
            bound = parse_version(raw)
            if bound is None:
                logger.debug("Unparsable version bound '%s' in %s", raw, record)
                return False
            if not check(bound):
                return False
        return True

    def compare_version(self, record: VulnerableRecord, target: Identifier) -> bool:
        version = record.identifier.version
        if version is LogicalValue.NA:
            return False
        if record.has_range:
            return self.compare_version_range(record, target.version)
        return compare_attribute(version, target.version)

    def _matches_attributes(self, record: VulnerableRecord, target: Identifier) -> bool:
        cpe = record.identifier
        if not compare_attribute(cpe.part, target.part):
            return False
        for name in ("vendor", "product"):
            if not compare_attribute(getattr(cpe, name), getattr(target, name)):
                return False
        if not self.compare_version(record, target):
            return False
        if not self.compare_update(cpe.update, target.update):
            return False
        for name in _PLAIN_ATTRIBUTES:
            if name in ("vendor", "product"):
                continue
            if not compare_attribute(getattr(cpe, name), getattr(target, name)):
                return False
        return True

    def matches(self, record: VulnerableRecord, target: Identifier) -> bool:
        """Return True when ``record`` matches ``target`` and is vulnerable.

        Args:
            record: Catalogued vulnerable-software record.
            target: Identifier under test.
        """
        return self._matches_attributes(record, target) and record.vulnerable

    def find_matches(self, records: Iterable[VulnerableRecord], target: Identifier) -> list[VulnerableRecord]:
        """Return the sorted records that match ``target``."""
        return sorted(r for r in records if self.matches(r, target))

    def is_affected(self, records: Iterable[VulnerableRecord], target: Identifier) -> bool:
        """Decide whether ``target`` is affected by a set of records for one CVE.

        The target is affected when some vulnerable record matches it and
        no record asserting non-vulnerability matches it as well.
        """
        vulnerable = False
        for record in records:
            if not self._matches_attributes(record, target):
                continue
            if not record.vulnerable:
                return False
            vulnerable = True
        return vulnerable


def find_vulnerabilities(
    store: VulnerabilityStore,
    target: Identifier,
    engine: MatchEngine | None = None,
) -> list[Finding]:
    """Look up every CVE in the catalog that affects ``target``.

    Args:
        store: Catalog to search.
        target: Identifier extracted from a scanned dependency.
        engine: Matching engine; defaults to one using ``DEFAULT_RULES``.

    Returns:
        Findings sorted by CVE id.
    """
    engine = engine or MatchEngine()
    by_cve: dict[str, list[VulnerableRecord]] = defaultdict(list)
    for cve_id, record in store.records_for(target.vendor, target.product):
        by_cve[cve_id].append(record)

    findings = []
    for cve_id, records in by_cve.items():
        if engine.is_affected(records, target):
            findings.append(Finding(cve_id=cve_id, records=tuple(engine.find_matches(records, target))))
    return sorted(findings)
