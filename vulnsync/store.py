"""Vulnerability catalog storage.

``VulnerabilityStore`` is the write path the sync controller imports
into.  ``CatalogStore`` is a reference implementation that keeps the
catalog in memory, stages writes until ``commit()``, and optionally
persists committed state to a JSON file (write-then-rename).
"""

import json
import logging
from collections import defaultdict
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from .cpe import Attribute, LogicalValue, has_wildcard, unquote_literal
from .errors import CpeValidationError
from .records import VulnerableRecord

logger = logging.getLogger(__name__)

CATALOG_FORMAT = 1


@dataclass(frozen=True)
class CveEntry:
    """One CVE and the vulnerable-software records parsed for it.

    Attributes:
        cve_id: The CVE identifier (e.g. ``CVE-2024-12345``).
        records: The CVE's records, sorted and de-duplicated.
    """

    cve_id: str
    records: tuple[VulnerableRecord, ...] = ()


class VulnerabilityStore(Protocol):
    """Durable catalog write path used by the sync controller."""

    def upsert(self, entries: Iterable[CveEntry]) -> int: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...

    def cleanup(self) -> int: ...

    def reset(self) -> None: ...

    def records_for(self, vendor: Attribute, product: Attribute) -> Iterator[tuple[str, VulnerableRecord]]: ...


def _index_key(value: Attribute) -> str | None:
    if isinstance(value, LogicalValue) or has_wildcard(value):
        return None
    return unquote_literal(value).lower()


class CatalogStore:
    """In-memory catalog with staged writes and optional JSON persistence.

    Upserting a CVE replaces its whole record set, so importing the same
    feed twice leaves the catalog unchanged.

    Attributes:
        path: Optional file the committed catalog is written to.
    """

    def __init__(self, path: Path | None = None):
        self.path = path
        self._committed: dict[str, tuple[VulnerableRecord, ...]] = {}
        self._staged: dict[str, tuple[VulnerableRecord, ...]] = {}
        self._reset_pending = False
        self._index: dict[tuple[str | None, str | None], set[str]] = defaultdict(set)
        if path is not None and path.exists():
            self._committed = self._load(path)
        self._rebuild_index()

    @staticmethod
    def _load(path: Path) -> dict[str, tuple[VulnerableRecord, ...]]:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        if data.get("format") != CATALOG_FORMAT:
            logger.warning("Catalog %s has an unknown format, starting empty", path)
            return {}
        out: dict[str, tuple[VulnerableRecord, ...]] = {}
        for cve_id, items in (data.get("cves") or {}).items():
            out[cve_id] = tuple(sorted(set(VulnerableRecord.from_dict(item) for item in items)))
        return out

    def _rebuild_index(self) -> None:
        self._index = defaultdict(set)
        for cve_id, records in self._committed.items():
            for record in records:
                key = (_index_key(record.identifier.vendor), _index_key(record.identifier.product))
                self._index[key].add(cve_id)

    def __len__(self) -> int:
        return len(self._committed)

    def __contains__(self, cve_id: object) -> bool:
        return cve_id in self._committed

    def get(self, cve_id: str) -> tuple[VulnerableRecord, ...]:
        return self._committed.get(cve_id, ())

    def upsert(self, entries: Iterable[CveEntry]) -> int:
        """Stage CVE entries; each replaces any existing records for the CVE.

        Returns:
            Number of entries staged.
        """
        count = 0
        for entry in entries:
            if not entry.cve_id:
                raise CpeValidationError("CVE entry has no id")
            self._staged[entry.cve_id] = tuple(sorted(set(entry.records)))
            count += 1
        return count

    def commit(self) -> None:
        """Make staged writes visible and durable."""
        if self._reset_pending:
            self._committed = {}
            self._reset_pending = False
        self._committed.update(self._staged)
        self._staged = {}
        self._rebuild_index()
        if self.path is not None:
            self._save()

    def rollback(self) -> None:
        """Discard staged writes."""
        self._staged = {}
        self._reset_pending = False

    def reset(self) -> None:
        """Drop the whole catalog at the next commit (full rebuild)."""
        self._staged = {}
        self._reset_pending = True

    def cleanup(self) -> int:
        """Remove CVEs that no longer carry any records.

        Returns:
            Number of CVEs removed.
        """
        empty = [cve_id for cve_id, records in self._committed.items() if not records]
        for cve_id in empty:
            del self._committed[cve_id]
        if empty:
            self._rebuild_index()
            if self.path is not None:
                self._save()
        return len(empty)

    def records_for(self, vendor: Attribute, product: Attribute) -> Iterator[tuple[str, VulnerableRecord]]:
        """Yield ``(cve_id, record)`` candidates for a vendor/product pair.

        Records whose vendor or product is a wildcard are always included;
        final filtering is left to the matching engine.
        """
        v = _index_key(vendor)
        p = _index_key(product)
        if v is None or p is None:
            cve_ids = set(self._committed)
        else:
            cve_ids = set()
            for key in ((v, p), (v, None), (None, p), (None, None)):
                cve_ids.update(self._index.get(key, ()))
        for cve_id in sorted(cve_ids):
            for record in self._committed[cve_id]:
                yield cve_id, record

    def iter_entries(self) -> Iterator[CveEntry]:
        for cve_id in sorted(self._committed):
            yield CveEntry(cve_id=cve_id, records=self._committed[cve_id])

    def _save(self) -> None:
        data: dict[str, Any] = {
            "format": CATALOG_FORMAT,
            "cves": {
                cve_id: [r.to_dict() for r in records] for cve_id, records in sorted(self._committed.items())
            },
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        tmp.replace(self.path)
