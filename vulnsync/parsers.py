"""NVD feed parsing.

Turns a downloaded NVD JSON feed (schema 1.1 ``CVE_Items`` or the 2.0
``vulnerabilities`` layout; plain, gzip or zip) into ``CveEntry`` values.
No network calls; input is a local file.
"""

import gzip
import io
import json
import logging
import zipfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any, Protocol

from .errors import CpeValidationError
from .records import VulnerableRecord
from .store import CveEntry

logger = logging.getLogger(__name__)

_GZIP_MAGIC = b"\x1f\x8b"
_ZIP_MAGIC = b"PK"


class FeedParser(Protocol):
    """Turns a downloaded payload into a lazy sequence of CVE entries."""

    def parse(self, path: Path) -> Iterator[CveEntry]: ...


def read_feed_document(path: Path) -> dict[str, Any]:
    """Load a JSON feed document, transparently handling gzip and zip.

    Args:
        path: Downloaded payload.

    Returns:
        The decoded JSON document.
    """
    with path.open("rb") as f:
        head = f.read(2)
    if head == _GZIP_MAGIC:
        with gzip.open(path, "rb") as gz:
            return json.loads(gz.read().decode("utf-8", errors="replace"))
    if head == _ZIP_MAGIC:
        with zipfile.ZipFile(path) as zf:
            names = [n for n in zf.namelist() if n.endswith(".json")] or zf.namelist()
            with zf.open(names[0]) as member:
                return json.load(io.TextIOWrapper(member, encoding="utf-8", errors="replace"))
    with path.open("r", encoding="utf-8", errors="replace") as f:
        return json.load(f)


def iter_cpe_matches(nodes: list[dict[str, Any]]) -> Iterator[dict[str, Any]]:
    """Yield every ``cpe_match``/``cpeMatch`` dict in a configuration tree."""
    for node in nodes or []:
        if not isinstance(node, dict):
            continue
        for match in node.get("cpe_match") or node.get("cpeMatch") or []:
            if isinstance(match, dict):
                yield match
        yield from iter_cpe_matches(node.get("children") or [])


def _description_is_rejected(descriptions: list[dict[str, Any]]) -> bool:
    for d in descriptions or []:
        if isinstance(d, dict) and str(d.get("value", "")).startswith("** REJECT **"):
            return True
    return False


class NvdJsonFeedParser:
    """Parses NVD JSON feeds into ``CveEntry`` values.

    Rejected CVEs are emitted with no records so the store drops their
    previous records.  A ``cpe_match`` entry with a malformed CPE is
    logged and left out of its CVE; the rest of the feed still imports.

    Attributes:
        skipped: Number of malformed ``cpe_match`` entries seen by the most
            recent ``parse()`` call.
    """

    def __init__(self) -> None:
        self.skipped = 0

    def parse(self, path: Path) -> Iterator[CveEntry]:
        self.skipped = 0
        document = read_feed_document(path)
        if "CVE_Items" in document:
            for item in document.get("CVE_Items") or []:
                entry = self._parse_v11(item)
                if entry is not None:
                    yield entry
        else:
            for item in document.get("vulnerabilities") or []:
                entry = self._parse_v20(item)
                if entry is not None:
                    yield entry

    def _build(self, cve_id: str, matches: Iterator[dict[str, Any]]) -> CveEntry:
        records = set()
        for match in matches:
            try:
                records.add(VulnerableRecord.from_dict(match))
            except CpeValidationError as e:
                self.skipped += 1
                logger.warning("Skipping malformed CPE in %s: %s", cve_id, e)
        return CveEntry(cve_id=cve_id, records=tuple(sorted(records)))

    def _parse_v11(self, item: Any) -> CveEntry | None:
        if not isinstance(item, dict):
            return None
        cve = item.get("cve") or {}
        cve_id = ((cve.get("CVE_data_meta") or {}).get("ID") or "").strip().upper()
        if not cve_id.startswith("CVE-"):
            return None
        descriptions = (cve.get("description") or {}).get("description_data") or []
        if _description_is_rejected(descriptions):
            return CveEntry(cve_id=cve_id)
        nodes = (item.get("configurations") or {}).get("nodes") or []
        return self._build(cve_id, iter_cpe_matches(nodes))

    def _parse_v20(self, item: Any) -> CveEntry | None:
        if not isinstance(item, dict):
            return None
        cve = item.get("cve") or {}
        cve_id = (cve.get("id") or "").strip().upper()
        if not cve_id.startswith("CVE-"):
            return None
        if cve.get("vulnStatus") == "Rejected" or _description_is_rejected(cve.get("descriptions") or []):
            return CveEntry(cve_id=cve_id)
        nodes = []
        for config in cve.get("configurations") or []:
            if isinstance(config, dict):
                nodes.extend(config.get("nodes") or [])
        return self._build(cve_id, iter_cpe_matches(nodes))
