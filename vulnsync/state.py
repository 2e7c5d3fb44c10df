"""Persistent synchronization watermarks.

Tracks, per feed source, the remote timestamp that was last imported
successfully, plus the matching-rule schema version the catalog was
built with.  State is kept in a JSON file and every update is saved
atomically, so a crash between download and commit leaves the previous
watermarks in place.
"""

import datetime as dt
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncState:
    """Immutable snapshot of the local watermarks.

    Attributes:
        watermarks: Feed source id → epoch milliseconds last imported.
        schema_version: Matching-rule version the catalog was built with,
            ``None`` for a fresh install.
    """

    watermarks: Mapping[str, int] = field(default_factory=dict)
    schema_version: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "watermarks", MappingProxyType(dict(self.watermarks)))

    def get(self, source_id: str) -> int:
        return self.watermarks.get(source_id, 0)

    @property
    def is_empty(self) -> bool:
        return not self.watermarks and self.schema_version is None


class SyncStateStore(Protocol):
    """Small key/value persistence for watermarks."""

    def get(self, source_id: str) -> int: ...

    def put(self, source_id: str, timestamp: int) -> None: ...

    def schema_version(self) -> str | None: ...

    def set_schema_version(self, version: str) -> None: ...

    def clear(self) -> None: ...

    def snapshot(self) -> SyncState: ...


class JsonSyncStateStore:
    """Watermark store backed by a JSON file.

    The file carries its own format version; a file in an unknown format
    or one that cannot be parsed is treated as empty, which forces a full
    rebuild on the next run.

    Attributes:
        path: Path to the state JSON file.
        data: In-memory state dictionary.
    """

    FORMAT_VERSION = 1

    def __init__(self, path: Path):
        self.path = path
        self.data = self._load()

    def _load(self) -> dict[str, Any]:
        """Load state from file, or create empty state."""
        if self.path.exists():
            try:
                with self.path.open("r", encoding="utf-8") as f:
                    data = json.load(f)
                if data.get("format_version") != self.FORMAT_VERSION:
                    logger.warning("Sync state format mismatch in %s, resetting state", self.path)
                    return self._empty_state()
                if not isinstance(data.get("watermarks"), dict):
                    raise KeyError("watermarks")
                return data
            except (json.JSONDecodeError, KeyError, AttributeError) as e:
                logger.warning("Could not load sync state file %s (%s), starting fresh", self.path, e)
                return self._empty_state()
        return self._empty_state()

    def _empty_state(self) -> dict[str, Any]:
        """Create empty state structure."""
        return {
            "format_version": self.FORMAT_VERSION,
            "schema_version": None,
            "last_run": None,
            "watermarks": {},
        }

    def save(self) -> None:
        """Save state to file atomically (write-then-rename)."""
        self.data["last_run"] = dt.datetime.now(dt.timezone.utc).isoformat()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(self.data, f, indent=2, sort_keys=True)
        tmp.replace(self.path)

    def get(self, source_id: str) -> int:
        """Return the stored watermark for a source (0 when unknown).

        A watermark that is not an integer is logged and treated as 0.
        """
        raw = self.data["watermarks"].get(source_id, 0)
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.debug("Invalid watermark %r for source %s", raw, source_id)
            return 0

    def put(self, source_id: str, timestamp: int) -> None:
        """Record a new watermark for a source and save immediately."""
        self.data["watermarks"][source_id] = int(timestamp)
        self.save()

    def schema_version(self) -> str | None:
        value = self.data.get("schema_version")
        return str(value) if value is not None else None

    def set_schema_version(self, version: str) -> None:
        self.data["schema_version"] = version
        self.save()

    def clear(self) -> None:
        """Forget every watermark and the schema version."""
        self.data = self._empty_state()
        self.save()

    def snapshot(self) -> SyncState:
        """Return an immutable copy of the current state."""
        return SyncState(
            watermarks={k: self.get(k) for k in self.data["watermarks"]},
            schema_version=self.schema_version(),
        )

    def get_stats(self) -> dict[str, Any]:
        """Get summary information.

        Returns:
            Dict with ``sources``, ``schema_version`` and ``last_run`` keys.
        """
        return {
            "sources": len(self.data["watermarks"]),
            "schema_version": self.schema_version(),
            "last_run": self.data.get("last_run"),
        }
