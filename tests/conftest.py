"""Shared fixtures: NVD feed builders and fake network collaborators."""

import asyncio
import gzip
import json
from pathlib import Path
from typing import Any

import pytest
from tenacity import wait_none

from vulnsync.config import SyncSettings
from vulnsync.errors import DownloadError, ProbeError
from vulnsync.feeds import FeedSource
from vulnsync.state import JsonSyncStateStore
from vulnsync.store import CatalogStore
from vulnsync.sync import SyncController

NOW = 1_700_000_000_000
DAY = 24 * 60 * 60 * 1000
REMOTE_TS = NOW - DAY
FEED_BASE = "https://feeds.test/nvd"


def feed_url(source_id: str) -> str:
    return f"{FEED_BASE}/nvdcve-1.1-{source_id}.json.gz"


# ── Feed builders ────────────────────────────────────────────────────────────


def cpe_match(cpe: str, vulnerable: bool = True, **bounds: str) -> dict[str, Any]:
    return {"vulnerable": vulnerable, "cpe23Uri": cpe, **bounds}


def cve_item(cve_id: str, *matches: dict[str, Any], rejected: bool = False, children=None) -> dict[str, Any]:
    description = "** REJECT ** Duplicate entry." if rejected else f"Description of {cve_id}"
    return {
        "cve": {
            "data_type": "CVE",
            "CVE_data_meta": {"ID": cve_id, "ASSIGNER": "cve@mitre.org"},
            "description": {"description_data": [{"lang": "en", "value": description}]},
        },
        "configurations": {
            "CVE_data_version": "4.0",
            "nodes": [
                {
                    "operator": "OR",
                    "cpe_match": list(matches),
                    "children": children or [],
                }
            ],
        },
    }


def feed_document(*items: dict[str, Any]) -> dict[str, Any]:
    return {
        "CVE_data_type": "CVE",
        "CVE_data_format": "MITRE",
        "CVE_data_version": "4.0",
        "CVE_data_numberOfCVEs": str(len(items)),
        "CVE_Items": list(items),
    }


def feed_bytes(*items: dict[str, Any]) -> bytes:
    return gzip.compress(json.dumps(feed_document(*items)).encode("utf-8"))


def default_payloads() -> dict[str, bytes]:
    return {
        feed_url("2013"): feed_bytes(
            cve_item("CVE-2013-0001", cpe_match("cpe:2.3:a:apache:struts:2.3.1:*:*:*:*:*:*:*")),
        ),
        feed_url("2014"): feed_bytes(
            cve_item(
                "CVE-2014-0001",
                cpe_match("cpe:2.3:a:openssl:openssl:*:*:*:*:*:*:*:*", versionStartIncluding="1.0.1", versionEndExcluding="1.0.1g"),
            ),
        ),
        feed_url("2015"): feed_bytes(
            cve_item("CVE-2015-0001", cpe_match("cpe:2.3:a:oracle:mysql:5.6.20:*:*:*:*:*:*:*")),
        ),
        feed_url("modified"): feed_bytes(
            cve_item("CVE-2015-0002", cpe_match("cpe:2.3:a:apache:tomcat:8.0.1:*:*:*:*:*:*:*")),
        ),
    }


# ── Fake collaborators ───────────────────────────────────────────────────────


class FakeProbe:
    """Returns canned remote timestamps; ids in ``failures`` raise ProbeError."""

    def __init__(self, timestamps: dict[str, int] | None = None, default: int = REMOTE_TS, failures=()):
        self.timestamps = timestamps or {}
        self.default = default
        self.failures = set(failures)
        self.calls: list[str] = []

    def head_timestamp(self, source: FeedSource) -> int:
        self.calls.append(source.id)
        if source.id in self.failures:
            raise ProbeError("HEAD failed", source.id, source.url)
        return self.timestamps.get(source.id, self.default)


class FakeFetcher:
    """Writes canned payloads to the sink.

    ``failures`` maps a source id to the number of attempts that fail
    before the download succeeds; ``-1`` fails every attempt.
    """

    def __init__(self, payloads: dict[str, bytes] | None = None, failures=None, delay: float = 0.0):
        self.payloads = default_payloads() if payloads is None else payloads
        self.failures = dict(failures or {})
        self.delay = delay
        self.before_download = None
        self.calls: list[str] = []
        self.urls: list[str] = []
        self.sinks: list[Path] = []
        self.active = 0
        self.max_active = 0
        self.closed = False

    async def download(self, source: FeedSource, sink: Path) -> None:
        self.calls.append(source.id)
        self.urls.append(source.url)
        self.sinks.append(sink)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.before_download is not None:
                await self.before_download(source)
            await asyncio.sleep(self.delay)
            remaining = self.failures.get(source.id, 0)
            if remaining:
                if remaining > 0:
                    self.failures[source.id] = remaining - 1
                raise DownloadError("connection reset", source.id, source.url)
            sink.write_bytes(self.payloads[source.url])
        finally:
            self.active -= 1

    async def aclose(self) -> None:
        self.closed = True


class RecordingStateStore(JsonSyncStateStore):
    """State store that remembers the order watermarks were written in."""

    def __init__(self, path: Path):
        super().__init__(path)
        self.puts: list[str] = []

    def put(self, source_id: str, timestamp: int) -> None:
        self.puts.append(source_id)
        super().put(source_id, timestamp)


class RecordingCatalogStore(CatalogStore):
    def __init__(self, path: Path | None = None):
        super().__init__(path)
        self.cleanups = 0
        self.resets = 0

    def cleanup(self) -> int:
        self.cleanups += 1
        return super().cleanup()

    def reset(self) -> None:
        self.resets += 1
        super().reset()


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def settings(tmp_path):
    return SyncSettings(
        start_year=2013,
        data_dir=tmp_path / "data",
        year_url_template=FEED_BASE + "/nvdcve-1.1-{year}.json.gz",
        modified_url=feed_url("modified"),
        max_parallel_downloads=3,
    )


@pytest.fixture
def state(tmp_path):
    return RecordingStateStore(tmp_path / "state" / "sync_state.json")


@pytest.fixture
def store():
    return RecordingCatalogStore()


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def make_controller(settings, state, store, probe, fetcher):
    """Build a controller over the fakes; keyword arguments override them."""

    def _make(**overrides) -> SyncController:
        return SyncController(
            overrides.pop("settings", settings),
            overrides.pop("state", state),
            overrides.pop("store", store),
            probe=overrides.pop("probe", probe),
            fetcher=overrides.pop("fetcher", fetcher),
            clock=lambda: NOW,
            retry_wait=wait_none(),
            end_year=overrides.pop("end_year", 2015),
            **overrides,
        )

    return _make
