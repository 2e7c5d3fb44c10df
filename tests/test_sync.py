"""Unit tests for vulnsync.sync — diffing and the synchronization controller."""

import asyncio
import time

import pytest

from conftest import (
    DAY,
    NOW,
    REMOTE_TS,
    FakeFetcher,
    FakeProbe,
    cpe_match,
    cve_item,
    default_payloads,
    feed_bytes,
    feed_url,
)
from vulnsync.async_downloaders import AiohttpFeedFetcher
from vulnsync.config import SyncSettings
from vulnsync.downloaders import RequestsFeedProbe
from vulnsync.errors import SyncError
from vulnsync.feeds import BATCH, MODIFIED, FeedSource
from vulnsync.state import JsonSyncStateStore, SyncState
from vulnsync.store import CatalogStore, CveEntry
from vulnsync.sync import (
    DiffResult,
    SyncPhase,
    build_controller,
    compute_updates,
    delete_scratch_file,
    within_window,
)

YEARS = ("2013", "2014", "2015")
ALL_SOURCES = YEARS + (MODIFIED,)


def probed(timestamps: dict[str, int]) -> list[FeedSource]:
    return [FeedSource(id=k, url=feed_url(k), timestamp=v) for k, v in timestamps.items()]


def diff(sources, state, window=7):
    return compute_updates(sources, state, schema_version="1.0", freshness_window_days=window, now=NOW)


def stale_ids(result: DiffResult) -> list[str]:
    return [s.id for s in result.stale]


def synced_state(**overrides) -> dict[str, int]:
    """Watermarks of a catalog last synced well outside the freshness window."""
    marks = {k: REMOTE_TS - 30 * DAY for k in ALL_SOURCES}
    marks.update(overrides)
    return marks


# ── within_window ────────────────────────────────────────────────────────────


class TestWithinWindow:
    def test_recent(self):
        assert within_window(NOW - 2 * DAY, NOW, 7)

    def test_old(self):
        assert not within_window(NOW - 8 * DAY, NOW, 7)

    def test_boundary_is_outside(self):
        assert not within_window(NOW - 7 * DAY, NOW, 7)

    def test_zero_window(self):
        assert not within_window(NOW, NOW, 0)

    def test_never_synced(self):
        assert not within_window(0, NOW, 7)


# ── compute_updates ──────────────────────────────────────────────────────────


class TestComputeUpdates:
    def test_fresh_install_marks_everything(self):
        sources = probed({k: REMOTE_TS for k in ALL_SOURCES})
        result = diff(sources, SyncState())
        assert result.full_rebuild is True
        assert stale_ids(result) == list(ALL_SOURCES)

    def test_schema_mismatch_forces_rebuild(self):
        sources = probed({k: REMOTE_TS for k in ALL_SOURCES})
        state = SyncState({k: REMOTE_TS for k in ALL_SOURCES}, schema_version="0.9")
        result = diff(sources, state)
        assert result.full_rebuild is True
        assert stale_ids(result) == list(ALL_SOURCES)

    def test_modified_unchanged_means_nothing_to_do(self):
        sources = probed({"2013": REMOTE_TS, "2014": REMOTE_TS + 5, MODIFIED: REMOTE_TS})
        state = SyncState({"2013": 1, "2014": 2, MODIFIED: REMOTE_TS}, schema_version="1.0")
        result = diff(sources, state)
        assert not result.is_update_needed
        assert result.full_rebuild is False

    def test_within_window_only_modified(self):
        sources = probed({"2013": REMOTE_TS, "2014": REMOTE_TS, MODIFIED: NOW})
        state = SyncState({"2013": 1, "2014": 2, MODIFIED: NOW - 3 * DAY}, schema_version="1.0")
        assert stale_ids(diff(sources, state)) == [MODIFIED]

    def test_outside_window_checks_each_year(self):
        sources = probed({"2013": 100, "2014": 200, "2015": 300, MODIFIED: NOW})
        state = SyncState({"2013": 100, "2014": 199, MODIFIED: NOW - 10 * DAY}, schema_version="1.0")
        assert stale_ids(diff(sources, state)) == ["2014", "2015", MODIFIED]

    def test_zero_window_always_checks_years(self):
        sources = probed({"2013": 100, MODIFIED: NOW})
        state = SyncState({"2013": 99, MODIFIED: NOW - 1}, schema_version="1.0")
        assert stale_ids(diff(sources, state, window=0)) == ["2013", MODIFIED]

    def test_without_modified_source(self):
        sources = probed({"2013": 100, "2014": 200})
        state = SyncState({"2013": 100, "2014": 150}, schema_version="1.0")
        assert stale_ids(diff(sources, state)) == ["2014"]

    def test_inputs_are_not_mutated(self):
        sources = probed({"2013": 100, MODIFIED: NOW})
        state = SyncState({MODIFIED: 1}, schema_version="1.0")
        result = diff(sources, state)
        assert all(not s.needs_update for s in sources)
        assert result.sources[0] is not sources[0]
        assert dict(state.watermarks) == {MODIFIED: 1}

    def test_same_inputs_same_result(self):
        sources = probed({"2013": 100, "2014": 200, MODIFIED: NOW})
        state = SyncState({"2013": 100, MODIFIED: NOW - 20 * DAY}, schema_version="1.0")
        assert diff(sources, state) == diff(sources, state)

    def test_batch_changed_rebuilds(self):
        sources = probed({BATCH: 500, MODIFIED: NOW})
        state = SyncState({BATCH: 400, MODIFIED: NOW - DAY}, schema_version="1.0")
        result = diff(sources, state)
        assert result.full_rebuild is True
        assert stale_ids(result) == [BATCH, MODIFIED]

    def test_batch_unchanged_uses_modified_rules(self):
        sources = probed({BATCH: 500, MODIFIED: NOW})
        state = SyncState({BATCH: 500, MODIFIED: NOW - 20 * DAY}, schema_version="1.0")
        result = diff(sources, state)
        assert result.full_rebuild is False
        assert stale_ids(result) == [MODIFIED]


# ── SyncController: fresh install ────────────────────────────────────────────


class TestFreshInstall:
    def test_downloads_and_commits_everything(self, make_controller, state, store, fetcher):
        report = make_controller().run()

        assert sorted(fetcher.calls) == sorted(ALL_SOURCES)
        assert report.full_rebuild is True
        assert report.pool_size == 3
        assert report.phase is SyncPhase.IDLE
        assert sorted(report.updated) == sorted(ALL_SOURCES)
        assert report.updated[-1] == MODIFIED
        assert report.entries_imported == 4
        for source_id in ALL_SOURCES:
            assert state.get(source_id) == REMOTE_TS
        assert state.schema_version() == "1.0"
        assert set(e.cve_id for e in store.iter_entries()) == {
            "CVE-2013-0001",
            "CVE-2014-0001",
            "CVE-2015-0001",
            "CVE-2015-0002",
        }

    def test_pool_size_bounded_by_stale_count(self, make_controller, settings):
        small = settings.model_copy(update={"max_parallel_downloads": 8})
        report = make_controller(settings=small).run()
        assert report.pool_size == 4

    def test_concurrency_never_exceeds_pool(self, make_controller, settings):
        fetcher = FakeFetcher(delay=0.02)
        narrow = settings.model_copy(update={"max_parallel_downloads": 2})
        controller = make_controller(settings=narrow, fetcher=fetcher)
        report = controller.run()
        assert report.pool_size == 2
        assert fetcher.max_active <= 2
        assert controller.max_active_downloads <= 2

    def test_modified_watermark_written_last(self, make_controller, state):
        make_controller().run()
        assert state.puts[-1] == MODIFIED
        assert sorted(state.puts[:-1]) == list(YEARS)

    def test_resets_store_once(self, make_controller, store):
        make_controller().run()
        assert store.resets == 1

    def test_cleanup_runs_after_update(self, make_controller, store):
        make_controller().run()
        assert store.cleanups == 1

    def test_fetcher_closed(self, make_controller, fetcher):
        make_controller().run()
        assert fetcher.closed is True

    def test_scratch_files_removed(self, make_controller, fetcher):
        make_controller().run()
        assert fetcher.sinks
        assert not any(p.exists() for p in fetcher.sinks)


# ── SyncController: incremental runs ─────────────────────────────────────────


class TestIncrementalSync:
    def test_up_to_date_downloads_nothing(self, make_controller, state, store, fetcher):
        for k in ALL_SOURCES:
            state.put(k, REMOTE_TS)
        state.set_schema_version("1.0")
        state.puts.clear()

        report = make_controller().run()

        assert fetcher.calls == []
        assert report.updated == []
        assert report.pool_size == 0
        assert report.phase is SyncPhase.IDLE
        assert state.puts == []
        assert store.cleanups == 0

    def test_within_window_imports_only_modified(self, make_controller, state, fetcher):
        for k in YEARS:
            state.put(k, REMOTE_TS - 100)
        state.put(MODIFIED, NOW - 2 * DAY)
        state.set_schema_version("1.0")

        report = make_controller().run()

        assert fetcher.calls == [MODIFIED]
        assert report.updated == [MODIFIED]
        assert state.get(MODIFIED) == REMOTE_TS
        assert state.get("2013") == REMOTE_TS - 100

    def test_outside_window_imports_changed_years(self, make_controller, state, fetcher):
        for k, v in synced_state(**{"2013": REMOTE_TS}).items():
            state.put(k, v)
        state.set_schema_version("1.0")

        report = make_controller().run()

        assert sorted(fetcher.calls) == ["2014", "2015", MODIFIED]
        assert report.updated[-1] == MODIFIED
        assert report.full_rebuild is False

    def test_modified_applied_after_yearly(self, make_controller, fetcher, store):
        payloads = default_payloads()
        payloads[feed_url("2014")] = feed_bytes(
            cve_item("CVE-2014-0001", cpe_match("cpe:2.3:a:openssl:openssl:1.0.1:*:*:*:*:*:*:*")),
        )
        payloads[feed_url(MODIFIED)] = feed_bytes(
            cve_item("CVE-2014-0001", cpe_match("cpe:2.3:a:openssl:openssl:1.0.2:*:*:*:*:*:*:*")),
        )
        fetcher.payloads = payloads

        make_controller().run()

        records = store.get("CVE-2014-0001")
        assert [r.identifier.version for r in records] == ["1.0.2"]

    def test_rejected_cve_removed(self, make_controller, fetcher, store):
        fetcher.payloads[feed_url(MODIFIED)] = feed_bytes(cve_item("CVE-2013-0001", rejected=True))
        make_controller().run()
        assert "CVE-2013-0001" not in store

    def test_rerun_is_idempotent(self, make_controller, store, probe):
        make_controller().run()
        before = list(store.iter_entries())
        probe.default = REMOTE_TS + 1
        controller = make_controller()
        controller.clock = lambda: NOW + 30 * DAY
        controller.run()
        assert list(store.iter_entries()) == before

    def test_schema_mismatch_rebuilds_catalog(self, make_controller, state, store):
        store.upsert([CveEntry("CVE-1999-0001")])
        store.commit()
        for k in ALL_SOURCES:
            state.put(k, REMOTE_TS)
        state.set_schema_version("0.9")

        report = make_controller().run()

        assert report.full_rebuild is True
        assert "CVE-1999-0001" not in store
        assert state.schema_version() == "1.0"

    def test_legacy_payload_imported(self, make_controller, settings, fetcher, store):
        legacy = settings.model_copy(update={"legacy_modified_url": "https://feeds.test/legacy/modified.json.gz"})
        fetcher.payloads["https://feeds.test/legacy/modified.json.gz"] = feed_bytes(
            cve_item("CVE-2012-9999", cpe_match("cpe:2.3:a:php:php:5.4.0:*:*:*:*:*:*:*")),
        )
        make_controller(settings=legacy).run()
        assert "https://feeds.test/legacy/modified.json.gz" in fetcher.urls
        assert "CVE-2012-9999" in store
        assert "CVE-2015-0002" in store


# ── SyncController: failures ─────────────────────────────────────────────────


class TestFailures:
    def test_failed_download_keeps_watermarks(self, make_controller, settings, state):
        for k, v in synced_state().items():
            state.put(k, v)
        state.set_schema_version("1.0")
        old = synced_state()

        fetcher = FakeFetcher(failures={"2015": -1})

        async def wait_for_2013(source):
            if source.id != "2015":
                return
            deadline = time.monotonic() + 5
            while state.get("2013") != REMOTE_TS and time.monotonic() < deadline:
                await asyncio.sleep(0.005)

        fetcher.before_download = wait_for_2013
        serial = settings.model_copy(update={"max_parallel_downloads": 1})
        controller = make_controller(settings=serial, fetcher=fetcher)

        with pytest.raises(SyncError) as exc_info:
            controller.run()

        assert exc_info.value.failed_sources == ["2015"]
        assert fetcher.calls.count("2015") == settings.download_retries
        assert controller.phase is SyncPhase.FAILED
        assert controller.last_report.failed == ["2015"]
        assert state.get("2013") == REMOTE_TS
        assert state.get("2015") == old["2015"]
        assert state.get(MODIFIED) == old[MODIFIED]
        for source_id in YEARS:
            if source_id not in controller.last_report.updated:
                assert state.get(source_id) == old[source_id]

    def test_failed_download_skips_cleanup(self, make_controller, store):
        fetcher = FakeFetcher(failures={"2014": -1})
        with pytest.raises(SyncError):
            make_controller(fetcher=fetcher).run()
        assert store.cleanups == 0

    def test_retry_then_success(self, make_controller, state):
        fetcher = FakeFetcher(failures={"2014": 2})
        report = make_controller(fetcher=fetcher).run()
        assert fetcher.calls.count("2014") == 3
        assert "2014" in report.updated
        assert state.get("2014") == REMOTE_TS

    def test_probe_failure(self, make_controller, state, fetcher):
        controller = make_controller(probe=FakeProbe(failures={"2014"}))
        with pytest.raises(SyncError) as exc_info:
            controller.run()
        assert exc_info.value.failed_sources == ["2014"]
        assert controller.phase is SyncPhase.FAILED
        assert fetcher.calls == []
        assert state.snapshot().is_empty

    def test_corrupt_payload_fails_import(self, make_controller, fetcher, state):
        fetcher.payloads[feed_url("2014")] = b"this is not json"
        with pytest.raises(SyncError) as exc_info:
            make_controller().run()
        assert exc_info.value.failed_sources == ["2014"]
        assert state.get("2014") == 0
        assert state.get(MODIFIED) == 0

    def test_scratch_files_removed_on_failure(self, make_controller):
        fetcher = FakeFetcher(failures={"2013": -1})
        with pytest.raises(SyncError):
            make_controller(fetcher=fetcher).run()
        assert not any(p.exists() for p in fetcher.sinks)

    def test_unexpected_download_error_aborts(self, make_controller, state):
        fetcher = FakeFetcher()

        async def explode(source):
            if source.id == "2014":
                raise RuntimeError("disk on fire")

        fetcher.before_download = explode
        controller = make_controller(fetcher=fetcher)

        with pytest.raises(SyncError) as exc_info:
            controller.run()

        assert exc_info.value.failed_sources == ["2014"]
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert fetcher.calls.count("2014") == 1
        assert state.get(MODIFIED) == 0
        assert fetcher.closed
        assert not any(p.exists() for p in fetcher.sinks)

    def test_scratch_file_creation_error_aborts(self, make_controller, monkeypatch, fetcher):
        def no_space(*args, **kwargs):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr("vulnsync.sync.tempfile.mkstemp", no_space)
        with pytest.raises(SyncError) as exc_info:
            make_controller().run()
        assert exc_info.value.failed_sources
        assert fetcher.calls == []


# ── SyncController: cancellation ─────────────────────────────────────────────


class TestCancellation:
    def test_cancel_before_run(self, make_controller, probe, fetcher, state):
        controller = make_controller()
        controller.cancel()
        report = controller.run()
        assert report.cancelled is True
        assert probe.calls == []
        assert fetcher.calls == []
        assert state.snapshot().is_empty
        assert controller.phase is SyncPhase.IDLE

    def test_cancel_applies_to_one_run(self, make_controller, probe, state):
        controller = make_controller()
        controller.cancel()
        assert controller.run().cancelled is True

        report = controller.run()

        assert report.cancelled is False
        assert not controller.cancelled
        assert probe.calls
        assert state.get(MODIFIED) == REMOTE_TS
        assert sorted(report.updated) == sorted(ALL_SOURCES)

    def test_cancel_during_download(self, make_controller, settings, state, store):
        fetcher = FakeFetcher()
        serial = settings.model_copy(update={"max_parallel_downloads": 1})
        controller = make_controller(settings=serial, fetcher=fetcher)

        async def cancel_on_first(source):
            controller.cancel()

        fetcher.before_download = cancel_on_first
        report = controller.run()

        assert report.cancelled is True
        assert len(fetcher.calls) == 1
        assert report.updated == []
        assert sorted(report.skipped) == sorted(ALL_SOURCES)
        assert state.get(MODIFIED) == 0
        assert store.cleanups == 0
        assert not any(p.exists() for p in fetcher.sinks)


# ── Batch mode ───────────────────────────────────────────────────────────────


class TestBatchMode:
    def test_batch_rebuild(self, make_controller, settings, fetcher, state, store):
        batch = settings.model_copy(update={"batch_mode": True, "batch_url": feed_url(BATCH)})
        fetcher.payloads[feed_url(BATCH)] = feed_bytes(
            cve_item("CVE-2013-0001", cpe_match("cpe:2.3:a:apache:struts:2.3.1:*:*:*:*:*:*:*")),
            cve_item("CVE-2014-0001", cpe_match("cpe:2.3:a:openssl:openssl:1.0.1:*:*:*:*:*:*:*")),
        )
        report = make_controller(settings=batch).run()

        assert sorted(fetcher.calls) == [BATCH, MODIFIED]
        assert report.full_rebuild is True
        assert report.updated == [BATCH, MODIFIED]
        assert state.get(BATCH) == REMOTE_TS
        assert len(store) == 3


# ── Helpers ──────────────────────────────────────────────────────────────────


class TestDeleteScratchFile:
    def test_deletes(self, tmp_path):
        p = tmp_path / "scratch.feed"
        p.write_bytes(b"x")
        delete_scratch_file(p)
        assert not p.exists()

    def test_missing_is_fine(self, tmp_path):
        delete_scratch_file(tmp_path / "missing.feed")


class TestBuildController:
    def test_wires_reference_collaborators(self, tmp_path):
        controller = build_controller(SyncSettings(data_dir=tmp_path))
        assert isinstance(controller.state, JsonSyncStateStore)
        assert isinstance(controller.store, CatalogStore)
        assert isinstance(controller.probe, RequestsFeedProbe)
        assert isinstance(controller.fetcher, AiohttpFeedFetcher)
        assert controller.state.path == tmp_path / "sync_state.json"
        assert controller.phase is SyncPhase.IDLE

    def test_overrides(self, tmp_path):
        probe = FakeProbe()
        fetcher = FakeFetcher()
        controller = build_controller(SyncSettings(data_dir=tmp_path), probe=probe, fetcher=fetcher)
        assert controller.probe is probe
        assert controller.fetcher is fetcher

    def test_persists_catalog(self, tmp_path):
        settings = SyncSettings(
            start_year=2013,
            data_dir=tmp_path,
            year_url_template="https://feeds.test/nvd/nvdcve-1.1-{year}.json.gz",
            modified_url=feed_url(MODIFIED),
        )
        controller = build_controller(settings, probe=FakeProbe(), fetcher=FakeFetcher(), end_year=2015)
        controller.clock = lambda: NOW
        controller.run()
        reloaded = CatalogStore(settings.catalog_file)
        assert "CVE-2015-0002" in reloaded
