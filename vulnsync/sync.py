"""Feed synchronization controller.

Keeps the local vulnerability catalog in step with the remote feed:

1. **Probing**: fetch each source's remote last-modified timestamp.
2. **Diffing**: compare timestamps with the stored watermarks to decide
   which sources are stale (``compute_updates``, a pure function).
3. **Downloading**: fetch stale sources concurrently, bounded by
   ``max_parallel_downloads``; each download is retried before it is
   treated as fatal.
4. **Importing**: a single importer parses each downloaded source and
   writes it to the store, then advances that source's watermark.
5. **Committing**: the modified-feed watermark is advanced last and the
   store is cleaned up.

Usage::

    controller = build_controller(settings)
    report = controller.run()
"""

from __future__ import annotations

import asyncio
import atexit
import enum
import itertools
import logging
import os
import shutil
import tempfile
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Protocol

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .async_downloaders import AiohttpFeedFetcher
from .config import SyncSettings
from .downloaders import RequestsFeedProbe
from .errors import DownloadError, ProbeError, SyncError
from .feeds import BATCH, MODIFIED, FeedSource, build_feed_sources
from .matching import DEFAULT_RULES, MatchRules
from .parsers import FeedParser, NvdJsonFeedParser
from .state import JsonSyncStateStore, SyncState, SyncStateStore
from .store import CatalogStore, CveEntry, VulnerabilityStore

logger = logging.getLogger(__name__)

MILLIS_PER_DAY = 24 * 60 * 60 * 1000


class SyncPhase(enum.Enum):
    """States of a synchronization run."""

    IDLE = "idle"
    PROBING = "probing"
    DIFFING = "diffing"
    DOWNLOADING = "downloading"
    IMPORTING = "importing"
    COMMITTING = "committing"
    FAILED = "failed"


class FeedProbe(Protocol):
    def head_timestamp(self, source: FeedSource) -> int: ...


class FeedFetch(Protocol):
    async def download(self, source: FeedSource, sink: Path) -> None: ...

    async def aclose(self) -> None: ...


@dataclass(frozen=True)
class DiffResult:
    """Outcome of comparing remote timestamps with the stored state.

    Attributes:
        sources: Every probed source with ``needs_update`` set.
        full_rebuild: True when the catalog must be rebuilt from scratch.
    """

    sources: tuple[FeedSource, ...]
    full_rebuild: bool = False

    @property
    def stale(self) -> list[FeedSource]:
        return [s for s in self.sources if s.needs_update]

    @property
    def is_update_needed(self) -> bool:
        return any(s.needs_update for s in self.sources)


@dataclass
class SyncReport:
    """Summary of one synchronization run.

    Attributes:
        updated: Ids of sources imported and committed, in commit order.
        failed: Ids of sources whose download or import failed.
        skipped: Ids of sources that were stale but never imported because
            the run was cancelled or aborted.
        full_rebuild: Whether the run rebuilt the catalog from scratch.
        cancelled: Whether ``cancel()`` stopped the run early.
        pool_size: Number of concurrent download slots used.
        entries_imported: CVE entries written to the store.
        phase: Phase the controller ended in.
    """

    updated: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    full_rebuild: bool = False
    cancelled: bool = False
    pool_size: int = 0
    entries_imported: int = 0
    phase: SyncPhase = SyncPhase.IDLE


def within_window(watermark: int, now: int, days: int) -> bool:
    """True when ``watermark`` is less than ``days`` days before ``now`` (epoch ms)."""
    return (now - watermark) / MILLIS_PER_DAY < days


def compute_updates(
    sources: Sequence[FeedSource],
    state: SyncState,
    *,
    schema_version: str,
    freshness_window_days: int,
    now: int,
) -> DiffResult:
    """Decide which sources need to be downloaded.

    Pure function of its inputs: the returned sources are fresh copies
    and neither argument is modified.

    Args:
        sources: Probed sources (``timestamp`` set).
        state: Snapshot of the stored watermarks.
        schema_version: Matching-rule version of the running engine.
        freshness_window_days: How long the modified feed alone is trusted.
        now: Current time, epoch milliseconds.

    Returns:
        ``DiffResult`` with ``needs_update`` set on every stale source.
    """
    if state.schema_version != schema_version:
        logger.info(
            "Catalog schema version %s does not match %s; rebuilding",
            state.schema_version,
            schema_version,
        )
        return DiffResult(tuple(replace(s, needs_update=True) for s in sources), full_rebuild=True)

    by_id = {s.id: s for s in sources}
    batch = by_id.get(BATCH)
    if batch is not None and state.get(BATCH) != batch.timestamp:
        logger.info("Batch archive changed; rebuilding")
        return DiffResult(tuple(replace(s, needs_update=True) for s in sources), full_rebuild=True)

    modified = by_id.get(MODIFIED)

    def mark(predicate: Callable[[FeedSource], bool]) -> DiffResult:
        return DiffResult(tuple(replace(s, needs_update=predicate(s)) for s in sources))

    if modified is None:
        return mark(lambda s: s.is_yearly and state.get(s.id) != s.timestamp)

    last_modified = state.get(MODIFIED)
    if last_modified == modified.timestamp:
        return mark(lambda s: False)
    if within_window(last_modified, now, freshness_window_days):
        return mark(lambda s: s.is_modified)
    return mark(lambda s: s.is_modified or (s.is_yearly and state.get(s.id) != s.timestamp))


def delete_scratch_file(path: Path) -> None:
    """Remove a scratch file, falling back to removal at interpreter exit."""
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.debug("Could not delete %s now (%s); deferring to exit", path, e)
        atexit.register(_delete_quietly, path)


def _delete_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError:
        logger.debug("Could not delete %s at exit", path)


def _chunked(entries: Iterator[CveEntry], size: int) -> Iterator[list[CveEntry]]:
    while True:
        batch = list(itertools.islice(entries, size))
        if not batch:
            return
        yield batch


@dataclass
class _Downloaded:
    source: FeedSource
    paths: list[Path] = field(default_factory=list)
    error: BaseException | None = None
    skipped: bool = False


class SyncController:
    """Orchestrates one synchronization run at a time.

    Attributes:
        phase: Current ``SyncPhase``.
        last_report: Report of the most recent run (also set when it fails).
        max_active_downloads: Highest number of downloads observed in
            flight at once during the last run.
    """

    def __init__(
        self,
        settings: SyncSettings,
        state: SyncStateStore,
        store: VulnerabilityStore,
        *,
        probe: FeedProbe,
        fetcher: FeedFetch,
        parser: FeedParser | None = None,
        rules: MatchRules = DEFAULT_RULES,
        clock: Callable[[], int] | None = None,
        retry_wait=None,
        end_year: int | None = None,
    ):
        self.settings = settings
        self.state = state
        self.store = store
        self.probe = probe
        self.fetcher = fetcher
        self.parser = parser or NvdJsonFeedParser()
        self.rules = rules
        self.clock = clock or (lambda: int(time.time() * 1000))
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=30)
        self.end_year = end_year
        self.phase = SyncPhase.IDLE
        self.last_report: SyncReport | None = None
        self.max_active_downloads = 0
        self._cancel = threading.Event()
        self._abort = False
        self._active_downloads = 0
        self._rebuild_started = False
        self._errors: list[BaseException] = []

    # ─── Control ─────────────────────────────────────────────────────────

    def cancel(self) -> None:
        """Ask the running synchronization to stop.

        Before downloading starts nothing is changed.  Afterwards no new
        downloads are started, in-flight ones finish, and only sources
        already imported keep their new watermarks.  A cancel requested
        while idle stops the next run only.
        """
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _halted(self) -> bool:
        return self._abort or self._cancel.is_set()

    # ─── Probing & diffing ───────────────────────────────────────────────

    def probe_sources(self) -> list[FeedSource]:
        """Build the configured sources and probe their remote timestamps.

        Raises:
            SyncError: if a source's timestamp cannot be retrieved.
        """
        sources = build_feed_sources(self.settings, self.end_year)
        probed = []
        for source in sources:
            try:
                probed.append(replace(source, timestamp=self.probe.head_timestamp(source)))
            except ProbeError as e:
                raise SyncError(f"Unable to retrieve the timestamp of {source.id}: {e}", [source.id]) from e
        return probed

    def diff(self, sources: Sequence[FeedSource]) -> DiffResult:
        """Compare probed sources with the stored watermarks."""
        return compute_updates(
            sources,
            self.state.snapshot(),
            schema_version=self.rules.schema_version,
            freshness_window_days=self.settings.freshness_window_days,
            now=self.clock(),
        )

    # ─── Run ─────────────────────────────────────────────────────────────

    def run(self) -> SyncReport:
        """Run a synchronization to completion.

        Returns:
            ``SyncReport`` describing what was updated.

        Raises:
            SyncError: if probing, a download or an import failed.  Sources
                committed before the failure keep their new watermarks.
        """
        return asyncio.run(self.run_async())

    async def run_async(self) -> SyncReport:
        self._abort = False
        self._rebuild_started = False
        self._errors = []
        self.max_active_downloads = 0
        report = SyncReport()
        self.last_report = report
        try:
            return await self._run(report)
        except SyncError as e:
            report.failed = list(e.failed_sources)
            self.phase = SyncPhase.FAILED
            report.phase = self.phase
            raise
        finally:
            self._cancel.clear()
            await self.fetcher.aclose()

    async def _run(self, report: SyncReport) -> SyncReport:
        if self.cancelled:
            report.cancelled = True
            return self._finish(report, SyncPhase.IDLE)

        self.phase = SyncPhase.PROBING
        sources = await asyncio.to_thread(self.probe_sources)

        self.phase = SyncPhase.DIFFING
        diff = self.diff(sources)
        report.full_rebuild = diff.full_rebuild
        stale = diff.stale
        if not stale:
            logger.info("Vulnerability catalog is up to date")
            return self._finish(report, SyncPhase.IDLE)
        if self.cancelled:
            report.cancelled = True
            report.skipped = [s.id for s in stale]
            return self._finish(report, SyncPhase.IDLE)

        if len(stale) > 3:
            logger.info("Feed requires several updates; this could take a couple of minutes")

        modified = next((s for s in stale if s.is_modified), None)
        imported_modified = await self._download_and_import(stale, diff, report)

        self.phase = SyncPhase.COMMITTING
        if report.failed:
            self._raise_failure(report)
        if report.cancelled:
            return self._finish(report, SyncPhase.IDLE)

        if modified is not None and imported_modified:
            self.state.put(MODIFIED, modified.timestamp)
            report.updated.append(MODIFIED)
        if diff.full_rebuild:
            self.state.set_schema_version(self.rules.schema_version)
        if report.updated:
            removed = self.store.cleanup()
            if removed:
                logger.info("Removed %d CVEs without records", removed)
        logger.info("Synchronization complete: %d source(s) updated", len(report.updated))
        return self._finish(report, SyncPhase.IDLE)

    def _finish(self, report: SyncReport, phase: SyncPhase) -> SyncReport:
        self.phase = phase
        report.phase = phase
        return report

    def _raise_failure(self, report: SyncReport) -> None:
        cause = self._errors[0] if self._errors else None
        raise SyncError("Synchronization aborted", report.failed) from cause

    # ─── Downloading ─────────────────────────────────────────────────────

    async def _download_and_import(self, stale: list[FeedSource], diff: DiffResult, report: SyncReport) -> bool:
        """Download stale sources concurrently and import them one at a time.

        Returns:
            True when the modified source was imported.
        """
        pool_size = min(self.settings.max_parallel_downloads, len(stale))
        report.pool_size = pool_size
        logger.debug("Download pool size: %d", pool_size)

        scratch = Path(tempfile.mkdtemp(prefix="vulnsync_"))
        semaphore = asyncio.Semaphore(pool_size)
        queue: asyncio.Queue[_Downloaded] = asyncio.Queue()
        self.phase = SyncPhase.DOWNLOADING
        tasks = [asyncio.create_task(self._download(s, scratch, semaphore, queue)) for s in stale]
        try:
            return await self._import_all(queue, len(stale), diff, report)
        finally:
            await asyncio.gather(*tasks, return_exceptions=True)
            while not queue.empty():
                self._discard(queue.get_nowait())
            shutil.rmtree(scratch, ignore_errors=True)

    async def _download(
        self,
        source: FeedSource,
        scratch: Path,
        semaphore: asyncio.Semaphore,
        queue: asyncio.Queue,
    ) -> None:
        async with semaphore:
            if self._halted():
                await queue.put(_Downloaded(source, skipped=True))
                return
            self._active_downloads += 1
            self.max_active_downloads = max(self.max_active_downloads, self._active_downloads)
            item = _Downloaded(source)
            try:
                logger.info("Download started for %s", source.id)
                if source.legacy_url:
                    item.paths.append(await self._fetch(replace(source, url=source.legacy_url), scratch))
                item.paths.append(await self._fetch(source, scratch))
                logger.info("Download complete for %s", source.id)
            except Exception as e:
                logger.error("Download failed for %s: %s", source.id, e)
                item.error = e
                self._abort = True
            finally:
                self._active_downloads -= 1
                # the importer waits for one item per source
                queue.put_nowait(item)

    async def _fetch(self, source: FeedSource, scratch: Path) -> Path:
        sink: Path | None = None
        try:
            fd, name = tempfile.mkstemp(prefix=f"nvd_{source.id}_", suffix=".feed", dir=scratch)
            os.close(fd)
            sink = Path(name)
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.settings.download_retries),
                wait=self.retry_wait,
                retry=retry_if_exception_type(DownloadError),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning("Retrying download of %s (attempt %d)", source.id, attempt.retry_state.attempt_number)
                    await self.fetcher.download(source, sink)
        except Exception:
            if sink is not None:
                delete_scratch_file(sink)
            raise
        return sink

    # ─── Importing ───────────────────────────────────────────────────────

    async def _import_all(self, queue: asyncio.Queue, count: int, diff: DiffResult, report: SyncReport) -> bool:
        pending_modified: _Downloaded | None = None
        for _ in range(count):
            item = await queue.get()
            if item.error is not None:
                report.failed.append(item.source.id)
                self._errors.append(item.error)
                self._discard(item)
                continue
            if item.skipped or self._halted():
                report.skipped.append(item.source.id)
                self._discard(item)
                continue
            if item.source.is_modified:
                # the delta is imported only after every other source
                pending_modified = item
                continue
            await self._import_item(item, diff, report, commit_watermark=True)

        if pending_modified is None:
            self._mark_cancelled(report)
            return False
        if self._halted():
            report.skipped.append(MODIFIED)
            self._discard(pending_modified)
            self._mark_cancelled(report)
            return False
        return await self._import_item(pending_modified, diff, report, commit_watermark=False)

    def _mark_cancelled(self, report: SyncReport) -> None:
        if self.cancelled:
            report.cancelled = True

    async def _import_item(self, item: _Downloaded, diff: DiffResult, report: SyncReport, commit_watermark: bool) -> bool:
        self.phase = SyncPhase.IMPORTING
        try:
            report.entries_imported += await asyncio.to_thread(self._import_source, item, diff, commit_watermark)
        except Exception as e:
            logger.error("Import failed for %s: %s", item.source.id, e)
            self.store.rollback()
            report.failed.append(item.source.id)
            self._errors.append(e)
            self._abort = True
            return False
        finally:
            self._discard(item)
        if commit_watermark:
            report.updated.append(item.source.id)
        return True

    def _import_source(self, item: _Downloaded, diff: DiffResult, commit_watermark: bool) -> int:
        """Parse a downloaded source into the store and advance its watermark.

        Runs in a worker thread; only one import runs at a time.
        """
        source = item.source
        logger.info("Processing started for %s", source.id)
        started = time.monotonic()
        if diff.full_rebuild and not self._rebuild_started:
            self.store.reset()
            self.state.clear()

        count = 0
        for path in item.paths:
            for batch in _chunked(self.parser.parse(path), self.settings.import_batch_size):
                count += self.store.upsert(batch)
        self.store.commit()

        if diff.full_rebuild and not self._rebuild_started:
            self._rebuild_started = True
            self.state.set_schema_version(self.rules.schema_version)
        if commit_watermark:
            self.state.put(source.id, source.timestamp)
        logger.info(
            "Processing complete for %s: %d entries (%.1fs)",
            source.id,
            count,
            time.monotonic() - started,
        )
        return count

    def _discard(self, item: _Downloaded) -> None:
        for path in item.paths:
            delete_scratch_file(path)
        item.paths = []


def build_controller(settings: SyncSettings, **kwargs) -> SyncController:
    """Create a controller wired to the reference collaborators.

    The state file and catalog live under ``settings.data_dir``.
    """
    return SyncController(
        settings,
        JsonSyncStateStore(settings.state_file),
        CatalogStore(settings.catalog_file),
        probe=kwargs.pop("probe", None) or RequestsFeedProbe(timeout=settings.timeout),
        fetcher=kwargs.pop("fetcher", None) or AiohttpFeedFetcher.from_settings(settings),
        **kwargs,
    )
