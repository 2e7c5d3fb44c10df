"""Feed source descriptions.

A ``FeedSource`` describes one remote partition of the vulnerability
feed: a yearly archive, the ``modified`` delta, or the consolidated
``batch`` archive.  Sources are rebuilt on every synchronization run;
only their watermarks are persisted.
"""

import datetime as dt
from collections.abc import Iterator
from dataclasses import dataclass

from .config import SyncSettings

MODIFIED = "modified"
BATCH = "batch"


@dataclass(frozen=True)
class FeedSource:
    """One remote feed partition.

    Attributes:
        id: A year (``"2015"``), ``"modified"`` or ``"batch"``.
        url: Location of the payload.
        legacy_url: Optional older-schema companion payload.
        timestamp: Remote last-modified time, epoch milliseconds
            (0 until probed).
        needs_update: Set while diffing; True when the source is stale.
    """

    id: str
    url: str
    legacy_url: str | None = None
    timestamp: int = 0
    needs_update: bool = False

    @property
    def is_modified(self) -> bool:
        return self.id == MODIFIED

    @property
    def is_yearly(self) -> bool:
        return self.id.isdigit()


def years_to_sync(start_year: int, end_year: int | None = None) -> list[int]:
    """Generate the list of yearly archives to synchronize.

    Args:
        start_year: Inclusive lower bound.
        end_year: Inclusive upper bound (defaults to the current year).

    Returns:
        Sorted list of years; empty when ``end_year < start_year``.
    """
    if end_year is None:
        end_year = dt.datetime.now(dt.timezone.utc).year
    if end_year < start_year:
        return []
    return list(range(start_year, end_year + 1))


def build_feed_sources(settings: SyncSettings, end_year: int | None = None) -> list[FeedSource]:
    """Build the configured feed sources in import order.

    Yearly sources come first and the modified source last.  In batch
    mode the yearly set is replaced by the single batch source.

    Args:
        settings: Synchronization settings.
        end_year: Last yearly archive (defaults to the current year).

    Returns:
        List of unprobed ``FeedSource`` objects.
    """
    return list(_iter_sources(settings, end_year))


def _iter_sources(settings: SyncSettings, end_year: int | None) -> Iterator[FeedSource]:
    if settings.batch_mode:
        yield FeedSource(id=BATCH, url=settings.batch_url)
    else:
        for year in years_to_sync(settings.start_year, end_year):
            legacy = settings.legacy_year_url_template
            yield FeedSource(
                id=str(year),
                url=settings.year_url_template.format(year=year),
                legacy_url=legacy.format(year=year) if legacy else None,
            )
    if settings.modified_url:
        yield FeedSource(id=MODIFIED, url=settings.modified_url, legacy_url=settings.legacy_modified_url)
