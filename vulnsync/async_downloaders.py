"""Async feed payload downloads.

Uses ``aiohttp`` to stream feed archives to scratch files so several
sources can download concurrently.  The sync controller bounds the
concurrency; this module only knows how to fetch one payload.

Usage::

    fetcher = AiohttpFeedFetcher()
    try:
        await fetcher.download(source, Path("/tmp/nvd-2015.json.gz"))
    finally:
        await fetcher.aclose()
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path

import aiohttp

from . import __version__
from .downloaders import local_path_for
from .errors import DownloadError
from .feeds import FeedSource

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = aiohttp.ClientTimeout(total=None, connect=10, sock_read=300)
CHUNK_SIZE = 1024 * 1024


def _default_headers() -> dict[str, str]:
    """Build HTTP headers for feed downloads."""
    return {
        "User-Agent": f"VulnSync/{__version__}",
        "Accept": "*/*",
    }


class AiohttpFeedFetcher:
    """``FeedFetch`` implementation backed by a shared ``aiohttp`` session.

    The session is created lazily inside the running event loop and must
    be released with ``aclose()``.
    """

    def __init__(self, timeout: aiohttp.ClientTimeout = DEFAULT_TIMEOUT):
        self.timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    @classmethod
    def from_settings(cls, settings) -> AiohttpFeedFetcher:
        return cls(aiohttp.ClientTimeout(total=None, connect=settings.connect_timeout, sock_read=settings.read_timeout))

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=_default_headers(), timeout=self.timeout)
        return self._session

    async def aclose(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def download(self, source: FeedSource, sink: Path) -> None:
        """Download a source's payload into ``sink``.

        Args:
            source: Feed source to fetch (``http(s)://`` or ``file://``).
            sink: Scratch file to write; overwritten if it exists.

        Raises:
            DownloadError: if the payload cannot be fetched.
        """
        local = local_path_for(source.url)
        try:
            if local is not None:
                await asyncio.to_thread(shutil.copyfile, local, sink)
            else:
                await self._fetch_to_file(source.url, sink)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise DownloadError(f"Download failed: {e}", source.id, source.url) from e
        logger.debug("Downloaded %s to %s", source.id, sink)

    async def _fetch_to_file(self, url: str, sink: Path) -> None:
        session = self._get_session()
        async with session.get(url) as resp:
            resp.raise_for_status()
            with sink.open("wb") as f:
                async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                    f.write(chunk)
