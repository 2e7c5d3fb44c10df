"""HTTP helpers for probing feed sources.

Probing is the cheap metadata check that runs before every
synchronization: only the remote last-modified timestamp of each source
is fetched, never its body.  All blocking network I/O for probing is
isolated here.
"""

import datetime as dt
import email.utils
import logging
import re
from pathlib import Path
from urllib.parse import unquote, urlparse

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from . import __version__
from .errors import ProbeError
from .feeds import FeedSource

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = (10, 120)  # (connect, read)

_META_LAST_MODIFIED_RE = re.compile(r"^lastModifiedDate:(\S+)", re.MULTILINE)


def requests_session() -> requests.Session:
    """Create a configured requests session.

    Returns:
        Configured ``requests.Session``.
    """
    s = requests.Session()
    s.headers.update(
        {
            "User-Agent": f"VulnSync/{__version__}",
            "Accept": "*/*",
        }
    )
    return s


def to_epoch_millis(value: dt.datetime) -> int:
    """Convert a datetime (naive values are taken as UTC) to epoch milliseconds."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return int(value.timestamp() * 1000)


def parse_http_date(value: str | None) -> int | None:
    """Parse an HTTP ``Last-Modified`` header into epoch milliseconds.

    Returns:
        Epoch milliseconds, or ``None`` if the header is missing or invalid.
    """
    if not value:
        return None
    try:
        return to_epoch_millis(email.utils.parsedate_to_datetime(value))
    except (TypeError, ValueError):
        return None


def parse_meta_timestamp(text: str) -> int | None:
    """Extract ``lastModifiedDate`` from an NVD ``.meta`` file.

    Args:
        text: Body of the meta file (``key:value`` lines).

    Returns:
        Epoch milliseconds, or ``None`` if the field is missing or invalid.
    """
    m = _META_LAST_MODIFIED_RE.search(text or "")
    if not m:
        return None
    try:
        return to_epoch_millis(dt.datetime.fromisoformat(m.group(1)))
    except ValueError:
        return None


def meta_url_for(url: str) -> str | None:
    """Return the NVD ``.meta`` URL that accompanies a feed archive URL."""
    m = re.match(r"^(.*)\.json(\.gz|\.zip)?$", url)
    if not m:
        return None
    return m.group(1) + ".meta"


def local_path_for(url: str) -> Path | None:
    """Return the filesystem path of a ``file://`` URL, else ``None``."""
    parsed = urlparse(url)
    if parsed.scheme != "file":
        return None
    return Path(unquote(parsed.path))


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(requests.RequestException),
    reraise=True,
)
def head_last_modified(session: requests.Session, url: str, timeout=DEFAULT_HTTP_TIMEOUT) -> int | None:
    """Issue a HEAD request and return the ``Last-Modified`` time.

    Args:
        session: Requests session.
        url: URL to probe.
        timeout: ``(connect, read)`` timeout.

    Returns:
        Epoch milliseconds, or ``None`` if the server sent no usable header.
    """
    r = session.head(url, timeout=timeout, allow_redirects=True)
    r.raise_for_status()
    return parse_http_date(r.headers.get("Last-Modified"))


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(requests.RequestException),
    reraise=True,
)
def get_text(session: requests.Session, url: str, timeout=DEFAULT_HTTP_TIMEOUT) -> str:
    """Fetch a small text document with retry logic."""
    r = session.get(url, timeout=timeout)
    r.raise_for_status()
    return r.text


class RequestsFeedProbe:
    """``FeedProbe`` that reads remote timestamps over HTTP.

    The ``Last-Modified`` header of a HEAD request is used when present;
    otherwise the NVD ``.meta`` file next to the archive is fetched and its
    ``lastModifiedDate`` is used.  ``file://`` sources report the file's
    modification time.
    """

    def __init__(self, session: requests.Session | None = None, timeout=DEFAULT_HTTP_TIMEOUT):
        self.session = session or requests_session()
        self.timeout = timeout

    def head_timestamp(self, source: FeedSource) -> int:
        """Return the remote last-modified time of a source.

        Raises:
            ProbeError: if no timestamp can be obtained.
        """
        path = local_path_for(source.url)
        if path is not None:
            try:
                return int(path.stat().st_mtime * 1000)
            except OSError as e:
                raise ProbeError(f"Cannot stat {path}: {e}", source.id, source.url) from e

        try:
            ts = head_last_modified(self.session, source.url, self.timeout)
            if ts is None:
                meta = meta_url_for(source.url)
                if meta is not None:
                    ts = parse_meta_timestamp(get_text(self.session, meta, self.timeout))
        except requests.RequestException as e:
            raise ProbeError(f"Timestamp probe failed: {e}", source.id, source.url) from e

        if ts is None:
            raise ProbeError("Remote did not report a last-modified time", source.id, source.url)
        logger.debug("Probed %s: %d", source.id, ts)
        return ts
