"""Exception hierarchy for VulnSync.

- VulnSyncError (base)
  ├── CpeValidationError (malformed identifier or record)
  ├── NetworkError (remote feed access)
  │   ├── ProbeError (timestamp check)
  │   └── DownloadError (payload fetch)
  └── SyncError (a synchronization run aborted)
"""

from collections.abc import Iterable


class VulnSyncError(Exception):
    """Base exception for all VulnSync operations."""


class CpeValidationError(VulnSyncError, ValueError):
    """Raised when a CPE identifier or vulnerable-software record is not well formed."""

    def __init__(self, message: str, value: str | None = None):
        self.value = value
        super().__init__(message)


class NetworkError(VulnSyncError):
    """Raised when a remote feed cannot be reached."""

    def __init__(self, message: str, source_id: str | None = None, url: str | None = None):
        self.source_id = source_id
        self.url = url
        super().__init__(message)

    def __str__(self) -> str:
        if self.source_id:
            return f"[{self.source_id}] {super().__str__()}"
        return super().__str__()


class ProbeError(NetworkError):
    """Raised when the last-modified timestamp of a feed cannot be retrieved."""


class DownloadError(NetworkError):
    """Raised when a feed payload cannot be downloaded."""


class SyncError(VulnSyncError):
    """Raised when a synchronization run aborts.

    Attributes:
        failed_sources: Ids of the feed sources that could not be updated.
    """

    def __init__(self, message: str, failed_sources: Iterable[str] = ()):
        self.failed_sources = sorted(failed_sources)
        super().__init__(message)

    def __str__(self) -> str:
        if self.failed_sources:
            return f"{super().__str__()} (failed: {', '.join(self.failed_sources)})"
        return super().__str__()
