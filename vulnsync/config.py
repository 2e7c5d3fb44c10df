"""Configuration models using Pydantic.

``SyncSettings`` carries every option recognized by the feed
synchronization controller.  Settings are loaded from YAML (or JSON)
with ``load_settings()``.
"""

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

NVD_FEED_BASE_URL = "https://nvd.nist.gov/feeds/json/cve/1.1"


class SyncSettings(BaseModel):
    """Validated synchronization settings.

    Example YAML::

        start_year: 2002
        freshness_window_days: 7
        max_parallel_downloads: 3
        batch_mode: false
        data_dir: data

    Attributes:
        start_year: First yearly archive to synchronize.
        freshness_window_days: How long the modified feed alone is trusted
            to cover every change since the last run.
        max_parallel_downloads: Upper bound on concurrent downloads.
        download_retries: Attempts per source before a download is fatal.
        batch_mode: Use one consolidated archive instead of the yearly set.
        batch_url: Location of the consolidated archive (``http(s)://`` or
            ``file://``).  Required when ``batch_mode`` is set.
        year_url_template: URL of a yearly archive, with a ``{year}``
            placeholder.
        legacy_year_url_template: Optional older-schema companion archive.
        modified_url: URL of the modified (delta) feed.
        legacy_modified_url: Optional older-schema companion of the delta.
        data_dir: Directory holding the sync state and catalog files.
        connect_timeout: Per-request connect timeout, seconds.
        read_timeout: Per-request read timeout, seconds.
        import_batch_size: CVE entries handed to the store per upsert.
    """

    start_year: int = Field(default=2002, ge=2002)
    freshness_window_days: int = Field(default=7, ge=0)
    max_parallel_downloads: int = Field(default=3, ge=1, le=32)
    download_retries: int = Field(default=3, ge=1, le=10)
    batch_mode: bool = False
    batch_url: str | None = None
    year_url_template: str = f"{NVD_FEED_BASE_URL}/nvdcve-1.1-{{year}}.json.gz"
    legacy_year_url_template: str | None = None
    modified_url: str | None = f"{NVD_FEED_BASE_URL}/nvdcve-1.1-modified.json.gz"
    legacy_modified_url: str | None = None
    data_dir: Path = Path("data")
    connect_timeout: float = Field(default=10.0, gt=0)
    read_timeout: float = Field(default=300.0, gt=0)
    import_batch_size: int = Field(default=1000, ge=1)

    @field_validator("year_url_template", "legacy_year_url_template")
    @classmethod
    def _require_year_placeholder(cls, v: str | None) -> str | None:
        """Year templates must contain a ``{year}`` placeholder."""
        if v is None:
            return v
        v = v.strip()
        if "{year}" not in v:
            raise ValueError("URL template must contain a '{year}' placeholder")
        return v

    @field_validator("batch_url", "modified_url", "legacy_modified_url", mode="before")
    @classmethod
    def _strip_url(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @model_validator(mode="after")
    def _check_batch(self) -> "SyncSettings":
        if self.batch_mode and not self.batch_url:
            raise ValueError("batch_mode requires batch_url")
        return self

    @property
    def state_file(self) -> Path:
        return self.data_dir / "sync_state.json"

    @property
    def catalog_file(self) -> Path:
        return self.data_dir / "catalog.json"

    @property
    def timeout(self) -> tuple[float, float]:
        """``(connect, read)`` timeout tuple for requests."""
        return (self.connect_timeout, self.read_timeout)


def load_settings(path: Path) -> SyncSettings:
    """Load settings from a YAML or JSON file.

    Args:
        path: Path to the settings file.

    Returns:
        Validated ``SyncSettings`` instance.

    Raises:
        FileNotFoundError: if the file doesn't exist.
        pydantic.ValidationError: if content fails validation.
    """
    suffix = path.suffix.lower()
    content = path.read_text(encoding="utf-8")

    if suffix in (".yaml", ".yml"):
        raw = yaml.safe_load(content) or {}
    elif suffix == ".json":
        raw = json.loads(content)
    else:
        try:
            raw = yaml.safe_load(content) or {}
        except yaml.YAMLError:
            raw = json.loads(content)

    settings = SyncSettings.model_validate(raw)
    logger.debug("Loaded settings from %s", path)
    return settings


def find_settings() -> Path | None:
    """Find a settings file in the working directory, preferring YAML.

    Returns:
        Path of the first existing settings file, or ``None``.
    """
    for name in ("vulnsync.yaml", "vulnsync.yml", "vulnsync.json"):
        if Path(name).exists():
            return Path(name)
    return None
