"""Configuration for library synchronization."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from typing import Any

import yaml

ADS_API_URL = "https://api.adsabs.harvard.edu/v1"
TOKEN_ENV_VAR = "ADS_API_TOKEN"


def _default_priorities() -> dict[str, int]:
    return {"ads": 10, "inspire": 20, "arxiv": 30}


@dataclass
class SyncConfig:
    """Settings for a synchronization run.

    Attributes:
        ads_token: ADS API token. Falls back to the ADS_API_TOKEN environment variable
        ads_api_url: Base URL of the ADS API
        library_path: JSON file holding the local library
        window_size: Number of bibcode papers finalized concurrently
        window_delay: Pause in seconds between bibcode windows
        bibcode_batch_size: Bibcodes per batched ADS query
        cache_freshness_days: Age after which cached references/citations are stale
        refresh_graphs: Refresh stale references/citations after a match
        references_rows: Maximum references fetched per paper
        citations_rows: Maximum citations fetched per paper
        timeout: HTTP timeout in seconds
        rate_limit: ADS requests per minute
        source_priorities: Default link priority per source (lower is preferred)
        master_bib_path: Write a combined .bib file here after each run
        cache_path: Optional on-disk cache for GET responses
        verbose: Enable debug logging
    """

    ads_token: str | None = None
    ads_api_url: str = ADS_API_URL
    library_path: str | None = None
    window_size: int = 10
    window_delay: float = 0.05
    bibcode_batch_size: int = 50
    cache_freshness_days: int = 7
    refresh_graphs: bool = True
    references_rows: int = 500
    citations_rows: int = 50
    timeout: float = 20.0
    rate_limit: int = 300
    source_priorities: dict[str, int] = field(default_factory=_default_priorities)
    master_bib_path: str | None = None
    cache_path: str | None = None
    verbose: bool = False

    def __post_init__(self) -> None:
        if self.window_size < 1:
            raise ValueError(f"window_size must be at least 1, got {self.window_size}")
        if self.window_delay < 0:
            raise ValueError(f"window_delay must not be negative, got {self.window_delay}")
        if self.bibcode_batch_size < 1:
            raise ValueError(f"bibcode_batch_size must be at least 1, got {self.bibcode_batch_size}")
        if not self.ads_token:
            self.ads_token = os.environ.get(TOKEN_ENV_VAR) or None

    def priority_for(self, source: str) -> int | None:
        return self.source_priorities.get(source)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        """Create config from a dictionary (e.g., loaded from YAML).

        Raises:
            ValueError: On unknown keys or invalid values
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")
        data = dict(data)
        if "source_priorities" in data:
            data["source_priorities"] = {**_default_priorities(), **(data["source_priorities"] or {})}
        return cls(**data)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the config. The API token is never written out."""
        data = asdict(self)
        data.pop("ads_token", None)
        return data


def load_config(path: str | None = None, **overrides: Any) -> SyncConfig:
    """Load a YAML config file, then apply keyword overrides that are not None.

    Raises:
        FileNotFoundError: If ``path`` does not exist
        ValueError: If the file is not a mapping or has invalid values
    """
    data: dict[str, Any] = {}
    if path:
        if not os.path.exists(path):
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, encoding="utf-8") as f:
            loaded = yaml.safe_load(f)
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file must contain a mapping: {path}")
        data.update(loaded)
    data.update({k: v for k, v in overrides.items() if v is not None})
    return SyncConfig.from_dict(data)
