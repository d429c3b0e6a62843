"""Harvester configuration constants and run settings."""
from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

# Catalog endpoints
TOKEN_URL: str = "https://accounts.spotify.com/api/token"
API_BASE: str = "https://api.spotify.com/v1"

# Page sizes used by the catalog API
SEARCH_PAGE_SIZE: int = 50
BROWSE_PAGE_SIZE: int = 50
TRACK_PAGE_SIZE: int = 100

# Field projections keep detail/track payloads small
PLAYLIST_FIELDS: str = (
    "id,name,description,public,collaborative,snapshot_id,"
    "owner(id,display_name),followers(total),images(url),tracks(total)"
)
TRACK_FIELDS: str = (
    "items(added_at,added_by(id),track(id,name,uri,external_urls(spotify),"
    "artists(id,name),album(id,name))),next"
)

# Rate limiting and backoff
DEFAULT_REQUESTS_PER_SECOND: float = 5.0
DEFAULT_RETRY_AFTER_SECONDS: float = 2.0
REQUEST_TIMEOUT_SECONDS: float = 30.0
TOKEN_EXPIRY_MARGIN_SECONDS: int = 30
MAX_ERROR_BODY: int = 300

# Relevance scoring
SCORE_WEIGHTS: Dict[str, float] = {
    "keyword": 1.0,
    "artist": 1.5,
    "track": 2.0,
    "followers": 0.5,
}
FRESHNESS_WINDOW_DAYS: int = 30
FRESHNESS_MAX_BOOST: float = 2.0

# Output schema
MULTI_VALUE_SEPARATOR: str = "|"

# LLM query expansion
LLM_EXPANSION_MODEL: str = "claude-3-5-sonnet-20241022"
LLM_EXPANSION_LIMIT: int = 20

ENV_PREFIX = "HARVEST_"


@dataclass(frozen=True)
class HarvestSettings:
    """Run configuration surface for one harvest."""

    score_threshold: float = 3.0
    max_search_pages: int = 5
    max_browse_pages: int = 5
    requests_per_second: float = DEFAULT_REQUESTS_PER_SECOND
    enable_featured: bool = True
    enable_categories: bool = True
    enable_llm_expansion: bool = False
    llm_expansion_limit: int = LLM_EXPANSION_LIMIT
    market: Optional[str] = None
    locale: Optional[str] = None
    request_timeout: float = REQUEST_TIMEOUT_SECONDS
    playlist_csv: Path = Path("data/playlists.csv")
    track_csv: Path = Path("data/tracks.csv")
    snapshot_path: Path = Path("data/snapshots.json")
    seed_path: Optional[Path] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "HarvestSettings":
        """Build settings from ``HARVEST_*`` variables layered over defaults."""

        environ = os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}
        for item in fields(cls):
            raw = environ.get(f"{ENV_PREFIX}{item.name.upper()}")
            if raw is None or raw.strip() == "":
                continue
            overrides[item.name] = raw
        return cls().with_overrides(**overrides)

    def with_overrides(self, **overrides: Any) -> "HarvestSettings":
        """Return a copy with non-None overrides coerced to the field types."""

        coerced: Dict[str, Any] = {}
        defaults = {item.name: getattr(self, item.name) for item in fields(self)}
        for name, value in overrides.items():
            if name not in defaults:
                raise ValueError(f"Unknown harvest setting: {name}")
            if value is None:
                continue
            coerced[name] = _coerce(name, value)
        return replace(self, **coerced)


_BOOL_FIELDS = {"enable_featured", "enable_categories", "enable_llm_expansion"}
_INT_FIELDS = {"max_search_pages", "max_browse_pages", "llm_expansion_limit"}
_FLOAT_FIELDS = {"score_threshold", "requests_per_second", "request_timeout"}
_PATH_FIELDS = {"playlist_csv", "track_csv", "snapshot_path", "seed_path"}


def _coerce(name: str, value: Any) -> Any:
    if name in _BOOL_FIELDS:
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in {"1", "true", "yes", "on"}:
                return True
            if lowered in {"0", "false", "no", "off"}:
                return False
            raise ValueError(f"Setting '{name}' expects a boolean, got {value!r}")
        return bool(value)
    if name in _INT_FIELDS:
        return int(value)
    if name in _FLOAT_FIELDS:
        return float(value)
    if name in _PATH_FIELDS:
        return Path(value)
    return str(value)
