"""Domain models for the playlist harvester."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from . import utils


@dataclass
class SeedArtist:
    """An artist seed with its aliases and known top tracks."""

    name: str
    aliases: List[str] = field(default_factory=list)
    spotify_id: Optional[str] = None
    top_track_ids: List[str] = field(default_factory=list)

    def identity(self) -> str:
        """Merge identity: external id when known, else the lowercase name."""

        if self.spotify_id:
            return f"id:{self.spotify_id}"
        return f"name:{utils.normalize_name(self.name)}"

    def all_names(self) -> List[str]:
        return [self.name, *self.aliases]


@dataclass
class SeedTrack:
    spotify_id: str
    name: str = ""


@dataclass
class SeedSet:
    """Seed vocabulary driving query generation and relevance matching."""

    keywords: List[str] = field(default_factory=list)
    genres: List[str] = field(default_factory=list)
    moods: List[str] = field(default_factory=list)
    meta: List[str] = field(default_factory=list)
    locales: List[str] = field(default_factory=list)
    artists: List[SeedArtist] = field(default_factory=list)
    tracks: List[SeedTrack] = field(default_factory=list)

    TERM_FIELDS = ("keywords", "genres", "moods", "meta", "locales")

    def normalized(self) -> "SeedSet":
        """Return a copy with blanks dropped and case-insensitive duplicates removed."""

        terms = {name: utils.dedupe_preserving_order(getattr(self, name)) for name in self.TERM_FIELDS}

        artists: List[SeedArtist] = []
        artist_index: Dict[str, SeedArtist] = {}
        for artist in self.artists:
            name = str(artist.name or "").strip()
            if not name:
                continue
            cleaned = SeedArtist(
                name=name,
                aliases=[
                    alias
                    for alias in utils.dedupe_preserving_order(artist.aliases)
                    if utils.normalize_name(alias) != utils.normalize_name(name)
                ],
                spotify_id=(str(artist.spotify_id).strip() or None) if artist.spotify_id else None,
                top_track_ids=utils.dedupe_preserving_order(artist.top_track_ids),
            )
            existing = artist_index.get(cleaned.identity())
            if existing is None:
                artist_index[cleaned.identity()] = cleaned
                artists.append(cleaned)
                continue
            existing.aliases = [
                alias
                for alias in utils.dedupe_preserving_order(existing.aliases + cleaned.aliases)
                if utils.normalize_name(alias) != utils.normalize_name(existing.name)
            ]
            existing.top_track_ids = utils.dedupe_preserving_order(
                existing.top_track_ids + cleaned.top_track_ids
            )

        tracks: List[SeedTrack] = []
        seen_tracks = set()
        for track in self.tracks:
            track_id = str(track.spotify_id or "").strip()
            if not track_id or track_id.lower() in seen_tracks:
                continue
            seen_tracks.add(track_id.lower())
            tracks.append(SeedTrack(spotify_id=track_id, name=str(track.name or "").strip()))

        return SeedSet(artists=artists, tracks=tracks, **terms)

    def is_empty(self) -> bool:
        return not any(getattr(self, name) for name in (*self.TERM_FIELDS, "artists", "tracks"))


@dataclass(frozen=True)
class SeedQuery:
    """A search query and the seed bucket it was generated from."""

    text: str
    provenance: str


@dataclass
class PlaylistDetail:
    """Field-limited playlist metadata."""

    id: str
    name: str = ""
    description: str = ""
    public: Optional[bool] = None
    collaborative: bool = False
    owner_id: str = ""
    owner_name: str = ""
    snapshot_id: str = ""
    followers: int = 0
    image_urls: List[str] = field(default_factory=list)
    track_count: int = 0

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "PlaylistDetail":
        if not isinstance(payload, dict) or not payload.get("id"):
            raise ValueError("Playlist payload is missing an id")
        owner = _object(payload.get("owner"), "owner")
        followers_raw = payload.get("followers") or {}
        try:
            followers = int(followers_raw.get("total") or 0) if isinstance(followers_raw, dict) else int(followers_raw)
        except (TypeError, ValueError):
            followers = 0
        tracks_raw = payload.get("tracks") or {}
        try:
            track_count = int(tracks_raw.get("total") or 0) if isinstance(tracks_raw, dict) else 0
        except (TypeError, ValueError):
            track_count = 0
        images = [
            str(image["url"])
            for image in _object_list(payload.get("images"), "images")
            if image.get("url")
        ]
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name") or ""),
            description=str(payload.get("description") or ""),
            public=payload.get("public"),
            collaborative=bool(payload.get("collaborative")),
            owner_id=str(owner.get("id") or ""),
            owner_name=str(owner.get("display_name") or ""),
            snapshot_id=str(payload.get("snapshot_id") or ""),
            followers=max(followers, 0),
            image_urls=images,
            track_count=track_count,
        )


@dataclass
class PlaylistTrackItem:
    """One entry of a playlist's track listing."""

    added_at: str = ""
    added_by: str = ""
    track_id: str = ""
    track_name: str = ""
    track_uri: str = ""
    track_url: str = ""
    artist_ids: List[str] = field(default_factory=list)
    artist_names: List[str] = field(default_factory=list)
    album_id: str = ""
    album_name: str = ""

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "PlaylistTrackItem":
        """Build an item from a playlist-track entry.

        A missing ``track`` (removed or unavailable) yields an item with empty
        track fields. Nested values that are present but not objects raise
        ``ValueError``.
        """

        payload = _object(payload, "track entry")
        track = _object(payload.get("track"), "track")
        added_by = _object(payload.get("added_by"), "added_by")
        album = _object(track.get("album"), "album")
        artists = _object_list(track.get("artists"), "artists")
        return cls(
            added_at=str(payload.get("added_at") or ""),
            added_by=str(added_by.get("id") or ""),
            track_id=str(track.get("id") or ""),
            track_name=str(track.get("name") or ""),
            track_uri=str(track.get("uri") or ""),
            track_url=str(_object(track.get("external_urls"), "external_urls").get("spotify") or ""),
            artist_ids=[str(artist.get("id") or "") for artist in artists],
            artist_names=[str(artist.get("name") or "") for artist in artists],
            album_id=str(album.get("id") or ""),
            album_name=str(album.get("name") or ""),
        )


@dataclass
class RelevanceResult:
    """Score plus the signals it was built from."""

    score: float
    matched_keywords: List[str] = field(default_factory=list)
    matched_artists: List[str] = field(default_factory=list)
    matched_tracks: List[str] = field(default_factory=list)
    freshness_days: int = -1
    follower_boost: float = 0.0
    freshness_boost: float = 0.0


@dataclass(frozen=True)
class HarvestOrigin:
    """Provenance attached to every persisted record."""

    source: str
    query: str = ""


@dataclass
class Page:
    """One page from a paginated listing.

    ``items`` holds only usable entries. ``raw_count`` is how many entries the
    upstream page carried before filtering; ``None`` means nothing was
    filtered.
    """

    items: List[Any] = field(default_factory=list)
    next_offset: Optional[int] = None
    raw_count: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        count = self.raw_count if self.raw_count is not None else len(self.items)
        return count == 0


@dataclass
class PassReport:
    """Counters and collected errors for one discovery pass."""

    name: str
    discovered: int = 0
    duplicate: int = 0
    unchanged: int = 0
    below_threshold: int = 0
    persisted: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def record(self, outcome: str) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)

    def error_summary(self) -> str:
        return utils.join_errors(self.errors)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "discovered": self.discovered,
            "duplicate": self.duplicate,
            "unchanged": self.unchanged,
            "below_threshold": self.below_threshold,
            "persisted": self.persisted,
            "failed": self.failed,
            "errors": list(self.errors),
        }


@dataclass
class HarvestReport:
    """Outcome of a full harvest run."""

    passes: List[PassReport] = field(default_factory=list)
    queries: int = 0
    client_stats: Dict[str, Any] = field(default_factory=dict)

    @property
    def persisted(self) -> int:
        return sum(report.persisted for report in self.passes)

    @property
    def errors(self) -> List[str]:
        return [error for report in self.passes for error in report.errors]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "queries": self.queries,
            "persisted": self.persisted,
            "passes": [report.as_dict() for report in self.passes],
            "client_stats": dict(self.client_stats),
        }


def _object(value: Any, label: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{label} is not an object")
    return value


def _object_list(value: Any, label: str) -> List[Dict[str, Any]]:
    """Non-null entries of a list of objects; nulls are skipped."""

    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{label} is not a list")
    return [_object(entry, f"{label} entry") for entry in value if entry is not None]
