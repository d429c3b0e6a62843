"""Seed vocabulary: built-in defaults, user overrides and the lookup index."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional

from . import utils
from .models import SeedArtist, SeedSet, SeedTrack

logger = logging.getLogger(__name__)


def default_seed_set() -> SeedSet:
    """Built-in seed vocabulary; a fresh copy on every call."""

    return SeedSet(
        keywords=["workout", "study", "focus", "party", "chill", "road trip", "sleep"],
        genres=["rock", "indie pop", "techno", "hip hop", "k-pop", "jazz", "house", "lofi"],
        moods=["happy", "sad", "energetic", "relaxing", "dark"],
        meta=["best", "top", "throwback", "essentials", "hits"],
        locales=["deutsch", "español", "français", "日本語"],
        artists=[
            SeedArtist(name="Drake", aliases=["Champagne Papi"], spotify_id="3TVXtAsR1Inumwj472S9r4"),
            SeedArtist(name="Taylor Swift", spotify_id="06HL4z0CvFAxyc27GXpf02"),
            SeedArtist(name="The Weeknd", aliases=["Abel Tesfaye"], spotify_id="1Xyo4u8uXC1ZmMpatF05PJ"),
            SeedArtist(name="Billie Eilish", spotify_id="6qqNVTkY8uBg9cP3Jd7DAH"),
            SeedArtist(name="Kendrick Lamar", aliases=["K.Dot"], spotify_id="2YZyLoL8N0Wb9xBt1NhZWg"),
        ],
        tracks=[
            SeedTrack(spotify_id="0VjIjW4GlUZAMYd2vXMi3b", name="Blinding Lights"),
            SeedTrack(spotify_id="7qiZfU4dY1lWllzX7mPBI3", name="Shape of You"),
        ],
    )


def seed_set_from_dict(payload: Mapping[str, Any]) -> SeedSet:
    """Parse a JSON-style mapping into a normalized SeedSet."""

    if not isinstance(payload, Mapping):
        raise ValueError("Seed configuration must be a JSON object")

    terms: Dict[str, List[str]] = {}
    for bucket in SeedSet.TERM_FIELDS:
        values = payload.get(bucket, [])
        if isinstance(values, str):
            values = [values]
        if not isinstance(values, list):
            raise ValueError(f"Seed bucket '{bucket}' must be a list of strings")
        terms[bucket] = [str(item) for item in values]

    artists: List[SeedArtist] = []
    for entry in payload.get("artists", []) or []:
        if isinstance(entry, str):
            artists.append(SeedArtist(name=entry))
            continue
        if not isinstance(entry, Mapping) or not entry.get("name"):
            raise ValueError(f"Artist seed entries need a name: {entry!r}")
        artists.append(
            SeedArtist(
                name=str(entry["name"]),
                aliases=[str(alias) for alias in entry.get("aliases", []) or []],
                spotify_id=entry.get("id") or entry.get("spotify_id"),
                top_track_ids=[str(track) for track in entry.get("top_tracks", []) or []],
            )
        )

    tracks: List[SeedTrack] = []
    for entry in payload.get("tracks", []) or []:
        if isinstance(entry, str):
            tracks.append(SeedTrack(spotify_id=entry))
            continue
        if not isinstance(entry, Mapping) or not (entry.get("id") or entry.get("spotify_id")):
            raise ValueError(f"Track seed entries need an id: {entry!r}")
        tracks.append(
            SeedTrack(
                spotify_id=str(entry.get("id") or entry.get("spotify_id")),
                name=str(entry.get("name") or ""),
            )
        )

    return SeedSet(artists=artists, tracks=tracks, **terms).normalized()


def load_seed_file(path: Path) -> SeedSet:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return seed_set_from_dict(data)


def load_keyword_file(path: Path, offset: int = 0) -> List[str]:
    """Read a newline-delimited keyword list, skipping the first ``offset`` lines."""

    lines = Path(path).read_text(encoding="utf-8").splitlines()
    if offset < 0:
        raise ValueError("Keyword offset must not be negative")
    return [line.strip() for line in lines[offset:] if line.strip()]


def merge_seed_sets(base: SeedSet, override: Optional[SeedSet]) -> SeedSet:
    """Union override into base; override wins on conflicting artist/track identity."""

    base = base.normalized()
    if override is None or override.is_empty():
        return base
    override = override.normalized()

    terms = {
        bucket: utils.dedupe_preserving_order(getattr(base, bucket) + getattr(override, bucket))
        for bucket in SeedSet.TERM_FIELDS
    }

    artists: List[SeedArtist] = [
        SeedArtist(
            name=artist.name,
            aliases=list(artist.aliases),
            spotify_id=artist.spotify_id,
            top_track_ids=list(artist.top_track_ids),
        )
        for artist in base.artists
    ]
    for incoming in override.artists:
        match = _find_artist(artists, incoming)
        if match is None:
            artists.append(incoming)
            continue
        match.name = incoming.name
        match.spotify_id = incoming.spotify_id or match.spotify_id
        match.aliases = utils.dedupe_preserving_order(incoming.aliases + match.aliases)
        match.top_track_ids = utils.dedupe_preserving_order(incoming.top_track_ids + match.top_track_ids)

    tracks: Dict[str, SeedTrack] = {track.spotify_id: SeedTrack(track.spotify_id, track.name) for track in base.tracks}
    for incoming in override.tracks:
        existing = tracks.get(incoming.spotify_id)
        if existing is None or incoming.name:
            tracks[incoming.spotify_id] = incoming

    return SeedSet(artists=artists, tracks=list(tracks.values()), **terms).normalized()


def _find_artist(artists: Iterable[SeedArtist], incoming: SeedArtist) -> Optional[SeedArtist]:
    incoming_name = utils.normalize_name(incoming.name)
    for artist in artists:
        if incoming.spotify_id and artist.spotify_id:
            if artist.spotify_id == incoming.spotify_id:
                return artist
            continue
        if utils.normalize_name(artist.name) == incoming_name:
            return artist
    return None


@dataclass(frozen=True)
class SeedIndex:
    """Read-only lookup structures derived from a SeedSet."""

    phrases: FrozenSet[str] = frozenset()
    artists_by_name: Mapping[str, SeedArtist] = field(default_factory=lambda: MappingProxyType({}))
    artists_by_id: Mapping[str, SeedArtist] = field(default_factory=lambda: MappingProxyType({}))
    tracks_by_id: Mapping[str, SeedTrack] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def build(cls, seeds: SeedSet) -> "SeedIndex":
        seeds = seeds.normalized()
        phrases = frozenset(
            utils.normalize_name(term)
            for bucket in SeedSet.TERM_FIELDS
            for term in getattr(seeds, bucket)
        )
        by_name: Dict[str, SeedArtist] = {}
        by_id: Dict[str, SeedArtist] = {}
        for artist in seeds.artists:
            for name in artist.all_names():
                by_name.setdefault(utils.normalize_name(name), artist)
            if artist.spotify_id:
                by_id.setdefault(artist.spotify_id, artist)
        tracks = {track.spotify_id: track for track in seeds.tracks}
        logger.debug(
            "seed_index_built",
            extra={"phrases": len(phrases), "artists": len(by_id) or len(seeds.artists), "tracks": len(tracks)},
        )
        return cls(
            phrases=phrases,
            artists_by_name=MappingProxyType(by_name),
            artists_by_id=MappingProxyType(by_id),
            tracks_by_id=MappingProxyType(tracks),
        )
