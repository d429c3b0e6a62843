"""Playlist relevance scoring against the seed index."""
from __future__ import annotations

import math
from datetime import datetime
from typing import Iterable, Optional, Set, Tuple

from . import config, utils
from .models import PlaylistDetail, PlaylistTrackItem, RelevanceResult
from .seeds import SeedIndex


def score_playlist(
    detail: PlaylistDetail,
    items: Iterable[PlaylistTrackItem],
    index: SeedIndex,
    *,
    now: Optional[datetime] = None,
) -> RelevanceResult:
    """Score a playlist from its text, track/artist overlap, followers and freshness.

    Artist and track co-occurrence are weighted above keyword overlap; followers
    and freshness only nudge close scores apart.
    """

    text = f"{detail.name} {detail.description}".lower()
    keywords = {phrase for phrase in index.phrases if phrase and phrase in text}

    artists: Set[str] = set()
    tracks: Set[str] = set()
    latest: Optional[datetime] = None
    for item in items:
        added = utils.parse_timestamp(item.added_at)
        if added is not None and (latest is None or added > latest):
            latest = added

        seed_track = index.tracks_by_id.get(item.track_id) if item.track_id else None
        if seed_track is not None:
            tracks.add(seed_track.name or item.track_name or seed_track.spotify_id)

        for artist_id, artist_name in _artist_pairs(item):
            seed_artist = index.artists_by_id.get(artist_id) if artist_id else None
            if seed_artist is None and artist_name:
                seed_artist = index.artists_by_name.get(utils.normalize_name(artist_name))
            if seed_artist is not None:
                artists.add(seed_artist.name)

    follower_boost = math.log10(max(detail.followers, 0) + 1)
    freshness_days, freshness_boost = freshness(latest, now or utils.utc_now())

    weights = config.SCORE_WEIGHTS
    score = (
        weights["keyword"] * len(keywords)
        + weights["artist"] * len(artists)
        + weights["track"] * len(tracks)
        + weights["followers"] * follower_boost
        + freshness_boost
    )
    return RelevanceResult(
        score=score,
        matched_keywords=sorted(keywords),
        matched_artists=sorted(artists),
        matched_tracks=sorted(tracks),
        freshness_days=freshness_days,
        follower_boost=follower_boost,
        freshness_boost=freshness_boost,
    )


def freshness(latest: Optional[datetime], now: datetime) -> Tuple[int, float]:
    """Return (days since latest addition, boost); (-1, 0.0) when unknown."""

    if latest is None:
        return -1, 0.0
    hours = (now - latest).total_seconds() / 3600.0
    days = math.floor(hours / 24.0 + 0.5)
    window = config.FRESHNESS_WINDOW_DAYS
    if days >= window:
        return days, 0.0
    boost = ((window - days) / window) * config.FRESHNESS_MAX_BOOST
    return days, min(max(boost, 0.0), config.FRESHNESS_MAX_BOOST)


def _artist_pairs(item: PlaylistTrackItem):
    count = max(len(item.artist_ids), len(item.artist_names))
    for position in range(count):
        artist_id = item.artist_ids[position] if position < len(item.artist_ids) else ""
        artist_name = item.artist_names[position] if position < len(item.artist_names) else ""
        yield artist_id, artist_name
