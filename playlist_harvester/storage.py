"""Append-only CSV sinks for harvested playlists and tracks."""
from __future__ import annotations

import csv
import logging
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Iterable, List, Optional, Sequence

from . import config, utils
from .models import HarvestOrigin, PlaylistDetail, PlaylistTrackItem, RelevanceResult

logger = logging.getLogger(__name__)

PLAYLIST_HEADER = [
    "harvested_at",
    "source",
    "origin_query",
    "playlist_id",
    "name",
    "description",
    "owner_id",
    "owner_name",
    "public",
    "collaborative",
    "snapshot_id",
    "followers",
    "track_count",
    "image_url",
    "score",
    "matched_keywords",
    "matched_artists",
    "matched_tracks",
    "freshness_days",
    "follower_boost",
    "freshness_boost",
]

TRACK_HEADER = [
    "harvested_at",
    "source",
    "origin_query",
    "playlist_id",
    "position",
    "added_at",
    "added_by",
    "track_id",
    "track_name",
    "track_uri",
    "track_url",
    "artist_ids",
    "artist_names",
    "album_id",
    "album_name",
]


class CsvSink:
    """Thread-safe append-only CSV writer that flushes after every row."""

    def __init__(self, path: Path, header: Sequence[str]) -> None:
        self.path = Path(path)
        self.header = list(header)
        self._lock = Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        is_new = not self.path.exists() or self.path.stat().st_size == 0
        self._handle = self.path.open("a", newline="", encoding="utf-8")
        self._writer = csv.writer(self._handle)
        if is_new:
            self._writer.writerow(self.header)
            self._handle.flush()
            logger.info("Created %s", self.path)

    def append(self, row: Sequence[object]) -> None:
        if len(row) != len(self.header):
            raise ValueError(f"Row has {len(row)} fields, expected {len(self.header)} for {self.path}")
        cleaned = [utils.sanitize_field(value) for value in row]
        with self._lock:
            self._writer.writerow(cleaned)
            self._handle.flush()

    def close(self) -> None:
        with self._lock:
            if not self._handle.closed:
                self._handle.close()

    def __enter__(self) -> "CsvSink":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class PlaylistStore:
    def __init__(self, path: Path) -> None:
        self.sink = CsvSink(path, PLAYLIST_HEADER)

    def write(
        self,
        detail: PlaylistDetail,
        result: RelevanceResult,
        origin: HarvestOrigin,
        harvested_at: Optional[datetime] = None,
    ) -> None:
        self.sink.append(
            [
                _timestamp(harvested_at),
                origin.source,
                origin.query,
                detail.id,
                detail.name,
                detail.description,
                detail.owner_id,
                detail.owner_name,
                _flag(detail.public),
                _flag(detail.collaborative),
                detail.snapshot_id,
                detail.followers,
                detail.track_count,
                detail.image_urls[0] if detail.image_urls else "",
                f"{result.score:.4f}",
                _join(result.matched_keywords),
                _join(result.matched_artists),
                _join(result.matched_tracks),
                result.freshness_days,
                f"{result.follower_boost:.4f}",
                f"{result.freshness_boost:.4f}",
            ]
        )

    def close(self) -> None:
        self.sink.close()


class TrackStore:
    def __init__(self, path: Path) -> None:
        self.sink = CsvSink(path, TRACK_HEADER)

    def write_many(
        self,
        playlist_id: str,
        items: Iterable[PlaylistTrackItem],
        origin: HarvestOrigin,
        harvested_at: Optional[datetime] = None,
    ) -> int:
        stamp = _timestamp(harvested_at)
        written = 0
        for position, item in enumerate(items):
            self.sink.append(
                [
                    stamp,
                    origin.source,
                    origin.query,
                    playlist_id,
                    position,
                    item.added_at,
                    item.added_by,
                    item.track_id,
                    item.track_name,
                    item.track_uri,
                    item.track_url,
                    _join(item.artist_ids),
                    _join(item.artist_names),
                    item.album_id,
                    item.album_name,
                ]
            )
            written += 1
        return written

    def close(self) -> None:
        self.sink.close()


def _timestamp(value: Optional[datetime]) -> str:
    return (value or utils.utc_now()).isoformat(timespec="seconds")


def _flag(value: Optional[bool]) -> str:
    if value is None:
        return ""
    return "true" if value else "false"


def _join(values: List[str]) -> str:
    return config.MULTI_VALUE_SEPARATOR.join(value for value in values if value)
