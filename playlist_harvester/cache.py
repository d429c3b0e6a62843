"""Snapshot cache for incremental playlist sync."""
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from threading import Lock
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class SnapshotCache:
    """Thread-safe map of playlist id to the last snapshot id seen.

    Used to skip the track fetch for playlists that have not changed since the
    previous run; a miss never blocks persistence.
    """

    def __init__(self, path: Optional[Path] = None, entries: Optional[Dict[str, str]] = None) -> None:
        self.path = Path(path) if path else None
        self._lock = Lock()
        self._store: Dict[str, str] = dict(entries or {})
        self._dirty = False

    @classmethod
    def load(cls, path: Path) -> "SnapshotCache":
        path = Path(path)
        if not path.exists():
            return cls(path)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as error:
            logger.warning("Ignoring unreadable snapshot cache %s: %s", path, error)
            return cls(path)
        if not isinstance(raw, dict):
            logger.warning("Ignoring snapshot cache %s: expected a JSON object", path)
            return cls(path)
        entries = {
            str(key): value
            for key, value in raw.items()
            if isinstance(value, str) and value
        }
        return cls(path, entries)

    def is_unchanged(self, playlist_id: str, snapshot_id: Optional[str]) -> bool:
        if not snapshot_id:
            return False
        with self._lock:
            stored = self._store.get(playlist_id)
        return stored is not None and stored == snapshot_id

    def update(self, playlist_id: str, snapshot_id: Optional[str]) -> None:
        if not snapshot_id:
            return
        with self._lock:
            if self._store.get(playlist_id) == snapshot_id:
                return
            self._store[playlist_id] = snapshot_id
            self._dirty = True

    def get(self, playlist_id: str) -> Optional[str]:
        with self._lock:
            return self._store.get(playlist_id)

    @property
    def dirty(self) -> bool:
        with self._lock:
            return self._dirty

    def save(self, path: Optional[Path] = None) -> bool:
        """Write the full map if anything changed; returns whether a write happened."""

        target = Path(path) if path else self.path
        if target is None:
            raise ValueError("SnapshotCache.save() needs a path")
        with self._lock:
            if not self._dirty:
                return False
            target.parent.mkdir(parents=True, exist_ok=True)
            blob = json.dumps(self._store, indent=2, sort_keys=True, ensure_ascii=False)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=str(target.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(blob)
                    handle.write("\n")
                os.replace(tmp_name, target)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
            self._dirty = False
        logger.debug("snapshot_cache_saved", extra={"path": str(target), "entries": len(self)})
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def __contains__(self, playlist_id: object) -> bool:
        with self._lock:
            return playlist_id in self._store
