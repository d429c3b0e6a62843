"""Test configuration ensuring repository modules are discoverable."""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from playlist_harvester import config  # noqa: E402


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: marks tests as slow and optional")


@pytest.fixture
def harvest_settings(tmp_path):
    return config.HarvestSettings(
        score_threshold=3.0,
        max_search_pages=3,
        max_browse_pages=2,
        requests_per_second=1000,
        playlist_csv=tmp_path / "out" / "playlists.csv",
        track_csv=tmp_path / "out" / "tracks.csv",
        snapshot_path=tmp_path / "out" / "snapshots.json",
    )
