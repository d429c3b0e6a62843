import csv
import json
import threading
from datetime import datetime, timezone

import pytest

from playlist_harvester import config
from playlist_harvester.cache import SnapshotCache
from playlist_harvester.harvest import Harvester, SearchSource, paginate, run_harvest
from playlist_harvester.models import (
    Page,
    PlaylistDetail,
    PlaylistTrackItem,
    SeedArtist,
    SeedQuery,
    SeedSet,
    SeedTrack,
)
from playlist_harvester.rate_limit import HarvestCancelled
from playlist_harvester.services import CatalogAPIError, CatalogDecodeError, SpotifyCatalogClient
from playlist_harvester.storage import PlaylistStore, TrackStore

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeCatalogClient:
    def __init__(self):
        self.search_pages = {}
        self.featured_pages = []
        self.category_pages = []
        self.category_playlists = {}
        self.details = {}
        self.tracks = {}
        self.failing_details = set()
        self.failing_tracks = set()
        self.failing_search = {}
        self.calls = []

    # helpers
    def add_playlist(self, playlist_id, name, snapshot="s1", followers=0, tracks=None, description=""):
        self.details[playlist_id] = PlaylistDetail(
            id=playlist_id,
            name=name,
            description=description,
            snapshot_id=snapshot,
            followers=followers,
        )
        self.tracks[playlist_id] = list(tracks or [])

    @staticmethod
    def _page(pages, offset):
        index = offset // 50
        if index >= len(pages):
            return Page(items=[], next_offset=None)
        ids = pages[index]
        next_offset = offset + 50 if index + 1 < len(pages) else None
        return Page(items=[{"id": pid, "name": pid} for pid in ids], next_offset=next_offset)

    # catalog protocol
    def search_playlists(self, query, offset=0):
        self.calls.append(("search", query, offset))
        if (query, offset) in self.failing_search:
            raise self.failing_search[(query, offset)]
        return self._page(self.search_pages.get(query, []), offset)

    def get_featured_playlists(self, offset=0):
        self.calls.append(("featured", offset))
        return self._page(self.featured_pages, offset)

    def list_categories(self, offset=0):
        self.calls.append(("categories", offset))
        page = self._page(self.category_pages, offset)
        return Page(items=[{"id": item["id"], "name": item["id"].title()} for item in page.items], next_offset=page.next_offset)

    def get_category_playlists(self, category_id, offset=0):
        self.calls.append(("category", category_id, offset))
        if category_id == "broken":
            raise CatalogAPIError("GET", f"/browse/categories/{category_id}/playlists", 404, "gone")
        return self._page(self.category_playlists.get(category_id, []), offset)

    def get_playlist(self, playlist_id):
        self.calls.append(("detail", playlist_id))
        if playlist_id in self.failing_details:
            raise CatalogAPIError("GET", f"/playlists/{playlist_id}", 500, "boom")
        return self.details[playlist_id]

    def get_playlist_tracks(self, playlist_id):
        self.calls.append(("tracks", playlist_id))
        if playlist_id in self.failing_tracks:
            raise CatalogAPIError("GET", f"/playlists/{playlist_id}/tracks", 502, "bad gateway")
        return list(self.tracks[playlist_id])

    def stats(self):
        return {"requests": len(self.calls)}

    def track_fetches(self):
        return [call[1] for call in self.calls if call[0] == "tracks"]


def _seeds():
    return SeedSet(
        keywords=["workout"],
        artists=[SeedArtist(name="Drake", spotify_id="drake-id")],
        tracks=[SeedTrack("seed-track", "Hotline Bling")],
    )


def _seed_tracks():
    return [
        PlaylistTrackItem(track_id="seed-track", track_name="Hotline Bling", artist_ids=["drake-id"], artist_names=["Drake"]),
        PlaylistTrackItem(track_id="t2", track_name="Other\nSong", artist_ids=["x"], artist_names=["X"]),
    ]


def _harvester(client, settings, cache=None, **kwargs):
    return Harvester(
        client,
        _seeds(),
        settings,
        snapshot_cache=cache or SnapshotCache(settings.snapshot_path),
        playlist_store=PlaylistStore(settings.playlist_csv),
        track_store=TrackStore(settings.track_csv),
        clock=lambda: NOW,
        **kwargs,
    )


def _csv_rows(path):
    with path.open(newline="", encoding="utf-8") as handle:
        return list(csv.DictReader(handle))


class ListSource:
    def __init__(self, pages):
        self.pages = pages
        self.offsets = []

    def fetch_page(self, offset):
        self.offsets.append(offset)
        return self.pages[len(self.offsets) - 1]


def test_paginate_stops_on_empty_page_missing_next_and_cap():
    empty_first = ListSource([Page(items=[], next_offset=50)])
    assert list(paginate(empty_first, 5)) == []
    assert empty_first.offsets == [0]

    no_next = ListSource([Page(items=[1], next_offset=None), Page(items=[2], next_offset=None)])
    assert [page.items for page in paginate(no_next, 5)] == [[1]]

    capped = ListSource([Page(items=[n], next_offset=(n + 1) * 50) for n in range(10)])
    assert len(list(paginate(capped, 3))) == 3
    assert capped.offsets == [0, 50, 100]


def test_relevant_playlist_is_persisted_with_tracks(harvest_settings):
    client = FakeCatalogClient()
    client.search_pages["workout"] = [["p1", "p2"]]
    client.add_playlist("p1", "Workout Bangers", followers=12345, tracks=_seed_tracks(), description="gym\ntime")
    client.add_playlist("p2", "Sleepy tunes", tracks=[PlaylistTrackItem(track_id="z")])
    harvester = _harvester(client, harvest_settings)

    report = harvester.run([SeedQuery("workout", "keyword")])

    search = report.passes[0]
    assert search.persisted == 1
    assert search.below_threshold == 1
    playlists = _csv_rows(harvest_settings.playlist_csv)
    assert [row["playlist_id"] for row in playlists] == ["p1"]
    assert playlists[0]["description"] == "gym time"
    assert playlists[0]["matched_keywords"] == "workout"
    assert playlists[0]["matched_tracks"] == "Hotline Bling"
    tracks = _csv_rows(harvest_settings.track_csv)
    assert [row["track_id"] for row in tracks] == ["seed-track", "t2"]
    assert {row["origin_query"] for row in tracks} == {"workout"}
    assert tracks[1]["track_name"] == "Other Song"
    # both playlists have their snapshot recorded, even the low scorer
    saved = SnapshotCache.load(harvest_settings.snapshot_path)
    assert saved.is_unchanged("p1", "s1") and saved.is_unchanged("p2", "s1")
    assert report.client_stats["requests"] == len(client.calls)


def test_unchanged_snapshot_never_fetches_tracks(harvest_settings):
    client = FakeCatalogClient()
    client.search_pages["workout"] = [["p1"]]
    client.add_playlist("p1", "Workout", snapshot="same", tracks=_seed_tracks())
    cache = SnapshotCache(harvest_settings.snapshot_path, {"p1": "same"})
    harvester = _harvester(client, harvest_settings, cache=cache)

    report = harvester.run([SeedQuery("workout", "keyword")])

    assert client.track_fetches() == []
    assert report.passes[0].unchanged == 1
    assert report.passes[0].persisted == 0
    assert not harvest_settings.snapshot_path.exists()


def test_changed_snapshot_is_refetched_and_cache_updated(harvest_settings):
    client = FakeCatalogClient()
    client.search_pages["workout"] = [["p1"]]
    client.add_playlist("p1", "Workout", snapshot="new", followers=100, tracks=_seed_tracks())
    cache = SnapshotCache(harvest_settings.snapshot_path, {"p1": "old"})

    _harvester(client, harvest_settings, cache=cache).run([SeedQuery("workout", "keyword")])

    assert client.track_fetches() == ["p1"]
    assert SnapshotCache.load(harvest_settings.snapshot_path).get("p1") == "new"


def test_empty_search_page_ends_query_without_error(harvest_settings):
    client = FakeCatalogClient()
    client.search_pages["workout"] = []

    report = _harvester(client, harvest_settings).run([SeedQuery("workout", "keyword")])

    assert [call for call in client.calls if call[0] == "search"] == [("search", "workout", 0)]
    assert report.passes[0].errors == []


def test_search_paging_respects_page_cap(harvest_settings):
    client = FakeCatalogClient()
    client.search_pages["workout"] = [[f"p{n}"] for n in range(6)]
    for n in range(6):
        client.add_playlist(f"p{n}", "nothing relevant")

    _harvester(client, harvest_settings).run([SeedQuery("workout", "keyword")])

    offsets = [call[2] for call in client.calls if call[0] == "search"]
    assert offsets == [0, 50, 100]


def test_duplicates_keep_first_provenance(harvest_settings):
    client = FakeCatalogClient()
    client.search_pages["workout"] = [["p1"]]
    client.search_pages["drake"] = [["p1"]]
    client.featured_pages = [["p1"]]
    client.add_playlist("p1", "Workout", followers=100, tracks=_seed_tracks())

    report = _harvester(client, harvest_settings.with_overrides(enable_categories=False)).run(
        [SeedQuery("workout", "keyword"), SeedQuery("drake", "artist")]
    )

    assert [call for call in client.calls if call[0] == "detail"] == [("detail", "p1")]
    assert report.passes[0].duplicate == 1
    assert report.passes[1].name == "featured"
    assert report.passes[1].duplicate == 1
    rows = _csv_rows(harvest_settings.playlist_csv)
    assert [(row["source"], row["origin_query"]) for row in rows] == [("search", "workout")]


def test_fetch_errors_are_scoped_and_collected(harvest_settings):
    client = FakeCatalogClient()
    client.search_pages["workout"] = [["bad-detail", "bad-tracks", "good"], ["later"]]
    client.search_pages["party"] = [["party-1"]]
    client.failing_search[("workout", 50)] = CatalogAPIError("GET", "/search", 500, "oops")
    client.add_playlist("bad-tracks", "Workout")
    client.add_playlist("good", "Workout", followers=100, tracks=_seed_tracks())
    client.add_playlist("party-1", "Workout party", followers=100, tracks=_seed_tracks())
    client.failing_details.add("bad-detail")
    client.failing_tracks.add("bad-tracks")

    report = _harvester(client, harvest_settings).run(
        [SeedQuery("workout", "keyword"), SeedQuery("party", "keyword")]
    )

    search = report.passes[0]
    assert search.failed == 2
    assert search.persisted == 2
    assert len(search.errors) == 3
    assert "bad-detail" in search.errors[0]
    assert "bad-tracks" in search.errors[1]
    assert "page 1" in search.errors[2]
    assert "; " in search.error_summary()
    assert ("detail", "later") not in client.calls


def test_category_pass_continues_after_a_broken_category(harvest_settings):
    client = FakeCatalogClient()
    client.category_pages = [["broken", "workout-cat"]]
    client.category_playlists["workout-cat"] = [["c1"]]
    client.add_playlist("c1", "Workout classics", followers=1000, tracks=_seed_tracks())

    report = _harvester(client, harvest_settings.with_overrides(enable_featured=False)).run([])

    assert [report_.name for report_ in report.passes] == ["search", "category"]
    category = report.passes[1]
    assert category.persisted == 1
    assert len(category.errors) == 1
    rows = _csv_rows(harvest_settings.playlist_csv)
    assert rows[0]["source"] == "category"
    assert rows[0]["origin_query"] == "workout-cat"


def test_disabled_passes_are_skipped(harvest_settings):
    client = FakeCatalogClient()
    settings = harvest_settings.with_overrides(enable_featured=False, enable_categories=False)

    report = _harvester(client, settings).run([])

    assert [pass_report.name for pass_report in report.passes] == ["search"]
    assert client.calls == []


def test_persistence_errors_are_reported_not_fatal(harvest_settings):
    class BrokenStore:
        def write(self, *args, **kwargs):
            raise OSError("disk full")

    client = FakeCatalogClient()
    client.search_pages["workout"] = [["p1", "p2"]]
    client.add_playlist("p1", "Workout", followers=100, tracks=_seed_tracks())
    client.add_playlist("p2", "Workout too", followers=100, tracks=_seed_tracks())
    harvester = _harvester(client, harvest_settings)
    harvester.playlist_store = BrokenStore()

    report = harvester.run([SeedQuery("workout", "keyword")])

    assert report.passes[0].failed == 2
    assert all("disk full" in error for error in report.passes[0].errors)
    assert SnapshotCache.load(harvest_settings.snapshot_path).get("p2") == "s1"


def test_cancellation_stops_run_and_saves_cache(harvest_settings):
    cancel = threading.Event()
    client = FakeCatalogClient()
    client.search_pages["workout"] = [["p1", "p2"]]
    client.add_playlist("p1", "Workout", followers=100, tracks=_seed_tracks())
    client.add_playlist("p2", "Workout", followers=100, tracks=_seed_tracks())
    original = client.get_playlist_tracks

    def tracks_then_cancel(playlist_id):
        cancel.set()
        return original(playlist_id)

    client.get_playlist_tracks = tracks_then_cancel
    harvester = _harvester(client, harvest_settings, cancel_event=cancel)

    with pytest.raises(HarvestCancelled):
        harvester.run([SeedQuery("workout", "keyword")])

    assert ("detail", "p2") not in client.calls
    assert SnapshotCache.load(harvest_settings.snapshot_path).get("p1") == "s1"


def test_run_harvest_wires_files_and_query_limit(harvest_settings):
    client = FakeCatalogClient()
    client.search_pages["workout"] = [["p1"]]
    client.add_playlist("p1", "Workout", followers=100, tracks=_seed_tracks())
    settings = harvest_settings.with_overrides(enable_featured=False, enable_categories=False)

    report = run_harvest(client, _seeds(), settings, queries_limit=1)

    assert report.queries == 1
    assert [call[1] for call in client.calls if call[0] == "search"] == ["workout"]
    assert report.persisted == 1
    assert harvest_settings.playlist_csv.exists()
    assert harvest_settings.track_csv.exists()


def test_search_source_delegates_to_client():
    client = FakeCatalogClient()
    client.search_pages["q"] = [["a"]]
    page = SearchSource(client, "q").fetch_page(0)
    assert page.items == [{"id": "a", "name": "a"}]


def test_paginate_continues_past_pages_of_filtered_items():
    source = ListSource(
        [
            Page(items=[], next_offset=50, raw_count=2),
            Page(items=[{"id": "real"}], next_offset=None, raw_count=1),
        ]
    )

    pages = list(paginate(source, 5))

    assert [page.items for page in pages] == [[], [{"id": "real"}]]
    assert source.offsets == [0, 50]


def test_decode_errors_on_detail_or_tracks_are_scoped_to_the_playlist(harvest_settings):
    client = FakeCatalogClient()
    client.search_pages["workout"] = [["bad-detail", "bad-tracks", "good"]]
    client.add_playlist("bad-tracks", "Workout")
    client.add_playlist("good", "Workout", followers=100, tracks=_seed_tracks())
    fetch_detail = client.get_playlist
    fetch_tracks = client.get_playlist_tracks

    def get_playlist(playlist_id):
        if playlist_id == "bad-detail":
            raise CatalogDecodeError("GET", "/playlists/bad-detail", 200, "owner is not an object")
        return fetch_detail(playlist_id)

    def get_playlist_tracks(playlist_id):
        if playlist_id == "bad-tracks":
            raise CatalogDecodeError("GET", "/playlists/bad-tracks/tracks", 200, "artists entry is not an object")
        return fetch_tracks(playlist_id)

    client.get_playlist = get_playlist
    client.get_playlist_tracks = get_playlist_tracks
    settings = harvest_settings.with_overrides(enable_featured=False, enable_categories=False)

    report = _harvester(client, settings).run([SeedQuery("workout", "keyword")])

    search = report.passes[0]
    assert search.failed == 2
    assert search.persisted == 1
    assert "owner is not an object" in search.errors[0]
    assert "artists entry is not an object" in search.errors[1]
    assert [row["playlist_id"] for row in _csv_rows(harvest_settings.playlist_csv)] == ["good"]


class JsonResponse:
    def __init__(self, payload):
        self.status_code = 200
        self.headers = {}
        self._payload = payload
        self.text = json.dumps(payload)

    def json(self):
        return self._payload


class RoutedSession:
    """Serves canned catalog payloads keyed by (path, query, offset)."""

    def __init__(self, routes):
        self.routes = routes
        self.requested = []

    def post(self, url, data=None, auth=None, timeout=None):
        return JsonResponse({"access_token": "token", "expires_in": 3600})

    def request(self, method, url, headers=None, params=None, timeout=None):
        params = params or {}
        key = (url.replace(config.API_BASE, ""), params.get("q"), params.get("offset", 0))
        self.requested.append(key)
        return JsonResponse(self.routes[key])


def test_malformed_catalog_payloads_do_not_abort_the_run(harvest_settings):
    good_track = {
        "added_at": "2024-05-30T12:00:00Z",
        "track": {"id": "seed-track", "name": "Hotline Bling", "artists": [{"id": "drake-id", "name": "Drake"}]},
    }
    session = RoutedSession(
        {
            ("/search", "junk", 0): {"playlists": {"items": ["junk"], "next": None}},
            ("/search", "workout", 0): {"playlists": {"items": [None, None], "next": "more", "offset": 0, "limit": 50}},
            ("/search", "workout", 50): {
                "playlists": {
                    "items": [{"id": "p1"}, {"id": "p2"}, {"id": "p3"}],
                    "next": None,
                    "offset": 50,
                    "limit": 50,
                }
            },
            ("/playlists/p1", None, 0): {"id": "p1", "name": "Workout", "snapshot_id": "s1"},
            ("/playlists/p1/tracks", None, 0): {"items": [{"track": {"id": "t", "artists": ["Drake"]}}], "next": None},
            ("/playlists/p2", None, 0): {"id": "p2", "name": "Workout", "snapshot_id": "s2", "followers": {"total": 10}},
            ("/playlists/p2/tracks", None, 0): {"items": [good_track], "next": None},
            ("/playlists/p3", None, 0): {"id": "p3", "owner": "someone"},
        }
    )
    client = SpotifyCatalogClient("id", "secret", session=session, requests_per_second=1000)
    settings = harvest_settings.with_overrides(enable_featured=False, enable_categories=False)

    report = _harvester(client, settings).run([SeedQuery("junk", "keyword"), SeedQuery("workout", "keyword")])

    search = report.passes[0]
    assert search.discovered == 3
    assert search.persisted == 1
    assert search.failed == 2
    assert len(search.errors) == 3
    assert search.errors[0].startswith("query 'junk' page 0")
    assert "playlist p1 tracks" in search.errors[1]
    assert "playlist p3 detail" in search.errors[2]
    assert [row["playlist_id"] for row in _csv_rows(harvest_settings.playlist_csv)] == ["p2"]
    assert ("/search", "workout", 50) in session.requested
