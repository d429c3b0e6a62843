"""Harvest orchestration: discovery passes, change detection, scoring and persistence."""
from __future__ import annotations

import csv
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterator, List, Optional, Protocol, Sequence, Set

from . import config, utils
from .cache import SnapshotCache
from .models import (
    HarvestOrigin,
    HarvestReport,
    Page,
    PassReport,
    PlaylistDetail,
    PlaylistTrackItem,
    SeedQuery,
    SeedSet,
)
from .query_gen import QueryExpanderProtocol, expand_queries, generate_seed_queries
from .rate_limit import HarvestCancelled
from .scoring import score_playlist
from .seeds import SeedIndex
from .services import CatalogAPIError
from .storage import PlaylistStore, TrackStore

logger = logging.getLogger(__name__)

FETCH_ERRORS = (CatalogAPIError, ValueError)
PERSIST_ERRORS = (OSError, csv.Error, ValueError)

OUTCOME_DUPLICATE = "duplicate"
OUTCOME_FAILED = "failed"
OUTCOME_UNCHANGED = "unchanged"
OUTCOME_BELOW_THRESHOLD = "below_threshold"
OUTCOME_PERSISTED = "persisted"


class CatalogClientProtocol(Protocol):
    """Catalog operations the harvester depends on."""

    def search_playlists(self, query: str, offset: int = 0) -> Page:
        ...

    def get_featured_playlists(self, offset: int = 0) -> Page:
        ...

    def list_categories(self, offset: int = 0) -> Page:
        ...

    def get_category_playlists(self, category_id: str, offset: int = 0) -> Page:
        ...

    def get_playlist(self, playlist_id: str) -> PlaylistDetail:
        ...

    def get_playlist_tracks(self, playlist_id: str) -> List[PlaylistTrackItem]:
        ...


class PagedSource(Protocol):
    """Anything that can return one page of a listing for an offset."""

    def fetch_page(self, offset: int) -> Page:
        ...


@dataclass
class SearchSource:
    client: CatalogClientProtocol
    query: str

    def fetch_page(self, offset: int) -> Page:
        return self.client.search_playlists(self.query, offset)


@dataclass
class FeaturedSource:
    client: CatalogClientProtocol

    def fetch_page(self, offset: int) -> Page:
        return self.client.get_featured_playlists(offset)


@dataclass
class CategoryListSource:
    client: CatalogClientProtocol

    def fetch_page(self, offset: int) -> Page:
        return self.client.list_categories(offset)


@dataclass
class CategoryPlaylistSource:
    client: CatalogClientProtocol
    category_id: str

    def fetch_page(self, offset: int) -> Page:
        return self.client.get_category_playlists(self.category_id, offset)


def paginate(source: PagedSource, max_pages: int) -> Iterator[Page]:
    """Yield pages until the cap, an empty page or the last page.

    A page whose entries were all filtered out (nulls from the search API)
    is not empty; paging continues while it carries a next link.
    """

    offset = 0
    for _ in range(max(max_pages, 0)):
        page = source.fetch_page(offset)
        if page.is_empty:
            return
        yield page
        if page.next_offset is None:
            return
        offset = page.next_offset


class SeenSet:
    """Run-scoped set of playlist ids already routed through the pipeline."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids: Set[str] = set()

    def add(self, playlist_id: str) -> bool:
        """Mark an id as seen; returns False if it was already present."""

        with self._lock:
            if playlist_id in self._ids:
                return False
            self._ids.add(playlist_id)
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)


class Harvester:
    """Drives the search, featured and category passes for one run."""

    def __init__(
        self,
        client: CatalogClientProtocol,
        seeds: SeedSet,
        settings: config.HarvestSettings,
        *,
        snapshot_cache: SnapshotCache,
        playlist_store: PlaylistStore,
        track_store: TrackStore,
        query_expander: Optional[QueryExpanderProtocol] = None,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], datetime] = utils.utc_now,
    ) -> None:
        self.client = client
        self.seeds = seeds.normalized()
        self.settings = settings
        self.index = SeedIndex.build(self.seeds)
        self.snapshot_cache = snapshot_cache
        self.playlist_store = playlist_store
        self.track_store = track_store
        self.query_expander = query_expander
        self.cancel_event = cancel_event or threading.Event()
        self.clock = clock
        self.seen = SeenSet()

    # Entry points ------------------------------------------------------------
    def build_queries(self) -> List[SeedQuery]:
        queries = generate_seed_queries(self.seeds)
        if self.settings.enable_llm_expansion and self.query_expander is not None:
            queries = expand_queries(
                queries,
                self.seeds,
                self.query_expander,
                limit=self.settings.llm_expansion_limit,
            )
        return queries

    def run(self, queries: Optional[Sequence[SeedQuery]] = None) -> HarvestReport:
        """Run every enabled pass in order and save the snapshot cache at the end."""

        queries = list(queries) if queries is not None else self.build_queries()
        report = HarvestReport(queries=len(queries))
        logger.info("Starting harvest with %d queries", len(queries))
        try:
            report.passes.append(self.run_search_pass(queries))
            if self.settings.enable_featured:
                report.passes.append(self.run_featured_pass())
            if self.settings.enable_categories:
                report.passes.append(self.run_category_pass())
        finally:
            try:
                self.snapshot_cache.save()
            except OSError as error:
                logger.error("Failed to save snapshot cache: %s", error)
        stats = getattr(self.client, "stats", None)
        if callable(stats):
            report.client_stats = stats()
        logger.info(
            "Harvest complete: %d playlists persisted, %d errors",
            report.persisted,
            len(report.errors),
        )
        return report

    # Passes ------------------------------------------------------------------
    def run_search_pass(self, queries: Sequence[SeedQuery]) -> PassReport:
        report = PassReport(name="search")
        for query in queries:
            self._check_cancelled()
            origin = HarvestOrigin(source="search", query=query.text)
            self._drain(
                SearchSource(self.client, query.text),
                self.settings.max_search_pages,
                origin,
                report,
                label=f"query {query.text!r}",
            )
        return self._finish_pass(report)

    def run_featured_pass(self) -> PassReport:
        report = PassReport(name="featured")
        origin = HarvestOrigin(source="featured", query="featured-playlists")
        self._drain(
            FeaturedSource(self.client),
            self.settings.max_browse_pages,
            origin,
            report,
            label="featured playlists",
        )
        return self._finish_pass(report)

    def run_category_pass(self) -> PassReport:
        report = PassReport(name="category")
        categories: List[Any] = []
        try:
            for page in paginate(CategoryListSource(self.client), self.settings.max_browse_pages):
                categories.extend(page.items)
        except FETCH_ERRORS as error:
            report.errors.append(f"category listing: {error}")

        for category in categories:
            self._check_cancelled()
            category_id = category["id"]
            origin = HarvestOrigin(source="category", query=category_id)
            self._drain(
                CategoryPlaylistSource(self.client, category_id),
                self.settings.max_browse_pages,
                origin,
                report,
                label=f"category {category_id!r}",
            )
        return self._finish_pass(report)

    # Per playlist ------------------------------------------------------------
    def process_playlist(self, playlist_id: str, origin: HarvestOrigin, report: PassReport) -> str:
        outcome = self._process_playlist(playlist_id, origin, report)
        report.record(outcome)
        return outcome

    def _process_playlist(self, playlist_id: str, origin: HarvestOrigin, report: PassReport) -> str:
        if not self.seen.add(playlist_id):
            return OUTCOME_DUPLICATE
        report.discovered += 1

        try:
            detail = self.client.get_playlist(playlist_id)
        except FETCH_ERRORS as error:
            report.errors.append(f"playlist {playlist_id} detail: {error}")
            return OUTCOME_FAILED

        if self.snapshot_cache.is_unchanged(playlist_id, detail.snapshot_id):
            logger.debug("Skipping unchanged playlist %s", playlist_id)
            return OUTCOME_UNCHANGED

        try:
            items = self.client.get_playlist_tracks(playlist_id)
        except FETCH_ERRORS as error:
            report.errors.append(f"playlist {playlist_id} tracks: {error}")
            return OUTCOME_FAILED

        result = score_playlist(detail, items, self.index, now=self.clock())
        # evaluated once per snapshot, whatever the score
        self.snapshot_cache.update(playlist_id, detail.snapshot_id)

        if result.score < self.settings.score_threshold:
            logger.debug(
                "Dropping playlist %s (%s): score %.2f below %.2f",
                playlist_id,
                detail.name,
                result.score,
                self.settings.score_threshold,
            )
            return OUTCOME_BELOW_THRESHOLD

        harvested_at = self.clock()
        try:
            self.playlist_store.write(detail, result, origin, harvested_at)
            self.track_store.write_many(playlist_id, items, origin, harvested_at)
        except PERSIST_ERRORS as error:
            logger.error("Failed to persist playlist %s: %s", playlist_id, error)
            report.errors.append(f"playlist {playlist_id} persist: {error}")
            return OUTCOME_FAILED

        logger.info(
            "Persisted playlist %s (%s) score=%.2f tracks=%d via %s:%s",
            playlist_id,
            detail.name,
            result.score,
            len(items),
            origin.source,
            origin.query,
        )
        return OUTCOME_PERSISTED

    # Internal helpers -------------------------------------------------------
    def _drain(
        self,
        source: PagedSource,
        max_pages: int,
        origin: HarvestOrigin,
        report: PassReport,
        *,
        label: str,
    ) -> None:
        pages = paginate(source, max_pages)
        page_number = 0
        while True:
            self._check_cancelled()
            try:
                page = next(pages)
            except StopIteration:
                return
            except FETCH_ERRORS as error:
                report.errors.append(f"{label} page {page_number}: {error}")
                return
            page_number += 1
            for item in page.items:
                self._check_cancelled()
                playlist_id = item.get("id") if isinstance(item, dict) else None
                if playlist_id:
                    self.process_playlist(str(playlist_id), origin, report)

    def _finish_pass(self, report: PassReport) -> PassReport:
        if report.errors:
            logger.warning(
                "%s pass finished with %d errors: %s",
                report.name,
                len(report.errors),
                report.error_summary(),
            )
        logger.debug("harvest_pass_complete", extra={"harvest_pass": report.as_dict()})
        return report

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise HarvestCancelled("Harvest cancelled")


def run_harvest(
    client: CatalogClientProtocol,
    seeds: SeedSet,
    settings: config.HarvestSettings,
    *,
    query_expander: Optional[QueryExpanderProtocol] = None,
    cancel_event: Optional[threading.Event] = None,
    queries_limit: Optional[int] = None,
) -> HarvestReport:
    """Open the cache and stores from settings, run one harvest and close them."""

    snapshot_cache = SnapshotCache.load(settings.snapshot_path)
    playlist_store = PlaylistStore(settings.playlist_csv)
    track_store = TrackStore(settings.track_csv)
    try:
        harvester = Harvester(
            client,
            seeds,
            settings,
            snapshot_cache=snapshot_cache,
            playlist_store=playlist_store,
            track_store=track_store,
            query_expander=query_expander,
            cancel_event=cancel_event,
        )
        queries = harvester.build_queries()
        if queries_limit is not None:
            queries = queries[: max(queries_limit, 0)]
        return harvester.run(queries)
    finally:
        playlist_store.close()
        track_store.close()
