"""Seed-driven search query generation."""
from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Protocol, Sequence, Set, Tuple

from . import config, utils
from .errors import HarvestCancelled
from .models import SeedQuery, SeedSet

logger = logging.getLogger(__name__)

ARTIST_SUFFIXES = ("best", "hits")
TRACK_SUFFIX = "playlist"


class QueryExpanderProtocol(Protocol):
    """Protocol for LLM-backed query expansion."""

    def expand_queries(self, seeds: SeedSet, base_queries: Sequence[str]) -> Sequence[str]:
        ...


class _QueryBuilder:
    def __init__(self) -> None:
        self.queries: List[SeedQuery] = []
        self._seen: Set[str] = set()

    def add(self, text: str, provenance: str) -> bool:
        cleaned = " ".join(str(text).split())
        if not cleaned:
            return False
        key = utils.normalize_name(cleaned)
        if key in self._seen:
            return False
        self._seen.add(key)
        self.queries.append(SeedQuery(text=cleaned, provenance=provenance))
        return True

    def add_all(self, values: Iterable[str], provenance: str) -> None:
        for value in values:
            self.add(value, provenance)

    def add_pairs(self, pairs: Iterable[Tuple[str, str]], provenance: str) -> None:
        for left, right in pairs:
            if not left.strip() or not right.strip():
                continue
            self.add(f"{left} {right}", provenance)


def generate_seed_queries(seeds: SeedSet) -> List[SeedQuery]:
    """Expand a seed set into an ordered, deduplicated list of search queries.

    Broad single terms come first and the combinatorial pairs later, so a crawl
    cut short by rate or time limits has already covered the cheap queries.
    """

    builder = _QueryBuilder()
    builder.add_all(seeds.keywords, "keyword")
    builder.add_all(seeds.genres, "genre")
    builder.add_all(seeds.moods, "mood")
    builder.add_all(seeds.locales, "locale")
    builder.add_all(seeds.meta, "meta")

    builder.add_pairs(((mood, genre) for mood in seeds.moods for genre in seeds.genres), "mood+genre")
    builder.add_pairs(((locale, genre) for locale in seeds.locales for genre in seeds.genres), "locale+genre")
    builder.add_pairs(((meta, genre) for meta in seeds.meta for genre in seeds.genres), "meta+genre")

    for artist in seeds.artists:
        name = str(artist.name or "").strip()
        if not name:
            continue
        builder.add(name, "artist")
        for suffix in ARTIST_SUFFIXES:
            builder.add(f"{name} {suffix}", "artist-variant")
        for alias in artist.aliases:
            if not str(alias).strip():
                continue
            for suffix in ARTIST_SUFFIXES:
                builder.add(f"{alias} {suffix}", "artist-alias")

    for track in seeds.tracks:
        name = str(track.name or "").strip()
        if not name:
            continue
        builder.add(name, "track")
        builder.add(f"{name} {TRACK_SUFFIX}", "track-variant")

    return builder.queries


def expand_queries(
    queries: Sequence[SeedQuery],
    seeds: SeedSet,
    expander: Optional[QueryExpanderProtocol],
    limit: int = config.LLM_EXPANSION_LIMIT,
) -> List[SeedQuery]:
    """Append LLM-suggested queries after the deterministic list."""

    expanded = list(queries)
    if expander is None or limit <= 0:
        return expanded

    try:
        suggestions = list(expander.expand_queries(seeds, [query.text for query in queries]))
    except HarvestCancelled:
        raise
    except Exception as error:
        logger.warning("LLM query expansion failed, continuing with seed queries: %s", error)
        return expanded

    builder = _QueryBuilder()
    for query in queries:
        builder.add(query.text, query.provenance)
    added = 0
    for suggestion in suggestions:
        if added >= limit:
            break
        if not isinstance(suggestion, str):
            continue
        if builder.add(suggestion, "llm-expansion"):
            added += 1

    logger.debug("query_expansion_complete", extra={"suggested": len(suggestions), "added": added})
    return builder.queries
