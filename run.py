#!/usr/bin/env python3
"""Run one playlist harvest against the live Spotify catalog."""
from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Iterable, List, Optional

import requests

from playlist_harvester import config, env, seeds, services
from playlist_harvester.harvest import run_harvest
from playlist_harvester.models import SeedSet
from playlist_harvester.rate_limit import HarvestCancelled


def parse_args(argv: Iterable[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Discover Spotify playlists from seed queries and persist the relevant ones.",
    )
    parser.add_argument("--env", type=Path, help="Path to a .env file with CLIENT_ID/CLIENT_SECRET.")
    parser.add_argument("--seeds", type=Path, help="JSON seed override merged over the built-in seeds.")
    parser.add_argument(
        "--keywords-file",
        type=Path,
        help="Newline-delimited keyword list added to the seed keywords.",
    )
    parser.add_argument(
        "--keyword-offset",
        type=int,
        default=0,
        help="Skip this many lines of --keywords-file (resume a partial crawl).",
    )
    parser.add_argument("--threshold", type=float, help="Minimum relevance score to persist a playlist.")
    parser.add_argument("--max-search-pages", type=int, help="Pages of 50 results per search query.")
    parser.add_argument("--max-browse-pages", type=int, help="Pages per featured/category listing.")
    parser.add_argument("--rps", type=float, help="Requests-per-second ceiling for the catalog API.")
    parser.add_argument("--no-featured", action="store_true", help="Skip the featured-playlists pass.")
    parser.add_argument("--no-categories", action="store_true", help="Skip the browse-categories pass.")
    parser.add_argument("--llm-expansion", action="store_true", help="Append Claude-suggested queries.")
    parser.add_argument("--queries-limit", type=int, help="Only run the first N generated queries.")
    parser.add_argument("--playlists-csv", type=Path, help="Output file for playlist rows.")
    parser.add_argument("--tracks-csv", type=Path, help="Output file for track rows.")
    parser.add_argument("--snapshots", type=Path, help="Snapshot cache JSON file.")
    parser.add_argument("--market", help="Market (ISO country code) for search and browse calls.")
    parser.add_argument("--dry-run", action="store_true", help="Print the generated queries and exit.")
    parser.add_argument("--json", type=Path, help="Optional path to write the run report as JSON.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: INFO).",
    )
    return parser.parse_args(list(argv))


def build_settings(args: argparse.Namespace) -> config.HarvestSettings:
    settings = config.HarvestSettings.from_env()
    return settings.with_overrides(
        score_threshold=args.threshold,
        max_search_pages=args.max_search_pages,
        max_browse_pages=args.max_browse_pages,
        requests_per_second=args.rps,
        enable_featured=False if args.no_featured else None,
        enable_categories=False if args.no_categories else None,
        enable_llm_expansion=True if args.llm_expansion else None,
        playlist_csv=args.playlists_csv,
        track_csv=args.tracks_csv,
        snapshot_path=args.snapshots,
        seed_path=args.seeds,
        market=args.market,
    )


def load_seeds(settings: config.HarvestSettings, keywords_file: Optional[Path], offset: int) -> SeedSet:
    override = seeds.load_seed_file(settings.seed_path) if settings.seed_path else SeedSet()
    if keywords_file:
        extra: List[str] = seeds.load_keyword_file(keywords_file, offset)
        override.keywords = override.keywords + extra
    return seeds.merge_seed_sets(seeds.default_seed_set(), override)


def main(argv: Iterable[str]) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    env.load_env(args.env)
    try:
        settings = build_settings(args)
        seed_set = load_seeds(settings, args.keywords_file, args.keyword_offset)
    except (OSError, ValueError) as exc:
        print(f"Failed to load configuration: {exc}", file=sys.stderr)
        return 1

    if args.dry_run:
        from playlist_harvester.query_gen import generate_seed_queries

        for query in generate_seed_queries(seed_set)[: args.queries_limit]:
            print(f"{query.provenance:15s} {query.text}")
        return 0

    cancel_event = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: cancel_event.set())

    try:
        clients = services.build_live_clients(settings, cancel_event=cancel_event)
    except (services.AuthenticationError, RuntimeError) as exc:
        print(f"Environment not configured correctly: {exc}", file=sys.stderr)
        return 1

    try:
        report = run_harvest(
            clients["catalog_client"],
            seed_set,
            settings,
            query_expander=clients["query_expander"],
            cancel_event=cancel_event,
            queries_limit=args.queries_limit,
        )
    except HarvestCancelled:
        print("Harvest cancelled; snapshot cache saved.", file=sys.stderr)
        return 130
    except services.AuthenticationError as exc:
        print(f"Authentication failed: {exc}", file=sys.stderr)
        return 1
    except requests.RequestException as exc:
        print(f"Connection to the catalog failed: {exc}", file=sys.stderr)
        return 1

    for pass_report in report.passes:
        print(
            f" - {pass_report.name:9s} discovered={pass_report.discovered:5d} "
            f"persisted={pass_report.persisted:5d} unchanged={pass_report.unchanged:5d} "
            f"below={pass_report.below_threshold:5d} failed={pass_report.failed:4d}"
        )

    if args.json:
        args.json.write_text(json.dumps(report.as_dict(), indent=2))

    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
