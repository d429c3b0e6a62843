"""Flask API exposing query previews, snapshot stats and on-demand harvest runs."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from flask import Flask, jsonify, request
from flask_cors import CORS
import requests

from . import config, seeds as seed_config
from .cache import SnapshotCache
from .harvest import run_harvest
from .models import SeedSet
from .query_gen import generate_seed_queries
from .rate_limit import HarvestCancelled
from .services import AuthenticationError, build_live_clients

logger = logging.getLogger(__name__)

ClientFactory = Callable[[config.HarvestSettings, threading.Event], Dict[str, Any]]

RUN_OVERRIDE_FIELDS = {
    "max_search_pages",
    "max_browse_pages",
    "score_threshold",
    "enable_featured",
    "enable_categories",
}


def load_run_seeds(settings: config.HarvestSettings) -> SeedSet:
    override = seed_config.load_seed_file(settings.seed_path) if settings.seed_path else None
    return seed_config.merge_seed_sets(seed_config.default_seed_set(), override)


def create_app(
    settings: Optional[config.HarvestSettings] = None,
    client_factory: Optional[ClientFactory] = None,
) -> Flask:
    app = Flask(__name__)
    CORS(app)  # Enable CORS for development

    base_settings = settings or config.HarvestSettings.from_env()
    factory = client_factory or (lambda run_settings, cancel: build_live_clients(run_settings, cancel_event=cancel))
    run_lock = threading.Lock()
    cancel_event = threading.Event()

    @app.route("/api/health", methods=["GET"])
    def health_check():
        return jsonify({
            "status": "healthy",
            "message": "Playlist harvester API server is running",
            "harvest_running": run_lock.locked(),
        })

    @app.route("/api/queries", methods=["GET"])
    def preview_queries():
        try:
            limit = int(request.args.get("limit", 100))
        except ValueError:
            return jsonify({"error": "limit must be an integer", "status": "error"}), 400
        try:
            queries = generate_seed_queries(load_run_seeds(base_settings))
        except (OSError, ValueError) as exc:
            return jsonify({"error": f"Invalid seed configuration: {exc}", "status": "error"}), 500
        return jsonify({
            "queries": [
                {"text": query.text, "provenance": query.provenance}
                for query in queries[: max(limit, 0)]
            ],
            "count": len(queries),
            "status": "success",
        })

    @app.route("/api/snapshots", methods=["GET"])
    def snapshot_stats():
        cache = SnapshotCache.load(Path(base_settings.snapshot_path))
        return jsonify({
            "path": str(base_settings.snapshot_path),
            "playlists": len(cache),
            "status": "success",
        })

    @app.route("/api/harvest", methods=["POST"])
    def trigger_harvest():
        payload = request.get_json(silent=True) or {}
        if not isinstance(payload, dict):
            return jsonify({"error": "Request body must be a JSON object", "status": "error"}), 400
        unknown = set(payload) - RUN_OVERRIDE_FIELDS - {"queries_limit"}
        if unknown:
            return jsonify({
                "error": f"Unsupported fields: {', '.join(sorted(unknown))}",
                "status": "error",
            }), 400
        try:
            run_settings = base_settings.with_overrides(
                **{key: payload[key] for key in RUN_OVERRIDE_FIELDS if key in payload}
            )
            queries_limit = payload.get("queries_limit")
            if queries_limit is not None:
                queries_limit = int(queries_limit)
        except (TypeError, ValueError) as exc:
            return jsonify({"error": str(exc), "status": "error"}), 400
        try:
            run_seeds = load_run_seeds(run_settings)
        except (OSError, ValueError) as exc:
            return jsonify({"error": f"Invalid seed configuration: {exc}", "status": "error"}), 500

        if not run_lock.acquire(blocking=False):
            return jsonify({"error": "A harvest is already running", "status": "error"}), 409
        try:
            logger.info("Harvest requested via API with overrides %s", payload)
            cancel_event.clear()
            try:
                clients = factory(run_settings, cancel_event)
            except RuntimeError as exc:
                # missing optional keys such as CLAUDE_API_KEY
                logger.error("Harvest client setup failed: %s", exc)
                return jsonify({"error": f"Configuration error: {exc}", "status": "error"}), 500
            report = run_harvest(
                clients["catalog_client"],
                run_seeds,
                run_settings,
                query_expander=clients.get("query_expander"),
                cancel_event=cancel_event,
                queries_limit=queries_limit,
            )
            return jsonify({"report": report.as_dict(), "status": "success"})
        except AuthenticationError as exc:
            logger.error("Harvest aborted: %s", exc)
            return jsonify({"error": str(exc), "status": "error"}), 401
        except HarvestCancelled as exc:
            return jsonify({"error": str(exc), "status": "cancelled"}), 409
        except requests.RequestException as exc:
            return jsonify({
                "error": "Upstream connection failed during harvest.",
                "details": str(exc),
                "status": "error",
            }), 502
        finally:
            run_lock.release()

    @app.route("/api/harvest/cancel", methods=["POST"])
    def cancel_harvest():
        if not run_lock.locked():
            return jsonify({"message": "No harvest is running", "status": "success"})
        cancel_event.set()
        return jsonify({"message": "Cancellation requested", "status": "success"})

    return app


if __name__ == "__main__":  # pragma: no cover - manual execution helper
    logging.basicConfig(level=logging.INFO)
    print("Starting playlist harvester API server...")
    create_app().run(debug=True, host="0.0.0.0", port=5000)
