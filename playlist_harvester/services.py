"""External service clients for the Spotify catalog and Claude."""
from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import requests
from anthropic import Anthropic, APIStatusError

from . import config, env
from .errors import (
    AuthenticationError,
    CatalogAPIError,
    CatalogDecodeError,
    HarvestCancelled,
    HarvestError,
)
from .models import Page, PlaylistDetail, PlaylistTrackItem, SeedSet
from .rate_limit import RateGate, cancellable_sleep, parse_retry_after

logger = logging.getLogger(__name__)

__all__ = [
    "AuthenticationError",
    "CatalogAPIError",
    "CatalogDecodeError",
    "ClaudeQueryExpander",
    "HarvestCancelled",
    "HarvestError",
    "SpotifyCatalogClient",
    "build_live_clients",
]


RETRYABLE_CLAUDE_STATUSES = {429, 500, 503}


@dataclass
class ClaudeQueryExpander:
    """Suggests extra playlist search queries using Claude.

    Transient failures are retried with a linear backoff. The backoff waits on
    the run's cancel event, so cancelling a harvest also stops a pending retry.
    """

    api_key: str
    model: str = config.LLM_EXPANSION_MODEL
    max_retries: int = 3
    retry_delay: float = 1.5
    cancel_event: Optional[threading.Event] = None

    def __post_init__(self) -> None:
        self._client = Anthropic(api_key=self.api_key)

    def expand_queries(self, seeds: SeedSet, base_queries: Sequence[str]) -> Sequence[str]:
        payload = {
            "seeds": {
                "keywords": seeds.keywords,
                "genres": seeds.genres,
                "moods": seeds.moods,
                "locales": seeds.locales,
                "artists": [artist.name for artist in seeds.artists],
            },
            "existing_queries": list(base_queries)[:50],
            "instruction": (
                "Suggest additional Spotify playlist search queries that would surface "
                "playlists matching these seeds. Keep them short and non-redundant."
            ),
        }
        document = self._call_claude(
            system_prompt="You are a music curation strategist. Respond with JSON containing a 'queries' array.",
            user_content=json.dumps(payload),
        )
        queries = document.get("queries") if isinstance(document, dict) else None
        if not isinstance(queries, list):
            logger.warning("Claude expansion returned no 'queries' list; ignoring response")
            return []
        return [query.strip() for query in queries if isinstance(query, str) and query.strip()]

    # Internal helpers -------------------------------------------------------
    def _call_claude(self, *, system_prompt: str, user_content: str) -> Any:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                response = self._client.messages.create(
                    model=self.model,
                    system=system_prompt,
                    messages=[{"role": "user", "content": user_content}],
                    max_tokens=1024,
                )
                return _safe_json_loads(_response_text(response))
            except APIStatusError as error:
                if error.status_code not in RETRYABLE_CLAUDE_STATUSES:
                    raise RuntimeError(f"Claude call failed with status {error.status_code}: {error}") from error
                last_error = error
            except (RuntimeError, json.JSONDecodeError) as error:
                last_error = error
            if attempt < self.max_retries:
                delay = self.retry_delay * attempt
                logger.debug("claude_retry", extra={"attempt": attempt, "delay": delay, "error": str(last_error)})
                cancellable_sleep(delay, self.cancel_event)
        raise RuntimeError(f"Claude call failed after {self.max_retries} attempts: {last_error}")


class SpotifyCatalogClient:
    """Rate-limited Spotify Web API client for playlist discovery."""

    token_url = config.TOKEN_URL
    api_base = config.API_BASE

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        requests_per_second: float = config.DEFAULT_REQUESTS_PER_SECOND,
        market: Optional[str] = None,
        locale: Optional[str] = None,
        timeout: float = config.REQUEST_TIMEOUT_SECONDS,
        cancel_event: Optional[threading.Event] = None,
        session: Optional[requests.Session] = None,
        rate_gate: Optional[RateGate] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.market = market
        self.locale = locale
        self.timeout = timeout
        self.cancel_event = cancel_event or threading.Event()
        self.session = session or requests.Session()
        self.rate_gate = rate_gate or RateGate(requests_per_second, cancel_event=self.cancel_event)
        self._token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self._token_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._stats = {"requests": 0, "rate_limited": 0, "backoff_seconds": 0.0}

    # Discovery ---------------------------------------------------------------
    def search_playlists(self, query: str, offset: int = 0) -> Page:
        params: Dict[str, Any] = {
            "q": query,
            "type": "playlist",
            "limit": config.SEARCH_PAGE_SIZE,
            "offset": offset,
        }
        if self.market:
            params["market"] = self.market
        data = self._request("GET", "/search", params=params)
        return _listing_page(data.get("playlists"), "/search", offset)

    def get_featured_playlists(self, offset: int = 0) -> Page:
        params = self._browse_params(offset)
        data = self._request("GET", "/browse/featured-playlists", params=params)
        return _listing_page(data.get("playlists"), "/browse/featured-playlists", offset)

    def list_categories(self, offset: int = 0) -> Page:
        params = self._browse_params(offset)
        data = self._request("GET", "/browse/categories", params=params)
        return _listing_page(data.get("categories"), "/browse/categories", offset)

    def get_category_playlists(self, category_id: str, offset: int = 0) -> Page:
        path = f"/browse/categories/{category_id}/playlists"
        params = self._browse_params(offset)
        params.pop("locale", None)
        data = self._request("GET", path, params=params)
        return _listing_page(data.get("playlists"), path, offset)

    # Playlist content --------------------------------------------------------
    def get_playlist(self, playlist_id: str) -> PlaylistDetail:
        path = f"/playlists/{playlist_id}"
        params: Dict[str, Any] = {"fields": config.PLAYLIST_FIELDS}
        if self.market:
            params["market"] = self.market
        data = self._request("GET", path, params=params)
        try:
            return PlaylistDetail.from_api(data)
        except ValueError as error:
            raise CatalogDecodeError("GET", path, 200, str(error)) from error

    def get_playlist_tracks(self, playlist_id: str) -> List[PlaylistTrackItem]:
        """Fetch the full track listing, following ``next`` links to the end."""

        path: Optional[str] = f"/playlists/{playlist_id}/tracks"
        params: Optional[Dict[str, Any]] = {
            "fields": config.TRACK_FIELDS,
            "limit": config.TRACK_PAGE_SIZE,
            "offset": 0,
        }
        if self.market:
            params["market"] = self.market

        items: List[PlaylistTrackItem] = []
        while path:
            data = self._request("GET", path, params=params)
            page_items = data.get("items")
            if not isinstance(page_items, list):
                raise CatalogDecodeError("GET", path, 200, "track page is missing 'items'")
            try:
                items.extend(PlaylistTrackItem.from_api(item) for item in page_items if item)
            except ValueError as error:
                raise CatalogDecodeError("GET", path, 200, str(error)) from error
            next_url = data.get("next")
            if next_url is not None and not isinstance(next_url, str):
                raise CatalogDecodeError("GET", path, 200, "track page has a malformed 'next' link")
            path = next_url or None
            params = None
        return items

    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            snapshot = dict(self._stats)
        snapshot["backoff_seconds"] = round(snapshot["backoff_seconds"], 3)
        snapshot["rate_gate"] = self.rate_gate.get_stats()
        return snapshot

    # Internal helpers -------------------------------------------------------
    def _browse_params(self, offset: int) -> Dict[str, Any]:
        params: Dict[str, Any] = {"limit": config.BROWSE_PAGE_SIZE, "offset": offset}
        if self.market:
            params["country"] = self.market
        if self.locale:
            params["locale"] = self.locale
        return params

    def _ensure_token(self, *, force: bool = False) -> str:
        with self._token_lock:
            now = time.time()
            if self._token and not force and now < self._token_expires_at:
                return self._token
            try:
                response = self.session.post(
                    self.token_url,
                    data={"grant_type": "client_credentials"},
                    auth=(self.client_id, self.client_secret),
                    timeout=self.timeout,
                )
            except requests.RequestException as error:
                raise AuthenticationError(f"Token exchange failed: {error}") from error
            if response.status_code >= 400:
                raise AuthenticationError(
                    f"Token exchange failed with status {response.status_code}: "
                    f"{response.text[: config.MAX_ERROR_BODY]}"
                )
            try:
                payload = response.json()
                token = payload["access_token"]
            except (ValueError, KeyError, TypeError) as error:
                raise AuthenticationError("Token response did not contain an access token") from error
            self._token = str(token)
            expires_in = int(payload.get("expires_in", 3600))
            self._token_expires_at = now + expires_in - config.TOKEN_EXPIRY_MARGIN_SECONDS
            return self._token

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Send one logical request: gate, send, then succeed, back off or fail."""

        url = path if path.startswith("http") else f"{self.api_base}{path}"
        refreshed = False
        while True:
            self.rate_gate.wait()
            token = self._ensure_token()
            with self._stats_lock:
                self._stats["requests"] += 1
            response = self.session.request(
                method,
                url,
                headers={"Authorization": f"Bearer {token}"},
                params=params,
                timeout=self.timeout,
            )

            if response.status_code == 429:
                delay = parse_retry_after(response.headers)
                with self._stats_lock:
                    self._stats["rate_limited"] += 1
                    self._stats["backoff_seconds"] += delay
                logger.warning("Rate limited on %s %s, retrying in %.2fs", method, path, delay)
                cancellable_sleep(delay, self.cancel_event)
                continue

            if response.status_code == 401 and not refreshed:
                # token likely expired; refresh and retry once
                refreshed = True
                self._ensure_token(force=True)
                continue

            if response.status_code >= 400:
                raise CatalogAPIError(method, path, response.status_code, response.text)

            try:
                data = response.json()
            except ValueError as error:
                raise CatalogDecodeError(method, path, response.status_code, response.text) from error
            if not isinstance(data, dict):
                raise CatalogDecodeError(method, path, response.status_code, "expected a JSON object")
            return data


def _listing_page(block: Any, path: str, offset: int) -> Page:
    """Reduce a paging object to ``{"id", "name"}`` entries.

    Null entries (the search API returns them for removed playlists) and
    entries without an id are dropped but still count towards ``raw_count``.
    Any other non-object entry makes the whole page a decode error.
    """

    if not isinstance(block, dict):
        raise CatalogDecodeError("GET", path, 200, "response is missing the paging object")
    raw_items = block.get("items")
    if raw_items is None:
        raw_items = []
    if not isinstance(raw_items, list):
        raise CatalogDecodeError("GET", path, 200, "paging object 'items' is not a list")
    items = []
    for position, item in enumerate(raw_items):
        if item is None:
            continue
        if not isinstance(item, dict):
            raise CatalogDecodeError("GET", path, 200, f"item {position} is not an object")
        if item.get("id"):
            items.append({"id": str(item["id"]), "name": str(item.get("name") or "")})
    return Page(
        items=items,
        next_offset=_next_offset(block, offset, len(raw_items)),
        raw_count=len(raw_items),
    )


def _next_offset(block: Dict[str, Any], offset: int, count: int) -> Optional[int]:
    if not block.get("next"):
        return None
    limit = block.get("limit") or count
    start = block.get("offset")
    try:
        return int(offset if start is None else start) + int(limit)
    except (TypeError, ValueError):
        return offset + count


def build_live_clients(
    settings: config.HarvestSettings,
    *,
    cancel_event: Optional[threading.Event] = None,
) -> Dict[str, Any]:
    """Factory helper that wires the catalog client and optional expander from env keys."""

    env.load_env()
    try:
        credentials = env.require(env.CREDENTIAL_KEYS)
    except RuntimeError as error:
        raise AuthenticationError(str(error)) from error

    catalog_client = SpotifyCatalogClient(
        client_id=credentials["SPOTIFY_CLIENT_ID"],
        client_secret=credentials["SPOTIFY_CLIENT_SECRET"],
        requests_per_second=settings.requests_per_second,
        market=settings.market,
        locale=settings.locale,
        timeout=settings.request_timeout,
        cancel_event=cancel_event,
    )
    expander = None
    if settings.enable_llm_expansion:
        claude_key = env.require(["CLAUDE_API_KEY"])
        expander = ClaudeQueryExpander(api_key=claude_key["CLAUDE_API_KEY"], cancel_event=cancel_event)
    return {
        "catalog_client": catalog_client,
        "query_expander": expander,
    }


def _response_text(response: Any) -> str:
    text = "".join(
        block.text
        for block in getattr(response, "content", None) or []
        if getattr(block, "type", "") == "text" and getattr(block, "text", None)
    ).strip()
    if not text:
        raise RuntimeError("Claude response contained no text content")
    return text


def _safe_json_loads(payload: str) -> Any:
    """Parse a JSON reply, falling back to the outermost object when it is wrapped in prose or fences."""

    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        start = payload.find("{")
        end = payload.rfind("}")
        if start == -1 or end <= start:
            raise
        return json.loads(payload[start : end + 1])
