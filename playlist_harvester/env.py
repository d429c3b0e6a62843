"""Environment helper utilities for catalog credentials."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Iterable, Optional

ALIAS_KEY_MAP = {
    "client_id": "SPOTIFY_CLIENT_ID",
    "client id": "SPOTIFY_CLIENT_ID",
    "spotify client id": "SPOTIFY_CLIENT_ID",
    "spotify developer id": "SPOTIFY_CLIENT_ID",
    "client_secret": "SPOTIFY_CLIENT_SECRET",
    "client secret": "SPOTIFY_CLIENT_SECRET",
    "secret": "SPOTIFY_CLIENT_SECRET",
    "spotify secret": "SPOTIFY_CLIENT_SECRET",
    "claude": "CLAUDE_API_KEY",
    "claude api key": "CLAUDE_API_KEY",
    "anthropic": "CLAUDE_API_KEY",
    "anthropic api key": "CLAUDE_API_KEY",
}

CREDENTIAL_KEYS = ("SPOTIFY_CLIENT_ID", "SPOTIFY_CLIENT_SECRET")


def load_env(path: Optional[Path] = None) -> Dict[str, str]:
    """Load environment variables from a .env file, returning a mapping.

    The file holds KEY=VALUE pairs; ``key: value`` segments separated by commas
    are accepted as well. Existing os.environ takes precedence, but values from
    the file are exported for downstream use.
    """

    env_path = Path(path) if path else Path.cwd() / ".env"
    values: Dict[str, str] = {}
    if not env_path.exists():
        return values

    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].strip()
        if "=" in line:
            key, raw_value = line.split("=", 1)
            _store(values, key, raw_value)
            continue

        segments = [segment.strip() for segment in line.split(",") if segment.strip()]
        for segment in segments:
            if ":" not in segment:
                continue
            key, raw_value = segment.split(":", 1)
            _store(values, key, raw_value)
    return values


def require(keys: Iterable[str]) -> Dict[str, str]:
    """Ensure the provided keys exist in the environment, raising if missing."""

    names = list(keys)
    missing = [name for name in names if not os.environ.get(name)]
    if missing:
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")
    return {name: os.environ[name] for name in names}


def _store(values: Dict[str, str], key: str, raw_value: str) -> None:
    parsed_key = _normalize_key(key)
    if not parsed_key:
        return
    value = raw_value.strip().strip('"').strip("'")
    values[parsed_key] = value
    os.environ.setdefault(parsed_key, value)


def _normalize_key(key: str) -> Optional[str]:
    lowered = key.lower().strip()
    if not lowered:
        return None
    if lowered in ALIAS_KEY_MAP:
        return ALIAS_KEY_MAP[lowered]
    return lowered.replace(" ", "_").upper()
