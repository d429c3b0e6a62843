"""Utility helpers for the harvesting pipeline."""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Iterable, List, Optional

_LINE_BREAKS = re.compile(r"\r\n|\r|\n")


def normalize_name(name: str) -> str:
    return name.strip().lower()


def dedupe_preserving_order(values: Iterable[str]) -> List[str]:
    """Strip values and drop blanks plus case-insensitive repeats; first wins."""

    seen = set()
    result: List[str] = []
    for value in values:
        text = str(value).strip()
        if not text:
            continue
        key = normalize_name(text)
        if key in seen:
            continue
        seen.add(key)
        result.append(text)
    return result


def sanitize_field(value: object) -> str:
    """Collapse line breaks to a single space so a CSV row stays on one line."""

    if value is None:
        return ""
    return _LINE_BREAKS.sub(" ", str(value)).strip()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC3339 timestamp into an aware UTC datetime, or None."""

    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def join_errors(errors: Iterable[str]) -> str:
    return "; ".join(error for error in errors if error)
