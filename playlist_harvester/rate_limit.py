"""
Rate Limiter - Fixed-interval admission gate shared by every catalog call

Callers reserve the next free slot under a lock and then wait outside it, so
admission is globally serialized no matter how many threads share the gate.
Every wait watches a cancellation event and aborts as soon as it is set.
"""
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Mapping, Optional

from . import config
from .errors import HarvestCancelled

logger = logging.getLogger(__name__)

__all__ = ["HarvestCancelled", "RateGate", "cancellable_sleep", "parse_retry_after"]


def cancellable_sleep(seconds: float, cancel_event: Optional[threading.Event]) -> None:
    """Sleep for ``seconds`` unless the cancel event fires first."""

    if cancel_event is None:
        if seconds > 0:
            time.sleep(seconds)
        return
    if cancel_event.is_set():
        raise HarvestCancelled("Harvest cancelled")
    if seconds > 0 and cancel_event.wait(seconds):
        raise HarvestCancelled("Harvest cancelled during wait")


class RateGate:
    """
    Enforces a minimum interval between requests across all callers

    Usage:
        gate = RateGate(requests_per_second=5)

        for item in items:
            gate.wait()  # blocks until this call is admitted
            make_api_call(item)
    """

    def __init__(
        self,
        requests_per_second: float = config.DEFAULT_REQUESTS_PER_SECOND,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if requests_per_second is None or requests_per_second <= 0:
            logger.warning(
                "Non-positive request rate %r, falling back to %.1f req/s",
                requests_per_second,
                config.DEFAULT_REQUESTS_PER_SECOND,
            )
            requests_per_second = config.DEFAULT_REQUESTS_PER_SECOND

        self.requests_per_second = float(requests_per_second)
        self.min_interval = 1.0 / self.requests_per_second
        self.cancel_event = cancel_event
        self._clock = clock
        self._lock = threading.Lock()
        self._next_slot = 0.0
        self.total_waits = 0
        self.total_wait_time = 0.0

        logger.debug(
            f"Rate gate initialized: max {self.requests_per_second} req/s "
            f"(min {self.min_interval:.3f}s between requests)"
        )

    def wait(self) -> None:
        """Block until this caller is admitted."""

        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.min_interval
            delay = slot - now
            if delay > 0:
                self.total_waits += 1
                self.total_wait_time += delay
        cancellable_sleep(delay, self.cancel_event)

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "total_waits": self.total_waits,
                "total_wait_time": round(self.total_wait_time, 3),
                "min_interval": self.min_interval,
            }


def parse_retry_after(
    headers: Optional[Mapping[str, str]],
    default: float = config.DEFAULT_RETRY_AFTER_SECONDS,
    now: Optional[datetime] = None,
) -> float:
    """Read a backoff duration in seconds from rate-limit response headers.

    Accepts ``Retry-After-Ms`` (milliseconds), ``Retry-After`` as seconds, as a
    millisecond value with an ``ms`` suffix, or as an HTTP-date.
    """

    if not headers:
        return default

    lookup = {str(key).lower(): value for key, value in headers.items()}

    millis = lookup.get("retry-after-ms")
    if millis is not None:
        try:
            value = float(str(millis).strip())
            if value >= 0:
                return value / 1000.0
        except ValueError:
            pass

    raw = lookup.get("retry-after")
    if raw is None:
        return default
    text = str(raw).strip()
    if not text:
        return default

    try:
        value = float(text)
        return value if value >= 0 else default
    except ValueError:
        pass

    if text.lower().endswith("ms"):
        try:
            value = float(text[:-2].strip())
            return value / 1000.0 if value >= 0 else default
        except ValueError:
            return default

    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        return default
    if when is None:
        return default
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max((when - current).total_seconds(), 0.0)
