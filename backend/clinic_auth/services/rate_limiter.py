"""In-memory counter store and the two-tier request rate limiter."""

from __future__ import annotations

import logging
import math
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

from clinic_auth.config import settings
from clinic_auth.core.concurrency import StripedLock

logger = logging.getLogger(__name__)


@dataclass
class RateWindow:
    """Counters for one identifier (IP, subject, or credential+IP)."""

    count: int = 0
    window_start: float = 0.0
    blocked_until: Optional[float] = None
    total: int = 0
    last_seen: float = 0.0
    in_flight: int = 0


class InMemoryCounterStore:
    """Process-local store of RateWindow records.

    `locked(key)` yields the live window for `key` while holding that key's
    stripe lock, so every read-modify-write inside the block is atomic per
    identifier. No method holds more than one stripe at a time.
    """

    def __init__(self, stripes: int = 64) -> None:
        self._windows: Dict[str, RateWindow] = {}
        self._locks = StripedLock(stripes)

    @contextmanager
    def locked(self, key: str) -> Iterator[RateWindow]:
        with self._locks.for_key(key):
            window = self._windows.get(key)
            if window is None:
                window = RateWindow()
                self._windows[key] = window
            yield window

    def get(self, key: str) -> Optional[RateWindow]:
        """Snapshot copy of the window, or None if never seen."""
        with self._locks.for_key(key):
            window = self._windows.get(key)
            return replace(window) if window is not None else None

    def delete(self, key: str) -> bool:
        with self._locks.for_key(key):
            return self._windows.pop(key, None) is not None

    def keys(self) -> List[str]:
        return list(self._windows.copy())

    def purge(self, predicate: Callable[[RateWindow], bool]) -> int:
        removed = 0
        for key in self.keys():
            with self._locks.for_key(key):
                window = self._windows.get(key)
                if window is not None and predicate(window):
                    del self._windows[key]
                    removed += 1
        return removed

    def clear(self) -> None:
        for key in self.keys():
            self.delete(key)

    def __len__(self) -> int:
        return len(self._windows)


@dataclass
class RateLimitDecision:
    allowed: bool
    state: str
    limit: int
    remaining: int
    retry_after: int = 0


def _ceil_seconds(value: float) -> int:
    return max(1, int(math.ceil(value)))


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class RateLimiter:
    """Per-minute throttle plus a cumulative hard block.

    NORMAL: under both caps. THROTTLED: the per-minute cap is reached, the
    request is rejected and the minute window keeps ticking. BLOCKED: more
    than `max_before_block` requests arrived without a full idle window in
    between; everything is rejected until `blocked_until`, after which the
    identifier starts over from zero.
    """

    NORMAL = "NORMAL"
    THROTTLED = "THROTTLED"
    BLOCKED = "BLOCKED"

    def __init__(
        self,
        store: Optional[InMemoryCounterStore] = None,
        *,
        per_minute: Optional[int] = None,
        window_seconds: Optional[int] = None,
        max_before_block: Optional[int] = None,
        block_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        on_block: Optional[Callable[[str, Dict[str, Any]], None]] = None,
    ) -> None:
        self.store = store or InMemoryCounterStore()
        self.per_minute = settings.RATE_LIMIT_PER_MINUTE if per_minute is None else per_minute
        self.window_seconds = settings.RATE_LIMIT_WINDOW_SECONDS if window_seconds is None else window_seconds
        self.max_before_block = settings.RATE_LIMIT_MAX_BEFORE_BLOCK if max_before_block is None else max_before_block
        self.block_seconds = settings.RATE_LIMIT_BLOCK_SECONDS if block_seconds is None else block_seconds
        self._clock = clock
        self._on_block = on_block

    def allow(self, identifier: str) -> bool:
        return self.check(identifier).allowed

    def check(self, identifier: str) -> RateLimitDecision:
        """Count one request for `identifier` and decide whether it may proceed."""
        now = self._clock()
        newly_blocked = False

        with self.store.locked(identifier) as window:
            if window.blocked_until is not None:
                if now < window.blocked_until:
                    return RateLimitDecision(
                        allowed=False,
                        state=self.BLOCKED,
                        limit=self.per_minute,
                        remaining=0,
                        retry_after=_ceil_seconds(window.blocked_until - now),
                    )
                window.count = 0
                window.total = 0
                window.blocked_until = None
                window.window_start = now
                logger.info("Identifier %s unblocked after timeout", identifier)

            if window.total and now - window.last_seen >= self.window_seconds:
                window.total = 0
            if now - window.window_start >= self.window_seconds:
                window.count = 0
                window.window_start = now

            window.total += 1
            window.last_seen = now

            if window.total > self.max_before_block:
                window.blocked_until = now + self.block_seconds
                newly_blocked = True
                decision = RateLimitDecision(
                    allowed=False,
                    state=self.BLOCKED,
                    limit=self.per_minute,
                    remaining=0,
                    retry_after=_ceil_seconds(self.block_seconds),
                )
                total = window.total
            elif window.count >= self.per_minute:
                decision = RateLimitDecision(
                    allowed=False,
                    state=self.THROTTLED,
                    limit=self.per_minute,
                    remaining=0,
                    retry_after=_ceil_seconds(window.window_start + self.window_seconds - now),
                )
            else:
                window.count += 1
                decision = RateLimitDecision(
                    allowed=True,
                    state=self.NORMAL,
                    limit=self.per_minute,
                    remaining=self.per_minute - window.count,
                )

        if newly_blocked:
            logger.error("Identifier %s blocked due to excessive requests: %d", identifier, total)
            if self._on_block is not None:
                try:
                    self._on_block("RATE_LIMIT_BLOCKED", {"identifier": identifier, "requests": total})
                except Exception as exc:
                    logger.warning("Rate limit block event dropped: %s", exc)
        return decision

    def status(self, identifier: str) -> Dict[str, Any]:
        """Introspection for operational tooling; does not count a request."""
        now = self._clock()
        window = self.store.get(identifier)
        if window is None:
            return self._status_payload(identifier, RateWindow(), self.NORMAL, 0)

        if window.blocked_until is not None and now < window.blocked_until:
            return self._status_payload(
                identifier, window, self.BLOCKED, _ceil_seconds(window.blocked_until - now)
            )
        if window.blocked_until is not None:
            return self._status_payload(identifier, RateWindow(), self.NORMAL, 0)

        count = window.count if now - window.window_start < self.window_seconds else 0
        if count >= self.per_minute:
            retry = _ceil_seconds(window.window_start + self.window_seconds - now)
            return self._status_payload(identifier, window, self.THROTTLED, retry)
        return self._status_payload(identifier, replace(window, count=count), self.NORMAL, 0)

    def _status_payload(
        self, identifier: str, window: RateWindow, state: str, retry_after: int
    ) -> Dict[str, Any]:
        return {
            "identifier": identifier,
            "state": state,
            "count": window.count,
            "total": window.total,
            "limit": self.per_minute,
            "block_threshold": self.max_before_block,
            "blocked_until": _iso(window.blocked_until) if state == self.BLOCKED else None,
            "retry_after": retry_after,
            "last_request": _iso(window.last_seen) if window.last_seen else None,
        }

    def blocked(self) -> List[Dict[str, Any]]:
        now = self._clock()
        result = []
        for key in self.store.keys():
            window = self.store.get(key)
            if window and window.blocked_until is not None and now < window.blocked_until:
                result.append(self.status(key))
        return result

    def unblock(self, identifier: str) -> bool:
        """Administrative override: forget the identifier entirely."""
        removed = self.store.delete(identifier)
        logger.info("Identifier %s unblocked manually", identifier)
        return removed

    def cleanup_inactive(self, inactive_seconds: Optional[int] = None) -> int:
        """Drop windows idle for `inactive_seconds` that are not actively blocked."""
        inactive = settings.RATE_LIMIT_INACTIVE_SECONDS if inactive_seconds is None else inactive_seconds
        now = self._clock()

        def _stale(window: RateWindow) -> bool:
            if window.blocked_until is not None and now < window.blocked_until:
                return False
            return now - window.last_seen >= inactive

        return self.store.purge(_stale)


rate_limiter = RateLimiter()
