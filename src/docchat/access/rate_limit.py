"""Fixed-window request counters shared by every request in the process.

Counters live in memory only: a process restart forgets every window. Entries are
kept in insertion order so that, when the store outgrows its cap, the oldest keys
are the ones evicted.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict

from docchat.metrics.observability import PipelineMetrics, get_logger


@dataclass
class RateLimitEntry:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitRule:
    """Limit applied to one operation for one kind of caller identifier."""

    scope: str
    operation: str
    limit: int
    window_seconds: float

    def key(self, identifier: str) -> str:
        return f"{self.scope}:{identifier}:{self.operation}"

    @property
    def retry_after(self) -> int:
        return int(self.window_seconds)


class RateLimiter:
    """Fixed-window counter store keyed by arbitrary strings."""

    def __init__(
        self,
        *,
        max_entries: int = 10_000,
        evict_fraction: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_entries = max_entries
        self._evict_count = max(1, int(max_entries * evict_fraction))
        self._clock = clock
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()
        self._logger = get_logger("rate_limit")

    def __len__(self) -> int:
        return len(self._entries)

    def allow(self, key: str, limit: int, window_seconds: float) -> bool:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            if len(self._entries) > self._max_entries:
                self._evict_oldest()

            entry = self._entries.get(key)
            if entry is None:
                self._entries[key] = RateLimitEntry(count=1, reset_at=now + window_seconds)
                return True
            if entry.count < limit:
                entry.count += 1
                return True
            return False

    def check(self, rule: RateLimitRule, identifier: str) -> bool:
        allowed = self.allow(rule.key(identifier), rule.limit, rule.window_seconds)
        if not allowed:
            PipelineMetrics.record_rate_limited(rule.scope)
            self._logger.warning("rate_limit.rejected", scope=rule.scope, operation=rule.operation)
        return allowed

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()

    def _sweep(self, now: float) -> None:
        # reset_at == now counts as elapsed
        expired = [key for key, entry in self._entries.items() if entry.reset_at <= now]
        for key in expired:
            del self._entries[key]

    def _evict_oldest(self) -> None:
        oldest = list(self._entries)[: self._evict_count]
        for key in oldest:
            del self._entries[key]
        self._logger.info("rate_limit.evicted", count=len(oldest), remaining=len(self._entries))
