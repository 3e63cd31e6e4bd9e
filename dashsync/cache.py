"""Scope-keyed read-through cache with lazy TTL expiry.

Entries expire ``ttl_seconds`` after they were stored and are only dropped
when next read. Concurrent misses on one key share a single fetch; a failed
fetch is never cached and is raised to every caller that was waiting on it.
The fetch runs in its own task: cancelling a caller never cancels it, and
its value is stored even when nobody is left waiting.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from dashsync.config import DASHBOARD_CACHE_TTL_SECONDS

logger = logging.getLogger(__name__)

T = TypeVar("T")

ALL_SCOPES = "all"


def cache_key(resource: str, scope: str | None = None) -> str:
    """Compose a deterministic key, e.g. ``cache_key("dashboard")`` -> ``"dashboard:all"``."""
    return f"{resource}:{scope or ALL_SCOPES}"


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    key: str
    value: T
    stored_at: float


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    fetches: int = 0
    errors: int = 0
    size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class ReadThroughCache:
    def __init__(
        self,
        ttl_seconds: float = DASHBOARD_CACHE_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._in_flight: dict[str, asyncio.Task[Any]] = {}
        self._stats = CacheStats()

    def __len__(self) -> int:
        return sum(1 for entry in self._entries.values() if self._is_live(entry))

    def __contains__(self, key: object) -> bool:
        entry = self._entries.get(key) if isinstance(key, str) else None
        return entry is not None and self._is_live(entry)

    async def get(self, key: str, fetcher: Callable[[], Awaitable[T]]) -> T:
        """Return the live value for ``key``, fetching it on a miss."""
        entry = self._entries.get(key)
        if entry is not None:
            if self._is_live(entry):
                self._stats.hits += 1
                return entry.value
            del self._entries[key]

        self._stats.misses += 1
        task = self._in_flight.get(key)
        if task is None:
            self._stats.fetches += 1
            task = asyncio.ensure_future(self._fetch(key, fetcher))
            task.add_done_callback(_retrieve_exception)
            self._in_flight[key] = task
        # shield: a cancelled caller must not cancel the shared fetch
        return await asyncio.shield(task)

    async def _fetch(self, key: str, fetcher: Callable[[], Awaitable[T]]) -> T:
        try:
            value = await fetcher()
        except Exception as exc:
            self._stats.errors += 1
            logger.warning("Cache fetch for %s failed: %s", key, exc)
            raise
        else:
            # last writer wins
            self._entries[key] = CacheEntry(key=key, value=value, stored_at=self._clock())
            return value
        finally:
            if self._in_flight.get(key) is asyncio.current_task():
                del self._in_flight[key]

    def peek(self, key: str) -> Any | None:
        """Return the live cached value without fetching, or ``None``."""
        entry = self._entries.get(key)
        if entry is None or not self._is_live(entry):
            return None
        return entry.value

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        stale = [key for key in self._entries if key.startswith(prefix)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def invalidate_all(self) -> None:
        self._entries.clear()

    def stats(self) -> CacheStats:
        return CacheStats(
            hits=self._stats.hits,
            misses=self._stats.misses,
            fetches=self._stats.fetches,
            errors=self._stats.errors,
            size=len(self),
        )

    def _is_live(self, entry: CacheEntry[Any]) -> bool:
        return self._clock() - entry.stored_at < self.ttl_seconds


def _retrieve_exception(task: asyncio.Future[Any]) -> None:
    # a failed fetch nobody awaits any more must not warn at teardown
    if not task.cancelled():
        task.exception()
