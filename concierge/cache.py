"""Two-tier response cache.

Tier 1 is a bounded in-process LRU map with a short TTL. Tier 2 is a
persistent store (Redis, or in-memory in LITE MODE) with a longer staleness
horizon. Reads promote fresh Tier 2 entries into Tier 1; writes go to Tier 1
synchronously and to Tier 2 best-effort.
"""

import asyncio
import logging
import re
import threading
from collections import OrderedDict
from functools import lru_cache
from hashlib import sha256
from time import time
from typing import Any, Callable, Iterable

from .models import CacheEntry
from .stores import CacheStore, MemoryCacheStore

logger = logging.getLogger(__name__)

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_query(query: str) -> str:
    """Lower-case, strip punctuation, collapse whitespace."""
    text = _PUNCTUATION.sub("", query.casefold())
    return _WHITESPACE.sub(" ", text).strip()


KEY_MEMO_SIZE = 1024


@lru_cache(maxsize=KEY_MEMO_SIZE)
def make_key(query: str, language: str) -> str:
    """Hash of normalized query + language. "Hello!" and "hello" collide."""
    return sha256(f"{language}:{normalize_query(query)}".encode()).hexdigest()[:32]


class ResponseCache:
    """Bounded LRU memory tier in front of a persistent store."""

    __slots__ = (
        "store", "max_size", "ttl", "default_max_age", "aggressive_ratio",
        "clock", "_memory", "_lock", "_stats",
    )

    def __init__(
        self,
        store: CacheStore | None = None,
        max_size: int = 200,
        ttl: float = 180.0,
        default_max_age: float = 24 * 3600.0,
        aggressive_ratio: float = 0.9,
        clock: Callable[[], float] = time,
    ):
        self.store = store if store is not None else MemoryCacheStore()
        self.max_size = max_size
        self.ttl = ttl
        self.default_max_age = default_max_age
        self.aggressive_ratio = aggressive_ratio
        self.clock = clock
        # key -> (entry, time it entered Tier 1)
        self._memory: OrderedDict[str, tuple[CacheEntry, float]] = OrderedDict()
        self._lock = threading.RLock()
        self._stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> dict[str, int]:
        return {
            "hits": 0,
            "misses": 0,
            "memory_hits": 0,
            "persistent_hits": 0,
            "evictions": 0,
            "expired_removed": 0,
            "persistent_errors": 0,
        }

    def __len__(self) -> int:
        return len(self._memory)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get(self, query: str, language: str) -> CacheEntry | None:
        """Look up an answer. Returns None on a miss."""
        key = make_key(query, language)
        now = self.clock()

        if entry := self._get_from_memory(key, now):
            self._stats["hits"] += 1
            self._stats["memory_hits"] += 1
            return entry

        entry = await self._get_from_store(key, language, now)
        if entry:
            self._stats["hits"] += 1
            self._stats["persistent_hits"] += 1
            return entry

        self._stats["misses"] += 1
        return None

    async def set(
        self,
        query: str,
        language: str,
        response: str,
        category: str = "general",
        ttl: float | None = None,
        max_age: float | None = None,
    ) -> CacheEntry:
        """Store an answer.

        Args:
            ttl: Optional absolute lifetime in seconds, honored by both tiers.
            max_age: Persistent-tier staleness horizon; defaults to
                ``default_max_age``.
        """
        now = self.clock()
        entry = CacheEntry(
            key=make_key(query, language),
            language=language,
            response_text=response,
            category=category,
            created_at=now,
            last_used_at=now,
            expires_at=now + ttl if ttl else None,
            max_age=max_age or self.default_max_age,
            query_text=query[:200],
        )
        self._set_in_memory(entry, now)
        await self._write_store(entry)
        return entry

    async def preload(self, items: Iterable[tuple[str, str, str, str]], max_age: float | None = None) -> int:
        """Seed (query, language, response, category) tuples into both tiers."""
        count = 0
        for query, language, response, category in items:
            await self.set(query, language, response, category, max_age=max_age)
            count += 1
        logger.info(f"Cache preloaded with {count} entries")
        return count

    async def warm_up(self, queries: Iterable[tuple[str, str]]) -> int:
        """Read common (query, language) pairs so Tier 2 hits land in Tier 1."""
        found = 0
        for query, language in queries:
            if await self.get(query, language):
                found += 1
        logger.info(f"Cache warm-up complete: {found} entries promoted")
        return found

    async def clear(self) -> None:
        with self._lock:
            self._memory.clear()
            self._stats = self._empty_stats()
        try:
            removed = await self.store.clear()
            logger.info(f"Cache cleared ({removed} persistent entries)")
        except Exception as e:
            logger.warning(f"Persistent cache clear failed: {e}")

    def stats(self) -> dict[str, Any]:
        total = self._stats["hits"] + self._stats["misses"]
        return {
            **self._stats,
            "hit_rate": round(self._stats["hits"] / total * 100, 2) if total else 0.0,
            "memory_size": len(self._memory),
            "max_memory_size": self.max_size,
            "memory_ttl": self.ttl,
        }

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def sweep_expired(self) -> int:
        """Remove Tier 1 entries past their TTL or absolute expiry."""
        now = self.clock()
        with self._lock:
            expired = [
                key for key, (entry, inserted) in self._memory.items()
                if not self._is_fresh(entry, inserted, now)
            ]
            for key in expired:
                del self._memory[key]
        if expired:
            self._stats["expired_removed"] += len(expired)
            logger.debug(f"Cache sweep removed {len(expired)} expired entries")
        return len(expired)

    def aggressive_cleanup(self) -> int:
        """Drop the least recently used half when occupancy passes the ratio."""
        with self._lock:
            if len(self._memory) <= self.max_size * self.aggressive_ratio:
                return 0
            to_remove = len(self._memory) // 2
            for _ in range(to_remove):
                self._memory.popitem(last=False)
        self._stats["evictions"] += to_remove
        logger.info(f"Aggressive cache cleanup removed {to_remove} entries")
        return to_remove

    # ------------------------------------------------------------------
    # Tier internals
    # ------------------------------------------------------------------

    def _is_fresh(self, entry: CacheEntry, inserted: float, now: float) -> bool:
        return now - inserted < self.ttl and not entry.is_expired(now)

    def _get_from_memory(self, key: str, now: float) -> CacheEntry | None:
        with self._lock:
            cached = self._memory.get(key)
            if cached is None:
                return None
            entry, inserted = cached
            if not self._is_fresh(entry, inserted, now):
                del self._memory[key]
                self._stats["expired_removed"] += 1
                return None
            self._memory.move_to_end(key)
            entry.hit_count += 1
            entry.last_used_at = now
            return entry

    def _set_in_memory(self, entry: CacheEntry, now: float) -> None:
        with self._lock:
            if entry.key in self._memory:
                self._memory.move_to_end(entry.key)
            elif len(self._memory) >= self.max_size:
                self._memory.popitem(last=False)
                self._stats["evictions"] += 1
            self._memory[entry.key] = (entry, now)

    async def _get_from_store(self, key: str, language: str, now: float) -> CacheEntry | None:
        try:
            entry = await self.store.read(key, language)
        except Exception as e:
            self._stats["persistent_errors"] += 1
            logger.warning(f"Persistent cache read failed: {e}")
            return None
        if entry is None:
            return None

        if entry.is_stale(now):
            try:
                await self.store.delete(key)
            except Exception as e:
                logger.warning(f"Stale cache entry delete failed: {e}")
            return None

        entry.hit_count += 1
        entry.last_used_at = now
        self._set_in_memory(entry, now)
        await self._write_store(entry)
        return entry

    async def _write_store(self, entry: CacheEntry) -> None:
        """Best-effort persistent write; failures never reach the caller."""
        try:
            await self.store.upsert(entry)
        except Exception as e:
            self._stats["persistent_errors"] += 1
            logger.warning(f"Persistent cache write failed: {e}")


class CacheJanitor:
    """Runs the expiry sweep and the aggressive cleanup on fixed schedules.

    Default: sweep every 2 minutes, aggressive cleanup every 10 minutes.
    """

    def __init__(
        self,
        cache: ResponseCache,
        sweep_interval: float = 120.0,
        aggressive_interval: float = 600.0,
    ):
        self.cache = cache
        self.sweep_interval = sweep_interval
        self.aggressive_interval = aggressive_interval
        self._tasks: list[asyncio.Task] = []
        self._running = False
        self.runs = {"sweep": 0, "aggressive": 0}

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._run_loop("sweep", self.sweep_interval, self.cache.sweep_expired)),
            asyncio.create_task(
                self._run_loop("aggressive", self.aggressive_interval, self.cache.aggressive_cleanup)
            ),
        ]
        logger.info(
            f"Cache janitor started (sweep: {self.sweep_interval}s, "
            f"aggressive: {self.aggressive_interval}s)"
        )

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Cache janitor stopped")

    async def _run_loop(self, name: str, interval: float, job: Callable[[], int]) -> None:
        while self._running:
            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break
            try:
                job()
                self.runs[name] += 1
            except Exception as e:
                logger.error(f"Cache {name} job failed: {e}")
