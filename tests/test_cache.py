"""Tests for the two-tier response cache."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from concierge.cache import KEY_MEMO_SIZE, CacheJanitor, ResponseCache, make_key, normalize_query
from concierge.models import CacheEntry


class TestKeys:
    """Query normalization and key derivation."""

    def test_normalize_strips_punctuation_and_whitespace(self):
        assert normalize_query("  Hello,   WORLD!! ") == "hello world"

    def test_punctuation_variants_share_a_key(self):
        assert make_key("Hello!", "en") == make_key("hello", "en")
        assert make_key("Where is   Bahir Dar?", "en") == make_key("where is bahir dar", "en")

    def test_language_is_part_of_the_key(self):
        assert make_key("hello", "en") != make_key("hello", "am")

    def test_key_length(self):
        assert len(make_key("hello", "en")) == 32

    def test_key_memo_is_bounded(self):
        for i in range(KEY_MEMO_SIZE * 3):
            make_key(f"distinct question {i}", "en")

        info = make_key.cache_info()
        assert info.maxsize == KEY_MEMO_SIZE
        assert info.currsize <= KEY_MEMO_SIZE


class TestMemoryTier:
    """Tier 1 behaviour: TTL, LRU and hit bookkeeping."""

    @pytest.mark.asyncio
    async def test_set_then_get(self, cache):
        await cache.set("hello", "en", "Hi there", "greeting")
        entry = await cache.get("hello", "en")

        assert entry.response_text == "Hi there"
        assert entry.category == "greeting"
        assert entry.hit_count == 1
        assert cache.stats()["memory_hits"] == 1

    @pytest.mark.asyncio
    async def test_miss_returns_none(self, cache):
        assert await cache.get("nothing here", "en") is None
        assert cache.stats()["misses"] == 1

    @pytest.mark.asyncio
    async def test_expired_memory_entry_is_removed(self, cache, clock):
        await cache.set("hello", "en", "Hi there")
        clock.advance(181)

        entry = await cache.get("hello", "en")

        # Tier 1 dropped it; the persistent tier still has a fresh copy
        assert entry.response_text == "Hi there"
        stats = cache.stats()
        assert stats["memory_hits"] == 0
        assert stats["persistent_hits"] == 1
        assert stats["expired_removed"] == 1

    @pytest.mark.asyncio
    async def test_absolute_expiry_applies_to_both_tiers(self, cache, cache_store, clock):
        await cache.set("hello", "en", "Hi there", ttl=10)
        clock.advance(11)

        assert await cache.get("hello", "en") is None
        assert await cache_store.count() == 0

    @pytest.mark.asyncio
    async def test_lru_eviction_keeps_recently_read(self, cache_store, clock):
        cache = ResponseCache(store=cache_store, max_size=3, ttl=180, clock=clock)
        for q in ("a", "b", "c"):
            await cache.set(q, "en", q.upper())
        await cache.get("a", "en")
        await cache.set("d", "en", "D")

        assert len(cache) == 3
        assert make_key("b", "en") not in cache._memory
        assert make_key("a", "en") in cache._memory
        assert cache.stats()["evictions"] == 1

    @pytest.mark.asyncio
    async def test_evicted_entry_still_served_from_persistent_tier(self, cache_store, clock):
        cache = ResponseCache(store=cache_store, max_size=1, ttl=180, clock=clock)
        await cache.set("first", "en", "1")
        await cache.set("second", "en", "2")

        entry = await cache.get("first", "en")

        assert entry.response_text == "1"
        assert cache.stats()["persistent_hits"] == 1

    @pytest.mark.asyncio
    async def test_overwrite_does_not_evict(self, cache_store, clock):
        cache = ResponseCache(store=cache_store, max_size=2, ttl=180, clock=clock)
        await cache.set("a", "en", "old")
        await cache.set("b", "en", "B")
        await cache.set("a", "en", "new")

        assert len(cache) == 2
        assert (await cache.get("a", "en")).response_text == "new"
        assert cache.stats()["evictions"] == 0


class TestPersistentTier:
    """Tier 2 promotion, staleness and failure isolation."""

    @pytest.mark.asyncio
    async def test_promotes_fresh_entry(self, cache, cache_store, clock):
        await cache_store.upsert(CacheEntry(
            key=make_key("where is gondar", "en"),
            language="en",
            response_text="North of Lake Tana",
            created_at=clock.now,
            last_used_at=clock.now,
        ))

        entry = await cache.get("Where is Gondar?", "en")
        assert entry.response_text == "North of Lake Tana"
        assert entry.hit_count == 1
        assert len(cache) == 1

        stored = await cache_store.read(make_key("where is gondar", "en"), "en")
        assert stored.hit_count == 1

        await cache.get("where is gondar", "en")
        assert cache.stats()["memory_hits"] == 1

    @pytest.mark.asyncio
    async def test_stale_entry_is_deleted(self, cache, cache_store, clock):
        key = make_key("old question", "en")
        await cache_store.upsert(CacheEntry(
            key=key,
            language="en",
            response_text="old answer",
            created_at=clock.now - 30 * 3600,
            last_used_at=clock.now - 25 * 3600,
        ))

        assert await cache.get("old question", "en") is None
        assert await cache_store.count() == 0
        assert cache.stats()["misses"] == 1

    @pytest.mark.asyncio
    async def test_language_mismatch_is_a_miss(self, cache, cache_store, clock):
        await cache_store.upsert(CacheEntry(
            key=make_key("hello", "am"),
            language="en",
            response_text="wrong language",
            last_used_at=clock.now,
        ))
        assert await cache.get("hello", "am") is None

    @pytest.mark.asyncio
    async def test_write_failure_does_not_fail_set(self, clock):
        store = MagicMock()
        store.upsert = AsyncMock(side_effect=ConnectionError("redis down"))
        cache = ResponseCache(store=store, clock=clock)

        entry = await cache.set("hello", "en", "Hi")

        assert entry.response_text == "Hi"
        assert (await cache.get("hello", "en")).response_text == "Hi"
        assert cache.stats()["persistent_errors"] == 1

    @pytest.mark.asyncio
    async def test_read_failure_is_a_miss(self, clock):
        store = MagicMock()
        store.read = AsyncMock(side_effect=ConnectionError("redis down"))
        cache = ResponseCache(store=store, clock=clock)

        assert await cache.get("hello", "en") is None
        stats = cache.stats()
        assert stats["misses"] == 1
        assert stats["persistent_errors"] == 1


class TestMaintenance:
    """Sweeps, stats, clear, preload and warm-up."""

    @pytest.mark.asyncio
    async def test_sweep_removes_only_expired(self, cache, clock):
        for q in ("one", "two", "three"):
            await cache.set(q, "en", q)
        clock.advance(100)
        await cache.set("four", "en", "four")
        clock.advance(100)

        assert cache.sweep_expired() == 3
        assert len(cache) == 1
        assert cache.stats()["expired_removed"] == 3

    @pytest.mark.asyncio
    async def test_aggressive_cleanup_below_ratio_is_noop(self, cache_store, clock):
        cache = ResponseCache(store=cache_store, max_size=10, clock=clock)
        for i in range(9):
            await cache.set(f"q{i}", "en", str(i))

        assert cache.aggressive_cleanup() == 0
        assert len(cache) == 9

    @pytest.mark.asyncio
    async def test_aggressive_cleanup_drops_oldest_half(self, cache_store, clock):
        cache = ResponseCache(store=cache_store, max_size=10, clock=clock)
        for i in range(10):
            await cache.set(f"q{i}", "en", str(i))

        assert cache.aggressive_cleanup() == 5
        assert len(cache) == 5
        assert make_key("q0", "en") not in cache._memory
        assert make_key("q9", "en") in cache._memory

    @pytest.mark.asyncio
    async def test_hit_rate(self, cache):
        await cache.set("hello", "en", "Hi")
        await cache.get("hello", "en")
        await cache.get("hello", "en")
        await cache.get("hello", "en")
        await cache.get("missing", "en")

        stats = cache.stats()
        assert stats["hits"] == 3
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 75.0
        assert stats["max_memory_size"] == 200

    @pytest.mark.asyncio
    async def test_clear_empties_both_tiers(self, cache, cache_store):
        await cache.set("hello", "en", "Hi")
        await cache.get("hello", "en")

        await cache.clear()

        assert len(cache) == 0
        assert await cache_store.count() == 0
        assert cache.stats()["hits"] == 0

    @pytest.mark.asyncio
    async def test_preload_uses_given_horizon(self, cache, cache_store):
        items = [
            ("hello", "en", "Hi!", "greeting"),
            ("payment", "en", "We take TeleBirr", "payment"),
        ]
        count = await cache.preload(items, max_age=7 * 24 * 3600)

        assert count == 2
        assert await cache_store.count() == 2
        entry = await cache.get("payment", "en")
        assert entry.category == "payment"
        assert entry.max_age == 7 * 24 * 3600

    @pytest.mark.asyncio
    async def test_warm_up_promotes_persistent_entries(self, cache, cache_store, clock):
        await cache_store.upsert(CacheEntry(
            key=make_key("hello", "en"), language="en", response_text="Hi", last_used_at=clock.now,
        ))

        found = await cache.warm_up([("hello", "en"), ("unknown", "en")])

        assert found == 1
        assert len(cache) == 1


class TestCacheJanitor:
    """Background sweep scheduling."""

    @pytest.mark.asyncio
    async def test_runs_jobs_on_schedule(self, cache):
        janitor = CacheJanitor(cache, sweep_interval=0.01, aggressive_interval=0.01)
        await janitor.start()
        assert janitor.running

        await asyncio.sleep(0.05)
        await janitor.stop()

        assert not janitor.running
        assert janitor.runs["sweep"] >= 1
        assert janitor.runs["aggressive"] >= 1

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, cache):
        janitor = CacheJanitor(cache, sweep_interval=10, aggressive_interval=10)
        await janitor.start()
        await janitor.start()

        assert len(janitor._tasks) == 2
        await janitor.stop()
