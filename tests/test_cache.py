"""
BoundedCache tests.

Covers:
- size and entry-count ceilings, oldest-first eviction
- TTL expiry and the periodic sweep
- hit/miss accounting
- snapshot persistence and restore
"""
import pytest

from feed_engine.cache import BoundedCache, CacheConfig, measure_size
from feed_engine.exceptions import PersistenceError
from feed_engine.storage import CACHE_CONFIG_KEY, CACHE_ENTRIES_KEY, CACHE_STATS_KEY, MemoryStore, dumps

pytestmark = pytest.mark.anyio


def blob(size: int) -> str:
    """A string whose JSON encoding is exactly `size` bytes."""
    return "x" * (size - 2)


def small_cache(clock, **overrides) -> BoundedCache:
    cfg = dict(max_size_bytes=100, max_entries=1000, default_ttl=60)
    cfg.update(overrides)
    return BoundedCache(config=CacheConfig(**cfg), clock=clock)


class BrokenStore:
    async def get(self, key):
        raise OSError("disk on fire")

    async def set(self, key, value):
        raise OSError("disk on fire")

    async def delete(self, key):
        raise OSError("disk on fire")


# ============================================
# Ceilings and eviction
# ============================================


class TestEviction:
    """Size and count bounds."""

    def test_measure_size_is_json_length(self):
        assert measure_size(blob(30)) == 30
        assert measure_size({"a": 1}) == len(b'{"a":1}')

    def test_size_ceiling_evicts_oldest_first(self, clock):
        cache = small_cache(clock)
        for key in ("a", "b", "c"):
            cache.set(key, blob(30))
            clock.advance(1)

        cache.set("d", blob(30))

        assert [e.key for e in cache.entries()] == ["b", "c", "d"]
        stats = cache.get_stats()
        assert stats.total_size_bytes == 90
        assert stats.total_size_bytes <= 100

    def test_eviction_frees_down_to_headroom(self, clock):
        cache = small_cache(clock)
        for key in ("a", "b", "c", "d", "e"):
            cache.set(key, blob(18))
            clock.advance(1)
        assert cache.get_stats().total_size_bytes == 90

        # 90 + 18 > 100: evict until <= 80 and the new entry fits.
        cache.set("f", blob(18))

        assert [e.key for e in cache.entries()] == ["b", "c", "d", "e", "f"]
        assert cache.get_stats().total_size_bytes == 90

    def test_entry_count_ceiling(self, clock):
        cache = small_cache(clock, max_entries=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)

        assert len(cache) == 2
        assert cache.get("a") is None
        assert cache.get("b") == 2
        assert cache.get("c") == 3

    def test_oversize_entry_is_not_stored(self, clock):
        cache = small_cache(clock)
        cache.set("small", blob(10))
        cache.set("huge", blob(500))

        assert not cache.has("huge")
        assert cache.get("small") == blob(10)
        assert cache.get_stats().total_size_bytes == 10

    def test_replacing_a_key_keeps_accounting_exact(self, clock):
        cache = small_cache(clock)
        cache.set("a", blob(40))
        cache.set("a", blob(20))

        stats = cache.get_stats()
        assert stats.entry_count == 1
        assert stats.total_size_bytes == 20
        assert cache.entry_size("a") == 20

    def test_lowering_limits_evicts_immediately(self, clock):
        cache = small_cache(clock)
        for key in ("a", "b", "c"):
            cache.set(key, blob(10))
            clock.advance(1)

        cache.update_config(max_entries=1)

        assert [e.key for e in cache.entries()] == ["c"]
        assert cache.get_config().max_entries == 1


# ============================================
# TTL
# ============================================


class TestExpiry:
    """Entries expire strictly after their TTL."""

    def test_entry_lives_for_exactly_its_ttl(self, clock):
        cache = small_cache(clock)
        cache.set("k", "value", ttl=10)

        clock.advance(10)
        assert cache.get("k") == "value"

        clock.advance(0.001)
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_default_ttl_applies(self, clock):
        cache = small_cache(clock, default_ttl=5)
        cache.set("k", "value")
        assert cache.remaining_ttl("k") == 5

        clock.advance(6)
        assert not cache.has("k")

    def test_negative_ttl_rejected(self, clock):
        cache = small_cache(clock)
        with pytest.raises(ValueError):
            cache.set("k", "value", ttl=-1)

    def test_sweep_removes_expired_entries(self, clock):
        cache = small_cache(clock)
        cache.set("short", 1, ttl=1)
        cache.set("long", 2, ttl=100)

        clock.advance(2)
        removed = cache.sweep()

        assert removed == 1
        assert [e.key for e in cache.entries()] == ["long"]
        assert cache.get_stats().last_cleared_at == clock.now

    def test_delete_and_clear(self, clock):
        cache = small_cache(clock)
        cache.set("a", 1)
        cache.set("b", 2)

        assert cache.delete("a") is True
        assert cache.delete("a") is False

        cache.clear()
        stats = cache.get_stats()
        assert stats.entry_count == 0
        assert stats.total_size_bytes == 0


# ============================================
# Statistics
# ============================================


class TestStats:
    def test_hits_and_misses(self, clock):
        cache = small_cache(clock)
        cache.set("a", 1)

        cache.get("a")
        cache.get("a")
        cache.get("missing")

        stats = cache.get_stats()
        assert stats.hits == 2
        assert stats.misses == 1
        assert stats.total_requests == 3
        assert stats.hit_rate == pytest.approx(2 / 3)

    def test_stats_match_entries(self, clock):
        cache = small_cache(clock, max_entries=3)
        for i in range(10):
            cache.set(f"k{i}", blob(5 + i))

        stats = cache.get_stats()
        assert stats.entry_count == len(cache.entries()) == 3
        assert stats.total_size_bytes == sum(e.size_bytes for e in cache.entries())

    def test_get_stats_returns_a_copy(self, clock):
        cache = small_cache(clock)
        stats = cache.get_stats()
        stats.hits = 99
        assert cache.get_stats().hits == 0

    def test_reset_stats(self, clock):
        cache = small_cache(clock)
        cache.set("a", 1)
        cache.get("a")
        cache.reset_stats()

        stats = cache.get_stats()
        assert stats.hits == 0
        assert stats.total_requests == 0
        assert stats.entry_count == 1


# ============================================
# Persistence
# ============================================


class TestPersistence:
    async def test_snapshot_round_trip(self, clock):
        store = MemoryStore()
        cache = BoundedCache(store, CacheConfig(default_ttl=60), clock=clock)
        await cache.start()
        cache.set("news:bbc", {"title": "BBC"})
        await cache.close()

        restored = BoundedCache(store, clock=clock)
        await restored.start()
        try:
            assert restored.get("news:bbc") == {"title": "BBC"}
            assert restored.get_stats().entry_count == 1
            assert restored.get_config().default_ttl == 60
        finally:
            await restored.close()

    async def test_expired_entries_are_dropped_on_restore(self, clock):
        store = MemoryStore()
        cache = BoundedCache(store, clock=clock)
        await cache.start()
        cache.set("old", 1, ttl=10)
        cache.set("fresh", 2, ttl=1000)
        await cache.close()

        clock.advance(60)
        restored = BoundedCache(store, clock=clock)
        await restored.start()
        try:
            assert [e.key for e in restored.entries()] == ["fresh"]
        finally:
            await restored.close()

    async def test_explicit_config_wins_over_snapshot(self, clock):
        store = MemoryStore()
        await store.set(CACHE_CONFIG_KEY, dumps(CacheConfig(max_entries=5).to_dict()))

        cache = BoundedCache(store, CacheConfig(max_entries=50), clock=clock)
        await cache.start()
        try:
            assert cache.get_config().max_entries == 50
        finally:
            await cache.close()

    async def test_corrupt_snapshot_starts_empty(self, clock):
        store = MemoryStore()
        await store.set(CACHE_ENTRIES_KEY, b"{not json")

        cache = BoundedCache(store, clock=clock)
        await cache.start()
        try:
            assert len(cache) == 0
            cache.set("a", 1)
            assert cache.get("a") == 1
        finally:
            await cache.close()

    @pytest.mark.parametrize("key, raw", [
        (CACHE_STATS_KEY, {"hits": "x", "total_requests": 1}),
        (CACHE_STATS_KEY, {"hits": -1}),
        (CACHE_STATS_KEY, [1, 2]),
        (CACHE_CONFIG_KEY, [1, 2]),
        (CACHE_CONFIG_KEY, {"max_entries": "many"}),
        (CACHE_ENTRIES_KEY, {"key": "a"}),
    ])
    async def test_ill_typed_snapshot_starts_empty(self, clock, key, raw):
        store = MemoryStore()
        cache = BoundedCache(store, clock=clock)
        await cache.start()
        cache.set("news:bbc", {"title": "BBC"})
        await cache.close()
        await store.set(key, dumps(raw))

        restored = BoundedCache(store, clock=clock)
        await restored.start()
        try:
            assert len(restored) == 0
            stats = restored.get_stats()
            assert (stats.hits, stats.total_requests, stats.hit_rate) == (0, 0, 0.0)
            restored.set("a", 1)
            assert restored.get("a") == 1
        finally:
            await restored.close()

    async def test_saved_counters_are_restored(self, clock):
        store = MemoryStore()
        await store.set(CACHE_STATS_KEY, dumps({"hits": 3, "misses": 1, "total_requests": 4, "last_cleared_at": None}))

        cache = BoundedCache(store, clock=clock)
        await cache.start()
        try:
            stats = cache.get_stats()
            assert (stats.hits, stats.misses, stats.total_requests) == (3, 1, 4)
            assert stats.hit_rate == pytest.approx(0.75)
        finally:
            await cache.close()

    def test_config_from_non_object(self):
        with pytest.raises(TypeError):
            CacheConfig.from_dict([1, 2])

    async def test_store_failures_do_not_break_the_cache(self, clock):
        cache = BoundedCache(BrokenStore(), clock=clock)
        await cache.start()
        cache.set("a", 1)
        await cache.flush()
        assert cache.get("a") == 1
        await cache.close()

    async def test_writes_are_debounced(self, clock):
        store = MemoryStore()
        cache = BoundedCache(store, CacheConfig(persist_debounce=60), clock=clock)
        await cache.start()
        try:
            cache.set("a", 1)
            cache.set("b", 2)
            assert await store.get(CACHE_ENTRIES_KEY) is None
        finally:
            await cache.close()
        assert await store.get(CACHE_ENTRIES_KEY) is not None


class TestConfigValidation:
    @pytest.mark.parametrize(
        "changes",
        [
            {"max_size_bytes": 0},
            {"max_entries": 0},
            {"default_ttl": -1},
            {"eviction_headroom": 0},
            {"eviction_headroom": 1.5},
        ],
    )
    def test_invalid_values_rejected(self, changes):
        with pytest.raises(ValueError):
            CacheConfig(**changes)

    def test_persistence_error_is_feed_engine_error(self):
        from feed_engine.exceptions import FeedEngineError

        assert issubclass(PersistenceError, FeedEngineError)
