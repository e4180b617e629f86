"""
Bounded key/value cache with per-entry TTL, size and entry-count ceilings.

Entries are evicted oldest-first when an insert would break a ceiling. The cache
is only ever mutated from the event loop thread and none of the mutating methods
await, so each call is atomic with respect to other tasks.
"""
from __future__ import annotations

import asyncio
import dataclasses
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .exceptions import PersistenceError
from .storage import (
    CACHE_CONFIG_KEY,
    CACHE_ENTRIES_KEY,
    CACHE_STATS_KEY,
    DebouncedWriter,
    KeyValueStore,
    as_count,
    as_number,
    dumps,
    load_json,
    save_json,
)

_STAT_COUNTERS = ("hits", "misses", "total_requests")


@dataclass(frozen=True)
class CacheConfig:
    max_size_bytes: int = 50 * 1024 * 1024
    max_entries: int = 1000
    default_ttl: float = 4 * 60 * 60
    cleanup_interval: float = 5 * 60
    # Eviction frees space down to this fraction of max_size_bytes.
    eviction_headroom: float = 0.8
    persist_debounce: float = 1.0

    def __post_init__(self) -> None:
        if self.max_size_bytes <= 0:
            raise ValueError("max_size_bytes must be positive")
        if self.max_entries <= 0:
            raise ValueError("max_entries must be positive")
        if self.default_ttl < 0:
            raise ValueError("default_ttl must not be negative")
        if self.cleanup_interval <= 0:
            raise ValueError("cleanup_interval must be positive")
        if not 0 < self.eviction_headroom <= 1:
            raise ValueError("eviction_headroom must be in (0, 1]")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheConfig":
        if not isinstance(data, dict):
            raise TypeError(f"cache config must be an object, not {type(data).__name__}")
        names = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})


@dataclass(frozen=True)
class CacheEntry:
    key: str
    data: Any
    created_at: float
    ttl: float
    size_bytes: int

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl

    def remaining(self, now: float) -> float:
        return max(0.0, self.ttl - (now - self.created_at))


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    total_requests: int = 0
    hit_rate: float = 0.0
    total_size_bytes: int = 0
    entry_count: int = 0
    last_cleared_at: Optional[float] = None


def measure_size(data: Any) -> int:
    """Byte length of the UTF-8 JSON serialization of `data`."""
    return len(dumps(data))


class BoundedCache:
    """
    TTL cache bounded by total serialized size and entry count.

    Usage:

        cache = BoundedCache(store, CacheConfig(max_entries=500))
        await cache.start()      # restore snapshot, start periodic sweep
        cache.set("news:bbc", payload, ttl=600)
        cache.get("news:bbc")
        await cache.close()      # stop sweep, write final snapshot
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        config: Optional[CacheConfig] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._explicit_config = config is not None
        self._config = config or CacheConfig()
        self._clock = clock
        # Insertion order is creation order: the first entry is always the oldest.
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._stats = CacheStats()
        self._writer = DebouncedWriter(self._save, self._config.persist_debounce)
        self._sweeper: Optional[asyncio.Task] = None

    # ── lifecycle ──────────────────────────────────────────────

    async def start(self) -> None:
        await self._restore()
        self._start_sweeper()

    async def close(self) -> None:
        await self._stop_sweeper()
        await self.flush()

    async def flush(self) -> None:
        """Write the current snapshot now instead of waiting for the debounce."""
        await self._writer.cancel()
        await self._save()

    def _start_sweeper(self) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def _stop_sweeper(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.cleanup_interval)
            self.sweep()

    # ── core operations ────────────────────────────────────────

    def set(self, key: str, data: Any, ttl: Optional[float] = None) -> None:
        size = measure_size(data)
        if ttl is None:
            ttl = self._config.default_ttl
        if ttl < 0:
            raise ValueError("ttl must not be negative")

        self._remove(key)

        if size > self._config.max_size_bytes:
            logger.warning(
                f"Cache entry {key} is {size} bytes, larger than the cache "
                f"({self._config.max_size_bytes} bytes); not stored"
            )
            self._persist()
            return

        self._make_room(size)

        self._entries[key] = CacheEntry(
            key=key,
            data=data,
            created_at=self._clock(),
            ttl=ttl,
            size_bytes=size,
        )
        self._stats.total_size_bytes += size
        self._stats.entry_count += 1
        self._persist()

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self._record(hit=False)
            return None

        if entry.is_expired(self._clock()):
            self._remove(key)
            self._record(hit=False)
            return None

        self._record(hit=True)
        return entry.data

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def delete(self, key: str) -> bool:
        removed = self._remove(key)
        if removed:
            self._persist()
        return removed

    def clear(self) -> None:
        self._entries.clear()
        self._stats.total_size_bytes = 0
        self._stats.entry_count = 0
        self._stats.last_cleared_at = self._clock()
        self._persist()

    def sweep(self) -> int:
        """Drop expired entries, then evict if still over the size ceiling. Returns entries expired."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            self._remove(key)
        if expired:
            self._stats.last_cleared_at = now
            logger.debug(f"Cache sweep removed {len(expired)} expired entries")

        evicted = 0
        if self._stats.total_size_bytes > self._config.max_size_bytes:
            evicted = self._evict_to(self._headroom_target())

        if expired or evicted:
            self._persist()
        return len(expired)

    # ── introspection ──────────────────────────────────────────

    def get_stats(self) -> CacheStats:
        return dataclasses.replace(self._stats)

    def reset_stats(self) -> None:
        self._stats.hits = 0
        self._stats.misses = 0
        self._stats.total_requests = 0
        self._stats.hit_rate = 0.0
        self._persist()

    def get_config(self) -> CacheConfig:
        return self._config

    def update_config(self, config: Optional[CacheConfig] = None, **changes: Any) -> CacheConfig:
        old = self._config
        new = dataclasses.replace(config or old, **changes)
        self._config = new
        self._explicit_config = True
        self._writer.delay = new.persist_debounce

        self._enforce_bounds()

        if new.cleanup_interval != old.cleanup_interval and self._sweeper is not None:
            self._sweeper.cancel()
            self._sweeper = None
            self._start_sweeper()

        self._persist()
        return new

    def entries(self) -> List[CacheEntry]:
        return list(self._entries.values())

    def entry_size(self, key: str) -> int:
        entry = self._entries.get(key)
        return entry.size_bytes if entry else 0

    def remaining_ttl(self, key: str) -> float:
        entry = self._entries.get(key)
        if entry is None:
            return 0.0
        return entry.remaining(self._clock())

    def __len__(self) -> int:
        return len(self._entries)

    # ── internals ──────────────────────────────────────────────

    def _record(self, *, hit: bool) -> None:
        s = self._stats
        s.total_requests += 1
        if hit:
            s.hits += 1
        else:
            s.misses += 1
        s.hit_rate = s.hits / s.total_requests
        self._persist()

    def _remove(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._stats.total_size_bytes -= entry.size_bytes
        self._stats.entry_count -= 1
        return True

    def _evict_oldest(self) -> None:
        key, entry = self._entries.popitem(last=False)
        self._stats.total_size_bytes -= entry.size_bytes
        self._stats.entry_count -= 1
        logger.debug(f"Evicted cache entry {key} ({entry.size_bytes} bytes)")

    def _headroom_target(self) -> float:
        return self._config.max_size_bytes * self._config.eviction_headroom

    def _evict_to(self, limit: float) -> int:
        evicted = 0
        while self._entries and self._stats.total_size_bytes > limit:
            self._evict_oldest()
            evicted += 1
        return evicted

    def _make_room(self, incoming: int) -> None:
        cfg = self._config
        over_size = self._stats.total_size_bytes + incoming > cfg.max_size_bytes
        over_count = len(self._entries) + 1 > cfg.max_entries
        if not (over_size or over_count):
            return

        target = self._headroom_target()
        while self._entries and (
            self._stats.total_size_bytes > target
            or self._stats.total_size_bytes + incoming > cfg.max_size_bytes
        ):
            self._evict_oldest()

        while self._entries and len(self._entries) + 1 > cfg.max_entries:
            self._evict_oldest()

    def _enforce_bounds(self) -> None:
        cfg = self._config
        if self._stats.total_size_bytes > cfg.max_size_bytes:
            self._evict_to(self._headroom_target())
        while len(self._entries) > cfg.max_entries:
            self._evict_oldest()

    def _persist(self) -> None:
        if self._store is not None:
            self._writer.schedule()

    # ── persistence ────────────────────────────────────────────

    async def _restore(self) -> None:
        if self._store is None:
            return
        try:
            raw_config = await load_json(self._store, CACHE_CONFIG_KEY)
            raw_entries = await load_json(self._store, CACHE_ENTRIES_KEY) or []
            raw_stats = await load_json(self._store, CACHE_STATS_KEY) or {}
            if not isinstance(raw_entries, list):
                raise TypeError(f"cache entries must be a list, not {type(raw_entries).__name__}")
            if not isinstance(raw_stats, dict):
                raise TypeError(f"cache stats must be an object, not {type(raw_stats).__name__}")

            config = self._config
            if raw_config and not self._explicit_config:
                config = CacheConfig.from_dict(raw_config)
            restored = [
                CacheEntry(
                    key=str(e["key"]),
                    data=e["data"],
                    created_at=float(e["created_at"]),
                    ttl=float(e["ttl"]),
                    size_bytes=int(e["size_bytes"]),
                )
                for e in raw_entries
            ]
            saved_stats: Dict[str, Any] = {
                name: as_count(raw_stats[name]) for name in _STAT_COUNTERS if name in raw_stats
            }
            if "last_cleared_at" in raw_stats:
                saved_stats["last_cleared_at"] = as_number(raw_stats["last_cleared_at"], optional=True)
        except (PersistenceError, AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Failed to restore cache snapshot, starting empty: {e}")
            return

        now = self._clock()
        entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        for entry in sorted(restored, key=lambda x: x.created_at):
            if entry.is_expired(now) or entry.key in self._entries:
                continue
            entries[entry.key] = entry
        # Anything set before start() is newer than the snapshot.
        entries.update(self._entries)

        self._config = config
        self._writer.delay = config.persist_debounce
        self._entries = entries
        self._stats.total_size_bytes = sum(e.size_bytes for e in entries.values())
        self._stats.entry_count = len(entries)
        for name, value in saved_stats.items():
            setattr(self._stats, name, value)
        s = self._stats
        s.hit_rate = s.hits / s.total_requests if s.total_requests else 0.0

        self._enforce_bounds()
        logger.info(f"Restored {len(self._entries)} cache entries ({s.total_size_bytes} bytes)")

    async def _save(self) -> None:
        if self._store is None:
            return
        entries = [
            {
                "key": e.key,
                "data": e.data,
                "created_at": e.created_at,
                "ttl": e.ttl,
                "size_bytes": e.size_bytes,
            }
            for e in self._entries.values()
        ]
        try:
            await save_json(self._store, CACHE_ENTRIES_KEY, entries)
            await save_json(self._store, CACHE_STATS_KEY, asdict(self._stats))
            await save_json(self._store, CACHE_CONFIG_KEY, self._config.to_dict())
        except PersistenceError as e:
            logger.warning(f"Failed to persist cache snapshot: {e}")
