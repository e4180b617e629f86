"""
Background preloader: keeps the cache warm for every configured feed source.

Each tick reads the source list from the provider, splits the enabled sources
into batches of `max_concurrent_requests`, fetches a batch concurrently and
pauses briefly before the next one. Per source:

    cache hit?         -> nothing to do
    rate limit full?   -> skip until the next tick
    fetch (+ retries)  -> parse -> cache with ttl = cache_ttl_fraction * refresh_interval

A source already being fetched is never fetched twice at once; its later ticks
and manual triggers are skipped until the running fetch resolves.
"""
from __future__ import annotations

import asyncio
import dataclasses
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from loguru import logger

from .cache import BoundedCache
from .exceptions import FetchError, ParseError, PersistenceError, RateLimitSkip
from .fetcher import FeedFetcher
from .models import FeedKind, FeedFormat, FeedSource, NewsItem, ParsedFeed, SourceState, SourceStatus
from .parser import ParserConfig, parse_feed
from .ratelimit import ConcurrencyLimiter, SlidingWindowLimiter
from .sources import FeedSourceProvider
from .storage import (
    PRELOADER_STATS_KEY,
    DebouncedWriter,
    KeyValueStore,
    as_count,
    as_number,
    load_json,
    save_json,
)

CACHE_KEY_PREFIX = "news:"

_KIND_FORMATS = {
    FeedKind.RSS: FeedFormat.RSS,
    FeedKind.ATOM: FeedFormat.ATOM,
    FeedKind.JSON: FeedFormat.JSON,
    FeedKind.API: FeedFormat.JSON,
}


_STAT_TIMES = ("last_preload_at", "next_preload_at")


def cache_key(source_id: str) -> str:
    return f"{CACHE_KEY_PREFIX}{source_id}"


@dataclass(frozen=True)
class PreloaderConfig:
    enabled: bool = True
    refresh_interval: float = 2 * 60 * 60
    max_concurrent_requests: int = 3
    # Retries after the initial attempt.
    retry_attempts: int = 3
    retry_base_delay: float = 5.0
    rate_limit_safety_factor: float = 0.9
    batch_pause: float = 1.0
    # Cached feeds expire at this fraction of refresh_interval.
    cache_ttl_fraction: float = 0.8
    request_timeout: float = 30.0
    stats_debounce: float = 1.0

    def __post_init__(self) -> None:
        if self.refresh_interval <= 0:
            raise ValueError("refresh_interval must be positive")
        if self.max_concurrent_requests < 1:
            raise ValueError("max_concurrent_requests must be at least 1")
        if self.retry_attempts < 0:
            raise ValueError("retry_attempts must not be negative")
        if self.retry_base_delay < 0 or self.batch_pause < 0:
            raise ValueError("delays must not be negative")
        if not 0 < self.rate_limit_safety_factor <= 1:
            raise ValueError("rate_limit_safety_factor must be in (0, 1]")
        if not 0 < self.cache_ttl_fraction <= 1:
            raise ValueError("cache_ttl_fraction must be in (0, 1]")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")

    @property
    def cache_ttl(self) -> float:
        return self.refresh_interval * self.cache_ttl_fraction

    def retry_delay(self, attempt: int) -> float:
        """Backoff after failed attempt number `attempt` (1-based)."""
        return self.retry_base_delay * 2 ** (attempt - 1)


@dataclass
class PreloaderStats:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    last_preload_at: Optional[float] = None
    next_preload_at: Optional[float] = None
    average_response_time_ms: float = 0.0
    rate_limit_skips: int = 0


class PreloadOutcome(str, Enum):
    FETCHED = "fetched"
    CACHED = "cached"
    RATE_LIMITED = "rate_limited"
    IN_FLIGHT = "in_flight"
    DISABLED = "disabled"
    FAILED = "failed"
    DISCARDED = "discarded"


class BackgroundPreloader:
    """
    Scheduler that refreshes cached feeds ahead of user requests.

    Time is injected: `clock` supplies timestamps and `sleep` is awaited for the
    inter-tick wait, retry backoff and batch pauses, so `tick()` can be driven
    from tests without real delays.
    """

    def __init__(
        self,
        cache: BoundedCache,
        sources: FeedSourceProvider,
        fetcher: FeedFetcher,
        *,
        config: Optional[PreloaderConfig] = None,
        store: Optional[KeyValueStore] = None,
        parser_config: Optional[ParserConfig] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._cache = cache
        self._sources = sources
        self._fetcher = fetcher
        self._config = config or PreloaderConfig()
        self._store = store
        self._parser_config = parser_config or ParserConfig()
        self._clock = clock
        self._sleep = sleep

        self._stats = PreloaderStats()
        self._limiter = SlidingWindowLimiter(self._config.rate_limit_safety_factor, clock=clock)
        self._concurrency = ConcurrencyLimiter(self._config.max_concurrent_requests)
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._status: Dict[str, SourceStatus] = {}
        self._timer: Optional[asyncio.Task] = None
        self._active = True
        self._writer = DebouncedWriter(self._save_stats, self._config.stats_debounce)

    # ── lifecycle ──────────────────────────────────────────────

    async def start(self) -> None:
        """Restore persisted stats and, when enabled, start the recurring schedule."""
        await self._load_stats()
        if self._config.enabled:
            self._start_timer()

    async def stop(self) -> None:
        """Cancel the recurring schedule. Fetches already in flight keep running."""
        task, self._timer = self._timer, None
        self._stats.next_preload_at = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def destroy(self) -> None:
        """
        Stop for good. In-flight fetches are left to finish or time out on their
        own; their results are discarded instead of being written to the cache.
        """
        self._active = False
        await self.stop()
        self._limiter.clear()
        await self._writer.cancel()
        await self._save_stats()

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def _start_timer(self) -> None:
        if self.running or not self._active:
            return
        self._timer = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while self._active:
            try:
                await self.tick()
            except Exception:
                logger.exception("Error during preloading")
            self._stats.next_preload_at = self._clock() + self._config.refresh_interval
            await self._sleep(self._config.refresh_interval)

    # ── scheduling ─────────────────────────────────────────────

    async def tick(self) -> Dict[str, PreloadOutcome]:
        """Run one scheduled pass over every enabled source."""
        try:
            sources = await self._sources.list_sources()
        except Exception as e:
            logger.warning(f"Failed to load feed sources, skipping this tick: {e}")
            return {}

        self._forget_removed(sources)
        results = await self._run_batches([s for s in sources if s.enabled])
        self._stats.last_preload_at = self._clock()
        self._persist_stats()
        return results

    async def preload_now(self, source_ids: Optional[Iterable[str]] = None) -> Dict[str, PreloadOutcome]:
        """
        Run the fetch pipeline right away for `source_ids`, or for every enabled
        source when omitted. Concurrency caps, rate limits and retries still apply.
        """
        sources = await self._sources.list_sources()
        if source_ids is None:
            targets = [s for s in sources if s.enabled]
        else:
            wanted = set(source_ids)
            targets = [s for s in sources if s.id in wanted]

        results = await self._run_batches(targets)
        self._persist_stats()
        return results

    async def _run_batches(self, sources: Sequence[FeedSource]) -> Dict[str, PreloadOutcome]:
        size = self._config.max_concurrent_requests
        batches = [sources[i:i + size] for i in range(0, len(sources), size)]
        results: Dict[str, PreloadOutcome] = {}

        for n, batch in enumerate(batches):
            if not self._active:
                break
            outcomes = await asyncio.gather(*(self.preload_source(s) for s in batch))
            results.update(zip((s.id for s in batch), outcomes))
            if n < len(batches) - 1 and self._config.batch_pause > 0:
                await self._sleep(self._config.batch_pause)
        return results

    def _forget_removed(self, sources: Sequence[FeedSource]) -> None:
        """Drop rate-limit history and status of sources the provider no longer lists."""
        gone = (self._limiter.tracked() | set(self._status)) - {s.id for s in sources} - set(self._in_flight)
        for source_id in gone:
            self._limiter.forget(source_id)
            self._status.pop(source_id, None)
        if gone:
            logger.debug(f"Forgot {len(gone)} removed sources: {', '.join(sorted(gone))}")

    async def preload_source(self, source: FeedSource) -> PreloadOutcome:
        if not source.enabled:
            return PreloadOutcome.DISABLED
        if source.id in self._in_flight:
            logger.debug(f"Fetch already in flight for: {source.name}")
            return PreloadOutcome.IN_FLIGHT

        task = asyncio.get_running_loop().create_task(self._preload(source))
        self._in_flight[source.id] = task
        # Cancelling the caller (stop(), a cancelled tick) must not kill the fetch itself.
        return await asyncio.shield(task)

    # ── per-source pipeline ────────────────────────────────────

    async def _preload(self, source: FeedSource) -> PreloadOutcome:
        status = self._status.setdefault(source.id, SourceStatus())
        try:
            if self._cache.has(cache_key(source.id)):
                logger.debug(f"Using cached news for: {source.name}")
                return PreloadOutcome.CACHED

            try:
                self._limiter.check(source)
            except RateLimitSkip as skip:
                self._stats.rate_limit_skips += 1
                logger.info(f"Rate limit reached for source: {source.name} ({skip})")
                return PreloadOutcome.RATE_LIMITED

            try:
                feed, elapsed_ms = await self._fetch_with_retry(source, status)
            except (FetchError, ParseError) as e:
                await self._record_failure(source, status, e)
                return PreloadOutcome.FAILED
            except Exception as e:
                logger.exception(f"Unexpected error preloading {source.name}")
                await self._record_failure(source, status, e)
                return PreloadOutcome.FAILED

            if not self._active:
                logger.debug(f"Preloader destroyed; discarding result for: {source.name}")
                return PreloadOutcome.DISCARDED

            self._cache.set(cache_key(source.id), feed.to_dict(), ttl=self._config.cache_ttl)

            s = self._stats
            s.successful_requests += 1
            s.average_response_time_ms = (
                s.average_response_time_ms * (s.successful_requests - 1) + elapsed_ms
            ) / s.successful_requests

            status.state = SourceState.IDLE
            status.last_updated_at = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
            status.last_error = None
            await self._report(source.id, status)

            logger.info(f"Successfully preloaded {len(feed.items)} items from: {source.name}")
            return PreloadOutcome.FETCHED
        finally:
            status.state = SourceState.IDLE
            self._in_flight.pop(source.id, None)

    async def _fetch_with_retry(self, source: FeedSource, status: SourceStatus) -> Tuple[ParsedFeed, float]:
        """
        Initial attempt plus up to `retry_attempts` retries, backing off
        exponentially in between. Parse errors are not retried.
        """
        attempt = 1
        while True:
            status.state = SourceState.FETCHING
            status.attempts = attempt
            self._limiter.record(source)
            self._stats.total_requests += 1

            started = time.perf_counter()
            try:
                async with self._concurrency:
                    response = await asyncio.wait_for(
                        self._fetcher.fetch(source), timeout=self._config.request_timeout
                    )
            except asyncio.TimeoutError as e:
                error = FetchError(source.id, f"Timed out after {self._config.request_timeout}s")
                error.__cause__ = e
            except FetchError as e:
                error = e
            else:
                elapsed_ms = (time.perf_counter() - started) * 1000
                feed = parse_feed(
                    response.content,
                    _KIND_FORMATS.get(source.kind),
                    content_type=response.content_type,
                    url=response.url or source.url,
                    source_name=source.name,
                    config=self._parser_config,
                )
                return feed, elapsed_ms

            logger.warning(f"Failed to preload from {source.name} (attempt {attempt}): {error}")
            if attempt > self._config.retry_attempts:
                raise error

            status.state = SourceState.RETRYING
            delay = self._config.retry_delay(attempt)
            logger.info(f"Retrying {source.name} in {delay:.1f}s...")
            await self._sleep(delay)
            if not self._limiter.allow(source):
                logger.info(f"Rate limit reached for source: {source.name}; giving up retries")
                raise error
            attempt += 1

    async def _record_failure(self, source: FeedSource, status: SourceStatus, error: Exception) -> None:
        self._stats.failed_requests += 1
        status.state = SourceState.IDLE
        status.last_error = str(error)
        logger.warning(f"Giving up on {source.name}: {error}")
        await self._report(source.id, status)

    async def _report(self, source_id: str, status: SourceStatus) -> None:
        try:
            await self._sources.report_status(source_id, dataclasses.replace(status))
        except Exception as e:
            logger.warning(f"Failed to report status for {source_id}: {e}")

    # ── reads ──────────────────────────────────────────────────

    def get_cached_feed(self, source_id: str) -> Optional[ParsedFeed]:
        key = cache_key(source_id)
        data = self._cache.get(key)
        if data is None:
            return None
        try:
            return ParsedFeed.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Dropping unreadable cache entry {key}: {e}")
            self._cache.delete(key)
            return None

    def get_cached_news(self, source_id: str) -> Optional[List[NewsItem]]:
        """Items cached for `source_id`, or None if nothing has been cached (or it expired)."""
        feed = self.get_cached_feed(source_id)
        return list(feed.items) if feed is not None else None

    # ── introspection / configuration ──────────────────────────

    def get_stats(self) -> PreloaderStats:
        return dataclasses.replace(self._stats)

    def reset_stats(self) -> None:
        self._stats = PreloaderStats(next_preload_at=self._stats.next_preload_at)
        self._persist_stats()

    def get_config(self) -> PreloaderConfig:
        return self._config

    def update_config(self, config: Optional[PreloaderConfig] = None, **changes: Any) -> PreloaderConfig:
        """Replace the configuration and restart the schedule so the new interval applies."""
        old = self._config
        new = dataclasses.replace(config or old, **changes)
        self._config = new
        self._writer.delay = new.stats_debounce
        if new.rate_limit_safety_factor != old.rate_limit_safety_factor:
            self._limiter.safety_factor = new.rate_limit_safety_factor
        if new.max_concurrent_requests != old.max_concurrent_requests:
            # Fetches holding a slot keep it; nobody new starts until usage is under the new cap.
            self._concurrency.set_limit(new.max_concurrent_requests)

        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if new.enabled:
            try:
                self._start_timer()
            except RuntimeError:
                # No running loop; start() will pick the schedule up.
                pass
        return new

    def source_status(self, source_id: str) -> Optional[SourceStatus]:
        status = self._status.get(source_id)
        return dataclasses.replace(status) if status else None

    def in_flight(self) -> Set[str]:
        return set(self._in_flight)

    # ── persistence ────────────────────────────────────────────

    def _persist_stats(self) -> None:
        if self._store is not None:
            self._writer.schedule()

    async def _load_stats(self) -> None:
        if self._store is None:
            return
        try:
            saved = await load_json(self._store, PRELOADER_STATS_KEY)
        except PersistenceError as e:
            logger.warning(f"Failed to load preloader stats: {e}")
            return
        if saved is None:
            return
        if not isinstance(saved, dict):
            logger.warning(f"Ignoring preloader stats of type {type(saved).__name__}")
            return
        for f in dataclasses.fields(PreloaderStats):
            if f.name not in saved:
                continue
            try:
                if f.name in _STAT_TIMES:
                    value: Any = as_number(saved[f.name], optional=True)
                elif f.name == "average_response_time_ms":
                    value = as_number(saved[f.name])
                else:
                    value = as_count(saved[f.name])
            except (TypeError, ValueError) as e:
                logger.warning(f"Ignoring persisted preloader stat {f.name}: {e}")
                continue
            setattr(self._stats, f.name, value)

    async def _save_stats(self) -> None:
        if self._store is None:
            return
        try:
            await save_json(self._store, PRELOADER_STATS_KEY, dataclasses.asdict(self._stats))
        except PersistenceError as e:
            logger.warning(f"Failed to save preloader stats: {e}")

    async def flush(self) -> None:
        await self._writer.cancel()
        await self._save_stats()
