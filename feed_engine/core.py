from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Union

from loguru import logger

from .cache import BoundedCache, CacheStats
from .fetcher import FeedFetcher, HttpFeedFetcher
from .models import FeedSource, NewsItem, ParsedFeed
from .preloader import BackgroundPreloader, PreloaderStats, PreloadOutcome
from .settings import EngineSettings
from .sources import FeedSourceProvider, StaticSourceProvider
from .storage import FileStore, KeyValueStore, MemoryStore


@dataclass
class EngineStats:
    cache: CacheStats
    preloader: PreloaderStats


class FeedEngine:
    """
    High-level API: keep a cache of normalized feeds warm and serve reads from it.

    Pipeline per source: fetch → parse → classify → normalize → deduplicate → cache

    The host owns the instance: `start()` it once, read with `news()`, and
    `close()` it on shutdown (or use it as an async context manager).
    """

    def __init__(
        self,
        sources: Union[FeedSourceProvider, Iterable[FeedSource]],
        *,
        settings: Optional[EngineSettings] = None,
        store: Optional[KeyValueStore] = None,
        fetcher: Optional[FeedFetcher] = None,
    ) -> None:
        self.settings = settings or EngineSettings()

        if hasattr(sources, "list_sources"):
            self.sources = sources
        else:
            self.sources = StaticSourceProvider(sources)  # type: ignore[arg-type]

        if store is None:
            store = FileStore(self.settings.storage_dir) if self.settings.storage_dir else MemoryStore()
        self.store = store

        self._owns_fetcher = fetcher is None
        self.fetcher = fetcher or HttpFeedFetcher(
            timeout=self.settings.preloader.request_timeout,
            user_agent=self.settings.user_agent,
        )

        self.cache = BoundedCache(self.store, self.settings.cache)
        self.preloader = BackgroundPreloader(
            self.cache,
            self.sources,  # type: ignore[arg-type]
            self.fetcher,
            config=self.settings.preloader,
            store=self.store,
            parser_config=self.settings.parser,
        )
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        await self.cache.start()
        await self.preloader.start()
        self._started = True
        logger.info("Feed engine started")

    async def close(self) -> None:
        await self.preloader.destroy()
        await self.cache.close()
        if self._owns_fetcher and isinstance(self.fetcher, HttpFeedFetcher):
            await self.fetcher.aclose()
        self._started = False
        logger.info("Feed engine closed")

    async def __aenter__(self) -> "FeedEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def refresh(self, source_ids: Optional[Iterable[str]] = None) -> Dict[str, PreloadOutcome]:
        """Preload the given sources (or every enabled one) now instead of waiting for the schedule."""
        return await self.preloader.preload_now(source_ids)

    async def news(self, source_id: str, *, fetch_missing: bool = True) -> Optional[List[NewsItem]]:
        """
        Cached items for `source_id`. On a miss the source is preloaded once
        (unless `fetch_missing` is False); None means nothing could be cached.
        """
        items = self.preloader.get_cached_news(source_id)
        if items is None and fetch_missing:
            await self.preloader.preload_now([source_id])
            items = self.preloader.get_cached_news(source_id)
        return items

    def feed(self, source_id: str) -> Optional[ParsedFeed]:
        return self.preloader.get_cached_feed(source_id)

    def stats(self) -> EngineStats:
        return EngineStats(cache=self.cache.get_stats(), preloader=self.preloader.get_stats())
