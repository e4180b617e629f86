"""
feed_engine

Feed ingestion and caching engine: keeps normalized news from RSS, Atom and
JSON feeds cached ahead of user requests.

Core ideas:
- Input: FeedSource list (RSS/Atom/JSON/API endpoints), supplied by the host
- Process: fetch → parse → classify → normalize → deduplicate → cache, on a schedule
- Output: List[NewsItem] served from a bounded TTL cache

Example
-------
import asyncio
from feed_engine import FeedEngine, FeedSource

sources = [
    FeedSource(id="bbc", name="BBC News", url="https://feeds.bbci.co.uk/news/rss.xml"),
    FeedSource(id="verge", name="The Verge", url="https://www.theverge.com/rss/index.xml"),
]

async def main():
    async with FeedEngine(sources) as engine:
        await engine.refresh()
        for item in await engine.news("bbc") or []:
            print(item.published_at, item.source, item.title)

asyncio.run(main())
"""
from .cache import BoundedCache, CacheConfig, CacheStats
from .core import EngineStats, FeedEngine
from .exceptions import FeedEngineError, FetchError, ParseError, PersistenceError, RateLimitSkip
from .fetcher import FetchResponse, HttpFeedFetcher
from .models import FeedFormat, FeedKind, FeedSource, NewsItem, ParsedFeed, RateLimit, SourceState, SourceStatus
from .parser import ParserConfig, detect_format, parse_feed
from .preloader import BackgroundPreloader, PreloaderConfig, PreloaderStats, PreloadOutcome
from .settings import EngineSettings
from .sources import StaticSourceProvider
from .storage import FileStore, MemoryStore

__all__ = [
    "BackgroundPreloader",
    "BoundedCache",
    "CacheConfig",
    "CacheStats",
    "EngineSettings",
    "EngineStats",
    "FeedEngine",
    "FeedEngineError",
    "FeedFormat",
    "FeedKind",
    "FeedSource",
    "FetchError",
    "FetchResponse",
    "FileStore",
    "HttpFeedFetcher",
    "MemoryStore",
    "NewsItem",
    "ParseError",
    "ParsedFeed",
    "ParserConfig",
    "PersistenceError",
    "PreloadOutcome",
    "PreloaderConfig",
    "PreloaderStats",
    "RateLimit",
    "RateLimitSkip",
    "SourceState",
    "SourceStatus",
    "StaticSourceProvider",
    "detect_format",
    "parse_feed",
]
