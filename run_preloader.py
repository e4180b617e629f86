import asyncio
import json
import os
import sys

from dotenv import load_dotenv
from loguru import logger

from feed_engine import EngineSettings, FeedEngine, FeedSource
from feed_engine.log import setup_logging

# Load environment variables from .env
load_dotenv()

# Path to a JSON list of sources: [{"id": ..., "name": ..., "url": ..., "kind": "rss"}, ...]
SOURCES_FILE = sys.argv[1] if len(sys.argv) > 1 else os.getenv("FEED_ENGINE_SOURCES_FILE")

if not SOURCES_FILE:
    raise ValueError("Pass a sources file or set FEED_ENGINE_SOURCES_FILE in .env")


def load_sources(path):
    with open(path, encoding="utf-8") as f:
        return [FeedSource.from_dict(d) for d in json.load(f)]


async def main():
    settings = EngineSettings.from_env()
    setup_logging(settings.log_level)

    sources = load_sources(SOURCES_FILE)
    logger.info(f"Loaded {len(sources)} feed sources from {SOURCES_FILE}")

    async with FeedEngine(sources, settings=settings) as engine:
        outcomes = await engine.refresh()

        for source in sources:
            items = engine.preloader.get_cached_news(source.id)
            print(f"== {source.name} ({outcomes.get(source.id, 'skipped')})")
            if not items:
                print("   (no news)")
                continue
            for item in items[:5]:
                print(f"   {item.published_at:%Y-%m-%d %H:%M}  {item.title}")
                print(f"   <{item.url}>")

        stats = engine.stats()
        print(
            f"\nrequests={stats.preloader.total_requests} ok={stats.preloader.successful_requests} "
            f"failed={stats.preloader.failed_requests} cached={stats.cache.entry_count} "
            f"({stats.cache.total_size_bytes} bytes)"
        )


if __name__ == "__main__":
    asyncio.run(main())
