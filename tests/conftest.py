"""
pytest configuration and shared fixtures.

Time is always injected: `clock` is a manually advanced wall clock and
`recorded_sleep` stands in for asyncio.sleep, keeping a log of every delay.

Usage:
    pytest
    pytest tests/test_preloader.py -k retry
"""
import asyncio
from typing import List

import pytest

from feed_engine.fetcher import FetchResponse
from feed_engine.models import FeedSource


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordedSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        # Yield so other tasks still get to run.
        await asyncio.sleep(0)


class FakeFetcher:
    """Serves canned payloads per source id; errors are raised in order."""

    def __init__(self, payloads=None, errors=None) -> None:
        self.payloads = dict(payloads or {})
        self.errors = {k: list(v) for k, v in (errors or {}).items()}
        self.calls: List[str] = []

    async def fetch(self, source: FeedSource) -> FetchResponse:
        self.calls.append(source.id)
        pending = self.errors.get(source.id)
        if pending:
            raise pending.pop(0)
        payload = self.payloads.get(source.id, RSS_TWO_ITEMS)
        return FetchResponse(content=payload, content_type="application/rss+xml", url=source.url)


RSS_TWO_ITEMS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example News</title>
    <link>https://news.example.com/</link>
    <description>Latest headlines</description>
    <item>
      <title>Markets rally after rate decision</title>
      <link>https://news.example.com/markets-rally</link>
      <guid>https://news.example.com/markets-rally</guid>
      <description>&lt;p&gt;Stocks &lt;b&gt;rose&lt;/b&gt; sharply.&lt;/p&gt;</description>
      <pubDate>Tue, 10 Jun 2025 08:30:00 GMT</pubDate>
    </item>
    <item>
      <title>Local council approves new park</title>
      <link>https://news.example.com/new-park</link>
      <guid>https://news.example.com/new-park</guid>
      <pubDate>Tue, 10 Jun 2025 07:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>
"""


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recorded_sleep() -> RecordedSleep:
    return RecordedSleep()


@pytest.fixture
def rss_payload() -> bytes:
    return RSS_TWO_ITEMS
