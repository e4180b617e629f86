from __future__ import annotations

import dataclasses
from typing import Dict, Iterable, List, Optional, Protocol

from .models import FeedSource, SourceStatus


class FeedSourceProvider(Protocol):
    """The host application's feed configuration, as seen by the engine."""

    async def list_sources(self) -> List[FeedSource]:  # pragma: no cover - interface
        ...

    async def report_status(self, source_id: str, status: SourceStatus) -> None:  # pragma: no cover - interface
        ...


class StaticSourceProvider:
    """
    In-memory provider: a fixed list of sources plus the last status reported for each.

    `list_sources()` hands out a snapshot; replacing the list with `set_sources()`
    takes effect on the next tick.
    """

    def __init__(self, sources: Iterable[FeedSource] = ()) -> None:
        self._sources: List[FeedSource] = list(sources)
        self._statuses: Dict[str, SourceStatus] = {}

    async def list_sources(self) -> List[FeedSource]:
        return list(self._sources)

    async def report_status(self, source_id: str, status: SourceStatus) -> None:
        self._statuses[source_id] = dataclasses.replace(status)

    def set_sources(self, sources: Iterable[FeedSource]) -> None:
        self._sources = list(sources)

    def status(self, source_id: str) -> Optional[SourceStatus]:
        return self._statuses.get(source_id)
