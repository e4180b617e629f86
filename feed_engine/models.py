from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class FeedKind(str, Enum):
    RSS = "rss"
    ATOM = "atom"
    JSON = "json"
    API = "api"


class FeedFormat(str, Enum):
    """Wire format of a payload, as detected or declared."""

    RSS = "rss"
    ATOM = "atom"
    JSON = "json"


@dataclass(frozen=True)
class RateLimit:
    requests_per_window: int
    window: float  # seconds


@dataclass(frozen=True)
class FeedSource:
    """
    A configured feed endpoint, supplied by the host application.

    Read-only to the engine; status changes are reported through the
    source provider instead of mutating this object.
    """
    id: str
    name: str
    url: str
    kind: FeedKind = FeedKind.RSS
    enabled: bool = True
    rate_limit: Optional[RateLimit] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeedSource":
        rl = data.get("rate_limit")
        rate_limit = None
        if isinstance(rl, dict):
            rate_limit = RateLimit(
                requests_per_window=int(rl["requests_per_window"]),
                window=float(rl["window"]),
            )
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            url=str(data["url"]),
            kind=FeedKind(data.get("kind", FeedKind.RSS.value)),
            enabled=bool(data.get("enabled", True)),
            rate_limit=rate_limit,
        )


class SourceState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    RETRYING = "retrying"


@dataclass
class SourceStatus:
    state: SourceState = SourceState.IDLE
    last_updated_at: Optional[datetime] = None
    last_error: Optional[str] = None
    attempts: int = 0


@dataclass(frozen=True)
class NewsItem:
    """
    Stable public model representing a normalized news item.

    WARNING: Do not change fields lightly. Cached feeds are persisted in this shape.
    """
    id: str
    title: str
    url: str
    published_at: datetime
    source: str
    description: Optional[str] = None
    content: Optional[str] = None
    author: Optional[str] = None
    image_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "url": self.url,
            "published_at": self.published_at.isoformat(),
            "source": self.source,
            "description": self.description,
            "content": self.content,
            "author": self.author,
            "image_url": self.image_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NewsItem":
        return cls(
            id=data["id"],
            title=data["title"],
            url=data["url"],
            published_at=datetime.fromisoformat(data["published_at"]),
            source=data["source"],
            description=data.get("description"),
            content=data.get("content"),
            author=data.get("author"),
            image_url=data.get("image_url"),
        )


@dataclass(frozen=True)
class ParsedFeed:
    title: str
    description: str
    link: str
    items: Tuple[NewsItem, ...] = field(default_factory=tuple)
    format: Optional[FeedFormat] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "link": self.link,
            "format": self.format.value if self.format else None,
            "items": [it.to_dict() for it in self.items],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParsedFeed":
        fmt = data.get("format")
        return cls(
            title=data.get("title") or "",
            description=data.get("description") or "",
            link=data.get("link") or "",
            items=tuple(NewsItem.from_dict(it) for it in data.get("items") or []),
            format=FeedFormat(fmt) if fmt else None,
        )
