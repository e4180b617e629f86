"""
Recognized JSON feed shapes.

Each shape pairs a recognizer with a mapper that turns one raw item into the
common entry dict used by the parser (title, url, id, description, content,
author, image_url, source, published). Shapes are tried in `JSON_SHAPES` order
and the first whose required fields are present wins.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .exceptions import ParseError


class JsonShapeKind(str, Enum):
    JSON_FEED = "json_feed"
    NEWS_API = "news_api"
    RSS_PROXY = "rss_proxy"
    ITEMS = "items"
    DATA = "data"
    ARRAY = "array"


@dataclass(frozen=True)
class FeedMeta:
    title: str
    description: str
    link: str


@dataclass(frozen=True)
class JsonShape:
    kind: JsonShapeKind
    recognize: Callable[[Any], bool]
    items: Callable[[Any], List[Any]]
    meta: Callable[[Any], FeedMeta]
    map_item: Callable[[Dict[str, Any]], Dict[str, Any]]


def _text(value: Any) -> Optional[str]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, dict):
        return _text(value.get("name") or value.get("title"))
    return None


def _first(data: Dict[str, Any], *keys: str) -> Optional[str]:
    for k in keys:
        v = _text(data.get(k))
        if v:
            return v
    return None


def _first_raw(data: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        v = data.get(k)
        if v not in (None, ""):
            return v
    return None


def _list_under(key: str) -> Callable[[Any], List[Any]]:
    return lambda doc: doc[key]


def _has_list(doc: Any, key: str) -> bool:
    return isinstance(doc, dict) and isinstance(doc.get(key), list)


def _meta(title_default: str, *, title: str = "title", description: str = "description",
          link: str = "link") -> Callable[[Any], FeedMeta]:
    def build(doc: Any) -> FeedMeta:
        if not isinstance(doc, dict):
            return FeedMeta(title_default, "", "")
        return FeedMeta(
            title=_text(doc.get(title)) or title_default,
            description=_text(doc.get(description)) or "",
            link=_text(doc.get(link)) or "",
        )
    return build


# ── mappers ─────────────────────────────────────────────────

def _map_json_feed(item: Dict[str, Any]) -> Dict[str, Any]:
    authors = item.get("authors")
    author = item.get("author")
    if not author and isinstance(authors, list) and authors:
        author = authors[0]
    return {
        "id": _first(item, "id", "url"),
        "title": _first(item, "title") or "",
        "url": _first(item, "url", "external_url") or "",
        "description": _first(item, "summary", "content_text"),
        "content": _first(item, "content_html", "content_text"),
        "author": _text(author),
        "image_url": _first(item, "image", "banner_image"),
        "source": None,
        "published": _first_raw(item, "date_published", "date_modified"),
    }


def _map_news_api(item: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": _first(item, "url"),
        "title": _first(item, "title") or "",
        "url": _first(item, "url") or "",
        "description": _first(item, "description"),
        "content": _first(item, "content"),
        "author": _first(item, "author"),
        "image_url": _first(item, "urlToImage"),
        "source": _text(item.get("source")),
        "published": _first_raw(item, "publishedAt"),
    }


def _map_rss_proxy(item: Dict[str, Any]) -> Dict[str, Any]:
    enclosure = item.get("enclosure")
    image = _first(item, "thumbnail")
    if not image and isinstance(enclosure, dict):
        kind = _text(enclosure.get("type")) or ""
        if kind.startswith("image/"):
            image = _text(enclosure.get("link") or enclosure.get("url"))
    return {
        "id": _first(item, "guid", "link"),
        "title": _first(item, "title") or "",
        "url": _first(item, "link") or "",
        "description": _first(item, "description"),
        "content": _first(item, "content"),
        "author": _first(item, "author"),
        "image_url": image,
        "source": None,
        "published": _first_raw(item, "pubDate"),
    }


def _map_generic(item: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": _first(item, "id", "guid", "url"),
        "title": _first(item, "title", "headline") or "",
        "url": _first(item, "url", "link", "href") or "",
        "description": _first(item, "description", "summary", "excerpt"),
        "content": _first(item, "content", "body"),
        "author": _first(item, "author", "creator"),
        "image_url": _first(item, "imageUrl", "image", "thumbnail", "featured_image", "urlToImage"),
        "source": _first(item, "source", "site"),
        "published": _first_raw(item, "publishedAt", "pubDate", "published", "date", "created_at"),
    }


# ── recognizers ─────────────────────────────────────────────

def _is_json_feed(doc: Any) -> bool:
    return _has_list(doc, "items") and isinstance(doc.get("version"), str)


def _is_news_api(doc: Any) -> bool:
    return _has_list(doc, "articles") and doc.get("status") == "ok"


def _is_rss_proxy(doc: Any) -> bool:
    return _has_list(doc, "items") and doc.get("status") == "ok" and isinstance(doc.get("feed"), dict)


def _rss_proxy_meta(doc: Any) -> FeedMeta:
    return _meta("RSS Feed")(doc["feed"])


JSON_SHAPES: Tuple[JsonShape, ...] = (
    JsonShape(JsonShapeKind.JSON_FEED, _is_json_feed, _list_under("items"),
              _meta("JSON Feed", link="home_page_url"), _map_json_feed),
    JsonShape(JsonShapeKind.NEWS_API, _is_news_api, _list_under("articles"),
              _meta("News API Feed"), _map_news_api),
    JsonShape(JsonShapeKind.RSS_PROXY, _is_rss_proxy, _list_under("items"),
              _rss_proxy_meta, _map_rss_proxy),
    JsonShape(JsonShapeKind.ITEMS, lambda doc: _has_list(doc, "items"), _list_under("items"),
              _meta("JSON Feed"), _map_generic),
    JsonShape(JsonShapeKind.DATA, lambda doc: _has_list(doc, "data"), _list_under("data"),
              _meta("JSON Feed"), _map_generic),
    JsonShape(JsonShapeKind.ARRAY, lambda doc: isinstance(doc, list), lambda doc: doc,
              _meta("JSON Feed"), _map_generic),
)


def match_shape(doc: Any) -> JsonShape:
    for shape in JSON_SHAPES:
        if shape.recognize(doc):
            return shape
    raise ParseError("Unknown JSON feed format")
