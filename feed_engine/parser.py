"""
Feed normalizer: raw payload (RSS, Atom or one of the JSON shapes) -> ParsedFeed.

All functions here are pure: the same payload, config and `now` always yield
an equal ParsedFeed, items in encounter order and capped at `max_items`.
"""
from __future__ import annotations

import calendar
import io
import json
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import islice
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

import feedparser
from loguru import logger

from .classifier import is_valid_item
from .dedup import deduplicate
from .exceptions import ParseError
from .json_shapes import FeedMeta, match_shape
from .models import FeedFormat, NewsItem, ParsedFeed
from .normalizer import clean_entry, host_of, parse_date, to_news_item

Payload = Union[str, bytes]

# Problems feedparser flags that do not make the document malformed.
_BENIGN_BOZO = (feedparser.CharacterEncodingOverride, feedparser.NonXMLContentType)

_PROLOG = re.compile(r"<\?.*?\?>|<!--.*?-->|<![^>]*>", re.S)
_FIRST_TAG = re.compile(r"<\s*([A-Za-z_][\w.-]*:)?([A-Za-z_][\w.-]*)")


@dataclass(frozen=True)
class ParserConfig:
    max_items: int = 50
    min_content_length: int = 10
    max_title_length: int = 500
    strip_html: bool = True
    extract_images: bool = True
    deduplicate: bool = True
    include_keywords: Tuple[str, ...] = ()
    exclude_keywords: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.max_items < 0:
            raise ValueError("max_items must not be negative")
        if self.min_content_length >= self.max_title_length:
            raise ValueError("min_content_length must be below max_title_length")


# ── format detection ────────────────────────────────────────

def _head(payload: Payload, size: int = 2048) -> str:
    if isinstance(payload, bytes):
        text = payload[:size].decode("utf-8", errors="replace")
    else:
        text = payload[:size]
    return text.lstrip("\ufeff \t\r\n")


def _sniff(payload: Payload) -> Optional[FeedFormat]:
    head = _head(payload)
    if head[:1] in ("{", "["):
        return FeedFormat.JSON
    if not head.startswith("<"):
        return None
    m = _FIRST_TAG.search(_PROLOG.sub("", head))
    if not m:
        return None
    root = m.group(2).lower()
    if root in ("rss", "rdf", "channel"):
        return FeedFormat.RSS
    if root == "feed":
        return FeedFormat.ATOM
    return None


def _hint(content_type: Optional[str], url: Optional[str]) -> Optional[FeedFormat]:
    ct = (content_type or "").lower()
    if "rss" in ct or "rdf" in ct:
        return FeedFormat.RSS
    if "atom" in ct:
        return FeedFormat.ATOM
    if "json" in ct:
        return FeedFormat.JSON

    path = (url or "").lower().split("?", 1)[0]
    if path.endswith((".rss", ".xml")) or "/rss" in path:
        return FeedFormat.RSS
    if path.endswith(".atom"):
        return FeedFormat.ATOM
    if path.endswith(".json"):
        return FeedFormat.JSON

    if "xml" in ct:
        return FeedFormat.RSS
    return None


def detect_format(payload: Payload, *, content_type: Optional[str] = None,
                  url: Optional[str] = None) -> FeedFormat:
    """
    Pick a parser for `payload`.

    The payload itself is the most reliable signal; content-type and URL hints
    are used only when the payload prefix is inconclusive.
    """
    fmt = _sniff(payload) or _hint(content_type, url)
    if fmt is None:
        raise ParseError(f"Unsupported feed format (content-type={content_type!r}, url={url!r})")
    return fmt


def _family(fmt: FeedFormat) -> str:
    return "json" if fmt is FeedFormat.JSON else "xml"


# ── RSS / Atom ──────────────────────────────────────────────

def _to_datetime(entry: Dict[str, Any]) -> Optional[datetime]:
    """
    Convert feed entry date fields to timezone-aware UTC datetime.
    Priority: published -> updated -> created -> None.
    """
    for key in ("published_parsed", "updated_parsed", "created_parsed"):
        val = entry.get(key)
        if isinstance(val, time.struct_time):
            try:
                return datetime.fromtimestamp(calendar.timegm(val), tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                continue
    # feedparser leaves *_parsed unset for dates it cannot read; give the raw strings a try.
    for key in ("published", "updated", "created"):
        dt = parse_date(entry.get(key))
        if dt:
            return dt
    return None


def _get_link(entry: Dict[str, Any]) -> str:
    link = entry.get("link")
    if isinstance(link, str) and link.strip():
        return link.strip()
    # Atom entries may only carry typed links
    for alt in entry.get("links") or []:
        if alt.get("rel", "alternate") == "alternate" and alt.get("href"):
            return str(alt["href"]).strip()
    return ""


def _get_image(entry: Dict[str, Any]) -> Optional[str]:
    for thumb in entry.get("media_thumbnail") or []:
        if thumb.get("url"):
            return thumb["url"]
    for media in entry.get("media_content") or []:
        kind = media.get("type") or ""
        if media.get("url") and (media.get("medium") == "image" or kind.startswith("image/")):
            return media["url"]
    for link in entry.get("links") or []:
        if link.get("rel") == "enclosure" and (link.get("type") or "").startswith("image/") and link.get("href"):
            return link["href"]
    return None


def _get_source(entry: Dict[str, Any]) -> Optional[str]:
    src = entry.get("source") or {}
    if isinstance(src, dict):
        title = src.get("title")
        if isinstance(title, str) and title.strip():
            return title.strip()
    return None


def parse_entry(entry: Dict[str, Any]) -> Dict[str, Any]:
    """
    Map a raw feed entry (from feedparser) to the common entry dict.
    Fields: id, title, url, description, content, author, image_url, source, published
    """
    content = None
    contents = entry.get("content")
    if isinstance(contents, list) and contents:
        content = contents[0].get("value")

    guid = entry.get("id")
    return {
        "id": guid.strip() if isinstance(guid, str) and guid.strip() else None,
        "title": entry.get("title") or "",
        "url": _get_link(entry),
        "description": entry.get("summary") or entry.get("description"),
        "content": content,
        "author": entry.get("author"),
        "image_url": _get_image(entry),
        "source": _get_source(entry),
        "published": _to_datetime(entry),
    }


def _parse_syndication(payload: Payload, url: Optional[str]) -> Tuple[FeedFormat, FeedMeta, Iterator[Dict[str, Any]]]:
    data = payload.encode("utf-8") if isinstance(payload, str) else payload
    parsed = feedparser.parse(io.BytesIO(data))

    if parsed.get("bozo"):
        exc = parsed.get("bozo_exception")
        if not isinstance(exc, _BENIGN_BOZO):
            raise ParseError(f"Invalid RSS/Atom feed ({exc})")

    version = parsed.get("version") or ""
    if not version:
        raise ParseError("Document is not an RSS or Atom feed")

    fmt = FeedFormat.ATOM if version.startswith("atom") else FeedFormat.RSS
    feed = parsed.get("feed") or {}
    meta = FeedMeta(
        title=(feed.get("title") or "").strip() or ("Atom Feed" if fmt is FeedFormat.ATOM else "RSS Feed"),
        description=(feed.get("subtitle") or feed.get("description") or "").strip(),
        link=(feed.get("link") or url or "").strip(),
    )
    return fmt, meta, (parse_entry(e) for e in parsed.get("entries") or [])


# ── JSON family ─────────────────────────────────────────────

def _parse_json(payload: Payload, url: Optional[str]) -> Tuple[FeedMeta, Iterator[Dict[str, Any]]]:
    try:
        doc = json.loads(payload)
    except ValueError as e:
        raise ParseError(f"Invalid JSON feed ({e})") from e

    shape = match_shape(doc)
    meta = shape.meta(doc)
    if not meta.link and url:
        meta = FeedMeta(meta.title, meta.description, url)
    logger.debug(f"JSON feed matched shape {shape.kind.value}")

    raw = shape.items(doc)
    return meta, (shape.map_item(it) for it in raw if isinstance(it, dict))


# ── public API ──────────────────────────────────────────────

def _normalize(entries: Iterable[Dict[str, Any]], *, config: ParserConfig, now: datetime,
               default_source: str) -> List[NewsItem]:
    def _items() -> Iterator[NewsItem]:
        for raw in entries:
            entry = clean_entry(raw, strip=config.strip_html, extract_images=config.extract_images)
            if not is_valid_item(
                entry,
                min_length=config.min_content_length,
                max_length=config.max_title_length,
                include_keywords=config.include_keywords,
                exclude_keywords=config.exclude_keywords,
            ):
                continue
            entry["published_at"] = parse_date(raw.get("published")) or now
            entry["source"] = entry.get("source") or default_source
            yield to_news_item(entry)

    stream: Iterator[NewsItem] = _items()
    if config.deduplicate:
        stream = deduplicate(stream)
    return list(islice(stream, config.max_items))


def parse_feed(
    payload: Payload,
    format: Optional[FeedFormat] = None,
    *,
    content_type: Optional[str] = None,
    url: Optional[str] = None,
    source_name: Optional[str] = None,
    config: Optional[ParserConfig] = None,
    now: Optional[datetime] = None,
) -> ParsedFeed:
    """
    Parse a raw feed payload into a ParsedFeed.

    `format` is the declared format; when omitted it is detected from the payload,
    `content_type` and `url`. A declared format from the other family (XML vs JSON)
    than the payload is overridden, which covers RSS-to-JSON proxies.

    `now` is used as the publish time of items that carry no usable date.

    Raises ParseError when the payload is malformed. A feed with no valid items is
    returned with an empty item tuple.
    """
    config = config or ParserConfig()
    now = now or datetime.now(timezone.utc)

    if format is None:
        fmt = detect_format(payload, content_type=content_type, url=url)
    else:
        fmt = FeedFormat(format)
        sniffed = _sniff(payload)
        if sniffed and _family(sniffed) != _family(fmt):
            fmt = sniffed

    if fmt is FeedFormat.JSON:
        meta, entries = _parse_json(payload, url)
    else:
        fmt, meta, entries = _parse_syndication(payload, url)

    default_source = source_name or meta.title or host_of(url) or "unknown"
    items = _normalize(entries, config=config, now=now, default_source=default_source)

    return ParsedFeed(
        title=meta.title,
        description=meta.description,
        link=meta.link,
        items=tuple(items),
        format=fmt,
    )
