from __future__ import annotations

import hashlib
import html
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from .models import NewsItem


def collapse_whitespace(text: str) -> str:
    return " ".join(text.split())


def strip_html(text: Optional[str]) -> str:
    """Remove markup and collapse whitespace. Entities are decoded."""
    if not text:
        return ""
    if "<" not in text:
        return collapse_whitespace(html.unescape(text))
    soup = BeautifulSoup(text, "html.parser")
    return collapse_whitespace(soup.get_text(" "))


def extract_image_url(text: Optional[str]) -> Optional[str]:
    """Best-effort: src of the first <img> in an HTML fragment."""
    if not text or "<img" not in text.lower():
        return None
    img = BeautifulSoup(text, "html.parser").find("img", src=True)
    if img is None:
        return None
    src = str(img["src"]).strip()
    return src or None


def parse_date(value: Any) -> Optional[datetime]:
    """
    Parse RFC 2822, ISO 8601 or epoch-seconds values into an aware UTC datetime.
    Returns None when the value cannot be interpreted.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str) and value.strip():
        s = value.strip()
        try:
            dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError:
            try:
                dt = parsedate_to_datetime(s)
            except (TypeError, ValueError, IndexError):
                return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def host_of(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    host = urlparse(url).netloc
    return host or None


def stable_id(url: str, title: str) -> str:
    """Deterministic id for items that carry neither an id nor a guid."""
    digest = hashlib.sha1(f"{url}\n{title}".encode("utf-8")).hexdigest()
    return digest[:16]


def clean_entry(entry: Dict[str, Any], *, strip: bool, extract_images: bool) -> Dict[str, Any]:
    """
    Apply the content cleanup shared by every wire format to a parsed entry dict.

    Expects the dict shape produced by `feed_engine.parser`: title, url, id,
    description, content, author, image_url, source, published.
    """
    out = dict(entry)
    raw_title = entry.get("title") or ""
    raw_description = entry.get("description") or ""

    if extract_images and not out.get("image_url"):
        out["image_url"] = extract_image_url(entry.get("content")) or extract_image_url(raw_description)

    if strip:
        out["title"] = strip_html(raw_title)
        out["description"] = strip_html(raw_description) or None
        out["content"] = strip_html(entry.get("content")) or None
    else:
        out["title"] = collapse_whitespace(raw_title)
        out["description"] = raw_description.strip() or None

    out["url"] = (entry.get("url") or "").strip()
    return out


def to_news_item(entry: Dict[str, Any]) -> NewsItem:
    """
    Convert a cleaned entry dict into a NewsItem.
    Requires:
    - title (non-empty)
    - url (non-empty)
    - published_at (datetime)
    Optional:
    - id, description, content, author, image_url, source
    """
    title = entry.get("title") or ""
    url = entry.get("url") or ""
    published_at = entry.get("published_at")

    # Basic guards; the classifier should already have filtered, but re-check
    if not title or not url or not isinstance(published_at, datetime):
        raise ValueError("Entry lacks required fields for NewsItem: title/url/published_at")

    return NewsItem(
        id=entry.get("id") or stable_id(url, title),
        title=title,
        url=url,
        published_at=published_at,
        source=entry.get("source") or host_of(url) or "unknown",
        description=entry.get("description") or None,
        content=entry.get("content") or None,
        author=entry.get("author") or None,
        image_url=entry.get("image_url") or None,
    )
