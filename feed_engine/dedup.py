from __future__ import annotations

from typing import Iterable, Iterator, Set

from .models import NewsItem


def deduplicate(items: Iterable[NewsItem]) -> Iterator[NewsItem]:
    """
    Drop repeats by priority: id -> url.
    Keeps the first occurrence and preserves original order. Lazy, so it can sit
    in front of a cap without consuming the whole feed.
    """
    seen: Set[str] = set()

    for it in items:
        keys = (f"id::{it.id}", f"url::{it.url}")
        if any(k in seen for k in keys):
            continue
        seen.update(keys)
        yield it
