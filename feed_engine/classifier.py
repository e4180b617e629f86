from __future__ import annotations

from typing import Any, Dict, Iterable, Optional


def _contains_any(text: str, keywords: Iterable[str]) -> bool:
    t = text.lower()
    return any(k.lower() in t for k in keywords)


def is_valid_item(entry: Dict[str, Any], *,
                  min_length: int = 10,
                  max_length: int = 500,
                  include_keywords: Optional[Iterable[str]] = None,
                  exclude_keywords: Optional[Iterable[str]] = None,
                  ) -> bool:
    """
    Decide whether a cleaned entry is kept in the normalized feed.

    This function expects an entry dict produced by `feed_engine.normalizer.clean_entry`.
    """
    title = entry.get("title") or ""
    description = entry.get("description") or ""
    url = entry.get("url") or ""

    # 1st layer: structural
    if not title or not url:
        return False

    # 2nd layer: title length (too short is noise, too long is usually spam)
    if len(title) < min_length:
        return False
    if len(title) >= max_length:
        return False

    # Optional user filters
    if include_keywords:
        if not (_contains_any(title, include_keywords) or _contains_any(description, include_keywords)):
            return False

    if exclude_keywords:
        if _contains_any(title, exclude_keywords) or _contains_any(description, exclude_keywords):
            return False

    return True
