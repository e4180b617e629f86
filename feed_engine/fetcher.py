from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from .exceptions import FetchError
from .models import FeedSource

DEFAULT_TIMEOUT = 30.0
DEFAULT_USER_AGENT = "feed-engine/1.0 (+https://github.com/feed-engine/feed-engine)"
ACCEPT = (
    "application/json, application/feed+json, application/rss+xml, "
    "application/atom+xml, application/xml, text/xml;q=0.9, */*;q=0.1"
)


@dataclass(frozen=True)
class FetchResponse:
    content: bytes
    content_type: str = ""
    status_code: int = 200
    url: str = ""


class FeedFetcher(Protocol):
    async def fetch(self, source: FeedSource) -> FetchResponse:  # pragma: no cover - interface
        ...


class HttpFeedFetcher:
    """
    Fetch a single feed URL over HTTP.

    Raises FetchError on timeouts, transport failures and non-2xx responses.
    A client may be injected (shared connection pool, test transport); otherwise
    one is created lazily and closed by `aclose()`.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout
        self.headers = {"User-Agent": user_agent, "Accept": ACCEPT}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        return self._client

    async def fetch(self, source: FeedSource) -> FetchResponse:
        client = self._get_client()
        try:
            response = await client.get(source.url, headers=self.headers, timeout=self.timeout)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise FetchError(source.id, f"Timeout fetching {source.url} ({e})") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise FetchError(source.id, f"HTTP {status} from {source.url}", status_code=status) from e
        except httpx.HTTPError as e:
            raise FetchError(source.id, f"Failed to fetch {source.url} ({e})") from e

        return FetchResponse(
            content=response.content,
            content_type=response.headers.get("content-type", ""),
            status_code=response.status_code,
            url=str(response.url),
        )

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
