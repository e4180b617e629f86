import httpx
import pytest

from feed_engine.exceptions import FetchError
from feed_engine.fetcher import DEFAULT_USER_AGENT, HttpFeedFetcher
from feed_engine.models import FeedSource

pytestmark = pytest.mark.anyio

SOURCE = FeedSource(id="bbc", name="BBC News", url="https://feeds.example.com/bbc.xml")


def fetcher_for(handler) -> HttpFeedFetcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpFeedFetcher(client)


class TestHttpFeedFetcher:
    async def test_returns_body_and_content_type(self, rss_payload):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["ua"] = request.headers["user-agent"]
            seen["accept"] = request.headers["accept"]
            return httpx.Response(200, content=rss_payload, headers={"content-type": "application/rss+xml"})

        fetcher = fetcher_for(handler)
        response = await fetcher.fetch(SOURCE)

        assert response.content == rss_payload
        assert response.content_type == "application/rss+xml"
        assert response.status_code == 200
        assert response.url == SOURCE.url
        assert seen["ua"] == DEFAULT_USER_AGENT
        assert "application/rss+xml" in seen["accept"]

    async def test_http_error_status(self):
        fetcher = fetcher_for(lambda request: httpx.Response(503))

        with pytest.raises(FetchError) as exc:
            await fetcher.fetch(SOURCE)
        assert exc.value.status_code == 503
        assert exc.value.source_id == "bbc"

    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        with pytest.raises(FetchError, match="Timeout"):
            await fetcher_for(handler).fetch(SOURCE)

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(FetchError) as exc:
            await fetcher_for(handler).fetch(SOURCE)
        assert exc.value.status_code is None

    async def test_injected_client_is_not_closed(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        fetcher = HttpFeedFetcher(client)
        await fetcher.aclose()
        assert not client.is_closed
        await client.aclose()

    async def test_own_client_is_closed(self):
        fetcher = HttpFeedFetcher(user_agent="tests/1.0")
        assert fetcher.headers["User-Agent"] == "tests/1.0"
        client = fetcher._get_client()
        await fetcher.aclose()
        assert client.is_closed
