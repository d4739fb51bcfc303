"""Tests for WebSearch/WebFetch backends."""

import httpx
import pytest

from mdxflow.exceptions import ExecutionError
from mdxflow.retrieval import (
    HttpFetchBackend,
    PlaceholderRetrieval,
    RetrievalBackend,
    build_backend,
    format_fetch,
    format_search,
    html_to_text,
)

PAGE = """<html>
<head><title>Tides &amp; Moons</title><style>body { color: red; }</style></head>
<body>
  <h1>Tides</h1>
  <script>track();</script>
  <p>The   moon pulls
  the sea.</p>
</body>
</html>"""


def _backend(handler) -> HttpFetchBackend:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpFetchBackend(client=client)


@pytest.mark.asyncio
async def test_placeholder_retrieval() -> None:
    backend = PlaceholderRetrieval()

    assert await backend.search("tides", max_results=3) == {"query": "tides", "results": []}
    fetched = await backend.fetch("https://example.com")
    assert fetched["url"] == "https://example.com"
    assert fetched["title"] == ""
    assert fetched["content"] == "(Content from https://example.com: web fetch not configured)"
    assert fetched["fetchedAt"].endswith("Z")


def test_html_to_text() -> None:
    title, text = html_to_text(PAGE)

    assert title == "Tides & Moons"
    assert "track()" not in text
    assert "color" not in text
    assert text.splitlines() == ["Tides & Moons", "Tides", "The moon pulls", "the sea."]


@pytest.mark.asyncio
async def test_http_fetch_html() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url == "https://example.com/tides"
        return httpx.Response(200, headers={"content-type": "text/html; charset=utf-8"}, text=PAGE)

    result = await _backend(handler).fetch("https://example.com/tides")

    assert result["url"] == "https://example.com/tides"
    assert result["title"] == "Tides & Moons"
    assert "The moon pulls" in result["content"]


@pytest.mark.asyncio
async def test_http_fetch_truncates_plain_text() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "text/plain"}, text="x" * 100)

    result = await _backend(handler).fetch("https://example.com/raw", max_tokens=5, selector="main")

    assert result["title"] == ""
    assert result["content"] == "x" * 20


@pytest.mark.asyncio
async def test_http_fetch_raises_for_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="missing")

    with pytest.raises(ExecutionError, match="WebFetch failed for https://example.com/missing") as exc_info:
        await _backend(handler).fetch("https://example.com/missing")
    assert isinstance(exc_info.value.__cause__, httpx.HTTPStatusError)


@pytest.mark.asyncio
async def test_http_fetch_connection_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ExecutionError, match="refused") as exc_info:
        await _backend(handler).fetch("https://example.com/")
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


@pytest.mark.asyncio
async def test_http_backend_search_is_placeholder() -> None:
    assert await HttpFetchBackend().search("q") == {"query": "q", "results": []}


def test_format_search() -> None:
    assert format_search({"query": "q", "results": []}) == (
        '[Search results for "q"]\n\n(No results: web search not configured)'
    )
    result = {
        "query": "q",
        "results": [
            {"title": "One", "url": "https://a.example", "snippet": "First hit"},
            {"title": "Two", "url": "https://b.example"},
        ],
    }
    assert format_search(result) == (
        '[Search results for "q"]\n\n'
        "1. One (https://a.example)\n"
        "   First hit\n"
        "2. Two (https://b.example)"
    )


def test_format_fetch() -> None:
    assert format_fetch({"url": "https://a.example", "content": "Body"}) == (
        "[Fetched content from https://a.example]\n\nBody"
    )


def test_build_backend() -> None:
    assert type(build_backend()) is PlaceholderRetrieval
    http = build_backend("http", timeout=5)
    assert isinstance(http, HttpFetchBackend)
    assert http.timeout == 5
    assert isinstance(http, RetrievalBackend)
