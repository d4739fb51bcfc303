"""Retrieval backends for WebSearch and WebFetch nodes.

A backend returns plain dicts: ``{query, results: [{title, url, snippet}]}``
for a search and ``{url, title, content, fetchedAt}`` for a fetch. The
default backend produces placeholders; ``HttpFetchBackend`` performs real
fetches with httpx and keeps search as a placeholder.
"""

import html
import logging
import re
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

import httpx

from mdxflow.exceptions import ExecutionError

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4

_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
_DROP_RE = re.compile(r"<(script|style|noscript)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")
_SPACES_RE = re.compile(r"[ \t\r\f\v]+")


@runtime_checkable
class RetrievalBackend(Protocol):
    async def search(
        self, query: str, max_results: int | None = None, provider: str | None = None
    ) -> dict[str, Any]: ...

    async def fetch(
        self, url: str, max_tokens: int | None = None, selector: str | None = None
    ) -> dict[str, Any]: ...


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class PlaceholderRetrieval:
    """Backend used when no retrieval service is configured."""

    async def search(
        self, query: str, max_results: int | None = None, provider: str | None = None
    ) -> dict[str, Any]:
        return {"query": query, "results": []}

    async def fetch(
        self, url: str, max_tokens: int | None = None, selector: str | None = None
    ) -> dict[str, Any]:
        return {
            "url": url,
            "title": "",
            "content": f"(Content from {url}: web fetch not configured)",
            "fetchedAt": _now_iso(),
        }


def html_to_text(markup: str) -> tuple[str, str]:
    """Return (title, text) for an HTML document."""
    title_match = _TITLE_RE.search(markup)
    title = html.unescape(title_match.group(1)).strip() if title_match else ""
    body = _DROP_RE.sub("", markup)
    body = _TAG_RE.sub("\n", body)
    body = html.unescape(body)
    body = _SPACES_RE.sub(" ", body)
    lines = [line.strip() for line in body.split("\n")]
    text = _BLANK_LINES_RE.sub("\n\n", "\n".join(line for line in lines if line))
    return title, text.strip()


class HttpFetchBackend(PlaceholderRetrieval):
    """Fetches pages over HTTP; search stays a placeholder."""

    def __init__(self, timeout: float = 30.0, client: httpx.AsyncClient | None = None) -> None:
        self.timeout = timeout
        self._client = client

    async def fetch(
        self, url: str, max_tokens: int | None = None, selector: str | None = None
    ) -> dict[str, Any]:
        if selector:
            logger.debug("Ignoring selector %r for %s: selectors are not supported", selector, url)

        try:
            if self._client is not None:
                response = await self._client.get(url, follow_redirects=True)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExecutionError(f"WebFetch failed for {url}: {e}") from e

        if "html" in response.headers.get("content-type", ""):
            title, content = html_to_text(response.text)
        else:
            title, content = "", response.text

        if max_tokens:
            content = content[: max_tokens * CHARS_PER_TOKEN]

        return {"url": str(response.url), "title": title, "content": content, "fetchedAt": _now_iso()}


def format_search(result: dict[str, Any]) -> str:
    """Context-stack entry for a search result."""
    header = f'[Search results for "{result.get("query", "")}"]'
    items = result.get("results") or []
    if not items:
        return f"{header}\n\n(No results: web search not configured)"
    lines = []
    for index, item in enumerate(items, 1):
        lines.append(f"{index}. {item.get('title', '')} ({item.get('url', '')})")
        if item.get("snippet"):
            lines.append(f"   {item['snippet']}")
    return f"{header}\n\n" + "\n".join(lines)


def format_fetch(result: dict[str, Any]) -> str:
    """Context-stack entry for a fetched page."""
    return f"[Fetched content from {result.get('url', '')}]\n\n{result.get('content', '')}"


def build_backend(kind: str = "placeholder", timeout: float = 30.0) -> RetrievalBackend:
    if kind == "http":
        return HttpFetchBackend(timeout=timeout)
    return PlaceholderRetrieval()
