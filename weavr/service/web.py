"""Page text extraction and web search shared by memory sources and agent tools."""
from __future__ import annotations

import html
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from weavr.config import WebSearchConfig, WebSearchProviderName
from weavr.logging import get_logger
from weavr.service.errors import ActionExecutionError, NoCredentials
from weavr.service.http_retry import DEFAULT_RETRY_POLICY, RetryPolicy, request_with_retry

logger = get_logger(__name__)

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
TAVILY_SEARCH_URL = "https://api.tavily.com/search"
DEFAULT_MAX_RESULTS = 5
DEFAULT_FETCH_MAX_CHARS = 20000

_DROP_BLOCKS = re.compile(
    r"<(script|style|noscript|head|svg|iframe|template)\b[^>]*>.*?</\1\s*>",
    re.IGNORECASE | re.DOTALL,
)
_COMMENTS = re.compile(r"<!--.*?-->", re.DOTALL)
_BLOCK_BREAKS = re.compile(
    r"<\s*(br|/p|/div|/li|/tr|/h[1-6]|/section|/article|/header|/footer|/blockquote|/pre)\b[^>]*>",
    re.IGNORECASE,
)
_TAGS = re.compile(r"<[^>]+>")
_INLINE_SPACE = re.compile(r"[ \t\r\f\v]+")
_BLANK_LINES = re.compile(r"\n\s*\n+")


def extract_text(markup: str) -> str:
    """Reduce an HTML document to readable text.

    Script, style and other non-content blocks are dropped, block-level closing
    tags become line breaks, remaining tags are stripped and entities decoded.
    Plain text input passes through with whitespace normalized.
    """
    if not markup:
        return ""
    text = _COMMENTS.sub(" ", markup)
    text = _DROP_BLOCKS.sub(" ", text)
    text = _BLOCK_BREAKS.sub("\n", text)
    text = _TAGS.sub(" ", text)
    text = html.unescape(text)
    lines = [_INLINE_SPACE.sub(" ", line).strip() for line in text.split("\n")]
    text = "\n".join(line for line in lines if line)
    return _BLANK_LINES.sub("\n", text).strip()


@dataclass
class SearchResult:
    title: str
    url: str
    snippet: str

    def to_dict(self) -> Dict[str, str]:
        return {"title": self.title, "url": self.url, "snippet": self.snippet}


def format_search_results(results: List[SearchResult]) -> str:
    if not results:
        return "No results found."
    chunks = []
    for index, result in enumerate(results, start=1):
        chunks.append(f"{index}. {result.title}\n{result.url}\n{result.snippet}".strip())
    return "\n\n".join(chunks)


async def fetch_page_text(
    client: httpx.AsyncClient,
    url: str,
    *,
    max_chars: int = DEFAULT_FETCH_MAX_CHARS,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
) -> str:
    """GET ``url`` through the retry utility and return its extracted text."""
    response = await request_with_retry(
        client,
        "GET",
        url,
        policy=policy,
        headers={"User-Agent": "weavr/0.1 (+workflow engine)"},
    )
    if response.status_code >= 400:
        raise ActionExecutionError(
            f"fetch {url} failed with status {response.status_code}",
            detail={"url": url, "status": response.status_code},
        )
    content_type = response.headers.get("content-type", "")
    body = response.text
    text = extract_text(body) if "html" in content_type or "<" in body[:200] else body.strip()
    if max_chars and len(text) > max_chars:
        text = text[:max_chars]
    return text


async def _brave_search(
    client: httpx.AsyncClient, api_key: str, query: str, max_results: int, policy: RetryPolicy
) -> List[SearchResult]:
    response = await request_with_retry(
        client,
        "GET",
        BRAVE_SEARCH_URL,
        policy=policy,
        params={"q": query, "count": max_results},
        headers={"Accept": "application/json", "X-Subscription-Token": api_key},
    )
    if response.status_code >= 400:
        raise ActionExecutionError(
            f"brave search failed with status {response.status_code}",
            detail={"status": response.status_code, "body": response.text[:200]},
        )
    data: Dict[str, Any] = response.json()
    items = (data.get("web") or {}).get("results") or []
    return [
        SearchResult(
            title=str(item.get("title", "")),
            url=str(item.get("url", "")),
            snippet=extract_text(str(item.get("description", ""))),
        )
        for item in items[:max_results]
    ]


async def _tavily_search(
    client: httpx.AsyncClient, api_key: str, query: str, max_results: int, policy: RetryPolicy
) -> List[SearchResult]:
    response = await request_with_retry(
        client,
        "POST",
        TAVILY_SEARCH_URL,
        policy=policy,
        json={"api_key": api_key, "query": query, "max_results": max_results},
    )
    if response.status_code >= 400:
        raise ActionExecutionError(
            f"tavily search failed with status {response.status_code}",
            detail={"status": response.status_code, "body": response.text[:200]},
        )
    data: Dict[str, Any] = response.json()
    return [
        SearchResult(
            title=str(item.get("title", "")),
            url=str(item.get("url", "")),
            snippet=str(item.get("content", "")),
        )
        for item in (data.get("results") or [])[:max_results]
    ]


async def web_search(
    client: httpx.AsyncClient,
    config: WebSearchConfig,
    query: str,
    *,
    max_results: Optional[int] = None,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
) -> List[SearchResult]:
    """Run ``query`` against the configured search provider."""
    if not config.provider or not config.api_key:
        raise NoCredentials("web search is not configured (set webSearch.provider and apiKey)")
    limit = max_results or DEFAULT_MAX_RESULTS
    logger.info("web_search", provider=config.provider.value, max_results=limit)
    if config.provider == WebSearchProviderName.BRAVE:
        return await _brave_search(client, config.api_key, query, limit, policy)
    return await _tavily_search(client, config.api_key, query, limit, policy)
