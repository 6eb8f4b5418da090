# Libris – Local-first knowledge base with grounded answers
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
DuckDuckGo web search (no API key). Lite endpoint first, HTML endpoint
as fallback when the lite page yields nothing.
"""
import urllib.parse
from dataclasses import dataclass
from typing import Optional

import httpx
from bs4 import BeautifulSoup

from .errors import WebSearchError

LITE_URL = "https://lite.duckduckgo.com/lite/"
HTML_URL = "https://html.duckduckgo.com/html/"
_HEADERS = {"User-Agent": "Mozilla/5.0"}

# (link selector, snippet selector) per page flavour
LITE_SELECTORS = ("a.result-link", "td.result-snippet")
HTML_SELECTORS = ("a.result__a", ".result__snippet")


@dataclass(frozen=True)
class SearchResult:
    title: str
    url: str
    snippet: str


def _text(el) -> str:
    return " ".join(el.get_text(" ", strip=True).split())


def _unwrap_redirect(u: str) -> str:
    parsed = urllib.parse.urlparse(u)
    if "duckduckgo.com" in parsed.netloc and parsed.path.startswith("/l/"):
        uddg = urllib.parse.parse_qs(parsed.query).get("uddg", [None])[0]
        if uddg:
            return urllib.parse.unquote(uddg)
    return u


def _is_ad_url(u: str) -> bool:
    lu = u.lower()
    return (
        "duckduckgo.com/y.js" in lu
        or "ad_domain=" in lu
        or "bing.com/aclick" in lu
        or "doubleclick.net" in lu
        or "googleadservices" in lu
    )


def parse_results(page: str, selectors: tuple[str, str], max_results: int) -> list[SearchResult]:
    """Pair result links with snippets by position; skip ads and empty titles."""
    soup = BeautifulSoup(page, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()

    link_selector, snippet_selector = selectors
    links = soup.select(link_selector)
    snippets = soup.select(snippet_selector)
    results: list[SearchResult] = []
    for i, link in enumerate(links):
        if len(results) >= max_results:
            break
        url = _unwrap_redirect(link.get("href") or "")
        if not url or _is_ad_url(url):
            continue
        title = _text(link)
        if not title:
            continue
        snippet = _text(snippets[i]) if i < len(snippets) else ""
        results.append(SearchResult(title=title, url=url, snippet=snippet))
    return results


def format_results(results: list[SearchResult]) -> str:
    return "\n".join(f"{r.title}: {r.snippet} ({r.url})" for r in results)


class DuckDuckGoSearch:
    def __init__(self, max_results: int = 5, timeout: float = 15.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.max_results = max(1, min(10, max_results))
        self.timeout = timeout
        self._client = client

    async def search(self, query: str) -> list[SearchResult]:
        query = query.strip()
        if not query:
            return []
        if self._client is not None:
            return await self._search(self._client, query)
        async with httpx.AsyncClient(timeout=self.timeout, headers=_HEADERS, follow_redirects=True) as client:
            return await self._search(client, query)

    async def _search(self, client: httpx.AsyncClient, query: str) -> list[SearchResult]:
        errors = []
        results: list[SearchResult] = []
        for name, url, selectors in (("lite", LITE_URL, LITE_SELECTORS), ("html", HTML_URL, HTML_SELECTORS)):
            try:
                resp = await client.get(url, params={"q": query}, headers=_HEADERS)
                resp.raise_for_status()
            except httpx.HTTPError as e:
                errors.append(f"{name}: {e}")
                continue
            results = parse_results(resp.text, selectors, self.max_results)
            if results:
                break

        if not results and len(errors) == 2:
            raise WebSearchError(f"DuckDuckGo search failed ({'; '.join(errors)})")
        return results

    async def run(self, query: str) -> str:
        """Search and return the results as one text block."""
        return format_results(await self.search(query))
