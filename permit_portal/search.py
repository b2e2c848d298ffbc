"""
Web search providers for the batch discovery path.

Three interchangeable providers sit behind the SearchProvider protocol:
DuckDuckGo's HTML endpoint (no key), Tavily and SerpAPI (keyed). The
FallbackSearchProvider tries them in order and returns the first
non-empty answer.
"""

from __future__ import annotations

import logging
from urllib.parse import parse_qs, unquote, urlparse

import httpx
from bs4 import BeautifulSoup

from .config import Settings
from .exceptions import TransientNetworkError
from .fetcher import with_retries
from .models import SearchResult

logger = logging.getLogger(__name__)

MAX_RESULTS = 10


class ProviderBusyError(TransientNetworkError):
    """The provider answered 429 or 5xx; worth another attempt."""


def _raise_for_status(response: httpx.Response, provider: str) -> None:
    if response.status_code == 429 or response.status_code >= 500:
        raise ProviderBusyError(
            f"{provider} returned HTTP {response.status_code}", {"provider": provider}
        )
    if response.status_code >= 400:
        raise TransientNetworkError(
            f"{provider} rejected the request with HTTP {response.status_code}",
            {"provider": provider, "status": response.status_code},
        )


def _checked_request(provider: str, send, *args, **kwargs) -> httpx.Response:
    response = send(*args, **kwargs)
    _raise_for_status(response, provider)
    return response


def _request(provider: str, attempts: int, send, *args, **kwargs) -> httpx.Response:
    """Send with retries on transport errors and on 429/5xx answers."""
    return with_retries(
        attempts, _checked_request, provider, send, *args, retry_on=(ProviderBusyError,), **kwargs
    )


class DuckDuckGoSearch:
    name = "duckduckgo"
    endpoint = "https://html.duckduckgo.com/html/"

    def __init__(self, client: httpx.Client, attempts: int = 3):
        self._client = client
        self._attempts = attempts

    def search(self, query: str) -> list[SearchResult]:
        response = _request(self.name, self._attempts, self._client.post, self.endpoint, data={"q": query})
        return parse_duckduckgo_html(response.text)[:MAX_RESULTS]


def parse_duckduckgo_html(html: str) -> list[SearchResult]:
    """Result links of a DuckDuckGo HTML page, unwrapped from their ``uddg=`` redirects."""
    soup = BeautifulSoup(html, "html.parser")

    results: list[SearchResult] = []
    for anchor in soup.select("a.result__a"):
        href = str(anchor.get("href") or "")
        url = _unwrap_duckduckgo(href)
        if not url:
            continue

        snippet = ""
        container = anchor.find_parent(class_="result")
        if container is not None:
            snippet_el = container.select_one(".result__snippet")
            if snippet_el is not None:
                snippet = snippet_el.get_text(" ", strip=True)

        results.append(SearchResult(url=url, title=anchor.get_text(" ", strip=True), snippet=snippet))

    return results


def _unwrap_duckduckgo(href: str) -> str | None:
    if "uddg=" in href:
        target = parse_qs(urlparse(href).query).get("uddg", [None])[0]
        return unquote(target) if target else None
    if href.startswith(("http://", "https://")):
        return href
    return None


class ProviderResponseError(TransientNetworkError):
    """The provider answered, but with a body that is not the expected JSON."""


def _json_results(
    response: httpx.Response, provider: str, list_key: str, url_key: str, snippet_key: str
) -> list[SearchResult]:
    try:
        items = response.json().get(list_key) or []
        return [
            SearchResult(
                url=item[url_key],
                title=item.get("title") or "",
                snippet=item.get(snippet_key) or "",
            )
            for item in items
            if item.get(url_key)
        ]
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise ProviderResponseError(
            f"{provider} returned an unreadable body: {e}", {"provider": provider}
        ) from e


class TavilySearch:
    name = "tavily"
    endpoint = "https://api.tavily.com/search"

    def __init__(self, client: httpx.Client, api_key: str, attempts: int = 3):
        self._client = client
        self._api_key = api_key
        self._attempts = attempts

    def search(self, query: str) -> list[SearchResult]:
        payload = {"api_key": self._api_key, "query": query, "max_results": MAX_RESULTS}
        response = _request(self.name, self._attempts, self._client.post, self.endpoint, json=payload)

        return _json_results(response, self.name, "results", "url", "content")


class SerpApiSearch:
    name = "serpapi"
    endpoint = "https://serpapi.com/search.json"

    def __init__(self, client: httpx.Client, api_key: str, attempts: int = 3):
        self._client = client
        self._api_key = api_key
        self._attempts = attempts

    def search(self, query: str) -> list[SearchResult]:
        params = {"engine": "google", "q": query, "api_key": self._api_key, "num": MAX_RESULTS}
        response = _request(self.name, self._attempts, self._client.get, self.endpoint, params=params)

        return _json_results(response, self.name, "organic_results", "link", "snippet")


class FallbackSearchProvider:
    """Primary/fallback ordering over several providers."""

    name = "fallback"

    def __init__(self, providers: list):
        if not providers:
            raise ValueError("FallbackSearchProvider needs at least one provider")
        self._providers = providers

    def search(self, query: str) -> list[SearchResult]:
        last_error: TransientNetworkError | None = None
        answered = False
        for provider in self._providers:
            try:
                results = provider.search(query)
            except TransientNetworkError as e:
                logger.warning("Search provider %s failed for %r: %s", provider.name, query, e)
                last_error = e
                continue
            answered = True
            if results:
                return results
            logger.info("Search provider %s returned nothing for %r", provider.name, query)

        if last_error is not None and not answered:
            raise last_error
        return []


def build_search_provider(settings: Settings) -> FallbackSearchProvider:
    client = httpx.Client(
        timeout=settings.http_timeout,
        follow_redirects=True,
        headers={"User-Agent": settings.user_agent},
    )
    providers: list = [DuckDuckGoSearch(client, settings.retry_attempts)]
    if settings.tavily_api_key:
        providers.append(TavilySearch(client, settings.tavily_api_key, settings.retry_attempts))
    if settings.serpapi_key:
        providers.append(SerpApiSearch(client, settings.serpapi_key, settings.retry_attempts))
    return FallbackSearchProvider(providers)
