"""Research tools: firecrawl_search, firecrawl_scrape, firecrawl_map.

Talks to a Firecrawl-compatible HTTP API through a shared httpx client.
The client carries no credentials; the API key is sent per request.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, Field

from ideaflow.config import Settings
from ideaflow.tools.router import ToolError, ToolRouter

logger = logging.getLogger(__name__)

MAX_SEARCH_RESULTS = 10


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


class SearchInput(BaseModel):
    """Search the internet. Returns results with page content in markdown. Use it to research APIs, documentation or any web information."""

    query: str = Field(description='The search query, e.g. "Stripe API documentation"')
    limit: int = Field(default=5, description="Maximum number of results (default 5, max 10)")
    scrape_content: bool = Field(default=False, description="Also scrape each result's full page content")


class ScrapeInput(BaseModel):
    """Scrape a specific URL and return its content as markdown."""

    url: str = Field(description="The URL to scrape")
    only_main_content: bool = Field(default=True, description="Exclude headers, footers and navigation")


class MapInput(BaseModel):
    """Discover the URLs of a website, e.g. to explore documentation structure before scraping."""

    url: str = Field(description="The base URL to map")
    search: str | None = Field(default=None, description='Optional filter term, e.g. "auth"')
    limit: int = Field(default=50, description="Maximum number of URLs to return")


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class FirecrawlClient:
    """Minimal client for the search, scrape and map endpoints."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient) -> None:
        self._settings = settings
        self._http = http

    @property
    def configured(self) -> bool:
        return bool(self._settings.firecrawl_api_key)

    async def post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        if not self.configured:
            raise ToolError("Firecrawl is not configured. Please set FIRECRAWL_API_KEY in environment variables.")

        url = f"{self._settings.firecrawl_base_url.rstrip('/')}{path}"
        try:
            response = await self._http.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {self._settings.firecrawl_api_key}"},
                timeout=self._settings.research_timeout,
            )
        except httpx.TimeoutException as e:
            raise ToolError(f"Request to {path} timed out. Try again.") from e
        except httpx.HTTPError as e:
            raise ToolError(f"Could not reach research service: {e}") from e

        if response.status_code != 200:
            raise ToolError(f"Research request failed (HTTP {response.status_code}): {_error_text(response)}")

        body = response.json()
        if isinstance(body, dict) and body.get("success") is False:
            raise ToolError(str(body.get("error") or "Request failed"))
        return body


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or body)[:200]
    return str(body)[:200]


def _search_items(body: dict[str, Any]) -> list[dict[str, Any]]:
    data = body.get("data", body)
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return data.get("web") or data.get("results") or []
    return []


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_research_tools(router: ToolRouter, settings: Settings, http_client: httpx.AsyncClient) -> None:
    """Register the research tools with closures over the shared client."""
    client = FirecrawlClient(settings, http_client)

    async def search(idea_id: str, args: SearchInput) -> dict[str, Any]:
        limit = max(1, min(args.limit, MAX_SEARCH_RESULTS))
        logger.info("Research search: %s (limit=%d)", args.query, limit)

        payload: dict[str, Any] = {"query": args.query, "limit": limit}
        if args.scrape_content:
            payload["scrapeOptions"] = {"formats": ["markdown"]}
        body = await client.post("/v1/search", payload)

        results = [
            {
                "title": item.get("title") or "",
                "url": item.get("url") or "",
                "snippet": item.get("description") or "",
                "markdown": item.get("markdown") or "",
            }
            for item in _search_items(body)
        ]
        return {
            "query": args.query,
            "resultCount": len(results),
            "results": results,
            "message": f'Found {len(results)} results for "{args.query}"',
        }

    async def scrape(idea_id: str, args: ScrapeInput) -> dict[str, Any]:
        logger.info("Research scrape: %s", args.url)
        body = await client.post(
            "/v1/scrape",
            {"url": args.url, "formats": ["markdown"], "onlyMainContent": args.only_main_content},
        )
        data = body.get("data") or {}
        metadata = data.get("metadata") or {}
        return {
            "url": args.url,
            "title": data.get("title") or metadata.get("title") or "",
            "markdown": data.get("markdown") or "",
            "metadata": metadata,
            "message": f"Successfully scraped {args.url}",
        }

    async def map_site(idea_id: str, args: MapInput) -> dict[str, Any]:
        logger.info("Research map: %s (search=%s)", args.url, args.search)
        payload: dict[str, Any] = {"url": args.url, "limit": args.limit}
        if args.search:
            payload["search"] = args.search
        body = await client.post("/v1/map", payload)

        urls = [u if isinstance(u, str) else u.get("url", "") for u in body.get("links") or []]
        match = f' matching "{args.search}"' if args.search else ""
        return {
            "baseUrl": args.url,
            "searchFilter": args.search,
            "urlCount": len(urls),
            "urls": urls,
            "message": f"Found {len(urls)} URLs on {args.url}{match}",
        }

    router.register("firecrawl_search", search, SearchInput)
    router.register("firecrawl_scrape", scrape, ScrapeInput)
    router.register("firecrawl_map", map_site, MapInput)
