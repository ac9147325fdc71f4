"""
Firecrawl scrape client — renders a JS-heavy page and returns it as markdown.

API: POST {FIRECRAWL_API_URL}/scrape
  body:     {"url", "formats": ["markdown"], "onlyMainContent": true,
             "waitFor": ms, "timeout": ms}
  response: {"success": bool, "data": {"markdown": str, ...}, "error"?: str}
"""

import asyncio
from typing import Optional

import aiohttp

from yieldwatch.sources.base import HttpClient, SourceError

FIRECRAWL_API_URL = "https://api.firecrawl.dev/v1"

# Firecrawl itself waits waitFor+render time; keep the HTTP timeout above it
SCRAPE_HTTP_TIMEOUT_SEC = 90


class ScrapeError(SourceError):
    """Firecrawl failed or returned no markdown."""


class FirecrawlClient(HttpClient):
    """Thin async wrapper over the Firecrawl /scrape endpoint."""

    tag = "FIRECRAWL"

    def __init__(self, api_key: str, api_url: str = FIRECRAWL_API_URL,
                 session: Optional[aiohttp.ClientSession] = None,
                 timeout_sec: float = SCRAPE_HTTP_TIMEOUT_SEC):
        super().__init__(session=session, timeout_sec=timeout_sec)
        if not api_key:
            raise ValueError("Firecrawl API key is required")
        self.api_key = api_key
        self.api_url = api_url.rstrip("/")

    async def scrape(self, url: str, wait_for_ms: int = 8000,
                     timeout_ms: Optional[int] = None) -> str:
        """Scrape `url` and return its markdown. Raises ScrapeError."""
        await self._ensure_session()
        body = {
            "url": url,
            "formats": ["markdown"],
            "onlyMainContent": True,
            "waitFor": wait_for_ms,
        }
        if timeout_ms:
            body["timeout"] = timeout_ms
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with self._session.post(f"{self.api_url}/scrape", json=body,
                                          headers=headers) as resp:
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = {}
                status = resp.status
        except asyncio.TimeoutError:
            self._fetch_errors += 1
            raise ScrapeError(f"timeout scraping {url} ({self._timeout_sec}s)")
        except aiohttp.ClientError as e:
            self._fetch_errors += 1
            raise ScrapeError(f"transport error scraping {url}: {e}") from e

        if status != 200 or not isinstance(data, dict) or not data.get("success"):
            self._fetch_errors += 1
            error = data.get("error") if isinstance(data, dict) else None
            raise ScrapeError(f"scrape of {url} failed (HTTP {status}): {error or 'no detail'}")

        markdown = (data.get("data") or {}).get("markdown") or ""
        self._fetch_count += 1
        print(f"[FIRECRAWL] {url}: {len(markdown)} chars of markdown")
        return markdown
