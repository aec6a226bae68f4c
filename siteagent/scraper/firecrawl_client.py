"""
Firecrawl Client — fallback scraper for sites the platform crawler cannot
index (single-page apps, JS-rendered content, pages behind login walls).
Without an API key the client reports itself disabled and every call
returns an unsuccessful ScrapeResult instead of raising.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

import httpx
from pydantic import BaseModel

from siteagent.config.settings import Settings, settings as default_settings
from siteagent.gradient.retry import ResilientCaller, RetryPolicy

logger = logging.getLogger(__name__)


class ScrapeResult(BaseModel):
    success: bool
    markdown: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None
    pages: int = 0
    error: Optional[str] = None


class FirecrawlClient:
    """Client for the Firecrawl scrape and crawl APIs."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=None,
    ):
        self._settings = config or default_settings
        self.base_url = self._settings.firecrawl_api_base.rstrip("/")
        self._client = httpx.AsyncClient(timeout=120.0, transport=transport)
        self._caller = ResilientCaller(self._client, tag="Firecrawl", sleep=sleep)
        self._sleep = sleep or asyncio.sleep
        self._policy = RetryPolicy(
            max_retries=self._settings.create_retry_max,
            initial_delay=self._settings.create_retry_initial_delay,
            max_delay=self._settings.create_retry_max_delay,
        )

    @property
    def enabled(self) -> bool:
        return bool(self._settings.firecrawl_api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.firecrawl_api_key}",
            "Content-Type": "application/json",
        }

    async def scrape_url(self, url: str) -> ScrapeResult:
        """Scrape one URL, returning its rendered main content as markdown."""
        if not self.enabled:
            return ScrapeResult(success=False, error="Firecrawl API key not configured")

        logger.info(f"[Firecrawl] Scraping URL: {url}")
        try:
            resp = await self._caller.call(
                "POST", f"{self.base_url}/scrape", self._policy,
                headers=self._headers(),
                json={
                    "url": url,
                    "formats": ["markdown"],
                    "onlyMainContent": True,
                    "waitFor": 3000,
                },
            )
        except httpx.HTTPError as e:
            logger.error(f"[Firecrawl] Error scraping {url}: {e}")
            return ScrapeResult(success=False, error=str(e))

        if not resp.is_success:
            logger.error(f"[Firecrawl] API error: {resp.status_code} - {resp.text[:300]}")
            return ScrapeResult(success=False, error=f"Firecrawl API error: {resp.status_code}")

        data = resp.json()
        payload = data.get("data") or {}
        markdown = payload.get("markdown")
        if not data.get("success") or not markdown:
            logger.error(f"[Firecrawl] Scrape failed: {data.get('error')}")
            return ScrapeResult(success=False, error=data.get("error") or "No content returned")

        metadata = payload.get("metadata") or {}
        logger.info(f"[Firecrawl] Scraped {url} ({len(markdown)} chars)")
        return ScrapeResult(
            success=True,
            markdown=markdown,
            title=metadata.get("title"),
            description=metadata.get("description"),
            url=metadata.get("sourceURL") or url,
            pages=1,
        )

    async def crawl_site(self, url: str, max_pages: int = 10) -> ScrapeResult:
        """
        Crawl up to ``max_pages`` pages of a site and join their markdown,
        one section per page headed by the page URL.
        """
        if not self.enabled:
            return ScrapeResult(success=False, error="Firecrawl API key not configured")

        logger.info(f"[Firecrawl] Crawling site: {url} (max {max_pages} pages)")
        try:
            resp = await self._caller.call(
                "POST", f"{self.base_url}/crawl", self._policy,
                headers=self._headers(),
                json={
                    "url": url,
                    "limit": max_pages,
                    "scrapeOptions": {"formats": ["markdown"], "onlyMainContent": True},
                },
            )
            if not resp.is_success:
                logger.error(f"[Firecrawl] Crawl API error: {resp.status_code} - {resp.text[:300]}")
                return ScrapeResult(success=False, error=f"Firecrawl crawl error: {resp.status_code}")
            started = resp.json()
            if not started.get("success"):
                return ScrapeResult(success=False, error=started.get("error") or "Crawl failed")

            job_id = started.get("id")
            for _ in range(self._settings.firecrawl_max_polls):
                await self._sleep(self._settings.firecrawl_poll_interval)
                status_resp = await self._caller.call(
                    "GET", f"{self.base_url}/crawl/{job_id}", self._policy,
                    headers=self._headers(),
                )
                if not status_resp.is_success:
                    continue
                status = status_resp.json()
                if status.get("status") == "completed":
                    return self._combine_pages(url, status.get("data") or [])
                if status.get("status") == "failed":
                    return ScrapeResult(success=False, error=status.get("error") or "Crawl job failed")
        except httpx.HTTPError as e:
            logger.error(f"[Firecrawl] Error crawling {url}: {e}")
            return ScrapeResult(success=False, error=str(e))

        return ScrapeResult(success=False, error="Crawl timed out")

    @staticmethod
    def _combine_pages(url: str, pages: List[Dict[str, Any]]) -> ScrapeResult:
        sections = []
        for page in pages:
            page_url = (page.get("metadata") or {}).get("sourceURL") or ""
            sections.append(f"# {page_url}\n\n{page.get('markdown') or ''}")
        combined = "\n\n---\n\n".join(sections)
        if not combined.strip():
            return ScrapeResult(success=False, error="No content returned")
        logger.info(f"[Firecrawl] Crawl completed: {len(pages)} pages, {len(combined)} chars")
        return ScrapeResult(
            success=True,
            markdown=combined,
            title=f"{urlsplit(url).hostname} - {len(pages)} pages",
            url=url,
            pages=len(pages),
        )

    async def close(self):
        await self._client.aclose()
