"""
Knowledge Base Service — builds crawl requests (sitemap-aware), waits for
backing storage and indexing, measures indexed content and uploads
supplementary documents through presigned URLs.
"""

import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel

from siteagent.config.settings import Settings, settings as default_settings
from siteagent.errors import ProvisioningTimeout
from siteagent.gradient.client import GradientClient
from siteagent.gradient.models import IndexingJob, IndexingJobStatus, KnowledgeBase

logger = logging.getLogger(__name__)

CRAWL_SCOPED = "SCOPED"
CRAWL_DOMAIN = "DOMAIN"

_LOC_RE = re.compile(r"<loc>", re.IGNORECASE)
_USER_AGENT = "SiteAgent-Crawler/1.0"


class CrawlPlan(BaseModel):
    """How the platform crawler is seeded for one site."""
    base_url: str
    crawling_option: str
    has_sitemap: bool = False
    sitemap_urls: int = 0


class Readiness(BaseModel):
    ready: bool
    has_content: bool = False
    reason: str = ""


class KnowledgeBaseService:
    """
    Knowledge base operations layered over the GradientClient.

    The resolved vector database id is cached for the life of the process so
    every knowledge base after the first one lands in the same database.
    """

    def __init__(
        self,
        client: GradientClient,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.client = client
        self._settings = config or default_settings
        self._probe = httpx.AsyncClient(
            timeout=10.0,
            transport=transport,
            follow_redirects=True,
            headers={"User-Agent": _USER_AGENT},
        )
        self._sleep = sleep or asyncio.sleep
        self._database_id: Optional[str] = self._settings.database_id

    # ── Crawl configuration ───────────────────────────────────────

    async def probe_sitemap(self, base_url: str) -> CrawlPlan:
        """
        HEAD ``<base>/sitemap.xml``. A 2xx XML or text response seeds a
        SCOPED crawl from the sitemap; anything else seeds a DOMAIN crawl
        from the base URL. Probe failures are never fatal.
        """
        base = base_url.rstrip("/")
        sitemap_url = f"{base}/sitemap.xml"
        try:
            head = await self._probe.head(sitemap_url)
        except httpx.HTTPError as e:
            logger.info(f"[Provisioner] Sitemap probe for {base} failed: {e}")
            return CrawlPlan(base_url=base, crawling_option=CRAWL_DOMAIN)

        content_type = head.headers.get("content-type", "")
        if not head.is_success or not ("xml" in content_type or "text" in content_type):
            logger.info(f"[Provisioner] No sitemap for {base}, crawling whole domain")
            return CrawlPlan(base_url=base, crawling_option=CRAWL_DOMAIN)

        url_count = 0
        try:
            body = await self._probe.get(sitemap_url)
            if body.is_success:
                url_count = len(_LOC_RE.findall(body.text))
        except httpx.HTTPError:
            pass
        logger.info(f"[Provisioner] Sitemap found for {base} ({url_count} URLs)")
        return CrawlPlan(
            base_url=sitemap_url,
            crawling_option=CRAWL_SCOPED,
            has_sitemap=True,
            sitemap_urls=url_count,
        )

    def estimate_max_pages(self, plan: Optional[CrawlPlan]) -> int:
        """Page budget for a multi-page fallback crawl, from the sitemap size."""
        if plan and plan.sitemap_urls >= self._settings.crawl_large_site_threshold:
            return self._settings.crawl_max_pages_large
        return self._settings.crawl_max_pages_small

    async def resolve_database_id(self) -> Optional[str]:
        """
        Configured id first, then the database of any existing knowledge base.
        None means the platform will auto-provision a database.
        """
        if self._database_id:
            return self._database_id
        for kb in await self.client.list_knowledge_bases():
            if kb.database_id:
                self._database_id = kb.database_id
                logger.info(f"[Provisioner] Reusing vector database {kb.database_id} from {kb.name}")
                return self._database_id
        logger.info("[Provisioner] No database_id available, platform will auto-provision")
        return None

    def forget_database_id(self) -> None:
        self._database_id = None

    def build_crawl_request(
        self,
        name: str,
        plan: CrawlPlan,
        project_id: Optional[str],
        database_id: Optional[str],
        region: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "name": name,
            "embedding_model_uuid": self._settings.embedding_model_uuid,
            "region": region or self._settings.region,
            "datasources": [
                {
                    "web_crawler_data_source": {
                        "base_url": plan.base_url,
                        "crawling_option": plan.crawling_option,
                        "embed_media": self._settings.crawl_embed_media,
                        "exclude_tags": list(self._settings.crawl_exclude_tags),
                    }
                }
            ],
        }
        if project_id:
            body["project_id"] = project_id
        if database_id:
            body["database_id"] = database_id
        return body

    # ── Bounded waits ─────────────────────────────────────────────

    async def _poll_until(
        self,
        check: Callable[[], Awaitable[Optional[Any]]],
        timeout: float,
        interval: float,
        what: str,
    ) -> Any:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = await check()
            if result is not None:
                return result
            if loop.time() >= deadline:
                raise ProvisioningTimeout(f"Timed out after {timeout:.0f}s waiting for {what}")
            await self._sleep(interval)

    async def wait_for_database(self, kb_id: str) -> KnowledgeBase:
        """Poll until the knowledge base reports its backing database id."""

        async def _check() -> Optional[KnowledgeBase]:
            kb = await self.client.get_knowledge_base(kb_id)
            return kb if kb.database_id else None

        kb = await self._poll_until(
            _check,
            self._settings.database_ready_timeout,
            self._settings.database_ready_poll_interval,
            f"database of knowledge base {kb_id}",
        )
        logger.info(f"[Provisioner] Database ready for {kb_id}: {kb.database_id}")
        if not self._database_id:
            self._database_id = kb.database_id
        return kb

    # ── Indexing and content ──────────────────────────────────────

    async def start_indexing(self, kb_id: str, data_source_ids: Optional[List[str]] = None) -> bool:
        """Start an indexing job. False when one was already running."""
        job = await self.client.start_indexing_job(kb_id, data_source_ids)
        return job is not None

    async def load_job_counts(self, job: Optional[IndexingJob]) -> Optional[IndexingJob]:
        if job is None or not job.uuid:
            return job
        job.indexed_item_counts = await self.client.get_indexed_item_counts(job.uuid)
        return job

    async def readiness(self, kb: KnowledgeBase) -> Readiness:
        """
        Whether indexing finished, and whether it produced anything.
        Indexed item counts are the primary content signal, token usage
        the fallback when the counts are unavailable.
        """
        job = kb.last_indexing_job
        status = kb.indexing_status
        if job is None or status == IndexingJobStatus.NONE:
            return Readiness(ready=False, reason="No indexing job yet")
        if status in (IndexingJobStatus.PENDING, IndexingJobStatus.RUNNING, IndexingJobStatus.UNKNOWN):
            return Readiness(ready=False, reason=f"Indexing {status.value}")
        if status == IndexingJobStatus.FAILED:
            return Readiness(ready=False, reason="Indexing failed")
        if status == IndexingJobStatus.NO_CHANGES:
            return Readiness(ready=True, has_content=True, reason="No changes since last index")

        try:
            await self.load_job_counts(job)
        except Exception as e:
            logger.warning(f"[Status] Could not read indexed item counts for {kb.uuid}: {e}")
        has_content = job.indexed_items > 0 or (not job.indexed_item_counts and job.tokens > 0)
        reason = "Indexed" if has_content else "Indexing completed but no content was indexed"
        return Readiness(ready=True, has_content=has_content, reason=reason)

    async def upload_document(self, kb_id: str, filename: str, content: str) -> Dict[str, Any]:
        """Upload a markdown document and register it as a data source."""
        payload = content.encode("utf-8")
        upload = await self.client.create_presigned_upload(filename, len(payload))
        await self.client.put_presigned(upload["presigned_url"], payload, "text/markdown")
        data_source = await self.client.add_data_source(kb_id, {
            "file_upload_data_source": {
                "original_file_name": filename,
                "stored_object_key": upload.get("object_key") or "",
                "size_in_bytes": str(len(payload)),
            }
        })
        logger.info(f"[Provisioner] Uploaded {filename} ({len(payload)} bytes) to {kb_id}")
        return data_source

    async def close(self):
        await self._probe.aclose()
