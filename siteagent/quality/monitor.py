"""
Content Quality Monitor.

Asks a provisioned agent a fixed diagnostic question and classifies
the answer. Crawlers that hit a login or paywall page index that page, so
an answer dominated by authentication vocabulary (or one too short to say
anything) marks the knowledge base as low quality. A low verdict, or an
index that completed with no content at all, triggers one fallback cycle:
scrape the site with Firecrawl, upload the markdown to the same knowledge
base and re-index.

Checks and fallbacks run as background tasks so status polling never waits
on them.
"""

import asyncio
import logging
import re
from enum import Enum
from typing import Dict, Optional, Set

from siteagent.cache.verdict_cache import QualityVerdict, VerdictCache
from siteagent.config.settings import Settings, settings as default_settings
from siteagent.gradient.client import GradientClient
from siteagent.identity import derive_key, slugify
from siteagent.knowledge_base.service import KnowledgeBaseService, Readiness
from siteagent.scraper.firecrawl_client import FirecrawlClient

logger = logging.getLogger(__name__)

AUTH_WALL_KEYWORDS = (
    "sign in",
    "sign up",
    "log in",
    "login",
    "log out",
    "password",
    "username",
    "create an account",
    "create account",
    "forgot your password",
    "authentication",
    "authenticate",
    "two-factor",
    "remember me",
    "single sign-on",
    "verify your email",
)

CHECK_KEY_NAME = "quality-check"

_KEYWORD_PATTERNS = {
    k: re.compile(rf"(?<![a-z]){re.escape(k)}(?![a-z])") for k in AUTH_WALL_KEYWORDS
}


class QualityState(str, Enum):
    DISABLED = "disabled"
    NOT_CHECKED = "not_checked"
    CHECKING = "checking"
    OK = "ok"
    FALLBACK_RUNNING = "fallback_running"
    FALLBACK_DONE = "fallback_done"


def classify_response(
    text: str,
    min_keyword_matches: int = 2,
    min_response_length: int = 50,
) -> QualityVerdict:
    """Pure keyword/length heuristic over one agent answer."""
    body = (text or "").strip()
    lowered = body.lower()
    matched = [k for k, pattern in _KEYWORD_PATTERNS.items() if pattern.search(lowered)]

    if len(matched) >= min_keyword_matches:
        return QualityVerdict(
            is_low_quality=True,
            reason=f"Answer is dominated by login/authentication content ({', '.join(matched)})",
            matched_keywords=matched,
            response_length=len(body),
        )
    if len(body) < min_response_length:
        return QualityVerdict(
            is_low_quality=True,
            reason=f"Answer too short ({len(body)} chars)",
            matched_keywords=matched,
            response_length=len(body),
        )
    return QualityVerdict(
        is_low_quality=False,
        reason="Content looks substantive",
        matched_keywords=matched,
        response_length=len(body),
    )


class ContentQualityMonitor:
    """Quality checks and fallback enrichment, tracked per knowledge base id."""

    def __init__(
        self,
        client: GradientClient,
        kb_service: KnowledgeBaseService,
        scraper: FirecrawlClient,
        config: Optional[Settings] = None,
        cache: Optional[VerdictCache] = None,
    ):
        self.client = client
        self.kb_service = kb_service
        self.scraper = scraper
        self._settings = config or default_settings
        self.cache = cache or VerdictCache()
        self._checking: Set[str] = set()
        self._fallback_running: Set[str] = set()
        # kb ids that already had their one fallback cycle
        self._fallback_ran: Set[str] = set()
        self._check_keys: Dict[str, str] = {}
        self._bg_tasks: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self.scraper.enabled

    # ── Check ─────────────────────────────────────────────────────

    async def _check_key(self, agent_id: str) -> str:
        """
        One check key per agent per process. Secrets of keys created by an
        earlier process cannot be read back, so a restart creates another.
        """
        key = self._check_keys.get(agent_id)
        if key:
            return key
        earlier = [
            k for k in await self.client.list_api_keys(agent_id) if k.name == CHECK_KEY_NAME
        ]
        credential = await self.client.create_api_key(agent_id, CHECK_KEY_NAME)
        if not credential.secret:
            raise RuntimeError(f"No secret returned for quality check credential of agent {agent_id}")
        logger.warning(
            f"[Quality] Created quality check key {credential.uuid} for agent {agent_id} "
            f"({len(earlier)} earlier check keys on the platform)"
        )
        self._check_keys[agent_id] = credential.secret
        return credential.secret

    async def check_quality(self, agent_id: str, endpoint: str) -> QualityVerdict:
        """Ask the agent the diagnostic question and classify the answer."""
        access_key = await self._check_key(agent_id)
        answer = await self.client.ask_agent(
            endpoint, access_key, self._settings.quality_check_question,
        )
        verdict = classify_response(
            answer,
            min_keyword_matches=self._settings.quality_min_keyword_matches,
            min_response_length=self._settings.quality_min_response_length,
        )
        logger.info(
            f"[Quality] Agent {agent_id}: low_quality={verdict.is_low_quality} ({verdict.reason})"
        )
        return verdict

    # ── Fallback ──────────────────────────────────────────────────

    async def enrich(self, kb_id: str, url: str) -> bool:
        """
        Scrape the site, upload it as a supplementary document and re-index.
        Returns False when the scrape produced nothing.
        """
        if not self.enabled:
            logger.warning("[Quality] Fallback scraping disabled (no FIRECRAWL_API_KEY)")
            return False

        if self._settings.fallback_mode == "crawl":
            plan = await self.kb_service.probe_sitemap(url)
            result = await self.scraper.crawl_site(url, self.kb_service.estimate_max_pages(plan))
        else:
            result = await self.scraper.scrape_url(url)

        if not result.success or not result.markdown:
            logger.error(f"[Quality] Fallback scrape of {url} failed: {result.error}")
            return False

        filename = f"{slugify(derive_key(url))}-scraped.md"
        await self.kb_service.upload_document(kb_id, filename, result.markdown)
        await self.kb_service.start_indexing(kb_id)
        logger.info(f"[Quality] Enriched knowledge base {kb_id} with {len(result.markdown)} chars")
        return True

    # ── Background cycle ──────────────────────────────────────────

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._bg_tasks.add(task)
        task.add_done_callback(self._bg_tasks.discard)
        return task

    def start_fallback(self, kb_id: str, url: str) -> bool:
        if kb_id in self._fallback_running:
            return False
        self._fallback_running.add(kb_id)
        self._fallback_ran.add(kb_id)
        self._spawn(self._run_fallback(kb_id, url))
        return True

    async def _run_fallback(self, kb_id: str, url: str) -> None:
        try:
            await self.enrich(kb_id, url)
        except Exception as e:
            logger.error(f"[Quality] Fallback for knowledge base {kb_id} failed: {e}")
        finally:
            self._fallback_running.discard(kb_id)
            self.cache.invalidate(kb_id)

    def start_check(self, agent_id: str, kb_id: str, endpoint: str, url: str) -> bool:
        if kb_id in self._checking:
            return False
        self._checking.add(kb_id)
        self._spawn(self._run_check(agent_id, kb_id, endpoint, url))
        return True

    async def _run_check(self, agent_id: str, kb_id: str, endpoint: str, url: str) -> None:
        try:
            try:
                verdict = await self.check_quality(agent_id, endpoint)
            except Exception as e:
                # An unanswerable check must not hold the status in "checking" forever
                logger.error(f"[Quality] Check for agent {agent_id} failed, assuming OK: {e}")
                verdict = QualityVerdict(is_low_quality=False, reason=f"Quality check failed: {e}")
            self.cache.set(kb_id, verdict)
            if verdict.is_low_quality and kb_id not in self._fallback_ran:
                logger.info(f"[Quality] Low quality content in {kb_id}, starting fallback for {url}")
                self.start_fallback(kb_id, url)
        finally:
            self._checking.discard(kb_id)

    def observe(
        self,
        agent_id: str,
        kb_id: str,
        endpoint: Optional[str],
        readiness: Readiness,
        url: Optional[str],
    ) -> QualityState:
        """
        Advance the quality cycle for one status poll and report where it is.
        Never awaits remote work; checks and fallbacks are scheduled instead.
        """
        if not self.enabled or not url:
            return QualityState.DISABLED
        if kb_id in self._fallback_running:
            return QualityState.FALLBACK_RUNNING
        if not readiness.ready:
            return QualityState.NOT_CHECKED

        if not readiness.has_content:
            if kb_id in self._fallback_ran:
                return QualityState.FALLBACK_DONE
            logger.info(f"[Quality] Knowledge base {kb_id} indexed but empty, starting fallback for {url}")
            self.start_fallback(kb_id, url)
            return QualityState.FALLBACK_RUNNING

        verdict = self.cache.get(kb_id)
        if verdict is None:
            if kb_id in self._checking:
                return QualityState.CHECKING
            if not endpoint:
                return QualityState.NOT_CHECKED
            self.start_check(agent_id, kb_id, endpoint, url)
            return QualityState.CHECKING
        if verdict.is_low_quality:
            return QualityState.FALLBACK_DONE
        return QualityState.OK

    def is_busy(self, kb_id: str) -> bool:
        return kb_id in self._checking or kb_id in self._fallback_running

    async def drain(self) -> None:
        """Wait for all scheduled checks and fallbacks, including ones they schedule."""
        while self._bg_tasks:
            await asyncio.gather(*list(self._bg_tasks), return_exceptions=True)
