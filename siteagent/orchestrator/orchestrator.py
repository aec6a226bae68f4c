"""
Site Agent Orchestrator — ties the components together behind three calls:
create_or_reuse(url), poll_status(agent_id, kb_id) and repair(agent_id),
plus reindex(agent_id) and the agent management calls list_agents,
get_agent_detail and update_agent.

Provisioning and repair for one site run under the keyed lock on the site's
LogicalKey: concurrent submissions share a single workflow and its result,
and a repair waits for an in-flight provisioning run (and vice versa).
Partial progress is returned as success: an agent whose knowledge base is
still indexing, not yet attached, or whose indexing could not be started,
is a normal state that the next access picks up again.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from siteagent.agent_service.provisioner import IdempotentProvisioner
from siteagent.agent_service.repair import AttachmentReconciler, RepairResult
from siteagent.cache.provisioning_lock import REPAIR, KeyedLock, ProvisioningLockManager
from siteagent.config.settings import Settings, settings as default_settings
from siteagent.errors import InvalidUrlError, ResourceNotFoundError
from siteagent.gradient.client import GradientClient
from siteagent.gradient.errors import GradientAPIError
from siteagent.gradient.models import Agent, IndexingJobStatus, KnowledgeBase
from siteagent.identity import (
    agent_name,
    derive_key,
    domain_from_agent_name,
    expected_kb_names,
    kb_kind_from_name,
    normalize_url,
    site_url,
)
from siteagent.knowledge_base.service import KnowledgeBaseService
from siteagent.quality.monitor import ContentQualityMonitor, QualityState
from siteagent.scraper.firecrawl_client import FirecrawlClient
from siteagent.status.projection import LifecycleStatus, RemoteSnapshot, project_status

logger = logging.getLogger(__name__)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateResult(_CamelModel):
    agent_id: str
    knowledge_base_id: Optional[str] = None
    endpoint: Optional[str] = None
    access_key: Optional[str] = None
    is_existing: bool = False
    status: LifecycleStatus = LifecycleStatus.CREATING
    name: str = ""
    domain: str = ""
    message: Optional[str] = None


class StatusResult(_CamelModel):
    status: LifecycleStatus
    message: Optional[str] = None
    endpoint: Optional[str] = None
    kb_status: str = ""
    agent_status: str = ""
    quality: QualityState = QualityState.DISABLED


class ReindexEntry(_CamelModel):
    kb_id: str
    name: str = ""
    started: bool = False
    message: str = ""


class ReindexResult(_CamelModel):
    agent_id: str
    results: List[ReindexEntry] = Field(default_factory=list)


class KnowledgeBaseInfo(_CamelModel):
    uuid: str
    name: str
    type: str = "custom"
    status: str = "creating"
    document_count: int = 0
    created_at: Optional[str] = None


class AgentSummary(_CamelModel):
    uuid: str
    name: str
    domain: str = ""
    endpoint: Optional[str] = None
    status: str = "creating"
    visibility: str = ""
    knowledge_bases: List[KnowledgeBaseInfo] = Field(default_factory=list)
    created_at: Optional[str] = None


class AgentDetail(AgentSummary):
    instruction: str = ""
    access_key: Optional[str] = None
    repair: Optional[RepairResult] = None


_KB_STATUS = {
    IndexingJobStatus.COMPLETED: "indexed",
    IndexingJobStatus.NO_CHANGES: "indexed",
    IndexingJobStatus.FAILED: "error",
    IndexingJobStatus.NONE: "creating",
}


def describe_knowledge_base(kb: KnowledgeBase) -> KnowledgeBaseInfo:
    kind = kb_kind_from_name(kb.name)
    return KnowledgeBaseInfo(
        uuid=kb.uuid,
        name=kb.name,
        type=kind.value if kind else "custom",
        status=_KB_STATUS.get(kb.indexing_status, "indexing"),
        document_count=kb.document_count,
        created_at=kb.created_at,
    )


def summary_status(agent: Agent, kbs: List[KnowledgeBaseInfo]) -> str:
    """creating until the agent is deployed and nothing is indexing; error if any KB failed."""
    if agent.deployment_failed:
        return "error"
    if not agent.endpoint or any(kb.status in ("indexing", "creating") for kb in kbs):
        return "creating"
    if any(kb.status == "error" for kb in kbs):
        return "error"
    return "active"


class SiteAgentOrchestrator:
    """
    Usage:
        orchestrator = SiteAgentOrchestrator()
        created = await orchestrator.create_or_reuse("https://example.com")
        status = await orchestrator.poll_status(created.agent_id, created.knowledge_base_id)
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        client: Optional[GradientClient] = None,
        lock: Optional[KeyedLock] = None,
        scraper: Optional[FirecrawlClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self._settings = config or default_settings
        self.client = client or GradientClient(self._settings, transport=transport, sleep=sleep)
        self.lock = lock or ProvisioningLockManager()
        self.scraper = scraper or FirecrawlClient(self._settings, transport=transport, sleep=sleep)
        self.kb_service = KnowledgeBaseService(self.client, self._settings, transport=transport, sleep=sleep)
        self.provisioner = IdempotentProvisioner(self.client, self.kb_service, self._settings)
        self.monitor = ContentQualityMonitor(self.client, self.kb_service, self.scraper, self._settings)
        self.reconciler = AttachmentReconciler(
            self.client,
            self.provisioner,
            self.kb_service,
            self._settings,
            enricher=self.monitor.enrich if self.monitor.enabled else None,
            sleep=sleep,
        )
        if not self.monitor.enabled:
            logger.warning("[Quality] FIRECRAWL_API_KEY not set, fallback scraping disabled")

    # ── create_or_reuse ───────────────────────────────────────────

    async def create_or_reuse(self, url: str) -> CreateResult:
        """Raises InvalidUrlError for a malformed URL before any remote call."""
        normalized = normalize_url(url)
        key = derive_key(normalized)
        return await self.lock.run(key, lambda: self._provision(key, normalized))

    async def _provision(self, domain: str, url: str) -> CreateResult:
        name = agent_name(domain, self._settings.agent_name_prefix)
        existing_agent = await self.provisioner.find_agent(name)
        if existing_agent is not None:
            # list rows can omit the deployment url and the attached knowledge bases
            return await self._reuse(await self.client.get_agent(existing_agent.uuid), domain)

        project_id = await self.provisioner.resolve_project_id()
        kb, kb_existing = await self.provisioner.get_or_create_knowledge_base(url, project_id=project_id)

        try:
            agent, agent_existing = await self.provisioner.get_or_create_agent(domain, kb)
        except Exception:
            if not kb_existing:
                logger.error(f"[Provisioner] Agent creation failed for {domain}, rolling back {kb.name}")
                await self.provisioner.rollback_knowledge_base(kb.uuid)
            raise

        if kb.uuid not in agent.knowledge_base_ids:
            await self.reconciler.attach_with_verification(agent.uuid, kb.uuid)

        if self._settings.agent_public:
            try:
                agent = await self.provisioner.set_visibility(agent.uuid, True)
            except GradientAPIError as e:
                logger.warning(f"[Provisioner] Could not make agent {agent.uuid} public: {e}")

        access_key = await self._issue_credential(agent.uuid, domain)

        message = "Agent created, indexing website content"
        indexing_started = await self._ensure_indexing(kb)
        if indexing_started is None:
            status = LifecycleStatus.CREATING
            message = "Agent created, indexing could not be started yet and will be retried on next access"
        elif indexing_started or not kb_existing:
            status = LifecycleStatus.INDEXING
        else:
            status = LifecycleStatus.CREATING
        logger.info(f"[Provisioner] Provisioned {domain}: agent={agent.uuid} kb={kb.uuid}")
        return CreateResult(
            agent_id=agent.uuid,
            knowledge_base_id=kb.uuid,
            endpoint=agent.endpoint,
            access_key=access_key,
            is_existing=agent_existing,
            status=status,
            name=agent.name,
            domain=domain,
            message=message,
        )

    async def _ensure_indexing(self, kb: KnowledgeBase) -> Optional[bool]:
        """
        Start indexing when the knowledge base has no job yet. Once the agent
        exists a failure here is partial progress, not an error: None is
        returned and the next access tries again.
        """
        try:
            return await self.provisioner.ensure_indexing(kb)
        except (GradientAPIError, httpx.HTTPError) as e:
            logger.error(f"[Provisioner] Could not start indexing for {kb.uuid}: {e}")
            return None

    async def _reuse(self, agent: Agent, domain: str) -> CreateResult:
        logger.info(f"[Provisioner] Reusing agent {agent.uuid} for {domain}")
        message = None
        if not agent.knowledge_base_ids:
            try:
                repaired = await self.reconciler.repair(agent.uuid)
                message = f"Repaired attachments ({repaired.summary()})"
                agent = await self.client.get_agent(agent.uuid)
            except Exception as e:
                logger.warning(f"[Repair] Auto-repair of {agent.uuid} failed: {e}")
                message = "Knowledge base attachment pending"

        kb_id = agent.knowledge_base_ids[0] if agent.knowledge_base_ids else None
        status = LifecycleStatus.CREATING
        if kb_id:
            kb = await self.client.get_knowledge_base(kb_id)
            if kb.indexing_status == IndexingJobStatus.NONE:
                if await self._ensure_indexing(kb):
                    kb = await self.client.get_knowledge_base(kb_id)
                    message = message or "Indexing started"
            status = project_status(RemoteSnapshot.capture(kb, agent)).status

        return CreateResult(
            agent_id=agent.uuid,
            knowledge_base_id=kb_id,
            endpoint=agent.endpoint,
            access_key=await self._issue_credential(agent.uuid, domain),
            is_existing=True,
            status=status,
            name=agent.name,
            domain=domain,
            message=message,
        )

    async def _issue_credential(self, agent_id: str, domain: str) -> Optional[str]:
        try:
            return await self.provisioner.issue_credential(agent_id, domain)
        except GradientAPIError as e:
            logger.error(f"[Provisioner] Could not create access key for agent {agent_id}: {e}")
            return None

    # ── poll_status ───────────────────────────────────────────────

    async def poll_status(self, agent_id: str, kb_id: str, url: Optional[str] = None) -> StatusResult:
        """
        Re-read both resources and project a status. Quality checks and the
        fallback are scheduled from here, never awaited.
        """
        kb = await self.client.get_knowledge_base(kb_id)
        agent = await self.client.get_agent(agent_id)

        if url is None:
            domain = domain_from_agent_name(agent.name, self._settings.agent_name_prefix)
            url = site_url(domain) if domain else None

        readiness = await self.kb_service.readiness(kb)
        quality = self.monitor.observe(agent_id, kb_id, agent.endpoint, readiness, url)
        projection = project_status(RemoteSnapshot.capture(kb, agent, quality))
        message = projection.message
        if projection.status == LifecycleStatus.CREATING and not readiness.ready:
            message = readiness.reason
        logger.debug(f"[Status] {agent_id}/{kb_id}: {projection.status.value} ({quality.value})")
        return StatusResult(
            status=projection.status,
            message=message,
            endpoint=agent.endpoint,
            kb_status=kb.last_indexing_job.raw_status if kb.last_indexing_job else "",
            agent_status=agent.deployment_status,
            quality=quality,
        )

    # ── repair / reindex ──────────────────────────────────────────

    def _site_key(self, agent: Agent) -> Optional[str]:
        domain = domain_from_agent_name(agent.name, self._settings.agent_name_prefix)
        if not domain:
            return None
        try:
            return derive_key(domain)
        except InvalidUrlError:
            return domain

    async def repair(self, agent_id: str) -> RepairResult:
        """
        Runs under the site's key, so it never overlaps a provisioning run
        for the same site; both could otherwise create the crawl KB.
        """
        agent = await self.client.get_agent(agent_id)
        key = self._site_key(agent)
        if key is None:
            # the reconciler rejects agents outside the naming convention
            return await self.reconciler.repair(agent_id)
        return await self.lock.run(key, lambda: self.reconciler.repair(agent_id), kind=REPAIR)

    async def reindex(self, agent_id: str) -> ReindexResult:
        """
        Start indexing on every attached knowledge base, or on the site's
        knowledge bases found by name when none are attached.
        """
        agent = await self.client.get_agent(agent_id)
        targets: List[KnowledgeBase] = []
        if agent.knowledge_base_ids:
            for kb_id in agent.knowledge_base_ids:
                targets.append(await self.client.get_knowledge_base(kb_id))
        else:
            domain = domain_from_agent_name(agent.name, self._settings.agent_name_prefix)
            names = set(expected_kb_names(domain)) if domain else set()
            targets = [kb for kb in await self.client.list_knowledge_bases() if kb.name in names]

        if not targets:
            raise ResourceNotFoundError(f"No knowledge base found for agent {agent_id}")

        result = ReindexResult(agent_id=agent_id)
        for kb in targets:
            try:
                started = await self.kb_service.start_indexing(kb.uuid)
                message = "Indexing started" if started else "Indexing already running"
            except GradientAPIError as e:
                started, message = False, e.message
                logger.warning(f"[Provisioner] Reindex of {kb.uuid} failed: {e}")
            result.results.append(ReindexEntry(kb_id=kb.uuid, name=kb.name, started=started, message=message))
        return result

    # ── Agent management ──────────────────────────────────────────

    def _summarize(self, agent: Agent, kbs: List[KnowledgeBase]) -> Dict[str, Any]:
        infos = [describe_knowledge_base(kb) for kb in kbs]
        return dict(
            uuid=agent.uuid,
            name=agent.name,
            domain=domain_from_agent_name(agent.name, self._settings.agent_name_prefix) or "",
            endpoint=agent.endpoint,
            status=summary_status(agent, infos),
            visibility=agent.visibility,
            knowledge_bases=infos,
            created_at=agent.created_at,
        )

    async def _attached_knowledge_bases(self, agent: Agent) -> List[KnowledgeBase]:
        kbs: List[KnowledgeBase] = []
        for kb_id in agent.knowledge_base_ids:
            try:
                kbs.append(await self.client.get_knowledge_base(kb_id))
            except GradientAPIError as e:
                logger.warning(f"[Status] Could not read knowledge base {kb_id} of agent {agent.uuid}: {e}")
        return kbs

    async def list_agents(self) -> List[AgentSummary]:
        """Deployed agents with their attached knowledge bases."""
        agents, kbs = await asyncio.gather(
            self.client.list_agents(),
            self.client.list_knowledge_bases(),
        )
        by_id = {kb.uuid: kb for kb in kbs}
        return [
            AgentSummary(**self._summarize(agent, [by_id[i] for i in agent.knowledge_base_ids if i in by_id]))
            for agent in agents
            if agent.endpoint
        ]

    async def get_agent_detail(self, agent_id: str, include_access_key: bool = False) -> AgentDetail:
        """
        Agent with its knowledge bases. An agent with nothing attached is
        repaired first. A new access key is only issued on request, since
        secrets of existing keys cannot be read back.
        """
        agent = await self.client.get_agent(agent_id)
        repaired = None
        if not agent.knowledge_base_ids:
            logger.info(f"[Repair] No knowledge base attached to {agent_id}, attempting auto-repair")
            try:
                repaired = await self.repair(agent_id)
                if repaired.changed:
                    agent = await self.client.get_agent(agent_id)
            except Exception as e:
                logger.warning(f"[Repair] Auto-repair of {agent_id} failed: {e}")

        access_key = None
        if include_access_key:
            existing = await self.client.list_api_keys(agent_id)
            logger.info(f"[Provisioner] Agent {agent_id} has {len(existing)} existing API keys")
            domain = domain_from_agent_name(agent.name, self._settings.agent_name_prefix) or agent.name
            access_key = await self._issue_credential(agent_id, domain)

        return AgentDetail(
            **self._summarize(agent, await self._attached_knowledge_bases(agent)),
            instruction=agent.instruction,
            access_key=access_key,
            repair=repaired,
        )

    async def update_agent(
        self,
        agent_id: str,
        instruction: Optional[str] = None,
        public: Optional[bool] = None,
    ) -> AgentDetail:
        """Change the agent's system prompt and/or deployment visibility."""
        if instruction is None and public is None:
            raise ValueError("No updates provided")
        if instruction is not None:
            if not instruction.strip():
                raise ValueError("Instruction must not be empty")
            await self.client.update_agent(agent_id, {"instruction": instruction})
            logger.info(f"[Provisioner] Updated instruction of agent {agent_id}")
        if public is not None:
            await self.provisioner.set_visibility(agent_id, public)
        agent = await self.client.get_agent(agent_id)
        return AgentDetail(
            **self._summarize(agent, await self._attached_knowledge_bases(agent)),
            instruction=agent.instruction,
        )

    async def close(self):
        await self.monitor.drain()
        await self.kb_service.close()
        await self.scraper.close()
        await self.client.close()

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"quality_cache": len(self.monitor.cache)}
        if isinstance(self.lock, ProvisioningLockManager):
            stats["locks"] = self.lock.get_stats()
        return stats
