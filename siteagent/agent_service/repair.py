"""
Attachment Reconciler — finds knowledge bases that belong to an agent by
naming convention but are not attached, and attaches them.

Only attachments are added and missing knowledge bases created; an agent's
identity is never changed and nothing is deleted. Region or project
mismatches are recorded as skipped because the platform rejects such links.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from siteagent.agent_service.provisioner import IdempotentProvisioner
from siteagent.config.settings import Settings, settings as default_settings
from siteagent.errors import ProvisioningError
from siteagent.gradient.client import GradientClient
from siteagent.gradient.errors import GradientAPIError
from siteagent.gradient.models import Agent, KnowledgeBase
from siteagent.identity import domain_from_agent_name, expected_kb_names, site_url
from siteagent.knowledge_base.service import KnowledgeBaseService

logger = logging.getLogger(__name__)

# (kb_id, site url) -> True when new content was uploaded and indexing started
Enricher = Callable[[str, str], Awaitable[bool]]


class RepairResult(BaseModel):
    agent_id: str
    domain: str = ""
    attached: List[str] = Field(default_factory=list)
    already_attached: List[str] = Field(default_factory=list)
    not_found: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    enhanced: List[str] = Field(default_factory=list)
    created: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    reasons: Dict[str, str] = Field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.attached or self.created or self.enhanced)

    def summary(self) -> str:
        parts = []
        for label, names in (
            ("attached", self.attached),
            ("already attached", self.already_attached),
            ("created", self.created),
            ("enhanced", self.enhanced),
            ("skipped", self.skipped),
            ("failed", self.failed),
            ("not found", self.not_found),
        ):
            if names:
                parts.append(f"{label}: {', '.join(names)}")
        return "; ".join(parts) or "nothing to do"


class AttachmentReconciler:
    def __init__(
        self,
        client: GradientClient,
        provisioner: IdempotentProvisioner,
        kb_service: KnowledgeBaseService,
        config: Optional[Settings] = None,
        enricher: Optional[Enricher] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.client = client
        self.provisioner = provisioner
        self.kb_service = kb_service
        self._settings = config or default_settings
        self.enricher = enricher
        self._sleep = sleep or asyncio.sleep

    async def attach_with_verification(self, agent_id: str, kb_id: str) -> bool:
        """
        Attach and confirm by re-reading the agent. The attach response is
        not trusted on its own; the follow-up read decides.
        """
        attempts = max(1, self._settings.attach_max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                await self.client.attach_knowledge_base(agent_id, kb_id)
            except GradientAPIError as e:
                logger.warning(f"[Repair] Attach {kb_id} -> {agent_id} attempt {attempt}/{attempts} failed: {e}")

            agent = await self.client.get_agent(agent_id)
            if kb_id in agent.knowledge_base_ids:
                logger.info(f"[Repair] Attached knowledge base {kb_id} to agent {agent_id}")
                return True
            if attempt < attempts:
                await self._sleep(self._settings.attach_retry_delay)

        logger.error(f"[Repair] Knowledge base {kb_id} still not attached to {agent_id} after {attempts} attempts")
        return False

    def _mismatch(self, agent: Agent, kb: KnowledgeBase) -> Optional[str]:
        if kb.region and agent.region and kb.region != agent.region:
            return f"region {kb.region} differs from agent region {agent.region}"
        if kb.project_id and agent.project_id and kb.project_id != agent.project_id:
            return f"project {kb.project_id} differs from agent project {agent.project_id}"
        return None

    async def _enrich_if_empty(self, kb: KnowledgeBase, domain: str) -> bool:
        if self.enricher is None:
            return False
        readiness = await self.kb_service.readiness(kb)
        if not readiness.ready or readiness.has_content:
            return False
        logger.info(f"[Repair] Knowledge base {kb.name} indexed but empty, enriching before attach")
        try:
            return await self.enricher(kb.uuid, site_url(domain))
        except Exception as e:
            logger.error(f"[Repair] Enrichment of {kb.name} failed: {e}")
            return False

    async def repair(self, agent_id: str) -> RepairResult:
        agent = await self.client.get_agent(agent_id)
        domain = domain_from_agent_name(agent.name, self._settings.agent_name_prefix)
        if not domain:
            raise ProvisioningError(
                f"Agent '{agent.name}' does not follow the '{self._settings.agent_name_prefix} - <domain>' naming convention"
            )

        result = RepairResult(agent_id=agent_id, domain=domain)
        by_name: Dict[str, KnowledgeBase] = {}
        for kb in await self.client.list_knowledge_bases():
            by_name.setdefault(kb.name, kb)

        expected = expected_kb_names(domain)
        for name in expected:
            kb = by_name.get(name)
            if kb is None:
                result.not_found.append(name)
                continue
            if kb.uuid in agent.knowledge_base_ids:
                result.already_attached.append(name)
                continue
            mismatch = self._mismatch(agent, kb)
            if mismatch:
                logger.warning(f"[Repair] Skipping {name}: {mismatch}")
                result.skipped.append(name)
                result.reasons[name] = mismatch
                continue

            if await self._enrich_if_empty(kb, domain):
                result.enhanced.append(name)
            if await self.attach_with_verification(agent_id, kb.uuid):
                result.attached.append(name)
            else:
                result.failed.append(name)

        if len(result.not_found) == len(expected):
            logger.info(f"[Repair] No knowledge base exists for {domain}, creating one")
            kb, existing = await self.provisioner.get_or_create_knowledge_base(
                site_url(domain),
                project_id=agent.project_id or None,
                region=agent.region or None,
            )
            if not existing:
                result.created.append(kb.name)
                await self.provisioner.ensure_indexing(kb)
            if await self.attach_with_verification(agent_id, kb.uuid):
                result.attached.append(kb.name)
            else:
                result.failed.append(kb.name)

        logger.info(f"[Repair] Agent {agent_id} ({domain}): {result.summary()}")
        return result
