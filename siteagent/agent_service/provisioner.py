"""
Idempotent Provisioner — get-or-create for knowledge bases, agents, projects
and access credentials.

Resources are found again by their derived name (exact match, never a
substring). Remote existence is re-checked immediately before every
creation call, which narrows the race left open by multi-process
deployments.
"""

import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from siteagent.agent_service.credentials import CredentialLedger
from siteagent.config.settings import Settings, settings as default_settings
from siteagent.errors import ProvisioningError
from siteagent.gradient.client import VISIBILITY_PRIVATE, VISIBILITY_PUBLIC, GradientClient
from siteagent.gradient.errors import GradientAPIError
from siteagent.gradient.models import Agent, IndexingJobStatus, KnowledgeBase, Project
from siteagent.identity import (
    KnowledgeBaseKind,
    agent_name,
    derive_key,
    derive_resource_name,
    site_url,
    slugify,
)
from siteagent.knowledge_base.service import KnowledgeBaseService

logger = logging.getLogger(__name__)

T = TypeVar("T")


def default_instruction(domain: str) -> str:
    return (
        f"You are a friendly and knowledgeable support assistant for {domain}.\n"
        "\n"
        "Guidelines:\n"
        "- Answer questions using ONLY the content of the website's knowledge base\n"
        "- If you cannot find the answer, say \"I couldn't find that information. "
        "Could you rephrase your question?\"\n"
        "- Be helpful, concise and friendly\n"
        "- Keep a conversational but professional tone\n"
        "- If asked about unrelated topics, politely steer back to what you can help with"
    )


def _exact(items: List[T], name: str) -> Optional[T]:
    for item in items:
        if getattr(item, "name", None) == name:
            return item
    return None


class IdempotentProvisioner:
    """Creates each per-site resource at most once and reuses it afterwards."""

    def __init__(
        self,
        client: GradientClient,
        kb_service: KnowledgeBaseService,
        config: Optional[Settings] = None,
        ledger: Optional[CredentialLedger] = None,
    ):
        self.client = client
        self.kb_service = kb_service
        self._settings = config or default_settings
        self.ledger = ledger or CredentialLedger()
        self._project_id: Optional[str] = self._settings.project_id

    # ── Generic get-or-create ─────────────────────────────────────

    async def get_or_create(
        self,
        kind: str,
        name: str,
        find: Callable[[], Awaitable[Optional[T]]],
        create: Callable[[Any], Awaitable[T]],
        prepare: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> Tuple[T, bool]:
        """
        Return ``(resource, was_existing)``.

        ``prepare`` builds the creation request and may be slow (probes,
        discovery), so existence is checked again after it and right before
        ``create`` is called.
        """
        existing = await find()
        if existing is not None:
            logger.info(f"[Provisioner] Reusing existing {kind} '{name}'")
            return existing, True

        request = await prepare() if prepare else None

        existing = await find()
        if existing is not None:
            logger.info(f"[Provisioner] {kind} '{name}' appeared concurrently, reusing it")
            return existing, True

        logger.info(f"[Provisioner] Creating {kind} '{name}'")
        return await create(request), False

    # ── Lookups ───────────────────────────────────────────────────

    async def find_knowledge_base(self, name: str) -> Optional[KnowledgeBase]:
        return _exact(await self.client.list_knowledge_bases(), name)

    async def find_agent(self, name: str) -> Optional[Agent]:
        return _exact(await self.client.list_agents(), name)

    async def find_project(self, name: str) -> Optional[Project]:
        return _exact(await self.client.list_projects(), name)

    # ── Projects ──────────────────────────────────────────────────

    async def get_or_create_project(self, name: str) -> Tuple[Project, bool]:
        async def _create(_request: Any) -> Project:
            return await self.client.create_project(
                name, description="Knowledge bases and agents provisioned per website",
            )

        return await self.get_or_create("project", name, lambda: self.find_project(name), _create)

    async def resolve_project_id(self) -> Optional[str]:
        """Configured project id, or the id of the named project container."""
        if self._project_id:
            return self._project_id
        project, _ = await self.get_or_create_project(self._settings.project_name)
        self._project_id = project.id or None
        return self._project_id

    # ── Knowledge Bases ───────────────────────────────────────────

    async def get_or_create_knowledge_base(
        self,
        url: str,
        project_id: Optional[str] = None,
        region: Optional[str] = None,
    ) -> Tuple[KnowledgeBase, bool]:
        """
        Get or create the crawl knowledge base for a site and wait until its
        backing database exists. Raises ProvisioningTimeout when it does not
        appear in time.
        """
        name = derive_resource_name(url, KnowledgeBaseKind.CRAWL)
        domain = derive_key(url)

        async def _prepare() -> Dict[str, Any]:
            plan = await self.kb_service.probe_sitemap(site_url(domain))
            database_id = await self.kb_service.resolve_database_id()
            return self.kb_service.build_crawl_request(name, plan, project_id, database_id, region)

        async def _create(body: Dict[str, Any]) -> KnowledgeBase:
            try:
                return await self.client.create_knowledge_base(body)
            except GradientAPIError as e:
                if e.is_database_not_found:
                    self.kb_service.forget_database_id()
                    raise ProvisioningError(
                        f"Knowledge base creation failed: vector database "
                        f"{body.get('database_id')} does not exist. Unset DO_DATABASE_ID to let "
                        f"the platform auto-provision one, or set it to a valid database id."
                    ) from e
                raise

        kb, existing = await self.get_or_create(
            "knowledge base", name, lambda: self.find_knowledge_base(name), _create, _prepare,
        )
        if not existing or not kb.database_id:
            kb = await self.kb_service.wait_for_database(kb.uuid)
        return kb, existing

    async def rollback_knowledge_base(self, kb_id: str) -> bool:
        """Delete a freshly created knowledge base. Failures are logged, never raised."""
        try:
            await self.client.delete_knowledge_base(kb_id)
            logger.info(f"[Provisioner] Rolled back knowledge base {kb_id}")
            return True
        except Exception as e:
            logger.error(f"[Provisioner] Rollback of knowledge base {kb_id} failed: {e}")
            return False

    async def ensure_indexing(self, kb: KnowledgeBase) -> bool:
        """Start indexing unless the knowledge base already has a job."""
        if kb.indexing_status != IndexingJobStatus.NONE:
            return False
        return await self.kb_service.start_indexing(kb.uuid)

    # ── Agents ────────────────────────────────────────────────────

    async def get_or_create_agent(self, domain: str, kb: KnowledgeBase) -> Tuple[Agent, bool]:
        """
        The agent is created in the knowledge base's project and region;
        the platform rejects links across either.
        """
        name = agent_name(domain, self._settings.agent_name_prefix)

        async def _create(_request: Any) -> Agent:
            body: Dict[str, Any] = {
                "name": name,
                "model_uuid": self._settings.llm_model_uuid,
                "region": kb.region or self._settings.region,
                "knowledge_base_ids": [kb.uuid],
                "instruction": default_instruction(domain),
                "description": f"Support assistant for {domain}",
            }
            if kb.project_id:
                body["project_id"] = kb.project_id
            logger.info(
                f"[Provisioner] Agent request: project={kb.project_id} region={body['region']} "
                f"knowledge_bases=1"
            )
            try:
                return await self.client.create_agent(body)
            except GradientAPIError as e:
                if e.is_permission_denied:
                    raise ProvisioningError(
                        f"Agent creation was denied. Check that DO_API_TOKEN may create agents in "
                        f"project {kb.project_id or '(default)'} and region {body['region']}."
                    ) from e
                raise

        return await self.get_or_create("agent", name, lambda: self.find_agent(name), _create)

    async def set_visibility(self, agent_id: str, public: bool) -> Agent:
        visibility = VISIBILITY_PUBLIC if public else VISIBILITY_PRIVATE
        agent = await self.client.set_visibility(agent_id, visibility)
        logger.info(f"[Provisioner] Agent {agent_id} visibility set to {visibility}")
        return agent

    # ── Credentials ───────────────────────────────────────────────

    async def issue_credential(self, agent_id: str, domain: str) -> Optional[str]:
        """Create a new API key for the agent and hand its secret out once."""
        credential = await self.client.create_api_key(
            agent_id, f"{slugify(domain)}-key-{int(time.time())}",
        )
        entry = self.ledger.record(agent_id, credential)
        logger.info(f"[Provisioner] Issued credential {entry.credential_id} for agent {agent_id}")
        return self.ledger.consume(entry.credential_id)
