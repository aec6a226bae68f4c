"""
Gradient Client — async bridge to the managed AI platform's HTTP API.
Handles knowledge base, agent, API key, indexing job and project calls,
plus the agent's own chat endpoint. Every call goes through the resilient
caller; creation calls and polling calls use different retry budgets.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from siteagent.config.settings import Settings, settings as default_settings
from siteagent.errors import ConfigurationError
from siteagent.gradient.errors import GradientAPIError, raise_for_error
from siteagent.gradient.models import (
    AccessCredential,
    Agent,
    IndexingJob,
    KnowledgeBase,
    Project,
)
from siteagent.gradient.retry import ResilientCaller, RetryPolicy

logger = logging.getLogger(__name__)

VISIBILITY_PUBLIC = "VISIBILITY_PUBLIC"
VISIBILITY_PRIVATE = "VISIBILITY_PRIVATE"

_PAGE_SIZE = 100
_MAX_PAGES = 50


class GradientClient:
    """Client for the platform's gen-ai resources."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=None,
    ):
        self._settings = config or default_settings
        self.base_url = self._settings.api_base.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self._settings.http_timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )
        # Presigned uploads and agent endpoints must not receive the platform token
        self._external = httpx.AsyncClient(
            timeout=self._settings.http_timeout,
            transport=transport,
        )
        self._caller = ResilientCaller(self._client, tag="Gradient", sleep=sleep)
        self._external_caller = ResilientCaller(self._external, tag="Gradient", sleep=sleep)
        self.create_policy = RetryPolicy(
            max_retries=self._settings.create_retry_max,
            initial_delay=self._settings.create_retry_initial_delay,
            max_delay=self._settings.create_retry_max_delay,
        )
        self.poll_policy = RetryPolicy(
            max_retries=self._settings.poll_retry_max,
            initial_delay=self._settings.poll_retry_initial_delay,
            max_delay=self._settings.poll_retry_max_delay,
        )
        logger.info(f"[Gradient] Initialized with base_url={self.base_url}")

    # ── Plumbing ──────────────────────────────────────────────────

    def _auth_headers(self) -> Dict[str, str]:
        token = self._settings.api_token
        if not token:
            raise ConfigurationError("DO_API_TOKEN environment variable is not set")
        return {"Authorization": f"Bearer {token}"}

    async def _request(
        self,
        method: str,
        path: str,
        policy: RetryPolicy,
        context: str,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        headers = {**kwargs.pop("headers", {}), **self._auth_headers()}
        resp = await self._caller.call(method, path, policy, headers=headers, **kwargs)
        raise_for_error(resp, context=context)
        if not resp.content:
            return {}
        return resp.json()

    async def _list(self, path: str, key: str, context: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        for page in range(1, _MAX_PAGES + 1):
            data = await self._request(
                "GET", path, self.poll_policy, context,
                params={"page": page, "per_page": _PAGE_SIZE},
            )
            items.extend(data.get(key) or [])
            next_page = ((data.get("links") or {}).get("pages") or {}).get("next")
            if not next_page:
                break
        return items

    # ── Knowledge Bases ───────────────────────────────────────────

    async def list_knowledge_bases(self) -> List[KnowledgeBase]:
        rows = await self._list("/gen-ai/knowledge_bases", "knowledge_bases", "List knowledge bases")
        return [KnowledgeBase.from_api(r) for r in rows]

    async def get_knowledge_base(self, kb_id: str) -> KnowledgeBase:
        data = await self._request(
            "GET", f"/gen-ai/knowledge_bases/{kb_id}", self.poll_policy, "Get knowledge base",
        )
        return KnowledgeBase.from_api(data.get("knowledge_base") or {})

    async def create_knowledge_base(self, body: Dict[str, Any]) -> KnowledgeBase:
        data = await self._request(
            "POST", "/gen-ai/knowledge_bases", self.create_policy,
            "Knowledge base creation failed", json=body,
        )
        kb = KnowledgeBase.from_api(data.get("knowledge_base") or {})
        logger.info(f"[Gradient] Created knowledge base: {kb.uuid} ({kb.name})")
        return kb

    async def delete_knowledge_base(self, kb_id: str) -> None:
        await self._request(
            "DELETE", f"/gen-ai/knowledge_bases/{kb_id}", self.create_policy,
            "Delete knowledge base",
        )
        logger.info(f"[Gradient] Deleted knowledge base: {kb_id}")

    async def add_data_source(self, kb_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._request(
            "POST", f"/gen-ai/knowledge_bases/{kb_id}/data_sources", self.create_policy,
            "Add data source", json={"knowledge_base_uuid": kb_id, **body},
        )
        return data.get("knowledge_base_data_source") or {}

    async def create_presigned_upload(self, filename: str, size: int) -> Dict[str, Any]:
        data = await self._request(
            "POST", "/gen-ai/knowledge_bases/data_sources/file_upload_presigned_urls",
            self.create_policy, "Create upload URL",
            json={"files": [{"file_name": filename, "file_size": str(size)}]},
        )
        uploads = data.get("uploads") or []
        if not uploads:
            raise GradientAPIError(500, "No presigned upload URL returned", context="Create upload URL")
        return uploads[0]

    async def put_presigned(self, upload_url: str, payload: bytes, content_type: str) -> None:
        resp = await self._external_caller.call(
            "PUT", upload_url, self.create_policy,
            content=payload, headers={"Content-Type": content_type},
        )
        raise_for_error(resp, context="Upload document")

    # ── Indexing Jobs ─────────────────────────────────────────────

    async def start_indexing_job(
        self,
        kb_id: str,
        data_source_ids: Optional[List[str]] = None,
    ) -> Optional[IndexingJob]:
        """
        Start indexing a knowledge base. An indexing job that is already
        running is not an error: None is returned and nothing is raised.
        """
        body: Dict[str, Any] = {"knowledge_base_uuid": kb_id}
        if data_source_ids:
            body["data_source_uuids"] = data_source_ids
        try:
            data = await self._request(
                "POST", "/gen-ai/indexing_jobs", self.create_policy,
                "Failed to start indexing", json=body,
            )
        except GradientAPIError as e:
            if e.is_indexing_conflict:
                logger.warning(f"[Gradient] Indexing already running for {kb_id}, not starting another")
                return None
            raise
        logger.info(f"[Gradient] Indexing started for knowledge base {kb_id}")
        return IndexingJob.from_api(data.get("job"))

    async def get_indexed_item_counts(self, job_id: str) -> Dict[str, int]:
        """Per-datasource indexed item counts for an indexing job."""
        data = await self._request(
            "GET", f"/gen-ai/indexing_jobs/{job_id}/data_sources", self.poll_policy,
            "List indexed data sources",
        )
        counts: Dict[str, int] = {}
        for row in data.get("indexed_data_sources") or []:
            ds_id = row.get("data_source_uuid") or row.get("uuid") or ""
            try:
                counts[ds_id] = int(row.get("indexed_item_count") or 0)
            except (TypeError, ValueError):
                counts[ds_id] = 0
        return counts

    # ── Agents ────────────────────────────────────────────────────

    async def list_agents(self) -> List[Agent]:
        rows = await self._list("/gen-ai/agents", "agents", "List agents")
        return [Agent.from_api(r) for r in rows]

    async def get_agent(self, agent_id: str) -> Agent:
        data = await self._request(
            "GET", f"/gen-ai/agents/{agent_id}", self.poll_policy, "Get agent",
        )
        return Agent.from_api(data.get("agent") or {})

    async def create_agent(self, body: Dict[str, Any]) -> Agent:
        data = await self._request(
            "POST", "/gen-ai/agents", self.create_policy, "Agent creation failed", json=body,
        )
        agent = Agent.from_api(data.get("agent") or {})
        logger.info(f"[Gradient] Created agent: {agent.uuid} ({agent.name})")
        return agent

    async def update_agent(self, agent_id: str, updates: Dict[str, Any]) -> Agent:
        data = await self._request(
            "PUT", f"/gen-ai/agents/{agent_id}", self.create_policy, "Update agent",
            json={"uuid": agent_id, **updates},
        )
        return Agent.from_api(data.get("agent") or {})

    async def attach_knowledge_base(self, agent_id: str, kb_id: str) -> Agent:
        data = await self._request(
            "POST", f"/gen-ai/agents/{agent_id}/knowledge_bases/{kb_id}", self.create_policy,
            "Attach knowledge base",
        )
        return Agent.from_api(data.get("agent") or {})

    async def set_visibility(self, agent_id: str, visibility: str) -> Agent:
        data = await self._request(
            "PUT", f"/gen-ai/agents/{agent_id}/deployment_visibility", self.create_policy,
            "Update agent visibility", json={"uuid": agent_id, "visibility": visibility},
        )
        return Agent.from_api(data.get("agent") or {})

    # ── API Keys ──────────────────────────────────────────────────

    async def create_api_key(self, agent_id: str, name: str) -> AccessCredential:
        data = await self._request(
            "POST", f"/gen-ai/agents/{agent_id}/api_keys", self.create_policy,
            "Failed to create API key", json={"agent_uuid": agent_id, "name": name},
        )
        return AccessCredential.from_api(data)

    async def list_api_keys(self, agent_id: str) -> List[AccessCredential]:
        rows = await self._list(f"/gen-ai/agents/{agent_id}/api_keys", "api_key_infos", "List API keys")
        return [AccessCredential.from_api(r) for r in rows]

    # ── Projects ──────────────────────────────────────────────────

    async def list_projects(self) -> List[Project]:
        rows = await self._list("/projects", "projects", "List projects")
        return [Project.from_api(r) for r in rows]

    async def create_project(self, name: str, description: str = "") -> Project:
        data = await self._request(
            "POST", "/projects", self.create_policy, "Create project",
            json={
                "name": name,
                "purpose": "Service or API",
                "description": description,
                "environment": "Production",
            },
        )
        project = Project.from_api(data.get("project") or {})
        logger.info(f"[Gradient] Created project: {project.id} ({project.name})")
        return project

    # ── Agent Endpoint (inference) ────────────────────────────────

    async def ask_agent(self, endpoint: str, access_key: str, question: str) -> str:
        """Send one non-streaming chat message to an agent and return the reply text."""
        url = f"{endpoint.rstrip('/')}/api/v1/chat/completions"
        resp = await self._external_caller.call(
            "POST", url, self.poll_policy,
            headers={"Authorization": f"Bearer {access_key}"},
            json={
                "messages": [{"role": "user", "content": question}],
                "stream": False,
                "include_retrieval_info": False,
            },
            timeout=120.0,
        )
        raise_for_error(resp, context="Agent chat")
        choices = resp.json().get("choices") or []
        if not choices:
            return ""
        return (choices[0].get("message") or {}).get("content") or ""

    async def close(self):
        """Close the HTTP clients."""
        await self._client.aclose()
        await self._external.aclose()
