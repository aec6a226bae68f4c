"""
Site agent API routes — create or reuse an agent for a website, poll its
status, repair attachments, re-index, and list, inspect or update agents.

Response bodies use camelCase keys (agentId, knowledgeBaseId, ...).
"""
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from siteagent.errors import ConfigurationError, InvalidUrlError, ProvisioningError, ResourceNotFoundError
from siteagent.gradient.errors import GradientAPIError
from siteagent.orchestrator.orchestrator import SiteAgentOrchestrator

logger = logging.getLogger(__name__)


class CreateAgentRequest(BaseModel):
    url: str


class UpdateAgentRequest(BaseModel):
    instruction: Optional[str] = None
    public: Optional[bool] = None


def _platform_error(e: GradientAPIError) -> HTTPException:
    if e.is_not_found:
        return HTTPException(404, e.message)
    return HTTPException(502, f"Platform error: {e.message}")


def register_site_agent_routes(app: FastAPI, orchestrator: SiteAgentOrchestrator):
    """Register site agent routes on the FastAPI app."""

    @app.post("/agents", tags=["Agents"])
    async def create_agent(req: CreateAgentRequest):
        try:
            result = await orchestrator.create_or_reuse(req.url)
        except InvalidUrlError as e:
            raise HTTPException(400, str(e))
        except (ConfigurationError, ProvisioningError, GradientAPIError) as e:
            logger.error(f"[Provisioner] Create for {req.url} failed: {e}")
            raise HTTPException(500, str(e))
        return result.model_dump(by_alias=True, mode="json")

    @app.get("/agent-status", tags=["Agents"])
    async def agent_status(
        agent_id: str = Query(..., alias="agentId"),
        kb_id: str = Query(..., alias="kbId"),
        url: Optional[str] = Query(None),
    ):
        try:
            result = await orchestrator.poll_status(agent_id, kb_id, url)
        except GradientAPIError as e:
            raise _platform_error(e)
        return result.model_dump(by_alias=True, mode="json")

    @app.post("/agents/{agent_id}/repair", tags=["Agents"])
    async def repair_agent(agent_id: str):
        try:
            result = await orchestrator.repair(agent_id)
        except ProvisioningError as e:
            raise HTTPException(400, str(e))
        except GradientAPIError as e:
            raise _platform_error(e)
        body = result.model_dump(mode="json")
        body["message"] = result.summary()
        return body

    @app.post("/agents/{agent_id}/reindex", tags=["Agents"])
    async def reindex_agent(agent_id: str):
        try:
            result = await orchestrator.reindex(agent_id)
        except ResourceNotFoundError as e:
            raise HTTPException(404, str(e))
        except GradientAPIError as e:
            raise _platform_error(e)
        return result.model_dump(by_alias=True, mode="json")

    @app.get("/agents", tags=["Agents"])
    async def list_agents():
        try:
            agents = await orchestrator.list_agents()
        except GradientAPIError as e:
            raise _platform_error(e)
        return {"agents": [a.model_dump(by_alias=True, mode="json") for a in agents]}

    @app.get("/agents/{agent_id}", tags=["Agents"])
    async def get_agent(
        agent_id: str,
        include_access_key: bool = Query(False, alias="includeAccessKey"),
    ):
        try:
            detail = await orchestrator.get_agent_detail(agent_id, include_access_key=include_access_key)
        except GradientAPIError as e:
            raise _platform_error(e)
        return detail.model_dump(by_alias=True, mode="json")

    @app.patch("/agents/{agent_id}", tags=["Agents"])
    async def update_agent(agent_id: str, req: UpdateAgentRequest):
        try:
            detail = await orchestrator.update_agent(agent_id, instruction=req.instruction, public=req.public)
        except ValueError as e:
            raise HTTPException(400, str(e))
        except GradientAPIError as e:
            raise _platform_error(e)
        return detail.model_dump(by_alias=True, mode="json")
