"""
Site Agent Orchestrator — FastAPI server.

    uvicorn siteagent.api.server:app
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from siteagent import __version__
from siteagent.api.routes import register_site_agent_routes
from siteagent.config.settings import settings
from siteagent.orchestrator.orchestrator import SiteAgentOrchestrator

logger = logging.getLogger(__name__)


def create_app(orchestrator: Optional[SiteAgentOrchestrator] = None) -> FastAPI:
    orchestrator = orchestrator or SiteAgentOrchestrator(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"[SiteAgent] Starting (platform={settings.api_base}, region={settings.region})")
        if not settings.api_token:
            logger.warning("[SiteAgent] DO_API_TOKEN is not set; platform calls will fail")
        yield
        await orchestrator.close()
        logger.info("[SiteAgent] Shutdown complete")

    app = FastAPI(
        title="Site Agent Orchestrator",
        description="Provision and maintain a support agent and knowledge base per website.",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.orchestrator = orchestrator

    @app.get("/health", tags=["System"])
    async def health():
        return {
            "status": "ok",
            "version": __version__,
            "fallback_enabled": orchestrator.monitor.enabled,
            **orchestrator.get_stats(),
        }

    register_site_agent_routes(app, orchestrator)
    return app


logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
app = create_app()
