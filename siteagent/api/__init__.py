"""HTTP surface for the site agent orchestrator."""
from .routes import register_site_agent_routes

__all__ = ["register_site_agent_routes"]
