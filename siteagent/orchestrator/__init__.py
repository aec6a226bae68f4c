"""Site agent orchestration — the interface the UI/API layer consumes."""
from .orchestrator import (
    AgentDetail,
    AgentSummary,
    CreateResult,
    KnowledgeBaseInfo,
    ReindexEntry,
    ReindexResult,
    SiteAgentOrchestrator,
    StatusResult,
)

__all__ = [
    "AgentDetail", "AgentSummary", "CreateResult", "KnowledgeBaseInfo",
    "ReindexEntry", "ReindexResult", "SiteAgentOrchestrator", "StatusResult",
]
