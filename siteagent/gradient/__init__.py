"""Managed AI platform access — resilient HTTP client, canonical models, API errors."""
from .client import GradientClient, VISIBILITY_PUBLIC, VISIBILITY_PRIVATE
from .errors import GradientAPIError
from .models import (
    AccessCredential, Agent, IndexingJob, IndexingJobStatus, KnowledgeBase, Project,
)
from .retry import CREATE_POLICY, POLL_POLICY, ResilientCaller, RetryPolicy

__all__ = [
    "GradientClient", "VISIBILITY_PUBLIC", "VISIBILITY_PRIVATE",
    "GradientAPIError",
    "AccessCredential", "Agent", "IndexingJob", "IndexingJobStatus", "KnowledgeBase", "Project",
    "CREATE_POLICY", "POLL_POLICY", "ResilientCaller", "RetryPolicy",
]
