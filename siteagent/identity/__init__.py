"""Deterministic site identity — LogicalKey and resource names derived from a URL."""
from .naming import (
    KnowledgeBaseKind,
    agent_name,
    derive_key,
    derive_resource_name,
    domain_from_agent_name,
    expected_kb_names,
    kb_kind_from_name,
    normalize_url,
    site_url,
    slugify,
)

__all__ = [
    "KnowledgeBaseKind", "agent_name", "derive_key", "derive_resource_name",
    "domain_from_agent_name", "expected_kb_names", "kb_kind_from_name",
    "normalize_url", "site_url", "slugify",
]
