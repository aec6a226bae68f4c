"""Knowledge base lifecycle on the managed AI platform."""
from .service import CrawlPlan, KnowledgeBaseService, Readiness

__all__ = ["CrawlPlan", "KnowledgeBaseService", "Readiness"]
