"""Content quality monitoring and fallback enrichment."""
from .monitor import AUTH_WALL_KEYWORDS, ContentQualityMonitor, QualityState, classify_response

__all__ = ["AUTH_WALL_KEYWORDS", "ContentQualityMonitor", "QualityState", "classify_response"]
