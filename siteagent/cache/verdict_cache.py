"""
Quality verdict cache, keyed by knowledge base id.

Avoids re-probing an agent on every status poll. The entry for a knowledge
base is cleared once a fallback-enrichment cycle finishes so the enriched
content is checked once more.
"""

import logging
import time
from typing import Dict, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class QualityVerdict(BaseModel):
    is_low_quality: bool
    reason: str = ""
    matched_keywords: list = Field(default_factory=list)
    response_length: int = 0
    checked_at: float = Field(default_factory=time.time)


class VerdictCache:
    """Plain per-process map of kb_id -> QualityVerdict."""

    def __init__(self):
        self._verdicts: Dict[str, QualityVerdict] = {}

    def get(self, kb_id: str) -> Optional[QualityVerdict]:
        return self._verdicts.get(kb_id)

    def set(self, kb_id: str, verdict: QualityVerdict) -> None:
        self._verdicts[kb_id] = verdict

    def invalidate(self, kb_id: str) -> None:
        if self._verdicts.pop(kb_id, None) is not None:
            logger.info(f"[Quality] Cleared cached verdict for knowledge base {kb_id}")

    def __contains__(self, kb_id: str) -> bool:
        return kb_id in self._verdicts

    def __len__(self) -> int:
        return len(self._verdicts)
