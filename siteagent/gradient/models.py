"""
Canonical resource models for the managed AI platform.

The platform is not consistent about field names across endpoint versions
(knowledge base ids, agent endpoints, credential secrets). Every ``from_api``
constructor below translates the raw JSON into one internal shape so the
rest of the code never checks which variant it got.
"""

from typing import Any, Dict, List, Optional
from enum import Enum
from pydantic import BaseModel, Field


class IndexingJobStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    NO_CHANGES = "no_changes"
    FAILED = "failed"
    UNKNOWN = "unknown"


_INDEXING_STATUS_MAP: Dict[str, IndexingJobStatus] = {
    "INDEX_JOB_STATUS_UNKNOWN": IndexingJobStatus.UNKNOWN,
    "INDEX_JOB_STATUS_PENDING": IndexingJobStatus.PENDING,
    "INDEX_JOB_STATUS_RUNNING": IndexingJobStatus.RUNNING,
    "INDEX_JOB_STATUS_IN_PROGRESS": IndexingJobStatus.RUNNING,
    "INDEX_JOB_STATUS_COMPLETED": IndexingJobStatus.COMPLETED,
    "INDEX_JOB_STATUS_PARTIAL": IndexingJobStatus.COMPLETED,
    "INDEX_JOB_STATUS_NO_CHANGES": IndexingJobStatus.NO_CHANGES,
    "INDEX_JOB_STATUS_FAILED": IndexingJobStatus.FAILED,
    "INDEX_JOB_STATUS_CANCELLED": IndexingJobStatus.FAILED,
}

# Deployment states that will never produce an endpoint without intervention
FAILED_DEPLOYMENT_STATES = {
    "STATUS_FAILED",
    "STATUS_UNDEPLOYMENT_FAILED",
    "STATUS_DEPLOYMENT_FAILED",
}


def parse_indexing_status(raw: Optional[str]) -> IndexingJobStatus:
    if not raw:
        return IndexingJobStatus.NONE
    return _INDEXING_STATUS_MAP.get(raw.upper(), IndexingJobStatus.UNKNOWN)


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class IndexingJob(BaseModel):
    uuid: str = ""
    status: IndexingJobStatus = IndexingJobStatus.NONE
    raw_status: str = ""
    phase: str = ""
    tokens: int = 0
    total_datasources: int = 0
    completed_datasources: int = 0
    # data source uuid -> indexed item count, filled from the job's data source listing
    indexed_item_counts: Dict[str, int] = Field(default_factory=dict)

    @classmethod
    def from_api(cls, data: Optional[Dict[str, Any]]) -> Optional["IndexingJob"]:
        if not data:
            return None
        raw_status = data.get("status") or ""
        return cls(
            uuid=data.get("uuid") or data.get("id") or "",
            status=parse_indexing_status(raw_status),
            raw_status=raw_status,
            phase=data.get("phase") or "",
            tokens=_as_int(data.get("tokens") or data.get("total_tokens")),
            total_datasources=_as_int(data.get("total_datasources")),
            completed_datasources=_as_int(data.get("completed_datasources")),
        )

    @property
    def indexed_items(self) -> int:
        return sum(self.indexed_item_counts.values())


class KnowledgeBase(BaseModel):
    uuid: str
    name: str
    region: str = ""
    project_id: str = ""
    database_id: Optional[str] = None
    embedding_model_uuid: str = ""
    document_count: int = 0
    created_at: Optional[str] = None
    last_indexing_job: Optional[IndexingJob] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "KnowledgeBase":
        return cls(
            uuid=data.get("uuid") or data.get("id") or "",
            name=data.get("name") or "",
            region=data.get("region") or "",
            project_id=data.get("project_id") or "",
            database_id=data.get("database_id") or None,
            embedding_model_uuid=data.get("embedding_model_uuid") or "",
            document_count=_as_int(data.get("document_count")),
            created_at=data.get("created_at"),
            last_indexing_job=IndexingJob.from_api(data.get("last_indexing_job")),
        )

    @property
    def indexing_status(self) -> IndexingJobStatus:
        if self.last_indexing_job is None:
            return IndexingJobStatus.NONE
        return self.last_indexing_job.status


def normalize_knowledge_base_ids(data: Dict[str, Any]) -> List[str]:
    """Collect attached knowledge base ids from whichever field the API used."""
    for key in ("knowledge_base_ids", "knowledge_base_uuids"):
        ids = data.get(key)
        if ids:
            return _dedupe([str(i) for i in ids])
    if data.get("knowledge_base_uuid"):
        return [str(data["knowledge_base_uuid"])]
    embedded = data.get("knowledge_bases") or []
    return _dedupe([
        str(kb.get("uuid") or kb.get("id"))
        for kb in embedded
        if isinstance(kb, dict) and (kb.get("uuid") or kb.get("id"))
    ])


def _dedupe(ids: List[str]) -> List[str]:
    seen = set()
    ordered = []
    for i in ids:
        if i not in seen:
            seen.add(i)
            ordered.append(i)
    return ordered


class Agent(BaseModel):
    uuid: str
    name: str
    region: str = ""
    project_id: str = ""
    endpoint: Optional[str] = None
    deployment_status: str = ""
    knowledge_base_ids: List[str] = Field(default_factory=list)
    visibility: str = ""
    instruction: str = ""
    created_at: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Agent":
        deployment = data.get("deployment") or {}
        return cls(
            uuid=data.get("uuid") or data.get("id") or "",
            name=data.get("name") or "",
            region=data.get("region") or "",
            project_id=data.get("project_id") or "",
            endpoint=data.get("endpoint") or deployment.get("url") or None,
            deployment_status=deployment.get("status") or data.get("status") or "",
            knowledge_base_ids=normalize_knowledge_base_ids(data),
            visibility=deployment.get("visibility") or data.get("visibility") or "",
            instruction=data.get("instruction") or "",
            created_at=data.get("created_at"),
        )

    @property
    def deployment_failed(self) -> bool:
        return self.deployment_status.upper() in FAILED_DEPLOYMENT_STATES


class AccessCredential(BaseModel):
    """
    Agent API key. The platform only returns ``secret`` in the creation
    response; listings of existing keys come back without it.
    """
    uuid: str = ""
    name: str = ""
    secret: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "AccessCredential":
        info = (
            data.get("api_key_info")
            or data.get("access_key")
            or data.get("api_key")
            or data
        )
        if isinstance(info, str):
            return cls(secret=info)
        secret = info.get("secret_key") or info.get("key") or info.get("api_key")
        return cls(
            uuid=info.get("uuid") or info.get("id") or "",
            name=info.get("name") or "",
            secret=secret or None,
            created_at=info.get("created_at"),
        )


class Project(BaseModel):
    id: str
    name: str
    is_default: bool = False

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Project":
        return cls(
            id=data.get("id") or data.get("uuid") or "",
            name=data.get("name") or "",
            is_default=bool(data.get("is_default", False)),
        )
