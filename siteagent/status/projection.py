"""
Status Projection — an explicit state machine from remote state to one of
creating / indexing / ready / error.

The remote state is first reduced to three small enums (indexing phase,
deployment phase, quality cycle phase). The rules below are then evaluated
in order; the first match wins. Nothing here is cached: callers build a
fresh snapshot on every poll.

    1. error     indexing FAILED or deployment FAILED
    2. indexing  indexing ACTIVE
    3. indexing  quality CHECKING or FALLBACK_RUNNING
    4. ready     indexing DONE and deployment LIVE
    5. creating  everything else
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel

from siteagent.gradient.models import Agent, IndexingJobStatus, KnowledgeBase
from siteagent.quality.monitor import QualityState


class LifecycleStatus(str, Enum):
    CREATING = "creating"
    INDEXING = "indexing"
    READY = "ready"
    ERROR = "error"


class IndexingState(str, Enum):
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    DONE = "done"
    FAILED = "failed"


class DeploymentState(str, Enum):
    PENDING = "pending"
    LIVE = "live"
    FAILED = "failed"


_INDEXING_STATES = {
    IndexingJobStatus.NONE: IndexingState.NOT_STARTED,
    IndexingJobStatus.UNKNOWN: IndexingState.NOT_STARTED,
    IndexingJobStatus.PENDING: IndexingState.ACTIVE,
    IndexingJobStatus.RUNNING: IndexingState.ACTIVE,
    IndexingJobStatus.COMPLETED: IndexingState.DONE,
    IndexingJobStatus.NO_CHANGES: IndexingState.DONE,
    IndexingJobStatus.FAILED: IndexingState.FAILED,
}


def indexing_state(status: IndexingJobStatus) -> IndexingState:
    return _INDEXING_STATES[status]


def deployment_state(endpoint: Optional[str], failed: bool) -> DeploymentState:
    if failed:
        return DeploymentState.FAILED
    return DeploymentState.LIVE if endpoint else DeploymentState.PENDING


class RemoteSnapshot(BaseModel):
    indexing: IndexingState
    deployment: DeploymentState
    quality: QualityState = QualityState.DISABLED

    @classmethod
    def capture(
        cls,
        kb: KnowledgeBase,
        agent: Agent,
        quality: QualityState = QualityState.DISABLED,
    ) -> "RemoteSnapshot":
        return cls(
            indexing=indexing_state(kb.indexing_status),
            deployment=deployment_state(agent.endpoint, agent.deployment_failed),
            quality=quality,
        )


class StatusProjection(BaseModel):
    status: LifecycleStatus
    message: Optional[str] = None


_QUALITY_MESSAGES = {
    QualityState.CHECKING: "Verifying content quality...",
    QualityState.FALLBACK_RUNNING: "Re-acquiring website content with enhanced scraping...",
}


def project_status(snapshot: RemoteSnapshot) -> StatusProjection:
    if snapshot.indexing == IndexingState.FAILED:
        return StatusProjection(status=LifecycleStatus.ERROR, message="Indexing failed")
    if snapshot.deployment == DeploymentState.FAILED:
        return StatusProjection(status=LifecycleStatus.ERROR, message="Agent deployment failed")
    if snapshot.indexing == IndexingState.ACTIVE:
        return StatusProjection(status=LifecycleStatus.INDEXING, message="Indexing website content...")
    if snapshot.quality in _QUALITY_MESSAGES:
        return StatusProjection(status=LifecycleStatus.INDEXING, message=_QUALITY_MESSAGES[snapshot.quality])
    if snapshot.indexing == IndexingState.DONE and snapshot.deployment == DeploymentState.LIVE:
        return StatusProjection(status=LifecycleStatus.READY)
    if snapshot.indexing == IndexingState.NOT_STARTED:
        return StatusProjection(status=LifecycleStatus.CREATING, message="Waiting for indexing to start")
    return StatusProjection(status=LifecycleStatus.CREATING, message="Deploying agent...")
