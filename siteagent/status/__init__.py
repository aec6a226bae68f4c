"""Coarse lifecycle status for polling consumers."""
from .projection import (
    DeploymentState,
    IndexingState,
    LifecycleStatus,
    RemoteSnapshot,
    StatusProjection,
    indexing_state,
    project_status,
)

__all__ = [
    "DeploymentState", "IndexingState", "LifecycleStatus", "RemoteSnapshot",
    "StatusProjection", "indexing_state", "project_status",
]
