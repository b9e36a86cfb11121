"""Hybrid snapshot and delta history for collaborative graph documents.

Pure building blocks live here: domain models, the delta engine, retention
policies and the undo cache. The stateful pieces (HistoryEngine,
RevertCoordinator, EventSyncQueue, CleanupJob) are imported from their own
modules.
"""

from __future__ import annotations

from mindmap_history.history.cache import HistoryCache
from mindmap_history.history.delta import apply_delta, compute_delta, states_equal
from mindmap_history.history.models import (
    Delta,
    EntityChange,
    Event,
    GraphEdge,
    GraphNode,
    GraphState,
    HistoryPoint,
    PlanTier,
    Snapshot,
)
from mindmap_history.history.retention import RetentionPolicy, policy_for, should_snapshot

__all__ = [
    "Delta",
    "EntityChange",
    "Event",
    "GraphEdge",
    "GraphNode",
    "GraphState",
    "HistoryCache",
    "HistoryPoint",
    "PlanTier",
    "RetentionPolicy",
    "Snapshot",
    "apply_delta",
    "compute_delta",
    "policy_for",
    "should_snapshot",
    "states_equal",
]
