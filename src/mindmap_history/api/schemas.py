"""Pydantic request and response schemas for the history API.

Bodies and responses are camelCase on the wire and snake_case in Python;
every schema accepts either spelling on input. Graph payloads reuse the
domain GraphNode and GraphEdge models so that clients send exactly what the
canvas holds.

Resources:
- HistoryPoint — list items (metadata only, never payloads)
- Snapshot — manual snapshot creation and the quota warning it returns
- Revert — server-side restore to a snapshot or an event
- Cleanup — on-demand retention enforcement report
- Quota / CurrentPointer — supplementary reads
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from mindmap_history.history.models import (
    CurrentPointer,
    DeltaOperation,
    EntityScope,
    GraphEdge,
    GraphNode,
    HistoryPoint,
    PointKind,
    from_ms,
)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# History list
# ---------------------------------------------------------------------------


class HistoryPointResponse(_CamelModel):
    """One entry of a document's history list."""

    id: str = Field(description="Snapshot or event id")
    kind: PointKind = Field(description="snapshot | event")
    action_name: str = Field(description="Label of the mutation that produced the point")
    actor_id: str = Field(description="User who produced the point")
    timestamp: datetime = Field(description="When the point was recorded (UTC)")
    node_count: int = Field(description="Nodes in the graph at this point")
    edge_count: int = Field(description="Edges in the graph at this point")
    is_major: bool = Field(description="True for manual checkpoints")
    snapshot_id: str | None = Field(default=None, description="Anchor snapshot (events only)")
    snapshot_index: int | None = Field(default=None, description="Position of the snapshot in the document")
    event_index: int | None = Field(default=None, description="Position of the event in its chain")
    size_bytes: int | None = Field(default=None, description="Serialized state size (snapshots only)")
    operation: DeltaOperation | None = Field(default=None, description="add | update | delete | batch")
    entity_scope: EntityScope | None = Field(default=None, description="node | edge | mixed")
    summary: str | None = Field(default=None, description="Human-readable change summary (events only)")

    @classmethod
    def from_point(cls, point: HistoryPoint) -> "HistoryPointResponse":
        return cls(
            id=point.id,
            kind=point.kind,
            action_name=point.action_name,
            actor_id=point.actor_id,
            timestamp=from_ms(point.timestamp),
            node_count=point.node_count,
            edge_count=point.edge_count,
            is_major=point.is_major,
            snapshot_id=point.snapshot_id if point.kind == PointKind.EVENT else None,
            snapshot_index=point.snapshot_index,
            event_index=point.event_index,
            size_bytes=point.size_bytes,
            operation=point.operation,
            entity_scope=point.entity_scope,
            summary=point.summary,
        )


class HistoryListResponse(_CamelModel):
    """Paginated history list, newest first."""

    items: list[HistoryPointResponse] = Field(description="History points in this page")
    total: int = Field(description="Total points matching the filters")
    has_more: bool = Field(description="True when another page exists after this one")


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


class SnapshotCreateRequest(_CamelModel):
    """Request body for persisting a full-state snapshot."""

    action_name: str = Field(
        description="Label of the mutation or checkpoint, e.g. addNode or checkpoint",
        min_length=1,
        max_length=120,
    )
    nodes: list[GraphNode] = Field(default_factory=list, description="Every node of the graph")
    edges: list[GraphEdge] = Field(default_factory=list, description="Every edge of the graph")
    is_major: bool = Field(
        default=False,
        description="Mark as a manual checkpoint. Requires a tier that allows manual checkpoints.",
    )
    snapshot_id: str | None = Field(
        default=None,
        description="Client-generated id. Re-sending the same id returns the first receipt.",
    )


class SnapshotCreateResponse(_CamelModel):
    """Receipt of a persisted snapshot."""

    snapshot_id: str = Field(description="Id of the persisted snapshot")
    snapshot_index: int = Field(description="Position of the snapshot in the document")
    quota_warning: bool = Field(description="True when the caller is near or over the storage quota")


# ---------------------------------------------------------------------------
# Revert
# ---------------------------------------------------------------------------


class RevertRequest(_CamelModel):
    """Request body for a server-side revert. Exactly one id must be given."""

    snapshot_id: str | None = Field(default=None, description="Target snapshot id")
    event_id: str | None = Field(default=None, description="Target event id")


class RevertResponse(_CamelModel):
    """State written to the document by a revert."""

    nodes: list[GraphNode] = Field(description="Nodes of the restored state")
    edges: list[GraphEdge] = Field(description="Edges of the restored state")
    snapshot_index: int = Field(description="Index of the anchor snapshot")
    event_index: int | None = Field(description="Index of the target event, null for a snapshot")


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------


class CleanupResponse(_CamelModel):
    """Outcome of one cleanup pass."""

    deleted_snapshots: int = Field(description="Snapshots removed")
    deleted_events: int = Field(description="Events removed, including orphans")
    execution_time_ms: int = Field(description="Wall time of the pass in milliseconds")


# ---------------------------------------------------------------------------
# Quota and current pointer
# ---------------------------------------------------------------------------


class QuotaResponse(_CamelModel):
    """Storage used by the caller's snapshots against their tier quota."""

    used_bytes: int = Field(description="Bytes of snapshot state charged to the caller")
    quota_bytes: int = Field(description="Storage quota of the caller's tier")
    warning: bool = Field(description="True at or above the warning ratio")
    exceeded: bool = Field(description="True when usage is above the quota")


class CurrentPointerResponse(_CamelModel):
    """Current history position of a document."""

    document_id: str = Field(description="Document id")
    snapshot_id: str = Field(description="Snapshot at or before the current position")
    event_id: str | None = Field(description="Event at the current position, if any")
    updated_by: str = Field(description="Actor who last moved the pointer")
    updated_at: datetime = Field(description="When the pointer last moved (UTC)")

    @classmethod
    def from_pointer(cls, pointer: CurrentPointer) -> "CurrentPointerResponse":
        return cls(
            document_id=pointer.document_id,
            snapshot_id=pointer.snapshot_id,
            event_id=pointer.event_id,
            updated_by=pointer.updated_by,
            updated_at=from_ms(pointer.updated_at),
        )


class ErrorResponse(BaseModel):
    """Body of every domain error response."""

    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable description")
