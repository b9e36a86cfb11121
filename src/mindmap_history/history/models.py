"""Domain types for document history.

Graph entities, deltas, and history points are immutable pydantic models.
They serialize to camelCase for the API and accept either camelCase or
snake_case on input.

A history point is either a Snapshot (full graph state) or an Event (a delta
from the point before it, anchored to a snapshot's event chain). Points are
totally ordered per document by ``(snapshot_index, event_index)``; a snapshot
sorts before every event in its own chain.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    """Return the current Unix epoch time in milliseconds (UTC)."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def to_ms(dt: datetime) -> int:
    """Convert a datetime to Unix epoch milliseconds. Naive values are treated as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def from_ms(timestamp_ms: int) -> datetime:
    """Convert Unix epoch milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)


class _DomainModel(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


class EntityKind(str, Enum):
    NODE = "node"
    EDGE = "edge"


class EntityScope(str, Enum):
    NODE = "node"
    EDGE = "edge"
    MIXED = "mixed"


class DeltaOperation(str, Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"
    BATCH = "batch"


class PointKind(str, Enum):
    SNAPSHOT = "snapshot"
    EVENT = "event"


# ---------------------------------------------------------------------------
# Graph entities
# ---------------------------------------------------------------------------


VOLATILE_FIELDS: frozenset[str] = frozenset({"selected", "dragging", "measured"})


class Position(_DomainModel):
    x: float = 0.0
    y: float = 0.0


class GraphNode(_DomainModel):
    """A node of the document graph.

    ``selected``, ``dragging`` and ``measured`` are transient UI state. They
    travel with the entity but are ignored by diffing and equality checks
    used for history.
    """

    id: str
    type: str | None = None
    position: Position = Field(default_factory=Position)
    data: dict[str, Any] = Field(default_factory=dict)
    width: float | None = None
    height: float | None = None
    parent_id: str | None = None

    selected: bool = False
    dragging: bool = False
    measured: dict[str, float] | None = None


class GraphEdge(_DomainModel):
    """A directed edge between two nodes. ``selected`` is transient UI state."""

    id: str
    source: str
    target: str
    type: str | None = None
    label: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    selected: bool = False


def stable_fields(entity: GraphNode | GraphEdge) -> dict[str, Any]:
    """Return the JSON-safe fields of an entity without transient UI state."""
    return entity.model_dump(mode="json", exclude=set(VOLATILE_FIELDS))


class GraphState(_DomainModel):
    """Complete graph state of a document.

    Equality is keyed by entity id and ignores VOLATILE_FIELDS, so two states
    holding the same entities in a different order or with a different
    selection compare equal.
    """

    nodes: tuple[GraphNode, ...] = ()
    edges: tuple[GraphEdge, ...] = ()

    def node_map(self) -> dict[str, GraphNode]:
        return {node.id: node for node in self.nodes}

    def edge_map(self) -> dict[str, GraphEdge]:
        return {edge.id: edge for edge in self.edges}

    def size_bytes(self) -> int:
        """Serialized payload size used for quota accounting."""
        return len(self.model_dump_json(by_alias=True).encode("utf-8"))

    def _stable_fields(self) -> tuple[dict[str, Any], dict[str, Any]]:
        return (
            {node.id: stable_fields(node) for node in self.nodes},
            {edge.id: stable_fields(edge) for edge in self.edges},
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GraphState):
            return NotImplemented
        return self._stable_fields() == other._stable_fields()

    __hash__ = None  # type: ignore[assignment]


# ---------------------------------------------------------------------------
# Deltas
# ---------------------------------------------------------------------------


class EntityChange(_DomainModel):
    """Field-level change of one entity.

    A missing ``before`` means the entity was created; a missing ``after``
    means it was deleted. For updates both carry only the differing fields.
    """

    entity_id: str
    entity_kind: EntityKind
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None

    @property
    def operation(self) -> DeltaOperation:
        if self.before is None:
            return DeltaOperation.ADD
        if self.after is None:
            return DeltaOperation.DELETE
        return DeltaOperation.UPDATE


class Delta(_DomainModel):
    operation: DeltaOperation
    entity_scope: EntityScope
    changes: tuple[EntityChange, ...]


# ---------------------------------------------------------------------------
# History points
# ---------------------------------------------------------------------------


class HistoryPoint(_DomainModel):
    """Metadata of one logical position in a document's history.

    This is what list endpoints return; Snapshot and Event extend it with
    their payloads.
    """

    id: str
    document_id: str
    kind: PointKind
    action_name: str
    actor_id: str
    timestamp: int
    node_count: int = 0
    edge_count: int = 0
    is_major: bool = False
    snapshot_id: str | None = None
    snapshot_index: int | None = None
    event_index: int | None = None
    size_bytes: int | None = None
    operation: DeltaOperation | None = None
    entity_scope: EntityScope | None = None
    summary: str | None = None

    @property
    def order_key(self) -> tuple[int, int]:
        snapshot_index = self.snapshot_index if self.snapshot_index is not None else -1
        if self.kind == PointKind.SNAPSHOT:
            return (snapshot_index, -1)
        return (snapshot_index, self.event_index if self.event_index is not None else -1)


class Snapshot(HistoryPoint):
    kind: PointKind = PointKind.SNAPSHOT
    state: GraphState
    size_bytes: int = 0

    def meta(self) -> HistoryPoint:
        return HistoryPoint.model_validate(self.model_dump(exclude={"state"}))


class Event(HistoryPoint):
    kind: PointKind = PointKind.EVENT
    snapshot_id: str
    delta: Delta

    def meta(self) -> HistoryPoint:
        return HistoryPoint.model_validate(
            self.model_dump(exclude={"delta"})
            | {
                "operation": self.delta.operation,
                "entity_scope": self.delta.entity_scope,
            }
        )


# ---------------------------------------------------------------------------
# Gateway inputs and results
# ---------------------------------------------------------------------------


class PlanTier(str, Enum):
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class DocumentInfo(_DomainModel):
    """Ownership and plan of a document in the canonical document store."""

    document_id: str
    owner_id: str
    plan_tier: PlanTier = PlanTier.FREE


class HistoryQuery(_DomainModel):
    """Pagination and filters for listing history. Times are epoch ms, inclusive."""

    limit: int = 50
    offset: int = 0
    start_ms: int | None = None
    end_ms: int | None = None
    action_name: str | None = None

    def matches(self, point: HistoryPoint) -> bool:
        if self.start_ms is not None and point.timestamp < self.start_ms:
            return False
        if self.end_ms is not None and point.timestamp > self.end_ms:
            return False
        return self.action_name is None or point.action_name == self.action_name


class HistoryPage(_DomainModel):
    items: tuple[HistoryPoint, ...]
    total: int
    has_more: bool


class SnapshotReceipt(_DomainModel):
    snapshot_id: str
    snapshot_index: int
    quota_warning: bool = False


class EventReceipt(_DomainModel):
    event_id: str
    event_index: int


class ResolvedState(_DomainModel):
    point_id: str
    state: GraphState
    snapshot_id: str
    snapshot_index: int
    event_index: int | None = None


class QuotaUsage(_DomainModel):
    used_bytes: int
    quota_bytes: int
    warning: bool
    exceeded: bool


class CurrentPointer(_DomainModel):
    """Where a document's live state sits in its history."""

    document_id: str
    snapshot_id: str
    event_id: str | None = None
    updated_by: str
    updated_at: int
