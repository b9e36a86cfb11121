"""SQLAlchemy ORM models for history and canonical document storage.

History tables:
- HistorySnapshot  — full graph state at a point, unique per (document_id, snapshot_index)
- HistoryEvent     — delta anchored to a snapshot, unique per (snapshot_id, event_index);
                     deleted with its snapshot (ON DELETE CASCADE)
- HistoryPointer   — current position of each document in its history

Canonical document tables (written by reverts):
- Document, DocumentNode, DocumentEdge

Graph payloads (nodes, edges, changes) are stored as JSONB.
"""

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from mindmap_history.database import Base


class HistorySnapshot(Base):
    """Full graph state of a document at one history point.

    Attributes:
        id: Point id, shared with the client-side cache entry.
        document_id: Owning document.
        actor_id: User whose action produced the snapshot; quota is charged to them.
        snapshot_index: Monotonic position within the document.
        action_name: Label of the originating mutation.
        nodes: Serialized nodes (JSONB array).
        edges: Serialized edges (JSONB array).
        node_count: Denormalized len(nodes) for list rendering.
        edge_count: Denormalized len(edges).
        size_bytes: Serialized state size used for quota accounting.
        is_major: True for manual checkpoints (retained for 2 x max_age).
        created_at: Point timestamp.
    """

    __tablename__ = "history_snapshots"
    __table_args__ = (
        UniqueConstraint("document_id", "snapshot_index", name="uq_history_snapshots_document_index"),
        Index("ix_history_snapshots_document_created", "document_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    document_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    snapshot_index: Mapped[int] = mapped_column(Integer, nullable=False)
    action_name: Mapped[str] = mapped_column(String(120), nullable=False)
    nodes: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    edges: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    node_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    edge_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    is_major: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class HistoryEvent(Base):
    """Field-level delta from the previous point in a snapshot's chain.

    Attributes:
        snapshot_id: Anchor snapshot; the event is deleted with it.
        event_index: Position in the anchor's chain.
        operation: add | update | delete | batch.
        entity_scope: node | edge | mixed.
        changes: Serialized EntityChange list (JSONB array).
    """

    __tablename__ = "history_events"
    __table_args__ = (
        UniqueConstraint("snapshot_id", "event_index", name="uq_history_events_snapshot_index"),
        Index("ix_history_events_document_created", "document_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    document_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    snapshot_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("history_snapshots.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_index: Mapped[int] = mapped_column(Integer, nullable=False)
    action_name: Mapped[str] = mapped_column(String(120), nullable=False)
    operation: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_scope: Mapped[str] = mapped_column(String(16), nullable=False)
    changes: Mapped[list] = mapped_column(JSONB, nullable=False)  # type: ignore[type-arg]
    node_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    edge_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class HistoryPointer(Base):
    """Current history position of a document (one row per document)."""

    __tablename__ = "history_pointers"

    document_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    snapshot_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_by: Mapped[str] = mapped_column(String(64), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Document(Base):
    """Canonical document record: ownership and plan tier."""

    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    plan_tier: Mapped[str] = mapped_column(String(20), nullable=False, default="free", index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class DocumentNode(Base):
    """Live node of a document. ``updated_at`` drives last-write-wins between collaborators."""

    __tablename__ = "document_nodes"

    document_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True
    )
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False)  # type: ignore[type-arg]
    origin_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class DocumentEdge(Base):
    """Live edge of a document."""

    __tablename__ = "document_edges"

    document_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True
    )
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False)  # type: ignore[type-arg]
    origin_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
