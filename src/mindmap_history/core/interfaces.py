"""Abstract interfaces (Protocol classes) for the history engine.

Defines the contracts between the service layer and the storage adapters
using typing.Protocol. Services depend on these protocols, never on a
concrete adapter, so the SQLAlchemy repositories and the in-memory store are
interchangeable.

Protocols defined:
- ISnapshotRepository
- IEventRepository
- IPointerRepository
- IDocumentStore
- IHistoryGateway
"""

from collections.abc import Sequence
from typing import Protocol

from mindmap_history.auth import ActorContext
from mindmap_history.history.models import (
    CurrentPointer,
    Delta,
    DocumentInfo,
    Event,
    EventReceipt,
    GraphState,
    HistoryPage,
    HistoryPoint,
    HistoryQuery,
    PlanTier,
    QuotaUsage,
    ResolvedState,
    Snapshot,
    SnapshotReceipt,
)


class ISnapshotRepository(Protocol):
    """Repository contract for full-state snapshots."""

    async def get(self, document_id: str, snapshot_id: str) -> Snapshot | None:
        """Return a snapshot with its state, or None if it does not exist."""
        ...

    async def next_index(self, document_id: str) -> int:
        """Return the next free snapshot_index for a document (0 when none exist)."""
        ...

    async def insert(self, snapshot: Snapshot) -> Snapshot:
        """Persist a snapshot.

        Raises:
            ConflictError: If (document_id, snapshot_index) is already taken.
            TransientIOError: If storage is temporarily unavailable.
        """
        ...

    async def list_meta(
        self,
        document_id: str,
        query: HistoryQuery,
        limit: int,
    ) -> list[HistoryPoint]:
        """Return up to ``limit`` snapshot metadata rows matching ``query``, newest first.

        ``query.offset`` and ``query.limit`` are applied by the caller after
        merging with events.
        """
        ...

    async def count(self, document_id: str, query: HistoryQuery) -> int:
        """Return the number of snapshots matching the filters of ``query``."""
        ...

    async def list_snapshots(
        self,
        document_ids: Sequence[str] | None = None,
        actor_id: str | None = None,
    ) -> list[HistoryPoint]:
        """Return metadata of all snapshots, optionally scoped, newest first per document."""
        ...

    async def usage_bytes(self, actor_id: str) -> int:
        """Return the total size of all snapshots written by an actor."""
        ...

    async def delete_many(self, snapshot_ids: Sequence[str]) -> int:
        """Delete snapshots by id and return the number deleted."""
        ...


class IEventRepository(Protocol):
    """Repository contract for delta events anchored to snapshots."""

    async def get(self, document_id: str, event_id: str) -> Event | None:
        ...

    async def next_index(self, snapshot_id: str) -> int:
        """Return the next free event_index in a snapshot's chain."""
        ...

    async def insert(self, event: Event) -> Event:
        """Persist an event.

        Raises:
            ConflictError: If (snapshot_id, event_index) is already taken.
            TransientIOError: If storage is temporarily unavailable.
        """
        ...

    async def list_chain(self, snapshot_id: str, up_to_index: int | None = None) -> list[Event]:
        """Return a snapshot's events in event_index order, optionally up to an index (inclusive)."""
        ...

    async def list_events(self, document_id: str, query: HistoryQuery, limit: int) -> list[Event]:
        """Return up to ``limit`` events matching ``query``, newest first."""
        ...

    async def count(self, document_id: str, query: HistoryQuery) -> int:
        ...

    async def delete_for_snapshots(self, snapshot_ids: Sequence[str]) -> int:
        """Delete every event anchored to the given snapshots and return the count."""
        ...

    async def delete_orphans(self) -> int:
        """Delete events whose anchor snapshot no longer exists and return the count."""
        ...


class IPointerRepository(Protocol):
    """Repository contract for the current-position pointer of each document."""

    async def set(self, pointer: CurrentPointer) -> None:
        ...

    async def get(self, document_id: str) -> CurrentPointer | None:
        ...


class IDocumentStore(Protocol):
    """Canonical document storage (not the history store).

    Reverts write the resolved state back here. Only upserts are performed:
    entities missing from the written state are left in place.
    """

    async def get_document(self, document_id: str) -> DocumentInfo | None:
        ...

    async def list_document_ids(self, plan_tier: PlanTier | None = None) -> list[str]:
        ...

    async def load_state(self, document_id: str) -> GraphState:
        ...

    async def upsert_state(
        self,
        document_id: str,
        state: GraphState,
        updated_at: int,
        origin_id: str | None = None,
    ) -> None:
        """Insert or update every entity of ``state`` with one ``updated_at`` timestamp.

        Args:
            document_id: Target document.
            state: Entities to write.
            updated_at: Epoch ms stamped on every written entity.
            origin_id: Client origin id recorded with the write, if any.
        """
        ...


class IHistoryGateway(Protocol):
    """Persistence operations used by the client-side HistoryEngine."""

    async def create_snapshot(
        self,
        document_id: str,
        actor: ActorContext,
        action_name: str,
        state: GraphState,
        is_major: bool = False,
        snapshot_id: str | None = None,
        timestamp: int | None = None,
    ) -> SnapshotReceipt:
        ...

    async def create_event(
        self,
        document_id: str,
        snapshot_id: str,
        delta: Delta | None,
        actor_id: str,
        action_name: str,
        event_id: str | None = None,
        node_count: int = 0,
        edge_count: int = 0,
        timestamp: int | None = None,
    ) -> EventReceipt:
        ...

    async def resolve(self, document_id: str, point_id: str) -> ResolvedState:
        ...

    async def list_history(self, document_id: str, query: HistoryQuery) -> HistoryPage:
        ...

    async def quota(self, actor_id: str, plan_tier: PlanTier) -> QuotaUsage:
        ...
