"""In-memory history and document storage.

Implements the repository protocols of ``mindmap_history.core.interfaces``
on plain dicts. Backs the ``memory`` store backend and keeps tests hermetic
without database infrastructure. Uniqueness of snapshot and event indexes and
the cascade from snapshots to their events mirror the SQL schema.

All methods are async only to satisfy the protocols; nothing here blocks.
"""

from __future__ import annotations

from collections.abc import Sequence

from mindmap_history.errors import ConflictError
from mindmap_history.history.models import (
    CurrentPointer,
    DocumentInfo,
    Event,
    GraphState,
    HistoryPoint,
    HistoryQuery,
    PlanTier,
    Snapshot,
)


class InMemorySnapshotRepository:
    def __init__(self, store: InMemoryHistoryStore) -> None:
        self._store = store

    def _for_document(self, document_id: str) -> list[Snapshot]:
        return [s for s in self._store.snapshot_rows.values() if s.document_id == document_id]

    async def get(self, document_id: str, snapshot_id: str) -> Snapshot | None:
        snapshot = self._store.snapshot_rows.get(snapshot_id)
        if snapshot is None or snapshot.document_id != document_id:
            return None
        return snapshot

    async def next_index(self, document_id: str) -> int:
        indexes = [s.snapshot_index or 0 for s in self._for_document(document_id)]
        return max(indexes) + 1 if indexes else 0

    async def insert(self, snapshot: Snapshot) -> Snapshot:
        for existing in self._for_document(snapshot.document_id):
            if existing.snapshot_index == snapshot.snapshot_index:
                raise ConflictError(
                    f"snapshot_index {snapshot.snapshot_index} already used "
                    f"for document {snapshot.document_id}"
                )
        self._store.snapshot_rows[snapshot.id] = snapshot
        return snapshot

    async def list_meta(self, document_id: str, query: HistoryQuery, limit: int) -> list[HistoryPoint]:
        matching = [s for s in self._for_document(document_id) if query.matches(s)]
        matching.sort(key=lambda s: s.snapshot_index or 0, reverse=True)
        return [s.meta() for s in matching[:limit]]

    async def count(self, document_id: str, query: HistoryQuery) -> int:
        return sum(1 for s in self._for_document(document_id) if query.matches(s))

    async def list_snapshots(
        self,
        document_ids: Sequence[str] | None = None,
        actor_id: str | None = None,
    ) -> list[HistoryPoint]:
        rows = [
            s
            for s in self._store.snapshot_rows.values()
            if (document_ids is None or s.document_id in document_ids)
            and (actor_id is None or s.actor_id == actor_id)
        ]
        rows.sort(key=lambda s: (s.document_id, -(s.snapshot_index or 0)))
        return [s.meta() for s in rows]

    async def usage_bytes(self, actor_id: str) -> int:
        return sum(s.size_bytes for s in self._store.snapshot_rows.values() if s.actor_id == actor_id)

    async def delete_many(self, snapshot_ids: Sequence[str]) -> int:
        deleted = 0
        for snapshot_id in snapshot_ids:
            if self._store.snapshot_rows.pop(snapshot_id, None) is not None:
                deleted += 1
                # ON DELETE CASCADE
                for event_id in [
                    e.id for e in self._store.event_rows.values() if e.snapshot_id == snapshot_id
                ]:
                    del self._store.event_rows[event_id]
        return deleted


class InMemoryEventRepository:
    def __init__(self, store: InMemoryHistoryStore) -> None:
        self._store = store

    def _for_snapshot(self, snapshot_id: str) -> list[Event]:
        return [e for e in self._store.event_rows.values() if e.snapshot_id == snapshot_id]

    async def get(self, document_id: str, event_id: str) -> Event | None:
        event = self._store.event_rows.get(event_id)
        if event is None or event.document_id != document_id:
            return None
        return event

    async def next_index(self, snapshot_id: str) -> int:
        indexes = [e.event_index or 0 for e in self._for_snapshot(snapshot_id)]
        return max(indexes) + 1 if indexes else 0

    async def insert(self, event: Event) -> Event:
        for existing in self._for_snapshot(event.snapshot_id):
            if existing.event_index == event.event_index:
                raise ConflictError(
                    f"event_index {event.event_index} already used for snapshot {event.snapshot_id}"
                )
        self._store.event_rows[event.id] = event
        return event

    async def list_chain(self, snapshot_id: str, up_to_index: int | None = None) -> list[Event]:
        chain = sorted(self._for_snapshot(snapshot_id), key=lambda e: e.event_index or 0)
        if up_to_index is not None:
            chain = [e for e in chain if (e.event_index or 0) <= up_to_index]
        return chain

    async def list_events(self, document_id: str, query: HistoryQuery, limit: int) -> list[Event]:
        matching = [
            e
            for e in self._store.event_rows.values()
            if e.document_id == document_id and query.matches(e)
        ]
        matching.sort(key=lambda e: e.order_key, reverse=True)
        return matching[:limit]

    async def count(self, document_id: str, query: HistoryQuery) -> int:
        return sum(
            1
            for e in self._store.event_rows.values()
            if e.document_id == document_id and query.matches(e)
        )

    async def delete_for_snapshots(self, snapshot_ids: Sequence[str]) -> int:
        doomed = [e.id for e in self._store.event_rows.values() if e.snapshot_id in snapshot_ids]
        for event_id in doomed:
            del self._store.event_rows[event_id]
        return len(doomed)

    async def delete_orphans(self) -> int:
        doomed = [
            e.id
            for e in self._store.event_rows.values()
            if e.snapshot_id not in self._store.snapshot_rows
        ]
        for event_id in doomed:
            del self._store.event_rows[event_id]
        return len(doomed)


class InMemoryHistoryStore:
    """Snapshot and event tables held in process.

    Attributes:
        snapshots: Repository view over the snapshot rows.
        events: Repository view over the event rows.
    """

    def __init__(self) -> None:
        self.snapshot_rows: dict[str, Snapshot] = {}
        self.event_rows: dict[str, Event] = {}
        self.snapshots = InMemorySnapshotRepository(self)
        self.events = InMemoryEventRepository(self)


class InMemoryPointerRepository:
    def __init__(self) -> None:
        self._pointers: dict[str, CurrentPointer] = {}

    async def set(self, pointer: CurrentPointer) -> None:
        self._pointers[pointer.document_id] = pointer

    async def get(self, document_id: str) -> CurrentPointer | None:
        return self._pointers.get(document_id)


class InMemoryDocumentStore:
    """Canonical documents with per-entity last-write timestamps."""

    def __init__(self) -> None:
        self._documents: dict[str, DocumentInfo] = {}
        self._states: dict[str, GraphState] = {}
        # (document_id, entity_id) -> epoch ms of the last write
        self.updated_at: dict[tuple[str, str], int] = {}
        self.last_origin: dict[str, str | None] = {}

    def add_document(
        self,
        document_id: str,
        owner_id: str,
        plan_tier: PlanTier = PlanTier.FREE,
        state: GraphState | None = None,
    ) -> DocumentInfo:
        info = DocumentInfo(document_id=document_id, owner_id=owner_id, plan_tier=plan_tier)
        self._documents[document_id] = info
        self._states[document_id] = state or GraphState()
        return info

    async def get_document(self, document_id: str) -> DocumentInfo | None:
        return self._documents.get(document_id)

    async def list_document_ids(self, plan_tier: PlanTier | None = None) -> list[str]:
        return [
            info.document_id
            for info in self._documents.values()
            if plan_tier is None or info.plan_tier == plan_tier
        ]

    async def load_state(self, document_id: str) -> GraphState:
        return self._states.get(document_id, GraphState())

    async def upsert_state(
        self,
        document_id: str,
        state: GraphState,
        updated_at: int,
        origin_id: str | None = None,
    ) -> None:
        current = self._states.get(document_id, GraphState())
        nodes = current.node_map() | state.node_map()
        edges = current.edge_map() | state.edge_map()
        self._states[document_id] = GraphState(nodes=tuple(nodes.values()), edges=tuple(edges.values()))
        for entity_id in [*state.node_map(), *state.edge_map()]:
            self.updated_at[(document_id, entity_id)] = updated_at
        self.last_origin[document_id] = origin_id
