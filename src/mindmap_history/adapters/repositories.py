"""SQLAlchemy repositories for history storage.

Each repository implements the corresponding protocol from
core/interfaces.py on an AsyncSession and converts rows to the domain models
of ``mindmap_history.history.models``.

Repositories:
- SnapshotRepository  — history_snapshots
- EventRepository     — history_events (joined to snapshots for ordering)
- PointerRepository   — history_pointers (upsert)

Unique index violations are raised as ConflictError from inside a savepoint,
so the surrounding transaction stays usable for the gateway's retry.
Connection-level failures are raised as TransientIOError.
"""

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import Select, delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from mindmap_history.core.models import HistoryEvent, HistoryPointer, HistorySnapshot
from mindmap_history.errors import ConflictError, TransientIOError
from mindmap_history.history.models import (
    CurrentPointer,
    Delta,
    Event,
    GraphState,
    HistoryPoint,
    HistoryQuery,
    PointKind,
    Snapshot,
    from_ms,
    stable_fields,
    to_ms,
)
from mindmap_history.observability import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def storage_errors(operation: str) -> AsyncIterator[None]:
    """Translate SQLAlchemy connection failures into TransientIOError."""
    try:
        yield
    except OperationalError as exc:
        logger.warning("History storage unavailable", operation=operation, error=str(exc.orig))
        raise TransientIOError(f"{operation} failed: storage unavailable") from exc


def _apply_time_filters(stmt: Select[Any], column: Any, query: HistoryQuery) -> Select[Any]:
    if query.start_ms is not None:
        stmt = stmt.where(column >= from_ms(query.start_ms))
    if query.end_ms is not None:
        stmt = stmt.where(column <= from_ms(query.end_ms))
    return stmt


def _snapshot_meta(row: HistorySnapshot) -> HistoryPoint:
    return HistoryPoint(
        id=row.id,
        document_id=row.document_id,
        kind=PointKind.SNAPSHOT,
        action_name=row.action_name,
        actor_id=row.actor_id,
        timestamp=to_ms(row.created_at),
        node_count=row.node_count,
        edge_count=row.edge_count,
        is_major=row.is_major,
        snapshot_id=row.id,
        snapshot_index=row.snapshot_index,
        size_bytes=row.size_bytes,
    )


def _snapshot_from_row(row: HistorySnapshot) -> Snapshot:
    return Snapshot.model_validate(
        _snapshot_meta(row).model_dump(exclude={"kind"})
        | {"state": GraphState.model_validate({"nodes": row.nodes, "edges": row.edges})}
    )


def _event_from_row(row: HistoryEvent, snapshot_index: int) -> Event:
    return Event(
        id=row.id,
        document_id=row.document_id,
        action_name=row.action_name,
        actor_id=row.actor_id,
        timestamp=to_ms(row.created_at),
        node_count=row.node_count,
        edge_count=row.edge_count,
        snapshot_id=row.snapshot_id,
        snapshot_index=snapshot_index,
        event_index=row.event_index,
        delta=Delta(
            operation=row.operation,
            entity_scope=row.entity_scope,
            changes=row.changes,
        ),
    )


class SnapshotRepository:
    """Repository for HistorySnapshot rows.

    Args:
        session: The SQLAlchemy async session.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    def _meta_select(self) -> Select[Any]:
        # Everything but the nodes/edges payload.
        return select(
            HistorySnapshot.id,
            HistorySnapshot.document_id,
            HistorySnapshot.actor_id,
            HistorySnapshot.snapshot_index,
            HistorySnapshot.action_name,
            HistorySnapshot.node_count,
            HistorySnapshot.edge_count,
            HistorySnapshot.size_bytes,
            HistorySnapshot.is_major,
            HistorySnapshot.created_at,
        )

    async def get(self, document_id: str, snapshot_id: str) -> Snapshot | None:
        async with storage_errors("get snapshot"):
            stmt = select(HistorySnapshot).where(
                HistorySnapshot.id == snapshot_id,
                HistorySnapshot.document_id == document_id,
            )
            row = (await self._session.execute(stmt)).scalar_one_or_none()
        return _snapshot_from_row(row) if row is not None else None

    async def next_index(self, document_id: str) -> int:
        stmt = select(func.max(HistorySnapshot.snapshot_index)).where(
            HistorySnapshot.document_id == document_id
        )
        max_index = (await self._session.execute(stmt)).scalar()
        return 0 if max_index is None else max_index + 1

    async def insert(self, snapshot: Snapshot) -> Snapshot:
        """Insert a snapshot row inside a savepoint.

        Raises:
            ConflictError: On a (document_id, snapshot_index) or id collision.
            TransientIOError: If the database is unreachable.
        """
        row = HistorySnapshot(
            id=snapshot.id,
            document_id=snapshot.document_id,
            actor_id=snapshot.actor_id,
            snapshot_index=snapshot.snapshot_index,
            action_name=snapshot.action_name,
            nodes=[stable_fields(node) for node in snapshot.state.nodes],
            edges=[stable_fields(edge) for edge in snapshot.state.edges],
            node_count=snapshot.node_count,
            edge_count=snapshot.edge_count,
            size_bytes=snapshot.size_bytes,
            is_major=snapshot.is_major,
            created_at=from_ms(snapshot.timestamp),
        )
        async with storage_errors("insert snapshot"):
            try:
                async with self._session.begin_nested():
                    self._session.add(row)
                    await self._session.flush()
            except IntegrityError as exc:
                raise ConflictError(
                    f"snapshot_index {snapshot.snapshot_index} already used "
                    f"for document {snapshot.document_id}"
                ) from exc
        return snapshot

    async def list_meta(self, document_id: str, query: HistoryQuery, limit: int) -> list[HistoryPoint]:
        stmt = self._meta_select().where(HistorySnapshot.document_id == document_id)
        stmt = _apply_time_filters(stmt, HistorySnapshot.created_at, query)
        if query.action_name is not None:
            stmt = stmt.where(HistorySnapshot.action_name == query.action_name)
        stmt = stmt.order_by(HistorySnapshot.snapshot_index.desc()).limit(limit)
        rows = (await self._session.execute(stmt)).all()
        return [_snapshot_meta(row) for row in rows]  # type: ignore[arg-type]

    async def count(self, document_id: str, query: HistoryQuery) -> int:
        stmt = select(func.count()).select_from(HistorySnapshot).where(
            HistorySnapshot.document_id == document_id
        )
        stmt = _apply_time_filters(stmt, HistorySnapshot.created_at, query)
        if query.action_name is not None:
            stmt = stmt.where(HistorySnapshot.action_name == query.action_name)
        return (await self._session.execute(stmt)).scalar() or 0

    async def list_snapshots(
        self,
        document_ids: Sequence[str] | None = None,
        actor_id: str | None = None,
    ) -> list[HistoryPoint]:
        stmt = self._meta_select()
        if document_ids is not None:
            stmt = stmt.where(HistorySnapshot.document_id.in_(list(document_ids)))
        if actor_id is not None:
            stmt = stmt.where(HistorySnapshot.actor_id == actor_id)
        stmt = stmt.order_by(HistorySnapshot.document_id, HistorySnapshot.snapshot_index.desc())
        rows = (await self._session.execute(stmt)).all()
        return [_snapshot_meta(row) for row in rows]  # type: ignore[arg-type]

    async def usage_bytes(self, actor_id: str) -> int:
        stmt = select(func.coalesce(func.sum(HistorySnapshot.size_bytes), 0)).where(
            HistorySnapshot.actor_id == actor_id
        )
        return int((await self._session.execute(stmt)).scalar() or 0)

    async def delete_many(self, snapshot_ids: Sequence[str]) -> int:
        if not snapshot_ids:
            return 0
        async with storage_errors("delete snapshots"):
            result = await self._session.execute(
                delete(HistorySnapshot).where(HistorySnapshot.id.in_(list(snapshot_ids)))
            )
        return result.rowcount or 0


class EventRepository:
    """Repository for HistoryEvent rows.

    Args:
        session: The SQLAlchemy async session.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    def _joined_select(self) -> Select[Any]:
        return select(HistoryEvent, HistorySnapshot.snapshot_index).join(
            HistorySnapshot, HistorySnapshot.id == HistoryEvent.snapshot_id
        )

    async def get(self, document_id: str, event_id: str) -> Event | None:
        async with storage_errors("get event"):
            stmt = self._joined_select().where(
                HistoryEvent.id == event_id,
                HistoryEvent.document_id == document_id,
            )
            row = (await self._session.execute(stmt)).one_or_none()
        if row is None:
            return None
        event, snapshot_index = row
        return _event_from_row(event, snapshot_index)

    async def next_index(self, snapshot_id: str) -> int:
        stmt = select(func.max(HistoryEvent.event_index)).where(HistoryEvent.snapshot_id == snapshot_id)
        max_index = (await self._session.execute(stmt)).scalar()
        return 0 if max_index is None else max_index + 1

    async def insert(self, event: Event) -> Event:
        """Insert an event row inside a savepoint.

        Raises:
            ConflictError: On a (snapshot_id, event_index) or id collision.
            TransientIOError: If the database is unreachable.
        """
        row = HistoryEvent(
            id=event.id,
            document_id=event.document_id,
            actor_id=event.actor_id,
            snapshot_id=event.snapshot_id,
            event_index=event.event_index,
            action_name=event.action_name,
            operation=event.delta.operation.value,
            entity_scope=event.delta.entity_scope.value,
            changes=[change.model_dump(mode="json") for change in event.delta.changes],
            node_count=event.node_count,
            edge_count=event.edge_count,
            created_at=from_ms(event.timestamp),
        )
        async with storage_errors("insert event"):
            try:
                async with self._session.begin_nested():
                    self._session.add(row)
                    await self._session.flush()
            except IntegrityError as exc:
                raise ConflictError(
                    f"event_index {event.event_index} already used for snapshot {event.snapshot_id}"
                ) from exc
        return event

    async def list_chain(self, snapshot_id: str, up_to_index: int | None = None) -> list[Event]:
        stmt = self._joined_select().where(HistoryEvent.snapshot_id == snapshot_id)
        if up_to_index is not None:
            stmt = stmt.where(HistoryEvent.event_index <= up_to_index)
        stmt = stmt.order_by(HistoryEvent.event_index)
        async with storage_errors("load event chain"):
            rows = (await self._session.execute(stmt)).all()
        return [_event_from_row(event, snapshot_index) for event, snapshot_index in rows]

    async def list_events(self, document_id: str, query: HistoryQuery, limit: int) -> list[Event]:
        stmt = self._joined_select().where(HistoryEvent.document_id == document_id)
        stmt = _apply_time_filters(stmt, HistoryEvent.created_at, query)
        if query.action_name is not None:
            stmt = stmt.where(HistoryEvent.action_name == query.action_name)
        stmt = stmt.order_by(
            HistorySnapshot.snapshot_index.desc(),
            HistoryEvent.event_index.desc(),
        ).limit(limit)
        rows = (await self._session.execute(stmt)).all()
        return [_event_from_row(event, snapshot_index) for event, snapshot_index in rows]

    async def count(self, document_id: str, query: HistoryQuery) -> int:
        stmt = select(func.count()).select_from(HistoryEvent).where(HistoryEvent.document_id == document_id)
        stmt = _apply_time_filters(stmt, HistoryEvent.created_at, query)
        if query.action_name is not None:
            stmt = stmt.where(HistoryEvent.action_name == query.action_name)
        return (await self._session.execute(stmt)).scalar() or 0

    async def delete_for_snapshots(self, snapshot_ids: Sequence[str]) -> int:
        if not snapshot_ids:
            return 0
        async with storage_errors("delete events"):
            result = await self._session.execute(
                delete(HistoryEvent).where(HistoryEvent.snapshot_id.in_(list(snapshot_ids)))
            )
        return result.rowcount or 0

    async def delete_orphans(self) -> int:
        anchor_exists = (
            select(HistorySnapshot.id).where(HistorySnapshot.id == HistoryEvent.snapshot_id).exists()
        )
        async with storage_errors("delete orphaned events"):
            result = await self._session.execute(delete(HistoryEvent).where(~anchor_exists))
        deleted = result.rowcount or 0
        if deleted:
            logger.warning("Deleted orphaned history events", deleted_events=deleted)
        return deleted


class PointerRepository:
    """Repository for the per-document current-position pointer.

    Args:
        session: The SQLAlchemy async session.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def set(self, pointer: CurrentPointer) -> None:
        values = {
            "document_id": pointer.document_id,
            "snapshot_id": pointer.snapshot_id,
            "event_id": pointer.event_id,
            "updated_by": pointer.updated_by,
            "updated_at": from_ms(pointer.updated_at),
        }
        stmt = pg_insert(HistoryPointer).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[HistoryPointer.document_id],
            set_={key: value for key, value in values.items() if key != "document_id"},
        )
        async with storage_errors("set history pointer"):
            await self._session.execute(stmt)

    async def get(self, document_id: str) -> CurrentPointer | None:
        stmt = select(HistoryPointer).where(HistoryPointer.document_id == document_id)
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return CurrentPointer(
            document_id=row.document_id,
            snapshot_id=row.snapshot_id,
            event_id=row.event_id,
            updated_by=row.updated_by,
            updated_at=to_ms(row.updated_at),
        )
