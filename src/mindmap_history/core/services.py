"""Persistence gateway for document history.

HistoryService is the single entry point for writing and reading durable
history: snapshots, delta events, state resolution, quota accounting, and
server-side reverts. It contains no framework code and depends only on the
repository protocols of ``core.interfaces``; the API layer builds one per
request with SQL repositories, the client engine and the tests use the
in-memory store.

Write failures always surface to the caller. A unique index collision on
snapshot_index or event_index is retried once with a freshly read index.
"""

import uuid
from collections.abc import Awaitable, Callable
from typing import TypeVar

from mindmap_history.auth import ActorContext
from mindmap_history.core.interfaces import (
    IDocumentStore,
    IEventRepository,
    IPointerRepository,
    ISnapshotRepository,
)
from mindmap_history.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    QuotaExceededError,
    ValidationError,
)
from mindmap_history.history.delta import apply_delta
from mindmap_history.history.formatting import format_diff_summary
from mindmap_history.history.models import (
    CurrentPointer,
    Delta,
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
    now_ms,
)
from mindmap_history.history.retention import policy_for, select_excess_snapshots
from mindmap_history.observability import get_logger

logger = get_logger(__name__)

_T = TypeVar("_T")


async def _retry_on_conflict(write: Callable[[], Awaitable[_T]], **log_context: str) -> _T:
    """Run ``write`` and retry it once if it raises ConflictError."""
    try:
        return await write()
    except ConflictError:
        logger.warning("Index conflict on history write, retrying once", **log_context)
        return await write()


class HistoryService:
    """Durable history operations for collaborative documents.

    Args:
        snapshot_repo: Repository implementing ISnapshotRepository.
        event_repo: Repository implementing IEventRepository.
        pointer_repo: Repository implementing IPointerRepository.
        document_store: Canonical document store implementing IDocumentStore.
        quota_warning_ratio: Fraction of the quota at which writes report a warning.
    """

    def __init__(
        self,
        snapshot_repo: ISnapshotRepository,
        event_repo: IEventRepository,
        pointer_repo: IPointerRepository,
        document_store: IDocumentStore,
        quota_warning_ratio: float = 0.8,
    ) -> None:
        self._snapshots = snapshot_repo
        self._events = event_repo
        self._pointers = pointer_repo
        self._documents = document_store
        self._quota_warning_ratio = quota_warning_ratio

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_history(self, document_id: str, query: HistoryQuery) -> HistoryPage:
        """List snapshot and event metadata for a document, newest first.

        Each source is asked for at most ``offset + limit`` rows, the two are
        merged by ``(snapshot_index, event_index)`` and the requested window
        is cut from the merge. Payloads (states and deltas) are not returned;
        event items carry a one-line change summary instead.

        Args:
            document_id: The document whose history to list.
            query: Pagination and filters.

        Returns:
            HistoryPage with the items, the total count and whether more exist.
        """
        window = query.offset + query.limit
        snapshot_items = await self._snapshots.list_meta(document_id, query, window)
        events = await self._events.list_events(document_id, query, window)
        event_items = [
            event.meta().model_copy(update={"summary": format_diff_summary(event.delta)})
            for event in events
        ]

        merged: list[HistoryPoint] = sorted(
            [*snapshot_items, *event_items],
            key=lambda point: point.order_key,
            reverse=True,
        )
        items = merged[query.offset : window]
        total = await self._snapshots.count(document_id, query) + await self._events.count(
            document_id, query
        )
        return HistoryPage(
            items=tuple(items),
            total=total,
            has_more=query.offset + len(items) < total,
        )

    async def resolve(self, document_id: str, point_id: str) -> ResolvedState:
        """Compute the full graph state at a history point.

        A snapshot resolves to its own state. An event resolves to its anchor
        snapshot's state with the anchor's event chain replayed in
        event_index order up to and including the target event.

        The target event is replayed because a history point names the state
        after its change: cached client states are post-event, and a point
        must resolve to the same state whether it comes from the cache or
        from storage.

        Raises:
            NotFoundError: If the point or its anchor snapshot does not exist.
        """
        snapshot = await self._snapshots.get(document_id, point_id)
        if snapshot is not None:
            return ResolvedState(
                point_id=snapshot.id,
                state=snapshot.state,
                snapshot_id=snapshot.id,
                snapshot_index=snapshot.snapshot_index or 0,
            )

        event = await self._events.get(document_id, point_id)
        if event is None:
            raise NotFoundError("HistoryPoint", point_id)
        anchor = await self._snapshots.get(document_id, event.snapshot_id)
        if anchor is None:
            raise NotFoundError("Snapshot", event.snapshot_id)

        state = anchor.state
        for chained in await self._events.list_chain(anchor.id, up_to_index=event.event_index):
            state = apply_delta(state, chained.delta)

        return ResolvedState(
            point_id=event.id,
            state=state,
            snapshot_id=anchor.id,
            snapshot_index=anchor.snapshot_index or 0,
            event_index=event.event_index,
        )

    async def quota(self, actor_id: str, plan_tier: PlanTier) -> QuotaUsage:
        """Return an actor's snapshot storage usage against the tier quota."""
        quota_bytes = policy_for(plan_tier).storage_quota_bytes
        used = await self._snapshots.usage_bytes(actor_id)
        return QuotaUsage(
            used_bytes=used,
            quota_bytes=quota_bytes,
            warning=used >= quota_bytes * self._quota_warning_ratio,
            exceeded=used >= quota_bytes,
        )

    async def current(self, document_id: str) -> CurrentPointer:
        """Return the current-position pointer of a document.

        Raises:
            NotFoundError: If the document has no recorded history position.
        """
        pointer = await self._pointers.get(document_id)
        if pointer is None:
            raise NotFoundError("HistoryPointer", document_id)
        return pointer

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

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
        """Persist a full-state snapshot.

        Writing the same ``snapshot_id`` twice returns the first receipt.
        After the write, non-major snapshots beyond the tier's
        ``max_snapshots`` are trimmed with their events.

        Args:
            document_id: Owning document.
            actor: Caller identity and plan.
            action_name: Label of the originating mutation.
            state: Complete graph state to store.
            is_major: True for a manual checkpoint.
            snapshot_id: Client-chosen id for idempotent retries.
            timestamp: Creation time in epoch ms; defaults to now.

        Returns:
            SnapshotReceipt with the id, index, and a quota warning flag.

        Raises:
            ForbiddenError: If a manual checkpoint is requested on a tier that
                does not allow them.
            QuotaExceededError: If the write would exceed the storage quota.
        """
        policy = policy_for(actor.plan_tier)
        if is_major and not policy.allow_manual_checkpoints:
            raise ForbiddenError(
                f"Manual checkpoints are not available on the {policy.tier.value} plan"
            )

        if snapshot_id is not None:
            existing = await self._snapshots.get(document_id, snapshot_id)
            if existing is not None:
                usage = await self.quota(actor.actor_id, actor.plan_tier)
                return SnapshotReceipt(
                    snapshot_id=existing.id,
                    snapshot_index=existing.snapshot_index or 0,
                    quota_warning=usage.warning,
                )

        size_bytes = state.size_bytes()
        used = await self._snapshots.usage_bytes(actor.actor_id)
        if used + size_bytes > policy.storage_quota_bytes:
            logger.warning(
                "Snapshot rejected, storage quota exceeded",
                document_id=document_id,
                actor_id=actor.actor_id,
                used_bytes=used,
                quota_bytes=policy.storage_quota_bytes,
            )
            raise QuotaExceededError(used, policy.storage_quota_bytes, size_bytes)

        point_id = snapshot_id or str(uuid.uuid4())
        created_at = timestamp if timestamp is not None else now_ms()

        async def write() -> Snapshot:
            index = await self._snapshots.next_index(document_id)
            return await self._snapshots.insert(
                Snapshot(
                    id=point_id,
                    document_id=document_id,
                    action_name=action_name,
                    actor_id=actor.actor_id,
                    timestamp=created_at,
                    node_count=len(state.nodes),
                    edge_count=len(state.edges),
                    is_major=is_major,
                    snapshot_id=point_id,
                    snapshot_index=index,
                    state=state,
                    size_bytes=size_bytes,
                )
            )

        snapshot = await _retry_on_conflict(write, document_id=document_id)
        await self._trim_snapshots(document_id, actor.plan_tier)
        await self._pointers.set(
            CurrentPointer(
                document_id=document_id,
                snapshot_id=snapshot.id,
                updated_by=actor.actor_id,
                updated_at=created_at,
            )
        )

        quota_warning = used + size_bytes >= policy.storage_quota_bytes * self._quota_warning_ratio
        if quota_warning:
            logger.warning(
                "History storage nearing quota",
                actor_id=actor.actor_id,
                used_bytes=used + size_bytes,
                quota_bytes=policy.storage_quota_bytes,
            )

        logger.info(
            "Snapshot created",
            document_id=document_id,
            snapshot_id=snapshot.id,
            snapshot_index=snapshot.snapshot_index,
            action_name=action_name,
            is_major=is_major,
            size_bytes=size_bytes,
        )
        return SnapshotReceipt(
            snapshot_id=snapshot.id,
            snapshot_index=snapshot.snapshot_index or 0,
            quota_warning=quota_warning,
        )

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
        """Append a delta event to a snapshot's chain.

        Writing the same ``event_id`` twice returns the first receipt, which
        makes redelivery from the event queue safe.

        Raises:
            ValidationError: If the delta carries no changes.
            NotFoundError: If the anchor snapshot does not exist.
        """
        if delta is None or not delta.changes:
            raise ValidationError("Empty deltas are not recorded")

        if event_id is not None:
            existing = await self._events.get(document_id, event_id)
            if existing is not None:
                return EventReceipt(event_id=existing.id, event_index=existing.event_index or 0)

        anchor = await self._snapshots.get(document_id, snapshot_id)
        if anchor is None:
            raise NotFoundError("Snapshot", snapshot_id)

        point_id = event_id or str(uuid.uuid4())
        created_at = timestamp if timestamp is not None else now_ms()

        async def write() -> Event:
            index = await self._events.next_index(snapshot_id)
            return await self._events.insert(
                Event(
                    id=point_id,
                    document_id=document_id,
                    action_name=action_name,
                    actor_id=actor_id,
                    timestamp=created_at,
                    node_count=node_count,
                    edge_count=edge_count,
                    snapshot_id=snapshot_id,
                    snapshot_index=anchor.snapshot_index,
                    event_index=index,
                    delta=delta,
                )
            )

        event = await _retry_on_conflict(write, document_id=document_id, snapshot_id=snapshot_id)
        await self._pointers.set(
            CurrentPointer(
                document_id=document_id,
                snapshot_id=snapshot_id,
                event_id=event.id,
                updated_by=actor_id,
                updated_at=created_at,
            )
        )

        logger.debug(
            "Event recorded",
            document_id=document_id,
            event_id=event.id,
            snapshot_id=snapshot_id,
            event_index=event.event_index,
            operation=delta.operation.value,
        )
        return EventReceipt(event_id=event.id, event_index=event.event_index or 0)

    async def revert(
        self,
        document_id: str,
        actor: ActorContext,
        snapshot_id: str | None = None,
        event_id: str | None = None,
    ) -> ResolvedState:
        """Restore a document's canonical state to a history point.

        Exactly one of ``snapshot_id`` and ``event_id`` must be given. The
        resolved entities are upserted into the document store with a single
        timestamp; entities created after the point are left in place.

        Raises:
            ValidationError: Unless exactly one point id is given.
            NotFoundError: If the document or the point does not exist.
            ForbiddenError: If the actor is neither the document owner nor the
                actor who created the point.
        """
        if (snapshot_id is None) == (event_id is None):
            raise ValidationError("Exactly one of snapshotId or eventId is required")

        document = await self._documents.get_document(document_id)
        if document is None:
            raise NotFoundError("Document", document_id)

        point: Snapshot | Event | None
        if snapshot_id is not None:
            point = await self._snapshots.get(document_id, snapshot_id)
        else:
            point = await self._events.get(document_id, event_id or "")
        if point is None:
            raise NotFoundError("HistoryPoint", snapshot_id or event_id or "")

        if actor.actor_id not in (document.owner_id, point.actor_id):
            logger.warning(
                "Revert denied",
                document_id=document_id,
                actor_id=actor.actor_id,
                point_id=point.id,
            )
            raise ForbiddenError("Only the document owner or the point's author can revert to it")

        resolved = await self.resolve(document_id, point.id)
        reverted_at = now_ms()
        await self._documents.upsert_state(
            document_id,
            resolved.state,
            updated_at=reverted_at,
            origin_id=actor.client_id,
        )
        await self._pointers.set(
            CurrentPointer(
                document_id=document_id,
                snapshot_id=resolved.snapshot_id,
                event_id=resolved.point_id if resolved.event_index is not None else None,
                updated_by=actor.actor_id,
                updated_at=reverted_at,
            )
        )

        logger.info(
            "Document reverted",
            document_id=document_id,
            actor_id=actor.actor_id,
            point_id=point.id,
            snapshot_index=resolved.snapshot_index,
            event_index=resolved.event_index,
        )
        return resolved

    async def _trim_snapshots(self, document_id: str, plan_tier: PlanTier) -> int:
        policy = policy_for(plan_tier)
        snapshots = await self._snapshots.list_snapshots(document_ids=[document_id])
        excess = select_excess_snapshots(snapshots, policy)
        if not excess:
            return 0
        excess_ids = [point.id for point in excess]
        deleted_events = await self._events.delete_for_snapshots(excess_ids)
        deleted = await self._snapshots.delete_many(excess_ids)
        logger.info(
            "Trimmed snapshots beyond tier limit",
            document_id=document_id,
            deleted_snapshots=deleted,
            deleted_events=deleted_events,
            max_snapshots=policy.max_snapshots,
        )
        return deleted
