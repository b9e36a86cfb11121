"""Client-side history engine for one open document.

HistoryEngine owns everything a client needs to record and navigate the
history of a document: the undo cache, the snapshot cadence, the background
event queue, the live channel subscription and the revert coordinator. UI
code drives it through ``commit``, ``undo``, ``redo`` and ``jump_to`` and
reads the read-only projections (``live_state``, ``points``, ``can_undo``,
``can_redo``).

Recording a mutation:

    engine = HistoryEngine(document_id, owner_id, actor, gateway, store, channel, state)
    await engine.open()
    await engine.commit(new_state, action_name="addNode")
    await engine.undo()
    await engine.close()

The first recorded change lazily persists a baseline snapshot of the state
the document was opened with. Later changes become delta events anchored to
the latest snapshot, or full snapshots whenever the tier's cadence says so.
The first change after a revert or a collaborator's change is always a full
snapshot, since the live state no longer extends the anchor's event chain.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable

from mindmap_history.auth import ActorContext
from mindmap_history.core.interfaces import IDocumentStore, IHistoryGateway
from mindmap_history.errors import ForbiddenError, HistoryError, NotFoundError
from mindmap_history.history.broadcast import BroadcastChannel, BroadcastMessage, ChannelSubscription
from mindmap_history.history.cache import HistoryCache
from mindmap_history.history.coordinator import RevertCoordinator
from mindmap_history.history.delta import apply_delta, compute_delta
from mindmap_history.history.formatting import infer_action_name
from mindmap_history.history.models import (
    GraphState,
    HistoryPoint,
    PointKind,
    SnapshotReceipt,
    now_ms,
)
from mindmap_history.history.retention import RetentionPolicy, policy_for, should_snapshot
from mindmap_history.history.sync import EventSyncQueue, PendingEvent
from mindmap_history.observability import get_logger

logger = get_logger(__name__)

BASELINE_ACTION = "baseline"
REVERT_ACTION = "historyRevert"


class HistoryEngine:
    """Owned history state of one open document.

    Args:
        document_id: The open document.
        owner_id: Owner of the document, used for revert permission checks.
        actor: The local user, their plan tier and client id.
        gateway: Persistence gateway.
        document_store: Canonical document store written by reverts.
        channel: Live broadcast transport.
        initial_state: Graph state the document was opened with.
        policy: Retention policy; defaults to the actor's tier policy.
        clock: Returns the current time in epoch ms.
        sync_interval_seconds: Background event flush period.
        sync_max_retries: Transient retries per queued event within one flush.
        sync_base_delay_ms: Backoff base delay for those retries.
    """

    def __init__(
        self,
        document_id: str,
        owner_id: str,
        actor: ActorContext,
        gateway: IHistoryGateway,
        document_store: IDocumentStore,
        channel: BroadcastChannel,
        initial_state: GraphState | None = None,
        policy: RetentionPolicy | None = None,
        clock: Callable[[], int] = now_ms,
        sync_interval_seconds: float = 30.0,
        sync_max_retries: int = 3,
        sync_base_delay_ms: int = 200,
    ) -> None:
        self._document_id = document_id
        self._owner_id = owner_id
        self._actor = actor
        self._gateway = gateway
        self._policy = policy or policy_for(actor.plan_tier)
        self._clock = clock
        self._live_state = initial_state or GraphState()
        self._origin_id = actor.client_id or str(uuid.uuid4())

        self._cache = HistoryCache(self._policy.cache_size)
        self._subscription = ChannelSubscription(
            channel, document_id, self._origin_id, self._on_remote_message
        )
        self._queue = EventSyncQueue(
            gateway,
            interval_seconds=sync_interval_seconds,
            max_retries=sync_max_retries,
            base_delay_ms=sync_base_delay_ms,
        )
        self._coordinator = RevertCoordinator(
            document_id=document_id,
            owner_id=owner_id,
            cache=self._cache,
            gateway=gateway,
            document_store=document_store,
            subscription=self._subscription,
            apply_state=self._replace_live_state,
            clock=clock,
        )

        self._baseline: HistoryPoint | None = None
        self._anchor_id: str | None = None
        self._anchor_index: int | None = None
        self._events_in_chain = 0
        self._actions_since_snapshot = 0
        self._last_snapshot_at = clock()
        self._force_snapshot = False

    # ------------------------------------------------------------------
    # Read-only projections
    # ------------------------------------------------------------------

    @property
    def document_id(self) -> str:
        return self._document_id

    @property
    def origin_id(self) -> str:
        return self._origin_id

    @property
    def live_state(self) -> GraphState:
        return self._live_state

    @property
    def policy(self) -> RetentionPolicy:
        return self._policy

    @property
    def points(self) -> tuple[HistoryPoint, ...]:
        return tuple(entry.point for entry in self._cache.entries)

    @property
    def current_point(self) -> HistoryPoint | None:
        entry = self._cache.current
        return entry.point if entry is not None else None

    @property
    def can_undo(self) -> bool:
        return self._cache.can_undo and not self._cache.is_reverting

    @property
    def can_redo(self) -> bool:
        return self._cache.can_redo and not self._cache.is_reverting

    @property
    def is_reverting(self) -> bool:
        return self._cache.is_reverting

    @property
    def pending_events(self) -> int:
        return len(self._queue)

    @property
    def subscribed(self) -> bool:
        return self._subscription.attached

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self, start_sync: bool = True) -> None:
        """Seed the cache with the opening state and attach to the live channel."""
        timestamp = self._clock()
        baseline_id = str(uuid.uuid4())
        self._baseline = HistoryPoint(
            id=baseline_id,
            document_id=self._document_id,
            kind=PointKind.SNAPSHOT,
            action_name=BASELINE_ACTION,
            actor_id=self._actor.actor_id,
            timestamp=timestamp,
            node_count=len(self._live_state.nodes),
            edge_count=len(self._live_state.edges),
            snapshot_id=baseline_id,
        )
        self._cache.push(self._baseline, self._live_state)
        self._subscription.attach()
        if start_sync:
            self._queue.start()
        logger.info(
            "History engine opened",
            document_id=self._document_id,
            tier=self._policy.tier.value,
            cache_size=self._policy.cache_size,
        )

    async def close(self) -> None:
        """Flush queued events and detach from the live channel."""
        try:
            await self._queue.stop(flush=True)
        finally:
            self._subscription.detach()
            logger.info("History engine closed", document_id=self._document_id)

    async def flush(self) -> int:
        return await self._queue.flush()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def commit(
        self,
        state: GraphState,
        action_name: str | None = None,
        mutation_event: str | None = None,
    ) -> HistoryPoint | None:
        """Record a local mutation that produced ``state``.

        Mutations arriving while a revert is in flight are ignored. A state
        that differs from the live state only in transient UI fields updates
        the live state without recording anything.

        Args:
            state: Graph state after the mutation.
            action_name: Label of the mutation; inferred when omitted.
            mutation_event: Editor event name (e.g. ``node:create``) used to
                infer the label.

        Returns:
            The recorded point, or None when nothing was recorded.

        Raises:
            HistoryError: If a snapshot write fails. The point stays in the
                cache and the next commit is forced to be a snapshot.
        """
        if self._cache.is_reverting:
            logger.debug("Mutation ignored during revert", document_id=self._document_id)
            return None

        previous = self._live_state
        self._live_state = state
        delta = compute_delta(previous, state)
        if delta is None:
            return None

        action = action_name or infer_action_name(delta, mutation_event)
        timestamp = self._clock()

        if self._anchor_id is None and not self._force_snapshot:
            try:
                await self._persist_baseline()
            except HistoryError:
                # Logged by _write_snapshot. With _force_snapshot set, this change
                # is stored as a full snapshot and surfaces the error if that fails too.
                logger.info("Falling back to a full snapshot", document_id=self._document_id)

        take_snapshot = self._force_snapshot or (
            should_snapshot(
                self._actions_since_snapshot,
                timestamp - self._last_snapshot_at,
                self._policy,
            )
            or self._events_in_chain >= self._policy.max_events_per_snapshot
        )

        point_id = str(uuid.uuid4())
        if take_snapshot:
            point = HistoryPoint(
                id=point_id,
                document_id=self._document_id,
                kind=PointKind.SNAPSHOT,
                action_name=action,
                actor_id=self._actor.actor_id,
                timestamp=timestamp,
                node_count=len(state.nodes),
                edge_count=len(state.edges),
                snapshot_id=point_id,
            )
            self._cache.push(point, state)
            receipt = await self._write_snapshot(point, state, is_major=False)
            self._cache.replace_point(point.model_copy(update={"snapshot_index": receipt.snapshot_index}))
        else:
            point = HistoryPoint(
                id=point_id,
                document_id=self._document_id,
                kind=PointKind.EVENT,
                action_name=action,
                actor_id=self._actor.actor_id,
                timestamp=timestamp,
                node_count=len(state.nodes),
                edge_count=len(state.edges),
                snapshot_id=self._anchor_id,
                snapshot_index=self._anchor_index,
                event_index=self._events_in_chain,
                operation=delta.operation,
                entity_scope=delta.entity_scope,
            )
            self._cache.push(point, state)
            self._queue.enqueue(
                PendingEvent(
                    event_id=point_id,
                    document_id=self._document_id,
                    snapshot_id=self._anchor_id or "",
                    delta=delta,
                    actor_id=self._actor.actor_id,
                    action_name=action,
                    node_count=len(state.nodes),
                    edge_count=len(state.edges),
                    timestamp=timestamp,
                )
            )
            self._events_in_chain += 1
            self._actions_since_snapshot += 1

        await self._subscription.publish(
            BroadcastMessage(
                origin_id=self._origin_id,
                document_id=self._document_id,
                actor_id=self._actor.actor_id,
                action_name=action,
                delta=delta,
            )
        )
        return point

    async def create_checkpoint(self, action_name: str = "checkpoint") -> SnapshotReceipt:
        """Persist the live state as a major snapshot.

        Raises:
            ForbiddenError: If the tier does not allow manual checkpoints.
        """
        if not self._policy.allow_manual_checkpoints:
            raise ForbiddenError(
                f"Manual checkpoints are not available on the {self._policy.tier.value} plan"
            )
        timestamp = self._clock()
        point_id = str(uuid.uuid4())
        point = HistoryPoint(
            id=point_id,
            document_id=self._document_id,
            kind=PointKind.SNAPSHOT,
            action_name=action_name,
            actor_id=self._actor.actor_id,
            timestamp=timestamp,
            node_count=len(self._live_state.nodes),
            edge_count=len(self._live_state.edges),
            is_major=True,
            snapshot_id=point_id,
        )
        return await self._write_snapshot(point, self._live_state, is_major=True)

    async def _persist_baseline(self) -> None:
        baseline_entry = self._cache.find(self._baseline.id) if self._baseline else None
        if self._baseline is None or baseline_entry is None:
            # Baseline already evicted from the cache; anchor on the live state instead.
            self._force_snapshot = True
            return
        receipt = await self._write_snapshot(self._baseline, baseline_entry.state, is_major=False)
        self._cache.replace_point(
            self._baseline.model_copy(update={"snapshot_index": receipt.snapshot_index})
        )
        self._last_snapshot_at = self._clock()
        logger.info(
            "Baseline snapshot persisted",
            document_id=self._document_id,
            snapshot_id=self._anchor_id,
        )

    async def _write_snapshot(
        self,
        point: HistoryPoint,
        state: GraphState,
        is_major: bool,
    ) -> SnapshotReceipt:
        try:
            receipt = await self._gateway.create_snapshot(
                document_id=self._document_id,
                actor=self._actor,
                action_name=point.action_name,
                state=state,
                is_major=is_major,
                snapshot_id=point.id,
                timestamp=point.timestamp,
            )
        except HistoryError as exc:
            self._force_snapshot = True
            logger.warning(
                "Snapshot write failed, next change will be a snapshot",
                document_id=self._document_id,
                error=exc.code,
            )
            raise

        self._anchor_id = receipt.snapshot_id
        self._anchor_index = receipt.snapshot_index
        self._events_in_chain = 0
        self._actions_since_snapshot = 0
        self._last_snapshot_at = point.timestamp
        self._force_snapshot = False
        if receipt.quota_warning:
            logger.warning("History storage nearing quota", document_id=self._document_id)
        return receipt

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    async def undo(self) -> GraphState | None:
        """Revert to the previous cached point. Returns None if there is none."""
        target = self._cache.peek_undo()
        if target is None:
            return None
        await self._revert_to(target.point)
        self._cache.move_to(target.point.id)
        return self._live_state

    async def redo(self) -> GraphState | None:
        """Revert to the next cached point. Returns None if there is none."""
        target = self._cache.peek_redo()
        if target is None:
            return None
        await self._revert_to(target.point)
        self._cache.move_to(target.point.id)
        return self._live_state

    async def jump_to(self, point: HistoryPoint) -> GraphState:
        """Revert to any history point, cached or only persisted.

        A point that is no longer cached is resolved through the gateway and
        becomes the newest cache entry, discarding redo entries.

        Raises:
            NotFoundError: If the point belongs to another document.
        """
        if point.document_id != self._document_id:
            raise NotFoundError("HistoryPoint", point.id)
        await self._revert_to(point)
        if self._cache.move_to(point.id) is None:
            self._cache.push(point, self._live_state)
        return self._live_state

    async def _revert_to(self, point: HistoryPoint) -> None:
        state = await self._coordinator.revert(point, self._actor.actor_id)
        await self._subscription.publish(
            BroadcastMessage(
                origin_id=self._origin_id,
                document_id=self._document_id,
                actor_id=self._actor.actor_id,
                action_name=REVERT_ACTION,
                state=state,
            )
        )

    def _replace_live_state(self, state: GraphState) -> None:
        # The live state no longer extends the anchor chain.
        self._live_state = state
        self._force_snapshot = True

    # ------------------------------------------------------------------
    # Remote changes
    # ------------------------------------------------------------------

    async def _on_remote_message(self, message: BroadcastMessage) -> None:
        """Apply a collaborator's change to the live state and cache it.

        Remote points are persisted by the client that produced them, so they
        are only cached here.
        """
        if self._cache.is_reverting:
            return
        if message.state is not None:
            state = message.state
        elif message.delta is not None:
            state = apply_delta(self._live_state, message.delta)
        else:
            return

        self._live_state = state
        self._force_snapshot = True
        self._cache.push(
            HistoryPoint(
                id=str(uuid.uuid4()),
                document_id=self._document_id,
                kind=PointKind.EVENT,
                action_name=message.action_name,
                actor_id=message.actor_id,
                timestamp=self._clock(),
                node_count=len(state.nodes),
                edge_count=len(state.edges),
                operation=message.delta.operation if message.delta else None,
                entity_scope=message.delta.entity_scope if message.delta else None,
            ),
            state,
        )
