"""End-to-end tests for the client-side HistoryEngine.

The engine runs against a HistoryService over in-memory storage, so each
test exercises the cache, cadence, event queue, coordinator and gateway
together.
"""

from unittest.mock import AsyncMock

import pytest
from conftest import DOCUMENT_ID, OWNER_ID, START_MS, FakeClock, build_state

from mindmap_history.auth import ActorContext
from mindmap_history.core.services import HistoryService
from mindmap_history.errors import ForbiddenError, NotFoundError, TransientIOError
from mindmap_history.history.broadcast import InMemoryBroadcastChannel
from mindmap_history.history.cleanup import CleanupJob
from mindmap_history.history.engine import BASELINE_ACTION, REVERT_ACTION, HistoryEngine
from mindmap_history.history.models import GraphNode, GraphState, HistoryPoint, PlanTier, PointKind, Position
from mindmap_history.history.store import InMemoryDocumentStore, InMemoryHistoryStore

MINUTE_MS = 60_000
HOUR_MS = 60 * MINUTE_MS


def make_engine(
    actor: ActorContext,
    history_service: HistoryService,
    document_store: InMemoryDocumentStore,
    channel: InMemoryBroadcastChannel,
    clock: FakeClock,
    node_count: int = 3,
) -> HistoryEngine:
    return HistoryEngine(
        document_id=DOCUMENT_ID,
        owner_id=OWNER_ID,
        actor=actor,
        gateway=history_service,
        document_store=document_store,
        channel=channel,
        initial_state=build_state(node_count),
        clock=clock,
    )


def with_node(state: GraphState, node_id: str) -> GraphState:
    node = GraphNode(id=node_id, type="topic", position=Position(x=0.0, y=50.0), data={"label": node_id})
    return state.model_copy(update={"nodes": (*state.nodes, node)})


class TestUndoRedoScenario:
    @pytest.mark.asyncio()
    async def test_three_four_five_six_nodes_undo_twice_redo_once(
        self,
        owner: ActorContext,
        history_service: HistoryService,
        history_store: InMemoryHistoryStore,
        document_store: InMemoryDocumentStore,
        channel: InMemoryBroadcastChannel,
        clock: FakeClock,
    ) -> None:
        engine = make_engine(owner, history_service, document_store, channel, clock)
        await engine.open(start_sync=False)

        four = await engine.commit(build_state(4), action_name="addNode")
        five = await engine.commit(build_state(5), action_name="addNode")
        clock.advance(11 * MINUTE_MS)
        six = await engine.commit(build_state(6), action_name="addNode")

        assert four is not None and four.kind == PointKind.EVENT
        assert five is not None and five.kind == PointKind.EVENT
        assert six is not None and six.kind == PointKind.SNAPSHOT

        assert await engine.undo() == build_state(5)
        assert await engine.undo() == build_state(4)
        assert engine.live_state == build_state(4)

        assert await engine.redo() == build_state(5)
        assert engine.live_state == build_state(5)
        assert engine.can_undo and engine.can_redo

        assert await engine.flush() == 2
        assert len(history_store.snapshot_rows) == 2
        assert len(history_store.event_rows) == 2

        resolved = await history_service.resolve(DOCUMENT_ID, five.id)
        assert resolved.state == build_state(5)
        assert resolved.event_index == 1
        await engine.close()

    @pytest.mark.asyncio()
    async def test_baseline_is_persisted_before_the_first_event(
        self,
        owner: ActorContext,
        history_service: HistoryService,
        history_store: InMemoryHistoryStore,
        document_store: InMemoryDocumentStore,
        channel: InMemoryBroadcastChannel,
        clock: FakeClock,
    ) -> None:
        engine = make_engine(owner, history_service, document_store, channel, clock)
        await engine.open(start_sync=False)
        assert history_store.snapshot_rows == {}

        point = await engine.commit(build_state(4), action_name="addNode")

        (baseline,) = history_store.snapshot_rows.values()
        assert baseline.action_name == BASELINE_ACTION
        assert baseline.snapshot_index == 0
        assert baseline.state == build_state(3)
        assert point is not None
        assert point.snapshot_id == baseline.id
        assert engine.points[0].snapshot_index == 0
        await engine.close()

    @pytest.mark.asyncio()
    async def test_action_count_cadence_forces_a_snapshot(
        self,
        history_service: HistoryService,
        history_store: InMemoryHistoryStore,
        document_store: InMemoryDocumentStore,
        channel: InMemoryBroadcastChannel,
        clock: FakeClock,
    ) -> None:
        pro_owner = ActorContext(actor_id=OWNER_ID, plan_tier=PlanTier.PRO)
        engine = make_engine(pro_owner, history_service, document_store, channel, clock, node_count=1)
        await engine.open(start_sync=False)

        kinds = []
        for count in range(2, 13):
            point = await engine.commit(build_state(count))
            kinds.append(point.kind)

        # Ten events after the baseline, then a snapshot.
        assert kinds == [PointKind.EVENT] * 10 + [PointKind.SNAPSHOT]
        await engine.close()
        assert len(history_store.event_rows) == 10


class TestRecording:
    @pytest.mark.asyncio()
    async def test_volatile_only_change_is_not_recorded(
        self,
        owner: ActorContext,
        history_service: HistoryService,
        document_store: InMemoryDocumentStore,
        channel: InMemoryBroadcastChannel,
        clock: FakeClock,
    ) -> None:
        engine = make_engine(owner, history_service, document_store, channel, clock)
        await engine.open(start_sync=False)
        selected = build_state(3).model_copy(
            update={"nodes": tuple(n.model_copy(update={"selected": True}) for n in build_state(3).nodes)}
        )

        assert await engine.commit(selected) is None
        assert len(engine.points) == 1
        assert engine.pending_events == 0
        await engine.close()

    @pytest.mark.asyncio()
    async def test_action_name_is_inferred_from_the_mutation(
        self,
        owner: ActorContext,
        history_service: HistoryService,
        document_store: InMemoryDocumentStore,
        channel: InMemoryBroadcastChannel,
        clock: FakeClock,
    ) -> None:
        engine = make_engine(owner, history_service, document_store, channel, clock)
        await engine.open(start_sync=False)

        point = await engine.commit(build_state(1), mutation_event="node:delete")

        assert point is not None
        assert point.action_name == "deleteNodes"
        await engine.close()

    @pytest.mark.asyncio()
    async def test_checkpoint_requires_a_paid_tier(
        self,
        owner: ActorContext,
        history_service: HistoryService,
        history_store: InMemoryHistoryStore,
        document_store: InMemoryDocumentStore,
        channel: InMemoryBroadcastChannel,
        clock: FakeClock,
    ) -> None:
        engine = make_engine(owner, history_service, document_store, channel, clock)
        await engine.open(start_sync=False)

        with pytest.raises(ForbiddenError):
            await engine.create_checkpoint()

        assert history_store.snapshot_rows == {}
        await engine.close()

    @pytest.mark.asyncio()
    async def test_checkpoint_is_a_major_snapshot(
        self,
        history_service: HistoryService,
        history_store: InMemoryHistoryStore,
        document_store: InMemoryDocumentStore,
        channel: InMemoryBroadcastChannel,
        clock: FakeClock,
    ) -> None:
        pro_owner = ActorContext(actor_id=OWNER_ID, plan_tier=PlanTier.PRO)
        engine = make_engine(pro_owner, history_service, document_store, channel, clock)
        await engine.open(start_sync=False)

        receipt = await engine.create_checkpoint("release")

        snapshot = history_store.snapshot_rows[receipt.snapshot_id]
        assert snapshot.is_major
        assert snapshot.action_name == "release"
        await engine.close()


class TestCollaboration:
    @pytest.mark.asyncio()
    async def test_remote_change_reaches_the_other_client_only(
        self,
        owner: ActorContext,
        collaborator: ActorContext,
        history_service: HistoryService,
        document_store: InMemoryDocumentStore,
        channel: InMemoryBroadcastChannel,
        clock: FakeClock,
    ) -> None:
        alice = make_engine(owner, history_service, document_store, channel, clock)
        bob = make_engine(collaborator, history_service, document_store, channel, clock)
        await alice.open(start_sync=False)
        await bob.open(start_sync=False)

        await alice.commit(build_state(4), action_name="addNode")

        assert bob.live_state == build_state(4)
        assert len(bob.points) == 2
        assert bob.points[-1].actor_id == owner.actor_id
        assert len(alice.points) == 2
        assert bob.pending_events == 0
        await alice.close()
        await bob.close()

    @pytest.mark.asyncio()
    async def test_undo_broadcasts_the_reverted_state(
        self,
        owner: ActorContext,
        collaborator: ActorContext,
        history_service: HistoryService,
        document_store: InMemoryDocumentStore,
        channel: InMemoryBroadcastChannel,
        clock: FakeClock,
    ) -> None:
        alice = make_engine(owner, history_service, document_store, channel, clock)
        bob = make_engine(collaborator, history_service, document_store, channel, clock)
        await alice.open(start_sync=False)
        await bob.open(start_sync=False)
        await alice.commit(build_state(4), action_name="addNode")

        await alice.undo()

        assert channel.published[-1].action_name == REVERT_ACTION
        assert channel.published[-1].origin_id == alice.origin_id
        assert bob.live_state == build_state(3)
        assert alice.subscribed
        assert document_store.last_origin[DOCUMENT_ID] == alice.origin_id
        await alice.close()
        await bob.close()

    @pytest.mark.asyncio()
    async def test_close_flushes_and_detaches(
        self,
        owner: ActorContext,
        history_service: HistoryService,
        history_store: InMemoryHistoryStore,
        document_store: InMemoryDocumentStore,
        channel: InMemoryBroadcastChannel,
        clock: FakeClock,
    ) -> None:
        engine = make_engine(owner, history_service, document_store, channel, clock)
        await engine.open()
        await engine.commit(build_state(4), action_name="addNode")
        assert engine.pending_events == 1

        await engine.close()

        assert engine.pending_events == 0
        assert len(history_store.event_rows) == 1
        assert not engine.subscribed
        assert channel.subscribers(DOCUMENT_ID) == 0


class TestPersistedChains:
    @pytest.mark.asyncio()
    async def test_change_after_undo_resolves_to_the_live_state(
        self,
        owner: ActorContext,
        history_service: HistoryService,
        document_store: InMemoryDocumentStore,
        channel: InMemoryBroadcastChannel,
        clock: FakeClock,
    ) -> None:
        engine = make_engine(owner, history_service, document_store, channel, clock)
        await engine.open(start_sync=False)
        with_x = with_node(build_state(3), "x")
        await engine.commit(with_x, action_name="addNode")
        await engine.commit(with_node(with_x, "y"), action_name="addNode")

        await engine.undo()
        z = await engine.commit(with_node(with_x, "z"), action_name="addNode")
        w = await engine.commit(with_node(with_node(with_x, "z"), "w"), action_name="addNode")
        await engine.flush()

        assert z is not None and z.kind == PointKind.SNAPSHOT
        assert w is not None and w.kind == PointKind.EVENT and w.snapshot_id == z.id
        assert (await history_service.resolve(DOCUMENT_ID, z.id)).state == with_node(with_x, "z")
        resolved = await history_service.resolve(DOCUMENT_ID, w.id)
        assert resolved.state == engine.live_state
        assert "y" not in resolved.state.node_map()
        await engine.close()

    @pytest.mark.asyncio()
    async def test_change_after_remote_change_resolves_to_the_live_state(
        self,
        owner: ActorContext,
        collaborator: ActorContext,
        history_service: HistoryService,
        document_store: InMemoryDocumentStore,
        channel: InMemoryBroadcastChannel,
        clock: FakeClock,
    ) -> None:
        alice = make_engine(owner, history_service, document_store, channel, clock)
        bob = make_engine(collaborator, history_service, document_store, channel, clock)
        await alice.open(start_sync=False)
        await bob.open(start_sync=False)
        with_x = with_node(build_state(3), "x")
        await alice.commit(with_x, action_name="addNode")
        assert bob.live_state == with_x

        b = await bob.commit(with_node(with_x, "b"), action_name="addNode")
        c = await bob.commit(with_node(with_node(with_x, "b"), "c"), action_name="addNode")
        await bob.flush()

        assert b is not None and b.kind == PointKind.SNAPSHOT
        assert c is not None and c.snapshot_id == b.id
        resolved = await history_service.resolve(DOCUMENT_ID, c.id)
        assert resolved.state == bob.live_state
        assert "x" in resolved.state.node_map()
        await alice.close()
        await bob.close()

    @pytest.mark.asyncio()
    async def test_change_after_anchor_expired_starts_a_new_chain(
        self,
        owner: ActorContext,
        history_service: HistoryService,
        history_store: InMemoryHistoryStore,
        document_store: InMemoryDocumentStore,
        channel: InMemoryBroadcastChannel,
        clock: FakeClock,
    ) -> None:
        engine = make_engine(owner, history_service, document_store, channel, clock)
        await engine.open(start_sync=False)
        await engine.commit(build_state(4), action_name="addNode")
        await engine.flush()

        clock.advance(25 * HOUR_MS)
        job = CleanupJob(history_store.snapshots, history_store.events, document_store, clock=clock)
        report = await job.run()
        assert (report.deleted_snapshots, report.deleted_events) == (1, 1)

        five = await engine.commit(build_state(5), action_name="addNode")
        six = await engine.commit(build_state(6), action_name="addNode")

        assert five is not None and five.kind == PointKind.SNAPSHOT
        assert six is not None and six.kind == PointKind.EVENT
        assert await engine.flush() == 1
        assert (await history_service.resolve(DOCUMENT_ID, six.id)).state == build_state(6)
        await engine.close()


    @pytest.mark.asyncio()
    async def test_change_after_failed_revert_starts_a_new_chain(
        self,
        owner: ActorContext,
        history_service: HistoryService,
        document_store: InMemoryDocumentStore,
        channel: InMemoryBroadcastChannel,
        clock: FakeClock,
    ) -> None:
        engine = make_engine(owner, history_service, document_store, channel, clock)
        await engine.open(start_sync=False)
        await engine.commit(build_state(4), action_name="addNode")
        document_store.upsert_state = AsyncMock(side_effect=TransientIOError("document store down"))

        with pytest.raises(TransientIOError):
            await engine.undo()

        assert engine.live_state == build_state(3)
        point = await engine.commit(build_state(2), action_name="deleteNodes")
        assert point is not None and point.kind == PointKind.SNAPSHOT
        assert (await history_service.resolve(DOCUMENT_ID, point.id)).state == build_state(2)
        await engine.close()


class TestJumpTo:
    @pytest.mark.asyncio()
    async def test_uncached_point_is_resolved_and_becomes_newest(
        self,
        owner: ActorContext,
        history_service: HistoryService,
        document_store: InMemoryDocumentStore,
        channel: InMemoryBroadcastChannel,
        clock: FakeClock,
    ) -> None:
        first = make_engine(owner, history_service, document_store, channel, clock)
        await first.open(start_sync=False)
        four = await first.commit(build_state(4), action_name="addNode")
        await first.commit(build_state(5), action_name="addNode")
        await first.close()
        assert four is not None

        second_client = ActorContext(actor_id=OWNER_ID, plan_tier=PlanTier.FREE, client_id="client-owner-2")
        second = make_engine(second_client, history_service, document_store, channel, clock, node_count=5)
        await second.open(start_sync=False)
        await second.commit(build_state(6), action_name="addNode")
        await second.undo()
        assert second.can_redo

        state = await second.jump_to(four)

        assert state == build_state(4)
        assert second.live_state == build_state(4)
        assert second.points[-1].id == four.id
        assert second.current_point is not None and second.current_point.id == four.id
        assert not second.can_redo
        assert second.can_undo
        assert second.subscribed
        await second.close()

    @pytest.mark.asyncio()
    async def test_point_of_another_document_is_not_found(
        self,
        owner: ActorContext,
        history_service: HistoryService,
        document_store: InMemoryDocumentStore,
        channel: InMemoryBroadcastChannel,
        clock: FakeClock,
    ) -> None:
        engine = make_engine(owner, history_service, document_store, channel, clock)
        await engine.open(start_sync=False)
        foreign = HistoryPoint(
            id="foreign-point",
            document_id="doc-2",
            kind=PointKind.SNAPSHOT,
            action_name="addNode",
            actor_id=OWNER_ID,
            timestamp=START_MS,
            snapshot_id="foreign-point",
        )

        with pytest.raises(NotFoundError):
            await engine.jump_to(foreign)

        assert engine.live_state == build_state(3)
        assert len(engine.points) == 1
        assert engine.subscribed
        await engine.close()
