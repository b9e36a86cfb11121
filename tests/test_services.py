"""Tests for HistoryService, the persistence gateway.

Most tests use the in-memory repositories; the conflict retry test uses
AsyncMock repositories to force an index collision.
"""

from unittest.mock import AsyncMock

import pytest
from conftest import DOCUMENT_ID, OWNER_ID, START_MS, build_state

from mindmap_history.auth import ActorContext
from mindmap_history.core.services import HistoryService
from mindmap_history.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    QuotaExceededError,
    ValidationError,
)
from mindmap_history.history.delta import compute_delta
from mindmap_history.history.models import (
    HistoryQuery,
    PlanTier,
    PointKind,
    Snapshot,
)
from mindmap_history.history.store import (
    InMemoryDocumentStore,
    InMemoryHistoryStore,
    InMemoryPointerRepository,
)


async def seed_chain(service: HistoryService, owner: ActorContext) -> tuple[str, str, str]:
    """Persist snapshot(3 nodes) -> event(4 nodes) -> event(5 nodes).

    Returns:
        The snapshot id and the two event ids.
    """
    snapshot = await service.create_snapshot(
        DOCUMENT_ID, owner, "baseline", build_state(3), timestamp=START_MS
    )
    first = await service.create_event(
        DOCUMENT_ID,
        snapshot.snapshot_id,
        compute_delta(build_state(3), build_state(4)),
        owner.actor_id,
        "addNode",
        node_count=4,
        timestamp=START_MS + 1,
    )
    second = await service.create_event(
        DOCUMENT_ID,
        snapshot.snapshot_id,
        compute_delta(build_state(4), build_state(5)),
        owner.actor_id,
        "addNode",
        node_count=5,
        timestamp=START_MS + 2,
    )
    return snapshot.snapshot_id, first.event_id, second.event_id


class TestCreateSnapshot:
    @pytest.mark.asyncio()
    async def test_indexes_are_monotonic(self, history_service: HistoryService, owner: ActorContext) -> None:
        first = await history_service.create_snapshot(DOCUMENT_ID, owner, "addNode", build_state(1))
        second = await history_service.create_snapshot(DOCUMENT_ID, owner, "addNode", build_state(2))

        assert (first.snapshot_index, second.snapshot_index) == (0, 1)
        assert first.quota_warning is False

    @pytest.mark.asyncio()
    async def test_same_snapshot_id_is_idempotent(
        self,
        history_service: HistoryService,
        history_store: InMemoryHistoryStore,
        owner: ActorContext,
    ) -> None:
        first = await history_service.create_snapshot(
            DOCUMENT_ID, owner, "addNode", build_state(1), snapshot_id="snap-a"
        )
        again = await history_service.create_snapshot(
            DOCUMENT_ID, owner, "addNode", build_state(1), snapshot_id="snap-a"
        )

        assert again == first
        assert len(history_store.snapshot_rows) == 1

    @pytest.mark.asyncio()
    async def test_manual_checkpoint_forbidden_on_free_tier(
        self, history_service: HistoryService, owner: ActorContext
    ) -> None:
        with pytest.raises(ForbiddenError):
            await history_service.create_snapshot(
                DOCUMENT_ID, owner, "checkpoint", build_state(1), is_major=True
            )

    @pytest.mark.asyncio()
    async def test_manual_checkpoint_allowed_on_pro_tier(self, history_service: HistoryService) -> None:
        pro = ActorContext(actor_id=OWNER_ID, plan_tier=PlanTier.PRO)

        receipt = await history_service.create_snapshot(
            DOCUMENT_ID, pro, "checkpoint", build_state(1), is_major=True
        )

        assert receipt.snapshot_index == 0

    @pytest.mark.asyncio()
    async def test_rejects_writes_over_quota(
        self,
        history_service: HistoryService,
        history_store: InMemoryHistoryStore,
        owner: ActorContext,
    ) -> None:
        await history_store.snapshots.insert(
            Snapshot(
                id="huge",
                document_id="other-doc",
                action_name="import",
                actor_id=owner.actor_id,
                timestamp=START_MS,
                snapshot_id="huge",
                snapshot_index=0,
                state=build_state(1),
                size_bytes=10 * 1024 * 1024,
            )
        )

        with pytest.raises(QuotaExceededError) as exc_info:
            await history_service.create_snapshot(DOCUMENT_ID, owner, "addNode", build_state(1))

        assert exc_info.value.status_code == 507
        usage = await history_service.quota(owner.actor_id, owner.plan_tier)
        assert usage.exceeded and usage.warning

    @pytest.mark.asyncio()
    async def test_trims_non_major_snapshots_beyond_tier_limit(
        self,
        history_service: HistoryService,
        history_store: InMemoryHistoryStore,
        owner: ActorContext,
    ) -> None:
        for count in range(1, 23):
            await history_service.create_snapshot(DOCUMENT_ID, owner, "addNode", build_state(count))

        indexes = sorted(s.snapshot_index for s in history_store.snapshot_rows.values())
        assert len(indexes) == 20
        assert indexes[0] == 2

    @pytest.mark.asyncio()
    async def test_index_conflict_is_retried_once(self, owner: ActorContext) -> None:
        snapshot_repo = AsyncMock()
        snapshot_repo.get.return_value = None
        snapshot_repo.usage_bytes.return_value = 0
        snapshot_repo.next_index.side_effect = [3, 4]
        snapshot_repo.list_snapshots.return_value = []

        async def insert(snapshot: Snapshot) -> Snapshot:
            if snapshot.snapshot_index == 3:
                raise ConflictError("snapshot_index 3 already used")
            return snapshot

        snapshot_repo.insert.side_effect = insert
        service = HistoryService(snapshot_repo, AsyncMock(), AsyncMock(), AsyncMock())

        receipt = await service.create_snapshot(DOCUMENT_ID, owner, "addNode", build_state(1))

        assert receipt.snapshot_index == 4
        assert snapshot_repo.insert.await_count == 2


class TestCreateEvent:
    @pytest.mark.asyncio()
    async def test_empty_delta_is_rejected(self, history_service: HistoryService, owner: ActorContext) -> None:
        with pytest.raises(ValidationError):
            await history_service.create_event(DOCUMENT_ID, "snap", None, owner.actor_id, "noop")

    @pytest.mark.asyncio()
    async def test_missing_anchor_is_not_found(self, history_service: HistoryService, owner: ActorContext) -> None:
        with pytest.raises(NotFoundError):
            await history_service.create_event(
                DOCUMENT_ID,
                "missing",
                compute_delta(build_state(1), build_state(2)),
                owner.actor_id,
                "addNode",
            )

    @pytest.mark.asyncio()
    async def test_redelivered_event_is_written_once(
        self,
        history_service: HistoryService,
        history_store: InMemoryHistoryStore,
        owner: ActorContext,
    ) -> None:
        snapshot = await history_service.create_snapshot(DOCUMENT_ID, owner, "baseline", build_state(1))
        delta = compute_delta(build_state(1), build_state(2))

        first = await history_service.create_event(
            DOCUMENT_ID, snapshot.snapshot_id, delta, owner.actor_id, "addNode", event_id="evt-1"
        )
        again = await history_service.create_event(
            DOCUMENT_ID, snapshot.snapshot_id, delta, owner.actor_id, "addNode", event_id="evt-1"
        )

        assert again == first
        assert len(history_store.event_rows) == 1


class TestReads:
    @pytest.mark.asyncio()
    async def test_resolve_replays_up_to_and_including_the_target(
        self, history_service: HistoryService, owner: ActorContext
    ) -> None:
        snapshot_id, first_id, second_id = await seed_chain(history_service, owner)

        assert (await history_service.resolve(DOCUMENT_ID, snapshot_id)).state == build_state(3)
        assert (await history_service.resolve(DOCUMENT_ID, first_id)).state == build_state(4)
        resolved = await history_service.resolve(DOCUMENT_ID, second_id)
        assert resolved.state == build_state(5)
        assert (resolved.snapshot_index, resolved.event_index) == (0, 1)

    @pytest.mark.asyncio()
    async def test_resolve_unknown_point(self, history_service: HistoryService) -> None:
        with pytest.raises(NotFoundError):
            await history_service.resolve(DOCUMENT_ID, "nope")

    @pytest.mark.asyncio()
    async def test_list_is_newest_first_with_summaries(
        self, history_service: HistoryService, owner: ActorContext
    ) -> None:
        snapshot_id, first_id, second_id = await seed_chain(history_service, owner)

        page = await history_service.list_history(DOCUMENT_ID, HistoryQuery())

        assert [item.id for item in page.items] == [second_id, first_id, snapshot_id]
        assert page.items[0].summary == "1 node added"
        assert page.items[-1].kind == PointKind.SNAPSHOT
        assert page.total == 3
        assert page.has_more is False

    @pytest.mark.asyncio()
    async def test_list_paginates_with_has_more(
        self, history_service: HistoryService, owner: ActorContext
    ) -> None:
        snapshot_id, _, _ = await seed_chain(history_service, owner)

        first_page = await history_service.list_history(DOCUMENT_ID, HistoryQuery(limit=2))
        second_page = await history_service.list_history(DOCUMENT_ID, HistoryQuery(limit=2, offset=2))

        assert len(first_page.items) == 2
        assert first_page.has_more is True
        assert [item.id for item in second_page.items] == [snapshot_id]
        assert second_page.has_more is False

    @pytest.mark.asyncio()
    async def test_list_filters_by_action_and_time(
        self, history_service: HistoryService, owner: ActorContext
    ) -> None:
        await seed_chain(history_service, owner)

        by_action = await history_service.list_history(DOCUMENT_ID, HistoryQuery(action_name="baseline"))
        by_time = await history_service.list_history(DOCUMENT_ID, HistoryQuery(start_ms=START_MS + 1))

        assert [item.action_name for item in by_action.items] == ["baseline"]
        assert by_time.total == 2

    @pytest.mark.asyncio()
    async def test_current_pointer_follows_writes(
        self, history_service: HistoryService, owner: ActorContext
    ) -> None:
        with pytest.raises(NotFoundError):
            await history_service.current(DOCUMENT_ID)

        snapshot_id, _, second_id = await seed_chain(history_service, owner)

        pointer = await history_service.current(DOCUMENT_ID)
        assert (pointer.snapshot_id, pointer.event_id) == (snapshot_id, second_id)


class TestRevert:
    @pytest.mark.asyncio()
    async def test_requires_exactly_one_point_id(
        self, history_service: HistoryService, owner: ActorContext
    ) -> None:
        with pytest.raises(ValidationError):
            await history_service.revert(DOCUMENT_ID, owner)
        with pytest.raises(ValidationError):
            await history_service.revert(DOCUMENT_ID, owner, snapshot_id="a", event_id="b")

    @pytest.mark.asyncio()
    async def test_stranger_cannot_revert(
        self,
        history_service: HistoryService,
        owner: ActorContext,
        stranger: ActorContext,
    ) -> None:
        snapshot_id, _, _ = await seed_chain(history_service, owner)

        with pytest.raises(ForbiddenError):
            await history_service.revert(DOCUMENT_ID, stranger, snapshot_id=snapshot_id)

    @pytest.mark.asyncio()
    async def test_unknown_document(self, history_service: HistoryService, owner: ActorContext) -> None:
        with pytest.raises(NotFoundError):
            await history_service.revert("missing-doc", owner, snapshot_id="a")

    @pytest.mark.asyncio()
    async def test_revert_to_event_writes_resolved_state(
        self,
        history_service: HistoryService,
        document_store: InMemoryDocumentStore,
        pointer_repo: InMemoryPointerRepository,
        owner: ActorContext,
    ) -> None:
        snapshot_id, first_id, _ = await seed_chain(history_service, owner)

        resolved = await history_service.revert(DOCUMENT_ID, owner, event_id=first_id)

        assert resolved.state == build_state(4)
        assert await document_store.load_state(DOCUMENT_ID) == build_state(4)
        stamps = {document_store.updated_at[(DOCUMENT_ID, node.id)] for node in build_state(4).nodes}
        assert len(stamps) == 1
        assert document_store.last_origin[DOCUMENT_ID] == owner.client_id
        pointer = await pointer_repo.get(DOCUMENT_ID)
        assert pointer is not None
        assert (pointer.snapshot_id, pointer.event_id) == (snapshot_id, first_id)

    @pytest.mark.asyncio()
    async def test_revert_keeps_entities_created_later(
        self,
        history_service: HistoryService,
        document_store: InMemoryDocumentStore,
        owner: ActorContext,
    ) -> None:
        snapshot_id, _, _ = await seed_chain(history_service, owner)
        await document_store.upsert_state(DOCUMENT_ID, build_state(5), updated_at=START_MS)

        await history_service.revert(DOCUMENT_ID, owner, snapshot_id=snapshot_id)

        assert len((await document_store.load_state(DOCUMENT_ID)).nodes) == 5
