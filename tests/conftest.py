"""Test fixtures for mindmap-history-engine.

Provides:
- owner / collaborator / stranger: ActorContext fixtures for the test document
- history_store, pointer_repo, document_store: in-memory storage
- history_service: HistoryService wired to the in-memory storage
- channel: an InMemoryBroadcastChannel
- clock: a manually advanced clock returning epoch ms
- make_state: factory building deterministic graph states
"""

from collections.abc import Callable

import pytest

from mindmap_history.auth import ActorContext
from mindmap_history.core.services import HistoryService
from mindmap_history.history.broadcast import InMemoryBroadcastChannel
from mindmap_history.history.models import GraphEdge, GraphNode, GraphState, PlanTier, Position
from mindmap_history.history.store import (
    InMemoryDocumentStore,
    InMemoryHistoryStore,
    InMemoryPointerRepository,
)

DOCUMENT_ID = "doc-1"
OWNER_ID = "user-owner"
START_MS = 1_700_000_000_000


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start_ms: int = START_MS) -> None:
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def build_state(node_count: int, edge_count: int = 0) -> GraphState:
    """Build a graph of ``node_count`` nodes n0..nN, optionally chained by edges.

    States of increasing size share their prefix, so build_state(4) is
    build_state(3) plus one node.
    """
    nodes = tuple(
        GraphNode(
            id=f"n{i}",
            type="topic",
            position=Position(x=i * 100.0, y=0.0),
            data={"label": f"Node {i}"},
        )
        for i in range(node_count)
    )
    edges = tuple(
        GraphEdge(id=f"e{i}", source=f"n{i}", target=f"n{i + 1}")
        for i in range(min(edge_count, max(node_count - 1, 0)))
    )
    return GraphState(nodes=nodes, edges=edges)


@pytest.fixture()
def make_state() -> Callable[..., GraphState]:
    """Return the deterministic state factory."""
    return build_state


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def owner() -> ActorContext:
    """The document owner on the free tier."""
    return ActorContext(actor_id=OWNER_ID, plan_tier=PlanTier.FREE, client_id="client-owner")


@pytest.fixture()
def collaborator() -> ActorContext:
    return ActorContext(actor_id="user-collaborator", plan_tier=PlanTier.PRO, client_id="client-collab")


@pytest.fixture()
def stranger() -> ActorContext:
    return ActorContext(actor_id="user-stranger", plan_tier=PlanTier.FREE)


@pytest.fixture()
def history_store() -> InMemoryHistoryStore:
    return InMemoryHistoryStore()


@pytest.fixture()
def pointer_repo() -> InMemoryPointerRepository:
    return InMemoryPointerRepository()


@pytest.fixture()
def document_store() -> InMemoryDocumentStore:
    """Document store holding DOCUMENT_ID, owned by OWNER_ID on the free tier."""
    store = InMemoryDocumentStore()
    store.add_document(DOCUMENT_ID, OWNER_ID, PlanTier.FREE, build_state(3))
    return store


@pytest.fixture()
def history_service(
    history_store: InMemoryHistoryStore,
    pointer_repo: InMemoryPointerRepository,
    document_store: InMemoryDocumentStore,
) -> HistoryService:
    """HistoryService over the in-memory storage fixtures."""
    return HistoryService(
        snapshot_repo=history_store.snapshots,
        event_repo=history_store.events,
        pointer_repo=pointer_repo,
        document_store=document_store,
    )


@pytest.fixture()
def channel() -> InMemoryBroadcastChannel:
    return InMemoryBroadcastChannel()
