"""Revert orchestration for a single open document.

A revert walks a fixed sequence of states:

    IDLE -> PERMISSION_CHECK -> DETACHED -> RESOLVING -> APPLYING
         -> PERSISTING -> REATTACHED -> IDLE

Any step may branch to FAILED. Once the subscription has been detached the
revert always passes through REATTACHED, including on error, so the client
is never left cut off from collaborators. A permission failure exits before
detaching.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum

from mindmap_history.core.interfaces import IDocumentStore, IHistoryGateway
from mindmap_history.errors import ForbiddenError, RevertInProgressError
from mindmap_history.history.broadcast import ChannelSubscription
from mindmap_history.history.cache import HistoryCache
from mindmap_history.history.models import GraphState, HistoryPoint, now_ms
from mindmap_history.observability import get_logger

logger = get_logger(__name__)


class RevertState(str, Enum):
    IDLE = "idle"
    PERMISSION_CHECK = "permission_check"
    DETACHED = "detached"
    RESOLVING = "resolving"
    APPLYING = "applying"
    PERSISTING = "persisting"
    REATTACHED = "reattached"
    FAILED = "failed"


class RevertCoordinator:
    """Moves a document's live state to a history point.

    Args:
        document_id: The open document.
        owner_id: Owner of the document; always allowed to revert.
        cache: The document's HistoryCache; its ``is_reverting`` flag is the
            mutual-exclusion guard.
        gateway: Used to resolve points that are no longer cached.
        document_store: Canonical store receiving the reverted entities.
        subscription: Live channel subscription detached during the revert.
        apply_state: Callback replacing the live state wholesale.
        clock: Returns the current time in epoch ms.
    """

    def __init__(
        self,
        document_id: str,
        owner_id: str,
        cache: HistoryCache,
        gateway: IHistoryGateway,
        document_store: IDocumentStore,
        subscription: ChannelSubscription,
        apply_state: Callable[[GraphState], None],
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._document_id = document_id
        self._owner_id = owner_id
        self._cache = cache
        self._gateway = gateway
        self._document_store = document_store
        self._subscription = subscription
        self._apply_state = apply_state
        self._clock = clock
        self.state = RevertState.IDLE
        self.transitions: list[RevertState] = []

    def _enter(self, state: RevertState) -> None:
        self.state = state
        self.transitions.append(state)
        logger.debug("Revert transition", document_id=self._document_id, state=state.value)

    async def revert(self, target: HistoryPoint, actor_id: str) -> GraphState:
        """Revert the live document to ``target``.

        Args:
            target: History point to move to.
            actor_id: User requesting the revert.

        Returns:
            The state that was applied.

        Raises:
            RevertInProgressError: If another revert is in flight.
            ForbiddenError: If ``actor_id`` is neither the document owner nor
                the author of ``target``.
            HistoryError: Any resolve or persist failure, after reattaching.
        """
        if self._cache.is_reverting:
            raise RevertInProgressError(f"A revert is already running for {self._document_id}")

        self.transitions = []
        self._enter(RevertState.PERMISSION_CHECK)
        if actor_id not in (self._owner_id, target.actor_id):
            self._enter(RevertState.FAILED)
            self._enter(RevertState.IDLE)
            logger.warning(
                "Revert denied",
                document_id=self._document_id,
                actor_id=actor_id,
                point_id=target.id,
            )
            raise ForbiddenError("Only the document owner or the point's author can revert to it")

        self._cache.is_reverting = True
        try:
            self._enter(RevertState.DETACHED)
            self._subscription.detach()

            self._enter(RevertState.RESOLVING)
            cached = self._cache.find(target.id)
            if cached is not None:
                state = cached.state
            else:
                state = (await self._gateway.resolve(self._document_id, target.id)).state

            self._enter(RevertState.APPLYING)
            self._apply_state(state)

            self._enter(RevertState.PERSISTING)
            await self._document_store.upsert_state(
                self._document_id,
                state,
                updated_at=self._clock(),
                origin_id=self._subscription.origin_id,
            )
        except Exception:
            failed_at = self.state
            self._enter(RevertState.FAILED)
            logger.exception(
                "Revert failed",
                document_id=self._document_id,
                point_id=target.id,
                step=failed_at.value,
            )
            raise
        finally:
            self._subscription.attach()
            self._enter(RevertState.REATTACHED)
            self._cache.is_reverting = False
            self._enter(RevertState.IDLE)

        logger.info(
            "Revert applied",
            document_id=self._document_id,
            actor_id=actor_id,
            point_id=target.id,
            nodes=len(state.nodes),
            edges=len(state.edges),
        )
        return state
