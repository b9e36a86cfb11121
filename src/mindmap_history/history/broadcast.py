"""Live broadcast contract between collaborators of a document.

The real-time transport is external; the history engine only needs to
subscribe, unsubscribe and publish. Every locally originated message carries
the publishing client's ``origin_id`` and a ChannelSubscription drops
messages with its own origin, so a client never re-ingests its own writes.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

from mindmap_history.history.models import Delta, GraphState
from mindmap_history.observability import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class BroadcastMessage:
    origin_id: str
    document_id: str
    actor_id: str
    action_name: str
    delta: Delta | None = None
    state: GraphState | None = None


MessageHandler = Callable[[BroadcastMessage], Awaitable[None]]


class BroadcastChannel(Protocol):
    """Subscribe/unsubscribe/publish contract of the real-time transport."""

    def subscribe(self, document_id: str, handler: MessageHandler) -> None:
        ...

    def unsubscribe(self, document_id: str, handler: MessageHandler) -> None:
        ...

    async def publish(self, message: BroadcastMessage) -> None:
        ...


class InMemoryBroadcastChannel:
    """Process-local channel delivering every message to all subscribers of a document."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[MessageHandler]] = {}
        self.published: list[BroadcastMessage] = []

    def subscribe(self, document_id: str, handler: MessageHandler) -> None:
        handlers = self._handlers.setdefault(document_id, [])
        if handler not in handlers:
            handlers.append(handler)

    def unsubscribe(self, document_id: str, handler: MessageHandler) -> None:
        handlers = self._handlers.get(document_id, [])
        if handler in handlers:
            handlers.remove(handler)

    def subscribers(self, document_id: str) -> int:
        return len(self._handlers.get(document_id, []))

    async def publish(self, message: BroadcastMessage) -> None:
        self.published.append(message)
        for handler in list(self._handlers.get(message.document_id, [])):
            await handler(message)


class ChannelSubscription:
    """One client's subscription to a document channel.

    Args:
        channel: The transport.
        document_id: Document whose messages to receive.
        origin_id: This client's origin id; messages carrying it are dropped.
        handler: Coroutine invoked for every message from another origin.
    """

    def __init__(
        self,
        channel: BroadcastChannel,
        document_id: str,
        origin_id: str,
        handler: MessageHandler,
    ) -> None:
        self._channel = channel
        self._document_id = document_id
        self._origin_id = origin_id
        self._handler = handler
        self._attached = False

    @property
    def attached(self) -> bool:
        return self._attached

    @property
    def origin_id(self) -> str:
        return self._origin_id

    def attach(self) -> None:
        if not self._attached:
            self._channel.subscribe(self._document_id, self._deliver)
            self._attached = True

    def detach(self) -> None:
        if self._attached:
            self._channel.unsubscribe(self._document_id, self._deliver)
            self._attached = False

    async def publish(self, message: BroadcastMessage) -> None:
        await self._channel.publish(message)

    async def _deliver(self, message: BroadcastMessage) -> None:
        if message.origin_id == self._origin_id:
            logger.debug("Dropping own broadcast", document_id=self._document_id)
            return
        await self._handler(message)
