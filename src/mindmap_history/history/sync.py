"""Debounced background sync of history events.

Delta events are not written per mutation. The engine enqueues them here and
a background task flushes the queue on a fixed interval, bounding write
amplification during bursts of edits.

Delivery is at-least-once: an entry leaves the queue only after the gateway
confirmed the write, and every entry carries its event id so a redelivered
write is a no-op on the storage side. Transient storage failures are retried
with exponential backoff (full jitter); when retries run out the remaining
entries stay queued for the next flush.
"""

from __future__ import annotations

import asyncio
import contextlib
import random
from collections import deque
from dataclasses import dataclass

from mindmap_history.core.interfaces import IHistoryGateway
from mindmap_history.errors import HistoryError, TransientIOError
from mindmap_history.history.models import Delta
from mindmap_history.observability import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PendingEvent:
    event_id: str
    document_id: str
    snapshot_id: str
    delta: Delta
    actor_id: str
    action_name: str
    node_count: int
    edge_count: int
    timestamp: int


def calculate_backoff(attempt: int, base_delay_ms: int, max_delay_ms: int, jitter: bool = True) -> float:
    """Backoff delay in ms for a zero-based retry attempt: random(0, min(cap, base * 2^n))."""
    delay = min(max_delay_ms, base_delay_ms * (2**attempt))
    if jitter:
        delay = random.uniform(0, delay)
    return delay


class EventSyncQueue:
    """FIFO queue of pending events flushed to the gateway.

    Args:
        gateway: Persistence gateway receiving create_event calls.
        interval_seconds: Period of the background flush.
        max_retries: Retries per entry for TransientIOError within one flush.
        base_delay_ms: Base delay of the exponential backoff.
        max_delay_ms: Cap of a single backoff delay.
    """

    def __init__(
        self,
        gateway: IHistoryGateway,
        interval_seconds: float = 30.0,
        max_retries: int = 3,
        base_delay_ms: int = 200,
        max_delay_ms: int = 5000,
    ) -> None:
        self._gateway = gateway
        self._interval_seconds = interval_seconds
        self._max_retries = max_retries
        self._base_delay_ms = base_delay_ms
        self._max_delay_ms = max_delay_ms
        self._pending: deque[PendingEvent] = deque()
        self._lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None

    @property
    def pending(self) -> tuple[PendingEvent, ...]:
        return tuple(self._pending)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def __len__(self) -> int:
        return len(self._pending)

    def enqueue(self, event: PendingEvent) -> None:
        self._pending.append(event)

    async def flush(self) -> int:
        """Write queued events in FIFO order.

        Concurrent calls are serialized. Each entry is removed only after its
        write is confirmed; on any failure the failing entry and every entry
        behind it remain queued.

        Returns:
            Number of events written by this call.

        Raises:
            TransientIOError: When an entry still fails after max_retries.
            HistoryError: When storage rejects an entry (missing anchor,
                index conflict that survived the gateway's retry).
        """
        async with self._lock:
            written = 0
            while self._pending:
                head = self._pending[0]
                try:
                    await self._write_with_retry(head)
                except TransientIOError:
                    logger.warning(
                        "Event flush stopped, entries left queued",
                        remaining=len(self._pending),
                        written=written,
                    )
                    raise
                except HistoryError as exc:
                    logger.error(
                        "Event rejected by storage, entries left queued",
                        event_id=head.event_id,
                        document_id=head.document_id,
                        error=exc.code,
                        message=exc.message,
                        remaining=len(self._pending),
                        written=written,
                    )
                    raise
                self._pending.popleft()
                written += 1

            if written:
                logger.debug("Flushed history events", written=written)
            return written

    async def _write_with_retry(self, event: PendingEvent) -> None:
        for attempt in range(self._max_retries + 1):
            try:
                await self._gateway.create_event(
                    document_id=event.document_id,
                    snapshot_id=event.snapshot_id,
                    delta=event.delta,
                    actor_id=event.actor_id,
                    action_name=event.action_name,
                    event_id=event.event_id,
                    node_count=event.node_count,
                    edge_count=event.edge_count,
                    timestamp=event.timestamp,
                )
                return
            except TransientIOError:
                if attempt >= self._max_retries:
                    raise
                delay_ms = calculate_backoff(attempt, self._base_delay_ms, self._max_delay_ms)
                logger.debug(
                    "Retrying event write",
                    event_id=event.event_id,
                    attempt=attempt + 1,
                    delay_ms=round(delay_ms, 1),
                )
                await asyncio.sleep(delay_ms / 1000)

    def start(self) -> None:
        """Start the periodic flush task on the running event loop."""
        if self.running:
            logger.warning("Event sync already running")
            return
        self._task = asyncio.create_task(self._run())
        logger.info("Event sync started", interval_seconds=self._interval_seconds)

    async def stop(self, flush: bool = True) -> None:
        """Cancel the periodic task and optionally flush what is still queued."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
            logger.info("Event sync stopped", remaining=len(self._pending))
        if flush:
            await self.flush()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_seconds)
            try:
                await self.flush()
            except HistoryError:
                # Already logged by flush; the entries wait for the next tick.
                continue
            except Exception:
                logger.exception("Event sync tick failed")
