"""Retention enforcement for persisted history.

The cleanup job deletes history that fell out of its tier's retention window
and reports what it removed. For each tier it

1. deletes non-major snapshots older than ``max_age`` and major snapshots
   older than ``2 * max_age``, together with their event chains;
2. trims non-major snapshots beyond ``max_snapshots`` per document;
3. frees space for actors over their storage quota, highest
   ``cleanup_priority`` first, never touching a document's newest snapshot;

and finally sweeps events whose anchor snapshot no longer exists.

The age pass applies to a document's newest snapshot as well. A client never
extends a chain whose anchor is past ``max_age``: every tier's elapsed-time
snapshot cadence is far shorter than its ``max_age``, so the next change
after such a gap is written as a fresh snapshot rather than an event.
"""

from __future__ import annotations

import time
from collections import defaultdict
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from mindmap_history.core.interfaces import IDocumentStore, IEventRepository, ISnapshotRepository
from mindmap_history.errors import ForbiddenError, NotFoundError
from mindmap_history.history.models import HistoryPoint, PlanTier, now_ms
from mindmap_history.history.retention import (
    RetentionPolicy,
    cleanup_priority,
    policy_for,
    select_excess_snapshots,
)
from mindmap_history.observability import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CleanupReport:
    deleted_snapshots: int
    deleted_events: int
    execution_time_ms: int


class CleanupJob:
    """Deletes expired history according to each document's tier policy.

    Args:
        snapshot_repo: Repository implementing ISnapshotRepository.
        event_repo: Repository implementing IEventRepository.
        document_store: Source of document ids and their plan tiers.
        clock: Returns the current time in epoch ms.
    """

    def __init__(
        self,
        snapshot_repo: ISnapshotRepository,
        event_repo: IEventRepository,
        document_store: IDocumentStore,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._snapshots = snapshot_repo
        self._events = event_repo
        self._documents = document_store
        self._clock = clock

    async def run(
        self,
        document_id: str | None = None,
        actor_id: str | None = None,
    ) -> CleanupReport:
        """Run one cleanup pass over every document, or over a single one.

        Only data already past its cutoff is selected, so the job can run
        while writes continue.

        Args:
            document_id: Restrict the pass to one document.
            actor_id: Caller of a single-document pass; must own the document.

        Raises:
            NotFoundError: If ``document_id`` is given and does not exist.
            ForbiddenError: If ``actor_id`` does not own the document.
        """
        started = time.perf_counter()
        now = self._clock()

        if document_id is not None:
            document = await self._documents.get_document(document_id)
            if document is None:
                raise NotFoundError("Document", document_id)
            if actor_id is not None and actor_id != document.owner_id:
                raise ForbiddenError("Only the document owner can run history cleanup")
            scopes = [(document.plan_tier, [document_id])]
        else:
            scopes = [(tier, await self._documents.list_document_ids(tier)) for tier in PlanTier]

        deleted_snapshots = 0
        deleted_events = 0
        for tier, document_ids in scopes:
            if not document_ids:
                continue
            policy = policy_for(tier)
            snapshots = await self._snapshots.list_snapshots(document_ids=document_ids)
            doomed = await self._select(snapshots, policy, now)
            if not doomed:
                continue
            doomed_ids = [point.id for point in doomed]
            deleted_events += await self._events.delete_for_snapshots(doomed_ids)
            deleted_snapshots += await self._snapshots.delete_many(doomed_ids)

        deleted_events += await self._events.delete_orphans()

        report = CleanupReport(
            deleted_snapshots=deleted_snapshots,
            deleted_events=deleted_events,
            execution_time_ms=round((time.perf_counter() - started) * 1000),
        )
        logger.info(
            "History cleanup finished",
            document_id=document_id,
            deleted_snapshots=report.deleted_snapshots,
            deleted_events=report.deleted_events,
            execution_time_ms=report.execution_time_ms,
        )
        return report

    async def _select(
        self,
        snapshots: Sequence[HistoryPoint],
        policy: RetentionPolicy,
        now: int,
    ) -> list[HistoryPoint]:
        doomed: dict[str, HistoryPoint] = {}

        for point in snapshots:
            max_age_ms = policy.major_max_age_ms if point.is_major else policy.max_age_ms
            if now - point.timestamp > max_age_ms:
                doomed[point.id] = point

        by_document: dict[str, list[HistoryPoint]] = defaultdict(list)
        for point in snapshots:
            by_document[point.document_id].append(point)
        for document_points in by_document.values():
            document_points.sort(key=lambda p: p.snapshot_index or 0, reverse=True)
            for point in select_excess_snapshots(document_points, policy):
                doomed[point.id] = point

        newest_ids = {points[0].id for points in by_document.values() if points}
        for point in await self._select_over_quota(snapshots, doomed, newest_ids, policy, now):
            doomed[point.id] = point

        return list(doomed.values())

    async def _select_over_quota(
        self,
        snapshots: Sequence[HistoryPoint],
        doomed: dict[str, HistoryPoint],
        newest_ids: set[str],
        policy: RetentionPolicy,
        now: int,
    ) -> list[HistoryPoint]:
        by_actor: dict[str, list[HistoryPoint]] = defaultdict(list)
        for point in snapshots:
            by_actor[point.actor_id].append(point)

        selected: list[HistoryPoint] = []
        for actor_id, points in by_actor.items():
            used = await self._snapshots.usage_bytes(actor_id)
            used -= sum(p.size_bytes or 0 for p in points if p.id in doomed)
            if used <= policy.storage_quota_bytes:
                continue

            candidates = sorted(
                (p for p in points if p.id not in doomed and p.id not in newest_ids),
                key=lambda p: cleanup_priority(p, policy, now),
                reverse=True,
            )
            for point in candidates:
                if used <= policy.storage_quota_bytes:
                    break
                selected.append(point)
                used -= point.size_bytes or 0

            logger.info(
                "Freeing history storage over quota",
                actor_id=actor_id,
                selected=len(selected),
                remaining_bytes=used,
                quota_bytes=policy.storage_quota_bytes,
            )
        return selected
