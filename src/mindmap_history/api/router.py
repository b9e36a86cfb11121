"""API router for mindmap-history-engine.

All history endpoints are registered here and included in main.py under the
/api prefix. Routes are thin: business logic lives in HistoryService and
CleanupJob, and domain errors are rendered by the handler in main.py.

Endpoints:
- GET   /history/quota                       — Storage used by the caller
- GET   /history/{documentId}/list           — Paginated history, newest first
- POST  /history/{documentId}/snapshot       — Persist a full-state snapshot
- POST  /history/{documentId}/revert         — Restore a snapshot or event
- POST  /history/{documentId}/cleanup        — Enforce retention for one document
- GET   /history/{documentId}/current        — Current history position
"""

from collections.abc import AsyncGenerator
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from mindmap_history.adapters.document_store import DocumentStore
from mindmap_history.adapters.repositories import (
    EventRepository,
    PointerRepository,
    SnapshotRepository,
)
from mindmap_history.api.schemas import (
    CleanupResponse,
    CurrentPointerResponse,
    HistoryListResponse,
    HistoryPointResponse,
    QuotaResponse,
    RevertRequest,
    RevertResponse,
    SnapshotCreateRequest,
    SnapshotCreateResponse,
)
from mindmap_history.auth import ActorContext, get_current_actor
from mindmap_history.core.services import HistoryService
from mindmap_history.database import session_scope
from mindmap_history.history.cleanup import CleanupJob
from mindmap_history.history.models import GraphState, HistoryQuery, to_ms
from mindmap_history.history.store import (
    InMemoryDocumentStore,
    InMemoryHistoryStore,
    InMemoryPointerRepository,
)
from mindmap_history.observability import get_logger
from mindmap_history.settings import Settings, get_settings

logger = get_logger(__name__)

router = APIRouter(tags=["history"])

# Process-wide tables for the memory backend
memory_store = InMemoryHistoryStore()
memory_pointers = InMemoryPointerRepository()
memory_documents = InMemoryDocumentStore()


# ---------------------------------------------------------------------------
# Dependency factories
# ---------------------------------------------------------------------------


async def get_history_service(
    settings: Annotated[Settings, Depends(get_settings)],
) -> AsyncGenerator[HistoryService, None]:
    """Construct HistoryService over the configured storage backend.

    With the postgres backend one session spans the request and is committed
    when the handler returns.

    Args:
        settings: Service settings.

    Yields:
        Fully wired HistoryService instance.
    """
    if settings.store_backend == "memory":
        yield HistoryService(
            snapshot_repo=memory_store.snapshots,
            event_repo=memory_store.events,
            pointer_repo=memory_pointers,
            document_store=memory_documents,
            quota_warning_ratio=settings.quota_warning_ratio,
        )
        return

    async with session_scope() as session:
        yield HistoryService(
            snapshot_repo=SnapshotRepository(session),
            event_repo=EventRepository(session),
            pointer_repo=PointerRepository(session),
            document_store=DocumentStore(session),
            quota_warning_ratio=settings.quota_warning_ratio,
        )


async def get_cleanup_job(
    settings: Annotated[Settings, Depends(get_settings)],
) -> AsyncGenerator[CleanupJob, None]:
    """Construct CleanupJob over the configured storage backend.

    Args:
        settings: Service settings.

    Yields:
        CleanupJob instance.
    """
    if settings.store_backend == "memory":
        yield CleanupJob(memory_store.snapshots, memory_store.events, memory_documents)
        return

    async with session_scope() as session:
        yield CleanupJob(SnapshotRepository(session), EventRepository(session), DocumentStore(session))


# ---------------------------------------------------------------------------
# Quota
# ---------------------------------------------------------------------------


@router.get("/history/quota", response_model=QuotaResponse)
async def get_quota(
    actor: Annotated[ActorContext, Depends(get_current_actor)],
    service: Annotated[HistoryService, Depends(get_history_service)],
) -> QuotaResponse:
    """Report the caller's snapshot storage against their tier quota.

    Args:
        actor: Authenticated caller.
        service: Injected HistoryService.

    Returns:
        Used and allowed bytes with warning flags.
    """
    usage = await service.quota(actor.actor_id, actor.plan_tier)
    return QuotaResponse(
        used_bytes=usage.used_bytes,
        quota_bytes=usage.quota_bytes,
        warning=usage.warning,
        exceeded=usage.exceeded,
    )


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


@router.get("/history/{document_id}/list", response_model=HistoryListResponse)
async def list_history(
    document_id: str,
    actor: Annotated[ActorContext, Depends(get_current_actor)],
    service: Annotated[HistoryService, Depends(get_history_service)],
    settings: Annotated[Settings, Depends(get_settings)],
    limit: Annotated[int | None, Query(ge=1)] = None,
    offset: Annotated[int, Query(ge=0)] = 0,
    start_date: Annotated[datetime | None, Query(alias="startDate")] = None,
    end_date: Annotated[datetime | None, Query(alias="endDate")] = None,
    action_name: Annotated[str | None, Query(alias="actionName")] = None,
) -> HistoryListResponse:
    """List snapshot and event metadata for a document, newest first.

    ``limit`` defaults to the configured page size and is capped at the
    configured maximum.

    Args:
        document_id: Target document.
        actor: Authenticated caller.
        service: Injected HistoryService.
        settings: Service settings.
        limit: Page size.
        offset: Number of points to skip.
        start_date: Only points at or after this time.
        end_date: Only points at or before this time.
        action_name: Only points with this action name.

    Returns:
        One page of history points.
    """
    query = HistoryQuery(
        limit=min(limit or settings.list_default_limit, settings.list_max_limit),
        offset=offset,
        start_ms=to_ms(start_date) if start_date is not None else None,
        end_ms=to_ms(end_date) if end_date is not None else None,
        action_name=action_name,
    )
    logger.info("GET /history/list", document_id=document_id, actor_id=actor.actor_id, offset=offset)
    page = await service.list_history(document_id, query)
    return HistoryListResponse(
        items=[HistoryPointResponse.from_point(point) for point in page.items],
        total=page.total,
        has_more=page.has_more,
    )


@router.post(
    "/history/{document_id}/snapshot",
    response_model=SnapshotCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_snapshot(
    document_id: str,
    request: SnapshotCreateRequest,
    actor: Annotated[ActorContext, Depends(get_current_actor)],
    service: Annotated[HistoryService, Depends(get_history_service)],
) -> SnapshotCreateResponse:
    """Persist a full-state snapshot of a document.

    Args:
        document_id: Target document.
        request: Action name, graph state and checkpoint flag.
        actor: Authenticated caller.
        service: Injected HistoryService.

    Returns:
        The snapshot id and index, and whether the caller is near their quota.
    """
    logger.info(
        "POST /history/snapshot",
        document_id=document_id,
        actor_id=actor.actor_id,
        action_name=request.action_name,
        is_major=request.is_major,
    )
    receipt = await service.create_snapshot(
        document_id=document_id,
        actor=actor,
        action_name=request.action_name,
        state=GraphState(nodes=tuple(request.nodes), edges=tuple(request.edges)),
        is_major=request.is_major,
        snapshot_id=request.snapshot_id,
    )
    return SnapshotCreateResponse(
        snapshot_id=receipt.snapshot_id,
        snapshot_index=receipt.snapshot_index,
        quota_warning=receipt.quota_warning,
    )


@router.post("/history/{document_id}/revert", response_model=RevertResponse)
async def revert(
    document_id: str,
    request: RevertRequest,
    actor: Annotated[ActorContext, Depends(get_current_actor)],
    service: Annotated[HistoryService, Depends(get_history_service)],
) -> RevertResponse:
    """Restore a document's canonical state to a snapshot or an event.

    Args:
        document_id: Target document.
        request: Exactly one of snapshotId and eventId.
        actor: Authenticated caller.
        service: Injected HistoryService.

    Returns:
        The state written to the document.
    """
    logger.info(
        "POST /history/revert",
        document_id=document_id,
        actor_id=actor.actor_id,
        snapshot_id=request.snapshot_id,
        event_id=request.event_id,
    )
    resolved = await service.revert(
        document_id,
        actor,
        snapshot_id=request.snapshot_id,
        event_id=request.event_id,
    )
    return RevertResponse(
        nodes=list(resolved.state.nodes),
        edges=list(resolved.state.edges),
        snapshot_index=resolved.snapshot_index,
        event_index=resolved.event_index,
    )


@router.post("/history/{document_id}/cleanup", response_model=CleanupResponse)
async def cleanup(
    document_id: str,
    actor: Annotated[ActorContext, Depends(get_current_actor)],
    job: Annotated[CleanupJob, Depends(get_cleanup_job)],
) -> CleanupResponse:
    """Run retention cleanup for one document. Owner only.

    Args:
        document_id: Target document.
        actor: Authenticated caller.
        job: Injected CleanupJob.

    Returns:
        Counts of deleted snapshots and events and the pass duration.
    """
    logger.info("POST /history/cleanup", document_id=document_id, actor_id=actor.actor_id)
    report = await job.run(document_id, actor_id=actor.actor_id)
    return CleanupResponse(
        deleted_snapshots=report.deleted_snapshots,
        deleted_events=report.deleted_events,
        execution_time_ms=report.execution_time_ms,
    )


@router.get("/history/{document_id}/current", response_model=CurrentPointerResponse)
async def get_current(
    document_id: str,
    actor: Annotated[ActorContext, Depends(get_current_actor)],
    service: Annotated[HistoryService, Depends(get_history_service)],
) -> CurrentPointerResponse:
    """Get the current history position of a document.

    Args:
        document_id: Target document.
        actor: Authenticated caller.
        service: Injected HistoryService.

    Returns:
        The current pointer.
    """
    pointer = await service.current(document_id)
    return CurrentPointerResponse.from_pointer(pointer)
