"""Mindmap history engine service entry point.

Initializes the FastAPI application with:
- structlog JSON logging
- The primary database for history and canonical document tables
  (skipped for the in-memory backend)
- An optional in-process cleanup schedule
- The HistoryError exception handler and the /api history router
"""

import asyncio
import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from mindmap_history.adapters.document_store import DocumentStore
from mindmap_history.adapters.repositories import EventRepository, SnapshotRepository
from mindmap_history.api.router import memory_documents, memory_store, router
from mindmap_history.database import close_database, init_database, session_scope
from mindmap_history.errors import HistoryError
from mindmap_history.history.cleanup import CleanupJob
from mindmap_history.observability import get_logger, setup_logging
from mindmap_history.settings import get_settings

logger = get_logger(__name__)

settings = get_settings()


async def run_scheduled_cleanup() -> None:
    """Run one cleanup pass over every document on the configured backend."""
    if settings.store_backend == "memory":
        await CleanupJob(memory_store.snapshots, memory_store.events, memory_documents).run()
        return
    async with session_scope() as session:
        job = CleanupJob(SnapshotRepository(session), EventRepository(session), DocumentStore(session))
        await job.run()


async def _cleanup_loop(interval_seconds: int) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await run_scheduled_cleanup()
        except Exception:
            logger.exception("Scheduled history cleanup failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle.

    Configures logging, initializes the database for the postgres backend
    and starts the cleanup schedule when one is configured. Stops the
    schedule and disposes the engine on shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        None
    """
    setup_logging(settings.log_level)

    if settings.store_backend == "postgres":
        logger.info("Initializing primary database", service=settings.service_name)
        init_database(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            echo=settings.database_echo,
        )
    else:
        logger.warning("Using the in-memory history backend; history is lost on restart")

    cleanup_task: asyncio.Task[None] | None = None
    if settings.cleanup_interval_seconds > 0:
        logger.info("Starting history cleanup schedule", interval_seconds=settings.cleanup_interval_seconds)
        cleanup_task = asyncio.create_task(_cleanup_loop(settings.cleanup_interval_seconds))

    app.state.settings = settings
    logger.info("History engine startup complete", backend=settings.store_backend)

    yield

    logger.info("Shutting down history engine")
    if cleanup_task is not None:
        cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await cleanup_task
    await close_database()
    logger.info("History engine shutdown complete")


app = FastAPI(title=settings.service_name, version=settings.version, lifespan=lifespan)


@app.exception_handler(HistoryError)
async def history_error_handler(request: Request, exc: HistoryError) -> JSONResponse:
    """Render domain errors as ``{"error": code, "message": ...}``."""
    if exc.status_code >= 500:
        logger.warning("History request failed", path=request.url.path, error=exc.code, message=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "message": exc.message})


@app.get("/health", tags=["health"])
async def health() -> dict[str, str]:
    """Liveness probe."""
    return {"status": "ok", "service": settings.service_name, "version": settings.version}


app.include_router(router, prefix="/api")
