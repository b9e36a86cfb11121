"""SQLAlchemy implementation of the canonical document store.

Reverts write their resolved state here with one ``updated_at`` for every
touched entity. Writes are upserts only: entities missing from the written
state are not deleted.
"""

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from mindmap_history.adapters.repositories import storage_errors
from mindmap_history.core.models import Document, DocumentEdge, DocumentNode
from mindmap_history.history.models import (
    DocumentInfo,
    GraphEdge,
    GraphNode,
    GraphState,
    PlanTier,
    from_ms,
    stable_fields,
)
from mindmap_history.observability import get_logger

logger = get_logger(__name__)


class DocumentStore:
    """Reads and upserts live document state.

    Args:
        session: The SQLAlchemy async session.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_document(self, document_id: str) -> DocumentInfo | None:
        row = (
            await self._session.execute(select(Document).where(Document.id == document_id))
        ).scalar_one_or_none()
        if row is None:
            return None
        return DocumentInfo(document_id=row.id, owner_id=row.owner_id, plan_tier=PlanTier(row.plan_tier))

    async def list_document_ids(self, plan_tier: PlanTier | None = None) -> list[str]:
        stmt = select(Document.id)
        if plan_tier is not None:
            stmt = stmt.where(Document.plan_tier == plan_tier.value)
        return list((await self._session.execute(stmt.order_by(Document.id))).scalars().all())

    async def load_state(self, document_id: str) -> GraphState:
        nodes = (
            await self._session.execute(
                select(DocumentNode.payload).where(DocumentNode.document_id == document_id)
            )
        ).scalars().all()
        edges = (
            await self._session.execute(
                select(DocumentEdge.payload).where(DocumentEdge.document_id == document_id)
            )
        ).scalars().all()
        return GraphState(
            nodes=tuple(GraphNode.model_validate(payload) for payload in nodes),
            edges=tuple(GraphEdge.model_validate(payload) for payload in edges),
        )

    async def upsert_state(
        self,
        document_id: str,
        state: GraphState,
        updated_at: int,
        origin_id: str | None = None,
    ) -> None:
        """Insert or update every entity of ``state`` stamped with ``updated_at``."""
        stamp = from_ms(updated_at)
        async with storage_errors("upsert document state"):
            for table, entities in ((DocumentNode, state.nodes), (DocumentEdge, state.edges)):
                if not entities:
                    continue
                stmt = pg_insert(table).values(
                    [
                        {
                            "document_id": document_id,
                            "id": entity.id,
                            "payload": stable_fields(entity),
                            "origin_id": origin_id,
                            "updated_at": stamp,
                        }
                        for entity in entities
                    ]
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[table.document_id, table.id],
                    set_={
                        "payload": stmt.excluded.payload,
                        "origin_id": stmt.excluded.origin_id,
                        "updated_at": stmt.excluded.updated_at,
                    },
                )
                await self._session.execute(stmt)

        logger.info(
            "Document state upserted",
            document_id=document_id,
            nodes=len(state.nodes),
            edges=len(state.edges),
        )
