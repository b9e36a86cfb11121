"""Create history and canonical document tables

Revision ID: 0001_create_history_tables
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision = "0001_create_history_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "documents",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("plan_tier", sa.String(20), nullable=False, server_default="free"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_documents_owner_id", "documents", ["owner_id"])
    op.create_index("ix_documents_plan_tier", "documents", ["plan_tier"])

    for table in ("document_nodes", "document_edges"):
        op.create_table(
            table,
            sa.Column(
                "document_id",
                sa.String(64),
                sa.ForeignKey("documents.id", ondelete="CASCADE"),
                primary_key=True,
            ),
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column("payload", JSONB, nullable=False),
            sa.Column("origin_id", sa.String(64), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        )

    op.create_table(
        "history_snapshots",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("document_id", sa.String(64), nullable=False),
        sa.Column("actor_id", sa.String(64), nullable=False),
        sa.Column("snapshot_index", sa.Integer, nullable=False),
        sa.Column("action_name", sa.String(120), nullable=False),
        sa.Column("nodes", JSONB, nullable=False),
        sa.Column("edges", JSONB, nullable=False),
        sa.Column("node_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("edge_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("size_bytes", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("is_major", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("document_id", "snapshot_index", name="uq_history_snapshots_document_index"),
    )
    op.create_index("ix_history_snapshots_document_id", "history_snapshots", ["document_id"])
    op.create_index("ix_history_snapshots_actor_id", "history_snapshots", ["actor_id"])
    op.create_index(
        "ix_history_snapshots_document_created", "history_snapshots", ["document_id", "created_at"]
    )

    op.create_table(
        "history_events",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("document_id", sa.String(64), nullable=False),
        sa.Column("actor_id", sa.String(64), nullable=False),
        sa.Column(
            "snapshot_id",
            sa.String(64),
            sa.ForeignKey("history_snapshots.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_index", sa.Integer, nullable=False),
        sa.Column("action_name", sa.String(120), nullable=False),
        sa.Column("operation", sa.String(16), nullable=False),
        sa.Column("entity_scope", sa.String(16), nullable=False),
        sa.Column("changes", JSONB, nullable=False),
        sa.Column("node_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("edge_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("snapshot_id", "event_index", name="uq_history_events_snapshot_index"),
    )
    op.create_index("ix_history_events_document_id", "history_events", ["document_id"])
    op.create_index("ix_history_events_snapshot_id", "history_events", ["snapshot_id"])
    op.create_index("ix_history_events_document_created", "history_events", ["document_id", "created_at"])

    op.create_table(
        "history_pointers",
        sa.Column("document_id", sa.String(64), primary_key=True),
        sa.Column("snapshot_id", sa.String(64), nullable=False),
        sa.Column("event_id", sa.String(64), nullable=True),
        sa.Column("updated_by", sa.String(64), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("history_pointers")
    op.drop_table("history_events")
    op.drop_table("history_snapshots")
    op.drop_table("document_edges")
    op.drop_table("document_nodes")
    op.drop_table("documents")
