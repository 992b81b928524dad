"""Initial schema: settings documents and activity log.

Revision ID: 001
Revises:
Create Date: 2025-05-02

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    insp = sa.inspect(conn)
    existing = set(insp.get_table_names())

    if "app_documents" not in existing:
        op.create_table(
            "app_documents",
            sa.Column("key", sa.String(128), nullable=False),
            sa.Column("value", sa.JSON(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("key"),
        )

    if "activity_log" not in existing:
        op.create_table(
            "activity_log",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("action", sa.String(100), nullable=False),
            sa.Column("category", sa.String(50), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("details", sa.JSON(), nullable=True),
            sa.Column("entity_type", sa.String(50), nullable=True),
            sa.Column("entity_id", sa.String(255), nullable=True),
            sa.Column("status", sa.String(20), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_activity_log_category", "activity_log", ["category"], unique=False)
        op.create_index("ix_activity_log_action", "activity_log", ["action"], unique=False)
        op.create_index("ix_activity_log_created_at", "activity_log", ["created_at"], unique=False)
        op.create_index("ix_activity_log_entity", "activity_log", ["entity_type", "entity_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_activity_log_entity", table_name="activity_log")
    op.drop_index("ix_activity_log_created_at", table_name="activity_log")
    op.drop_index("ix_activity_log_action", table_name="activity_log")
    op.drop_index("ix_activity_log_category", table_name="activity_log")
    op.drop_table("activity_log")
    op.drop_table("app_documents")
