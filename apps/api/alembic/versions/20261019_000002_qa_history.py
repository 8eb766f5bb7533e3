"""add q&a history tables

Revision ID: 20261019_000002
Revises: 20261019_000001
Create Date: 2026-10-19 00:00:02.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000002"
down_revision: Union[str, None] = "20261019_000001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "qa_messages",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("question", sa.Text(), nullable=False),
        sa.Column("answer", sa.Text(), nullable=False),
        sa.Column("date_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("date_to", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_qa_messages_user_id"), "qa_messages", ["user_id"], unique=False)
    op.create_index("ix_qa_messages_user_created", "qa_messages", ["user_id", "created_at"], unique=False)

    op.create_table(
        "qa_sources",
        sa.Column("qa_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("x_post_id", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.ForeignKeyConstraint(["qa_id"], ["qa_messages.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("qa_id", "x_post_id"),
    )
    op.create_index(op.f("ix_qa_sources_user_id"), "qa_sources", ["user_id"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_qa_sources_user_id"), table_name="qa_sources")
    op.drop_table("qa_sources")
    op.drop_index("ix_qa_messages_user_created", table_name="qa_messages")
    op.drop_index(op.f("ix_qa_messages_user_id"), table_name="qa_messages")
    op.drop_table("qa_messages")
