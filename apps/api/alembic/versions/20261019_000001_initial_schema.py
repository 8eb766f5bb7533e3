"""create initial schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("x_username", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)
    op.create_index(op.f("ix_users_x_username"), "users", ["x_username"], unique=False)

    op.create_table(
        "authors",
        sa.Column("x_author_id", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("handle", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("x_author_id"),
    )
    op.create_index(op.f("ix_authors_handle"), "authors", ["handle"], unique=False)

    op.create_table(
        "user_following",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("x_author_id", sa.BigInteger(), nullable=False),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["x_author_id"], ["authors.x_author_id"]),
        sa.PrimaryKeyConstraint("user_id", "x_author_id"),
    )
    op.create_index(op.f("ix_user_following_x_author_id"), "user_following", ["x_author_id"], unique=False)

    op.create_table(
        "posts",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("x_post_id", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("author_id", sa.BigInteger(), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("url", sa.String(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("conversation_id", sa.BigInteger(), nullable=True),
        sa.Column("ingested_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("first_visible_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("edited_seen", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["author_id"], ["authors.x_author_id"]),
        sa.PrimaryKeyConstraint("user_id", "x_post_id"),
    )
    op.create_index(op.f("ix_posts_author_id"), "posts", ["author_id"], unique=False)
    op.create_index(op.f("ix_posts_published_at"), "posts", ["published_at"], unique=False)
    op.create_index("ix_posts_user_published", "posts", ["user_id", "published_at"], unique=False)

    op.create_table(
        "ingest_runs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="ok"),
        sa.Column("cursor", sa.String(), nullable=False, server_default=""),
        sa.Column("since_id", sa.BigInteger(), nullable=False, server_default="1000000000"),
        sa.Column("fetched_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retried", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rate_limit_hits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("err_text", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_ingest_runs_user_id"), "ingest_runs", ["user_id"], unique=False)
    op.create_index(op.f("ix_ingest_runs_started_at"), "ingest_runs", ["started_at"], unique=False)
    op.create_index(op.f("ix_ingest_runs_completed_at"), "ingest_runs", ["completed_at"], unique=False)
    op.create_index(
        "uq_ingest_runs_active_user",
        "ingest_runs",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("completed_at IS NULL"),
        sqlite_where=sa.text("completed_at IS NULL"),
    )


def downgrade() -> None:
    op.drop_index("uq_ingest_runs_active_user", table_name="ingest_runs")
    op.drop_index(op.f("ix_ingest_runs_completed_at"), table_name="ingest_runs")
    op.drop_index(op.f("ix_ingest_runs_started_at"), table_name="ingest_runs")
    op.drop_index(op.f("ix_ingest_runs_user_id"), table_name="ingest_runs")
    op.drop_table("ingest_runs")
    op.drop_index("ix_posts_user_published", table_name="posts")
    op.drop_index(op.f("ix_posts_published_at"), table_name="posts")
    op.drop_index(op.f("ix_posts_author_id"), table_name="posts")
    op.drop_table("posts")
    op.drop_index(op.f("ix_user_following_x_author_id"), table_name="user_following")
    op.drop_table("user_following")
    op.drop_index(op.f("ix_authors_handle"), table_name="authors")
    op.drop_table("authors")
    op.drop_index(op.f("ix_users_x_username"), table_name="users")
    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_table("users")
