"""Global author registry (upsert, lookup, last-seen tracking)."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from ingestion.types import AuthorRecord
from models.author import Author


def dialect_insert(db: AsyncSession, model):
    """Return the dialect-specific INSERT supporting ON CONFLICT clauses."""
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert(model)
    return sqlite.insert(model)


async def upsert_author(
    db: AsyncSession,
    record: AuthorRecord,
    *,
    last_seen_at: Optional[datetime] = None,
) -> int:
    """Insert or refresh an author; handle and display name are last-write-wins."""
    stmt = dialect_insert(db, Author).values(
        x_author_id=record.x_author_id,
        handle=record.handle,
        display_name=record.display_name,
        last_seen_at=last_seen_at,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Author.x_author_id],
        set_={
            "handle": stmt.excluded.handle,
            "display_name": stmt.excluded.display_name,
            "last_seen_at": func.coalesce(stmt.excluded.last_seen_at, Author.last_seen_at),
        },
    )
    await db.execute(stmt)
    return record.x_author_id


async def get_author_by_handle(db: AsyncSession, handle: str) -> Optional[Author]:
    result = await db.execute(select(Author).where(Author.handle == handle).limit(1))
    return result.scalar_one_or_none()


async def update_author_last_seen(db: AsyncSession, x_author_id: int, last_seen_at: datetime) -> bool:
    result = await db.execute(
        update(Author)
        .where(Author.x_author_id == x_author_id)
        .values(last_seen_at=last_seen_at)
    )
    return bool(result.rowcount)
