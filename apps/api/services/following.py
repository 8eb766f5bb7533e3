"""Per-user follow relationships and the following list service."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.author import Author
from models.user_following import UserFollowing
from services.authors import dialect_insert


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async def upsert_following(
    db: AsyncSession,
    *,
    user_id: str,
    x_author_id: int,
    last_checked_at: datetime,
) -> None:
    stmt = dialect_insert(db, UserFollowing).values(
        user_id=user_id,
        x_author_id=x_author_id,
        last_checked_at=last_checked_at,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[UserFollowing.user_id, UserFollowing.x_author_id],
        set_={"last_checked_at": stmt.excluded.last_checked_at},
    )
    await db.execute(stmt)


async def list_followed_authors(
    db: AsyncSession,
    user_id: str,
    *,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Followed authors joined with their profile, newest author id first."""
    query = (
        select(
            Author.x_author_id,
            Author.handle,
            Author.display_name,
            Author.last_seen_at,
            UserFollowing.last_checked_at,
        )
        .join(Author, UserFollowing.x_author_id == Author.x_author_id)
        .where(UserFollowing.user_id == user_id)
        .order_by(Author.x_author_id.desc())
    )
    if limit is not None:
        query = query.limit(limit)
    result = await db.execute(query)
    return [
        {
            "x_author_id": int(row.x_author_id),
            "handle": row.handle,
            "display_name": row.display_name or "",
            "last_seen_at": _as_utc(row.last_seen_at),
            "last_checked_at": _as_utc(row.last_checked_at),
        }
        for row in result.all()
    ]


async def count_following(db: AsyncSession, user_id: str) -> int:
    result = await db.execute(
        select(func.count()).select_from(UserFollowing).where(UserFollowing.user_id == user_id)
    )
    return int(result.scalar_one() or 0)


async def list_following_service(
    *,
    user_id: str,
    limit: int,
    db: AsyncSession,
) -> Dict[str, Any]:
    max_limit = max(1, min(int(limit), 200))
    items = await list_followed_authors(db, user_id, limit=max_limit)
    total = await count_following(db, user_id)
    payload = [
        {
            **item,
            "x_author_id": str(item["x_author_id"]),
            "last_seen_at": item["last_seen_at"].isoformat() if item["last_seen_at"] else None,
            "last_checked_at": item["last_checked_at"].isoformat() if item["last_checked_at"] else None,
        }
        for item in items
    ]
    return {"count": len(payload), "total": total, "items": payload}
