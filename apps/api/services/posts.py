"""Per-user post store and the date-range read path used by Q&A."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from ingestion.types import PostRecord
from models.author import Author
from models.post import Post
from services.authors import dialect_insert

MAX_RANGE_POSTS = 100


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async def post_exists(db: AsyncSession, *, user_id: str, x_post_id: int) -> bool:
    result = await db.execute(
        select(Post.x_post_id).where(Post.user_id == user_id, Post.x_post_id == x_post_id).limit(1)
    )
    return result.scalar_one_or_none() is not None


async def insert_post(db: AsyncSession, *, user_id: str, record: PostRecord) -> bool:
    """Insert a post once per (user, post id). Returns False when it already existed."""
    now = datetime.now(timezone.utc)
    stmt = dialect_insert(db, Post).values(
        user_id=user_id,
        x_post_id=record.x_post_id,
        author_id=record.author_id,
        published_at=record.published_at,
        url=record.url,
        text=record.text,
        conversation_id=record.conversation_id,
        ingested_at=now,
        first_visible_at=now,
        edited_seen=False,
    )
    stmt = stmt.on_conflict_do_nothing(index_elements=[Post.user_id, Post.x_post_id])
    result = await db.execute(stmt)
    return bool(result.rowcount)


def post_with_author(post: Post, handle: str, display_name: Optional[str]) -> Dict[str, Any]:
    return {
        "x_post_id": int(post.x_post_id),
        "author_id": int(post.author_id),
        "author_handle": handle,
        "author_display_name": display_name or "",
        "published_at": _as_utc(post.published_at),
        "url": post.url,
        "text": post.text,
        "conversation_id": int(post.conversation_id) if post.conversation_id is not None else None,
        "ingested_at": _as_utc(post.ingested_at),
        "first_visible_at": _as_utc(post.first_visible_at),
        "edited_seen": bool(post.edited_seen),
    }


async def get_posts_by_date_range(
    db: AsyncSession,
    *,
    user_id: str,
    date_from: datetime,
    date_to: datetime,
    limit: int = MAX_RANGE_POSTS,
) -> List[Dict[str, Any]]:
    """Posts published within [date_from, date_to], oldest first, with author info."""
    result = await db.execute(
        select(Post, Author.handle, Author.display_name)
        .join(Author, Post.author_id == Author.x_author_id)
        .where(
            Post.user_id == user_id,
            Post.published_at >= date_from,
            Post.published_at <= date_to,
        )
        .order_by(Post.published_at.asc())
        .limit(max(1, min(int(limit), MAX_RANGE_POSTS)))
    )
    return [post_with_author(post, handle, display_name) for post, handle, display_name in result.all()]


async def list_posts_service(
    *,
    user_id: str,
    date_from: datetime,
    date_to: datetime,
    db: AsyncSession,
) -> Dict[str, Any]:
    date_from = _as_utc(date_from)
    date_to = _as_utc(date_to)
    if date_from > date_to:
        raise HTTPException(status_code=422, detail="date_from must be earlier than date_to.")
    rows = await get_posts_by_date_range(db, user_id=user_id, date_from=date_from, date_to=date_to)
    payload = [
        {
            **row,
            "x_post_id": str(row["x_post_id"]),
            "author_id": str(row["author_id"]),
            "conversation_id": str(row["conversation_id"]) if row["conversation_id"] is not None else None,
            "published_at": row["published_at"].isoformat() if row["published_at"] else None,
            "ingested_at": row["ingested_at"].isoformat() if row["ingested_at"] else None,
            "first_visible_at": row["first_visible_at"].isoformat() if row["first_visible_at"] else None,
        }
        for row in rows
    ]
    return {"count": len(payload), "posts": payload}
