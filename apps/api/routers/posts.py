"""Ingested posts read router (date-range window for Q&A)."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.posts import list_posts_service

router = APIRouter()


class PostItem(BaseModel):
    x_post_id: str
    author_id: str
    author_handle: str
    author_display_name: str = ""
    published_at: Optional[str] = None
    url: str
    text: str
    conversation_id: Optional[str] = None
    ingested_at: Optional[str] = None
    first_visible_at: Optional[str] = None
    edited_seen: bool = False


class PostsResponse(BaseModel):
    count: int
    posts: List[PostItem]


@router.get("", response_model=PostsResponse)
async def list_posts(
    date_from: datetime = Query(...),
    date_to: datetime = Query(...),
    _rate_limit: None = Depends(rate_limit("posts_list", limit=600, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Posts published between ``date_from`` and ``date_to`` (inclusive), oldest first."""
    return await list_posts_service(
        user_id=auth.user_id,
        date_from=date_from,
        date_to=date_to,
        db=db,
    )
