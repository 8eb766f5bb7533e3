"""Followed-authors router."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.following import list_following_service

router = APIRouter()


class FollowingItem(BaseModel):
    x_author_id: str
    handle: str
    display_name: str = ""
    last_seen_at: Optional[str] = None
    last_checked_at: Optional[str] = None


class FollowingResponse(BaseModel):
    count: int
    total: int
    items: List[FollowingItem]


@router.get("", response_model=FollowingResponse)
async def list_following(
    limit: int = Query(default=50, ge=1, le=200),
    _rate_limit: None = Depends(rate_limit("following_list", limit=600, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await list_following_service(user_id=auth.user_id, limit=limit, db=db)
