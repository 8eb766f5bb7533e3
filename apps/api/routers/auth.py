"""
Authentication router for X account session sync and user profile retrieval.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from ingestion.feed_client import FeedApiError, create_feed_client
from models.user import User
from routers.auth_scope import AuthContext, get_auth_context, get_current_user
from routers.rate_limit import rate_limit
from services.authors import get_author_by_handle, upsert_author
from services.session_token import create_session_token

router = APIRouter()


class SyncXSessionRequest(BaseModel):
    email: str = Field(min_length=3)
    x_username: str = Field(min_length=1, max_length=64)
    name: Optional[str] = None
    user_id: Optional[str] = None


class SyncXSessionResponse(BaseModel):
    user_id: str
    email: str
    x_username: str
    x_user_id: str
    display_name: Optional[str] = None
    session_token: str
    session_expires_at: int


class CurrentUserResponse(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    x_username: Optional[str] = None
    x_user_id: Optional[str] = None
    display_name: Optional[str] = None


def _normalize_handle(value: str) -> str:
    return value.strip().lstrip("@")


@router.get("/me", response_model=CurrentUserResponse)
async def get_me(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get current user and the linked X account, if any."""
    author = await get_author_by_handle(db, user.x_username) if user.x_username else None
    return CurrentUserResponse(
        user_id=user.id,
        email=user.email,
        name=user.name,
        x_username=user.x_username,
        x_user_id=str(author.x_author_id) if author else None,
        display_name=author.display_name if author else None,
    )


@router.post("/sync/x", response_model=SyncXSessionResponse)
async def sync_x_session(
    request: SyncXSessionRequest,
    _rate_limit: None = Depends(rate_limit("auth_sync_x", limit=30, window_seconds=3600)),
    db: AsyncSession = Depends(get_db),
):
    """
    Link an X handle to a backend user and issue a session token.
    """
    handle = _normalize_handle(request.x_username)
    if not handle:
        raise HTTPException(status_code=422, detail="x_username is required")

    # 1. Resolve the account upstream so only real handles are linked.
    try:
        client = create_feed_client()
    except ValueError as e:
        raise HTTPException(status_code=503, detail=str(e))
    try:
        async with client:
            profile = await client.get_user_info(handle)
    except FeedApiError as e:
        raise HTTPException(status_code=502, detail=f"Could not load X account: {e}")
    try:
        record = profile.to_author_record()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid X account payload: {e}")

    # 2. Upsert user.
    user: Optional[User] = None
    if request.user_id:
        user = await db.get(User, request.user_id)
    if not user:
        user_result = await db.execute(select(User).where(User.email == request.email))
        user = user_result.scalar_one_or_none()

    if not user:
        user = User(
            id=request.user_id or str(uuid.uuid4()),
            email=request.email,
            name=request.name or record.display_name,
            x_username=record.handle,
        )
        db.add(user)
    else:
        user.email = request.email
        user.x_username = record.handle
        if request.name:
            user.name = request.name

    # 3. The user's own account is an author like any other.
    await upsert_author(db, record)

    await db.commit()
    await db.refresh(user)
    session = create_session_token(user.id, user.email, x_username=user.x_username)

    return SyncXSessionResponse(
        user_id=user.id,
        email=user.email,
        x_username=record.handle,
        x_user_id=str(record.x_author_id),
        display_name=record.display_name,
        session_token=session["token"],
        session_expires_at=session["expires_at"],
    )


@router.post("/logout")
async def logout(_auth: AuthContext = Depends(get_auth_context)):
    """Frontend-managed logout acknowledgment endpoint."""
    return {"message": "Logged out successfully"}
