"""Q&A router: ask questions over ingested posts and manage the history."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.qa import (
    create_qa_service,
    delete_all_qa_service,
    delete_qa_service,
    get_qa_service,
    list_qa_service,
)

router = APIRouter()


class CreateQARequest(BaseModel):
    question: str
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None


class QASourceItem(BaseModel):
    x_post_id: str
    author_handle: str
    author_display_name: str
    published_at: Optional[str] = None
    url: str
    text_preview: str = ""
    text: str = ""


class QADetail(BaseModel):
    id: str
    question: str
    answer: str
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    created_at: Optional[str] = None
    sources: List[QASourceItem]


class QAListItem(BaseModel):
    id: str
    question: str
    answer_preview: str
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    created_at: Optional[str] = None
    sources_count: int


class QAListResponse(BaseModel):
    items: List[QAListItem]
    next_cursor: Optional[str] = None
    has_more: bool


@router.post("", status_code=201, response_model=QADetail)
async def create_qa(
    request: CreateQARequest,
    _rate_limit: None = Depends(rate_limit("qa_create", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Answer a question over the posts in a date window (default: last 24 hours)."""
    return await create_qa_service(
        user_id=auth.user_id,
        question=request.question,
        date_from=request.date_from,
        date_to=request.date_to,
        db=db,
    )


@router.get("", response_model=QAListResponse)
async def list_qa(
    limit: int = Query(20, ge=1, le=50),
    cursor: Optional[str] = Query(None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await list_qa_service(user_id=auth.user_id, limit=limit, cursor=cursor, db=db)


@router.delete("")
async def delete_all_qa(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await delete_all_qa_service(user_id=auth.user_id, db=db)


@router.get("/{qa_id}", response_model=QADetail)
async def get_qa(
    qa_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_qa_service(user_id=auth.user_id, qa_id=qa_id, db=db)


@router.delete("/{qa_id}")
async def delete_qa(
    qa_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await delete_qa_service(user_id=auth.user_id, qa_id=qa_id, db=db)
