"""Ingestion trigger/status router."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.ingest import trigger_ingest_service
from services.ingest_runs import get_ingest_status_service

router = APIRouter()


class TriggerIngestRequest(BaseModel):
    backfill_hours: int = Field(default=settings.DEFAULT_BACKFILL_HOURS, ge=0, le=settings.MAX_BACKFILL_HOURS)


class TriggerIngestResponse(BaseModel):
    ingest_run_id: str
    status: str
    started_at: Optional[str] = None


class IngestRunItem(BaseModel):
    id: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    status: str
    fetched_count: int
    retried: int
    rate_limit_hits: int
    err_text: Optional[str] = None


class IngestStatusResponse(BaseModel):
    last_sync_at: Optional[str] = None
    current_run: Optional[IngestRunItem] = None
    recent_runs: List[IngestRunItem]


@router.post("/trigger", response_model=TriggerIngestResponse, status_code=202)
async def trigger_ingest(
    request: Optional[TriggerIngestRequest] = None,
    _rate_limit: None = Depends(rate_limit("ingest_trigger", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Start a background ingestion run for the current user."""
    payload = request or TriggerIngestRequest()
    return await trigger_ingest_service(
        user_id=auth.user_id,
        backfill_hours=payload.backfill_hours,
        db=db,
    )


@router.get("/status", response_model=IngestStatusResponse)
async def get_ingest_status(
    limit: int = Query(default=10, ge=1, le=50),
    _rate_limit: None = Depends(rate_limit("ingest_status", limit=600, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_ingest_status_service(user_id=auth.user_id, limit=limit, db=db)
