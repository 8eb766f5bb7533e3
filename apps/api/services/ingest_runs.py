"""Ingest run ledger: run lifecycle, progress checkpoints and status reads."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import async_session_maker
from models.ingest_run import DEFAULT_SINCE_ID, IngestRun, new_sortable_id

logger = logging.getLogger(__name__)

RUN_STATUSES = ("ok", "rate_limited", "error")
MAX_ERR_TEXT_CHARS = 1000
MAX_RECENT_RUNS = 50


class IngestRunInProgressError(RuntimeError):
    """Raised when a user already has an uncompleted ingest run."""

    def __init__(self, user_id: str, run_id: Optional[str] = None):
        self.user_id = user_id
        self.run_id = run_id
        super().__init__(f"ingest already in progress for user {user_id}")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = _as_utc(value)
    return value.isoformat() if value else None


def truncate_err_text(message: Optional[str]) -> Optional[str]:
    if message is None:
        return None
    text = str(message)
    if len(text) <= MAX_ERR_TEXT_CHARS:
        return text
    return text[:MAX_ERR_TEXT_CHARS]


async def get_current_run(db: AsyncSession, user_id: str) -> Optional[IngestRun]:
    """Return the user's uncompleted run, if any."""
    result = await db.execute(
        select(IngestRun)
        .where(IngestRun.user_id == user_id, IngestRun.completed_at.is_(None))
        .order_by(IngestRun.started_at.desc(), IngestRun.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def create_ingest_run(db: AsyncSession, user_id: str) -> IngestRun:
    """
    Open a new run for ``user_id``.

    Raises ``IngestRunInProgressError`` when an uncompleted run already exists,
    either on the pre-check or when the active-run unique index rejects the row.
    """
    current = await get_current_run(db, user_id)
    if current is not None:
        raise IngestRunInProgressError(user_id, current.id)

    run = IngestRun(
        id=new_sortable_id(),
        user_id=user_id,
        started_at=datetime.now(timezone.utc),
        status="ok",
        cursor="",
        since_id=DEFAULT_SINCE_ID,
        fetched_count=0,
        retried=0,
        rate_limit_hits=0,
    )
    db.add(run)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise IngestRunInProgressError(user_id) from exc
    await db.refresh(run)
    return run


async def get_ingest_run(db: AsyncSession, run_id: str) -> Optional[IngestRun]:
    result = await db.execute(select(IngestRun).where(IngestRun.id == run_id))
    return result.scalar_one_or_none()


async def update_ingest_run_progress(
    db: AsyncSession,
    run_id: str,
    *,
    cursor: str,
    since_id: int,
    fetched_count: int,
    retried: int,
    rate_limit_hits: int,
) -> None:
    """Checkpoint counters on an active run. Completed runs are left untouched."""
    await db.execute(
        update(IngestRun)
        .where(IngestRun.id == run_id, IngestRun.completed_at.is_(None))
        .values(
            cursor=cursor or "",
            since_id=int(since_id),
            fetched_count=int(fetched_count),
            retried=int(retried),
            rate_limit_hits=int(rate_limit_hits),
        )
    )
    await db.commit()


async def complete_ingest_run(
    db: AsyncSession,
    run_id: str,
    *,
    status: str,
    err_text: Optional[str] = None,
    cursor: Optional[str] = None,
    since_id: Optional[int] = None,
    fetched_count: Optional[int] = None,
    retried: Optional[int] = None,
    rate_limit_hits: Optional[int] = None,
) -> bool:
    """
    Finalize a run with its terminal status and final counters.

    A run is finalized at most once; returns False if it was already completed.
    """
    if status not in RUN_STATUSES:
        raise ValueError(f"invalid ingest run status: {status!r}")

    values: Dict[str, Any] = {
        "status": status,
        "completed_at": datetime.now(timezone.utc),
        "err_text": truncate_err_text(err_text),
    }
    if cursor is not None:
        values["cursor"] = cursor
    if since_id is not None:
        values["since_id"] = int(since_id)
    if fetched_count is not None:
        values["fetched_count"] = int(fetched_count)
    if retried is not None:
        values["retried"] = int(retried)
    if rate_limit_hits is not None:
        values["rate_limit_hits"] = int(rate_limit_hits)

    result = await db.execute(
        update(IngestRun)
        .where(IngestRun.id == run_id, IngestRun.completed_at.is_(None))
        .values(**values)
    )
    await db.commit()
    return bool(result.rowcount)


async def get_recent_runs(db: AsyncSession, user_id: str, limit: int = 10) -> List[IngestRun]:
    result = await db.execute(
        select(IngestRun)
        .where(IngestRun.user_id == user_id, IngestRun.completed_at.is_not(None))
        .order_by(IngestRun.started_at.desc(), IngestRun.id.desc())
        .limit(max(1, min(int(limit), MAX_RECENT_RUNS)))
    )
    return list(result.scalars().all())


async def get_last_sync_time(db: AsyncSession, user_id: str) -> Optional[datetime]:
    """Completion time of the most recent finished run, whatever its status."""
    result = await db.execute(
        select(IngestRun.completed_at)
        .where(IngestRun.user_id == user_id, IngestRun.completed_at.is_not(None))
        .order_by(IngestRun.completed_at.desc())
        .limit(1)
    )
    return _as_utc(result.scalar_one_or_none())


def serialize_ingest_run(run: IngestRun) -> Dict[str, Any]:
    return {
        "id": run.id,
        "started_at": _iso(run.started_at),
        "completed_at": _iso(run.completed_at),
        "status": run.status,
        "fetched_count": int(run.fetched_count or 0),
        "retried": int(run.retried or 0),
        "rate_limit_hits": int(run.rate_limit_hits or 0),
        "err_text": run.err_text,
    }


async def get_ingest_status_service(
    *,
    user_id: str,
    limit: int,
    db: AsyncSession,
) -> Dict[str, Any]:
    last_sync_at = await get_last_sync_time(db, user_id)
    current = await get_current_run(db, user_id)
    recent = await get_recent_runs(db, user_id, limit=limit)
    return {
        "last_sync_at": last_sync_at.isoformat() if last_sync_at else None,
        "current_run": serialize_ingest_run(current) if current else None,
        "recent_runs": [serialize_ingest_run(run) for run in recent],
    }


async def recover_stalled_ingest_runs(max_age_minutes: int = 120) -> int:
    """Finalize uncompleted runs left behind by restarts/worker interruptions."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(max_age_minutes, 1))
    async with async_session_maker() as db:
        result = await db.execute(
            select(IngestRun).where(
                IngestRun.completed_at.is_(None),
                IngestRun.started_at < cutoff,
            )
        )
        runs = result.scalars().all()
        for run in runs:
            run.status = "error"
            run.completed_at = datetime.now(timezone.utc)
            run.err_text = "Ingest run was interrupted before completion."
        if runs:
            await db.commit()
            logger.warning("Recovered %s stalled ingest runs", len(runs))
        return len(runs)
