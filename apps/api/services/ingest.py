"""Ingestion orchestrator: refresh a user's follow graph and backfill their feed."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from ingestion.feed_client import FeedApiClient, FeedFetchError, create_feed_client, fetch_with_retry
from ingestion.types import FeedPost, parse_feed_timestamp
from models.ingest_run import DEFAULT_SINCE_ID
from models.user import User
from multimodal.enrichment import (
    MediaEnrichmentClient,
    append_media_descriptions,
    build_enrichment_client,
    describe_post_media,
)
from services.authors import update_author_last_seen, upsert_author
from services.following import list_followed_authors, upsert_following
from services.ingest_runs import (
    IngestRunInProgressError,
    complete_ingest_run,
    create_ingest_run,
    get_current_run,
    get_ingest_run,
    update_ingest_run_progress,
)
from services.ingest_queue import enqueue_ingest_job
from services.posts import insert_post, post_exists

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UserNotFoundError(LookupError):
    """Raised when the user is missing or has no linked X handle."""

    def __init__(self, user_id: str, reason: str = "user not found"):
        self.user_id = user_id
        super().__init__(f"{reason}: {user_id}")


class IngestRunNotFoundError(LookupError):
    """Raised when a pre-opened run id is unknown or already finalized."""


class IngestFailedError(RuntimeError):
    """Raised after a run was finalized as ``error`` or ``rate_limited``."""

    def __init__(self, run_id: str, status: str, message: str):
        self.run_id = run_id
        self.status = status
        super().__init__(f"ingest run {run_id} failed ({status}): {message}")


@dataclass
class _RunState:
    run_id: str
    user_id: str
    cursor: str = ""
    since_id: int = DEFAULT_SINCE_ID
    fetched_count: int = 0
    retried: int = 0
    rate_limit_hits: int = 0
    following_count: int = 0
    authors_processed: int = 0
    authors_skipped: int = 0

    def absorb(self, retried: int, rate_limit_hits: int) -> None:
        self.retried += int(retried)
        self.rate_limit_hits += int(rate_limit_hits)

    def counters(self) -> Dict[str, Any]:
        return {
            "cursor": self.cursor,
            "since_id": self.since_id,
            "fetched_count": self.fetched_count,
            "retried": self.retried,
            "rate_limit_hits": self.rate_limit_hits,
        }


async def _load_user_handle(db: AsyncSession, user_id: str) -> str:
    user = await db.get(User, user_id)
    if not user:
        raise UserNotFoundError(user_id)
    handle = (user.x_username or "").strip().lstrip("@")
    if not handle:
        raise UserNotFoundError(user_id, "user has no linked X handle")
    return handle


async def _open_run(db: AsyncSession, user_id: str, run_id: Optional[str]) -> str:
    if run_id is None:
        run = await create_ingest_run(db, user_id)
        return run.id
    run = await get_ingest_run(db, run_id)
    if not run or run.user_id != user_id:
        raise IngestRunNotFoundError(f"ingest run {run_id} not found for user {user_id}")
    if run.completed_at is not None:
        raise IngestRunNotFoundError(f"ingest run {run_id} is already completed")
    return run.id


async def _checkpoint(state: _RunState) -> None:
    try:
        async with async_session_maker() as ledger:
            await update_ingest_run_progress(ledger, state.run_id, **state.counters())
    except Exception as exc:
        logger.warning("Progress checkpoint failed run=%s: %s", state.run_id, exc)


async def refresh_following(
    db: AsyncSession,
    state: _RunState,
    *,
    handle: str,
    feed_client: FeedApiClient,
    sleep: Sleep,
) -> int:
    """Fetch the accounts ``handle`` follows (capped) and upsert authors and edges."""
    limit = max(int(settings.MAX_FOLLOWING_LIMIT), 0)
    checked_at = datetime.now(timezone.utc)
    cursor: Optional[str] = None
    stored = 0

    while stored < limit:
        try:
            result = await fetch_with_retry(feed_client.get_user_followings, handle, cursor, sleep=sleep)
        except FeedFetchError as exc:
            state.absorb(exc.retried, exc.rate_limit_hits)
            raise
        state.absorb(result.retried, result.rate_limit_hits)
        page = result.value

        for user in page.users:
            if stored >= limit:
                break
            try:
                record = user.to_author_record()
            except ValueError as exc:
                logger.warning("Skipping followed account run=%s: %s", state.run_id, exc)
                continue
            await upsert_author(db, record)
            await upsert_following(
                db,
                user_id=state.user_id,
                x_author_id=record.x_author_id,
                last_checked_at=checked_at,
            )
            stored += 1

        if page.next_cursor:
            state.cursor = page.next_cursor
        if not page.has_next_page or not page.next_cursor or stored >= limit:
            break
        cursor = page.next_cursor
        await sleep(settings.INGEST_PAGE_DELAY_SECONDS)

    await db.commit()
    state.following_count = stored
    logger.info("Refreshed following run=%s handle=%s count=%s", state.run_id, handle, stored)
    return stored


async def _store_post(
    db: AsyncSession,
    state: _RunState,
    *,
    post: FeedPost,
    author_id: int,
    published_at: datetime,
    enrichment_client: Optional[MediaEnrichmentClient],
) -> bool:
    try:
        record = post.to_record(published_at)
    except ValueError as exc:
        logger.warning("Skipping post run=%s author=%s: %s", state.run_id, author_id, exc)
        return False
    if record.author_id != author_id:
        logger.debug("Skipping post=%s not authored by %s", record.x_post_id, author_id)
        return False

    if await post_exists(db, user_id=state.user_id, x_post_id=record.x_post_id):
        return False

    if enrichment_client is not None and post.media is not None:
        descriptions = await describe_post_media(enrichment_client, post)
        if descriptions:
            record = post.to_record(published_at, text=append_media_descriptions(post.text, descriptions))

    inserted = await insert_post(db, user_id=state.user_id, record=record)
    await db.commit()
    if inserted:
        state.fetched_count += 1
        state.since_id = max(state.since_id, record.x_post_id)
    return inserted


async def ingest_author_posts(
    db: AsyncSession,
    state: _RunState,
    *,
    author_id: int,
    handle: str,
    cutoff: Optional[datetime],
    feed_client: FeedApiClient,
    enrichment_client: Optional[MediaEnrichmentClient],
    sleep: Sleep,
) -> int:
    """
    Ingest one followed author's original posts.

    With a cutoff (backfill mode) pages are followed until a post older than
    the cutoff appears; without one only the first page is read. Returns the
    number of newly stored posts.
    """
    cursor: Optional[str] = None
    latest_seen: Optional[datetime] = None
    inserted = 0
    reached_cutoff = False

    while True:
        try:
            result = await fetch_with_retry(feed_client.get_user_posts, handle, cursor, sleep=sleep)
        except FeedFetchError as exc:
            state.absorb(exc.retried, exc.rate_limit_hits)
            raise
        state.absorb(result.retried, result.rate_limit_hits)
        page = result.value

        for post in page.posts:
            if not post.is_original():
                continue
            published_at = parse_feed_timestamp(post.created_at)
            if published_at is None:
                logger.warning("Unparsable timestamp post=%s value=%r", post.id, post.created_at)
                continue
            if cutoff is not None and published_at < cutoff:
                reached_cutoff = True
                break
            if latest_seen is None or published_at > latest_seen:
                latest_seen = published_at
            if await _store_post(
                db,
                state,
                post=post,
                author_id=author_id,
                published_at=published_at,
                enrichment_client=enrichment_client,
            ):
                inserted += 1

        if page.next_cursor:
            state.cursor = page.next_cursor
        if cutoff is None or reached_cutoff or not page.has_next_page or not page.next_cursor:
            break
        cursor = page.next_cursor
        await sleep(settings.INGEST_PAGE_DELAY_SECONDS)

    if latest_seen is not None:
        await update_author_last_seen(db, author_id, latest_seen)
        await db.commit()
    return inserted


async def _run_phases(
    state: _RunState,
    *,
    handle: str,
    backfill_hours: int,
    feed_client: FeedApiClient,
    enrichment_client: Optional[MediaEnrichmentClient],
    sleep: Sleep,
) -> None:
    cutoff = None
    if backfill_hours > 0:
        cutoff = datetime.now(timezone.utc) - timedelta(hours=backfill_hours)

    async with async_session_maker() as db:
        await refresh_following(db, state, handle=handle, feed_client=feed_client, sleep=sleep)
        await _checkpoint(state)

        authors = await list_followed_authors(db, state.user_id)
        for index, author in enumerate(authors):
            if index:
                await sleep(settings.INGEST_AUTHOR_DELAY_SECONDS)
            author_handle = (author.get("handle") or "").strip()
            if not author_handle:
                logger.warning("No handle for author=%s run=%s", author["x_author_id"], state.run_id)
                state.authors_skipped += 1
                continue
            try:
                count = await ingest_author_posts(
                    db,
                    state,
                    author_id=author["x_author_id"],
                    handle=author_handle,
                    cutoff=cutoff,
                    feed_client=feed_client,
                    enrichment_client=enrichment_client,
                    sleep=sleep,
                )
            except FeedFetchError as exc:
                state.authors_skipped += 1
                logger.warning(
                    "Skipping author handle=%s run=%s rate_limited=%s: %s",
                    author_handle,
                    state.run_id,
                    exc.rate_limited,
                    exc,
                )
            else:
                state.authors_processed += 1
                logger.debug("Author handle=%s run=%s new_posts=%s", author_handle, state.run_id, count)
            await _checkpoint(state)


async def ingest_user_data(
    user_id: str,
    backfill_hours: int = 0,
    *,
    run_id: Optional[str] = None,
    feed_client: Optional[FeedApiClient] = None,
    enrichment_client: Optional[MediaEnrichmentClient] = None,
    sleep: Sleep = asyncio.sleep,
) -> Dict[str, Any]:
    """
    Run one ingestion for ``user_id``.

    ``backfill_hours > 0`` walks each author's timeline back to that horizon;
    ``0`` reads only the newest page per author. When ``run_id`` is given the
    already-opened run is used, otherwise a new one is created.

    Raises:
        UserNotFoundError: unknown user or no linked X handle
        IngestRunInProgressError: another run is active for the user
        IngestFailedError: the run was finalized as ``error``/``rate_limited``
    """
    backfill_hours = max(int(backfill_hours or 0), 0)
    async with async_session_maker() as db:
        handle = await _load_user_handle(db, user_id)
        run_id = await _open_run(db, user_id, run_id)

    state = _RunState(run_id=run_id, user_id=user_id)
    owns_feed_client = feed_client is None
    if enrichment_client is None:
        enrichment_client = build_enrichment_client()

    logger.info(
        "Ingest started run=%s user=%s handle=%s backfill_hours=%s enrichment=%s",
        run_id,
        user_id,
        handle,
        backfill_hours,
        enrichment_client is not None,
    )

    try:
        if feed_client is None:
            feed_client = create_feed_client()
        await _run_phases(
            state,
            handle=handle,
            backfill_hours=backfill_hours,
            feed_client=feed_client,
            enrichment_client=enrichment_client,
            sleep=sleep,
        )
    except Exception as exc:
        status = "rate_limited" if isinstance(exc, FeedFetchError) and exc.rate_limited else "error"
        logger.exception("Ingest failed run=%s user=%s status=%s", run_id, user_id, status)
        try:
            async with async_session_maker() as ledger:
                await complete_ingest_run(ledger, run_id, status=status, err_text=str(exc), **state.counters())
        except Exception:
            logger.exception("Failed to finalize ingest run=%s", run_id)
        raise IngestFailedError(run_id, status, str(exc)) from exc
    finally:
        if owns_feed_client and feed_client is not None:
            await feed_client.aclose()

    async with async_session_maker() as ledger:
        await complete_ingest_run(ledger, run_id, status="ok", **state.counters())

    logger.info(
        "Ingest completed run=%s user=%s following=%s posts=%s skipped_authors=%s",
        run_id,
        user_id,
        state.following_count,
        state.fetched_count,
        state.authors_skipped,
    )
    return {
        "ingest_run_id": run_id,
        "status": "ok",
        "following_count": state.following_count,
        "authors_processed": state.authors_processed,
        "authors_skipped": state.authors_skipped,
        **state.counters(),
    }


async def process_ingest_job_async(user_id: str, backfill_hours: int, run_id: str) -> Dict[str, Any]:
    """Async ingest pipeline executed by the RQ worker wrapper."""
    try:
        return await ingest_user_data(user_id, backfill_hours, run_id=run_id)
    except (UserNotFoundError, IngestRunNotFoundError) as exc:
        logger.warning("Ingest job dropped run=%s user=%s: %s", run_id, user_id, exc)
        async with async_session_maker() as ledger:
            await complete_ingest_run(ledger, run_id, status="error", err_text=str(exc))
        return {"ingest_run_id": run_id, "status": "error", "err_text": str(exc)}
    except IngestFailedError as exc:
        return {"ingest_run_id": run_id, "status": exc.status, "err_text": str(exc)}


def process_ingest_job(user_id: str, backfill_hours: int, run_id: str) -> Dict[str, Any]:
    """RQ worker entrypoint for ingest jobs."""
    return asyncio.run(process_ingest_job_async(user_id, backfill_hours, run_id))


async def trigger_ingest_service(
    *,
    user_id: str,
    backfill_hours: int,
    db: AsyncSession,
) -> Dict[str, Any]:
    """Open a run for ``user_id`` and hand it to the ingest worker."""
    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if not (user.x_username or "").strip():
        raise HTTPException(status_code=422, detail="Link an X account before triggering ingestion.")

    try:
        run = await create_ingest_run(db, user_id)
    except IngestRunInProgressError as exc:
        current = await get_current_run(db, user_id)
        started_at = _as_utc(current.started_at) if current else None
        raise HTTPException(
            status_code=409,
            detail={
                "code": "INGEST_IN_PROGRESS",
                "message": "An ingestion run is already in progress for this user.",
                "current_run_id": current.id if current else exc.run_id,
                "started_at": started_at.isoformat() if started_at else None,
            },
        ) from exc

    try:
        enqueue_ingest_job(user_id, backfill_hours, run.id)
    except Exception as exc:
        await complete_ingest_run(db, run.id, status="error", err_text=f"queue unavailable: {exc}")
        raise HTTPException(
            status_code=503,
            detail="Ingest queue unavailable. Check Redis/worker availability and retry.",
        ) from exc

    logger.info("Ingest triggered run=%s user=%s backfill_hours=%s", run.id, user_id, backfill_hours)
    started_at = _as_utc(run.started_at)
    return {
        "ingest_run_id": run.id,
        "status": "triggered",
        "started_at": started_at.isoformat() if started_at else None,
    }


async def run_due_regular_ingests_service() -> Dict[str, Any]:
    """Queue a regular-mode ingest for every linked user without an active run."""
    if not settings.FEED_AUTO_INGEST_ENABLED:
        return {"scheduled_count": 0, "skipped_count": 0, "failed_count": 0}

    scheduled = 0
    skipped = 0
    failed = 0
    async with async_session_maker() as db:
        result = await db.execute(select(User.id).where(User.x_username.is_not(None), User.x_username != ""))
        user_ids = list(result.scalars().all())
        for user_id in user_ids:
            try:
                run = await create_ingest_run(db, user_id)
            except IngestRunInProgressError:
                skipped += 1
                continue
            try:
                enqueue_ingest_job(user_id, 0, run.id)
            except Exception as exc:
                failed += 1
                logger.warning("Auto-ingest enqueue failed user=%s: %s", user_id, exc)
                await complete_ingest_run(db, run.id, status="error", err_text=f"queue unavailable: {exc}")
                continue
            scheduled += 1
    return {"scheduled_count": scheduled, "skipped_count": skipped, "failed_count": failed}
