from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
import pytest_asyncio
from sqlalchemy.exc import IntegrityError

from models.ingest_run import IngestRun
from models.user import User
from services.ingest_runs import (
    IngestRunInProgressError,
    complete_ingest_run,
    create_ingest_run,
    get_current_run,
    get_ingest_status_service,
    get_last_sync_time,
    get_recent_runs,
    recover_stalled_ingest_runs,
    update_ingest_run_progress,
)


USER_ID = "ledger-user"


@pytest_asyncio.fixture
async def ledger_db(session_maker):
    async with session_maker() as db:
        db.add(User(id=USER_ID, email="ledger@example.com", x_username="ledger"))
        await db.commit()
    yield session_maker


@pytest.mark.asyncio
async def test_status_for_user_that_never_ran(ledger_db):
    async with ledger_db() as db:
        status = await get_ingest_status_service(user_id=USER_ID, limit=10, db=db)

    assert status == {"last_sync_at": None, "current_run": None, "recent_runs": []}


@pytest.mark.asyncio
async def test_run_lifecycle_and_status_payload(ledger_db):
    async with ledger_db() as db:
        run = await create_ingest_run(db, USER_ID)
        assert run.status == "ok"
        assert run.completed_at is None
        assert int(run.since_id) == 1_000_000_000

        running = await get_ingest_status_service(user_id=USER_ID, limit=10, db=db)
        assert running["current_run"]["id"] == run.id
        assert running["last_sync_at"] is None
        assert running["recent_runs"] == []

        await update_ingest_run_progress(
            db,
            run.id,
            cursor="c-9",
            since_id=1_900_000_000_000_000_000,
            fetched_count=7,
            retried=1,
            rate_limit_hits=1,
        )
        assert await complete_ingest_run(db, run.id, status="ok", fetched_count=9) is True
        assert await complete_ingest_run(db, run.id, status="error", err_text="late") is False

        done = await get_ingest_status_service(user_id=USER_ID, limit=10, db=db)

    assert done["current_run"] is None
    assert done["last_sync_at"] is not None
    [recent] = done["recent_runs"]
    assert recent["id"] == run.id
    assert recent["status"] == "ok"
    assert recent["fetched_count"] == 9
    assert recent["retried"] == 1
    assert recent["rate_limit_hits"] == 1
    assert recent["err_text"] is None


@pytest.mark.asyncio
async def test_second_active_run_is_rejected(ledger_db):
    async with ledger_db() as db:
        first = await create_ingest_run(db, USER_ID)
        with pytest.raises(IngestRunInProgressError) as exc_info:
            await create_ingest_run(db, USER_ID)
        assert exc_info.value.run_id == first.id

        await complete_ingest_run(db, first.id, status="error", err_text="boom")
        second = await create_ingest_run(db, USER_ID)
        assert second.id != first.id
        assert (await get_current_run(db, USER_ID)).id == second.id


@pytest.mark.asyncio
async def test_active_run_index_blocks_concurrent_insert(ledger_db):
    async with ledger_db() as db:
        db.add(IngestRun(id="run-a", user_id=USER_ID))
        await db.commit()
        db.add(IngestRun(id="run-b", user_id=USER_ID))
        with pytest.raises(IntegrityError):
            await db.commit()
        await db.rollback()


@pytest.mark.asyncio
async def test_last_sync_counts_failed_runs_and_recent_is_newest_first(ledger_db):
    async with ledger_db() as db:
        ok_run = await create_ingest_run(db, USER_ID)
        await complete_ingest_run(db, ok_run.id, status="ok")
        failed = await create_ingest_run(db, USER_ID)
        await complete_ingest_run(db, failed.id, status="rate_limited", err_text="429")

        last_sync = await get_last_sync_time(db, USER_ID)
        recent = await get_recent_runs(db, USER_ID, limit=10)
        limited = await get_recent_runs(db, USER_ID, limit=1)

    assert last_sync is not None
    assert last_sync.tzinfo is not None
    assert last_sync.replace(tzinfo=None) == recent[0].completed_at.replace(tzinfo=None)
    assert [run.id for run in recent] == [failed.id, ok_run.id]
    assert [run.id for run in limited] == [failed.id]


@pytest.mark.asyncio
async def test_status_after_only_a_failed_run_reports_its_completion(ledger_db):
    async with ledger_db() as db:
        run = await create_ingest_run(db, USER_ID)
        await complete_ingest_run(db, run.id, status="error", err_text="boom")

        status = await get_ingest_status_service(user_id=USER_ID, limit=10, db=db)

    [recent] = status["recent_runs"]
    assert recent["status"] == "error"
    assert status["last_sync_at"] is not None
    assert status["last_sync_at"] == recent["completed_at"]


@pytest.mark.asyncio
async def test_active_run_is_not_listed_among_recent_runs(ledger_db):
    async with ledger_db() as db:
        finished = await create_ingest_run(db, USER_ID)
        await complete_ingest_run(db, finished.id, status="ok")
        active = await create_ingest_run(db, USER_ID)

        status = await get_ingest_status_service(user_id=USER_ID, limit=10, db=db)

    assert status["current_run"]["id"] == active.id
    assert [run["id"] for run in status["recent_runs"]] == [finished.id]


@pytest.mark.asyncio
async def test_complete_rejects_unknown_status_and_truncates_err_text(ledger_db):
    async with ledger_db() as db:
        run = await create_ingest_run(db, USER_ID)
        with pytest.raises(ValueError):
            await complete_ingest_run(db, run.id, status="cancelled")
        await complete_ingest_run(db, run.id, status="error", err_text="e" * 5000)
        [stored] = await get_recent_runs(db, USER_ID)

    assert stored.status == "error"
    assert len(stored.err_text) == 1000


@pytest.mark.asyncio
async def test_recover_stalled_runs_finalizes_old_active_runs(ledger_db):
    async with ledger_db() as db:
        db.add(
            IngestRun(
                id="stale-run",
                user_id=USER_ID,
                started_at=datetime.now(timezone.utc) - timedelta(hours=5),
            )
        )
        await db.commit()

    with patch("services.ingest_runs.async_session_maker", ledger_db):
        recovered = await recover_stalled_ingest_runs(max_age_minutes=60)

    assert recovered == 1
    async with ledger_db() as db:
        assert await get_current_run(db, USER_ID) is None
        [stale] = await get_recent_runs(db, USER_ID)
    assert stale.status == "error"
    assert stale.err_text
