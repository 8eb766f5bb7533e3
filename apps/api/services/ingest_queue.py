"""Durable ingest job queue helpers (Redis/RQ)."""

from __future__ import annotations

from redis import Redis
from rq import Queue
from rq.job import Job

from config import settings


INGEST_QUEUE_NAME = "ingest_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_ingest_queue() -> Queue:
    """Return the configured ingest queue."""
    return Queue(
        name=INGEST_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=settings.INGEST_JOB_TIMEOUT_SECONDS,
    )


def enqueue_ingest_job(user_id: str, backfill_hours: int, run_id: str) -> Job:
    """
    Enqueue an ingest job for an already-opened run.

    No RQ-level retry: rate limits are retried inside the run and a redelivered
    job would find its run finalized.
    """
    queue = get_ingest_queue()
    return queue.enqueue(
        "services.ingest.process_ingest_job",
        user_id,
        int(backfill_hours),
        run_id,
        job_id=f"ingest:{run_id}",
        job_timeout=settings.INGEST_JOB_TIMEOUT_SECONDS,
        result_ttl=86400,
        failure_ttl=86400,
    )
