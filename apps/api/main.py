"""
Ask Your Feed - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    auth,
    ingest,
    following,
    posts,
    qa,
)
from services.ingest import run_due_regular_ingests_service
from services.ingest_runs import recover_stalled_ingest_runs


async def _periodic_feed_auto_ingest() -> None:
    interval_minutes = max(int(settings.FEED_AUTO_INGEST_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await run_due_regular_ingests_service()
            scheduled = int(result.get("scheduled_count", 0) or 0)
            skipped = int(result.get("skipped_count", 0) or 0)
            failed = int(result.get("failed_count", 0) or 0)
            if scheduled or failed:
                print(
                    f"📰 Feed auto-ingest tick: scheduled={scheduled} "
                    f"skipped={skipped} failed={failed}"
                )
        except Exception as exc:
            print(f"⚠️ Feed auto-ingest tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Ask Your Feed API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        recovered = await recover_stalled_ingest_runs(settings.INGEST_STALLED_RUN_MINUTES)
        if recovered:
            print(f"♻️ Recovered {recovered} stalled ingest runs after startup.")
    except Exception as exc:
        print(f"⚠️ Stalled ingest run recovery skipped: {exc}")
    feed_auto_ingest_task = None
    if settings.FEED_AUTO_INGEST_ENABLED and int(settings.FEED_AUTO_INGEST_INTERVAL_MINUTES) > 0:
        feed_auto_ingest_task = asyncio.create_task(_periodic_feed_auto_ingest())
        print(
            "📅 Feed auto-ingest loop enabled "
            f"(every {int(settings.FEED_AUTO_INGEST_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if feed_auto_ingest_task is not None:
        feed_auto_ingest_task.cancel()
        try:
            await feed_auto_ingest_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Ask Your Feed API",
    description="Ingest the feed of accounts you follow and ask questions about it",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(ingest.router, prefix="/ingest", tags=["Ingest"])
app.include_router(following.router, prefix="/following", tags=["Following"])
app.include_router(posts.router, prefix="/posts", tags=["Posts"])
app.include_router(qa.router, prefix="/qa", tags=["Q&A"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Ask Your Feed API",
        "version": "0.1.0",
        "status": "running"
    }
