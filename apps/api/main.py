"""
Crystal Grimoire Metering API - FastAPI Backend
Gates AI crystal identification behind spend, rate, dedupe and credit checks.
"""

import asyncio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base, async_session_maker
import models  # noqa: F401
from routers import (
    health,
    identify,
    usage,
    billing,
    engagement,
)
from services.dedupe import purge_expired_markers
from services.streaks import reset_monthly_freezes


async def _periodic_dedupe_purge() -> None:
    interval_minutes = max(int(settings.DEDUPE_PURGE_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            async with async_session_maker() as db:
                removed = await purge_expired_markers(db)
            if removed:
                print(f"🧹 Dedupe purge: removed={removed}")
        except Exception as exc:
            print(f"⚠️ Dedupe purge tick failed: {exc}")


async def _periodic_freeze_reset() -> None:
    interval_minutes = max(int(settings.FREEZE_RESET_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        try:
            async with async_session_maker() as db:
                reset = await reset_monthly_freezes(db)
            if reset:
                print(f"🔄 Streak freeze reset: users={reset}")
        except Exception as exc:
            print(f"⚠️ Streak freeze reset tick failed: {exc}")
        await asyncio.sleep(interval_minutes * 60)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Crystal Grimoire Metering API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    background_tasks = []
    if int(settings.DEDUPE_PURGE_INTERVAL_MINUTES) > 0:
        background_tasks.append(asyncio.create_task(_periodic_dedupe_purge()))
        print(f"📅 Dedupe purge loop enabled (every {int(settings.DEDUPE_PURGE_INTERVAL_MINUTES)} min).")
    if int(settings.FREEZE_RESET_INTERVAL_MINUTES) > 0:
        background_tasks.append(asyncio.create_task(_periodic_freeze_reset()))
        print(f"📅 Streak freeze reset loop enabled (every {int(settings.FREEZE_RESET_INTERVAL_MINUTES)} min).")
    yield
    # Shutdown
    for task in background_tasks:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Crystal Grimoire Metering API",
    description="Quota, spend and credit metering for AI crystal identification",
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
app.include_router(identify.router, prefix="/identify", tags=["Identify"])
app.include_router(usage.router, prefix="/usage", tags=["Usage"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(engagement.router, prefix="/engagement", tags=["Engagement"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Crystal Grimoire Metering API",
        "version": "0.1.0",
        "status": "running"
    }
