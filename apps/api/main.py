"""
Social Publishing Pipeline - FastAPI Backend
Upload, transcribe, caption, publish and measure short-form videos.
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
    videos,
    publish,
    credentials,
    analytics,
    caption_settings,
)
from services.analytics import AnalyticsAggregator
from services.credentials import rotate_stored_tokens
from services.pipeline_queue import resume_interrupted_jobs


async def _periodic_analytics_refresh() -> None:
    interval_minutes = max(int(settings.ANALYTICS_REFRESH_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            reports = await AnalyticsAggregator().refresh_all()
            updated = sum(report.updated for report in reports)
            failed = sum(report.failed for report in reports)
            print(f"📈 Analytics refresh tick: updated={updated} failed={failed}")
        except Exception as exc:
            print(f"⚠️ Analytics refresh tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Social Publishing Pipeline API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if settings.ENCRYPTION_KEY_PREVIOUS:
        try:
            rotated = await rotate_stored_tokens()
            print(f"🔑 Credential key rotation: {rotated} token(s) re-encrypted.")
        except Exception as exc:
            print(f"⚠️ Credential key rotation skipped: {exc}")
    try:
        recovered = await resume_interrupted_jobs()
        if recovered["resumed"] or recovered["failed"]:
            print(
                f"♻️ Pipeline recovery after startup: resumed={recovered['resumed']} "
                f"failed={recovered['failed']}"
            )
    except Exception as exc:
        print(f"⚠️ Pipeline job recovery skipped: {exc}")
    analytics_task = None
    if int(settings.ANALYTICS_REFRESH_INTERVAL_MINUTES) > 0:
        analytics_task = asyncio.create_task(_periodic_analytics_refresh())
        print(
            "📅 Analytics refresh loop enabled "
            f"(every {int(settings.ANALYTICS_REFRESH_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if analytics_task is not None:
        analytics_task.cancel()
        try:
            await analytics_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Social Publishing Pipeline API",
    description="Turn uploaded videos into captioned posts across social platforms and track how they perform",
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
app.include_router(videos.router, prefix="/videos", tags=["Videos"])
app.include_router(publish.router, tags=["Publish"])
app.include_router(credentials.router, prefix="/credentials", tags=["Credentials"])
app.include_router(analytics.router, prefix="/analytics", tags=["Analytics"])
app.include_router(caption_settings.router, prefix="/settings", tags=["Settings"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Social Publishing Pipeline API",
        "version": "0.1.0",
        "status": "running"
    }
