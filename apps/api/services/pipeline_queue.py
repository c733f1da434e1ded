"""Durable pipeline job queue helpers (Redis/RQ)."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from redis import Redis
from rq import Queue, Retry
from rq.job import Job
from sqlalchemy import select

from config import settings
from database import async_session_maker
from models.pipeline_job import PipelineJob
from models.video import Video
from services.lifecycle import apply_transition

logger = logging.getLogger(__name__)

PIPELINE_QUEUE_NAME = "pipeline_jobs"
ANALYTICS_QUEUE_NAME = "analytics_jobs"
PIPELINE_STEPS = ("transcribe", "captions", "publish")
IN_PROGRESS_STATUSES = ("queued", "running")


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_pipeline_queue() -> Queue:
    return Queue(
        name=PIPELINE_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=1800,
    )


def get_analytics_queue() -> Queue:
    return Queue(
        name=ANALYTICS_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=900,
    )


def queue_job_id(video_id: str, step: str) -> str:
    return f"{step}:{video_id}"


def enqueue_pipeline_job(video_id: str, step: str) -> Job:
    """Enqueue one pipeline step; the RQ job id is keyed by step and video."""
    if step not in PIPELINE_STEPS:
        raise ValueError(f"Unknown pipeline step: {step}")
    queue = get_pipeline_queue()
    return queue.enqueue(
        "services.pipeline_jobs.process_pipeline_job",
        video_id,
        step,
        job_id=queue_job_id(video_id, step),
        retry=None if step == "publish" else Retry(max=2, interval=[30, 120]),
        job_timeout=1800,
        result_ttl=86400,
        failure_ttl=86400,
    )


def enqueue_analytics_refresh(post_ids: List[str], delay_seconds: Optional[int] = None) -> Job:
    """Schedule a forced analytics refresh for freshly published posts."""
    delay = settings.ANALYTICS_POST_PUBLISH_DELAY_SECONDS if delay_seconds is None else delay_seconds
    queue = get_analytics_queue()
    return queue.enqueue_in(
        timedelta(seconds=max(int(delay), 0)),
        "services.pipeline_jobs.process_analytics_refresh_job",
        list(post_ids),
        True,
        retry=Retry(max=3, interval=[60, 300, 900]),
        job_timeout=900,
        result_ttl=86400,
        failure_ttl=86400,
    )


async def schedule_pipeline_step(
    video_id: str,
    step: str,
    payload: Optional[Dict[str, Any]] = None,
    *,
    session_maker=None,
    enqueue: Optional[Callable[[str, str], Job]] = None,
) -> Dict[str, Any]:
    """
    Record the step in `pipeline_jobs` (one row per video and step) and enqueue it.

    Raises whatever the queue raises when Redis is unavailable; the row is left
    failed with `queue_unavailable` in that case.
    """
    sessions = session_maker or async_session_maker
    enqueue = enqueue or enqueue_pipeline_job
    now = datetime.now(timezone.utc)

    async with sessions() as db:
        result = await db.execute(
            select(PipelineJob).where(PipelineJob.video_id == video_id, PipelineJob.step == step)
        )
        job = result.scalar_one_or_none()
        if job is None:
            job = PipelineJob(video_id=video_id, step=step, attempts=0, created_at=now)
            db.add(job)
        job.status = "queued"
        job.payload_json = dict(payload or {})
        job.attempts = 0
        job.max_attempts = settings.PIPELINE_JOB_MAX_ATTEMPTS
        job.error_message = None
        job.completed_at = None
        job.updated_at = now
        await db.commit()

        try:
            queued = enqueue(video_id, step)
        except Exception as exc:
            job.status = "failed"
            job.error_message = "queue_unavailable"
            job.completed_at = datetime.now(timezone.utc)
            await db.commit()
            logger.error("Could not enqueue %s for video %s: %s", step, video_id, exc)
            raise

        job.queue_job_id = getattr(queued, "id", None) or queue_job_id(video_id, step)
        await db.commit()
        return {"id": job.id, "video_id": video_id, "step": step, "status": job.status, "queue_job_id": job.queue_job_id}


async def resume_interrupted_jobs(
    max_age_minutes: Optional[int] = None,
    *,
    session_maker=None,
    enqueue: Optional[Callable[[str, str], Job]] = None,
) -> Dict[str, int]:
    """
    Re-enqueue queued/running steps older than the stall window while attempts remain.

    Steps out of attempts are failed and their video moved to `error`.
    """
    sessions = session_maker or async_session_maker
    enqueue = enqueue or enqueue_pipeline_job
    minutes = settings.PIPELINE_STALLED_JOB_MINUTES if max_age_minutes is None else max_age_minutes
    now = datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=max(minutes, 1))
    resumed = 0
    failed = 0

    async with sessions() as db:
        result = await db.execute(
            select(PipelineJob).where(
                PipelineJob.status.in_(IN_PROGRESS_STATUSES),
                PipelineJob.updated_at < cutoff,
            )
        )
        jobs = result.scalars().all()
        for job in jobs:
            if int(job.attempts or 0) < int(job.max_attempts or 1):
                try:
                    queued = enqueue(job.video_id, job.step)
                except Exception as exc:
                    logger.warning("Could not resume %s for video %s: %s", job.step, job.video_id, exc)
                    continue
                job.status = "queued"
                job.queue_job_id = getattr(queued, "id", None) or queue_job_id(job.video_id, job.step)
                job.updated_at = now
                resumed += 1
                continue

            job.status = "failed"
            job.error_message = "Step was interrupted and ran out of attempts."
            job.completed_at = now
            job.updated_at = now
            video = await db.get(Video, job.video_id)
            if video is not None and video.status not in ("posted", "failed", "error"):
                apply_transition(
                    video,
                    "error",
                    error_message=f"{job.step.capitalize()} was interrupted. Re-run it from the dashboard.",
                )
            failed += 1

        if jobs:
            await db.commit()

    if resumed or failed:
        logger.info("Pipeline recovery: %s resumed, %s failed", resumed, failed)
    return {"resumed": resumed, "failed": failed}
