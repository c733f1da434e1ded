"""
Background pipeline steps executed by the RQ worker.

Each step is idempotent: re-running it overwrites the previous transcript,
captions or publish outcomes for the video.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select

from database import async_session_maker
from models.pipeline_job import PipelineJob
from models.video import Video
from multimodal.audio import transcribe_media
from multimodal.llm import generate_captions
from multimodal.models import CaptionSettingsModel, TranscriptResult
from services.analytics import AnalyticsAggregator
from services.captions import (
    load_caption_settings,
    normalize_generated_captions,
    resolve_call_to_action,
    resolve_platform_configs,
)
from services.errors import NoCredentialsError, is_retryable
from services.lifecycle import VideoLifecycle
from services.publishing import PublishOrchestrator, PublishResult
from services.retry import RetryExecutor

logger = logging.getLogger(__name__)


def _sessions(session_maker=None):
    return (session_maker or async_session_maker)()


async def _update_job(
    video_id: str,
    step: str,
    *,
    status: Optional[str] = None,
    error_message: Optional[str] = None,
    increment_attempts: bool = False,
    completed: bool = False,
    session_maker=None,
) -> None:
    async with _sessions(session_maker) as db:
        result = await db.execute(
            select(PipelineJob).where(PipelineJob.video_id == video_id, PipelineJob.step == step)
        )
        job = result.scalar_one_or_none()
        if not job:
            return
        if status is not None:
            job.status = status
        if error_message is not None:
            job.error_message = error_message[:1000]
        if increment_attempts:
            job.attempts = max(int(job.attempts or 0), 0) + 1
        if completed:
            job.completed_at = datetime.now(timezone.utc)
        job.updated_at = datetime.now(timezone.utc)
        await db.commit()


async def run_transcription(
    video_id: str,
    *,
    transcriber: Optional[Callable[[str], TranscriptResult]] = None,
    retry: Optional[RetryExecutor] = None,
    session_maker=None,
) -> TranscriptResult:
    transcriber = transcriber or transcribe_media
    retry = retry or RetryExecutor()

    async with _sessions(session_maker) as db:
        lifecycle = VideoLifecycle(db)
        video = await lifecycle.get_video(video_id)
        if video.status != "transcribing":
            video = await lifecycle.start_transcription(video_id)
        file_url = video.file_url

    result = await retry.execute(lambda: asyncio.to_thread(transcriber, file_url))

    async with _sessions(session_maker) as db:
        await VideoLifecycle(db).complete_transcription(video_id, result)
    return result


async def run_caption_generation(
    video_id: str,
    *,
    generator: Optional[Callable[[str, str, CaptionSettingsModel], Dict[str, Any]]] = None,
    retry: Optional[RetryExecutor] = None,
    session_maker=None,
) -> Dict[str, Dict[str, Any]]:
    generator = generator or generate_captions
    retry = retry or RetryExecutor()

    async with _sessions(session_maker) as db:
        lifecycle = VideoLifecycle(db)
        video = await lifecycle.get_video(video_id)
        if video.status != "generating":
            video = await lifecycle.start_caption_generation(video_id)
        transcript = video.transcript or ""
        title = video.title
        caption_settings = await load_caption_settings(db)

    raw = await retry.execute(lambda: asyncio.to_thread(generator, transcript, title, caption_settings))
    captions = normalize_generated_captions(
        raw,
        resolve_platform_configs(caption_settings),
        resolve_call_to_action(caption_settings),
        include_hashtags=caption_settings.include_hashtags,
    )

    async with _sessions(session_maker) as db:
        await VideoLifecycle(db).complete_caption_generation(video_id, captions)
    return captions


async def run_publish(
    video_id: str,
    payload: Optional[Dict[str, Any]] = None,
    *,
    orchestrator: Optional[PublishOrchestrator] = None,
    session_maker=None,
) -> PublishResult:
    orchestrator = orchestrator or PublishOrchestrator(session_maker=session_maker)
    platforms: Optional[List[str]] = (payload or {}).get("platforms") or None
    return await orchestrator.publish(video_id, platforms)


async def process_pipeline_job_async(video_id: str, step: str, *, session_maker=None, **runner_kwargs) -> None:
    """Async pipeline step executed by the RQ worker wrapper."""
    async with _sessions(session_maker) as db:
        result = await db.execute(
            select(PipelineJob).where(PipelineJob.video_id == video_id, PipelineJob.step == step)
        )
        job = result.scalar_one_or_none()
        payload = dict(job.payload_json or {}) if job else {}
        already_done = bool(job and job.status == "completed")
    if job is None:
        logger.warning("Pipeline job %s for video %s not found", step, video_id)
        return
    if already_done:
        logger.info("Pipeline job %s for video %s already completed", step, video_id)
        return

    await _update_job(video_id, step, status="running", increment_attempts=True, session_maker=session_maker)
    try:
        if step == "transcribe":
            await run_transcription(video_id, session_maker=session_maker, **runner_kwargs)
        elif step == "captions":
            await run_caption_generation(video_id, session_maker=session_maker, **runner_kwargs)
        elif step == "publish":
            await run_publish(video_id, payload, session_maker=session_maker, **runner_kwargs)
        else:
            raise ValueError(f"Unknown pipeline step: {step}")
        await _update_job(video_id, step, status="completed", completed=True, session_maker=session_maker)
        logger.info("Pipeline job %s for video %s completed", step, video_id)
    except Exception as exc:
        logger.exception("Pipeline job %s for video %s failed: %s", step, video_id, exc)
        await _update_job(
            video_id,
            step,
            status="failed",
            error_message=str(exc) or type(exc).__name__,
            completed=True,
            session_maker=session_maker,
        )
        await _fail_video(video_id, step, exc, session_maker=session_maker)
        if step != "publish" and is_retryable(exc):
            # RQ re-enqueues transient failures; a publish run is never repeated
            raise


async def _fail_video(video_id: str, step: str, exc: Exception, *, session_maker=None) -> None:
    """Leave the video in an inspectable terminal state after a failed step."""
    if isinstance(exc, NoCredentialsError):
        # Rejected before the video was touched
        return
    async with _sessions(session_maker) as db:
        video = await db.get(Video, video_id)
        if video is None or video.status in ("posted", "failed", "error"):
            return
        default = {
            "transcribe": "Transcription failed",
            "captions": "Caption generation failed",
            "publish": "Publishing failed",
        }.get(step, "Processing failed")
        await VideoLifecycle(db).fail(video_id, str(exc) or default)


def process_pipeline_job(video_id: str, step: str) -> None:
    """RQ worker entrypoint for pipeline steps."""
    asyncio.run(process_pipeline_job_async(video_id, step))


async def process_analytics_refresh_job_async(post_ids: List[str], force_refresh: bool = True, *, session_maker=None) -> List[Dict[str, Any]]:
    aggregator = AnalyticsAggregator(session_maker=session_maker)
    reports = await aggregator.refresh_posts(post_ids, force_refresh=force_refresh)
    return [report.to_dict() for report in reports]


def process_analytics_refresh_job(post_ids: List[str], force_refresh: bool = True) -> List[Dict[str, Any]]:
    """RQ worker entrypoint for post-publish analytics refresh."""
    return asyncio.run(process_analytics_refresh_job_async(post_ids, force_refresh))
