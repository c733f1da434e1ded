"""Video records, transcription, caption generation and review."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.video import Video
from multimodal.models import TranscriptResult
from routers.auth_scope import AuthContext, require_scope
from routers.errors import to_http_exception
from services.captions import (
    load_caption_settings,
    normalize_generated_captions,
    resolve_call_to_action,
    resolve_platform_configs,
)
from services.errors import PipelineError
from services.lifecycle import VideoLifecycle
from services.pipeline_queue import schedule_pipeline_step

router = APIRouter()


class CreateVideoRequest(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    file_url: str = Field(min_length=8, max_length=2000)
    file_name: Optional[str] = None
    file_size_bytes: Optional[int] = Field(default=None, ge=0)
    selected_platforms: List[str] = Field(default_factory=list)


class TranscriptCallbackRequest(BaseModel):
    text: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    word_count: Optional[int] = Field(default=None, ge=0)


class CaptionEntry(BaseModel):
    caption: str
    hashtags: List[str] = Field(default_factory=list)


class CaptionsCallbackRequest(BaseModel):
    captions: Dict[str, CaptionEntry]


class ApproveCaptionsRequest(BaseModel):
    captions: Dict[str, CaptionEntry] = Field(default_factory=dict)
    selected_platforms: List[str]


class VideoResponse(BaseModel):
    id: str
    title: str
    file_url: str
    file_name: Optional[str] = None
    file_size_bytes: Optional[int] = None
    status: str
    transcript: Optional[str] = None
    transcript_confidence: Optional[float] = None
    transcript_word_count: Optional[int] = None
    captions: Dict[str, Any] = Field(default_factory=dict)
    caption: Optional[str] = None
    hashtags: List[str] = Field(default_factory=list)
    selected_platforms: List[str] = Field(default_factory=list)
    published_platforms: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class StepScheduledResponse(BaseModel):
    video: VideoResponse
    job_id: Optional[str] = None
    queue_job_id: Optional[str] = None


def _serialize_video(video: Video) -> VideoResponse:
    return VideoResponse(
        id=video.id,
        title=video.title,
        file_url=video.file_url,
        file_name=video.file_name,
        file_size_bytes=video.file_size_bytes,
        status=video.status,
        transcript=video.transcript,
        transcript_confidence=video.transcript_confidence,
        transcript_word_count=video.transcript_word_count,
        captions=dict(video.captions or {}),
        caption=video.caption,
        hashtags=list(video.hashtags or []),
        selected_platforms=list(video.selected_platforms or []),
        published_platforms=dict(video.published_platforms or {}),
        error_message=video.error_message,
        created_at=video.created_at.isoformat() if video.created_at else None,
        updated_at=video.updated_at.isoformat() if video.updated_at else None,
    )


async def _schedule_step(lifecycle: VideoLifecycle, video: Video, step: str) -> StepScheduledResponse:
    try:
        job = await schedule_pipeline_step(video.id, step)
    except Exception as exc:
        await lifecycle.fail(video.id, "Background queue unavailable. Retry shortly.")
        raise HTTPException(
            status_code=503,
            detail="Pipeline queue unavailable. Check Redis/worker availability and retry.",
        ) from exc
    await lifecycle.db.refresh(video)
    return StepScheduledResponse(
        video=_serialize_video(video),
        job_id=job.get("id"),
        queue_job_id=job.get("queue_job_id"),
    )


@router.post("", response_model=VideoResponse)
async def create_video(
    request: CreateVideoRequest,
    auth: AuthContext = Depends(require_scope("videos")),
    db: AsyncSession = Depends(get_db),
):
    """Record an uploaded video; the file itself is stored by the upload collaborator."""
    if not request.file_url.startswith(("http://", "https://")):
        raise HTTPException(status_code=422, detail="file_url must be an absolute http(s) URL")
    try:
        video = await VideoLifecycle(db).create_video(
            title=request.title,
            file_url=request.file_url,
            file_name=request.file_name,
            file_size_bytes=request.file_size_bytes,
            selected_platforms=request.selected_platforms,
        )
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return _serialize_video(video)


@router.get("", response_model=List[VideoResponse])
async def list_videos(
    status: Optional[str] = None,
    limit: int = 50,
    auth: AuthContext = Depends(require_scope("videos")),
    db: AsyncSession = Depends(get_db),
):
    videos = await VideoLifecycle(db).list_videos(status=status, limit=limit)
    return [_serialize_video(video) for video in videos]


@router.get("/{video_id}", response_model=VideoResponse)
async def get_video(
    video_id: str,
    auth: AuthContext = Depends(require_scope("videos")),
    db: AsyncSession = Depends(get_db),
):
    try:
        video = await VideoLifecycle(db).get_video(video_id)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return _serialize_video(video)


@router.post("/{video_id}/transcribe", response_model=StepScheduledResponse)
async def start_transcription(
    video_id: str,
    auth: AuthContext = Depends(require_scope("videos")),
    db: AsyncSession = Depends(get_db),
):
    """Start (or re-run) transcription in the background."""
    lifecycle = VideoLifecycle(db)
    try:
        video = await lifecycle.start_transcription(video_id)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return await _schedule_step(lifecycle, video, "transcribe")


@router.post("/{video_id}/transcript", response_model=VideoResponse)
async def transcription_complete(
    video_id: str,
    request: TranscriptCallbackRequest,
    auth: AuthContext = Depends(require_scope("videos")),
    db: AsyncSession = Depends(get_db),
):
    """Callback for an external transcription service."""
    result = TranscriptResult(
        text=request.text.strip() or "No speech detected in the video.",
        confidence=request.confidence,
        word_count=request.word_count if request.word_count is not None else len(request.text.split()),
    )
    try:
        video = await VideoLifecycle(db).complete_transcription(video_id, result)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return _serialize_video(video)


@router.post("/{video_id}/captions/generate", response_model=StepScheduledResponse)
async def start_caption_generation(
    video_id: str,
    auth: AuthContext = Depends(require_scope("videos")),
    db: AsyncSession = Depends(get_db),
):
    """Start (or re-run) caption generation in the background."""
    lifecycle = VideoLifecycle(db)
    try:
        video = await lifecycle.start_caption_generation(video_id)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return await _schedule_step(lifecycle, video, "captions")


@router.post("/{video_id}/captions", response_model=VideoResponse)
async def caption_generation_complete(
    video_id: str,
    request: CaptionsCallbackRequest,
    auth: AuthContext = Depends(require_scope("videos")),
    db: AsyncSession = Depends(get_db),
):
    """Callback for an external caption generator; output is validated and fitted to platform limits."""
    caption_settings = await load_caption_settings(db)
    configs = {
        platform: config
        for platform, config in resolve_platform_configs(caption_settings).items()
        if platform in request.captions
    }
    if not configs:
        raise HTTPException(status_code=400, detail="No supported platforms in captions")
    try:
        captions = normalize_generated_captions(
            {platform: entry.model_dump() for platform, entry in request.captions.items()},
            configs,
            resolve_call_to_action(caption_settings),
            caption_settings.include_hashtags,
        )
        video = await VideoLifecycle(db).complete_caption_generation(video_id, captions)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return _serialize_video(video)


@router.post("/{video_id}/captions/approve", response_model=VideoResponse)
async def approve_captions(
    video_id: str,
    request: ApproveCaptionsRequest,
    auth: AuthContext = Depends(require_scope("videos")),
    db: AsyncSession = Depends(get_db),
):
    """Save reviewed captions and platform selection; the video becomes ready to publish."""
    try:
        video = await VideoLifecycle(db).approve_captions(
            video_id,
            {platform: entry.model_dump() for platform, entry in request.captions.items()},
            request.selected_platforms,
        )
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return _serialize_video(video)
