"""
Video lifecycle state machine.

Every status change goes through `apply_transition`; callers never assign
`Video.status` directly.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from models.video import Video
from multimodal.models import TranscriptResult
from services.captions import (
    legacy_caption_fields,
    load_caption_settings,
    resolve_platform_configs,
    validate_caption_edits,
)
from services.connectors import SUPPORTED_PLATFORMS
from services.errors import InvalidStateError, NotFoundError, PersistenceError, ValidationError

logger = logging.getLogger(__name__)

VIDEO_STATUSES: Tuple[str, ...] = (
    "uploaded",
    "transcribing",
    "generating",
    "ready",
    "publishing",
    "posted",
    "failed",
    "error",
)
_ALL = frozenset(VIDEO_STATUSES)
_BUSY = frozenset({"transcribing", "generating"})

# trigger -> (allowed source statuses, target status; None means the caller supplies it)
TRANSITIONS: Dict[str, Tuple[FrozenSet[str], Optional[str]]] = {
    "transcription_start": (_ALL - {"publishing"}, "transcribing"),
    "transcription_complete": (frozenset({"transcribing"}), "uploaded"),
    "caption_start": (_ALL - {"publishing"}, "generating"),
    "caption_complete": (frozenset({"generating"}), "uploaded"),
    "approve": (_ALL - _BUSY - {"publishing"}, "ready"),
    "publish_start": (_ALL - _BUSY, "publishing"),
    # the publish run owns its result; a concurrent writer does not block it
    "publish_complete": (_ALL, None),
    "error": (_ALL, "error"),
}
PUBLISH_RESULT_STATUSES = frozenset({"posted", "failed", "error"})


def apply_transition(
    video: Video,
    trigger: str,
    *,
    status: Optional[str] = None,
    error_message: Optional[str] = None,
) -> Video:
    """Move `video` along `trigger`, raising InvalidStateError for illegal moves."""
    if trigger not in TRANSITIONS:
        raise ValueError(f"Unknown lifecycle trigger: {trigger}")
    allowed, target = TRANSITIONS[trigger]
    current = video.status or "uploaded"
    if current not in allowed:
        raise InvalidStateError(f"Cannot {trigger.replace('_', ' ')} while video is {current}", status=409)

    if target is None:
        if status not in PUBLISH_RESULT_STATUSES:
            raise ValueError(f"{trigger} requires one of {sorted(PUBLISH_RESULT_STATUSES)}")
        target = status

    if target == "error":
        if not (error_message or "").strip():
            raise ValueError("Transition to error requires an error message")
        video.error_message = error_message.strip()
    elif trigger == "publish_complete":
        video.error_message = error_message
    else:
        video.error_message = None

    video.status = target
    video.updated_at = datetime.now(timezone.utc)
    return video


class VideoLifecycle:
    """Status transitions and content updates for one request-scoped session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _commit(self, video: Optional[Video] = None) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            raise PersistenceError(f"Failed to save video: {exc}", service="database") from exc
        if video is not None:
            # reload server-side timestamps
            await self.db.refresh(video)

    async def get_video(self, video_id: str) -> Video:
        video = await self.db.get(Video, video_id)
        if video is None:
            raise NotFoundError("Video not found", fields=["video_id"], status=404)
        return video

    async def list_videos(self, status: Optional[str] = None, limit: int = 50) -> List[Video]:
        query = select(Video).order_by(Video.created_at.desc(), Video.id.desc()).limit(max(1, min(limit, 200)))
        if status:
            query = query.where(Video.status == status)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def create_video(
        self,
        *,
        title: str,
        file_url: str,
        file_name: Optional[str] = None,
        file_size_bytes: Optional[int] = None,
        selected_platforms: Optional[List[str]] = None,
    ) -> Video:
        if not (title or "").strip():
            raise ValidationError("Title is required", fields=["title"])
        if not (file_url or "").strip():
            raise ValidationError("File URL is required", fields=["file_url"])
        video = Video(
            title=title.strip(),
            file_url=file_url.strip(),
            file_name=file_name,
            file_size_bytes=file_size_bytes,
            status="uploaded",
            selected_platforms=validate_platforms(selected_platforms or []),
            published_platforms={},
        )
        self.db.add(video)
        await self._commit(video)
        return video

    async def start_transcription(self, video_id: str) -> Video:
        video = await self.get_video(video_id)
        apply_transition(video, "transcription_start")
        await self._commit(video)
        return video

    async def complete_transcription(self, video_id: str, result: TranscriptResult) -> Video:
        video = await self.get_video(video_id)
        apply_transition(video, "transcription_complete")
        video.transcript = result.text
        video.transcript_confidence = result.confidence
        video.transcript_word_count = result.word_count or len(result.text.split())
        await self._commit(video)
        logger.info("Transcript saved for video %s (%s words)", video_id, video.transcript_word_count)
        return video

    async def start_caption_generation(self, video_id: str) -> Video:
        video = await self.get_video(video_id)
        if not (video.transcript or "").strip():
            raise ValidationError("Video transcript is required for caption generation", fields=["transcript"])
        apply_transition(video, "caption_start")
        await self._commit(video)
        return video

    async def complete_caption_generation(self, video_id: str, captions: Mapping[str, Mapping[str, Any]]) -> Video:
        video = await self.get_video(video_id)
        apply_transition(video, "caption_complete")
        video.captions = {platform: dict(entry) for platform, entry in captions.items()}
        legacy = legacy_caption_fields(captions)
        video.caption = legacy["caption"]
        video.hashtags = legacy["hashtags"]
        await self._commit(video)
        logger.info("Captions saved for video %s (%s platforms)", video_id, len(captions))
        return video

    async def approve_captions(
        self,
        video_id: str,
        captions: Mapping[str, Mapping[str, Any]],
        selected_platforms: List[str],
    ) -> Video:
        """Store reviewed captions and platform selection; video becomes ready to publish."""
        platforms = validate_platforms(selected_platforms)
        if not platforms:
            raise ValidationError("Select at least one platform", fields=["selected_platforms"])
        caption_settings = await load_caption_settings(self.db)
        edited = validate_caption_edits(captions, resolve_platform_configs(caption_settings))
        video = await self.get_video(video_id)
        apply_transition(video, "approve")
        merged = dict(video.captions or {})
        merged.update(edited)
        video.captions = merged
        video.selected_platforms = platforms
        legacy = legacy_caption_fields(merged)
        video.caption = legacy["caption"]
        video.hashtags = legacy["hashtags"]
        await self._commit(video)
        return video

    async def fail(self, video_id: str, message: str) -> Video:
        video = await self.get_video(video_id)
        apply_transition(video, "error", error_message=message)
        await self._commit(video)
        logger.warning("Video %s moved to error: %s", video_id, message)
        return video


def validate_platforms(platforms: List[str]) -> List[str]:
    cleaned: List[str] = []
    for platform in platforms:
        key = str(platform or "").strip().lower()
        if key not in SUPPORTED_PLATFORMS:
            raise ValidationError(f"Unsupported platform: {platform}", fields=["selected_platforms"])
        if key not in cleaned:
            cleaned.append(key)
    return cleaned