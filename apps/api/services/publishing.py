"""
Multi-platform publish orchestration.

Platforms are published sequentially. A credential error gets exactly one
refresh and one retry; everything else is recorded as a per-platform outcome.
The final status write always runs, even when the loop is interrupted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from database import async_session_maker
from models.post import Post
from models.video import Video
from services.captions import caption_for_platform
from services.connectors import BaseConnectorProvider, ConnectorUnavailableError, get_connector_provider
from services.credentials import CredentialLifecycleManager, TokenResult
from services.errors import (
    CredentialError,
    InvalidStateError,
    NoCredentialsError,
    NotFoundError,
    PersistenceError,
    PipelineError,
    ValidationError,
)
from services.lifecycle import apply_transition, validate_platforms
from services.pipeline_queue import enqueue_analytics_refresh
from services.retry import RetryExecutor

logger = logging.getLogger(__name__)

NO_CREDENTIALS_REASON = "No credentials configured"
# Attempt budget per platform: the initial call, then one retry after a token refresh.
ATTEMPT_PHASES: Tuple[str, ...] = ("fresh", "after_refresh")


class PostedOutcome(BaseModel):
    status: Literal["posted"] = "posted"
    post_id: str
    post_url: str
    published_at: datetime


class FailedOutcome(BaseModel):
    status: Literal["failed"] = "failed"
    error: str
    failed_at: datetime


class SkippedOutcome(BaseModel):
    status: Literal["skipped"] = "skipped"
    reason: str
    skipped_at: datetime


PublishOutcome = Annotated[Union[PostedOutcome, FailedOutcome, SkippedOutcome], Field(discriminator="status")]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PlatformTarget:
    platform: str
    token: str
    account_id: str


@dataclass
class PublishPlan:
    available: List[PlatformTarget] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)  # platform -> reason

    @property
    def available_platforms(self) -> List[str]:
        return [target.platform for target in self.available]


@dataclass
class PublishResult:
    video_id: str
    status: str
    outcomes: Dict[str, Dict[str, Any]]
    post_ids: List[str] = field(default_factory=list)
    error_message: Optional[str] = None


class PublishOrchestrator:
    """Publishes one video to its selected platforms."""

    def __init__(
        self,
        *,
        session_maker=None,
        providers: Optional[Dict[str, BaseConnectorProvider]] = None,
        credentials: Optional[Dict[str, CredentialLifecycleManager]] = None,
        retry: Optional[RetryExecutor] = None,
        schedule_analytics: Optional[Callable[[List[str]], Any]] = None,
    ) -> None:
        self._session_maker = session_maker
        self._providers = dict(providers or {})
        self._credentials = dict(credentials or {})
        self.retry = retry or RetryExecutor()
        self._schedule_analytics = schedule_analytics

    def _sessions(self):
        return (self._session_maker or async_session_maker)()

    def _provider(self, platform: str) -> BaseConnectorProvider:
        if platform not in self._providers:
            self._providers[platform] = get_connector_provider(platform)
        return self._providers[platform]

    def _credential_manager(self, platform: str) -> CredentialLifecycleManager:
        if platform not in self._credentials:
            self._credentials[platform] = CredentialLifecycleManager(
                platform,
                session_maker=self._session_maker,
                provider=self._providers.get(platform),
                retry=self.retry,
            )
        return self._credentials[platform]

    async def plan(self, platforms: Sequence[str]) -> PublishPlan:
        """Split platforms into those with a usable credential and those to skip."""
        plan = PublishPlan()
        preflight_window = timedelta(hours=settings.CREDENTIAL_PREFLIGHT_REFRESH_HOURS)
        for platform in platforms:
            provider = self._provider(platform)
            if not provider.enabled:
                plan.skipped[platform] = f"{platform.capitalize()} publishing is disabled"
                continue
            result: TokenResult = await self._credential_manager(platform).get_valid_token(
                proactive_refresh_within=preflight_window
            )
            if result.token and not result.error and result.account_id:
                plan.available.append(PlatformTarget(platform, result.token, result.account_id))
            elif result.token is None:
                plan.skipped[platform] = NO_CREDENTIALS_REASON
            else:
                plan.skipped[platform] = f"Credentials unavailable: {result.error}"
        return plan

    async def _load_for_publish(self, video_id: str, platforms: Optional[Sequence[str]]) -> Dict[str, Any]:
        async with self._sessions() as db:
            video = await db.get(Video, video_id)
            if video is None:
                raise NotFoundError("Video not found", fields=["video_id"], status=404)
            selected = validate_platforms(list(platforms or video.selected_platforms or []))
            if not selected:
                raise ValidationError("Select at least one platform", fields=["platforms"])
            if video.status in ("transcribing", "generating"):
                raise InvalidStateError(f"Cannot publish while video is {video.status}", status=409)
            captions = {
                platform: caption_for_platform(video.captions, platform, video.caption, video.hashtags)
                for platform in selected
            }
            if not any(captions.values()):
                raise InvalidStateError("Video needs captions before publishing", status=400)
            return {"selected": selected, "captions": captions, "file_url": video.file_url}

    async def preflight(self, video_id: str, platforms: Optional[Sequence[str]] = None) -> PublishPlan:
        """Validate the request and credentials without touching the video."""
        snapshot = await self._load_for_publish(video_id, platforms)
        plan = await self.plan(snapshot["selected"])
        if not plan.available:
            raise NoCredentialsError("No platforms have valid credentials configured", status=400)
        return plan

    async def publish(self, video_id: str, platforms: Optional[Sequence[str]] = None) -> PublishResult:
        snapshot = await self._load_for_publish(video_id, platforms)
        selected: List[str] = snapshot["selected"]
        plan = await self.plan(selected)
        if not plan.available:
            raise NoCredentialsError("No platforms have valid credentials configured", status=400)

        async with self._sessions() as db:
            video = await db.get(Video, video_id)
            apply_transition(video, "publish_start")
            video.selected_platforms = list(selected)
            try:
                await db.commit()
            except SQLAlchemyError as exc:
                await db.rollback()
                raise PersistenceError(f"Failed to mark video publishing: {exc}", service="database") from exc

        outcomes: Dict[str, PublishOutcome] = {}
        post_ids: List[str] = []
        interrupted: Optional[BaseException] = None
        final: Optional[PublishResult] = None
        for platform, reason in plan.skipped.items():
            outcomes[platform] = SkippedOutcome(reason=reason, skipped_at=_utcnow())
        try:
            for target in plan.available:
                caption = snapshot["captions"].get(target.platform)
                if not caption:
                    outcomes[target.platform] = FailedOutcome(
                        error=f"No caption for {target.platform}", failed_at=_utcnow()
                    )
                    continue
                outcome = await self._publish_platform(target, snapshot["file_url"], caption)
                outcomes[target.platform] = outcome
                if isinstance(outcome, PostedOutcome):
                    post_ids.append(await self._record_post(video_id, target.platform, outcome, caption))
        except Exception as exc:
            interrupted = exc
            raise
        finally:
            final = await self._finalize(video_id, selected, outcomes, post_ids, interrupted)

        if post_ids:
            self._schedule_refresh(post_ids)
        return final

    async def _publish_platform(self, target: PlatformTarget, file_url: str, caption: str) -> PublishOutcome:
        provider = self._provider(target.platform)
        token = target.token
        for phase in ATTEMPT_PHASES:
            try:
                receipt = await self.retry.execute(
                    lambda: provider.publish(
                        account_ref=target.account_id,
                        media_url=file_url,
                        caption=caption,
                        token=token,
                    )
                )
            except CredentialError as exc:
                if phase == ATTEMPT_PHASES[-1]:
                    return self._failed(target.platform, str(exc))
                logger.info("%s rejected the token; refreshing once before retrying", target.platform)
                refreshed = await self._credential_manager(target.platform).refresh()
                if not refreshed.success:
                    return self._failed(target.platform, f"{exc}; token refresh failed: {refreshed.error}")
                token = refreshed.token
                continue
            except (PipelineError, ConnectorUnavailableError) as exc:
                return self._failed(target.platform, str(exc))

            logger.info("Published to %s: %s", target.platform, receipt.remote_post_id)
            return PostedOutcome(
                post_id=receipt.remote_post_id,
                post_url=receipt.remote_post_url,
                published_at=_utcnow(),
            )
        return self._failed(target.platform, "Publish attempts exhausted")

    @staticmethod
    def _failed(platform: str, message: str) -> FailedOutcome:
        logger.warning("Publishing to %s failed: %s", platform, message)
        return FailedOutcome(error=message, failed_at=_utcnow())

    async def _record_post(self, video_id: str, platform: str, outcome: PostedOutcome, caption: str) -> str:
        async with self._sessions() as db:
            post = Post(
                video_id=video_id,
                platform=platform,
                platform_post_id=outcome.post_id,
                post_url=outcome.post_url,
                caption=caption,
                status="posted",
                posted_at=outcome.published_at,
            )
            db.add(post)
            try:
                await db.commit()
            except SQLAlchemyError as exc:
                await db.rollback()
                raise PersistenceError(f"Failed to record {platform} post: {exc}", service="database") from exc
            return post.id

    async def _finalize(
        self,
        video_id: str,
        selected: List[str],
        outcomes: Dict[str, PublishOutcome],
        post_ids: List[str],
        interrupted: Optional[BaseException],
    ) -> PublishResult:
        for platform in selected:
            if platform not in outcomes:
                reason = f"Publishing interrupted: {interrupted}" if interrupted else "Publishing did not complete"
                outcomes[platform] = FailedOutcome(error=reason, failed_at=_utcnow())

        posted = [p for p, o in outcomes.items() if isinstance(o, PostedOutcome)]
        failed = [p for p, o in outcomes.items() if isinstance(o, FailedOutcome)]

        if isinstance(interrupted, PersistenceError):
            status = "error"
            error_message = f"Failed to save publish results: {interrupted}"
        else:
            status = "posted" if posted else "failed"
            error_message = f"Some platforms failed to publish: {', '.join(failed)}" if failed else None

        serialized = {platform: outcome.model_dump(mode="json") for platform, outcome in outcomes.items()}
        try:
            async with self._sessions() as db:
                video = await db.get(Video, video_id)
                apply_transition(video, "publish_complete", status=status, error_message=error_message)
                video.published_platforms = serialized
                await db.commit()
        except SQLAlchemyError as exc:
            logger.exception("Final publish write failed for video %s", video_id)
            await self._mark_error(video_id, f"Failed to save publish results: {exc}")
            status = "error"

        logger.info("Publish finished for video %s: %s (posted=%s failed=%s)", video_id, status, posted, failed)
        return PublishResult(
            video_id=video_id,
            status=status,
            outcomes=serialized,
            post_ids=list(post_ids),
            error_message=error_message,
        )

    async def _mark_error(self, video_id: str, message: str) -> None:
        async with self._sessions() as db:
            video = await db.get(Video, video_id)
            if video is None:
                return
            apply_transition(video, "error", error_message=message)
            try:
                await db.commit()
            except SQLAlchemyError as exc:
                await db.rollback()
                raise PersistenceError(message, service="database") from exc

    def _schedule_refresh(self, post_ids: List[str]) -> None:
        schedule = self._schedule_analytics or enqueue_analytics_refresh
        try:
            schedule(list(post_ids))
        except Exception as exc:
            logger.warning("Could not schedule analytics refresh for %s: %s", post_ids, exc)
