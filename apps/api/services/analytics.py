"""
Analytics ingestion and summarization.

Ingestion pulls insights for published posts, maps them onto the canonical
metric set, updates the post row and appends a time-series row. Failures are
isolated per post and recorded in `analytics_errors`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from analysis.metrics import AnalyticsSummarizer
from analysis.models import (
    METRIC_FIELDS,
    AnalyticsSummary,
    BaseMetrics,
    FacebookMetrics,
    InstagramMetrics,
    PostPerformance,
    RankingKey,
    TikTokMetrics,
    YouTubeMetrics,
)
from config import settings
from database import async_session_maker
from models.analytics_error import AnalyticsError
from models.post import Post
from models.post_analytics import PostAnalytics
from services.connectors import BaseConnectorProvider, get_connector_provider
from services.credentials import CredentialLifecycleManager
from services.errors import PersistenceError
from services.retry import RetryExecutor

logger = logging.getLogger(__name__)

REACTION_TYPES = ("like", "love", "haha", "wow", "sad", "angry")
TIME_SERIES_INTERVAL = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _int(value: Any) -> int:
    if isinstance(value, Mapping):
        return sum(_int(v) for v in value.values())
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def map_facebook_metrics(raw: Mapping[str, Any]) -> FacebookMetrics:
    reactions_raw = raw.get("post_reactions_by_type_total") or {}
    if not isinstance(reactions_raw, Mapping):
        reactions_raw = {}
    reactions = {name: _int(reactions_raw.get(name)) for name in REACTION_TYPES}
    return FacebookMetrics(
        impressions=_int(raw.get("post_impressions")),
        reach=_int(raw.get("post_impressions_unique")),
        engagement=_int(raw.get("post_engaged_users")),
        clicks=_int(raw.get("post_clicks")),
        likes=sum(reactions.values()),
        views=_int(raw.get("post_video_views")),
        reactions=reactions,
        video_views=_int(raw.get("post_video_views")),
        video_watch_time=_int(raw.get("post_video_avg_time_watched")),
        unique_views=_int(raw.get("post_video_views_unique")),
        organic_reach=_int(raw.get("post_video_views_organic")),
        paid_reach=_int(raw.get("post_video_views_paid")),
    )


def map_instagram_metrics(raw: Mapping[str, Any]) -> InstagramMetrics:
    return InstagramMetrics(
        impressions=_int(raw.get("impressions")),
        reach=_int(raw.get("reach")),
        engagement=_int(raw.get("total_interactions")),
        views=_int(raw.get("plays")),
        likes=_int(raw.get("likes")),
        comments=_int(raw.get("comments")),
        shares=_int(raw.get("shares")),
        saved=_int(raw.get("saved")),
    )


def _map_canonical(model, raw: Mapping[str, Any]) -> BaseMetrics:
    return model(**{name: _int(raw.get(name)) for name in METRIC_FIELDS})


METRIC_MAPPERS: Dict[str, Callable[[Mapping[str, Any]], BaseMetrics]] = {
    "facebook": map_facebook_metrics,
    "instagram": map_instagram_metrics,
    "tiktok": lambda raw: _map_canonical(TikTokMetrics, raw),
    "youtube": lambda raw: _map_canonical(YouTubeMetrics, raw),
}


def map_platform_metrics(platform: str, raw: Mapping[str, Any]) -> BaseMetrics:
    mapper = METRIC_MAPPERS.get(platform)
    if mapper is None:
        raise ValueError(f"Unsupported platform: {platform}")
    return mapper(raw)


@dataclass
class IngestionReport:
    platform: str
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AnalyticsAggregator:
    """Pulls post insights per platform and builds summaries over a time window."""

    def __init__(
        self,
        *,
        session_maker=None,
        providers: Optional[Dict[str, BaseConnectorProvider]] = None,
        credentials: Optional[Dict[str, CredentialLifecycleManager]] = None,
        retry: Optional[RetryExecutor] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session_maker = session_maker
        self._providers = dict(providers or {})
        self._credentials = dict(credentials or {})
        self.retry = retry or RetryExecutor(max_attempts=settings.ANALYTICS_FETCH_MAX_ATTEMPTS)
        self._sleep = sleep

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
            )
        return self._credentials[platform]

    async def _load_posts(self, platform: str, post_ids: Optional[Sequence[str]]) -> List[Dict[str, Any]]:
        async with self._sessions() as session:
            query = select(Post).where(Post.platform == platform, Post.status == "posted")
            if post_ids is not None:
                query = query.where(Post.id.in_(list(post_ids)))
            result = await session.execute(query.order_by(Post.posted_at.asc(), Post.id.asc()))
            return [
                {
                    "id": post.id,
                    "platform_post_id": post.platform_post_id,
                    "posted_at": _as_utc(post.posted_at or post.created_at),
                }
                for post in result.scalars().all()
            ]

    async def refresh_platform(
        self,
        platform: str,
        force_refresh: bool = False,
        post_ids: Optional[Sequence[str]] = None,
    ) -> IngestionReport:
        """Ingest insights for the platform's posts; posts under the minimum age are skipped unless forced."""
        report = IngestionReport(platform=platform)
        posts = await self._load_posts(platform, post_ids)
        if not posts:
            return report

        min_age = timedelta(minutes=settings.ANALYTICS_MIN_POST_AGE_MINUTES)
        now = _utcnow()
        eligible = [
            post for post in posts if force_refresh or now - (post["posted_at"] or now) >= min_age
        ]
        report.skipped = len(posts) - len(eligible)
        if not eligible:
            return report

        token = await self._credential_manager(platform).get_valid_token()
        if not token.token or token.error:
            # a stale token that failed refresh is never sent
            report.error = token.error or "No credentials configured"
            report.failed = len(eligible)
            await self._log_error(platform, "credentials", report.error, {"post_count": len(eligible)})
            return report

        provider = self._provider(platform)
        for post in eligible:
            try:
                raw = await self.retry.execute(
                    lambda: provider.fetch_insights(
                        post_id=post["platform_post_id"],
                        metric_names=provider.insight_metrics,
                        token=token.token,
                    ),
                    max_attempts=settings.ANALYTICS_FETCH_MAX_ATTEMPTS,
                )
                metrics = map_platform_metrics(platform, raw)
                await self._store(post["id"], platform, post["platform_post_id"], metrics)
                report.updated += 1
            except Exception as exc:
                report.failed += 1
                logger.warning("Analytics update failed for %s post %s: %s", platform, post["platform_post_id"], exc)
                await self._log_error(
                    platform,
                    "update_post_analytics",
                    str(exc),
                    {
                        "post_id": post["id"],
                        "platform_post_id": post["platform_post_id"],
                        "error_class": type(exc).__name__,
                    },
                )

            if settings.ANALYTICS_REQUEST_SPACING_SECONDS > 0:
                await self._sleep(settings.ANALYTICS_REQUEST_SPACING_SECONDS)

        logger.info(
            "Analytics refresh for %s: %s updated, %s skipped, %s failed",
            platform,
            report.updated,
            report.skipped,
            report.failed,
        )
        return report

    async def _store(self, post_id: str, platform: str, platform_post_id: str, metrics: BaseMetrics) -> None:
        collected_at = _utcnow().replace(microsecond=0)
        base_values = {name: int(getattr(metrics, name)) for name in METRIC_FIELDS}
        extensions = metrics.model_dump(exclude=set(METRIC_FIELDS) | {"platform"})

        async with self._sessions() as session:
            try:
                post = await session.get(Post, post_id)
                if post is None:
                    raise PersistenceError(f"Post {post_id} disappeared during ingestion", service="database")
                for name, value in base_values.items():
                    setattr(post, name, value)
                post.platform_metrics_json = dict(extensions)
                post.last_analytics_update = collected_at

                existing = await session.execute(
                    select(PostAnalytics).where(
                        PostAnalytics.post_id == post_id,
                        PostAnalytics.platform == platform,
                        PostAnalytics.collected_at == collected_at,
                    )
                )
                row = existing.scalar_one_or_none()
                if row is None:
                    row = PostAnalytics(
                        post_id=post_id,
                        platform=platform,
                        platform_post_id=platform_post_id,
                        collected_at=collected_at,
                    )
                    session.add(row)
                for name, value in base_values.items():
                    setattr(row, name, value)
                row.watch_time_seconds = int(extensions.get("video_watch_time") or 0)
                row.platform_metrics_json = dict(extensions)
                row.next_update_at = collected_at + TIME_SERIES_INTERVAL
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise PersistenceError(f"Failed to store analytics: {exc}", service="database") from exc

    async def _log_error(self, platform: str, error_type: str, message: str, details: Dict[str, Any]) -> None:
        async with self._sessions() as session:
            session.add(
                AnalyticsError(
                    platform=platform,
                    error_type=error_type,
                    error_message=message[:2000],
                    error_details=details,
                )
            )
            try:
                await session.commit()
            except SQLAlchemyError:
                await session.rollback()
                logger.exception("Failed to record analytics error for %s", platform)

    async def _platforms_with_posts(self) -> List[str]:
        async with self._sessions() as session:
            result = await session.execute(
                select(Post.platform).where(Post.status == "posted").distinct().order_by(Post.platform)
            )
            return [row[0] for row in result.all()]

    async def refresh_all(self, force_refresh: bool = False) -> List[IngestionReport]:
        reports = []
        for platform in await self._platforms_with_posts():
            reports.append(await self.refresh_platform(platform, force_refresh=force_refresh))
        return reports

    async def refresh_posts(self, post_ids: Sequence[str], force_refresh: bool = True) -> List[IngestionReport]:
        """Refresh specific posts (used after publishing, where age gating is bypassed)."""
        async with self._sessions() as session:
            result = await session.execute(select(Post.id, Post.platform).where(Post.id.in_(list(post_ids))))
            grouped: Dict[str, List[str]] = {}
            for post_id, platform in result.all():
                grouped.setdefault(platform, []).append(post_id)

        reports = []
        for platform in sorted(grouped):
            reports.append(
                await self.refresh_platform(platform, force_refresh=force_refresh, post_ids=grouped[platform])
            )
        return reports

    async def summarize(
        self,
        days: int = 30,
        platform: Optional[str] = None,
        ranking: RankingKey = RankingKey.ENGAGEMENT,
        refresh: bool = False,
        force_refresh: bool = False,
    ) -> AnalyticsSummary:
        if refresh:
            if platform:
                await self.refresh_platform(platform, force_refresh=force_refresh)
            else:
                await self.refresh_all(force_refresh=force_refresh)

        period_end = _utcnow()
        period_start = period_end - timedelta(days=max(int(days), 1))

        async with self._sessions() as session:
            query = select(Post).where(Post.status == "posted", Post.posted_at >= period_start)
            if platform:
                query = query.where(Post.platform == platform)
            result = await session.execute(query)
            posts = [
                PostPerformance(
                    post_id=post.id,
                    video_id=post.video_id,
                    platform=post.platform,
                    post_url=post.post_url,
                    posted_at=_as_utc(post.posted_at),
                    **{name: int(getattr(post, name) or 0) for name in METRIC_FIELDS},
                )
                for post in result.scalars().all()
            ]

        return AnalyticsSummarizer(
            posts,
            period_start=period_start,
            period_end=period_end,
            ranking=ranking,
            top_limit=settings.ANALYTICS_TOP_POSTS_LIMIT,
        ).summarize()
