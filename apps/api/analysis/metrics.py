"""
Core analytics summarization logic.
"""

import numpy as np
from datetime import datetime, timezone
from typing import Dict, Iterable, List

from .models import (
    AnalyticsSummary,
    PlatformSummary,
    PostPerformance,
    RankingKey,
    TopPost,
)

SUMMED_FIELDS = ("views", "engagement", "reach", "impressions")


def engagement_rate(engagement: float, impressions: float) -> float:
    """Engagement as a percentage of impressions; 0 when there are no impressions."""
    if not impressions or impressions <= 0:
        return 0.0
    return float(engagement) / float(impressions) * 100


def _timestamp(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def rank_top_posts(
    posts: Iterable[PostPerformance],
    key: RankingKey = RankingKey.ENGAGEMENT,
    limit: int = 5,
) -> List[TopPost]:
    """
    Highest ranked posts, at most `limit`.

    RECENCY orders newest first, ENGAGEMENT orders by engagement descending.
    Equal keys fall back to post id ascending so the order is deterministic.
    """
    if key == RankingKey.RECENCY:
        ordered = sorted(posts, key=lambda p: (-_timestamp(p.posted_at), p.post_id))
    else:
        ordered = sorted(posts, key=lambda p: (-p.engagement, p.post_id))

    return [
        TopPost(
            post_id=p.post_id,
            video_id=p.video_id,
            platform=p.platform,
            post_url=p.post_url,
            posted_at=p.posted_at,
            views=p.views,
            engagement=p.engagement,
            impressions=p.impressions,
            engagement_rate=engagement_rate(p.engagement, p.impressions),
        )
        for p in ordered[: max(limit, 0)]
    ]


class AnalyticsSummarizer:
    """Folds post-level metrics into per-platform and global summaries."""

    def __init__(
        self,
        posts: List[PostPerformance],
        period_start: datetime,
        period_end: datetime,
        ranking: RankingKey = RankingKey.ENGAGEMENT,
        top_limit: int = 5,
    ):
        self.posts = posts
        self.period_start = period_start
        self.period_end = period_end
        self.ranking = ranking
        self.top_limit = top_limit

    @staticmethod
    def _totals(posts: List[PostPerformance]) -> Dict[str, int]:
        if not posts:
            return {name: 0 for name in SUMMED_FIELDS}
        matrix = np.array([[getattr(p, name) for name in SUMMED_FIELDS] for p in posts], dtype=np.int64)
        sums = matrix.sum(axis=0)
        return {name: int(sums[i]) for i, name in enumerate(SUMMED_FIELDS)}

    def _platform_summary(self, platform: str, posts: List[PostPerformance]) -> PlatformSummary:
        totals = self._totals(posts)
        return PlatformSummary(
            platform=platform,
            posts_count=len(posts),
            total_views=totals["views"],
            total_engagement=totals["engagement"],
            total_reach=totals["reach"],
            total_impressions=totals["impressions"],
            average_engagement_rate=engagement_rate(totals["engagement"], totals["impressions"]),
            top_performing_posts=rank_top_posts(posts, self.ranking, self.top_limit),
        )

    def summarize(self) -> AnalyticsSummary:
        groups: Dict[str, List[PostPerformance]] = {}
        for post in self.posts:
            groups.setdefault(post.platform, []).append(post)

        platforms = {
            platform: self._platform_summary(platform, group)
            for platform, group in sorted(groups.items())
        }

        total_views = sum(s.total_views for s in platforms.values())
        total_engagement = sum(s.total_engagement for s in platforms.values())
        total_reach = sum(s.total_reach for s in platforms.values())
        total_impressions = sum(s.total_impressions for s in platforms.values())

        return AnalyticsSummary(
            period_start=self.period_start,
            period_end=self.period_end,
            ranking=self.ranking,
            total_videos=len({p.video_id for p in self.posts}),
            total_posts=len(self.posts),
            total_views=total_views,
            total_engagement=total_engagement,
            total_reach=total_reach,
            total_impressions=total_impressions,
            average_engagement_rate=engagement_rate(total_engagement, total_impressions),
            platforms=platforms,
        )
