"""
Analytics models and schemas.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


METRIC_FIELDS = ("impressions", "reach", "engagement", "clicks", "shares", "comments", "likes", "views")


class RankingKey(str, Enum):
    RECENCY = "recency"        # Newest first
    ENGAGEMENT = "engagement"  # Most engagement first


class BaseMetrics(BaseModel):
    """Canonical metric set shared by every platform."""
    impressions: int = 0
    reach: int = 0
    engagement: int = 0
    clicks: int = 0
    shares: int = 0
    comments: int = 0
    likes: int = 0
    views: int = 0


class FacebookMetrics(BaseMetrics):
    platform: Literal["facebook"] = "facebook"
    reactions: Dict[str, int] = Field(default_factory=dict)  # like, love, haha, wow, sad, angry
    video_views: int = 0
    video_watch_time: int = 0  # Average seconds watched
    unique_views: int = 0
    organic_reach: int = 0
    paid_reach: int = 0


class InstagramMetrics(BaseMetrics):
    platform: Literal["instagram"] = "instagram"
    saved: int = 0


class TikTokMetrics(BaseMetrics):
    platform: Literal["tiktok"] = "tiktok"
    average_watch_time: float = 0.0


class YouTubeMetrics(BaseMetrics):
    platform: Literal["youtube"] = "youtube"
    watch_time_minutes: float = 0.0
    subscribers_gained: int = 0


PlatformMetrics = Annotated[
    Union[FacebookMetrics, InstagramMetrics, TikTokMetrics, YouTubeMetrics],
    Field(discriminator="platform"),
]


class PostPerformance(BaseMetrics):
    """One published post with its latest metrics, as read for summaries."""
    post_id: str
    video_id: str
    platform: str
    post_url: Optional[str] = None
    posted_at: datetime


class TopPost(BaseModel):
    post_id: str
    video_id: str
    platform: str
    post_url: Optional[str] = None
    posted_at: datetime
    views: int
    engagement: int
    impressions: int
    engagement_rate: float


class PlatformSummary(BaseModel):
    platform: str
    posts_count: int = 0
    total_views: int = 0
    total_engagement: int = 0
    total_reach: int = 0
    total_impressions: int = 0
    average_engagement_rate: float = 0.0
    top_performing_posts: List[TopPost] = Field(default_factory=list)


class AnalyticsSummary(BaseModel):
    """Derived on read; never persisted."""
    period_start: datetime
    period_end: datetime
    ranking: RankingKey
    total_videos: int = 0
    total_posts: int = 0
    total_views: int = 0
    total_engagement: int = 0
    total_reach: int = 0
    total_impressions: int = 0
    average_engagement_rate: float = 0.0
    platforms: Dict[str, PlatformSummary] = Field(default_factory=dict)
