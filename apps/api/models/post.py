"""Post model for content successfully published to a platform."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Text, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Post(Base):
    """One successful publish of a video to one platform."""

    __tablename__ = "posts"
    __table_args__ = (
        UniqueConstraint("platform", "platform_post_id", name="uq_posts_platform_post"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    video_id = Column(String, ForeignKey("videos.id"), nullable=False, index=True)
    platform = Column(String, nullable=False, index=True)
    platform_post_id = Column(String, nullable=False)
    post_url = Column(String, nullable=True)
    caption = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="posted")
    posted_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    impressions = Column(Integer, nullable=False, default=0)
    reach = Column(Integer, nullable=False, default=0)
    engagement = Column(Integer, nullable=False, default=0)
    clicks = Column(Integer, nullable=False, default=0)
    shares = Column(Integer, nullable=False, default=0)
    comments = Column(Integer, nullable=False, default=0)
    likes = Column(Integer, nullable=False, default=0)
    views = Column(Integer, nullable=False, default=0)
    platform_metrics_json = Column(JSON, nullable=True)  # Platform extensions (reactions, video stats)
    last_analytics_update = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    video = relationship("Video", back_populates="posts")
    analytics = relationship("PostAnalytics", back_populates="post", cascade="all, delete-orphan")
