"""PostAnalytics model for historical post metrics."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
import uuid

from database import Base


class PostAnalytics(Base):
    """Metrics for a specific post at a point in time."""

    __tablename__ = "post_analytics"
    __table_args__ = (
        UniqueConstraint("post_id", "platform", "collected_at", name="uq_post_analytics_collection"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    post_id = Column(String, ForeignKey("posts.id"), nullable=False, index=True)
    platform = Column(String, nullable=False)
    platform_post_id = Column(String, nullable=False)
    impressions = Column(Integer, default=0)
    reach = Column(Integer, default=0)
    engagement = Column(Integer, default=0)
    clicks = Column(Integer, default=0)
    shares = Column(Integer, default=0)
    comments = Column(Integer, default=0)
    likes = Column(Integer, default=0)
    views = Column(Integer, default=0)
    watch_time_seconds = Column(Integer, default=0)
    platform_metrics_json = Column(JSON, nullable=True)
    collected_at = Column(DateTime(timezone=True), nullable=False)
    next_update_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    post = relationship("Post", back_populates="analytics")
