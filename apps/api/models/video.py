"""Video model for uploaded videos moving through the publishing pipeline."""

from sqlalchemy import Column, String, DateTime, Integer, Float, Text, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Video(Base):
    """Uploaded video and its transcript, captions and publish outcomes."""

    __tablename__ = "videos"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String, nullable=False)
    file_url = Column(String, nullable=False)
    file_name = Column(String, nullable=True)
    file_size_bytes = Column(Integer, nullable=True)
    status = Column(String, nullable=False, default="uploaded", index=True)
    transcript = Column(Text, nullable=True)
    transcript_confidence = Column(Float, nullable=True)
    transcript_word_count = Column(Integer, nullable=True)
    captions = Column(JSON, nullable=True)  # {platform: {caption, hashtags, char_count}}
    caption = Column(Text, nullable=True)  # Legacy single caption
    hashtags = Column(JSON, nullable=True)  # Legacy single hashtag list
    selected_platforms = Column(JSON, nullable=True)
    published_platforms = Column(JSON, nullable=True)  # {platform: PublishOutcome}
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    posts = relationship("Post", back_populates="video")
    jobs = relationship("PipelineJob", back_populates="video", cascade="all, delete-orphan")
