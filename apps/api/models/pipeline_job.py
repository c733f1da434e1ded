"""Pipeline job model: durable log of background steps per video."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class PipelineJob(Base):
    """Queued background step (transcription, captions, publish) for one video."""

    __tablename__ = "pipeline_jobs"
    __table_args__ = (
        UniqueConstraint("video_id", "step", name="uq_pipeline_jobs_video_step"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    video_id = Column(String, ForeignKey("videos.id"), nullable=False, index=True)
    step = Column(String, nullable=False)
    status = Column(String, nullable=False, default="queued", index=True)
    payload_json = Column(JSON, nullable=True)
    queue_job_id = Column(String, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    video = relationship("Video", back_populates="jobs")
