"""Caption settings model (single global row)."""

from sqlalchemy import Column, Integer, DateTime, JSON
from sqlalchemy.sql import func

from database import Base


class CaptionSettings(Base):
    """Global caption generation preferences."""

    __tablename__ = "caption_settings"

    id = Column(Integer, primary_key=True, default=1)
    settings = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
