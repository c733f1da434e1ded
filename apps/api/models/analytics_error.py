"""Analytics error log model."""

from sqlalchemy import Column, String, DateTime, Text, JSON
from sqlalchemy.sql import func
import uuid

from database import Base


class AnalyticsError(Base):
    """Failure recorded during analytics ingestion, kept for later inspection."""

    __tablename__ = "analytics_errors"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    platform = Column(String, nullable=False, index=True)
    error_type = Column(String, nullable=False)
    error_message = Column(Text, nullable=False)
    error_details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
