"""Platform credential model for publish/read access tokens."""

from sqlalchemy import Boolean, Column, String, DateTime, Integer, Text, JSON, Index
from sqlalchemy.sql import func
import uuid

from database import Base


class PlatformCredential(Base):
    """Access token for one platform account; at most one active row per platform."""

    __tablename__ = "platform_credentials"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    platform = Column(String, nullable=False, index=True)  # facebook, instagram, tiktok, youtube
    account_id = Column(String, nullable=False)  # page id / business account id
    account_name = Column(String, nullable=True)
    access_token_encrypted = Column(Text, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    scopes = Column(JSON, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    last_refreshed_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}


Index(
    "uq_platform_credentials_active",
    PlatformCredential.platform,
    unique=True,
    postgresql_where=PlatformCredential.is_active.is_(True),
    sqlite_where=PlatformCredential.is_active.is_(True),
)
