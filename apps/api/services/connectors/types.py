"""Connector provider contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Tuple


PlatformKey = Literal["facebook", "instagram", "tiktok", "youtube"]
SUPPORTED_PLATFORMS: Tuple[str, ...] = ("facebook", "instagram", "tiktok", "youtube")


class ConnectorUnavailableError(RuntimeError):
    """Raised when a platform connector is not configured or disabled."""


@dataclass(frozen=True)
class PublishReceipt:
    remote_post_id: str
    remote_post_url: str


@dataclass(frozen=True)
class TokenIntrospection:
    is_valid: bool
    expires_at: Optional[datetime] = None
    scopes: List[str] = field(default_factory=list)
    token_type: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expires_in: Optional[int] = None
    token_type: Optional[str] = None


@dataclass(frozen=True)
class ManagedAccount:
    account_id: str
    name: str
    access_token: Optional[str] = None
    category: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
