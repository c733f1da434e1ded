"""Session token helpers for dashboard-to-API authentication."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "spp_session"
DEFAULT_SCOPES = ("videos", "publish", "analytics", "credentials")


def create_session_token(
    operator_id: str,
    scopes: Optional[Iterable[str]] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Issue a signed token the dashboard presents as `Authorization: Bearer`."""
    now = datetime.now(timezone.utc)
    ttl_hours = int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24)
    expires_at = now + timedelta(hours=max(ttl_hours, 1))
    claims: Dict[str, Any] = {
        "sub": operator_id,
        "type": SESSION_TOKEN_TYPE,
        "scopes": sorted(set(scopes or DEFAULT_SCOPES)),
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return {"token": token, "expires_at": int(expires_at.timestamp())}


def decode_session_token(token: str) -> Dict[str, Any]:
    """Decode a session token; raises ValueError on any validation failure."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    if not str(payload.get("sub", "")).strip():
        raise ValueError("Session token missing subject.")
    if not isinstance(payload.get("scopes"), list):
        raise ValueError("Session token missing scopes.")
    return payload


OAUTH_STATE_TYPE = "spp_oauth_state"


def create_oauth_state(operator_id: str, platform: str, ttl_minutes: int = 15) -> str:
    """Short-lived signed `state` for the platform OAuth round trip."""
    now = datetime.now(timezone.utc)
    claims = {
        "sub": operator_id,
        "type": OAUTH_STATE_TYPE,
        "platform": platform,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
    }
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_oauth_state(state: str, platform: str) -> str:
    """Return the operator id carried by `state`; raises ValueError when it is forged, expired or for another platform."""
    try:
        payload = jwt.decode(state, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("OAuth state is invalid or expired.") from exc
    if payload.get("type") != OAUTH_STATE_TYPE or payload.get("platform") != platform:
        raise ValueError("OAuth state does not match this connection flow.")
    return str(payload.get("sub", ""))
