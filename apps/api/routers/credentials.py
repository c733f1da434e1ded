"""Platform credential onboarding, status and refresh."""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from config import settings
from routers.auth_scope import AuthContext, require_scope
from routers.errors import to_http_exception
from routers.rate_limit import rate_limit
from services.connectors import SUPPORTED_PLATFORMS, ConnectorUnavailableError, connector_capabilities
from services.credentials import META_DEFAULT_SCOPES, CredentialLifecycleManager
from services.errors import PipelineError
from services.session_token import create_oauth_state, decode_oauth_state

logger = logging.getLogger(__name__)

router = APIRouter()

REFRESH_ERROR_STATUS = {
    "missing_config": 400,
    "remote_rejection": 502,
    "network": 503,
    "conflict": 409,
    "persistence": 500,
}


class CredentialStatusResponse(BaseModel):
    platform: str
    has_token: bool
    is_valid: bool
    state: str
    is_expiring_soon: bool
    days_until_expiry: Optional[int] = None
    account_id: Optional[str] = None
    account_name: Optional[str] = None
    expires_at: Optional[str] = None
    last_refreshed_at: Optional[str] = None
    scopes: List[str] = []
    error: Optional[str] = None


class RefreshResponse(BaseModel):
    platform: str
    success: bool
    expires_at: Optional[str] = None


class OAuthUrlResponse(BaseModel):
    url: str
    redirect_uri: str
    scopes: List[str]


def _platform_or_404(platform: str) -> str:
    key = (platform or "").strip().lower()
    if key not in SUPPORTED_PLATFORMS:
        raise HTTPException(status_code=404, detail=f"Unknown platform: {platform}")
    return key


def _setup_redirect(**params: str) -> RedirectResponse:
    base = settings.PUBLIC_APP_URL.rstrip("/")
    return RedirectResponse(url=f"{base}/admin/facebook-setup?{urlencode(params)}", status_code=302)


@router.get("/capabilities")
async def get_capabilities(auth: AuthContext = Depends(require_scope("credentials"))) -> Dict[str, Any]:
    return connector_capabilities()


@router.get("/facebook/oauth/url", response_model=OAuthUrlResponse)
async def facebook_oauth_url(auth: AuthContext = Depends(require_scope("credentials"))):
    """Build the Meta login dialog URL the dashboard sends the operator to."""
    if not settings.FACEBOOK_APP_ID:
        raise HTTPException(status_code=400, detail="FACEBOOK_APP_ID is not configured")
    graph_version = settings.META_GRAPH_API_BASE.rstrip("/").rsplit("/", 1)[-1]
    query = urlencode(
        {
            "client_id": settings.FACEBOOK_APP_ID,
            "redirect_uri": settings.META_OAUTH_REDIRECT_URI,
            "scope": ",".join(META_DEFAULT_SCOPES),
            "response_type": "code",
            "state": create_oauth_state(auth.operator_id, "facebook"),
        }
    )
    return OAuthUrlResponse(
        url=f"https://www.facebook.com/{graph_version}/dialog/oauth?{query}",
        redirect_uri=settings.META_OAUTH_REDIRECT_URI,
        scopes=list(META_DEFAULT_SCOPES),
    )


@router.get("/facebook/oauth/callback")
async def facebook_oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
):
    """
    OAuth redirect target. The browser lands here from Meta, so there is no
    session header; the signed `state` ties the callback to the operator.
    """
    if error:
        return _setup_redirect(error=error_description or error)
    if not code:
        return _setup_redirect(error="No authorization code provided")
    try:
        decode_oauth_state(state or "", "facebook")
    except ValueError as exc:
        return _setup_redirect(error=str(exc))

    manager = CredentialLifecycleManager("facebook")
    try:
        result = await manager.connect_from_authorization_code(code, settings.META_OAUTH_REDIRECT_URI)
    except (PipelineError, ConnectorUnavailableError) as exc:
        logger.warning("Facebook OAuth callback failed: %s", exc)
        return _setup_redirect(error=str(exc))

    params = {"success": "true", "page": result.account_name or result.account_id}
    if result.linked_accounts.get("instagram"):
        params["instagram"] = "linked"
    return _setup_redirect(**params)


@router.get("/{platform}/status", response_model=CredentialStatusResponse)
async def credential_status(
    platform: str,
    auth: AuthContext = Depends(require_scope("credentials")),
):
    """Validity, expiry and scope report for one platform."""
    key = _platform_or_404(platform)
    try:
        report = await CredentialLifecycleManager(key).status()
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return CredentialStatusResponse(**report)


@router.post(
    "/{platform}/refresh",
    response_model=RefreshResponse,
    dependencies=[Depends(rate_limit("credential_refresh", settings.CREDENTIAL_REFRESH_RATE_LIMIT_PER_HOUR, 3600))],
)
async def refresh_credential(
    platform: str,
    auth: AuthContext = Depends(require_scope("credentials")),
):
    key = _platform_or_404(platform)
    result = await CredentialLifecycleManager(key).refresh()
    if not result.success:
        raise HTTPException(
            status_code=REFRESH_ERROR_STATUS.get(result.error_kind or "", 502),
            detail=result.error or "Token refresh failed",
        )
    return RefreshResponse(
        platform=key,
        success=True,
        expires_at=result.expires_at.isoformat() if result.expires_at else None,
    )
