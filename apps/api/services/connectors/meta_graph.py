"""
Meta Graph API client for Facebook pages and Instagram business accounts.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import httpx

from config import settings
from services.connectors.types import (
    ConnectorUnavailableError,
    ManagedAccount,
    PublishReceipt,
    TokenGrant,
    TokenIntrospection,
)
from services.errors import RemoteTransientError, classify_http_failure

SERVICE_NAME = "Meta Graph"


class MetaGraphClient:
    """Thin async wrapper over the Graph endpoints the pipeline uses."""

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        app_id: Optional[str] = None,
        app_secret: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or settings.META_GRAPH_API_BASE).rstrip("/")
        self.app_id = settings.FACEBOOK_APP_ID if app_id is None else app_id
        self.app_secret = settings.FACEBOOK_APP_SECRET if app_secret is None else app_secret
        self.timeout = float(timeout or settings.META_HTTP_TIMEOUT_SECONDS)
        self._transport = transport

    @property
    def has_app_credentials(self) -> bool:
        return bool(self.app_id and self.app_secret)

    def _require_app_credentials(self) -> None:
        if not self.has_app_credentials:
            raise ConnectorUnavailableError("FACEBOOK_APP_ID and FACEBOOK_APP_SECRET must be configured.")

    @staticmethod
    def _error_details(response: httpx.Response) -> tuple:
        try:
            payload = response.json()
        except ValueError:
            return (response.text or response.reason_phrase or "Unknown error"), None
        error = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(error, dict):
            return str(error.get("message") or "Unknown error"), error.get("code")
        return "Unknown error", None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = path if path.startswith("http") else f"{self.base_url}/{path.lstrip('/')}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, url, params=params, data=data, json=json)
        except httpx.TransportError as exc:
            raise RemoteTransientError(f"{SERVICE_NAME} network error: {exc}", service=SERVICE_NAME) from exc

        if response.is_success:
            return response.json()

        message, code = self._error_details(response)
        raise classify_http_failure(SERVICE_NAME, response.status_code, message, error_code=code)

    async def debug_token(self, input_token: str) -> TokenIntrospection:
        """Introspect a token with the app access token."""
        self._require_app_credentials()
        payload = await self._request(
            "GET",
            "debug_token",
            params={
                "input_token": input_token,
                "access_token": f"{self.app_id}|{self.app_secret}",
            },
        )
        data = payload.get("data") or {}
        expires_raw = int(data.get("expires_at") or 0)
        # 0 means the token never expires (page tokens derived from long-lived user tokens)
        expires_at = datetime.fromtimestamp(expires_raw, tz=timezone.utc) if expires_raw > 0 else None
        if data.get("is_valid"):
            return TokenIntrospection(
                is_valid=True,
                expires_at=expires_at,
                scopes=list(data.get("scopes") or []),
                token_type=data.get("type"),
            )
        error = data.get("error") or {}
        return TokenIntrospection(
            is_valid=False,
            expires_at=expires_at,
            token_type=data.get("type"),
            error=str(error.get("message") or "Token is invalid"),
        )

    async def exchange_token(self, token: str) -> TokenGrant:
        """Exchange a short-lived (or current) token for a long-lived one."""
        self._require_app_credentials()
        payload = await self._request(
            "POST",
            "oauth/access_token",
            data={
                "grant_type": "fb_exchange_token",
                "client_id": self.app_id,
                "client_secret": self.app_secret,
                "fb_exchange_token": token,
            },
        )
        return self._token_grant(payload)

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        self._require_app_credentials()
        payload = await self._request(
            "POST",
            "oauth/access_token",
            data={
                "client_id": self.app_id,
                "client_secret": self.app_secret,
                "redirect_uri": redirect_uri,
                "code": code,
            },
        )
        return self._token_grant(payload)

    @staticmethod
    def _token_grant(payload: Dict[str, Any]) -> TokenGrant:
        access_token = str(payload.get("access_token") or "").strip()
        if not access_token:
            raise classify_http_failure(SERVICE_NAME, 400, "No access token received from Facebook")
        expires_in = payload.get("expires_in")
        return TokenGrant(
            access_token=access_token,
            expires_in=int(expires_in) if expires_in else None,
            token_type=payload.get("token_type"),
        )

    async def list_pages(self, user_token: str) -> List[ManagedAccount]:
        payload = await self._request(
            "GET",
            "me/accounts",
            params={
                "fields": "id,name,category,access_token,instagram_business_account{id,username}",
                "access_token": user_token,
            },
        )
        return [
            ManagedAccount(
                account_id=str(page.get("id")),
                name=str(page.get("name") or ""),
                access_token=page.get("access_token"),
                category=page.get("category"),
                metadata=(
                    {"instagram_business_account": page["instagram_business_account"]}
                    if isinstance(page.get("instagram_business_account"), dict)
                    else {}
                ),
            )
            for page in payload.get("data") or []
            if page.get("id")
        ]

    async def get_page_token(self, page_id: str, user_token: str) -> str:
        payload = await self._request(
            "GET",
            page_id,
            params={"fields": "access_token", "access_token": user_token},
        )
        token = str(payload.get("access_token") or "").strip()
        if not token:
            raise classify_http_failure(
                SERVICE_NAME, 403, "Page access token unavailable. Make sure you are an admin of the page."
            )
        return token

    async def publish_page_video(self, page_id: str, file_url: str, description: str, token: str) -> PublishReceipt:
        payload = await self._request(
            "POST",
            f"{page_id}/videos",
            json={"file_url": file_url, "description": description, "access_token": token},
        )
        post_id = str(payload.get("id") or "")
        return PublishReceipt(
            remote_post_id=post_id,
            remote_post_url=f"https://www.facebook.com/share/r/{post_id}/",
        )

    async def publish_instagram_reel(self, ig_user_id: str, video_url: str, caption: str, token: str) -> PublishReceipt:
        container = await self._request(
            "POST",
            f"{ig_user_id}/media",
            json={"media_type": "REELS", "video_url": video_url, "caption": caption, "access_token": token},
        )
        published = await self._request(
            "POST",
            f"{ig_user_id}/media_publish",
            json={"creation_id": container.get("id"), "access_token": token},
        )
        media_id = str(published.get("id") or "")
        return PublishReceipt(remote_post_id=media_id, remote_post_url=f"https://instagram.com/p/{media_id}")

    async def get_insights(self, object_id: str, metrics: Sequence[str], token: str) -> List[Dict[str, Any]]:
        payload = await self._request(
            "GET",
            f"{object_id}/insights",
            params={"metric": ",".join(metrics), "access_token": token},
        )
        return list(payload.get("data") or [])
