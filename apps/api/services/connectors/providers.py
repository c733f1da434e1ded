"""Connector provider abstraction with feature-flagged stubs."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

from config import settings
from services.connectors.meta_graph import MetaGraphClient
from services.connectors.types import (
    ConnectorUnavailableError,
    ManagedAccount,
    PlatformKey,
    PublishReceipt,
    SUPPORTED_PLATFORMS,
    TokenGrant,
    TokenIntrospection,
)


FACEBOOK_INSIGHT_METRICS: Tuple[str, ...] = (
    "post_impressions",
    "post_impressions_unique",
    "post_engaged_users",
    "post_clicks",
    "post_reactions_by_type_total",
    "post_video_views",
    "post_video_avg_time_watched",
    "post_video_views_unique",
    "post_video_views_organic",
    "post_video_views_paid",
)

INSTAGRAM_INSIGHT_METRICS: Tuple[str, ...] = (
    "impressions",
    "reach",
    "total_interactions",
    "plays",
    "likes",
    "comments",
    "shares",
    "saved",
)


class BaseConnectorProvider(ABC):
    platform: PlatformKey
    provider_name: str
    enabled: bool
    insight_metrics: Tuple[str, ...] = ()

    @abstractmethod
    async def publish(self, *, account_ref: str, media_url: str, caption: str, token: str) -> PublishReceipt:
        raise NotImplementedError

    @abstractmethod
    async def fetch_insights(self, *, post_id: str, metric_names: Sequence[str], token: str) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    async def introspect_token(self, token: str) -> TokenIntrospection:
        raise NotImplementedError

    @abstractmethod
    async def exchange_long_lived_token(self, token: str) -> TokenGrant:
        raise NotImplementedError

    async def exchange_authorization_code(self, code: str, redirect_uri: str) -> TokenGrant:
        raise ConnectorUnavailableError(f"{self.platform} does not support authorization-code onboarding.")

    async def list_managed_accounts(self, user_token: str) -> List[ManagedAccount]:
        raise ConnectorUnavailableError(f"{self.platform} does not expose managed accounts.")

    async def get_account_token(self, account_id: str, user_token: str) -> str:
        raise ConnectorUnavailableError(f"{self.platform} does not issue account tokens.")


def _insight_values(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Flatten Graph insight rows into {metric_name: latest value}."""
    values: Dict[str, Any] = {}
    for row in rows:
        name = row.get("name")
        if not name:
            continue
        points = row.get("values") or []
        if points:
            values[name] = points[0].get("value", 0)
        elif "total_value" in row:
            values[name] = (row.get("total_value") or {}).get("value", 0)
        else:
            values[name] = 0
    return values


class FacebookPageProvider(BaseConnectorProvider):
    """Publishes videos to a Facebook page and reads page post insights."""

    insight_metrics = FACEBOOK_INSIGHT_METRICS

    def __init__(self, client: Optional[MetaGraphClient] = None) -> None:
        self.platform = "facebook"
        self.provider_name = "meta_graph_page"
        self.enabled = True
        self.client = client or MetaGraphClient()

    async def publish(self, *, account_ref: str, media_url: str, caption: str, token: str) -> PublishReceipt:
        return await self.client.publish_page_video(account_ref, media_url, caption, token)

    async def fetch_insights(self, *, post_id: str, metric_names: Sequence[str], token: str) -> Dict[str, Any]:
        rows = await self.client.get_insights(post_id, metric_names, token)
        return _insight_values(rows)

    async def introspect_token(self, token: str) -> TokenIntrospection:
        return await self.client.debug_token(token)

    async def exchange_long_lived_token(self, token: str) -> TokenGrant:
        return await self.client.exchange_token(token)

    async def exchange_authorization_code(self, code: str, redirect_uri: str) -> TokenGrant:
        return await self.client.exchange_code(code, redirect_uri)

    async def list_managed_accounts(self, user_token: str) -> List[ManagedAccount]:
        return await self.client.list_pages(user_token)

    async def get_account_token(self, account_id: str, user_token: str) -> str:
        return await self.client.get_page_token(account_id, user_token)


class InstagramProvider(FacebookPageProvider):
    """Instagram business accounts share the Meta token and introspection endpoints."""

    insight_metrics = INSTAGRAM_INSIGHT_METRICS

    def __init__(self, client: Optional[MetaGraphClient] = None, *, enabled: bool = True) -> None:
        super().__init__(client)
        self.platform = "instagram"
        self.provider_name = "meta_graph_instagram"
        self.enabled = enabled

    def _require_enabled(self) -> None:
        if not self.enabled:
            raise ConnectorUnavailableError(
                "Instagram publishing is disabled. Set ENABLE_INSTAGRAM_PUBLISHING=true to enable it."
            )

    async def publish(self, *, account_ref: str, media_url: str, caption: str, token: str) -> PublishReceipt:
        self._require_enabled()
        return await self.client.publish_instagram_reel(account_ref, media_url, caption, token)

    async def fetch_insights(self, *, post_id: str, metric_names: Sequence[str], token: str) -> Dict[str, Any]:
        self._require_enabled()
        return await super().fetch_insights(post_id=post_id, metric_names=metric_names, token=token)


class StubPublishingProvider(BaseConnectorProvider):
    """Feature-flag-ready provider that fails deterministically until implemented."""

    def __init__(self, *, platform: PlatformKey, enabled: bool, setup_url: str) -> None:
        self.platform = platform
        self.provider_name = f"{platform}_stub"
        self.enabled = enabled
        self.setup_url = setup_url

    def _setup_error(self) -> ConnectorUnavailableError:
        platform_title = self.platform.capitalize()
        if not self.enabled:
            return ConnectorUnavailableError(
                f"{platform_title} publishing is disabled. Setup guide: {self.setup_url}"
            )
        return ConnectorUnavailableError(f"{platform_title} publishing not yet implemented.")

    async def publish(self, *, account_ref: str, media_url: str, caption: str, token: str) -> PublishReceipt:
        raise self._setup_error()

    async def fetch_insights(self, *, post_id: str, metric_names: Sequence[str], token: str) -> Dict[str, Any]:
        raise self._setup_error()

    async def introspect_token(self, token: str) -> TokenIntrospection:
        raise self._setup_error()

    async def exchange_long_lived_token(self, token: str) -> TokenGrant:
        raise self._setup_error()


def connector_capabilities() -> Dict[str, bool]:
    return {
        "facebook_publishing_available": True,
        "instagram_publishing_available": bool(settings.ENABLE_INSTAGRAM_PUBLISHING),
        "tiktok_publishing_available": False,
        "youtube_publishing_available": False,
    }


def get_connector_provider(platform: PlatformKey) -> BaseConnectorProvider:
    if platform not in SUPPORTED_PLATFORMS:
        raise ValueError(f"Unsupported platform: {platform}")
    if platform == "facebook":
        return FacebookPageProvider()
    if platform == "instagram":
        return InstagramProvider(enabled=bool(settings.ENABLE_INSTAGRAM_PUBLISHING))
    if platform == "tiktok":
        return StubPublishingProvider(
            platform="tiktok",
            enabled=bool(settings.ENABLE_TIKTOK_PUBLISHING),
            setup_url="https://developers.tiktok.com/doc/content-posting-api-get-started/",
        )
    return StubPublishingProvider(
        platform="youtube",
        enabled=bool(settings.ENABLE_YOUTUBE_PUBLISHING),
        setup_url="https://developers.google.com/youtube/v3/guides/uploading_a_video",
    )
