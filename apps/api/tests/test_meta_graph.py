import json

import httpx
import pytest

from services.connectors import ConnectorUnavailableError
from services.connectors.meta_graph import MetaGraphClient
from services.connectors.providers import FacebookPageProvider, InstagramProvider, get_connector_provider
from services.errors import CredentialError, RateLimitError, RemoteRejectionError, RemoteTransientError


def _client(handler, app_id="app", app_secret="secret"):
    return MetaGraphClient(
        base_url="https://graph.test/v18.0",
        app_id=app_id,
        app_secret=app_secret,
        timeout=5,
        transport=httpx.MockTransport(handler),
    )


def _graph_error(status, message, code=None):
    payload = {"error": {"message": message, "type": "OAuthException"}}
    if code is not None:
        payload["error"]["code"] = code
    return httpx.Response(status, json=payload)


@pytest.mark.asyncio
async def test_debug_token_parses_validity_and_expiry():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        return httpx.Response(
            200,
            json={"data": {"is_valid": True, "expires_at": 1767225600, "scopes": ["pages_manage_posts"], "type": "PAGE"}},
        )

    info = await _client(handler).debug_token("page-token")

    assert seen["path"] == "/v18.0/debug_token"
    assert seen["params"]["access_token"] == "app|secret"
    assert seen["params"]["input_token"] == "page-token"
    assert info.is_valid is True
    assert int(info.expires_at.timestamp()) == 1767225600
    assert info.scopes == ["pages_manage_posts"]


@pytest.mark.asyncio
async def test_debug_token_without_expiry_never_expires():
    def handler(request):
        return httpx.Response(200, json={"data": {"is_valid": True, "expires_at": 0}})

    info = await _client(handler).debug_token("page-token")
    assert info.expires_at is None


@pytest.mark.asyncio
async def test_debug_token_reports_invalid_token():
    def handler(request):
        return httpx.Response(
            200, json={"data": {"is_valid": False, "error": {"message": "Session has been invalidated"}}}
        )

    info = await _client(handler).debug_token("page-token")
    assert info.is_valid is False
    assert info.error == "Session has been invalidated"


@pytest.mark.asyncio
async def test_missing_app_credentials_are_a_configuration_error():
    def handler(request):
        raise AssertionError("no request expected")

    with pytest.raises(ConnectorUnavailableError):
        await _client(handler, app_id="", app_secret="").exchange_token("token")


@pytest.mark.asyncio
async def test_exchange_token_returns_long_lived_grant():
    def handler(request):
        form = dict(httpx.QueryParams(request.content.decode()))
        assert form["grant_type"] == "fb_exchange_token"
        assert form["fb_exchange_token"] == "short"
        return httpx.Response(200, json={"access_token": "long", "expires_in": 5184000, "token_type": "bearer"})

    grant = await _client(handler).exchange_token("short")
    assert grant.access_token == "long"
    assert grant.expires_in == 5184000


@pytest.mark.asyncio
async def test_page_video_publish_returns_share_url():
    def handler(request):
        body = json.loads(request.content)
        assert request.url.path == "/v18.0/page-1/videos"
        assert body["file_url"] == "https://cdn.test/v.mp4"
        assert body["description"] == "Caption"
        return httpx.Response(200, json={"id": "987"})

    receipt = await FacebookPageProvider(_client(handler)).publish(
        account_ref="page-1", media_url="https://cdn.test/v.mp4", caption="Caption", token="t"
    )
    assert receipt.remote_post_id == "987"
    assert receipt.remote_post_url == "https://www.facebook.com/share/r/987/"


@pytest.mark.asyncio
async def test_instagram_reel_publish_creates_container_then_publishes():
    paths = []

    def handler(request):
        paths.append(request.url.path)
        body = json.loads(request.content)
        if request.url.path.endswith("/media"):
            assert body["media_type"] == "REELS"
            return httpx.Response(200, json={"id": "container-1"})
        assert body["creation_id"] == "container-1"
        return httpx.Response(200, json={"id": "media-5"})

    receipt = await InstagramProvider(_client(handler)).publish(
        account_ref="ig-1", media_url="https://cdn.test/v.mp4", caption="Caption", token="t"
    )
    assert paths == ["/v18.0/ig-1/media", "/v18.0/ig-1/media_publish"]
    assert receipt.remote_post_url == "https://instagram.com/p/media-5"


@pytest.mark.asyncio
async def test_disabled_instagram_provider_refuses_to_publish():
    def handler(request):
        raise AssertionError("no request expected")

    provider = InstagramProvider(_client(handler), enabled=False)
    with pytest.raises(ConnectorUnavailableError):
        await provider.publish(account_ref="ig", media_url="https://cdn.test/v.mp4", caption="c", token="t")


@pytest.mark.asyncio
async def test_insights_are_flattened_to_latest_values():
    def handler(request):
        assert request.url.params["metric"] == "post_impressions,post_reactions_by_type_total"
        return httpx.Response(
            200,
            json={
                "data": [
                    {"name": "post_impressions", "values": [{"value": 1200}]},
                    {"name": "post_reactions_by_type_total", "values": [{"value": {"like": 4}}]},
                    {"name": "post_clicks", "values": []},
                ]
            },
        )

    values = await FacebookPageProvider(_client(handler)).fetch_insights(
        post_id="123_456",
        metric_names=["post_impressions", "post_reactions_by_type_total"],
        token="t",
    )
    assert values == {"post_impressions": 1200, "post_reactions_by_type_total": {"like": 4}, "post_clicks": 0}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response,expected",
    [
        (_graph_error(400, "Error validating access token: Session has expired", 190), CredentialError),
        (_graph_error(400, "Application request limit reached", 4), RateLimitError),
        (httpx.Response(429, text="slow down"), RateLimitError),
        (_graph_error(500, "An unexpected error has occurred"), RemoteTransientError),
        (_graph_error(400, "(#100) Invalid parameter", 100), RemoteRejectionError),
    ],
)
async def test_graph_errors_are_classified(response, expected):
    def handler(request):
        return response

    with pytest.raises(expected):
        await _client(handler).get_insights("post", ["post_impressions"], "t")


@pytest.mark.asyncio
async def test_network_errors_are_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(RemoteTransientError):
        await _client(handler).get_insights("post", ["post_impressions"], "t")


@pytest.mark.asyncio
async def test_stub_platforms_fail_deterministically():
    provider = get_connector_provider("tiktok")
    assert provider.enabled is False
    with pytest.raises(ConnectorUnavailableError) as exc_info:
        await provider.publish(account_ref="a", media_url="https://cdn.test/v.mp4", caption="c", token="t")
    assert "disabled" in str(exc_info.value)

    with pytest.raises(ValueError):
        get_connector_provider("myspace")
