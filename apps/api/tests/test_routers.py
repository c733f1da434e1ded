from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import pytest_asyncio

from config import settings
from database import get_db
from main import app
from models.video import Video
from routers.analytics import get_analytics_aggregator
from routers.publish import get_publish_orchestrator
from services.analytics import AnalyticsAggregator
from services.credentials import CredentialLifecycleManager
from services.publishing import PublishOrchestrator
from services.session_token import create_session_token, decode_oauth_state


def _auth(*scopes):
    token = create_session_token("operator-1", scopes=list(scopes) or None)["token"]
    return {"Authorization": f"Bearer {token}"}


def _queued(step="transcribe"):
    return AsyncMock(return_value={"id": "job-1", "queue_job_id": f"{step}:video"})


@pytest.fixture
def facebook(fake_provider_cls):
    return fake_provider_cls("facebook")


@pytest_asyncio.fixture
async def api(session_maker, facebook, fast_retry):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_publish_orchestrator] = lambda: PublishOrchestrator(
        session_maker=session_maker, providers={"facebook": facebook}, retry=fast_retry
    )
    app.dependency_overrides[get_analytics_aggregator] = lambda: AnalyticsAggregator(
        session_maker=session_maker, providers={"facebook": facebook}, retry=fast_retry
    )
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
    finally:
        app.dependency_overrides.clear()


async def _create_video(api, **overrides):
    payload = {"title": "Launch", "file_url": "https://cdn.test/launch.mp4", "selected_platforms": ["facebook"]}
    payload.update(overrides)
    response = await api.post("/videos", json=payload, headers=_auth("videos"))
    assert response.status_code == 200, response.text
    return response.json()


async def _seed_ready_video(session_maker):
    async with session_maker() as db:
        video = Video(
            title="Ready",
            file_url="https://cdn.test/ready.mp4",
            status="ready",
            captions={"facebook": {"caption": "Go", "hashtags": ["#go"], "char_count": 6}},
            selected_platforms=["facebook"],
            published_platforms={},
        )
        db.add(video)
        await db.commit()
        return video.id


@pytest.mark.asyncio
async def test_videos_require_a_scoped_session(api):
    missing = await api.get("/videos")
    assert missing.status_code == 401

    wrong_scope = await api.get("/videos", headers=_auth("analytics"))
    assert wrong_scope.status_code == 403

    forged = await api.get("/videos", headers={"Authorization": "Bearer not-a-token"})
    assert forged.status_code == 401


@pytest.mark.asyncio
async def test_create_get_and_list_videos(api):
    created = await _create_video(api)
    assert created["status"] == "uploaded"
    assert created["selected_platforms"] == ["facebook"]

    fetched = await api.get(f"/videos/{created['id']}", headers=_auth("videos"))
    assert fetched.json()["title"] == "Launch"

    listed = await api.get("/videos", params={"status": "uploaded"}, headers=_auth("videos"))
    assert [video["id"] for video in listed.json()] == [created["id"]]

    absent = await api.get("/videos/does-not-exist", headers=_auth("videos"))
    assert absent.status_code == 404


@pytest.mark.asyncio
async def test_create_video_rejects_bad_input(api):
    not_http = await api.post(
        "/videos", json={"title": "Clip", "file_url": "ftp://cdn.test/clip.mp4"}, headers=_auth("videos")
    )
    assert not_http.status_code == 422

    unknown_platform = await api.post(
        "/videos",
        json={"title": "Clip", "file_url": "https://cdn.test/clip.mp4", "selected_platforms": ["myspace"]},
        headers=_auth("videos"),
    )
    assert unknown_platform.status_code == 400


@pytest.mark.asyncio
async def test_transcription_is_scheduled_and_completed_by_callback(api):
    video = await _create_video(api)

    with patch("routers.videos.schedule_pipeline_step", new=_queued()) as scheduled:
        started = await api.post(f"/videos/{video['id']}/transcribe", headers=_auth("videos"))

    assert started.status_code == 200
    assert started.json()["video"]["status"] == "transcribing"
    assert started.json()["job_id"] == "job-1"
    scheduled.assert_awaited_once_with(video["id"], "transcribe")

    done = await api.post(
        f"/videos/{video['id']}/transcript", json={"text": "hello world", "confidence": 0.9}, headers=_auth("videos")
    )
    assert done.status_code == 200
    assert done.json()["status"] == "uploaded"
    assert done.json()["transcript_word_count"] == 2


@pytest.mark.asyncio
async def test_queue_outage_moves_video_to_error(api):
    video = await _create_video(api)

    with patch("routers.videos.schedule_pipeline_step", new=AsyncMock(side_effect=ConnectionError("redis down"))):
        response = await api.post(f"/videos/{video['id']}/transcribe", headers=_auth("videos"))

    assert response.status_code == 503
    stored = (await api.get(f"/videos/{video['id']}", headers=_auth("videos"))).json()
    assert stored["status"] == "error"
    assert stored["error_message"] == "Background queue unavailable. Retry shortly."


@pytest.mark.asyncio
async def test_caption_callback_normalizes_and_approval_makes_video_ready(api):
    video = await _create_video(api)
    with patch("routers.videos.schedule_pipeline_step", new=_queued()):
        await api.post(f"/videos/{video['id']}/transcribe", headers=_auth("videos"))
    transcribed = await api.post(
        f"/videos/{video['id']}/transcript", json={"text": "we shipped it"}, headers=_auth("videos")
    )
    assert transcribed.status_code == 200

    early = await api.post(
        f"/videos/{video['id']}/transcript", json={"text": "again"}, headers=_auth("videos")
    )
    assert early.status_code == 409

    no_transcript = await _create_video(api, title="Silent")
    rejected = await api.post(f"/videos/{no_transcript['id']}/captions/generate", headers=_auth("videos"))
    assert rejected.status_code == 400

    with patch("routers.videos.schedule_pipeline_step", new=_queued("captions")):
        started = await api.post(f"/videos/{video['id']}/captions/generate", headers=_auth("videos"))
    assert started.json()["video"]["status"] == "generating"

    unsupported = await api.post(
        f"/videos/{video['id']}/captions",
        json={"captions": {"myspace": {"caption": "Hi"}}},
        headers=_auth("videos"),
    )
    assert unsupported.status_code == 400

    generated = await api.post(
        f"/videos/{video['id']}/captions",
        json={"captions": {"facebook": {"caption": "We shipped it.", "hashtags": ["launch"]}}},
        headers=_auth("videos"),
    )
    assert generated.status_code == 200
    body = generated.json()
    assert body["status"] == "uploaded"
    assert body["captions"]["facebook"]["hashtags"] == ["#launch"]

    too_long = await api.post(
        f"/videos/{video['id']}/captions/approve",
        json={"captions": {"facebook": {"caption": "x" * 600}}, "selected_platforms": ["facebook"]},
        headers=_auth("videos"),
    )
    assert too_long.status_code == 400

    approved = await api.post(
        f"/videos/{video['id']}/captions/approve",
        json={"captions": {"facebook": {"caption": "Edited", "hashtags": []}}, "selected_platforms": ["facebook"]},
        headers=_auth("videos"),
    )
    assert approved.status_code == 200
    assert approved.json()["status"] == "ready"
    assert approved.json()["captions"]["facebook"]["caption"] == "Edited"


@pytest.mark.asyncio
async def test_publish_without_credentials_is_rejected(api, session_maker):
    video_id = await _seed_ready_video(session_maker)

    with patch("routers.publish.schedule_pipeline_step", new=_queued("publish")) as scheduled:
        response = await api.post(f"/videos/{video_id}/publish", json={}, headers=_auth("publish"))

    assert response.status_code == 400
    assert "No platforms have valid credentials" in response.json()["detail"]
    scheduled.assert_not_awaited()


@pytest.mark.asyncio
async def test_publish_is_queued_for_connected_platforms(api, session_maker, facebook, fast_retry):
    video_id = await _seed_ready_video(session_maker)
    manager = CredentialLifecycleManager("facebook", session_maker=session_maker, provider=facebook, retry=fast_retry)
    await manager.store(
        account_id="page-1",
        account_name="Brand",
        token="page-token",
        expires_at=datetime.now(timezone.utc) + timedelta(days=40),
    )

    with patch("routers.publish.schedule_pipeline_step", new=_queued("publish")) as scheduled:
        response = await api.post(f"/videos/{video_id}/publish", json={}, headers=_auth("publish"))

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["status"] == "queued"
    assert body["available_platforms"] == ["facebook"]
    assert body["skipped_platforms"] == {}
    scheduled.assert_awaited_once_with(video_id, "publish", {"platforms": ["facebook"]})

    forbidden = await api.post(f"/videos/{video_id}/publish", json={}, headers=_auth("videos"))
    assert forbidden.status_code == 403


@pytest.mark.asyncio
async def test_credential_status_and_capabilities(api, session_maker):
    with patch("services.credentials.async_session_maker", session_maker):
        status = await api.get("/credentials/facebook/status", headers=_auth("credentials"))
        unknown = await api.get("/credentials/myspace/status", headers=_auth("credentials"))

    assert status.status_code == 200
    assert status.json()["has_token"] is False
    assert status.json()["state"] == "absent"
    assert unknown.status_code == 404

    capabilities = await api.get("/credentials/capabilities", headers=_auth("credentials"))
    assert capabilities.json()["facebook_publishing_available"] is True
    assert capabilities.json()["tiktok_publishing_available"] is False


@pytest.mark.asyncio
async def test_oauth_url_carries_signed_state(api):
    missing = await api.get("/credentials/facebook/oauth/url", headers=_auth("credentials"))
    assert missing.status_code == 400

    with patch.object(settings, "FACEBOOK_APP_ID", "1234"):
        response = await api.get("/credentials/facebook/oauth/url", headers=_auth("credentials"))

    assert response.status_code == 200
    query = parse_qs(urlparse(response.json()["url"]).query)
    assert query["client_id"] == ["1234"]
    assert decode_oauth_state(query["state"][0], "facebook") == "operator-1"


@pytest.mark.asyncio
async def test_oauth_callback_redirects_errors_to_setup_page(api):
    denied = await api.get(
        "/credentials/facebook/oauth/callback", params={"error": "access_denied"}, follow_redirects=False
    )
    assert denied.status_code == 302
    assert denied.headers["location"].endswith("/admin/facebook-setup?error=access_denied")

    forged = await api.get(
        "/credentials/facebook/oauth/callback", params={"code": "abc", "state": "forged"}, follow_redirects=False
    )
    assert forged.status_code == 302
    assert "error=OAuth+state+is+invalid" in forged.headers["location"]


@pytest.mark.asyncio
async def test_analytics_summary(api):
    response = await api.get("/analytics/summary", params={"days": 7, "rank_by": "recency"}, headers=_auth("analytics"))
    assert response.status_code == 200
    body = response.json()
    assert body["total_posts"] == 0
    assert body["ranking"] == "recency"

    bad_platform = await api.get("/analytics/summary", params={"platform": "myspace"}, headers=_auth("analytics"))
    assert bad_platform.status_code == 400

    bad_window = await api.get("/analytics/summary", params={"days": 0}, headers=_auth("analytics"))
    assert bad_window.status_code == 422


@pytest.mark.asyncio
async def test_analytics_refresh_reports_per_platform(api):
    response = await api.post("/analytics/refresh", json={"platform": "facebook"}, headers=_auth("analytics"))
    assert response.status_code == 200
    assert response.json()["reports"] == [
        {"platform": "facebook", "updated": 0, "skipped": 0, "failed": 0, "error": None}
    ]


@pytest.mark.asyncio
async def test_caption_settings_round_trip(api):
    defaults = await api.get("/settings/captions", headers=_auth("videos"))
    assert defaults.status_code == 200
    assert defaults.json()["include_hashtags"] is True

    payload = dict(defaults.json(), tone="professional", max_length={"facebook": 500})
    saved = await api.put("/settings/captions", json=payload, headers=_auth("videos"))
    assert saved.status_code == 200

    reloaded = await api.get("/settings/captions", headers=_auth("videos"))
    assert reloaded.json()["tone"] == "professional"
    assert reloaded.json()["max_length"] == {"facebook": 500}

    invalid = await api.put(
        "/settings/captions", json=dict(payload, max_length={"myspace": 10}), headers=_auth("videos")
    )
    assert invalid.status_code == 400


@pytest.mark.asyncio
async def test_session_exchange(api):
    with patch.object(settings, "DASHBOARD_API_KEY", ""):
        unconfigured = await api.post("/auth/session", json={"api_key": "x", "operator_id": "ops"})
    assert unconfigured.status_code == 503

    with patch.object(settings, "DASHBOARD_API_KEY", "dashboard-secret"):
        wrong = await api.post("/auth/session", json={"api_key": "nope", "operator_id": "ops"})
        created = await api.post(
            "/auth/session",
            json={"api_key": "dashboard-secret", "operator_id": "ops", "scopes": ["videos"]},
        )
        unknown_scope = await api.post(
            "/auth/session",
            json={"api_key": "dashboard-secret", "operator_id": "ops", "scopes": ["admin"]},
        )

    assert wrong.status_code == 401
    assert unknown_scope.status_code == 400
    assert created.status_code == 200
    token = created.json()["session_token"]

    me = await api.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.json() == {"operator_id": "ops", "scopes": ["videos"]}


@pytest.mark.asyncio
async def test_liveness(api):
    response = await api.get("/health/live")
    assert response.json() == {"alive": True}


@pytest.mark.asyncio
async def test_readiness_lists_missing_configuration(api):
    with patch.object(settings, "FACEBOOK_APP_ID", ""), patch.object(settings, "OPENAI_API_KEY", ""):
        response = await api.get("/health/ready")

    assert response.status_code == 503
    assert "FACEBOOK_APP_ID" in response.json()["missing"]
    assert "OPENAI_API_KEY" in response.json()["missing"]
