import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from models.platform_credential import PlatformCredential
from services.connectors import TokenGrant, TokenIntrospection
from services.credentials import (
    STATE_ABSENT,
    STATE_ACTIVE,
    STATE_EXPIRED,
    STATE_EXPIRING_SOON,
    STATE_INVALID,
    CredentialLifecycleManager,
)
from services.crypto import decrypt_token
from services.errors import RemoteRejectionError, RemoteTransientError


def _utcnow():
    return datetime.now(timezone.utc)


async def _seed(manager, token="page-token", expires_in=timedelta(days=40)):
    return await manager.store(
        account_id="page-1",
        account_name="Test Page",
        token=token,
        expires_at=_utcnow() + expires_in,
        scopes=["pages_manage_posts"],
    )


async def _rows(session_maker, platform="facebook"):
    async with session_maker() as session:
        result = await session.execute(
            select(PlatformCredential)
            .where(PlatformCredential.platform == platform)
            .order_by(PlatformCredential.created_at.asc())
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_validate_without_credential_reports_absent(session_maker, fake_provider_cls, fast_retry):
    provider = fake_provider_cls()
    manager = CredentialLifecycleManager("facebook", session_maker=session_maker, provider=provider, retry=fast_retry)

    result = await manager.validate()

    assert result.is_valid is False
    assert result.state == STATE_ABSENT
    assert provider.introspect_calls == 0


@pytest.mark.asyncio
async def test_expired_credential_short_circuits_without_remote_call(session_maker, fake_provider_cls, fast_retry):
    provider = fake_provider_cls()
    manager = CredentialLifecycleManager("facebook", session_maker=session_maker, provider=provider, retry=fast_retry)
    await _seed(manager, expires_in=timedelta(hours=-1))

    result = await manager.validate()

    assert result.state == STATE_EXPIRED
    assert result.is_valid is False
    assert provider.introspect_calls == 0
    rows = await _rows(session_maker)
    assert [row.is_active for row in rows] == [False]


@pytest.mark.asyncio
async def test_validate_reports_expiring_soon_inside_warning_window(session_maker, fake_provider_cls, fast_retry):
    provider = fake_provider_cls()
    provider.default_expires_at = _utcnow() + timedelta(days=3)
    manager = CredentialLifecycleManager("facebook", session_maker=session_maker, provider=provider, retry=fast_retry)
    await _seed(manager, expires_in=timedelta(days=3))

    result = await manager.validate()

    assert result.is_valid is True
    assert result.state == STATE_EXPIRING_SOON
    assert await manager.is_expiring_soon() is True


@pytest.mark.asyncio
async def test_remote_invalid_token_is_deactivated(session_maker, fake_provider_cls, fast_retry):
    provider = fake_provider_cls()
    provider.introspect_script.append(TokenIntrospection(is_valid=False, error="Session has been invalidated"))
    manager = CredentialLifecycleManager("facebook", session_maker=session_maker, provider=provider, retry=fast_retry)
    await _seed(manager)

    result = await manager.validate()

    assert result.state == STATE_INVALID
    assert result.error == "Session has been invalidated"
    rows = await _rows(session_maker)
    assert rows[0].is_active is False


@pytest.mark.asyncio
async def test_introspection_network_failure_keeps_credential_active(session_maker, fake_provider_cls, fast_retry):
    provider = fake_provider_cls()
    provider.introspect_script.extend([RemoteTransientError("timeout")] * 3)
    manager = CredentialLifecycleManager("facebook", session_maker=session_maker, provider=provider, retry=fast_retry)
    await _seed(manager)

    result = await manager.validate()

    assert result.is_valid is False
    assert result.state == STATE_ACTIVE
    assert provider.introspect_calls == 3
    rows = await _rows(session_maker)
    assert rows[0].is_active is True


@pytest.mark.asyncio
async def test_refresh_replaces_active_credential(session_maker, fake_provider_cls, fast_retry):
    provider = fake_provider_cls()
    manager = CredentialLifecycleManager("facebook", session_maker=session_maker, provider=provider, retry=fast_retry)
    await _seed(manager, token="old-token", expires_in=timedelta(days=2))

    result = await manager.refresh()

    assert result.success is True
    assert result.token == "refreshed-1"
    assert result.expires_at > _utcnow() + timedelta(days=59)
    rows = await _rows(session_maker)
    assert [row.is_active for row in rows] == [False, True]
    assert decrypt_token(rows[1].access_token_encrypted) == "refreshed-1"
    assert rows[1].account_id == "page-1"
    assert rows[1].last_refreshed_at is not None


@pytest.mark.asyncio
async def test_failed_refresh_leaves_stored_rows_untouched(session_maker, fake_provider_cls, fast_retry):
    provider = fake_provider_cls()
    provider.exchange_script.append(RemoteRejectionError("Invalid OAuth client"))
    manager = CredentialLifecycleManager("facebook", session_maker=session_maker, provider=provider, retry=fast_retry)
    await _seed(manager, token="old-token")
    before = await _rows(session_maker)

    result = await manager.refresh()

    assert result.success is False
    assert result.error_kind == "remote_rejection"
    after = await _rows(session_maker)
    assert [(row.id, row.is_active, row.version) for row in after] == [
        (row.id, row.is_active, row.version) for row in before
    ]


@pytest.mark.asyncio
async def test_refresh_network_failure_is_classified(session_maker, fake_provider_cls, fast_retry):
    provider = fake_provider_cls()
    provider.exchange_script.extend([RemoteTransientError("reset")] * 3)
    manager = CredentialLifecycleManager("facebook", session_maker=session_maker, provider=provider, retry=fast_retry)
    await _seed(manager)

    result = await manager.refresh()

    assert result.success is False
    assert result.error_kind == "network"
    assert provider.exchange_calls == 3


@pytest.mark.asyncio
async def test_refresh_without_credential_reports_missing_config(session_maker, fake_provider_cls, fast_retry):
    manager = CredentialLifecycleManager(
        "facebook", session_maker=session_maker, provider=fake_provider_cls(), retry=fast_retry
    )
    result = await manager.refresh()
    assert result.success is False
    assert result.error_kind == "missing_config"


@pytest.mark.asyncio
async def test_concurrent_refreshes_leave_one_active_credential(session_maker, fake_provider_cls, fast_retry):
    provider = fake_provider_cls()
    first = CredentialLifecycleManager("facebook", session_maker=session_maker, provider=provider, retry=fast_retry)
    second = CredentialLifecycleManager("facebook", session_maker=session_maker, provider=provider, retry=fast_retry)
    await _seed(first)

    results = await asyncio.gather(first.refresh(), second.refresh())

    assert any(result.success for result in results)
    for result in results:
        if not result.success:
            assert result.error_kind in ("conflict", "persistence")
    rows = await _rows(session_maker)
    assert sum(1 for row in rows if row.is_active) == 1


@pytest.mark.asyncio
async def test_get_valid_token_refreshes_once_after_expiry(session_maker, fake_provider_cls, fast_retry):
    provider = fake_provider_cls()
    manager = CredentialLifecycleManager("facebook", session_maker=session_maker, provider=provider, retry=fast_retry)
    await _seed(manager, token="expired-token", expires_in=timedelta(minutes=-5))

    result = await manager.get_valid_token()

    assert result.token == "refreshed-1"
    assert result.refreshed is True
    assert result.account_id == "page-1"
    assert provider.exchange_calls == 1

    rows = await _rows(session_maker)
    assert sorted(row.is_active for row in rows) == [False, True]


@pytest.mark.asyncio
async def test_get_valid_token_returns_error_when_refresh_fails(session_maker, fake_provider_cls, fast_retry):
    provider = fake_provider_cls()
    provider.exchange_script.append(RemoteRejectionError("App secret mismatch"))
    manager = CredentialLifecycleManager("facebook", session_maker=session_maker, provider=provider, retry=fast_retry)
    await _seed(manager, token="expired-token", expires_in=timedelta(minutes=-5))

    result = await manager.get_valid_token()

    assert result.token == "expired-token"
    assert result.error is not None
    assert "refresh failed" in result.error
    assert provider.exchange_calls == 1

    rows = await _rows(session_maker)
    assert [row.is_active for row in rows] == [True]


@pytest.mark.asyncio
async def test_proactive_refresh_keeps_valid_token_when_refresh_fails(session_maker, fake_provider_cls, fast_retry):
    provider = fake_provider_cls()
    provider.default_expires_at = _utcnow() + timedelta(hours=6)
    provider.exchange_script.append(RemoteTransientError("down"))
    provider.exchange_script.append(RemoteTransientError("down"))
    provider.exchange_script.append(RemoteTransientError("down"))
    manager = CredentialLifecycleManager("facebook", session_maker=session_maker, provider=provider, retry=fast_retry)
    await _seed(manager, token="valid-token", expires_in=timedelta(hours=6))

    result = await manager.get_valid_token(proactive_refresh_within=timedelta(hours=24))

    assert result.token == "valid-token"
    assert result.error is None
    assert result.refreshed is False


@pytest.mark.asyncio
async def test_status_report_exposes_expiry_fields(session_maker, fake_provider_cls, fast_retry):
    provider = fake_provider_cls()
    manager = CredentialLifecycleManager("facebook", session_maker=session_maker, provider=provider, retry=fast_retry)
    await _seed(manager)

    status = await manager.status()

    assert status["has_token"] is True
    assert status["is_valid"] is True
    assert status["state"] == STATE_ACTIVE
    assert status["is_expiring_soon"] is False
    assert status["account_name"] == "Test Page"
    assert status["days_until_expiry"] >= 39
    assert status["scopes"] == ["pages_manage_posts"]


class OnboardingProvider:
    platform = "facebook"
    enabled = True

    def __init__(self, accounts):
        self.accounts = accounts

    async def exchange_authorization_code(self, code, redirect_uri):
        return TokenGrant(access_token=f"user-{code}")

    async def list_managed_accounts(self, user_token):
        return self.accounts

    async def get_account_token(self, account_id, user_token):
        return f"page-token-{account_id}"

    async def exchange_long_lived_token(self, token):
        return TokenGrant(access_token=f"long-{token}", expires_in=None)


@pytest.mark.asyncio
async def test_authorization_code_onboarding_stores_page_and_linked_instagram(session_maker, fast_retry):
    from services.connectors import ManagedAccount

    provider = OnboardingProvider(
        [
            ManagedAccount(account_id="p1", name="First Page"),
            ManagedAccount(
                account_id="p2",
                name="Second Page",
                metadata={"instagram_business_account": {"id": "ig-9", "username": "brand"}},
            ),
        ]
    )
    manager = CredentialLifecycleManager("facebook", session_maker=session_maker, provider=provider, retry=fast_retry)

    result = await manager.connect_from_authorization_code("abc", "https://api.test/callback", preferred_account_id="p2")

    assert result.account_id == "p2"
    assert result.linked_accounts == {"instagram": "ig-9"}
    assert result.expires_at > _utcnow() + timedelta(days=59)
    facebook_rows = await _rows(session_maker, "facebook")
    instagram_rows = await _rows(session_maker, "instagram")
    assert decrypt_token(facebook_rows[0].access_token_encrypted) == "long-page-token-p2"
    assert instagram_rows[0].account_id == "ig-9"
    assert instagram_rows[0].account_name == "brand"
