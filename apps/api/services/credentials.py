"""
Platform credential lifecycle: validate, refresh, expiry reporting and onboarding.

One credential row per platform may be active at a time. Refresh replaces the
active row with a new one under an optimistic version check; a failed refresh
never touches stored rows.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from config import settings
from database import async_session_maker
from models.platform_credential import PlatformCredential
from services.connectors import (
    BaseConnectorProvider,
    ConnectorUnavailableError,
    ManagedAccount,
    get_connector_provider,
)
from services.crypto import decrypt_token, encrypt_token, needs_rotation, rotate_token
from services.errors import (
    PersistenceError,
    PipelineError,
    RemoteTransientError,
    ValidationError,
)
from services.retry import RetryExecutor

logger = logging.getLogger(__name__)

META_DEFAULT_SCOPES = [
    "pages_manage_posts",
    "pages_read_engagement",
    "pages_show_list",
    "pages_manage_metadata",
]

STATE_ABSENT = "absent"
STATE_ACTIVE = "active"
STATE_EXPIRING_SOON = "expiring_soon"
STATE_EXPIRED = "expired"
STATE_INVALID = "invalid"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def expiring_within(expires_at: Optional[datetime], threshold: timedelta, now: Optional[datetime] = None) -> bool:
    """True when `expires_at - now < threshold`; tokens without an expiry never expire."""
    expires_at = _as_utc(expires_at)
    if expires_at is None:
        return False
    return expires_at - (now or _utcnow()) < threshold


@dataclass
class CredentialSnapshot:
    id: str
    platform: str
    account_id: str
    account_name: Optional[str]
    token: Optional[str]
    expires_at: Optional[datetime]
    scopes: List[str]
    is_active: bool
    version: int
    last_refreshed_at: Optional[datetime] = None


@dataclass
class CredentialValidation:
    is_valid: bool
    state: str
    expires_at: Optional[datetime] = None
    scopes: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class RefreshResult:
    success: bool
    token: Optional[str] = None
    expires_at: Optional[datetime] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None  # missing_config | remote_rejection | network | conflict | persistence


@dataclass
class TokenResult:
    token: Optional[str]
    account_id: Optional[str] = None
    refreshed: bool = False
    error: Optional[str] = None


@dataclass
class ConnectResult:
    platform: str
    account_id: str
    account_name: Optional[str]
    expires_at: Optional[datetime]
    linked_accounts: Dict[str, str] = field(default_factory=dict)


class CredentialLifecycleManager:
    """Validates, refreshes and reports the credential of one platform."""

    def __init__(
        self,
        platform: str,
        *,
        session_maker=None,
        provider: Optional[BaseConnectorProvider] = None,
        retry: Optional[RetryExecutor] = None,
    ) -> None:
        self.platform = platform
        self._session_maker = session_maker
        self._provider = provider
        self.retry = retry or RetryExecutor()

    @property
    def provider(self) -> BaseConnectorProvider:
        if self._provider is None:
            self._provider = get_connector_provider(self.platform)
        return self._provider

    def _sessions(self):
        return (self._session_maker or async_session_maker)()

    async def _load(self, session, *, active_only: bool) -> Optional[PlatformCredential]:
        query = select(PlatformCredential).where(PlatformCredential.platform == self.platform)
        if active_only:
            query = query.where(PlatformCredential.is_active.is_(True))
        query = query.order_by(PlatformCredential.created_at.desc(), PlatformCredential.id.desc()).limit(1)
        result = await session.execute(query)
        return result.scalar_one_or_none()

    @staticmethod
    def _snapshot(credential: PlatformCredential) -> CredentialSnapshot:
        try:
            token: Optional[str] = decrypt_token(credential.access_token_encrypted)
        except ValueError:
            logger.warning("Credential %s cannot be decrypted with the configured key", credential.id)
            token = None
        return CredentialSnapshot(
            id=credential.id,
            platform=credential.platform,
            account_id=credential.account_id,
            account_name=credential.account_name,
            token=token,
            expires_at=_as_utc(credential.expires_at),
            scopes=list(credential.scopes or []),
            is_active=bool(credential.is_active),
            version=int(credential.version or 1),
            last_refreshed_at=_as_utc(credential.last_refreshed_at),
        )

    async def current(self) -> Optional[CredentialSnapshot]:
        """Active credential, else the most recent inactive one (refresh source)."""
        async with self._sessions() as session:
            credential = await self._load(session, active_only=True)
            if credential is None:
                credential = await self._load(session, active_only=False)
            return self._snapshot(credential) if credential is not None else None

    async def _deactivate(self, credential_id: str) -> None:
        async with self._sessions() as session:
            credential = await session.get(PlatformCredential, credential_id)
            if credential is None or not credential.is_active:
                return
            credential.is_active = False
            try:
                await session.commit()
            except StaleDataError:
                await session.rollback()
                logger.info("Credential %s changed concurrently; leaving it as is", credential_id)
            except SQLAlchemyError as exc:
                await session.rollback()
                raise PersistenceError(f"Failed to deactivate credential: {exc}", service="database") from exc

    async def validate(self, *, deactivate: bool = True) -> CredentialValidation:
        """
        Check the active credential.

        A stored expiry in the past short-circuits to `expired` without a remote
        call and deactivates the row. A token the remote rejects is deactivated
        and reported `invalid`. With `deactivate=False` the row is left active;
        a successful refresh replaces it instead.
        """
        async with self._sessions() as session:
            credential = await self._load(session, active_only=True)
            snapshot = self._snapshot(credential) if credential is not None else None
        if snapshot is None:
            return CredentialValidation(is_valid=False, state=STATE_ABSENT, error="No credentials configured")

        now = _utcnow()
        if snapshot.expires_at is not None and snapshot.expires_at <= now:
            if deactivate:
                await self._deactivate(snapshot.id)
            logger.info("%s credential expired at %s", self.platform, snapshot.expires_at)
            return CredentialValidation(
                is_valid=False,
                state=STATE_EXPIRED,
                expires_at=snapshot.expires_at,
                scopes=snapshot.scopes,
                error="Token has expired",
            )

        if snapshot.token is None:
            return CredentialValidation(
                is_valid=False,
                state=STATE_INVALID,
                expires_at=snapshot.expires_at,
                scopes=snapshot.scopes,
                error="Stored token cannot be decrypted",
            )

        try:
            info = await self.retry.execute(lambda: self.provider.introspect_token(snapshot.token))
        except (ConnectorUnavailableError, PipelineError) as exc:
            return CredentialValidation(
                is_valid=False,
                state=self._stored_state(snapshot.expires_at, now),
                expires_at=snapshot.expires_at,
                scopes=snapshot.scopes,
                error=str(exc),
            )

        if not info.is_valid:
            if deactivate:
                await self._deactivate(snapshot.id)
            logger.warning("%s credential rejected by remote: %s", self.platform, info.error)
            return CredentialValidation(
                is_valid=False,
                state=STATE_INVALID,
                expires_at=info.expires_at or snapshot.expires_at,
                scopes=list(info.scopes or snapshot.scopes),
                error=info.error or "Token is invalid",
            )

        expires_at = info.expires_at or snapshot.expires_at
        return CredentialValidation(
            is_valid=True,
            state=self._stored_state(expires_at, now),
            expires_at=expires_at,
            scopes=list(info.scopes or snapshot.scopes),
        )

    @staticmethod
    def _stored_state(expires_at: Optional[datetime], now: datetime) -> str:
        warning = timedelta(days=settings.CREDENTIAL_EXPIRY_WARNING_DAYS)
        if expires_at is not None and expires_at <= now:
            return STATE_EXPIRED
        if expiring_within(expires_at, warning, now):
            return STATE_EXPIRING_SOON
        return STATE_ACTIVE

    async def refresh(self) -> RefreshResult:
        """Exchange the current token for a new long-lived one and make it the active credential."""
        source = await self.current()
        if source is None or not source.token:
            return RefreshResult(success=False, error="No credentials configured", error_kind="missing_config")

        try:
            grant = await self.retry.execute(lambda: self.provider.exchange_long_lived_token(source.token))
        except ConnectorUnavailableError as exc:
            return RefreshResult(success=False, error=str(exc), error_kind="missing_config")
        except RemoteTransientError as exc:
            logger.warning("%s token refresh failed (network): %s", self.platform, exc)
            return RefreshResult(success=False, error=str(exc), error_kind="network")
        except PipelineError as exc:
            logger.warning("%s token refresh rejected: %s", self.platform, exc)
            return RefreshResult(success=False, error=str(exc), error_kind="remote_rejection")

        expires_at = _utcnow() + timedelta(seconds=grant.expires_in or settings.CREDENTIAL_DEFAULT_TTL_SECONDS)
        try:
            await self.store(
                account_id=source.account_id,
                account_name=source.account_name,
                token=grant.access_token,
                expires_at=expires_at,
                scopes=source.scopes,
                replaces=source,
            )
        except (StaleDataError, IntegrityError):
            return RefreshResult(
                success=False,
                error="Credential was updated concurrently; retry the refresh",
                error_kind="conflict",
            )
        except PersistenceError as exc:
            return RefreshResult(success=False, error=str(exc), error_kind="persistence")

        logger.info("Refreshed %s credential; new expiry %s", self.platform, expires_at.isoformat())
        return RefreshResult(success=True, token=grant.access_token, expires_at=expires_at)

    async def store(
        self,
        *,
        account_id: str,
        account_name: Optional[str],
        token: str,
        expires_at: Optional[datetime],
        scopes: Optional[List[str]] = None,
        replaces: Optional[CredentialSnapshot] = None,
    ) -> CredentialSnapshot:
        """
        Insert a new active credential, deactivating whichever row was active.

        When `replaces` is given, its stored version must still match, otherwise
        StaleDataError is raised and nothing is written.
        """
        now = _utcnow()
        async with self._sessions() as session:
            try:
                if replaces is not None:
                    previous = await session.get(PlatformCredential, replaces.id)
                    if previous is None or int(previous.version or 1) != replaces.version:
                        raise StaleDataError(f"Credential {replaces.id} changed since it was read")

                result = await session.execute(
                    select(PlatformCredential).where(
                        PlatformCredential.platform == self.platform,
                        PlatformCredential.is_active.is_(True),
                    )
                )
                for active in result.scalars().all():
                    active.is_active = False
                await session.flush()

                credential = PlatformCredential(
                    platform=self.platform,
                    account_id=account_id,
                    account_name=account_name,
                    access_token_encrypted=encrypt_token(token),
                    expires_at=expires_at,
                    scopes=list(scopes or []),
                    is_active=True,
                    last_refreshed_at=now,
                    created_at=now,
                )
                session.add(credential)
                await session.commit()
            except (StaleDataError, IntegrityError):
                await session.rollback()
                raise
            except SQLAlchemyError as exc:
                await session.rollback()
                raise PersistenceError(f"Failed to store credential: {exc}", service="database") from exc
            await session.refresh(credential)
            return self._snapshot(credential)

    async def is_expiring_soon(self, threshold: Optional[timedelta] = None) -> bool:
        snapshot = await self.current()
        if snapshot is None or not snapshot.is_active:
            return False
        window = threshold or timedelta(days=settings.CREDENTIAL_EXPIRY_WARNING_DAYS)
        return expiring_within(snapshot.expires_at, window)

    async def get_valid_token(self, proactive_refresh_within: Optional[timedelta] = None) -> TokenResult:
        """
        Validate, then refresh at most once when the token is unusable.

        With `proactive_refresh_within`, a valid token expiring inside that window
        is also refreshed once; if that refresh fails the still-valid token is kept.
        """
        validation = await self.validate(deactivate=False)
        if validation.state == STATE_ABSENT:
            return TokenResult(token=None, error=validation.error)

        snapshot = await self.current()
        if validation.is_valid and snapshot is not None:
            if proactive_refresh_within is not None and expiring_within(
                validation.expires_at, proactive_refresh_within
            ):
                refreshed = await self.refresh()
                if refreshed.success:
                    return TokenResult(token=refreshed.token, account_id=snapshot.account_id, refreshed=True)
                logger.warning("Proactive %s refresh failed: %s", self.platform, refreshed.error)
            return TokenResult(token=snapshot.token, account_id=snapshot.account_id)

        refreshed = await self.refresh()
        if refreshed.success:
            return TokenResult(
                token=refreshed.token,
                account_id=snapshot.account_id if snapshot else None,
                refreshed=True,
            )
        return TokenResult(
            token=snapshot.token if snapshot else None,
            account_id=snapshot.account_id if snapshot else None,
            error=f"{validation.error or 'Token is invalid'}; refresh failed: {refreshed.error}",
        )

    async def status(self) -> Dict[str, Any]:
        """Credential health report for the dashboard."""
        validation = await self.validate()
        snapshot = await self.current()
        now = _utcnow()
        expires_at = validation.expires_at or (snapshot.expires_at if snapshot else None)
        days_until_expiry = None
        if expires_at is not None:
            days_until_expiry = max((expires_at - now).days, 0)
        return {
            "platform": self.platform,
            "has_token": snapshot is not None,
            "is_valid": validation.is_valid,
            "state": validation.state,
            "is_expiring_soon": validation.state == STATE_EXPIRING_SOON,
            "days_until_expiry": days_until_expiry,
            "account_id": snapshot.account_id if snapshot else None,
            "account_name": snapshot.account_name if snapshot else None,
            "expires_at": expires_at.isoformat() if expires_at else None,
            "last_refreshed_at": (
                snapshot.last_refreshed_at.isoformat() if snapshot and snapshot.last_refreshed_at else None
            ),
            "scopes": validation.scopes or (snapshot.scopes if snapshot else []),
            "error": validation.error,
        }

    async def connect_from_authorization_code(
        self,
        code: str,
        redirect_uri: str,
        preferred_account_id: Optional[str] = None,
    ) -> ConnectResult:
        """
        Complete the OAuth handshake and store the resulting long-lived account token.

        Pages linked to an Instagram business account also get an Instagram
        credential backed by the same page token.
        """
        provider = self.provider
        user_grant = await provider.exchange_authorization_code(code, redirect_uri)
        accounts = await provider.list_managed_accounts(user_grant.access_token)
        if not accounts:
            raise ValidationError(
                "No Facebook pages found. Make sure you have admin access to at least one page.",
                fields=["code"],
            )

        account = _pick_account(accounts, preferred_account_id or settings.META_PAGE_ID)
        account_token = await provider.get_account_token(account.account_id, user_grant.access_token)
        grant = await provider.exchange_long_lived_token(account_token)
        expires_at = _utcnow() + timedelta(seconds=grant.expires_in or settings.CREDENTIAL_DEFAULT_TTL_SECONDS)

        stored = await self.store(
            account_id=account.account_id,
            account_name=account.name,
            token=grant.access_token,
            expires_at=expires_at,
            scopes=META_DEFAULT_SCOPES,
        )
        logger.info("Connected %s account %s (%s)", self.platform, account.name, account.account_id)

        linked: Dict[str, str] = {}
        instagram_account = account.metadata.get("instagram_business_account") or {}
        if self.platform == "facebook" and instagram_account.get("id") and settings.ENABLE_INSTAGRAM_PUBLISHING:
            instagram = CredentialLifecycleManager(
                "instagram", session_maker=self._session_maker, retry=self.retry
            )
            await instagram.store(
                account_id=str(instagram_account["id"]),
                account_name=instagram_account.get("username") or account.name,
                token=grant.access_token,
                expires_at=expires_at,
                scopes=META_DEFAULT_SCOPES,
            )
            linked["instagram"] = str(instagram_account["id"])

        return ConnectResult(
            platform=self.platform,
            account_id=stored.account_id,
            account_name=stored.account_name,
            expires_at=stored.expires_at,
            linked_accounts=linked,
        )


def _pick_account(accounts: List[ManagedAccount], preferred_account_id: Optional[str]) -> ManagedAccount:
    if preferred_account_id:
        for account in accounts:
            if account.account_id == preferred_account_id:
                return account
    return accounts[0]


async def rotate_stored_tokens(session_maker=None) -> int:
    """Re-encrypt credential rows still sealed with a previous ENCRYPTION_KEY."""
    sessions = session_maker or async_session_maker
    rotated = 0
    async with sessions() as session:
        result = await session.execute(select(PlatformCredential))
        for credential in result.scalars().all():
            if not needs_rotation(credential.access_token_encrypted):
                continue
            try:
                credential.access_token_encrypted = rotate_token(credential.access_token_encrypted)
            except ValueError:
                logger.warning("Credential %s cannot be decrypted with any configured key", credential.id)
                continue
            rotated += 1
        if rotated:
            try:
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise PersistenceError(f"Failed to re-encrypt credentials: {exc}", service="database") from exc
    if rotated:
        logger.info("Re-encrypted %s credential(s) under the current ENCRYPTION_KEY", rotated)
    return rotated
