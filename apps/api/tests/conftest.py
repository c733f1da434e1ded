from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from routers import rate_limit
from services.connectors import PublishReceipt, TokenGrant, TokenIntrospection
from services.connectors.providers import BaseConnectorProvider
from services.retry import RetryExecutor


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "pipeline.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def fast_retry():
    return RetryExecutor(max_attempts=3, base_delay=0.0, jitter=0.0, sleep=_no_sleep)


class FakeProvider(BaseConnectorProvider):
    """Scriptable provider: queue exceptions or results per operation."""

    insight_metrics = ("impressions", "reach")

    def __init__(self, platform: str = "facebook", enabled: bool = True):
        self.platform = platform
        self.provider_name = f"fake_{platform}"
        self.enabled = enabled
        self.publish_script: List[Any] = []
        self.insights_script: List[Any] = []
        self.introspect_script: List[Any] = []
        self.exchange_script: List[Any] = []
        self.publish_calls: List[Dict[str, Any]] = []
        self.insight_calls: List[str] = []
        self.introspect_calls = 0
        self.exchange_calls = 0
        self.default_expires_at: Optional[datetime] = None

    @staticmethod
    def _next(script: List[Any], default: Any) -> Any:
        outcome = script.pop(0) if script else default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def publish(self, *, account_ref, media_url, caption, token):
        self.publish_calls.append({"account_ref": account_ref, "media_url": media_url, "caption": caption, "token": token})
        post_id = f"{self.platform}-post-{len(self.publish_calls)}"
        return self._next(self.publish_script, PublishReceipt(post_id, f"https://example.com/{post_id}"))

    async def fetch_insights(self, *, post_id, metric_names, token):
        self.insight_calls.append(post_id)
        return self._next(self.insights_script, {})

    async def introspect_token(self, token):
        self.introspect_calls += 1
        default = TokenIntrospection(
            is_valid=True,
            expires_at=self.default_expires_at or datetime.now(timezone.utc) + timedelta(days=50),
            scopes=["pages_manage_posts"],
        )
        return self._next(self.introspect_script, default)

    async def exchange_long_lived_token(self, token):
        self.exchange_calls += 1
        return self._next(self.exchange_script, TokenGrant(access_token=f"refreshed-{self.exchange_calls}", expires_in=5184000))


@pytest.fixture
def fake_provider_cls():
    return FakeProvider
