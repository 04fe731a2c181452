"""Shared test fixtures for aadconnect."""

from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest
from fakes import (
    AUTHORIZE_URL,
    CLIENT_ID,
    CLIENT_SECRET,
    END_SESSION_URL,
    ISSUER,
    JWKS_URL,
    REDIRECT_URI,
    SITE_URL,
    TOKEN_URL,
    USERINFO_URL,
    FakeProvider,
    SigningKey,
)
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from aadconnect.core.hooks import HookRegistry
from aadconnect.core.settings import ClientSettings
from aadconnect.db.base import BaseEntity
from aadconnect.db.engine import configure_sqlite


@pytest.fixture(scope="session")
def signing_key() -> SigningKey:
    return SigningKey()


@pytest.fixture
def provider(signing_key: SigningKey) -> FakeProvider:
    return FakeProvider(signing_key)


@pytest.fixture
def make_settings() -> Callable[..., ClientSettings]:
    """Build client settings pointed at the fake provider."""

    def _make(**overrides: Any) -> ClientSettings:
        values: dict[str, Any] = {
            "client_id": CLIENT_ID,
            "client_secret": CLIENT_SECRET,
            "endpoint_login": AUTHORIZE_URL,
            "endpoint_token": TOKEN_URL,
            "endpoint_userinfo": USERINFO_URL,
            "endpoint_jwks": JWKS_URL,
            "endpoint_end_session": END_SESSION_URL,
            "issuer": ISSUER,
            "redirect_uri": REDIRECT_URI,
            "site_url": SITE_URL,
            "session_secret": "session-secret",
        }
        values.update(overrides)
        return ClientSettings(**values)

    return _make


@pytest.fixture
def settings(make_settings: Callable[..., ClientSettings]) -> ClientSettings:
    return make_settings()


@pytest.fixture
def hooks() -> HookRegistry:
    return HookRegistry()


@pytest.fixture
async def db_session() -> AsyncIterator[AsyncSession]:
    """Create an in-memory SQLite async session for tests."""
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)
    configure_sqlite(engine)

    async with engine.begin() as conn:
        await conn.run_sync(BaseEntity.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session

    await engine.dispose()
