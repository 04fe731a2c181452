"""FastAPI application factory for the aadconnect login service."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from starlette.middleware.sessions import SessionMiddleware

from aadconnect.core.hooks import HookRegistry
from aadconnect.core.log_config import configure_logging
from aadconnect.core.settings import ClientSettings
from aadconnect.db.engine import create_schema
from aadconnect.oidc.client import OIDCClient
from aadconnect.oidc.privacy import PrivacyMiddleware
from aadconnect.oidc.routes_login import router as login_router


def create_app(
    settings: ClientSettings | None = None,
    hooks: HookRegistry | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    init_schema: bool = False,
) -> FastAPI:
    """Build and configure the FastAPI application."""
    settings = settings or ClientSettings()
    hooks = hooks or HookRegistry()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if init_schema:
            await create_schema()
        yield

    app = FastAPI(
        title="aadconnect OpenID Connect client",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.hooks = hooks
    app.state.oidc_client = OIDCClient(settings, hooks, transport=transport)

    # added first so that it runs inside the session middleware
    app.add_middleware(PrivacyMiddleware, enabled=settings.enforce_privacy)
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        same_site="lax",
    )

    app.include_router(login_router)

    return app
