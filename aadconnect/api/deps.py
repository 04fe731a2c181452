"""FastAPI dependency injection for the login routes."""

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from aadconnect.core.hooks import HookRegistry
from aadconnect.core.settings import ClientSettings
from aadconnect.db.engine import get_session
from aadconnect.oidc.client import OIDCClient
from aadconnect.oidc.orchestrator import AuthOrchestrator
from aadconnect.oidc.session import StarletteSession


def get_settings(request: Request) -> ClientSettings:
    return request.app.state.settings


def get_hooks(request: Request) -> HookRegistry:
    return request.app.state.hooks


def get_oidc_client(request: Request) -> OIDCClient:
    return request.app.state.oidc_client


def get_host_session(request: Request) -> StarletteSession:
    return StarletteSession(request)


async def get_orchestrator(
    db: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[ClientSettings, Depends(get_settings)],
    hooks: Annotated[HookRegistry, Depends(get_hooks)],
    client: Annotated[OIDCClient, Depends(get_oidc_client)],
    host_session: Annotated[StarletteSession, Depends(get_host_session)],
) -> AuthOrchestrator:
    """Build the per-request orchestrator around the shared client."""
    return AuthOrchestrator(db, settings, hooks, host_session, client=client)
