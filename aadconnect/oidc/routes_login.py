"""Login, callback and logout endpoints."""

from html import escape
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from fastapi.responses import HTMLResponse, RedirectResponse
from pydantic import BaseModel
from starlette.responses import JSONResponse

from aadconnect.api.deps import (
    get_host_session,
    get_oidc_client,
    get_orchestrator,
    get_settings,
)
from aadconnect.core.errors import AuthError
from aadconnect.core.settings import ClientSettings
from aadconnect.oidc.client import OIDCClient
from aadconnect.oidc.orchestrator import AuthOrchestrator, user_message
from aadconnect.oidc.session import StarletteSession

router = APIRouter()

LOGIN_PATH = "/openid-connect/login"
CALLBACK_PATH = "/openid-connect-authorize"
LOGOUT_PATH = "/openid-connect/logout"
AUTH_URL_PATH = "/openid-connect/auth-url"
PUBLIC_PATHS = frozenset({LOGIN_PATH, CALLBACK_PATH, LOGOUT_PATH, AUTH_URL_PATH})

HTTP_FOUND = 302
HTTP_OK = 200

_ERROR_PAGE = """<!DOCTYPE html>
<html>
<head><title>Login failed</title></head>
<body>
<h1>Login failed</h1>
<p>{message}</p>
<p><a href="{login}">Try again</a></p>
</body>
</html>
"""

_DONE_PAGE = """<!DOCTYPE html>
<html>
<head><title>Logged in</title></head>
<body><p>You are logged in.</p></body>
</html>
"""


class _CallbackQuery(BaseModel):
    """Query parameters the provider sends back to the redirect URI."""

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None


def _error_page(error: AuthError) -> HTMLResponse:
    body = _ERROR_PAGE.format(message=escape(user_message(error)), login=LOGIN_PATH)
    return HTMLResponse(body, status_code=error.http_status)


@router.get(LOGIN_PATH, response_model=None)
async def login(
    orchestrator: Annotated[AuthOrchestrator, Depends(get_orchestrator)],
    redirect_to: Annotated[str | None, Query()] = None,
) -> RedirectResponse:
    """GET /openid-connect/login -- redirect the browser to the provider."""
    url = await orchestrator.start_login(redirect_to)
    return RedirectResponse(url=url, status_code=HTTP_FOUND)


@router.get(AUTH_URL_PATH)
async def auth_url(
    orchestrator: Annotated[AuthOrchestrator, Depends(get_orchestrator)],
    redirect_to: Annotated[str | None, Query()] = None,
) -> JSONResponse:
    """GET /openid-connect/auth-url -- a fresh authorization URL for embedding."""
    url = await orchestrator.start_login(redirect_to)
    return JSONResponse({"url": url})


@router.get(CALLBACK_PATH, response_model=None)
async def authorize_callback(
    orchestrator: Annotated[AuthOrchestrator, Depends(get_orchestrator)],
    q: Annotated[_CallbackQuery, Query()],
) -> RedirectResponse | HTMLResponse:
    """GET /openid-connect-authorize -- the fixed provider redirect URI."""
    try:
        result = await orchestrator.handle_callback(
            code=q.code,
            state=q.state,
            error=q.error,
            error_description=q.error_description,
        )
    except AuthError as exc:
        return _error_page(exc)

    if result.redirect_url is None:
        return HTMLResponse(_DONE_PAGE, status_code=HTTP_OK)
    return RedirectResponse(url=result.redirect_url, status_code=HTTP_FOUND)


@router.get(LOGOUT_PATH)
async def logout(
    settings: Annotated[ClientSettings, Depends(get_settings)],
    client: Annotated[OIDCClient, Depends(get_oidc_client)],
    host_session: Annotated[StarletteSession, Depends(get_host_session)],
) -> RedirectResponse:
    """GET /openid-connect/logout -- end the local and, optionally, IdP session."""
    host_session.logout()
    target = settings.site_url
    if settings.redirect_on_logout:
        target = client.build_end_session_url(settings.site_url) or target
    return RedirectResponse(url=target, status_code=HTTP_FOUND)
