"""Redirect anonymous visitors to the login endpoint on private sites."""

from urllib.parse import urlencode

from fastapi.responses import RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from aadconnect.oidc.routes_login import HTTP_FOUND, LOGIN_PATH, PUBLIC_PATHS
from aadconnect.oidc.session import SESSION_USER_KEY


class PrivacyMiddleware(BaseHTTPMiddleware):
    """Requires a host session for every path except the login endpoints.

    Must sit inside Starlette's ``SessionMiddleware``.
    """

    def __init__(self, app: ASGIApp, enabled: bool) -> None:
        super().__init__(app)
        self._enabled = enabled

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if not self._enabled or request.url.path in PUBLIC_PATHS:
            return await call_next(request)
        if request.session.get(SESSION_USER_KEY):
            return await call_next(request)

        target = request.url.path
        if request.url.query:
            target = f"{target}?{request.url.query}"
        query = urlencode({"redirect_to": target})
        return RedirectResponse(url=f"{LOGIN_PATH}?{query}", status_code=HTTP_FOUND)
