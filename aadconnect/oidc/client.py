"""Protocol side of the Authorization Code flow: URLs, tokens, userinfo."""

import logging
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from aadconnect.core.errors import (
    InvalidIdToken,
    ProviderError,
    RequestTimeout,
    TokenExchangeError,
    UnknownSigningKey,
    UserinfoError,
)
from aadconnect.core.hooks import HookPoint, HookRegistry
from aadconnect.core.settings import ClientSettings
from aadconnect.crypto.id_token import IdTokenVerifier, decode_unverified
from aadconnect.crypto.types import JWKSResponse
from aadconnect.oidc.claims import IdentityClaims, merge_claims
from aadconnect.oidc.types import ProviderRequest, RequestOperation, TokenResponse

logger = logging.getLogger(__name__)

HTTP_OK_MIN = 200
HTTP_OK_MAX = 299


def _provider_error_body(response: httpx.Response) -> str:
    """Prefer the OAuth ``error`` field, fall back to the raw body."""
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.text


def _json_object(response: httpx.Response) -> dict[str, Any] | None:
    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


class OIDCClient:
    """Talks to the provider; knows nothing about local accounts."""

    def __init__(
        self,
        settings: ClientSettings,
        hooks: HookRegistry,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._hooks = hooks
        self._transport = transport
        self._jwks: JWKSResponse | None = None

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._settings.http_request_timeout,
            verify=not self._settings.no_sslverify,
            transport=self._transport,
        )

    def _alter(
        self, request: ProviderRequest, op: RequestOperation
    ) -> ProviderRequest:
        return self._hooks.filter(
            HookPoint.ALTER_REQUEST, request, self._settings, op
        )

    async def _send(
        self, request: ProviderRequest, op: RequestOperation
    ) -> httpx.Response:
        """Send a provider request, mapping timeouts to RequestTimeout."""
        try:
            async with self._http() as http:
                return await http.request(
                    request.method,
                    request.url,
                    params=request.params or None,
                    data=request.data or None,
                    headers=request.headers,
                )
        except httpx.TimeoutException as exc:
            logger.warning(
                "%s timed out after %ss", op, self._settings.http_request_timeout
            )
            raise RequestTimeout(op) from exc
        except httpx.TransportError as exc:
            logger.warning("%s failed: %s", op, exc)
            raise ProviderError(f"{op} failed") from exc

    def build_authorization_url(self, state_token: str) -> str:
        """Compose the authorize-endpoint URL for this state."""
        s = self._settings
        request = ProviderRequest(
            url=s.endpoint_login,
            params={
                "response_type": "code",
                "client_id": s.client_id,
                "redirect_uri": s.redirect_uri,
                "scope": s.scope,
                "state": state_token,
            },
        )
        request = self._alter(request, RequestOperation.AUTHENTICATION_URL)
        separator = "&" if "?" in request.url else "?"
        url = f"{request.url}{separator}{urlencode(request.params)}"
        return self._hooks.filter(HookPoint.AUTH_URL, url, state_token)

    async def exchange_code_for_token(self, code: str) -> TokenResponse:
        """POST the authorization code to the token endpoint."""
        s = self._settings
        request = ProviderRequest(
            method="POST",
            url=s.endpoint_token,
            data={
                "code": code,
                "client_id": s.client_id,
                "client_secret": s.client_secret,
                "redirect_uri": s.redirect_uri,
                "grant_type": "authorization_code",
            },
        )
        op = RequestOperation.AUTHENTICATION_TOKEN
        response = await self._send(self._alter(request, op), op)

        if not HTTP_OK_MIN <= response.status_code <= HTTP_OK_MAX:
            body = _provider_error_body(response)
            logger.warning(
                "token exchange failed: status=%s body=%s", response.status_code, body
            )
            raise TokenExchangeError(response.status_code, body)

        payload = _json_object(response)
        if payload is None:
            logger.warning("token endpoint returned a non-object body")
            raise TokenExchangeError(response.status_code, response.text)
        try:
            return TokenResponse.model_validate(payload)
        except ValidationError as exc:
            logger.warning("token response rejected: %s", exc)
            raise TokenExchangeError(response.status_code, response.text) from exc

    def decode_id_token(self, raw: str) -> IdentityClaims:
        """Structural decode of the ID token payload, without verification."""
        return IdentityClaims(decode_unverified(raw))

    async def fetch_jwks(self, refresh: bool = False) -> JWKSResponse:
        """Fetch the provider signing keys; cached until ``refresh`` is set."""
        if self._jwks is not None and not refresh:
            return self._jwks
        if not self._settings.endpoint_jwks:
            raise InvalidIdToken("no JWKS endpoint configured")

        op = RequestOperation.JWKS
        request = self._alter(ProviderRequest(url=self._settings.endpoint_jwks), op)
        response = await self._send(request, op)
        payload = _json_object(response)
        if response.is_error or payload is None:
            logger.warning("JWKS fetch failed: status=%s", response.status_code)
            raise InvalidIdToken("provider signing keys unavailable")
        try:
            self._jwks = JWKSResponse.model_validate(payload)
        except ValidationError as exc:
            raise InvalidIdToken("provider signing keys unreadable") from exc
        return self._jwks

    async def verify_id_token(self, raw: str) -> IdentityClaims:
        """Decode the ID token and check signature, audience, issuer and expiry."""
        claims = self.decode_id_token(raw)
        if not self._settings.verify_id_token:
            logger.warning("ID token signature verification is disabled")
            return claims
        try:
            return IdentityClaims(self._verifier(await self.fetch_jwks()).verify(raw))
        except UnknownSigningKey as exc:
            logger.info("unknown signing key %r, refetching JWKS", exc.kid)
        keys = await self.fetch_jwks(refresh=True)
        return IdentityClaims(self._verifier(keys).verify(raw))

    def _verifier(self, jwks: JWKSResponse) -> IdTokenVerifier:
        s = self._settings
        return IdTokenVerifier(
            jwks, audience=s.client_id, issuer=s.issuer, leeway=s.id_token_leeway
        )

    async def fetch_userinfo(self, access_token: str) -> IdentityClaims:
        """GET the userinfo endpoint with the access token."""
        request = ProviderRequest(
            url=self._settings.endpoint_userinfo,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        op = RequestOperation.USERINFO
        response = await self._send(self._alter(request, op), op)

        payload = _json_object(response)
        if response.is_error or payload is None:
            logger.warning(
                "userinfo failed: status=%s body=%s",
                response.status_code,
                response.text,
            )
            raise UserinfoError(response.status_code, response.text)
        return IdentityClaims(payload)

    def merge_claims(
        self, id_token_claims: IdentityClaims, user_claims: IdentityClaims
    ) -> IdentityClaims:
        return merge_claims(
            id_token_claims,
            user_claims,
            userinfo_precedence=self._settings.userinfo_precedence,
        )

    def build_end_session_url(self, post_logout_redirect_uri: str) -> str | None:
        """Provider logout URL, or None when no end-session endpoint is set."""
        endpoint = self._settings.endpoint_end_session
        if not endpoint:
            return None
        separator = "&" if "?" in endpoint else "?"
        query = urlencode({"post_logout_redirect_uri": post_logout_redirect_uri})
        return f"{endpoint}{separator}{query}"
