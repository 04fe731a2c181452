"""Drives one login attempt from authorization URL to host session."""

import logging
import re
from enum import StrEnum
from urllib.parse import urlsplit

from sqlalchemy.ext.asyncio import AsyncSession

from aadconnect.core.errors import (
    AccountCreationNotAuthorized,
    AccountProvisioningError,
    AmbiguousAccountMatch,
    AuthError,
    IdTokenError,
    LoginNotAuthorized,
    MalformedIdToken,
    MissingIdentityClaim,
    ProviderAuthorizationError,
    ProviderError,
    StateError,
    TemplateResolutionError,
)
from aadconnect.core.hooks import HookPoint, HookRegistry
from aadconnect.core.settings import ClientSettings
from aadconnect.oidc.binder import CreatePending, IdentityBinder
from aadconnect.oidc.claims import ClaimValidator, IdentityClaims
from aadconnect.oidc.client import OIDCClient
from aadconnect.oidc.session import HostSession
from aadconnect.oidc.state_store import StateStore
from aadconnect.oidc.types import AuthRequestState, LoginResult

logger = logging.getLogger(__name__)

# browsers treat a backslash like a slash and drop tabs and newlines
_UNSAFE_REDIRECT = re.compile(r"[\\\x00-\x1f\x7f]")


class LoginStage(StrEnum):
    """Progress of a single login attempt."""

    START = "start"
    AUTH_URL_ISSUED = "auth_url_issued"
    CALLBACK_RECEIVED = "callback_received"
    STATE_VALIDATED = "state_validated"
    TOKEN_EXCHANGED = "token_exchanged"
    CLAIMS_VALIDATED = "claims_validated"
    IDENTITY_RESOLVED = "identity_resolved"
    SESSION_ESTABLISHED = "session_established"
    FAILED = "failed"


GENERIC_MESSAGE = "Login failed. Please try again."

# Most specific class first.
USER_MESSAGES: list[tuple[type[AuthError], str]] = [
    (
        StateError,
        "Your login request expired or was already used. Please try again.",
    ),
    (
        ProviderAuthorizationError,
        "The identity provider did not authorize this login.",
    ),
    (
        ProviderError,
        "The identity provider could not complete the login. "
        "Please try again later.",
    ),
    (
        IdTokenError,
        "The identity provider returned an identity token that could not be "
        "trusted.",
    ),
    (
        MissingIdentityClaim,
        "Your account is missing information required to log in.",
    ),
    (LoginNotAuthorized, "You are not allowed to log in to this site."),
    (
        AccountCreationNotAuthorized,
        "No account exists for you on this site and new accounts cannot be "
        "created.",
    ),
    (
        AmbiguousAccountMatch,
        "Your identity matches more than one account. "
        "Please contact the site administrator.",
    ),
    (
        TemplateResolutionError,
        "Your account could not be created from the details supplied by the "
        "identity provider. Please contact the site administrator.",
    ),
    (
        AccountProvisioningError,
        "Your account could not be set up right now. Please try again.",
    ),
]


def user_message(error: AuthError) -> str:
    """User-facing text for a failure. Never includes provider details."""
    for error_type, message in USER_MESSAGES:
        if isinstance(error, error_type):
            return message
    return GENERIC_MESSAGE


class AuthOrchestrator:
    """Runs the login state machine for one request."""

    def __init__(
        self,
        session: AsyncSession,
        settings: ClientSettings,
        hooks: HookRegistry,
        host_session: HostSession,
        client: OIDCClient | None = None,
        state_store: StateStore | None = None,
    ) -> None:
        self._session = session
        self._settings = settings
        self._hooks = hooks
        self._host = host_session
        self._client = client or OIDCClient(settings, hooks)
        self._states = state_store or StateStore(session, settings.state_time_limit)
        self._validator = ClaimValidator(settings, hooks)
        self._binder = IdentityBinder(session, settings, hooks)
        self.stage = LoginStage.START

    def _advance(self, stage: LoginStage) -> None:
        logger.debug("login %s -> %s", self.stage, stage)
        self.stage = stage

    def safe_redirect(self, target: str | None) -> str | None:
        """Accept only relative paths and URLs under the site root."""
        if not target:
            return None
        if _UNSAFE_REDIRECT.search(target):
            logger.info("ignoring redirect target with unsafe characters")
            return None
        parts = urlsplit(target)
        if target.startswith("/") and not parts.scheme and not parts.netloc:
            return target
        site = self._settings.site_url.rstrip("/")
        if target == site or target.startswith(f"{site}/"):
            return target
        logger.info("ignoring off-site redirect target")
        return None

    async def start_login(self, redirect_to: str | None = None) -> str:
        """Issue a state and return the provider authorization URL."""
        target = None
        if self._settings.redirect_user_back:
            target = self.safe_redirect(redirect_to)
        token = await self._states.issue(target)
        await self._session.commit()
        url = self._client.build_authorization_url(token)
        self._advance(LoginStage.AUTH_URL_ISSUED)
        return url

    async def handle_callback(
        self,
        *,
        code: str | None,
        state: str | None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> LoginResult:
        """Validate the callback and log the user in, or raise AuthError."""
        self._advance(LoginStage.CALLBACK_RECEIVED)
        try:
            return await self._complete(code, state, error, error_description)
        except AuthError as exc:
            exc.stage = self.stage
            self.stage = LoginStage.FAILED
            await self._session.rollback()
            logger.warning(
                "login failed after %s: %s (%s)", exc.stage, exc.reason, exc
            )
            raise

    async def _complete(
        self,
        code: str | None,
        state: str | None,
        error: str | None,
        error_description: str | None,
    ) -> LoginResult:
        if error:
            raise ProviderAuthorizationError(error, error_description)

        try:
            request_state = await self._states.validate_and_consume(state or "")
        finally:
            # the state is spent even if the rest of the attempt fails
            await self._session.commit()
        self._advance(LoginStage.STATE_VALIDATED)

        if not code:
            raise ProviderAuthorizationError("invalid_request", "missing code")
        tokens = await self._client.exchange_code_for_token(code)
        self._advance(LoginStage.TOKEN_EXCHANGED)

        if not tokens.id_token:
            raise MalformedIdToken("token response carries no id_token")
        id_claims = await self._client.verify_id_token(tokens.id_token)
        user_claims = IdentityClaims()
        if self._settings.endpoint_userinfo:
            user_claims = await self._client.fetch_userinfo(tokens.access_token)
        claims = self._client.merge_claims(id_claims, user_claims)

        identity_key = self._validator.extract_identity_key(claims)
        if not self._validator.authorize_login(claims):
            raise LoginNotAuthorized("login test rejected the claims")
        self._advance(LoginStage.CLAIMS_VALIDATED)

        # the creation test only runs when no account was found
        resolved = await self._binder.resolve(
            identity_key, claims, creation_allowed=True
        )
        if resolved is None or isinstance(resolved, CreatePending):
            if not self._validator.authorize_creation(claims):
                raise AccountCreationNotAuthorized("no linked account for subject")
            account = await self._binder.create(identity_key, claims)
            created = True
        else:
            account = resolved
            created = False
        await self._binder.update_claims(account, id_claims, user_claims, tokens)
        if not created:
            self._hooks.notify(HookPoint.USER_UPDATE_CLAIMS, account.user_id, claims)
        await self._session.commit()
        self._advance(LoginStage.IDENTITY_RESOLVED)

        self._host.login(account.user_id)
        self._advance(LoginStage.SESSION_ESTABLISHED)
        logger.info("user %s logged in (created=%s)", account.user_id, created)

        return LoginResult(
            user_id=account.user_id,
            created=created,
            redirect_url=self._redirect_target(request_state, account.user_id),
        )

    def _redirect_target(
        self, request_state: AuthRequestState, user_id: str
    ) -> str | None:
        url = self._settings.site_url
        if self._settings.redirect_user_back and request_state.redirect_to:
            url = request_state.redirect_to
        url = self._hooks.filter(HookPoint.REDIRECT_USER_BACK, url, user_id)
        return url or None
