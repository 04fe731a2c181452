"""Tests for the login state machine."""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs, urlsplit

import pytest
from fakes import SITE_URL, TOKEN_URL, USERINFO_URL, FakeProvider, id_token_claims
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from aadconnect.core.errors import (
    HTTP_CONFLICT,
    AccountCreationNotAuthorized,
    AccountProvisioningError,
    AuthError,
    ExpiredState,
    InvalidState,
    LoginNotAuthorized,
    MalformedIdToken,
    MissingIdentityClaim,
    ProviderAuthorizationError,
    TokenExchangeError,
)
from aadconnect.core.hooks import HookPoint, HookRegistry
from aadconnect.core.settings import ClientSettings
from aadconnect.db.models_user import LinkedAccountEntity, UserEntity
from aadconnect.db.repo_user import get_linked_account_by_subject
from aadconnect.oidc.claims import IdentityClaims
from aadconnect.oidc.client import OIDCClient
from aadconnect.oidc.orchestrator import (
    GENERIC_MESSAGE,
    AuthOrchestrator,
    LoginStage,
    user_message,
)
from aadconnect.oidc.state_store import StateStore
from aadconnect.oidc.types import LoginResult


class FakeHostSession:
    """Records which user the host was asked to log in."""

    def __init__(self) -> None:
        self.logged_in: str | None = None

    def login(self, user_id: str) -> None:
        self.logged_in = user_id

    def logout(self) -> None:
        self.logged_in = None

    @property
    def user_id(self) -> str | None:
        return self.logged_in


OrchestratorFactory = Callable[..., AuthOrchestrator]


@pytest.fixture
def make_orchestrator(
    db_session: AsyncSession,
    settings: ClientSettings,
    hooks: HookRegistry,
    provider: FakeProvider,
) -> OrchestratorFactory:
    def _make(
        host: FakeHostSession | None = None,
        settings: ClientSettings = settings,
        state_store: StateStore | None = None,
    ) -> AuthOrchestrator:
        client = OIDCClient(settings, hooks, transport=provider.transport)
        return AuthOrchestrator(
            db_session,
            settings,
            hooks,
            host or FakeHostSession(),
            client=client,
            state_store=state_store,
        )

    return _make


def _state_of(url: str) -> str:
    return parse_qs(urlsplit(url).query)["state"][0]


async def _count(session: AsyncSession, entity: type) -> int:
    result = await session.execute(select(func.count()).select_from(entity))
    return result.scalar_one()


async def _login(
    orchestrator: AuthOrchestrator, redirect_to: str | None = None
) -> LoginResult:
    url = await orchestrator.start_login(redirect_to)
    return await orchestrator.handle_callback(code="code-xyz", state=_state_of(url))


class TestSuccessfulLogin:
    """Tests for the happy path through the callback."""

    async def test_first_login_creates_user(
        self,
        make_orchestrator: OrchestratorFactory,
        db_session: AsyncSession,
    ) -> None:
        host = FakeHostSession()
        orchestrator = make_orchestrator(host)
        result = await _login(orchestrator)

        assert result.created is True
        assert host.user_id == result.user_id
        assert result.redirect_url == SITE_URL
        assert orchestrator.stage == LoginStage.SESSION_ESTABLISHED

        account = await get_linked_account_by_subject(db_session, "a@x.com")
        assert account is not None
        assert account.user_id == result.user_id
        assert account.last_user_claims == {"sub": "subject-001"}
        assert account.last_id_token_claims["email"] == "a@x.com"
        assert account.last_token_response["access_token"] == "access-abc"

    async def test_second_login_reuses_user(
        self, make_orchestrator: OrchestratorFactory, db_session: AsyncSession
    ) -> None:
        first = await _login(make_orchestrator())
        second = await _login(make_orchestrator())
        assert second.created is False
        assert second.user_id == first.user_id
        assert await _count(db_session, UserEntity) == 1

    async def test_update_hooks(
        self, make_orchestrator: OrchestratorFactory, hooks: HookRegistry
    ) -> None:
        updates: list[str] = []
        claim_updates: list[tuple[str, str]] = []
        hooks.register(HookPoint.USER_UPDATE, updates.append)
        hooks.register(
            HookPoint.USER_UPDATE_CLAIMS,
            lambda uid, claims: claim_updates.append((uid, claims["email"])),
        )

        first = await _login(make_orchestrator())
        assert updates == [first.user_id]
        assert claim_updates == []

        await _login(make_orchestrator())
        assert updates == [first.user_id, first.user_id]
        assert claim_updates == [(first.user_id, "a@x.com")]

    async def test_without_userinfo_endpoint(
        self,
        make_orchestrator: OrchestratorFactory,
        make_settings: Callable[..., ClientSettings],
        provider: FakeProvider,
    ) -> None:
        settings = make_settings(endpoint_userinfo="")
        result = await _login(make_orchestrator(settings=settings))
        assert result.created is True
        assert provider.calls_to(USERINFO_URL) == []

    async def test_start_login_stage(
        self, make_orchestrator: OrchestratorFactory
    ) -> None:
        orchestrator = make_orchestrator()
        await orchestrator.start_login()
        assert orchestrator.stage == LoginStage.AUTH_URL_ISSUED


class TestRedirectTarget:
    """Tests for where the browser goes after login."""

    async def test_redirect_user_back(
        self,
        make_orchestrator: OrchestratorFactory,
        make_settings: Callable[..., ClientSettings],
    ) -> None:
        settings = make_settings(redirect_user_back=True)
        result = await _login(make_orchestrator(settings=settings), "/private?x=1")
        assert result.redirect_url == "/private?x=1"

    async def test_redirect_back_ignored_when_disabled(
        self, make_orchestrator: OrchestratorFactory
    ) -> None:
        result = await _login(make_orchestrator(), "/private")
        assert result.redirect_url == SITE_URL

    async def test_off_site_target_ignored(
        self,
        make_orchestrator: OrchestratorFactory,
        make_settings: Callable[..., ClientSettings],
    ) -> None:
        settings = make_settings(redirect_user_back=True)
        result = await _login(
            make_orchestrator(settings=settings), "https://evil.example.com/"
        )
        assert result.redirect_url == SITE_URL

    @pytest.mark.parametrize(
        "target",
        [
            "/\\evil.example.com/phish",
            "/\\\\evil.example.com",
            "//evil.example.com",
            "/\t/evil.example.com",
            "/ok\x00",
            "https://evil.example.com/",
            "javascript:alert(1)",
        ],
    )
    async def test_unsafe_target_rejected(
        self, make_orchestrator: OrchestratorFactory, target: str
    ) -> None:
        assert make_orchestrator().safe_redirect(target) is None

    async def test_backslash_target_falls_back_to_site(
        self,
        make_orchestrator: OrchestratorFactory,
        make_settings: Callable[..., ClientSettings],
    ) -> None:
        settings = make_settings(redirect_user_back=True)
        result = await _login(
            make_orchestrator(settings=settings), "/\\evil.example.com/phish"
        )
        assert result.redirect_url == SITE_URL

    @pytest.mark.parametrize(
        "target", ["/private?x=1", f"{SITE_URL}page", SITE_URL.rstrip("/")]
    )
    async def test_on_site_target_kept(
        self, make_orchestrator: OrchestratorFactory, target: str
    ) -> None:
        assert make_orchestrator().safe_redirect(target) == target

    async def test_hook_overrides_target(
        self, make_orchestrator: OrchestratorFactory, hooks: HookRegistry
    ) -> None:
        hooks.register(
            HookPoint.REDIRECT_USER_BACK, lambda url, uid: f"/welcome/{uid}"
        )
        result = await _login(make_orchestrator())
        assert result.redirect_url == f"/welcome/{result.user_id}"

    async def test_empty_target_means_no_redirect(
        self, make_orchestrator: OrchestratorFactory, hooks: HookRegistry
    ) -> None:
        hooks.register(HookPoint.REDIRECT_USER_BACK, lambda url, uid: "")
        result = await _login(make_orchestrator())
        assert result.redirect_url is None


class TestStateFailures:
    """Tests for state validation inside the callback."""

    async def test_replayed_state(
        self, make_orchestrator: OrchestratorFactory
    ) -> None:
        orchestrator = make_orchestrator()
        url = await orchestrator.start_login()
        await orchestrator.handle_callback(code="c", state=_state_of(url))

        replay = make_orchestrator()
        with pytest.raises(InvalidState) as exc_info:
            await replay.handle_callback(code="c", state=_state_of(url))
        assert exc_info.value.stage == LoginStage.CALLBACK_RECEIVED
        assert replay.stage == LoginStage.FAILED

    async def test_missing_state(
        self, make_orchestrator: OrchestratorFactory, provider: FakeProvider
    ) -> None:
        with pytest.raises(InvalidState):
            await make_orchestrator().handle_callback(code="c", state=None)
        assert provider.calls_to(TOKEN_URL) == []

    async def test_expired_state(
        self,
        make_orchestrator: OrchestratorFactory,
        db_session: AsyncSession,
        settings: ClientSettings,
    ) -> None:
        now = [datetime.now(UTC)]
        store = StateStore(db_session, settings.state_time_limit, clock=lambda: now[0])
        orchestrator = make_orchestrator(state_store=store)
        url = await orchestrator.start_login()
        now[0] += timedelta(seconds=settings.state_time_limit + 1)
        with pytest.raises(ExpiredState):
            await orchestrator.handle_callback(code="c", state=_state_of(url))


class TestProviderFailures:
    """Tests for errors reported by or about the provider."""

    async def test_error_parameter(
        self, make_orchestrator: OrchestratorFactory, provider: FakeProvider
    ) -> None:
        orchestrator = make_orchestrator()
        url = await orchestrator.start_login()
        with pytest.raises(ProviderAuthorizationError) as exc_info:
            await orchestrator.handle_callback(
                code=None,
                state=_state_of(url),
                error="access_denied",
                error_description="user cancelled",
            )
        assert exc_info.value.error == "access_denied"
        assert provider.calls_to(TOKEN_URL) == []

    async def test_missing_code_spends_state(
        self, make_orchestrator: OrchestratorFactory
    ) -> None:
        orchestrator = make_orchestrator()
        state = _state_of(await orchestrator.start_login())
        with pytest.raises(ProviderAuthorizationError):
            await orchestrator.handle_callback(code=None, state=state)
        with pytest.raises(InvalidState):
            await make_orchestrator().handle_callback(code="c", state=state)

    async def test_token_error_writes_nothing(
        self,
        make_orchestrator: OrchestratorFactory,
        provider: FakeProvider,
        db_session: AsyncSession,
    ) -> None:
        provider.token_status = 400
        provider.token_body = {"error": "invalid_grant"}
        orchestrator = make_orchestrator()
        with pytest.raises(TokenExchangeError) as exc_info:
            await _login(orchestrator)
        assert exc_info.value.stage == LoginStage.STATE_VALIDATED
        assert await _count(db_session, UserEntity) == 0

    async def test_token_without_id_token(
        self, make_orchestrator: OrchestratorFactory, provider: FakeProvider
    ) -> None:
        provider.token_body = {"access_token": "access-abc", "token_type": "Bearer"}
        with pytest.raises(MalformedIdToken):
            await _login(make_orchestrator())


class TestPolicyFailures:
    """Tests for claim and account policy failures."""

    async def test_missing_identity_claim(
        self,
        make_orchestrator: OrchestratorFactory,
        provider: FakeProvider,
        db_session: AsyncSession,
    ) -> None:
        provider.claims = id_token_claims(email=None)
        with pytest.raises(MissingIdentityClaim):
            await _login(make_orchestrator())
        assert await _count(db_session, UserEntity) == 0

    async def test_identity_claim_from_userinfo(
        self, make_orchestrator: OrchestratorFactory, provider: FakeProvider
    ) -> None:
        provider.claims = id_token_claims(email=None)
        provider.userinfo_body = {"sub": "subject-001", "email": "ui@x.com"}
        result = await _login(make_orchestrator())
        assert result.created is True

    async def test_login_rejected_keeps_old_snapshot(
        self,
        make_orchestrator: OrchestratorFactory,
        provider: FakeProvider,
        hooks: HookRegistry,
        db_session: AsyncSession,
    ) -> None:
        await _login(make_orchestrator())

        hooks.register(HookPoint.LOGIN_TEST, lambda allowed, claims: False)
        provider.userinfo_body = {"sub": "subject-001", "phone": "555"}
        host = FakeHostSession()
        with pytest.raises(LoginNotAuthorized):
            await _login(make_orchestrator(host))

        assert host.user_id is None
        account = await get_linked_account_by_subject(db_session, "a@x.com")
        assert account is not None
        assert account.last_user_claims == {"sub": "subject-001"}

    async def test_creation_not_allowed(
        self,
        make_orchestrator: OrchestratorFactory,
        make_settings: Callable[..., ClientSettings],
        db_session: AsyncSession,
    ) -> None:
        settings = make_settings(create_if_does_not_exist=False)
        with pytest.raises(AccountCreationNotAuthorized):
            await _login(make_orchestrator(settings=settings))
        assert await _count(db_session, UserEntity) == 0
        assert await _count(db_session, LinkedAccountEntity) == 0

    async def test_creation_hook_denies(
        self, make_orchestrator: OrchestratorFactory, hooks: HookRegistry
    ) -> None:
        hooks.register(HookPoint.CREATION_TEST, lambda allowed, claims: False)
        with pytest.raises(AccountCreationNotAuthorized):
            await _login(make_orchestrator())

    async def test_creation_test_skipped_for_existing_user(
        self, make_orchestrator: OrchestratorFactory, hooks: HookRegistry
    ) -> None:
        calls: list[bool] = []

        def _creation_test(allowed: bool, claims: IdentityClaims) -> None:
            calls.append(allowed)

        hooks.register(HookPoint.CREATION_TEST, _creation_test)
        await _login(make_orchestrator())
        await _login(make_orchestrator())
        assert calls == [True]

    async def test_existing_user_logs_in_when_creation_denied(
        self, make_orchestrator: OrchestratorFactory, hooks: HookRegistry
    ) -> None:
        first = await _login(make_orchestrator())
        hooks.register(HookPoint.CREATION_TEST, lambda allowed, claims: False)
        second = await _login(make_orchestrator())
        assert second.created is False
        assert second.user_id == first.user_id


class TestUserMessage:
    """Tests for user_message."""

    def test_hides_provider_body(self) -> None:
        message = user_message(TokenExchangeError(400, "invalid_grant: secret"))
        assert "invalid_grant" not in message
        assert "secret" not in message

    def test_specific_message_per_failure(self) -> None:
        assert user_message(InvalidState()) != user_message(LoginNotAuthorized())

    def test_generic_fallback(self) -> None:
        assert user_message(AuthError("boom")) == GENERIC_MESSAGE

    def test_provisioning_failure(self) -> None:
        error = AccountProvisioningError("no free username")
        assert user_message(error) != GENERIC_MESSAGE
        assert "username" not in user_message(error)
        assert error.http_status == HTTP_CONFLICT
