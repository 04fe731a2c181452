"""Maps a validated claim set onto a local account."""

import logging
import re

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from aadconnect.core.errors import (
    AccountProvisioningError,
    AmbiguousAccountMatch,
    TemplateResolutionError,
)
from aadconnect.core.hooks import HookPoint, HookRegistry
from aadconnect.core.settings import ClientSettings
from aadconnect.db.models_user import LinkedAccountEntity
from aadconnect.db.repo_user import (
    NewUserData,
    find_users_by_email,
    find_users_by_username,
    get_linked_account_by_subject,
    get_linked_account_for_user,
    insert_linked_user,
    link_user,
    sanitize_username,
    unique_username,
)
from aadconnect.oidc.claims import IdentityClaims
from aadconnect.oidc.types import TokenResponse

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{([^{}]+)\}")

MAX_USERNAME_ATTEMPTS = 5


class CreatePending:
    """No account matched; a new one may be provisioned."""

    def __repr__(self) -> str:
        return "CREATE_PENDING"


CREATE_PENDING = CreatePending()


def format_claim_template(template: str, claims: IdentityClaims) -> str:
    """Substitute ``{claim}`` placeholders; unresolved ones are an error."""

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        value = claims.get(name)
        if value is None or str(value).strip() == "":
            raise TemplateResolutionError(template, name)
        return str(value)

    return _PLACEHOLDER.sub(_replace, template).strip()


class IdentityBinder:
    """Finds, links or provisions the local account for an identity key."""

    def __init__(
        self, session: AsyncSession, settings: ClientSettings, hooks: HookRegistry
    ) -> None:
        self._session = session
        self._settings = settings
        self._hooks = hooks

    @property
    def matching_field(self) -> str:
        return "username" if self._settings.identify_with_username else "email"

    async def resolve(
        self, identity_key: str, claims: IdentityClaims, *, creation_allowed: bool
    ) -> LinkedAccountEntity | CreatePending | None:
        """Linked account, CREATE_PENDING, or None when nothing may be created."""
        account = await get_linked_account_by_subject(self._session, identity_key)
        if account is not None:
            return account

        if self._settings.link_existing_users:
            account = await self._link_existing(identity_key)
            if account is not None:
                return account

        return CREATE_PENDING if creation_allowed else None

    async def _link_existing(self, identity_key: str) -> LinkedAccountEntity | None:
        if self.matching_field == "username":
            matches = await find_users_by_username(self._session, identity_key)
        else:
            matches = await find_users_by_email(self._session, identity_key)

        if len(matches) > 1:
            raise AmbiguousAccountMatch(self.matching_field, len(matches))
        if not matches:
            return None

        user = matches[0]
        existing = await get_linked_account_for_user(self._session, user.id)
        if existing is not None:
            logger.warning(
                "user %s matches %s but is linked to another subject",
                user.id,
                self.matching_field,
            )
            return None

        logger.info("linking existing user %s by %s", user.id, self.matching_field)
        try:
            async with self._session.begin_nested():
                return await link_user(self._session, user, identity_key)
        except IntegrityError:
            winner = await get_linked_account_by_subject(self._session, identity_key)
            if winner is not None:
                logger.info("subject linked concurrently; reusing it")
                return winner
            logger.warning("user %s was linked elsewhere concurrently", user.id)
            return None

    async def update_claims(
        self,
        account: LinkedAccountEntity,
        id_token_claims: IdentityClaims,
        user_claims: IdentityClaims,
        token_response: TokenResponse,
    ) -> None:
        """Overwrite the stored claim and token snapshots."""
        account.last_id_token_claims = id_token_claims.to_dict()
        account.last_user_claims = user_claims.to_dict()
        account.last_token_response = token_response.model_dump(exclude_none=True)
        await self._session.flush()
        self._hooks.notify(HookPoint.USER_UPDATE, account.user_id)

    async def create(
        self, identity_key: str, claims: IdentityClaims
    ) -> LinkedAccountEntity:
        """Provision a user bound to ``identity_key``.

        The insert is not preceded by an existence check: the UNIQUE
        constraint on ``subject_identity`` decides between concurrent
        attempts, and the loser returns the winner's account. Each insert
        runs in a savepoint, so a clash leaves the surrounding transaction
        usable. A username taken between the lookup and the insert is
        replaced by the next free one, up to ``MAX_USERNAME_ATTEMPTS`` times.
        """
        base = self._username_base(identity_key, claims)
        data = self._new_user_data(
            identity_key, claims, await unique_username(self._session, base)
        )
        tried: list[str] = []
        for _ in range(MAX_USERNAME_ATTEMPTS):
            try:
                async with self._session.begin_nested():
                    account = await insert_linked_user(self._session, data)
            except IntegrityError:
                winner = await get_linked_account_by_subject(
                    self._session, identity_key
                )
                if winner is not None:
                    logger.info("subject already provisioned concurrently; reusing it")
                    return winner
                logger.info("username %s taken on insert, retrying", data.username)
                tried.append(data.username)
                username = await unique_username(self._session, base, tried)
                data = data.model_copy(update={"username": username})
                continue

            logger.info("created user %s for new subject", account.user_id)
            self._hooks.notify(HookPoint.USER_CREATE, account.user_id, claims)
            return account

        raise AccountProvisioningError(
            f"no free username for {base!r} after {MAX_USERNAME_ATTEMPTS} attempts"
        )

    def _username_base(self, identity_key: str, claims: IdentityClaims) -> str:
        if self._settings.identify_with_username:
            return sanitize_username(identity_key)
        nickname = claims.get(self._settings.nickname_key)
        return sanitize_username(str(nickname or identity_key.split("@")[0]))

    def _new_user_data(
        self, identity_key: str, claims: IdentityClaims, username: str
    ) -> NewUserData:
        s = self._settings
        email = (
            format_claim_template(s.email_format, claims) if s.email_format else None
        )
        display_name = (
            format_claim_template(s.displayname_format, claims)
            if s.displayname_format
            else None
        )
        nickname = claims.get(s.nickname_key)
        return NewUserData(
            subject_identity=identity_key,
            username=username,
            email=email or None,
            display_name=display_name or None,
            nickname=str(nickname) if nickname else None,
        )

