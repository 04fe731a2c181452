"""Identity claims and the login/creation policy applied to them."""

from collections.abc import Iterator, Mapping
from typing import Any

from aadconnect.core.errors import MissingIdentityClaim
from aadconnect.core.hooks import HookPoint, HookRegistry
from aadconnect.core.settings import ClientSettings


class IdentityClaims(Mapping[str, Any]):
    """Read-only claim set with explicit required/optional accessors."""

    def __init__(self, data: Mapping[str, Any] | None = None) -> None:
        self._data = dict(data or {})

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"IdentityClaims({sorted(self._data)})"

    def require(self, key: str) -> Any:
        """Return a claim value, failing when it is absent, None or blank."""
        value = self._data.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise MissingIdentityClaim(key)
        return value

    def to_dict(self) -> dict[str, Any]:
        return dict(self._data)


def merge_claims(
    id_token_claims: Mapping[str, Any],
    user_claims: Mapping[str, Any],
    *,
    userinfo_precedence: bool = False,
) -> IdentityClaims:
    """Combine both claim sources; ID token wins on collision unless told otherwise."""
    if userinfo_precedence:
        return IdentityClaims({**id_token_claims, **user_claims})
    return IdentityClaims({**user_claims, **id_token_claims})


class ClaimValidator:
    """Decides whether claims may log in or provision an account."""

    def __init__(self, settings: ClientSettings, hooks: HookRegistry) -> None:
        self._settings = settings
        self._hooks = hooks

    def extract_identity_key(self, claims: IdentityClaims) -> str:
        """Return the normalized external identifier."""
        return str(claims.require(self._settings.identity_key)).strip()

    def authorize_login(self, claims: IdentityClaims) -> bool:
        return bool(self._hooks.filter(HookPoint.LOGIN_TEST, True, claims))

    def authorize_creation(self, claims: IdentityClaims) -> bool:
        allowed = self._settings.create_if_does_not_exist
        return bool(self._hooks.filter(HookPoint.CREATION_TEST, allowed, claims))
