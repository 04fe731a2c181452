"""Exception hierarchy for the login flow.

Every failure a component can report is an :class:`AuthError` subclass with
a stable ``reason`` code. The orchestrator records the stage the attempt was
in when the error escaped, and the callback route turns the error into a
generic page using ``http_status``. Details carried on the exceptions (such
as provider response bodies) are for operator logs only.

Hierarchy::

    AuthError
    +-- StateError
    |   +-- InvalidState
    |   +-- ExpiredState
    +-- ProviderError
    |   +-- TokenExchangeError
    |   +-- UserinfoError
    |   +-- RequestTimeout
    |   +-- ProviderAuthorizationError
    +-- IdTokenError
    |   +-- MalformedIdToken
    |   +-- InvalidIdToken
    |       +-- UnknownSigningKey
    +-- PolicyError
    |   +-- MissingIdentityClaim
    |   +-- LoginNotAuthorized
    |   +-- AccountCreationNotAuthorized
    |   +-- AmbiguousAccountMatch
    |   +-- TemplateResolutionError
    +-- AccountProvisioningError
"""

HTTP_BAD_REQUEST = 400
HTTP_FORBIDDEN = 403
HTTP_CONFLICT = 409
HTTP_BAD_GATEWAY = 502


class AuthError(Exception):
    """Base class for all login-attempt failures."""

    reason: str = "auth_error"
    http_status: int = HTTP_BAD_REQUEST

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.reason)
        self.stage: str | None = None


class StateError(AuthError):
    """The anti-forgery state could not be validated."""


class InvalidState(StateError):
    """Unknown or already consumed state token."""

    reason = "invalid_state"


class ExpiredState(StateError):
    """State token older than the configured time limit."""

    reason = "expired_state"


class ProviderError(AuthError):
    """The identity provider failed or could not be reached."""

    reason = "provider_error"
    http_status = HTTP_BAD_GATEWAY


class TokenExchangeError(ProviderError):
    """Token endpoint returned an error or an unreadable body."""

    reason = "token_exchange_error"

    def __init__(self, http_status: int, provider_error_body: str) -> None:
        super().__init__(f"token endpoint returned {http_status}")
        self.status = http_status
        self.body = provider_error_body


class UserinfoError(ProviderError):
    """Userinfo endpoint returned an error or an unreadable body."""

    reason = "userinfo_error"

    def __init__(self, status: int, body: str = "") -> None:
        super().__init__(f"userinfo endpoint returned {status}")
        self.status = status
        self.body = body


class RequestTimeout(ProviderError):
    """An outbound provider request exceeded its timeout."""

    reason = "request_timeout"

    def __init__(self, operation: str) -> None:
        super().__init__(f"{operation} timed out")
        self.operation = operation


class ProviderAuthorizationError(ProviderError):
    """The provider redirected back with an ``error`` parameter."""

    reason = "provider_authorization_error"
    http_status = HTTP_BAD_REQUEST

    def __init__(self, error: str, description: str | None = None) -> None:
        super().__init__(f"provider returned {error}")
        self.error = error
        self.description = description


class IdTokenError(AuthError):
    """The ID token could not be trusted."""


class MalformedIdToken(IdTokenError):
    """ID token is not a decodable compact JWS."""

    reason = "malformed_id_token"


class InvalidIdToken(IdTokenError):
    """ID token failed signature or claim verification."""

    reason = "invalid_id_token"


class UnknownSigningKey(InvalidIdToken):
    """No key in the provider JWKS matches the token's ``kid``."""

    def __init__(self, kid: str | None) -> None:
        super().__init__(f"no signing key for kid {kid!r}")
        self.kid = kid


class PolicyError(AuthError):
    """Claims were valid but policy or data prevents the login."""

    http_status = HTTP_FORBIDDEN


class MissingIdentityClaim(PolicyError):
    """The configured identity-key claim is absent or empty."""

    reason = "missing_identity_claim"

    def __init__(self, claim: str) -> None:
        super().__init__(f"claim {claim!r} missing or empty")
        self.claim = claim


class LoginNotAuthorized(PolicyError):
    """The login-test predicate rejected these claims."""

    reason = "login_not_authorized"


class AccountCreationNotAuthorized(PolicyError):
    """No linked account exists and creation is not permitted."""

    reason = "account_creation_not_authorized"


class AmbiguousAccountMatch(PolicyError):
    """More than one local account matches the identity key."""

    reason = "ambiguous_account_match"

    def __init__(self, field: str, count: int) -> None:
        super().__init__(f"{count} local accounts match on {field}")
        self.field = field
        self.count = count


class TemplateResolutionError(PolicyError):
    """A format template references a claim that is not present."""

    reason = "template_resolution_error"

    def __init__(self, template: str, placeholder: str) -> None:
        super().__init__(f"unresolved placeholder {placeholder!r} in {template!r}")
        self.template = template
        self.placeholder = placeholder


class AccountProvisioningError(AuthError):
    """A new account could not be stored after repeated username clashes."""

    reason = "account_provisioning_error"
    http_status = HTTP_CONFLICT
