"""Application settings loaded from environment variables."""

from urllib.parse import urlsplit

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

STATE_TIME_LIMIT_DEFAULT = 180
HTTP_REQUEST_TIMEOUT_DEFAULT = 5
ID_TOKEN_LEEWAY_DEFAULT = 60
DB_POOL_SIZE_DEFAULT = 5
DB_MAX_OVERFLOW_DEFAULT = 10
DB_PORT_DEFAULT = 5432


class DatabaseSettings(BaseSettings):
    """PostgreSQL connection settings."""

    model_config = SettingsConfigDict(env_prefix="OIDC_DB_", frozen=True)

    url: str = ""
    host: str = "localhost"
    port: int = DB_PORT_DEFAULT
    user: str = "aadconnect"
    password: str = "aadconnect"
    database: str = "aadconnect"
    pool_size: int = DB_POOL_SIZE_DEFAULT
    max_overflow: int = DB_MAX_OVERFLOW_DEFAULT

    @property
    def async_url(self) -> str:
        """Build async connection URL, preferring an explicit override."""
        if self.url:
            return self.url
        return (
            f"postgresql+asyncpg://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )


class ClientSettings(BaseSettings):
    """OIDC client, account-binding and behaviour settings."""

    model_config = SettingsConfigDict(env_prefix="OIDC_", frozen=True)

    # oauth client
    client_id: str = ""
    client_secret: str = ""
    scope: str = "openid profile email"
    endpoint_login: str = ""
    endpoint_token: str = ""
    endpoint_userinfo: str = ""
    endpoint_end_session: str = ""
    endpoint_jwks: str = ""
    issuer: str = ""  # required while verify_id_token is on
    redirect_uri: str = "http://localhost:8000/openid-connect-authorize"
    site_url: str = "http://localhost:8000/"

    # transport and token checks
    no_sslverify: bool = False
    http_request_timeout: float = HTTP_REQUEST_TIMEOUT_DEFAULT
    verify_id_token: bool = True
    id_token_leeway: int = ID_TOKEN_LEEWAY_DEFAULT

    # claim mapping
    identity_key: str = "email"
    nickname_key: str = "name"
    email_format: str = "{email}"
    displayname_format: str = "{name}"
    identify_with_username: bool = False
    userinfo_precedence: bool = False

    # behaviour
    enforce_privacy: bool = False
    link_existing_users: bool = False
    create_if_does_not_exist: bool = True
    redirect_user_back: bool = False
    redirect_on_logout: bool = True
    state_time_limit: int = STATE_TIME_LIMIT_DEFAULT

    session_secret: str = "change-me"
    log_level: str = "INFO"

    @field_validator("redirect_uri")
    @classmethod
    def _fixed_redirect_uri(cls, value: str) -> str:
        """Azure AD rejects redirect URIs carrying a query string."""
        parts = urlsplit(value)
        if parts.query or parts.fragment:
            raise ValueError("redirect_uri must not contain a query or fragment")
        return value

    @field_validator("state_time_limit")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            return STATE_TIME_LIMIT_DEFAULT
        return value

    def get_scope_list(self) -> list[str]:
        """Split the space-separated scope string."""
        return [s for s in self.scope.split() if s]
