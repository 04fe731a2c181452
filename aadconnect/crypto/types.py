"""Type definitions for provider signing keys."""

from pydantic import BaseModel, ConfigDict


class JWKEntry(BaseModel):
    """Single JWK entry in a provider's JWKS response."""

    model_config = ConfigDict(extra="allow")

    kty: str = "RSA"
    use: str | None = None
    alg: str | None = None
    kid: str | None = None
    n: str | None = None
    e: str | None = None


class JWKSResponse(BaseModel):
    """JSON Web Key Set response."""

    keys: list[JWKEntry]

    def find(self, kid: str | None) -> JWKEntry | None:
        """Return the signing key with this kid, or the only key if kid is unset."""
        signing = [k for k in self.keys if k.use in (None, "sig")]
        if kid is None:
            return signing[0] if len(signing) == 1 else None
        for key in signing:
            if key.kid == kid:
                return key
        return None
