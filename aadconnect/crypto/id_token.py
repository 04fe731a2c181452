"""ID token decoding and RS256 verification against a provider JWKS."""

import json
from typing import Any

import jwt
from jwt.utils import base64url_decode

from aadconnect.core.errors import (
    InvalidIdToken,
    MalformedIdToken,
    UnknownSigningKey,
)
from aadconnect.crypto.types import JWKSResponse

ID_TOKEN_ALGORITHMS = ["RS256"]
JWS_SEGMENTS = 3


def decode_unverified(raw: str) -> dict[str, Any]:
    """Decode the payload segment of a compact JWS without checking it."""
    segments = raw.split(".") if raw else []
    if len(segments) != JWS_SEGMENTS:
        raise MalformedIdToken(
            f"expected {JWS_SEGMENTS} segments, got {len(segments)}"
        )
    try:
        payload = json.loads(base64url_decode(segments[1].encode("ascii")))
    except (ValueError, UnicodeError) as exc:
        raise MalformedIdToken("payload is not base64url JSON") from exc
    if not isinstance(payload, dict):
        raise MalformedIdToken("payload is not a JSON object")
    return payload


class IdTokenVerifier:
    """Verifies RS256-signed ID tokens issued by the configured provider."""

    def __init__(
        self,
        jwks: JWKSResponse,
        audience: str,
        issuer: str,
        leeway: int = 0,
    ) -> None:
        self._jwks = jwks
        self._audience = audience
        self._issuer = issuer
        self._leeway = leeway

    def verify(self, raw: str) -> dict[str, Any]:
        """Check signature, audience, issuer and lifetime; return the claims."""
        if not self._issuer:
            raise InvalidIdToken("no issuer configured")
        try:
            header = jwt.get_unverified_header(raw)
        except jwt.PyJWTError as exc:
            raise MalformedIdToken("unreadable JWS header") from exc

        entry = self._jwks.find(header.get("kid"))
        if entry is None:
            raise UnknownSigningKey(header.get("kid"))

        try:
            key = jwt.PyJWK.from_dict(entry.model_dump(exclude_none=True))
            return jwt.decode(
                raw,
                key.key,
                algorithms=ID_TOKEN_ALGORITHMS,
                audience=self._audience,
                issuer=self._issuer,
                leeway=self._leeway,
                options={"require": ["exp", "iat"]},
            )
        except jwt.PyJWTError as exc:
            raise InvalidIdToken(str(exc)) from exc
