from __future__ import annotations

import time
import uuid
from dataclasses import dataclass

import structlog
from authlib.jose import JsonWebToken
from authlib.jose.errors import JoseError

logger = structlog.get_logger(__name__)

CONFIRM_PURPOSE = "confirm_provisioning"
CONFIRM_ALGORITHM = "HS256"

_jwt = JsonWebToken([CONFIRM_ALGORITHM])


@dataclass(frozen=True)
class ConfirmationClaims:
    provisioning_id: uuid.UUID
    slug: str


class ConfirmationTokenIssuer:
    """Issues and validates short-lived tokens binding a provisioning request to its tenant.

    Tokens are stateless; there is no revocation list, so the TTL and the fixed
    purpose claim are the only things standing between a leaked token and a
    second confirmation attempt.
    """

    def __init__(self, secret_key: str, *, issuer: str, audience: str, ttl_seconds: int = 60 * 15) -> None:
        self._key = secret_key.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.ttl_seconds = ttl_seconds

    def issue(self, provisioning_id: uuid.UUID, slug: str, *, now: int | None = None) -> str:
        issued_at = int(now if now is not None else time.time())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": str(provisioning_id),
            "slug": slug,
            "purpose": CONFIRM_PURPOSE,
            "jti": uuid.uuid4().hex,
            "iat": issued_at,
            "exp": issued_at + self.ttl_seconds,
        }
        token = _jwt.encode({"alg": CONFIRM_ALGORITHM}, payload, self._key)
        return token.decode("utf-8")

    def validate(self, token: str, *, now: int | None = None) -> ConfirmationClaims | None:
        claims_options = {
            "iss": {"essential": True, "value": self.issuer},
            "aud": {"essential": True, "value": self.audience},
            "sub": {"essential": True},
            "exp": {"essential": True},
        }
        try:
            claims = _jwt.decode(token, self._key, claims_options=claims_options)
            claims.validate(now=int(now if now is not None else time.time()), leeway=0)
        except (JoseError, ValueError, TypeError) as exc:
            logger.info("confirm_token_rejected", error=type(exc).__name__)
            return None

        if claims.get("purpose") != CONFIRM_PURPOSE:
            logger.info("confirm_token_rejected", error="wrong_purpose")
            return None

        slug = claims.get("slug")
        try:
            provisioning_id = uuid.UUID(str(claims["sub"]))
        except ValueError:
            logger.info("confirm_token_rejected", error="bad_subject")
            return None
        if not isinstance(slug, str) or not slug:
            logger.info("confirm_token_rejected", error="bad_slug")
            return None
        return ConfirmationClaims(provisioning_id=provisioning_id, slug=slug)
