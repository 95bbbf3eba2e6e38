from __future__ import annotations

import time
import uuid
from typing import Any

import structlog
from authlib.jose import JsonWebToken
from authlib.jose.errors import JoseError
from itsdangerous import URLSafeTimedSerializer
from passlib.context import CryptContext

from tenant_lifecycle.settings import settings

logger = structlog.get_logger(__name__)

_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
_access_jwt = JsonWebToken(["HS256"])

TENANT_SLUG_CLAIM = "tenant_slug"
ACCESS_CLAIMS_OPTIONS = {"exp": {"essential": True}}


def hash_password(password: str) -> str:
    return _pwd_context.hash(password)


def verify_password(password: str, hashed_password: str) -> bool:
    return _pwd_context.verify(password, hashed_password)


def get_serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(settings.SECRET_KEY, salt="admin-session")


def create_session_token(admin_user_id: uuid.UUID) -> str:
    serializer = get_serializer()
    return serializer.dumps({"admin_user_id": str(admin_user_id)})


def parse_session_token(token: str, max_age_seconds: int) -> dict[str, Any]:
    serializer = get_serializer()
    return serializer.loads(token, max_age=max_age_seconds)


def create_access_token(
    claims: dict[str, Any],
    secret_key: str | None = None,
    *,
    ttl_seconds: int = 60 * 60,
) -> str:
    key = (secret_key or settings.SECRET_KEY).encode("utf-8")
    issued_at = int(time.time())
    payload = {"iat": issued_at, "exp": issued_at + ttl_seconds, **claims}
    return _access_jwt.encode({"alg": "HS256"}, payload, key).decode("utf-8")


def tenant_slug_from_bearer(authorization: str | None, secret_key: str | None = None) -> str | None:
    """Return the tenant slug claim of a verified, unexpired bearer token, or None.

    Tokens without an ``exp`` claim are refused.
    """
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    key = (secret_key or settings.SECRET_KEY).encode("utf-8")
    try:
        claims = _access_jwt.decode(token.strip(), key, claims_options=ACCESS_CLAIMS_OPTIONS)
        claims.validate()
    except (JoseError, ValueError, TypeError) as exc:
        logger.info("access_token_rejected", error=type(exc).__name__)
        return None
    slug = claims.get(TENANT_SLUG_CLAIM)
    if not isinstance(slug, str) or not slug.strip():
        return None
    return slug.strip().lower()
