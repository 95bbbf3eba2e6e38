from __future__ import annotations

from dataclasses import dataclass
from typing import Union

import structlog
from fastapi import Request
from sqlalchemy.orm import Session, sessionmaker

from tenant_lifecycle.models import TenantStatus
from tenant_lifecycle.security import tenant_slug_from_bearer
from tenant_lifecycle.services import registry
from tenant_lifecycle.services.cipher import DecryptionError, SecretCipher
from tenant_lifecycle.services.tenant_cache import ResolvedTenantContext, TenantContextCache

logger = structlog.get_logger(__name__)

TENANT_HEADER = "X-Tenant-Slug"
RESOLVE_ATTEMPTS = 3


@dataclass(frozen=True)
class Resolved:
    context: ResolvedTenantContext


@dataclass(frozen=True)
class TenantNotFound:
    slug: str


@dataclass(frozen=True)
class TenantNotReady:
    slug: str
    status: TenantStatus


@dataclass(frozen=True)
class TenantRequired:
    pass


ResolveResult = Union[Resolved, TenantNotFound, TenantNotReady]
RequestResolveResult = Union[Resolved, TenantNotFound, TenantNotReady, TenantRequired]


class TenantResolver:
    """Maps a tenant slug to a ready, decrypted routing context.

    Only READY tenants are cached. A tenant whose stored connection cannot be
    decrypted raises ``DecryptionError``; it is never reported as missing.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        cipher: SecretCipher,
        cache: TenantContextCache,
        *,
        secret_key: str,
    ) -> None:
        self.session_factory = session_factory
        self.cipher = cipher
        self.cache = cache
        self.secret_key = secret_key

    def resolve(self, slug: str) -> ResolveResult:
        normalized = slug.strip().lower()
        cached = self.cache.get_by_slug(normalized)
        if cached is not None:
            return Resolved(cached)

        for _ in range(RESOLVE_ATTEMPTS):
            generation = self.cache.generation()
            result = self._load(normalized)
            if not isinstance(result, ResolvedTenantContext):
                return result
            stored = self.cache.put(result, generation=generation)
            if stored is not None:
                logger.debug("tenant_resolved", tenant_id=str(stored.tenant_id), slug=stored.slug)
                return Resolved(stored)
            # Invalidated while loading: read the registry again.
            logger.debug("tenant_resolve_retry", tenant_id=str(result.tenant_id), slug=result.slug)

        logger.warning("tenant_resolve_contended", slug=normalized, attempts=RESOLVE_ATTEMPTS)
        return Resolved(self.cache.put(result))

    def _load(self, slug: str) -> ResolvedTenantContext | TenantNotFound | TenantNotReady:
        with self.session_factory() as db:
            tenant = registry.get_tenant_by_slug(db, slug)
            if not tenant:
                return TenantNotFound(slug)
            if tenant.status != TenantStatus.READY:
                return TenantNotReady(slug, tenant.status)
            if not tenant.encrypted_connection:
                logger.critical("tenant_secret_missing", tenant_id=str(tenant.id), slug=tenant.slug)
                raise DecryptionError("Ready tenant has no stored connection.")
            try:
                connection_url = self.cipher.decrypt(tenant.encrypted_connection)
            except DecryptionError:
                logger.critical("tenant_secret_invalid", tenant_id=str(tenant.id), slug=tenant.slug)
                raise
            return ResolvedTenantContext(
                tenant_id=tenant.id,
                slug=tenant.slug,
                db_name=tenant.db_name,
                connection_url=connection_url,
                plan_code=tenant.plan.code if tenant.plan else None,
                status=tenant.status,
            )

    def slug_from_request(self, request: Request) -> str | None:
        header = request.headers.get(TENANT_HEADER)
        if header and header.strip():
            return header.strip().lower()
        return tenant_slug_from_bearer(request.headers.get("Authorization"), self.secret_key)

    def resolve_request(self, request: Request) -> RequestResolveResult:
        slug = self.slug_from_request(request)
        if not slug:
            return TenantRequired()
        return self.resolve(slug)
