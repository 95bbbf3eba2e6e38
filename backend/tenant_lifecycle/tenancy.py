from __future__ import annotations

import uuid
from contextlib import contextmanager
from typing import Iterator

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from tenant_lifecycle.deps import get_resolver
from tenant_lifecycle.services.resolver import (
    Resolved,
    TenantNotFound,
    TenantNotReady,
    TenantResolver,
)
from tenant_lifecycle.services.tenant_cache import ResolvedTenantContext


class TenantAccessor:
    """The current request's tenant. Resolved once and read-only afterwards."""

    def __init__(self, context: ResolvedTenantContext) -> None:
        self._context = context

    @property
    def tenant_id(self) -> uuid.UUID:
        return self._context.tenant_id

    @property
    def slug(self) -> str:
        return self._context.slug

    @property
    def plan(self) -> str | None:
        return self._context.plan_code

    @property
    def db_name(self) -> str:
        return self._context.db_name

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self._context.session()
        try:
            yield session
        finally:
            session.close()


def _tenant_error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"ok": False, "error": {"code": code, "message": message}},
    )


def get_tenant_accessor(
    request: Request,
    resolver: TenantResolver = Depends(get_resolver),
) -> TenantAccessor:
    existing = getattr(request.state, "tenant_accessor", None)
    if existing is not None:
        return existing

    result = resolver.resolve_request(request)
    if isinstance(result, Resolved):
        accessor = TenantAccessor(result.context)
        request.state.tenant_accessor = accessor
        return accessor
    if isinstance(result, TenantNotFound):
        raise _tenant_error(404, "TENANT_NOT_FOUND", f"Tenant '{result.slug}' not found.")
    if isinstance(result, TenantNotReady):
        raise _tenant_error(403, "TENANT_NOT_READY", f"Tenant '{result.slug}' is {result.status.value}.")
    raise _tenant_error(400, "TENANT_REQUIRED", "Tenant slug header or token claim is required.")
