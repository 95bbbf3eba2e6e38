from __future__ import annotations

import uuid

from fastapi import Depends, HTTPException, Request
from itsdangerous import BadSignature, SignatureExpired
from sqlalchemy import select
from sqlalchemy.orm import Session

from tenant_lifecycle.db import get_db
from tenant_lifecycle.models import AdminUser
from tenant_lifecycle.security import parse_session_token
from tenant_lifecycle.services.cipher import SecretCipher
from tenant_lifecycle.services.confirm_tokens import ConfirmationTokenIssuer
from tenant_lifecycle.services.orchestrator import ProvisioningOrchestrator
from tenant_lifecycle.services.provisioner import DatabaseProvisioner
from tenant_lifecycle.services.resolver import TenantResolver
from tenant_lifecycle.services.tenant_cache import TenantContextCache
from tenant_lifecycle.settings import settings


ADMIN_SESSION_COOKIE = "admin_session"


def _unauthenticated(message: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"ok": False, "error": {"code": "UNAUTHENTICATED", "message": message}},
    )


def get_current_admin(
    request: Request,
    db: Session = Depends(get_db),
) -> AdminUser:
    token = request.cookies.get(ADMIN_SESSION_COOKIE)
    if not token:
        raise _unauthenticated("Login required.")
    try:
        payload = parse_session_token(token, settings.ADMIN_SESSION_MAX_AGE_SECONDS)
    except (BadSignature, SignatureExpired):
        raise _unauthenticated("Invalid session.")

    try:
        admin_user_uuid = uuid.UUID(str(payload.get("admin_user_id")))
    except ValueError:
        raise _unauthenticated("Invalid session.")

    admin = db.execute(select(AdminUser).where(AdminUser.id == admin_user_uuid)).scalar_one_or_none()
    if not admin:
        raise _unauthenticated("Invalid session.")
    return admin


def require_superadmin(
    admin_user: AdminUser = Depends(get_current_admin),
) -> AdminUser:
    if not admin_user.is_superadmin:
        raise HTTPException(
            status_code=403,
            detail={"ok": False, "error": {"code": "FORBIDDEN", "message": "Superadmin required."}},
        )
    return admin_user


def get_orchestrator(request: Request) -> ProvisioningOrchestrator:
    return request.app.state.orchestrator


def get_resolver(request: Request) -> TenantResolver:
    return request.app.state.resolver


def get_tenant_cache(request: Request) -> TenantContextCache:
    return request.app.state.tenant_cache


def get_token_issuer(request: Request) -> ConfirmationTokenIssuer:
    return request.app.state.token_issuer


def get_cipher(request: Request) -> SecretCipher:
    return request.app.state.cipher


def get_provisioner(request: Request) -> DatabaseProvisioner:
    return request.app.state.provisioner
