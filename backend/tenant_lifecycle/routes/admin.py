from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from tenant_lifecycle.db import get_db
from tenant_lifecycle.deps import (
    ADMIN_SESSION_COOKIE,
    get_cipher,
    get_current_admin,
    get_orchestrator,
    get_provisioner,
    get_tenant_cache,
    require_superadmin,
)
from tenant_lifecycle.models import AdminUser, InvalidTransition, Tenant, TenantStatus
from tenant_lifecycle.schemas.admin import AdminLoginRequest, AdminUserResponse, TenantResponse
from tenant_lifecycle.schemas.provisioning import ProvisioningStepResponse
from tenant_lifecycle.security import create_session_token, verify_password
from tenant_lifecycle.services import registry
from tenant_lifecycle.services.cipher import SecretCipher
from tenant_lifecycle.services.orchestrator import ProvisioningOrchestrator, QueueFull
from tenant_lifecycle.services.provisioner import DatabaseProvisioner
from tenant_lifecycle.services.tenant_cache import TenantContextCache
from tenant_lifecycle.settings import settings

logger = structlog.get_logger(__name__)

router = APIRouter()


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"ok": False, "error": {"code": code, "message": message}},
    )


def _tenant_response(tenant: Tenant) -> dict:
    return TenantResponse.from_model(tenant).model_dump(mode="json")


def _load_tenant(db: Session, tenant_id: uuid.UUID) -> Tenant:
    tenant = registry.get_tenant(db, tenant_id)
    if not tenant:
        raise _error(404, "TENANT_NOT_FOUND", "Tenant not found.")
    return tenant


@router.post("/login")
def login(payload: AdminLoginRequest, db: Session = Depends(get_db)) -> JSONResponse:
    admin = db.execute(select(AdminUser).where(AdminUser.email == payload.email)).scalar_one_or_none()
    if not admin or not verify_password(payload.password, admin.password_hash):
        logger.info("admin_login_failed")
        raise _error(401, "INVALID_CREDENTIALS", "Invalid login.")

    admin.last_login_at = registry.utcnow()
    db.commit()

    response = JSONResponse({"ok": True, "data": {"admin_user": AdminUserResponse.from_model(admin).model_dump()}})
    response.set_cookie(
        key=ADMIN_SESSION_COOKIE,
        value=create_session_token(admin.id),
        httponly=True,
        samesite="lax",
        max_age=settings.ADMIN_SESSION_MAX_AGE_SECONDS,
        secure=settings.ADMIN_SESSION_COOKIE_SECURE,
    )
    logger.info("admin_login", admin_user_id=str(admin.id))
    return response


@router.get("/me")
def me(current_admin: AdminUser = Depends(get_current_admin)) -> dict:
    return {"ok": True, "data": {"admin_user": AdminUserResponse.from_model(current_admin).model_dump()}}


@router.get("/tenants")
def list_tenants(
    status: str | None = None,
    db: Session = Depends(get_db),
    _admin: AdminUser = Depends(require_superadmin),
) -> dict:
    status_filter = None
    if status:
        try:
            status_filter = TenantStatus(status.strip().upper())
        except ValueError as exc:
            raise _error(400, "INVALID_STATUS", "Invalid tenant status.") from exc
    tenants = registry.list_tenants(db, status_filter)
    return {"ok": True, "data": {"tenants": [_tenant_response(tenant) for tenant in tenants]}}


@router.get("/tenants/{tenant_id}")
def get_tenant(
    tenant_id: uuid.UUID,
    db: Session = Depends(get_db),
    _admin: AdminUser = Depends(require_superadmin),
) -> dict:
    tenant = _load_tenant(db, tenant_id)
    steps = [
        ProvisioningStepResponse.from_row(row).model_dump(by_alias=True)
        for row in registry.list_steps(db, tenant.id)
    ]
    return {"ok": True, "data": {"tenant": _tenant_response(tenant), "steps": steps}}


@router.post("/tenants/{tenant_id}/requeue")
def requeue_tenant(
    tenant_id: uuid.UUID,
    db: Session = Depends(get_db),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
    admin: AdminUser = Depends(require_superadmin),
) -> dict:
    _load_tenant(db, tenant_id)
    try:
        queued = orchestrator.requeue_failed(db, tenant_id)
    except InvalidTransition as exc:
        raise _error(409, "INVALID_TRANSITION", str(exc)) from exc
    except QueueFull as exc:
        # The tenant is PENDING and confirmed; startup recovery picks it up.
        raise _error(503, exc.code, "Provisioning is busy. The tenant will be retried later.") from exc
    logger.info("admin_tenant_requeued", tenant_id=str(tenant_id), admin_user_id=str(admin.id))
    tenant = _load_tenant(db, tenant_id)
    db.refresh(tenant)
    return {"ok": True, "data": {"tenant": _tenant_response(tenant), "queued": queued}}


def _change_status(
    db: Session,
    cache: TenantContextCache,
    tenant_id: uuid.UUID,
    target: TenantStatus,
    admin: AdminUser,
) -> dict:
    tenant = _load_tenant(db, tenant_id)
    try:
        registry.set_status(db, tenant, target)
    except InvalidTransition as exc:
        db.rollback()
        raise _error(409, "INVALID_TRANSITION", str(exc)) from exc
    cache.invalidate(tenant.id)
    logger.info(
        "admin_tenant_status_changed",
        tenant_id=str(tenant.id),
        status=target.value,
        admin_user_id=str(admin.id),
    )
    return {"ok": True, "data": {"tenant": _tenant_response(tenant)}}


@router.post("/tenants/{tenant_id}/suspend")
def suspend_tenant(
    tenant_id: uuid.UUID,
    db: Session = Depends(get_db),
    cache: TenantContextCache = Depends(get_tenant_cache),
    admin: AdminUser = Depends(require_superadmin),
) -> dict:
    return _change_status(db, cache, tenant_id, TenantStatus.SUSPENDED, admin)


@router.post("/tenants/{tenant_id}/activate")
def activate_tenant(
    tenant_id: uuid.UUID,
    db: Session = Depends(get_db),
    cache: TenantContextCache = Depends(get_tenant_cache),
    admin: AdminUser = Depends(require_superadmin),
) -> dict:
    return _change_status(db, cache, tenant_id, TenantStatus.READY, admin)


@router.post("/tenants/{tenant_id}/rotate-connection")
def rotate_connection(
    tenant_id: uuid.UUID,
    db: Session = Depends(get_db),
    cache: TenantContextCache = Depends(get_tenant_cache),
    provisioner: DatabaseProvisioner = Depends(get_provisioner),
    cipher: SecretCipher = Depends(get_cipher),
    admin: AdminUser = Depends(require_superadmin),
) -> dict:
    tenant = _load_tenant(db, tenant_id)
    if tenant.status not in (TenantStatus.READY, TenantStatus.SUSPENDED):
        raise _error(409, "INVALID_STATE", f"Tenant is {tenant.status.value}; nothing to rotate.")

    # Rebuilt from the current template so credential changes take effect too.
    connection_url = provisioner.connection_url(tenant.db_name)
    registry.set_encrypted_connection(db, tenant, cipher.encrypt(connection_url))
    cache.invalidate(tenant.id)
    logger.info("admin_tenant_connection_rotated", tenant_id=str(tenant.id), admin_user_id=str(admin.id))
    return {"ok": True, "data": {"tenant": _tenant_response(tenant)}}
