from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from tenant_lifecycle.db import get_db
from tenant_lifecycle.deps import get_orchestrator, get_provisioner, get_token_issuer
from tenant_lifecycle.models import TenantStatus
from tenant_lifecycle.schemas.provisioning import (
    ProvisionConfirmResponse,
    ProvisionInitRequest,
    ProvisionInitResponse,
    ProvisioningStatusResponse,
    ProvisioningStepResponse,
)
from tenant_lifecycle.services import registry
from tenant_lifecycle.services.confirm_tokens import ConfirmationTokenIssuer
from tenant_lifecycle.services.orchestrator import ProvisioningOrchestrator, QueueFull
from tenant_lifecycle.services.provisioner import DatabaseProvisioner, ProvisioningError

logger = structlog.get_logger(__name__)

router = APIRouter()


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"ok": False, "error": {"code": code, "message": message}},
    )


def _status_endpoint(tenant_id: uuid.UUID) -> str:
    return f"/provision/tenants/{tenant_id}/status"


def _bearer_token(request: Request) -> str | None:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


@router.post("/tenants/init")
def init_provisioning(
    payload: ProvisionInitRequest,
    db: Session = Depends(get_db),
    issuer: ConfirmationTokenIssuer = Depends(get_token_issuer),
    provisioner: DatabaseProvisioner = Depends(get_provisioner),
) -> dict:
    plan = registry.get_plan_by_code(db, payload.plan)
    if not plan:
        raise _error(400, "VALIDATION_ERROR", f"Unknown plan '{payload.plan}'.")
    try:
        db_name = provisioner.database_name(payload.slug)
    except ProvisioningError as exc:
        raise _error(400, "VALIDATION_ERROR", exc.message) from exc

    try:
        tenant = registry.create_tenant(db, slug=payload.slug, name=payload.name.strip(), db_name=db_name, plan=plan)
    except registry.SlugConflict as exc:
        raise _error(409, exc.code, str(exc)) from exc

    token = issuer.issue(tenant.id, tenant.slug)
    response = ProvisionInitResponse(
        provisioning_id=str(tenant.id),
        confirm_token=token,
        next="/provision/tenants/confirm",
        message="Confirm with the returned token as a bearer token to start provisioning.",
    )
    return {"ok": True, "data": response.model_dump(by_alias=True)}


@router.post("/tenants/confirm")
def confirm_provisioning(
    request: Request,
    db: Session = Depends(get_db),
    issuer: ConfirmationTokenIssuer = Depends(get_token_issuer),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
) -> dict:
    token = _bearer_token(request)
    claims = issuer.validate(token) if token else None
    if claims is None:
        raise _error(401, "UNAUTHORIZED", "Invalid or expired confirmation token.")

    tenant = registry.get_tenant(db, claims.provisioning_id)
    if not tenant:
        raise _error(404, "TENANT_NOT_FOUND", "Provisioning request not found.")
    if tenant.slug != claims.slug:
        logger.warning("confirm_token_slug_mismatch", tenant_id=str(tenant.id))
        raise _error(401, "UNAUTHORIZED", "Invalid or expired confirmation token.")

    try:
        registry.confirm_tenant(db, tenant.id)
    except registry.TenantNotFoundError as exc:
        raise _error(404, exc.code, str(exc)) from exc
    except registry.AlreadyConfirmed as exc:
        raise _error(409, exc.code, str(exc)) from exc

    try:
        orchestrator.enqueue(tenant.id)
    except QueueFull as exc:
        registry.revoke_confirmation(db, tenant.id)
        logger.warning("provisioning_rejected_queue_full", tenant_id=str(tenant.id))
        raise _error(503, exc.code, "Provisioning is busy. Retry the confirmation shortly.") from exc
    registry.mark_init_complete(db, tenant.id)

    response = ProvisionConfirmResponse(
        provisioning_id=str(tenant.id),
        status="QUEUED",
        message="Provisioning has been queued.",
        status_endpoint=_status_endpoint(tenant.id),
    )
    return {"ok": True, "data": response.model_dump(by_alias=True)}


@router.get("/tenants/{provisioning_id}/status")
def provisioning_status(provisioning_id: uuid.UUID, db: Session = Depends(get_db)) -> dict:
    tenant = registry.get_tenant(db, provisioning_id)
    if not tenant:
        raise _error(404, "TENANT_NOT_FOUND", "Provisioning request not found.")

    ready = tenant.status == TenantStatus.READY
    response = ProvisioningStatusResponse(
        provisioning_id=str(tenant.id),
        status=tenant.status.value,
        tenant_slug=tenant.slug if ready else None,
        db_name=tenant.db_name if ready else None,
        last_error=tenant.last_error,
        steps=[ProvisioningStepResponse.from_row(row) for row in registry.list_steps(db, tenant.id)],
    )
    return {"ok": True, "data": response.model_dump(by_alias=True)}
