"""Persistence operations for tenants, plans and the provisioning step log.

Functions take an open ``Session`` and commit their own unit of work. Status
changes go through the models' transition checks; conditional updates guard the
two places where concurrent writers race: confirmation and the workflow lease.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tenant_lifecycle.models import (
    DEFAULT_PLANS,
    Plan,
    ProvisioningStep,
    ProvisioningStepName,
    StepStatus,
    Tenant,
    TenantStatus,
)

logger = structlog.get_logger(__name__)

WORKFLOW_ACTIVE_STATUSES = (TenantStatus.PENDING, TenantStatus.SEEDING)


class RegistryError(RuntimeError):
    code = "REGISTRY_ERROR"


class SlugConflict(RegistryError):
    code = "SLUG_CONFLICT"


class TenantNotFoundError(RegistryError):
    code = "TENANT_NOT_FOUND"


class AlreadyConfirmed(RegistryError):
    code = "ALREADY_CONFIRMED"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_default_plans(db: Session) -> int:
    existing = set(db.execute(select(Plan.code)).scalars())
    created = 0
    for plan_id, code, name in DEFAULT_PLANS:
        if code in existing:
            continue
        db.add(Plan(id=plan_id, code=code, name=name))
        created += 1
    if created:
        db.commit()
    return created


def get_plan_by_code(db: Session, code: str) -> Plan | None:
    stmt = select(Plan).where(func.lower(Plan.code) == code.strip().lower())
    return db.execute(stmt).scalar_one_or_none()


def get_tenant(db: Session, tenant_id: uuid.UUID) -> Tenant | None:
    return db.get(Tenant, tenant_id)


def get_tenant_by_slug(db: Session, slug: str) -> Tenant | None:
    return db.execute(select(Tenant).where(Tenant.slug == slug)).scalar_one_or_none()


def list_tenants(db: Session, status: TenantStatus | None = None) -> list[Tenant]:
    stmt = select(Tenant).order_by(Tenant.created_at, Tenant.slug)
    if status:
        stmt = stmt.where(Tenant.status == status)
    return list(db.execute(stmt).scalars())


def create_tenant(db: Session, *, slug: str, name: str, db_name: str, plan: Plan) -> Tenant:
    if get_tenant_by_slug(db, slug):
        raise SlugConflict(f"Tenant slug '{slug}' is already taken.")

    now = utcnow()
    tenant = Tenant(
        slug=slug,
        name=name,
        db_name=db_name,
        status=TenantStatus.PENDING,
        plan_id=plan.id,
    )
    db.add(tenant)
    try:
        db.flush()
        db.add(
            ProvisioningStep(
                tenant_id=tenant.id,
                sequence=1,
                step=ProvisioningStepName.INIT,
                status=StepStatus.PENDING,
                started_at=now,
                message="Waiting for confirmation.",
            )
        )
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise SlugConflict(f"Tenant slug '{slug}' is already taken.") from exc

    logger.info("tenant_registered", tenant_id=str(tenant.id), slug=slug, plan=plan.code)
    return tenant


def confirm_tenant(db: Session, tenant_id: uuid.UUID) -> Tenant:
    """Mark a pending tenant confirmed. Exactly one concurrent caller wins."""
    stmt = (
        update(Tenant)
        .where(
            Tenant.id == tenant_id,
            Tenant.confirmed_at.is_(None),
            Tenant.status == TenantStatus.PENDING,
        )
        .values(confirmed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    if result.rowcount != 1:
        if not get_tenant(db, tenant_id):
            raise TenantNotFoundError("Tenant not found.")
        raise AlreadyConfirmed("Provisioning was already confirmed.")

    tenant = get_tenant(db, tenant_id)
    db.refresh(tenant)
    logger.info("tenant_confirmed", tenant_id=str(tenant_id))
    return tenant


def revoke_confirmation(db: Session, tenant_id: uuid.UUID) -> None:
    """Undo a confirmation whose job could not be queued."""
    db.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id, Tenant.status == TenantStatus.PENDING)
        .values(confirmed_at=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    logger.warning("tenant_confirmation_revoked", tenant_id=str(tenant_id))


def mark_init_complete(db: Session, tenant_id: uuid.UUID) -> None:
    stmt = select(ProvisioningStep).where(
        ProvisioningStep.tenant_id == tenant_id,
        ProvisioningStep.step == ProvisioningStepName.INIT,
        ProvisioningStep.status == StepStatus.PENDING,
    )
    for row in db.execute(stmt).scalars():
        finish_step(db, row, StepStatus.SUCCESS, message="Provisioning confirmed and queued.", commit=False)
    db.commit()


def list_steps(db: Session, tenant_id: uuid.UUID) -> list[ProvisioningStep]:
    stmt = (
        select(ProvisioningStep)
        .where(ProvisioningStep.tenant_id == tenant_id)
        .order_by(ProvisioningStep.sequence)
    )
    return list(db.execute(stmt).scalars())


def latest_step_statuses(db: Session, tenant_id: uuid.UUID) -> dict[ProvisioningStepName, StepStatus]:
    latest: dict[ProvisioningStepName, StepStatus] = {}
    for row in list_steps(db, tenant_id):
        latest[row.step] = row.status
    return latest


def append_step(
    db: Session,
    tenant_id: uuid.UUID,
    step: ProvisioningStepName,
    status: StepStatus = StepStatus.RUNNING,
    *,
    message: str | None = None,
    commit: bool = True,
) -> ProvisioningStep:
    next_sequence = db.execute(
        select(func.coalesce(func.max(ProvisioningStep.sequence), 0)).where(
            ProvisioningStep.tenant_id == tenant_id
        )
    ).scalar_one()
    row = ProvisioningStep(
        tenant_id=tenant_id,
        sequence=next_sequence + 1,
        step=step,
        status=status,
        started_at=utcnow(),
        message=message,
    )
    db.add(row)
    if commit:
        db.commit()
    else:
        db.flush()
    return row


def finish_step(
    db: Session,
    row: ProvisioningStep,
    status: StepStatus,
    *,
    message: str | None = None,
    error: str | None = None,
    commit: bool = True,
) -> ProvisioningStep:
    row.transition_to(status)
    row.completed_at = utcnow()
    if message is not None:
        row.message = message
    if error is not None:
        row.error = error
    db.add(row)
    if commit:
        db.commit()
    return row


def close_orphaned_steps(db: Session, tenant_id: uuid.UUID, error: str, *, commit: bool = True) -> int:
    """Fail RUNNING rows left behind by a worker that died mid-step.

    Only call while holding the tenant's lease: no other worker can own them then.
    """
    stmt = select(ProvisioningStep).where(
        ProvisioningStep.tenant_id == tenant_id,
        ProvisioningStep.status == StepStatus.RUNNING,
    )
    rows = list(db.execute(stmt).scalars())
    for row in rows:
        finish_step(db, row, StepStatus.FAILED, error=error, commit=False)
    if commit:
        db.commit()
    if rows:
        logger.warning("provisioning_orphaned_steps_closed", tenant_id=str(tenant_id), count=len(rows))
    return len(rows)


def set_status(
    db: Session,
    tenant: Tenant,
    target: TenantStatus,
    *,
    last_error: str | None = None,
    commit: bool = True,
) -> Tenant:
    previous = tenant.status
    tenant.transition_to(target)
    if target == TenantStatus.FAILED:
        tenant.last_error = last_error
    elif target in (TenantStatus.PENDING, TenantStatus.READY):
        tenant.last_error = None
    db.add(tenant)
    if commit:
        db.commit()
    logger.info(
        "tenant_status_changed",
        tenant_id=str(tenant.id),
        slug=tenant.slug,
        from_status=previous.value,
        to_status=target.value,
    )
    return tenant


def set_encrypted_connection(db: Session, tenant: Tenant, ciphertext: str) -> None:
    tenant.encrypted_connection = ciphertext
    db.add(tenant)
    db.commit()


def claim_lease(db: Session, tenant_id: uuid.UUID, worker_id: str, lease_seconds: int) -> bool:
    now = utcnow()
    stmt = (
        update(Tenant)
        .where(
            Tenant.id == tenant_id,
            Tenant.status.in_(WORKFLOW_ACTIVE_STATUSES),
            or_(
                Tenant.worker_id.is_(None),
                Tenant.worker_id == worker_id,
                Tenant.lease_expires_at.is_(None),
                Tenant.lease_expires_at < now,
            ),
        )
        .values(worker_id=worker_id, lease_expires_at=now + timedelta(seconds=lease_seconds))
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    return result.rowcount == 1


def renew_lease(db: Session, tenant_id: uuid.UUID, worker_id: str, lease_seconds: int) -> bool:
    stmt = (
        update(Tenant)
        .where(Tenant.id == tenant_id, Tenant.worker_id == worker_id)
        .values(lease_expires_at=utcnow() + timedelta(seconds=lease_seconds))
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    return result.rowcount == 1


def release_lease(db: Session, tenant_id: uuid.UUID, worker_id: str) -> None:
    db.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id, Tenant.worker_id == worker_id)
        .values(worker_id=None, lease_expires_at=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def foreign_lease_remaining(db: Session, tenant_id: uuid.UUID, worker_id: str) -> float | None:
    """Seconds until another worker's lease on an unfinished workflow lapses.

    None when there is nothing to wait for: the tenant is gone or finished, or
    no other worker holds it.
    """
    tenant = get_tenant(db, tenant_id)
    if not tenant or tenant.status not in WORKFLOW_ACTIVE_STATUSES:
        return None
    if tenant.worker_id is None or tenant.worker_id == worker_id:
        return None
    if tenant.lease_expires_at is None:
        return 0.0
    expires_at = tenant.lease_expires_at
    if expires_at.tzinfo is None:
        # SQLite hands back naive values; they are stored as UTC.
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return max((expires_at - utcnow()).total_seconds(), 0.0)


def tenants_needing_recovery(db: Session) -> list[uuid.UUID]:
    stmt = (
        select(Tenant.id)
        .where(Tenant.confirmed_at.is_not(None), Tenant.status.in_(WORKFLOW_ACTIVE_STATUSES))
        .order_by(Tenant.confirmed_at)
    )
    return list(db.execute(stmt).scalars())

