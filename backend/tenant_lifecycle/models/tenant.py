from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tenant_lifecycle.models.base import Base, TimestampMixin
from tenant_lifecycle.models.enums import TenantStatus
from tenant_lifecycle.models.state_machine import ensure_tenant_transition


class Tenant(Base, TimestampMixin):
    __tablename__ = "tenants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    slug: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    db_name: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[TenantStatus] = mapped_column(
        Enum(TenantStatus, name="tenant_status"),
        nullable=False,
        default=TenantStatus.PENDING,
    )
    encrypted_connection: Mapped[str | None] = mapped_column(Text, nullable=True)
    plan_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("plans.id", ondelete="SET NULL"),
        nullable=True,
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Orchestrator lease; a workflow runs only while its worker holds an unexpired lease.
    worker_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    plan = relationship("Plan", back_populates="tenants")
    provisioning_steps = relationship(
        "ProvisioningStep",
        back_populates="tenant",
        cascade="all, delete-orphan",
        order_by="ProvisioningStep.sequence",
    )

    __table_args__ = (Index("ix_tenants_status", "status"),)

    def transition_to(self, target: TenantStatus) -> None:
        ensure_tenant_transition(self.status, target)
        self.status = target
