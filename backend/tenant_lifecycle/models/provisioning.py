from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tenant_lifecycle.models.base import Base
from tenant_lifecycle.models.enums import ProvisioningStepName, StepStatus
from tenant_lifecycle.models.state_machine import ensure_step_transition


class ProvisioningStep(Base):
    __tablename__ = "provisioning_steps"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
    )
    # Monotonic per tenant; gives the log a stable order independent of clock resolution.
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    step: Mapped[ProvisioningStepName] = mapped_column(
        Enum(ProvisioningStepName, name="provisioning_step_name"),
        nullable=False,
    )
    status: Mapped[StepStatus] = mapped_column(Enum(StepStatus, name="provisioning_step_status"), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    tenant = relationship("Tenant", back_populates="provisioning_steps")

    __table_args__ = (
        Index("uq_provisioning_steps_tenant_sequence", "tenant_id", "sequence", unique=True),
        Index("ix_provisioning_steps_tenant_step", "tenant_id", "step"),
    )

    def transition_to(self, target: StepStatus) -> None:
        ensure_step_transition(self.status, target)
        self.status = target
