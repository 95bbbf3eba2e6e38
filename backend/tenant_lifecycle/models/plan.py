from __future__ import annotations

import uuid

from sqlalchemy import String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tenant_lifecycle.models.base import Base


class Plan(Base):
    __tablename__ = "plans"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    tenants = relationship("Tenant", back_populates="plan")


DEFAULT_PLANS: tuple[tuple[uuid.UUID, str, str], ...] = (
    (uuid.UUID("11111111-0000-0000-0000-000000000001"), "Basic", "Basic plan"),
    (uuid.UUID("22222222-0000-0000-0000-000000000002"), "Premium", "Premium plan"),
    (uuid.UUID("33333333-0000-0000-0000-000000000003"), "Enterprise", "Enterprise plan"),
)
