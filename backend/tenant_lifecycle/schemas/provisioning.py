from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tenant_lifecycle.models import ProvisioningStep

SLUG_PATTERN = r"^[a-z0-9](?:[a-z0-9-]{1,48}[a-z0-9])$"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProvisionInitRequest(BaseModel):
    slug: str = Field(pattern=SLUG_PATTERN)
    name: str = Field(min_length=1, max_length=255)
    plan: str = Field(min_length=1, max_length=50)


class ProvisionInitResponse(CamelModel):
    provisioning_id: str
    confirm_token: str
    next: str
    message: str


class ProvisionConfirmResponse(CamelModel):
    provisioning_id: str
    status: str
    message: str
    status_endpoint: str


class ProvisioningStepResponse(CamelModel):
    step: str
    status: str
    started_at: str | None
    completed_at: str | None
    log: str | None
    error_message: str | None

    @classmethod
    def from_row(cls, row: ProvisioningStep) -> ProvisioningStepResponse:
        return cls(
            step=row.step.value,
            status=row.status.value,
            started_at=row.started_at.isoformat() if row.started_at else None,
            completed_at=row.completed_at.isoformat() if row.completed_at else None,
            log=row.message,
            error_message=row.error,
        )


class ProvisioningStatusResponse(CamelModel):
    provisioning_id: str
    status: str
    tenant_slug: str | None = None
    db_name: str | None = None
    last_error: str | None = None
    steps: list[ProvisioningStepResponse]
