from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from tenant_lifecycle.models import AdminUser, Tenant


class AdminLoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class AdminUserResponse(BaseModel):
    id: str
    email: str
    is_superadmin: bool
    last_login_at: str | None = None

    @classmethod
    def from_model(cls, admin: AdminUser) -> AdminUserResponse:
        return cls(
            id=str(admin.id),
            email=admin.email,
            is_superadmin=admin.is_superadmin,
            last_login_at=admin.last_login_at.isoformat() if admin.last_login_at else None,
        )


class TenantResponse(BaseModel):
    id: str
    name: str
    slug: str
    status: str
    plan: str | None
    db_name: str
    confirmed_at: str | None
    last_error: str | None
    # The connection itself never leaves the registry.
    has_connection: bool

    @classmethod
    def from_model(cls, tenant: Tenant) -> TenantResponse:
        return cls(
            id=str(tenant.id),
            name=tenant.name,
            slug=tenant.slug,
            status=tenant.status.value,
            plan=tenant.plan.code if tenant.plan else None,
            db_name=tenant.db_name,
            confirmed_at=tenant.confirmed_at.isoformat() if tenant.confirmed_at else None,
            last_error=tenant.last_error,
            has_connection=bool(tenant.encrypted_connection),
        )
