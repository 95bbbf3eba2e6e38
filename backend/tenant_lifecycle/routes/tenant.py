from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import func, select

from tenant_lifecycle.models.tenant_db import Module, Role, TenantSetting
from tenant_lifecycle.tenancy import TenantAccessor, get_tenant_accessor

router = APIRouter()


@router.get("/me")
def tenant_me(tenant: TenantAccessor = Depends(get_tenant_accessor)) -> dict:
    with tenant.session() as session:
        role_count = session.execute(select(func.count()).select_from(Role)).scalar_one()
        modules = list(
            session.execute(select(Module.code).where(Module.is_active.is_(True)).order_by(Module.code)).scalars()
        )
        display_name = session.execute(
            select(TenantSetting.value).where(TenantSetting.key == "display_name")
        ).scalar_one_or_none()
    return {
        "ok": True,
        "data": {
            "tenant": {
                "id": str(tenant.tenant_id),
                "slug": tenant.slug,
                "plan": tenant.plan,
                "display_name": display_name,
            },
            "roles": role_count,
            "modules": modules,
        },
    }
