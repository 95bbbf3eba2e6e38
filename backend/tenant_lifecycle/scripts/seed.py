from __future__ import annotations

import os
import uuid

from sqlalchemy import select

from tenant_lifecycle.db import SessionLocal
from tenant_lifecycle.models import AdminUser
from tenant_lifecycle.security import hash_password
from tenant_lifecycle.services.registry import ensure_default_plans


def main() -> None:
    super_email = os.environ.get("SUPERADMIN_EMAIL")
    super_password = os.environ.get("SUPERADMIN_PASSWORD")

    if not super_email or not super_password:
        raise SystemExit("SUPERADMIN_EMAIL and SUPERADMIN_PASSWORD are required.")

    with SessionLocal() as session:
        created_plans = ensure_default_plans(session)

        email = super_email.strip().lower()
        admin = session.execute(select(AdminUser).where(AdminUser.email == email)).scalar_one_or_none()
        if not admin:
            admin = AdminUser(
                id=uuid.uuid4(),
                email=email,
                password_hash=hash_password(super_password),
                is_superadmin=True,
            )
            session.add(admin)
        elif not admin.is_superadmin:
            admin.is_superadmin = True

        session.commit()

    print(f"Plans created: {created_plans}. Superadmin: {email}")


if __name__ == "__main__":
    main()
