from __future__ import annotations

import uuid

import pytest

from conftest import make_tenant, provision, wait_for_status
from tenant_lifecycle.deps import ADMIN_SESSION_COOKIE
from tenant_lifecycle.models import AdminUser, Tenant, TenantStatus
from tenant_lifecycle.security import hash_password, verify_password
from tenant_lifecycle.services import registry

PASSWORD = "correct horse battery staple"


def _add_admin(session_factory, email: str, *, superadmin: bool = True) -> None:
    with session_factory() as db:
        db.add(AdminUser(email=email, password_hash=hash_password(PASSWORD), is_superadmin=superadmin))
        db.commit()


@pytest.fixture()
def admin_client(client, session_factory):
    _add_admin(session_factory, "ops@example.com")
    response = client.post("/admin/login", json={"email": "OPS@example.com ", "password": PASSWORD})
    assert response.status_code == 200
    return client


def test_password_hashing():
    hashed = hash_password(PASSWORD)
    assert verify_password(PASSWORD, hashed)
    assert not verify_password("wrong-password", hashed)


def test_login_sets_session_cookie(client, session_factory):
    _add_admin(session_factory, "ops@example.com")

    response = client.post("/admin/login", json={"email": "ops@example.com", "password": PASSWORD})

    assert response.status_code == 200
    assert f"{ADMIN_SESSION_COOKIE}=" in response.headers.get("set-cookie", "")
    assert response.json()["data"]["admin_user"]["is_superadmin"] is True
    me = client.get("/admin/me")
    assert me.status_code == 200
    assert me.json()["data"]["admin_user"]["email"] == "ops@example.com"
    assert me.json()["data"]["admin_user"]["last_login_at"] is not None


def test_wrong_password_is_rejected(client, session_factory):
    _add_admin(session_factory, "ops@example.com")

    response = client.post("/admin/login", json={"email": "ops@example.com", "password": "nope"})

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "INVALID_CREDENTIALS"


def test_admin_routes_require_session(client):
    response = client.get("/admin/tenants")

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHENTICATED"


def test_tampered_session_cookie_is_rejected(client):
    client.cookies.set(ADMIN_SESSION_COOKIE, "forged.cookie.value")

    assert client.get("/admin/me").status_code == 401


def test_admin_routes_require_superadmin(client, session_factory):
    _add_admin(session_factory, "viewer@example.com", superadmin=False)
    client.post("/admin/login", json={"email": "viewer@example.com", "password": PASSWORD})

    response = client.get("/admin/tenants")

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "FORBIDDEN"


def test_list_and_filter_tenants(admin_client, db_session):
    make_tenant(db_session, slug="pending-co")
    failed = make_tenant(db_session, slug="failed-co")
    registry.set_status(db_session, failed, TenantStatus.FAILED, last_error="boom")

    everyone = admin_client.get("/admin/tenants").json()["data"]["tenants"]
    assert {tenant["slug"] for tenant in everyone} == {"pending-co", "failed-co"}

    only_failed = admin_client.get("/admin/tenants", params={"status": "failed"}).json()["data"]["tenants"]
    assert [(tenant["slug"], tenant["last_error"]) for tenant in only_failed] == [("failed-co", "boom")]

    bad = admin_client.get("/admin/tenants", params={"status": "sleeping"})
    assert bad.status_code == 400
    assert bad.json()["error"]["code"] == "INVALID_STATUS"


def test_get_tenant_includes_step_history(admin_client, db_session):
    tenant = make_tenant(db_session)

    response = admin_client.get(f"/admin/tenants/{tenant.id}")

    data = response.json()["data"]
    assert data["tenant"]["slug"] == "acme"
    assert data["tenant"]["has_connection"] is False
    assert [step["step"] for step in data["steps"]] == ["INIT"]
    assert admin_client.get(f"/admin/tenants/{uuid.uuid4()}").status_code == 404


def test_suspend_and_activate_ready_tenant(admin_client):
    provisioning_id = provision(admin_client)
    assert admin_client.get("/api/tenant/me", headers={"X-Tenant-Slug": "acme"}).status_code == 200

    suspended = admin_client.post(f"/admin/tenants/{provisioning_id}/suspend")
    assert suspended.status_code == 200
    assert suspended.json()["data"]["tenant"]["status"] == "SUSPENDED"
    assert admin_client.get("/api/tenant/me", headers={"X-Tenant-Slug": "acme"}).status_code == 403

    again = admin_client.post(f"/admin/tenants/{provisioning_id}/suspend")
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "INVALID_TRANSITION"

    activated = admin_client.post(f"/admin/tenants/{provisioning_id}/activate")
    assert activated.json()["data"]["tenant"]["status"] == "READY"
    assert admin_client.get("/api/tenant/me", headers={"X-Tenant-Slug": "acme"}).status_code == 200


def test_requeue_only_accepts_failed_tenants(admin_client, db_session):
    tenant = make_tenant(db_session)

    response = admin_client.post(f"/admin/tenants/{tenant.id}/requeue")

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "INVALID_TRANSITION"


def test_requeue_failed_tenant_provisions_it(admin_client, db_session):
    tenant = make_tenant(db_session, name="Acme Corp")
    registry.confirm_tenant(db_session, tenant.id)
    registry.set_status(db_session, tenant, TenantStatus.FAILED, last_error="database server unreachable")

    response = admin_client.post(f"/admin/tenants/{tenant.id}/requeue")

    assert response.status_code == 200
    assert response.json()["data"]["queued"] is True
    data = wait_for_status(admin_client, str(tenant.id), {"READY", "FAILED"})
    assert data["status"] == "READY"
    assert data["lastError"] is None


def test_rotate_connection_re_encrypts_and_keeps_routing(admin_client, session_factory, cipher):
    provisioning_id = provision(admin_client)
    with session_factory() as db:
        before = db.get(Tenant, uuid.UUID(provisioning_id)).encrypted_connection

    response = admin_client.post(f"/admin/tenants/{provisioning_id}/rotate-connection")

    assert response.status_code == 200
    assert response.json()["data"]["tenant"]["has_connection"] is True
    with session_factory() as db:
        after = db.get(Tenant, uuid.UUID(provisioning_id)).encrypted_connection
    assert after != before
    assert cipher.decrypt(after) == cipher.decrypt(before)
    assert admin_client.get("/api/tenant/me", headers={"X-Tenant-Slug": "acme"}).status_code == 200


def test_rotate_connection_requires_provisioned_tenant(admin_client, db_session):
    tenant = make_tenant(db_session)

    response = admin_client.post(f"/admin/tenants/{tenant.id}/rotate-connection")

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "INVALID_STATE"


def test_health_endpoints(client):
    assert client.get("/healthz").json() == {"ok": True}
    ready = client.get("/readyz")
    assert ready.status_code == 200
    assert ready.json()["data"]["ready"] is True
