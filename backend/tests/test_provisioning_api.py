from __future__ import annotations

import time
import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from conftest import provision, wait_for_status
from tenant_lifecycle.main import create_app
from tenant_lifecycle.models import Tenant
from tenant_lifecycle.models.tenant_db import Role, User
from tenant_lifecycle.settings import Settings


def _init(client: TestClient, slug: str = "acme", name: str = "Acme Corp", plan: str = "Premium"):
    return client.post("/provision/tenants/init", json={"slug": slug, "name": name, "plan": plan})


def _confirm(client: TestClient, token: str):
    return client.post("/provision/tenants/confirm", headers={"Authorization": f"Bearer {token}"})


def test_provisioning_flow_ends_ready(client, session_factory, cipher, tenant_dir):
    init = _init(client)
    assert init.status_code == 200
    body = init.json()
    assert body["ok"] is True
    assert body["data"]["next"] == "/provision/tenants/confirm"
    provisioning_id = body["data"]["provisioningId"]

    confirm = _confirm(client, body["data"]["confirmToken"])
    assert confirm.status_code == 200
    assert confirm.json()["data"]["status"] == "QUEUED"
    assert confirm.json()["data"]["statusEndpoint"] == f"/provision/tenants/{provisioning_id}/status"

    data = wait_for_status(client, provisioning_id, {"READY", "FAILED"})
    assert data["status"] == "READY"
    assert data["tenantSlug"] == "acme"
    assert data["dbName"] == "ecom_tenant_acme"
    assert data["lastError"] is None
    assert [step["step"] for step in data["steps"]] == ["INIT", "CREATE_DATABASE", "APPLY_SCHEMA", "SEED", "READY"]
    assert all(step["status"] == "SUCCESS" for step in data["steps"])

    with session_factory() as db:
        tenant = db.execute(select(Tenant).where(Tenant.slug == "acme")).scalar_one()
        assert tenant.plan.code == "Premium"
        connection_url = cipher.decrypt(tenant.encrypted_connection)
    assert str(tenant_dir) in connection_url

    engine = create_engine(connection_url)
    try:
        with Session(engine) as session:
            assert session.execute(select(func.count()).select_from(Role)).scalar_one() == 2
            assert session.execute(select(User.email)).scalar_one() == "admin@acme"
    finally:
        engine.dispose()


def test_status_hides_database_until_ready(client):
    provisioning_id = _init(client).json()["data"]["provisioningId"]

    response = client.get(f"/provision/tenants/{provisioning_id}/status")

    data = response.json()["data"]
    assert data["status"] == "PENDING"
    assert data["tenantSlug"] is None
    assert data["dbName"] is None
    assert [(step["step"], step["status"]) for step in data["steps"]] == [("INIT", "PENDING")]


@pytest.mark.parametrize(
    "payload",
    [
        {"slug": "Bad Slug!", "name": "Acme", "plan": "Basic"},
        {"slug": "-acme", "name": "Acme", "plan": "Basic"},
        {"slug": "ab", "name": "Acme", "plan": "Basic"},
        {"slug": "acme", "name": "", "plan": "Basic"},
        {"slug": "acme", "plan": "Basic"},
    ],
)
def test_init_rejects_invalid_payload(client, payload):
    response = client.post("/provision/tenants/init", json=payload)

    assert response.status_code == 400
    assert response.json()["ok"] is False
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_init_rejects_unknown_plan(client):
    response = _init(client, plan="Gold")

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_plan_lookup_ignores_case(client):
    assert _init(client, plan="enterprise").status_code == 200


def test_duplicate_slug_conflicts(client):
    assert _init(client).status_code == 200

    response = _init(client, name="Someone Else")

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "SLUG_CONFLICT"


@pytest.mark.parametrize("authorization", [None, "Bearer", "Bearer not-a-token", "Basic abc"])
def test_confirm_requires_valid_bearer_token(client, authorization):
    headers = {"Authorization": authorization} if authorization else {}

    response = client.post("/provision/tenants/confirm", headers=headers)

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHORIZED"


def test_expired_confirm_token_is_rejected(client, app):
    provisioning_id = uuid.UUID(_init(client).json()["data"]["provisioningId"])
    expired = app.state.token_issuer.issue(provisioning_id, "acme", now=int(time.time()) - 3600)

    response = _confirm(client, expired)

    assert response.status_code == 401


def test_token_for_unknown_request_is_not_found(client, app):
    token = app.state.token_issuer.issue(uuid.uuid4(), "ghost")

    response = _confirm(client, token)

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "TENANT_NOT_FOUND"


def test_second_confirm_conflicts(client):
    token = _init(client).json()["data"]["confirmToken"]
    assert _confirm(client, token).status_code == 200

    response = _confirm(client, token)

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "ALREADY_CONFIRMED"


def test_full_queue_rejects_confirm_without_consuming_it(session_factory, provisioner, cipher):
    app = create_app(
        app_settings=Settings(PROVISIONING_QUEUE_SIZE=0),
        session_factory=session_factory,
        provisioner=provisioner,
        cipher=cipher,
        configure_logs=False,
    )
    with TestClient(app) as client:
        init = _init(client).json()["data"]

        rejected = _confirm(client, init["confirmToken"])
        assert rejected.status_code == 503
        assert rejected.json()["error"]["code"] == "QUEUE_FULL"

        with session_factory() as db:
            tenant = db.get(Tenant, uuid.UUID(init["provisioningId"]))
            assert tenant.confirmed_at is None

        app.state.orchestrator.queue_size = 10
        assert _confirm(client, init["confirmToken"]).status_code == 200
        assert wait_for_status(client, init["provisioningId"], {"READY", "FAILED"})["status"] == "READY"


def test_status_of_unknown_request_is_not_found(client):
    response = client.get(f"/provision/tenants/{uuid.uuid4()}/status")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "TENANT_NOT_FOUND"


def test_second_tenant_gets_its_own_database(client):
    provision(client)
    second = provision(client, slug="globex", name="Globex")

    data = client.get(f"/provision/tenants/{second}/status").json()["data"]
    assert data["dbName"] == "ecom_tenant_globex"
