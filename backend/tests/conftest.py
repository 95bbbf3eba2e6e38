from __future__ import annotations

import time
import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from tenant_lifecycle.main import create_app
from tenant_lifecycle.models import Base, ProvisioningStepName, Tenant
from tenant_lifecycle.services import registry
from tenant_lifecycle.services.cipher import SecretCipher, generate_key
from tenant_lifecycle.services.provisioner import (
    CreateDatabaseResult,
    DatabaseCreateOutcome,
    DatabaseCreationError,
    DatabaseProvisioner,
    SeedError,
)


def cheap_hash(password: str) -> str:
    return f"test-hash:{len(password)}"


@pytest.fixture()
def engine(tmp_path):
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'registry.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    registry.ensure_default_plans(session)
    try:
        yield session
        session.commit()
    finally:
        session.close()


@pytest.fixture()
def cipher():
    return SecretCipher(generate_key())


@pytest.fixture()
def tenant_dir(tmp_path):
    return tmp_path / "tenants"


@pytest.fixture()
def provisioner(tenant_dir):
    return DatabaseProvisioner(
        f"sqlite:///{tenant_dir}",
        f"sqlite:///{tenant_dir}/" + "{db_name}.db",
        db_prefix="ecom_tenant_",
        password_hasher=cheap_hash,
    )


@pytest.fixture()
def app(session_factory, provisioner, cipher):
    return create_app(
        session_factory=session_factory,
        provisioner=provisioner,
        cipher=cipher,
        configure_logs=False,
    )


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client


def make_tenant(db_session, slug: str = "acme", name: str = "Acme", plan: str = "Basic") -> Tenant:
    return registry.create_tenant(
        db_session,
        slug=slug,
        name=name,
        db_name=f"ecom_tenant_{slug.replace('-', '_')}",
        plan=registry.get_plan_by_code(db_session, plan),
    )


def wait_for_status(client: TestClient, provisioning_id: str, statuses: set[str], timeout: float = 15.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        response = client.get(f"/provision/tenants/{provisioning_id}/status")
        data = response.json()["data"]
        if data["status"] in statuses:
            return data
        if time.monotonic() > deadline:
            raise AssertionError(f"Tenant stayed {data['status']}: {data}")
        time.sleep(0.05)


def provision(client: TestClient, slug: str = "acme", name: str = "Acme Corp", plan: str = "Premium") -> str:
    init = client.post("/provision/tenants/init", json={"slug": slug, "name": name, "plan": plan})
    assert init.status_code == 200, init.text
    data = init.json()["data"]
    confirm = client.post(
        "/provision/tenants/confirm",
        headers={"Authorization": f"Bearer {data['confirmToken']}"},
    )
    assert confirm.status_code == 200, confirm.text
    wait_for_status(client, data["provisioningId"], {"READY", "FAILED"})
    return data["provisioningId"]


class FakeProvisioner:
    """Records calls and can be told to fail or stall on a step."""

    def __init__(self, *, fail_on: ProvisioningStepName | None = None, stall: dict | None = None) -> None:
        self.fail_on = fail_on
        self.stall = stall or {}
        self.calls: list[tuple[str, str]] = []

    def database_name(self, slug: str) -> str:
        return f"ecom_tenant_{slug.replace('-', '_')}"

    def connection_url(self, db_name: str) -> str:
        return f"sqlite:///fake/{db_name}.db"

    def redact(self, message: str) -> str:
        return message

    def _run(self, step: ProvisioningStepName, slug: str) -> None:
        self.calls.append((step.value, slug))
        if step in self.stall:
            event, seconds = self.stall[step]
            if event is not None:
                event.set()
            time.sleep(seconds)
        if step == self.fail_on:
            error_cls = DatabaseCreationError if step == ProvisioningStepName.CREATE_DATABASE else SeedError
            raise error_cls(f"{step.value} exploded", slug=slug, step=step)

    def create_database(self, slug: str) -> CreateDatabaseResult:
        self._run(ProvisioningStepName.CREATE_DATABASE, slug)
        return CreateDatabaseResult(db_name=self.database_name(slug), outcome=DatabaseCreateOutcome.CREATED)

    def apply_baseline_schema(self, connection_url: str, *, slug: str = "") -> list[str]:
        self._run(ProvisioningStepName.APPLY_SCHEMA, slug)
        return ["roles", "users"]

    def seed(self, connection_url: str, slug: str, name: str) -> dict[str, int]:
        self._run(ProvisioningStepName.SEED, slug)
        return {"roles": 2}

    def count(self, step: ProvisioningStepName) -> int:
        return sum(1 for name, _ in self.calls if name == step.value)


class RecordingCache:
    def __init__(self) -> None:
        self.invalidated: list[uuid.UUID] = []

    def invalidate(self, tenant_id: uuid.UUID) -> None:
        self.invalidated.append(tenant_id)
