from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable

import structlog
from sqlalchemy import create_engine, func, select, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.pool import NullPool

from tenant_lifecycle.models.enums import ProvisioningStepName
from tenant_lifecycle.models.tenant_db import (
    Module,
    OrderStatus,
    Role,
    RoleModulePermission,
    TenantBase,
    TenantSetting,
    User,
    UserRole,
)
from tenant_lifecycle.security import hash_password

logger = structlog.get_logger(__name__)

_DB_NAME_RE = re.compile(r"^[a-z0-9_]{1,63}$")

SUPERADMIN_ROLE = "SuperAdmin"

BASELINE_ROLES: tuple[tuple[str, str], ...] = (
    (SUPERADMIN_ROLE, "Full access to every module"),
    ("Customer", "Shopping and profile access"),
)

BASELINE_MODULES: tuple[tuple[str, str, str, str], ...] = (
    ("sales", "Point of Sale", "Sales and order management", "shopping-cart"),
    ("inventory", "Inventory", "Products and stock", "box"),
    ("customers", "Customers", "Customers and users", "users"),
    ("reports", "Reports", "Reports and analytics", "chart-bar"),
    ("settings", "Settings", "Tenant configuration", "cog"),
)

BASELINE_ORDER_STATUSES: tuple[tuple[str, str, str], ...] = (
    ("PENDING", "Pending", "Order placed, awaiting payment"),
    ("PROCESSING", "Processing", "Payment received, order being prepared"),
    ("SHIPPED", "Shipped", "Order has been shipped"),
    ("DELIVERED", "Delivered", "Order delivered to customer"),
    ("CANCELLED", "Cancelled", "Order cancelled"),
)


class ProvisioningError(RuntimeError):
    def __init__(self, message: str, *, slug: str, step: ProvisioningStepName) -> None:
        super().__init__(message)
        self.slug = slug
        self.step = step
        self.message = message


class DatabaseCreationError(ProvisioningError):
    pass


class SchemaApplyError(ProvisioningError):
    pass


class SeedError(ProvisioningError):
    pass


class StepTimeoutError(ProvisioningError):
    pass


class DatabaseCreateOutcome(str, Enum):
    CREATED = "CREATED"
    ALREADY_EXISTS = "ALREADY_EXISTS"


@dataclass(frozen=True)
class CreateDatabaseResult:
    db_name: str
    outcome: DatabaseCreateOutcome


class DatabaseProvisioner:
    """Creates and initializes isolated tenant databases.

    Every operation is safe to repeat: database names are derived from the slug,
    the schema is applied with existence checks and seeding inserts a group only
    when it is missing. This is what lets the orchestrator resume a half-finished
    workflow without cleanup.

    Supported backends are PostgreSQL (one database per tenant on the server
    behind ``server_url``) and SQLite (one file per tenant; ``server_url`` is
    unused and the file path comes from ``url_template``).
    """

    def __init__(
        self,
        server_url: str,
        url_template: str,
        *,
        db_prefix: str,
        admin_email_template: str = "admin@{slug}",
        password_hasher: Callable[[str], str] = hash_password,
        admin_initial_password: str | None = None,
    ) -> None:
        self.server_url = make_url(server_url)
        self.url_template = url_template
        self.db_prefix = db_prefix
        self.admin_email_template = admin_email_template
        self._hash_password = password_hasher
        self._admin_initial_password = admin_initial_password
        self.backend = make_url(url_template.format(db_name="placeholder")).get_backend_name()
        if self.backend not in ("postgresql", "sqlite"):
            raise ValueError(f"Unsupported tenant database backend: {self.backend}")
        self._secrets = {
            password
            for password in (self.server_url.password, make_url(url_template.format(db_name="placeholder")).password)
            if password
        }

    def database_name(self, slug: str) -> str:
        db_name = f"{self.db_prefix}{slug.replace('-', '_')}".lower()
        if not _DB_NAME_RE.match(db_name):
            raise DatabaseCreationError(
                f"Invalid database name derived from slug: {db_name}",
                slug=slug,
                step=ProvisioningStepName.CREATE_DATABASE,
            )
        return db_name

    def connection_url(self, db_name: str) -> str:
        return self.url_template.format(db_name=db_name)

    def redact(self, message: str) -> str:
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message[:1000]

    def _error_message(self, exc: BaseException) -> str:
        orig = getattr(exc, "orig", None)
        return self.redact(str(orig if orig is not None else exc).strip() or type(exc).__name__)

    def _server_engine(self) -> Engine:
        return create_engine(self.server_url, isolation_level="AUTOCOMMIT", poolclass=NullPool)

    def _tenant_engine(self, connection_url: str) -> Engine:
        return create_engine(connection_url, poolclass=NullPool)

    def _sqlite_path(self, db_name: str) -> Path:
        return Path(make_url(self.connection_url(db_name)).database or "")

    def database_exists(self, db_name: str) -> bool:
        if self.backend == "sqlite":
            return self._sqlite_path(db_name).exists()
        engine = self._server_engine()
        try:
            with engine.connect() as connection:
                row = connection.execute(
                    text("SELECT 1 FROM pg_database WHERE datname = :db_name"),
                    {"db_name": db_name},
                ).first()
                return row is not None
        finally:
            engine.dispose()

    def _create(self, db_name: str) -> None:
        if self.backend == "sqlite":
            path = self._sqlite_path(db_name)
            path.parent.mkdir(parents=True, exist_ok=True)
            engine = self._tenant_engine(self.connection_url(db_name))
            try:
                with engine.connect() as connection:
                    connection.execute(text("SELECT 1"))
            finally:
                engine.dispose()
            return

        engine = self._server_engine()
        try:
            with engine.connect() as connection:
                # Identifiers cannot be bound parameters; db_name is validated against _DB_NAME_RE.
                connection.execute(text(f'CREATE DATABASE "{db_name}" ENCODING \'UTF8\' TEMPLATE template0'))
        finally:
            engine.dispose()

    def create_database(self, slug: str) -> CreateDatabaseResult:
        db_name = self.database_name(slug)
        try:
            if self.database_exists(db_name):
                logger.warning("tenant_database_already_exists", slug=slug, db_name=db_name)
                return CreateDatabaseResult(db_name=db_name, outcome=DatabaseCreateOutcome.ALREADY_EXISTS)
            self._create(db_name)
        except (SQLAlchemyError, OSError) as exc:
            # A concurrent creator may have won the race between the check and CREATE.
            try:
                exists = self.database_exists(db_name)
            except (SQLAlchemyError, OSError):
                exists = False
            if exists:
                logger.warning("tenant_database_created_concurrently", slug=slug, db_name=db_name)
                return CreateDatabaseResult(db_name=db_name, outcome=DatabaseCreateOutcome.ALREADY_EXISTS)
            message = self._error_message(exc)
            logger.error("tenant_database_create_failed", slug=slug, db_name=db_name, error=message)
            raise DatabaseCreationError(
                message, slug=slug, step=ProvisioningStepName.CREATE_DATABASE
            ) from exc

        logger.info("tenant_database_created", slug=slug, db_name=db_name)
        return CreateDatabaseResult(db_name=db_name, outcome=DatabaseCreateOutcome.CREATED)

    def apply_baseline_schema(self, connection_url: str, *, slug: str = "") -> list[str]:
        engine = self._tenant_engine(connection_url)
        try:
            TenantBase.metadata.create_all(engine, checkfirst=True)
        except SQLAlchemyError as exc:
            message = self._error_message(exc)
            logger.error("tenant_schema_apply_failed", slug=slug, error=message)
            raise SchemaApplyError(message, slug=slug, step=ProvisioningStepName.APPLY_SCHEMA) from exc
        finally:
            engine.dispose()
        tables = sorted(TenantBase.metadata.tables)
        logger.info("tenant_schema_applied", slug=slug, tables=len(tables))
        return tables

    def seed(self, connection_url: str, slug: str, name: str) -> dict[str, int]:
        engine = self._tenant_engine(connection_url)
        inserted: dict[str, int] = {}
        try:
            with Session(engine) as session:
                for group, seeder in (
                    ("roles", self._seed_roles),
                    ("modules", self._seed_modules),
                    ("role_permissions", self._seed_role_permissions),
                    ("settings", lambda s: self._seed_settings(s, slug, name)),
                    ("order_statuses", self._seed_order_statuses),
                    ("admin_user", lambda s: self._seed_admin_user(s, slug)),
                ):
                    inserted[group] = seeder(session)
                    session.commit()
        except SQLAlchemyError as exc:
            message = self._error_message(exc)
            logger.error("tenant_seed_failed", slug=slug, error=message)
            raise SeedError(message, slug=slug, step=ProvisioningStepName.SEED) from exc
        finally:
            engine.dispose()
        logger.info("tenant_seeded", slug=slug, **inserted)
        return inserted

    def _seed_roles(self, session: Session) -> int:
        if session.execute(select(func.count()).select_from(Role)).scalar_one():
            return 0
        session.add_all([Role(name=role, description=description) for role, description in BASELINE_ROLES])
        return len(BASELINE_ROLES)

    def _seed_modules(self, session: Session) -> int:
        if session.execute(select(func.count()).select_from(Module)).scalar_one():
            return 0
        session.add_all(
            [
                Module(code=code, name=module_name, description=description, icon_name=icon, is_active=True)
                for code, module_name, description, icon in BASELINE_MODULES
            ]
        )
        return len(BASELINE_MODULES)

    def _seed_role_permissions(self, session: Session) -> int:
        role = session.execute(select(Role).where(Role.name == SUPERADMIN_ROLE)).scalar_one_or_none()
        if not role:
            raise SQLAlchemyError(f"{SUPERADMIN_ROLE} role is missing; roles must be seeded first.")
        granted = set(
            session.execute(
                select(RoleModulePermission.module_id).where(RoleModulePermission.role_id == role.id)
            ).scalars()
        )
        modules = session.execute(select(Module)).scalars().all()
        count = 0
        for module in modules:
            if module.id in granted:
                continue
            session.add(
                RoleModulePermission(
                    role_id=role.id,
                    module_id=module.id,
                    can_view=True,
                    can_create=True,
                    can_update=True,
                    can_delete=True,
                )
            )
            count += 1
        return count

    def _seed_settings(self, session: Session, slug: str, name: str) -> int:
        defaults = {"display_name": name, "slug": slug, "currency": "USD", "locale": "en-US"}
        existing = set(session.execute(select(TenantSetting.key)).scalars())
        missing = [TenantSetting(key=key, value=value) for key, value in defaults.items() if key not in existing]
        session.add_all(missing)
        return len(missing)

    def _seed_order_statuses(self, session: Session) -> int:
        if session.execute(select(func.count()).select_from(OrderStatus)).scalar_one():
            return 0
        session.add_all(
            [
                OrderStatus(code=code, name=status_name, description=description)
                for code, status_name, description in BASELINE_ORDER_STATUSES
            ]
        )
        return len(BASELINE_ORDER_STATUSES)

    def _seed_admin_user(self, session: Session, slug: str) -> int:
        email = self.admin_email_template.format(slug=slug)
        if session.execute(select(User).where(User.email == email)).scalar_one_or_none():
            return 0
        role = session.execute(select(Role).where(Role.name == SUPERADMIN_ROLE)).scalar_one()
        # Without a configured initial password nobody can log in until an operator resets it.
        # Neither is stored in cleartext or logged; must_change_password forces a reset either way.
        initial_password = self._admin_initial_password or secrets.token_urlsafe(18)
        admin = User(
            email=email,
            password_hash=self._hash_password(initial_password),
            first_name="Admin",
            last_name="System",
            is_active=True,
            must_change_password=True,
        )
        session.add(admin)
        session.flush()
        session.add(UserRole(user_id=admin.id, role_id=role.id))
        return 1
