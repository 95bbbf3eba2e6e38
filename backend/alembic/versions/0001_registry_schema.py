"""Tenant registry schema

Revision ID: 0001_registry_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

import uuid

import sqlalchemy as sa
from alembic import op


revision = "0001_registry_schema"
down_revision = None
branch_labels = None
depends_on = None


TENANT_STATUSES = ("PENDING", "SEEDING", "READY", "SUSPENDED", "FAILED")
STEP_NAMES = ("INIT", "CREATE_DATABASE", "APPLY_SCHEMA", "SEED", "READY")
STEP_STATUSES = ("PENDING", "RUNNING", "SUCCESS", "FAILED")

DEFAULT_PLANS = (
    ("11111111-0000-0000-0000-000000000001", "Basic", "Basic plan"),
    ("22222222-0000-0000-0000-000000000002", "Premium", "Premium plan"),
    ("33333333-0000-0000-0000-000000000003", "Enterprise", "Enterprise plan"),
)


def upgrade() -> None:
    tenant_status = sa.Enum(*TENANT_STATUSES, name="tenant_status")
    step_name = sa.Enum(*STEP_NAMES, name="provisioning_step_name")
    step_status = sa.Enum(*STEP_STATUSES, name="provisioning_step_status")

    bind = op.get_bind()
    tenant_status.create(bind, checkfirst=True)
    step_name.create(bind, checkfirst=True)
    step_status.create(bind, checkfirst=True)

    plans = op.create_table(
        "plans",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("code", sa.String(length=50), nullable=False, unique=True),
        sa.Column("name", sa.String(length=100), nullable=False),
    )

    op.create_table(
        "admin_users",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("is_superadmin", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_admin_users_email", "admin_users", ["email"], unique=True)

    op.create_table(
        "tenants",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("slug", sa.String(length=64), nullable=False, unique=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("db_name", sa.String(length=100), nullable=False),
        sa.Column("status", tenant_status, nullable=False),
        sa.Column("encrypted_connection", sa.Text(), nullable=True),
        sa.Column("plan_id", sa.Uuid(), sa.ForeignKey("plans.id", ondelete="SET NULL"), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("worker_id", sa.String(length=64), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_tenants_status", "tenants", ["status"], unique=False)

    op.create_table(
        "provisioning_steps",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.Uuid(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("step", step_name, nullable=False),
        sa.Column("status", step_status, nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
    )
    op.create_index(
        "uq_provisioning_steps_tenant_sequence",
        "provisioning_steps",
        ["tenant_id", "sequence"],
        unique=True,
    )
    op.create_index(
        "ix_provisioning_steps_tenant_step",
        "provisioning_steps",
        ["tenant_id", "step"],
        unique=False,
    )

    op.bulk_insert(
        plans,
        [{"id": uuid.UUID(plan_id), "code": code, "name": name} for plan_id, code, name in DEFAULT_PLANS],
    )


def downgrade() -> None:
    op.drop_index("ix_provisioning_steps_tenant_step", table_name="provisioning_steps")
    op.drop_index("uq_provisioning_steps_tenant_sequence", table_name="provisioning_steps")
    op.drop_table("provisioning_steps")
    op.drop_index("ix_tenants_status", table_name="tenants")
    op.drop_table("tenants")
    op.drop_index("ix_admin_users_email", table_name="admin_users")
    op.drop_table("admin_users")
    op.drop_table("plans")

    bind = op.get_bind()
    sa.Enum(name="provisioning_step_status").drop(bind, checkfirst=True)
    sa.Enum(name="provisioning_step_name").drop(bind, checkfirst=True)
    sa.Enum(name="tenant_status").drop(bind, checkfirst=True)
