from __future__ import annotations

from enum import Enum


class TenantStatus(str, Enum):
    PENDING = "PENDING"
    SEEDING = "SEEDING"
    READY = "READY"
    SUSPENDED = "SUSPENDED"
    FAILED = "FAILED"


class ProvisioningStepName(str, Enum):
    INIT = "INIT"
    CREATE_DATABASE = "CREATE_DATABASE"
    APPLY_SCHEMA = "APPLY_SCHEMA"
    SEED = "SEED"
    READY = "READY"


class StepStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


# Steps the orchestrator executes, in order. INIT and READY are bookkeeping rows.
WORKFLOW_STEPS: tuple[ProvisioningStepName, ...] = (
    ProvisioningStepName.CREATE_DATABASE,
    ProvisioningStepName.APPLY_SCHEMA,
    ProvisioningStepName.SEED,
)
