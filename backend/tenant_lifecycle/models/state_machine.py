from __future__ import annotations

from tenant_lifecycle.models.enums import StepStatus, TenantStatus


class InvalidTransition(ValueError):
    def __init__(self, kind: str, current: str, target: str) -> None:
        super().__init__(f"Illegal {kind} transition {current} -> {target}.")
        self.kind = kind
        self.current = current
        self.target = target


TENANT_TRANSITIONS: dict[TenantStatus, frozenset[TenantStatus]] = {
    TenantStatus.PENDING: frozenset({TenantStatus.SEEDING, TenantStatus.FAILED}),
    TenantStatus.SEEDING: frozenset({TenantStatus.READY, TenantStatus.FAILED}),
    TenantStatus.READY: frozenset({TenantStatus.SUSPENDED}),
    TenantStatus.SUSPENDED: frozenset({TenantStatus.READY}),
    # operator recovery only
    TenantStatus.FAILED: frozenset({TenantStatus.PENDING}),
}

STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.RUNNING, StepStatus.SUCCESS}),
    StepStatus.RUNNING: frozenset({StepStatus.SUCCESS, StepStatus.FAILED}),
    StepStatus.SUCCESS: frozenset(),
    StepStatus.FAILED: frozenset(),
}


def ensure_tenant_transition(current: TenantStatus, target: TenantStatus) -> None:
    if target not in TENANT_TRANSITIONS[current]:
        raise InvalidTransition("tenant status", current.value, target.value)


def ensure_step_transition(current: StepStatus, target: StepStatus) -> None:
    if target not in STEP_TRANSITIONS[current]:
        raise InvalidTransition("step status", current.value, target.value)
