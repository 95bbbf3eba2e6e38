# Import models here for Alembic autogenerate convenience
from .base import Base  # noqa: F401
from .enums import ProvisioningStepName, StepStatus, TenantStatus, WORKFLOW_STEPS  # noqa: F401
from .state_machine import InvalidTransition  # noqa: F401
from .admin import AdminUser  # noqa: F401
from .plan import DEFAULT_PLANS, Plan  # noqa: F401
from .tenant import Tenant  # noqa: F401
from .provisioning import ProvisioningStep  # noqa: F401
