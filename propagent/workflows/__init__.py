"""
Autopilot workflows.

Each workflow takes a WorkflowContext and a trigger dataclass carrying a
QUEUED run id, and records everything it does in the run ledger:

- maintenance: PM due, new incident, unassigned work order
- tenant_comms: new tenant message
- compliance: compliance items and overdue PM schedules
- sla_breach: work order past its SLA date
"""

from .base import RunRecorder, StepHandle, WorkflowContext, execute_workflow
from .compliance import ComplianceTrigger, run_compliance_autopilot
from .maintenance import MaintenanceTrigger, run_maintenance_autopilot
from .sla_breach import SlaBreachTrigger, run_sla_breach_autopilot
from .tenant_comms import TenantCommsTrigger, run_tenant_comms_autopilot

__all__ = [
    "ComplianceTrigger",
    "MaintenanceTrigger",
    "RunRecorder",
    "SlaBreachTrigger",
    "StepHandle",
    "TenantCommsTrigger",
    "WorkflowContext",
    "execute_workflow",
    "run_compliance_autopilot",
    "run_maintenance_autopilot",
    "run_sla_breach_autopilot",
    "run_tenant_comms_autopilot",
]
