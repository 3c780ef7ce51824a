"""
Event dispatcher - turns agent events into deduplicated workflow Runs.

publish(event):
1. Route the event type to a workflow (unknown types are skipped)
2. Build the hourly dedupe key and claim it with a QUEUED Run; a duplicate
   delivery within the same hour creates nothing
3. Leave the Run QUEUED (with the reason) when the safety governor refuses
4. ESCALATE the Run when the property's manager has the agent disabled
5. Otherwise hand the Run to the registered workflow

There is no retry and no dead-letter queue here: a failed workflow leaves a
FAILED Run, and redelivery is the external trigger dispatcher's concern.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from propagent.governor import SafetyGovernor
from propagent.idem_keys import hour_bucket, make_dedupe_key
from propagent.workflows import (
    ComplianceTrigger,
    MaintenanceTrigger,
    SlaBreachTrigger,
    TenantCommsTrigger,
    WorkflowContext,
    run_compliance_autopilot,
    run_maintenance_autopilot,
    run_sla_breach_autopilot,
    run_tenant_comms_autopilot,
)

logger = logging.getLogger(__name__)

DEDUPE_TRIGGER_TYPE = "event"
AGENT_DISABLED_REASON = "Agent disabled for manager"
GOVERNOR_PAUSED_REASON = "Paused by safety governor"

MAINTENANCE = "maintenance"
TENANT_COMMS = "tenant_comms"
COMPLIANCE = "compliance"
SLA_BREACH = "sla_breach"

EVENT_ROUTES: dict[str, str] = {
    "PM_DUE": MAINTENANCE,
    "NEW_INCIDENT": MAINTENANCE,
    "UNASSIGNED_WO": MAINTENANCE,
    "NEW_MESSAGE_THREAD": TENANT_COMMS,
    "NEW_MESSAGE": TENANT_COMMS,
    "COMPLIANCE_DUE": COMPLIANCE,
    "WO_SLA_BREACH": SLA_BREACH,
}


@dataclass(frozen=True)
class AgentEvent:
    """
    Something that happened in the portfolio.

    Attributes:
        event_type: e.g. PM_DUE, NEW_MESSAGE_THREAD, WO_SLA_BREACH
        property_id: Property the event concerns
        entity_id: PM schedule, incident, work order or thread id
        entity_type: e.g. "pm_schedule", "message_thread"
        payload: Extra event data
    """
    event_type: str
    property_id: Optional[str] = None
    entity_id: Optional[str] = None
    entity_type: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)


class PublishStatus(str, Enum):
    DISPATCHED = "dispatched"
    DUPLICATE = "duplicate"
    HELD = "held"
    DISABLED = "disabled"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class PublishResult:
    status: PublishStatus
    run_id: Optional[str] = None
    dedupe_key: Optional[str] = None
    reason: Optional[str] = None


WorkflowHandler = Callable[[WorkflowContext, AgentEvent, str], None]


# =============================================================================
# WORKFLOW HANDLERS
# =============================================================================

def _maintenance(ctx: WorkflowContext, event: AgentEvent, run_id: str) -> None:
    run_maintenance_autopilot(ctx, MaintenanceTrigger(
        run_id=run_id,
        property_id=event.property_id or "",
        trigger_type=event.event_type,
        entity_id=event.entity_id or "",
    ))


def _tenant_comms(ctx: WorkflowContext, event: AgentEvent, run_id: str) -> None:
    thread_id = event.entity_id or str(event.payload.get("threadId", ""))
    run_tenant_comms_autopilot(ctx, TenantCommsTrigger(run_id, event.property_id or "", thread_id))


def _compliance(ctx: WorkflowContext, event: AgentEvent, run_id: str) -> None:
    run_compliance_autopilot(ctx, ComplianceTrigger(run_id, event.property_id or ""))


def _sla_breach(ctx: WorkflowContext, event: AgentEvent, run_id: str) -> None:
    work_order_id = event.entity_id or str(event.payload.get("workOrderId", ""))
    run_sla_breach_autopilot(ctx, SlaBreachTrigger(run_id, event.property_id or "", work_order_id))


class WorkflowRegistry:
    """
    Registry mapping workflow names to handlers.

    Usage:
        registry = WorkflowRegistry.create_default()
        registry.dispatch("maintenance", ctx, event, run_id)
    """

    def __init__(self) -> None:
        self._handlers: dict[str, WorkflowHandler] = {}

    def register(self, name: str, handler: WorkflowHandler) -> None:
        self._handlers[name] = handler

    def get(self, name: str) -> WorkflowHandler:
        """
        Get the handler for a workflow.

        Raises:
            KeyError: If no handler is registered under this name
        """
        if name not in self._handlers:
            raise KeyError(f"No workflow registered: {name}. Registered: {list(self._handlers.keys())}")
        return self._handlers[name]

    def has(self, name: str) -> bool:
        return name in self._handlers

    def dispatch(self, name: str, ctx: WorkflowContext, event: AgentEvent, run_id: str) -> None:
        self.get(name)(ctx, event, run_id)

    @classmethod
    def create_default(cls) -> "WorkflowRegistry":
        registry = cls()
        registry.register(MAINTENANCE, _maintenance)
        registry.register(TENANT_COMMS, _tenant_comms)
        registry.register(COMPLIANCE, _compliance)
        registry.register(SLA_BREACH, _sla_breach)
        return registry


# =============================================================================
# DISPATCHER
# =============================================================================

def event_dedupe_key(event: AgentEvent, bucket: str) -> str:
    """Dedupe key for an event within one time bucket."""
    return make_dedupe_key(
        DEDUPE_TRIGGER_TYPE,
        f"{event.event_type}-{event.entity_id or 'global'}",
        event.property_id,
        bucket,
    )


class EventDispatcher:
    """
    Publishes agent events as Runs and dispatches them.

    Args:
        ctx: Workflow collaborators
        governor: Safety governor consulted before every dispatch
        registry: Workflow handlers (defaults to the four autopilots)
    """

    def __init__(
        self,
        ctx: WorkflowContext,
        governor: SafetyGovernor,
        registry: Optional[WorkflowRegistry] = None,
    ):
        self.ctx = ctx
        self.governor = governor
        self.registry = registry or WorkflowRegistry.create_default()

    def publish(self, event: AgentEvent) -> PublishResult:
        workflow = EVENT_ROUTES.get(event.event_type)
        if workflow is None or not self.registry.has(workflow):
            logger.info(f"No workflow for event type {event.event_type}, skipping")
            return PublishResult(PublishStatus.SKIPPED, reason=f"Unrouted event type: {event.event_type}")

        ledger = self.ctx.ledger
        key = event_dedupe_key(event, hour_bucket(self.ctx.now()))
        run_id = ledger.create_run_for_key(key, DEDUPE_TRIGGER_TYPE, event.property_id)
        if run_id is None:
            return PublishResult(PublishStatus.DUPLICATE, dedupe_key=key)

        log_extra = {"run_id": run_id, "event": f"dispatch.{event.event_type}"}

        check = self.governor.can_execute_autonomy()
        if not check.ok:
            reason = check.reason or GOVERNOR_PAUSED_REASON
            ledger.hold_run(run_id, reason)
            logger.warning(f"Run held by safety governor: {reason}", extra=log_extra)
            return PublishResult(PublishStatus.HELD, run_id, key, reason)

        if not self._agent_enabled(event.property_id):
            ledger.escalate_run(run_id, AGENT_DISABLED_REASON)
            logger.info(f"{AGENT_DISABLED_REASON}, run escalated", extra=log_extra)
            return PublishResult(PublishStatus.DISABLED, run_id, key, AGENT_DISABLED_REASON)

        logger.info(f"Dispatching {event.event_type} to {workflow}", extra=log_extra)
        self.registry.dispatch(workflow, self.ctx, event, run_id)
        return PublishResult(PublishStatus.DISPATCHED, run_id, key)

    def _agent_enabled(self, property_id: Optional[str]) -> bool:
        if not property_id:
            return True
        prop = self.ctx.repos.properties.get(property_id)
        if prop is None or not prop.manager_id:
            return True
        settings = self.ctx.repos.settings.get(prop.manager_id)
        return settings is not None and settings.enabled
