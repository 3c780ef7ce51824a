"""
Maintenance autopilot.

Triggers:
    PM_DUE         entity_id = PM schedule id
    NEW_INCIDENT   entity_id = incident id
    UNASSIGNED_WO  entity_id = work order id

PM_DUE:       Load PM Schedule -> Policy: WO Create -> Create Work Order
              -> Assign Vendor -> Advance PM Schedule
NEW_INCIDENT: Load Incident -> (CRITICAL: escalate and stop)
              -> Policy: WO Create for Incident -> Create Work Order from Incident
              -> Assign Vendor
UNASSIGNED_WO: Assign Vendor

Vendor assignment tries the remembered preferred vendor for the
property/category first, then the remaining eligible vendors by
performance score, and assigns the first one policy allows.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from propagent.errors import NotFoundError
from propagent.policy.engine import evaluate_action
from propagent.schemas.domain import (
    IncidentSeverity,
    LeaseStatus,
    NotificationType,
    WorkOrder,
    WorkOrderCategory,
    WorkOrderPriority,
    WorkOrderStatus,
)
from propagent.schemas.ledger import ActionLogType, ExceptionCategory, Severity
from propagent.schemas.policy import PolicyActionType, PolicyConfig, PolicyDecision
from propagent.selection import first_allowed, prefer_first, rank_vendors
from propagent.utils import generate_ulid
from propagent.workflows.base import RunRecorder, WorkflowContext, execute_workflow

logger = logging.getLogger(__name__)

PM_DUE = "PM_DUE"
NEW_INCIDENT = "NEW_INCIDENT"
UNASSIGNED_WO = "UNASSIGNED_WO"
TRIGGER_TYPES = (PM_DUE, NEW_INCIDENT, UNASSIGNED_WO)

DEFAULT_PM_FREQUENCY_DAYS = 30
CRITICAL_RESPONSE_WINDOW = timedelta(hours=4)


@dataclass(frozen=True)
class MaintenanceTrigger:
    run_id: str
    property_id: str
    trigger_type: str
    entity_id: str


def compute_next_due(current: datetime, frequency_days: int) -> datetime:
    """Next PM due date, counted from the current due date."""
    return current + timedelta(days=frequency_days if frequency_days > 0 else DEFAULT_PM_FREQUENCY_DAYS)


class _MaintenanceRun:
    def __init__(self, ctx: WorkflowContext, rec: RunRecorder, trigger: MaintenanceTrigger):
        self.ctx = ctx
        self.rec = rec
        self.trigger = trigger
        self.property = ctx.load_property(trigger.property_id)
        self.policy: PolicyConfig = ctx.policy_store.load_policy_for_property(trigger.property_id)

    def run(self) -> str:
        if self.trigger.trigger_type == PM_DUE:
            self._handle_pm_due(self.trigger.entity_id)
        elif self.trigger.trigger_type == NEW_INCIDENT:
            self._handle_incident(self.trigger.entity_id)
        elif self.trigger.trigger_type == UNASSIGNED_WO:
            work_order = self.ctx.repos.work_orders.get(self.trigger.entity_id)
            if work_order is None:
                raise NotFoundError("WorkOrder", self.trigger.entity_id)
            self._assign_vendor(work_order)
        else:
            raise ValueError(f"Unknown maintenance trigger type: {self.trigger.trigger_type}")

        if self.rec.escalated:
            return "Workflow completed with escalation(s)"
        return "Maintenance autopilot completed successfully"

    # -- PM due ---------------------------------------------------------------

    def _handle_pm_due(self, schedule_id: str) -> None:
        repos = self.ctx.repos

        with self.rec.step("Load PM Schedule", {"scheduleId": schedule_id}) as step:
            schedule = repos.pm_schedules.get(schedule_id)
            if schedule is None:
                raise NotFoundError("PMSchedule", schedule_id)
            step.output = {"scheduleTitle": schedule.title}

        with self.rec.step("Policy: WO Create", {"priority": WorkOrderPriority.MEDIUM.value}) as step:
            result = evaluate_action(
                PolicyActionType.WO_CREATE, {"priority": WorkOrderPriority.MEDIUM.value}, self.policy
            )
            step.log_decision(PolicyActionType.WO_CREATE.value, result)
            if result.decision == PolicyDecision.BLOCK:
                step.fail(result.reason)
                self.rec.raise_exception(
                    Severity.HIGH,
                    ExceptionCategory.SYSTEM,
                    title=f"PM due: {schedule.title}, WO creation blocked",
                    details=result.reason,
                    context={"scheduleId": schedule_id, "scheduleTitle": schedule.title},
                )
                return
            step.output = {"decision": result.decision.value}

        with self.rec.step("Create Work Order", {"scheduleId": schedule_id, "title": schedule.title}) as step:
            work_order = repos.work_orders.find_open_by_title(self.property.id, schedule.title)
            if work_order is not None:
                step.output = {"workOrderId": work_order.id, "reused": True}
            else:
                work_order = repos.work_orders.add(WorkOrder(
                    id=generate_ulid(),
                    property_id=self.property.id,
                    unit_id=schedule.unit_id,
                    submitted_by_id=self.property.manager_id,
                    title=f"PM: {schedule.title}",
                    description=schedule.description or f"Preventive maintenance: {schedule.title}",
                    category=WorkOrderCategory.GENERAL,
                    priority=WorkOrderPriority.MEDIUM,
                    status=WorkOrderStatus.NEW,
                    created_at=self.ctx.now(),
                ))
                step.log(ActionLogType.API_CALL, "work_orders.add", response={"workOrderId": work_order.id})
                step.output = {"workOrderId": work_order.id}

        self._assign_vendor(work_order)

        with self.rec.step("Advance PM Schedule", {"scheduleId": schedule_id}) as step:
            next_due = compute_next_due(schedule.next_due_at, schedule.frequency_days)
            schedule.next_due_at = next_due
            schedule.last_run_at = self.ctx.now()
            try:
                repos.pm_schedules.save(schedule)
            except Exception as e:
                logger.warning(f"Could not advance PM schedule {schedule_id}: {e}", extra={"run_id": self.rec.run_id})
                step.fail(str(e) or type(e).__name__)
            else:
                step.output = {"nextDueAt": next_due.isoformat()}

    # -- incidents ------------------------------------------------------------

    def _handle_incident(self, incident_id: str) -> None:
        repos = self.ctx.repos

        with self.rec.step("Load Incident", {"incidentId": incident_id}) as step:
            incident = repos.incidents.get(incident_id)
            if incident is None:
                raise NotFoundError("Incident", incident_id)
            step.output = {"title": incident.title, "severity": incident.severity.value}

        if incident.severity == IncidentSeverity.CRITICAL:
            self.rec.raise_exception(
                Severity.CRITICAL,
                ExceptionCategory.SAFETY,
                title=f"Critical incident requires immediate attention: {incident.title}",
                details=incident.description,
                context={"incidentId": incident_id, "severity": incident.severity.value},
                requires_by=self.ctx.now() + CRITICAL_RESPONSE_WINDOW,
            )
            return

        priority = WorkOrderPriority.HIGH if incident.severity == IncidentSeverity.HIGH else WorkOrderPriority.MEDIUM

        with self.rec.step(
            "Policy: WO Create for Incident",
            {"priority": incident.severity.value, "incidentId": incident_id},
        ) as step:
            result = evaluate_action(PolicyActionType.WO_CREATE, {"priority": priority.value}, self.policy)
            step.log_decision(PolicyActionType.WO_CREATE.value, result)
            if result.decision == PolicyDecision.BLOCK:
                step.fail(result.reason)
                self.rec.raise_exception(
                    Severity.HIGH,
                    ExceptionCategory.SYSTEM,
                    title=f"Incident WO blocked by policy: {incident.title}",
                    details=result.reason,
                    context={"incidentId": incident_id},
                )
                return
            step.output = {"decision": result.decision.value}

        with self.rec.step("Create Work Order from Incident", {"incidentId": incident_id}) as step:
            work_order = repos.work_orders.add(WorkOrder(
                id=generate_ulid(),
                property_id=self.property.id,
                submitted_by_id=self.property.manager_id,
                title=f"Incident: {incident.title}",
                description=incident.description,
                category=WorkOrderCategory.GENERAL,
                priority=priority,
                status=WorkOrderStatus.NEW,
                created_at=self.ctx.now(),
            ))
            step.output = {"workOrderId": work_order.id}

        self._assign_vendor(work_order)

    # -- vendor assignment ----------------------------------------------------

    def _assign_vendor(self, work_order: WorkOrder) -> None:
        repos = self.ctx.repos
        memory = self.ctx.memory
        category = work_order.category.value

        with self.rec.step("Assign Vendor", {"workOrderId": work_order.id, "category": category}) as step:
            candidates = rank_vendors(
                repos.vendors.list_serving(self.property.id, category),
                as_of=self.ctx.now(),
            )

            preferred_id = memory.get_preferred_vendor(self.property.id, category)
            if preferred_id is not None:
                candidates, found = prefer_first(candidates, preferred_id)
                step.log(
                    ActionLogType.MEMORY_READ,
                    memory.preferred_vendor_key(category),
                    response={"preferredVendorId": preferred_id, "found": found},
                )

            if not candidates:
                step.fail("No eligible vendor found for this property/category")
                self.rec.raise_exception(
                    Severity.MEDIUM,
                    ExceptionCategory.SLA,
                    title=f"No vendor available for WO: {work_order.title}",
                    details=f"No active vendor found for category {category} at this property.",
                    context={"workOrderId": work_order.id, "category": category},
                )
                return

            chosen = first_allowed(candidates, work_order, repos.work_orders.count_open_for_vendor, self.policy)
            if chosen is None:
                step.fail("All vendors blocked by policy (capacity or priority rule)")
                self.rec.raise_exception(
                    Severity.HIGH,
                    ExceptionCategory.SLA,
                    title=f"Cannot auto-assign vendor for WO: {work_order.title}",
                    details="All available vendors are at capacity or policy blocks auto-assignment.",
                    context={"workOrderId": work_order.id},
                )
                return

            work_order.assigned_vendor_id = chosen.id
            work_order.status = WorkOrderStatus.ASSIGNED
            repos.work_orders.save(work_order)
            step.log(
                ActionLogType.API_CALL,
                "work_orders.save",
                request={"workOrderId": work_order.id, "assignedVendorId": chosen.id},
                response={"status": WorkOrderStatus.ASSIGNED.value},
            )

            memory.set_preferred_vendor(self.property.id, category, chosen.id)
            step.log(
                ActionLogType.MEMORY_WRITE,
                memory.preferred_vendor_key(category),
                request={"vendorId": chosen.id},
            )
            step.complete({"assignedVendorId": chosen.id, "memorized": True})

        tenant_user_id = self.ctx.unit_tenant_user(work_order.unit_id, (LeaseStatus.ACTIVE,))
        if tenant_user_id:
            self.ctx.notify(
                tenant_user_id,
                "wo_assigned_tenant",
                type=NotificationType.WORK_ORDER,
                entity_type="work_order",
                entity_id=work_order.id,
                title=work_order.title,
            )
        if self.property.manager_id:
            self.ctx.notify(
                self.property.manager_id,
                "wo_assigned_manager",
                entity_type="work_order",
                entity_id=work_order.id,
                title=work_order.title,
            )


def run_maintenance_autopilot(ctx: WorkflowContext, trigger: MaintenanceTrigger) -> None:
    """Run the maintenance autopilot for one trigger; the outcome is in the ledger."""
    execute_workflow(
        ctx,
        trigger.run_id,
        trigger.property_id,
        "maintenance",
        lambda rec: _MaintenanceRun(ctx, rec, trigger).run(),
    )
