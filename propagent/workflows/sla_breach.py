"""
SLA breach autopilot.

Per-work-order run, fired by the breached-work-order scan:
1. Load the breached work order
2. Raise an SLA exception, notify the manager and count the breach against
   the assigned vendor
3. Try to reassign to an alternate vendor, skipping vendors with a history
   of breaches
4. Tell the tenant the request is being expedited (or is taking longer)

A breach always needs manager awareness, so a Run that gets past step 1 is
always ESCALATED.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from propagent.errors import NotFoundError
from propagent.policy.engine import evaluate_action
from propagent.schemas.domain import (
    TERMINAL_WORK_ORDER_STATUSES,
    LeaseStatus,
    WorkOrderPriority,
    WorkOrderStatus,
)
from propagent.schemas.ledger import ActionLogType, ExceptionCategory, Severity
from propagent.schemas.policy import PolicyActionType, PolicyDecision
from propagent.selection import first_allowed, rank_vendors
from propagent.utils import round_half_up
from propagent.workflows.base import RunRecorder, WorkflowContext, execute_workflow

logger = logging.getLogger(__name__)

MAX_BREACH_THRESHOLD = 3
SLA_RESPONSE_WINDOW = timedelta(hours=4)
TENANT_LEASE_STATUSES = (LeaseStatus.ACTIVE, LeaseStatus.DRAFT)

NO_CANDIDATES_REASON = "No alternate vendors available for this property/category"
ALL_BLOCKED_REASON = "All alternate vendors blocked by policy (capacity or priority)"


@dataclass(frozen=True)
class SlaBreachTrigger:
    run_id: str
    property_id: str
    work_order_id: str


def _run_sla_breach(ctx: WorkflowContext, rec: RunRecorder, trigger: SlaBreachTrigger) -> str:
    repos = ctx.repos
    memory = ctx.memory
    work_order_id = trigger.work_order_id

    # -------------------------------------------------------------------------
    # Step 1: Load context
    # -------------------------------------------------------------------------
    with rec.step("Load SLA Breach Context", {"workOrderId": work_order_id, "propertyId": trigger.property_id}) as step:
        wo = repos.work_orders.get(work_order_id)
        if wo is None:
            raise NotFoundError("WorkOrder", work_order_id)

        if wo.status in TERMINAL_WORK_ORDER_STATUSES:
            step.complete({"status": wo.status.value})
            return f"WO is already {wo.status.value}, no SLA action needed"
        if wo.sla_date is None:
            step.complete({"note": "no slaDate set"})
            return "Work order has no SLA date, skipping"

        prop = ctx.load_property(wo.property_id)
        hours_breached = round_half_up((ctx.now() - wo.sla_date).total_seconds() / 3600)
        policy = ctx.policy_store.load_policy_for_property(trigger.property_id)
        step.output = {
            "woTitle": wo.title,
            "priority": wo.priority.value,
            "status": wo.status.value,
            "hoursBreached": hours_breached,
        }

    # -------------------------------------------------------------------------
    # Step 2: Exception, manager notification, vendor breach count
    # -------------------------------------------------------------------------
    with rec.step("Escalate SLA Breach", {"priority": wo.priority.value, "hoursBreached": hours_breached}) as step:
        result = evaluate_action(
            PolicyActionType.ESCALATE,
            {"priority": wo.priority.value, "hoursBreached": hours_breached},
            policy,
        )
        step.log_decision(f"workOrder:{work_order_id}", result)

        urgent = wo.priority in (WorkOrderPriority.HIGH, WorkOrderPriority.EMERGENCY)
        severity = Severity.CRITICAL if urgent else Severity.HIGH
        rec.raise_exception(
            severity,
            ExceptionCategory.SLA,
            title=f"SLA breach: {wo.title} ({hours_breached}h overdue)",
            details=(
                f"Work order priority: {wo.priority.value}. "
                f"SLA was due {wo.sla_date.date().isoformat()}. Current status: {wo.status.value}."
            ),
            context={
                "workOrderId": work_order_id,
                "priority": wo.priority.value,
                "status": wo.status.value,
                "slaDate": wo.sla_date.isoformat(),
                "hoursBreached": hours_breached,
            },
            requires_by=ctx.now() + SLA_RESPONSE_WINDOW,
        )
        ctx.notify(
            prop.manager_id,
            "sla_breach_manager",
            entity_type="WorkOrder",
            entity_id=work_order_id,
            title=wo.title,
            property_name=prop.name,
            priority=wo.priority.value,
            hours_breached=hours_breached,
            status=wo.status.value,
        )

        vendor_breach_count = 0
        if wo.assigned_vendor_id:
            vendor_breach_count = memory.increment_vendor_breach_count(wo.assigned_vendor_id)
            step.log(
                ActionLogType.MEMORY_WRITE,
                f"vendor:{wo.assigned_vendor_id}:breach_count",
                response={"breachCount": vendor_breach_count},
            )

        step.output = {
            "severity": severity.value,
            "hoursBreached": hours_breached,
            "exceptionCreated": True,
            "vendorBreachCount": vendor_breach_count,
        }

    # -------------------------------------------------------------------------
    # Step 3: Vendor reassignment
    # -------------------------------------------------------------------------
    reassigned = False
    with rec.step(
        "Attempt Vendor Reassignment",
        {"currentVendorId": wo.assigned_vendor_id, "category": wo.category.value},
    ) as step:
        ranked = rank_vendors(
            (v for v in repos.vendors.list_serving(trigger.property_id, wo.category.value)
             if v.id != wo.assigned_vendor_id),
            as_of=ctx.now(),
        )

        candidates = []
        for vendor in ranked:
            breaches = memory.get_vendor_breach_count(vendor.id)
            if breaches < MAX_BREACH_THRESHOLD:
                candidates.append(vendor)
            else:
                step.log(
                    ActionLogType.MEMORY_READ,
                    f"vendor:{vendor.id}:breach_count",
                    response={"breachCount": breaches, "skipped": True, "reason": "exceeds breach threshold"},
                )

        chosen = first_allowed(candidates, wo, repos.work_orders.count_open_for_vendor, policy)
        if chosen is not None:
            wo.assigned_vendor_id = chosen.id
            wo.status = WorkOrderStatus.ASSIGNED
            repos.work_orders.save(wo)
            step.log(
                ActionLogType.API_CALL,
                "workOrder.update",
                request={"workOrderId": work_order_id, "assignedVendorId": chosen.id},
                response={"status": WorkOrderStatus.ASSIGNED.value},
            )
            reassigned = True
            step.output = {"reassigned": True, "chosenVendorId": chosen.id}
        else:
            step.log(
                ActionLogType.DECISION,
                "vendor_reassignment",
                policy_decision=PolicyDecision.BLOCK.value,
                policy_reason=NO_CANDIDATES_REASON if not candidates else ALL_BLOCKED_REASON,
            )
            step.output = {"reassigned": False, "candidatesChecked": len(candidates)}

    # -------------------------------------------------------------------------
    # Step 4: Tenant notification
    # -------------------------------------------------------------------------
    with rec.step("Notify Tenant", {"unitId": wo.unit_id}) as step:
        tenant_user_id = ctx.unit_tenant_user(wo.unit_id, TENANT_LEASE_STATUSES)
        if tenant_user_id:
            ctx.notify(
                tenant_user_id,
                "sla_breach_tenant",
                entity_type="WorkOrder",
                entity_id=work_order_id,
                title=wo.title,
                reassigned=reassigned,
            )
        step.output = {"tenantNotified": tenant_user_id is not None}

    outcome = "Reassigned to alternate vendor." if reassigned else "No reassignment, manager action required."
    return (
        f"SLA breach: {wo.title} ({hours_breached}h overdue · {wo.priority.value}). "
        f"Exception created. {outcome}"
    )


def run_sla_breach_autopilot(ctx: WorkflowContext, trigger: SlaBreachTrigger) -> None:
    """Run the SLA breach autopilot for one work order; the outcome is in the ledger."""
    execute_workflow(
        ctx,
        trigger.run_id,
        trigger.property_id,
        "sla_breach",
        lambda rec: _run_sla_breach(ctx, rec, trigger),
    )
