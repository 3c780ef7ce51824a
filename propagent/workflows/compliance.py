"""
Compliance + PM autopilot.

Per-property scan, usually fired daily:
1. Load PENDING/OVERDUE compliance items due within the policy's critical
   window (or already overdue)
2. Policy-check each item (COMPLIANCE_TASK_CREATE):
   ALLOW    -> work order created, item moved to IN_PROGRESS
   BLOCK    -> CRITICAL (overdue) or HIGH exception, manager notified
   APPROVAL -> MEDIUM exception carrying a suggested work order
3. Audit PM schedules that slipped past their due date without a run

The scan result is remembered per property as a ComplianceSnapshot.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from propagent.policy.engine import evaluate_action
from propagent.schemas.domain import (
    ComplianceCategory,
    ComplianceItem,
    ComplianceStatus,
    Property,
    WorkOrder,
    WorkOrderCategory,
    WorkOrderPriority,
    WorkOrderStatus,
)
from propagent.schemas.ledger import ActionLogType, ExceptionCategory, Severity
from propagent.schemas.policy import PolicyActionType, PolicyConfig, PolicyDecision, PolicyResult
from propagent.utils import days_between, generate_ulid
from propagent.workflows.base import RunRecorder, StepHandle, WorkflowContext, execute_workflow

logger = logging.getLogger(__name__)

OVERDUE_RESPONSE_WINDOW = timedelta(hours=24)
PM_MIN_DAYS_OVERDUE = 3

COMPLIANCE_WO_CATEGORIES = {
    ComplianceCategory.HVAC_CERT: WorkOrderCategory.HVAC,
    ComplianceCategory.ELECTRICAL: WorkOrderCategory.ELECTRICAL,
    ComplianceCategory.PLUMBING: WorkOrderCategory.PLUMBING,
}


@dataclass(frozen=True)
class ComplianceTrigger:
    run_id: str
    property_id: str


def work_order_category_for(category: ComplianceCategory) -> WorkOrderCategory:
    return COMPLIANCE_WO_CATEGORIES.get(category, WorkOrderCategory.GENERAL)


def item_priority(is_overdue: bool, days_until_due: int, critical_window_days: int) -> WorkOrderPriority:
    """
    Work order priority for a compliance item.

    Overdue items are emergencies; items in the nearer half of the critical
    window are HIGH; everything else is MEDIUM.
    """
    if is_overdue:
        return WorkOrderPriority.EMERGENCY
    if days_until_due <= critical_window_days // 2:
        return WorkOrderPriority.HIGH
    return WorkOrderPriority.MEDIUM


def _category_label(category: ComplianceCategory) -> str:
    return category.value.replace("_", " ")


class _ComplianceRun:
    def __init__(self, ctx: WorkflowContext, rec: RunRecorder, trigger: ComplianceTrigger):
        self.ctx = ctx
        self.rec = rec
        self.trigger = trigger
        self.wo_created = 0
        self.exceptions_created = 0
        self.notified = 0

    def run(self) -> str:
        ctx = self.ctx
        now = ctx.now()

        with self.rec.step("Load Compliance Context", {"propertyId": self.trigger.property_id}) as step:
            prop = ctx.load_property(self.trigger.property_id)
            policy = ctx.policy_store.load_policy_for_property(prop.id)
            window = policy.compliance.critical_days_before_due
            items = ctx.repos.compliance.list_due(now + timedelta(days=window), property_id=prop.id)
            step.output = {
                "propertyName": prop.name,
                "criticalWindowDays": window,
                "itemsFound": len(items),
            }

        if items:
            with self.rec.step("Process Compliance Items", {"itemCount": len(items)}) as step:
                for item in items:
                    self._process_item(step, prop, policy, item)
                step.output = {
                    "woCreated": self.wo_created,
                    "exceptionsCreated": self.exceptions_created,
                    "notified": self.notified,
                }

        pm_escalated = self._audit_pm_schedules(prop)

        ctx.memory.record_compliance_scan(
            prop.id,
            last_scan_at=ctx.now(),
            wo_created=self.wo_created,
            exceptions=self.exceptions_created + pm_escalated,
        )

        if not items:
            if pm_escalated:
                return f"No compliance items due within critical window, {pm_escalated} PM alerts"
            return "No compliance items due within critical window, nothing to process"
        return (
            f"Processed {len(items)} compliance items: {self.wo_created} WOs created, "
            f"{self.exceptions_created} exceptions, {pm_escalated} PM alerts"
        )

    # -- compliance items -----------------------------------------------------

    def _process_item(self, step: StepHandle, prop: Property, policy: PolicyConfig, item: ComplianceItem) -> None:
        now = self.ctx.now()
        is_overdue = item.due_date < now
        days_until_due = days_between(item.due_date, now)

        result = evaluate_action(PolicyActionType.COMPLIANCE_TASK_CREATE, {"is_overdue": is_overdue}, policy)
        step.log_decision(f"compliance:{item.id}", result)

        item_context = {
            "itemId": item.id,
            "category": item.category.value,
            "dueDate": item.due_date.isoformat(),
            "isOverdue": is_overdue,
            "daysUntilDue": days_until_due,
        }
        window = policy.compliance.critical_days_before_due

        if result.decision == PolicyDecision.BLOCK:
            self._escalate_blocked(prop, item, result, item_context, is_overdue, days_until_due)
        elif result.decision == PolicyDecision.APPROVAL:
            self.rec.raise_exception(
                Severity.MEDIUM,
                ExceptionCategory.SYSTEM,
                title=f"Compliance item requires attention: {item.title}",
                details=result.reason,
                context={
                    **item_context,
                    "suggestedWOTitle": f"Compliance: {item.title}",
                    "suggestedPriority": item_priority(is_overdue, days_until_due, window).value,
                },
            )
            self.ctx.notify(
                prop.manager_id,
                "compliance_approval_manager",
                entity_type="ComplianceItem",
                entity_id=item.id,
                title=item.title,
                property_name=prop.name,
                days_until_due=days_until_due,
            )
            self.exceptions_created += 1
            self.notified += 1
        else:
            self._create_work_order(step, prop, item, item_priority(is_overdue, days_until_due, window))

    def _escalate_blocked(
        self,
        prop: Property,
        item: ComplianceItem,
        result: PolicyResult,
        item_context: dict,
        is_overdue: bool,
        days_until_due: int,
    ) -> None:
        if is_overdue:
            title = f"Compliance overdue, {item.title}"
            requires_by = self.ctx.now() + OVERDUE_RESPONSE_WINDOW
        else:
            title = f"Critical compliance deadline: {item.title} ({days_until_due}d)"
            requires_by = item.due_date

        self.rec.raise_exception(
            Severity.CRITICAL if is_overdue else Severity.HIGH,
            ExceptionCategory.SYSTEM,
            title=title,
            details=result.reason,
            context=item_context,
            requires_by=requires_by,
        )
        self.ctx.notify(
            prop.manager_id,
            "compliance_block_manager",
            entity_type="ComplianceItem",
            entity_id=item.id,
            is_overdue=is_overdue,
            title=item.title,
            property_name=prop.name,
            category=item.category.value,
            due_date=item.due_date.date().isoformat(),
        )
        self.exceptions_created += 1
        self.notified += 1

    def _create_work_order(
        self,
        step: StepHandle,
        prop: Property,
        item: ComplianceItem,
        priority: WorkOrderPriority,
    ) -> None:
        repos = self.ctx.repos
        category = work_order_category_for(item.category)
        try:
            work_order = repos.work_orders.add(WorkOrder(
                id=generate_ulid(),
                property_id=prop.id,
                submitted_by_id=prop.manager_id,
                title=f"Compliance: {item.title}",
                description=item.notes or f"Compliance requirement: {item.title} ({_category_label(item.category)})",
                category=category,
                priority=priority,
                status=WorkOrderStatus.NEW,
                created_at=self.ctx.now(),
            ))
            item.status = ComplianceStatus.IN_PROGRESS
            repos.compliance.save(item)
        except Exception as e:
            logger.error(
                f"Failed to create compliance WO for {item.id}: {e}",
                extra={"run_id": self.rec.run_id, "step": "Process Compliance Items"},
            )
            self.rec.raise_exception(
                Severity.HIGH,
                ExceptionCategory.SYSTEM,
                title=f"Failed to create compliance WO: {item.title}",
                details=str(e) or type(e).__name__,
                context={"itemId": item.id},
            )
            self.exceptions_created += 1
            return

        step.log(
            ActionLogType.API_CALL,
            "work_orders.add",
            request={"complianceItemId": item.id, "category": category.value, "priority": priority.value},
            response={"workOrderId": work_order.id},
        )
        self.ctx.notify(
            prop.manager_id,
            "compliance_wo_created_manager",
            entity_type="WorkOrder",
            entity_id=work_order.id,
            title=item.title,
            property_name=prop.name,
            priority=priority.value,
            due_date=item.due_date.date().isoformat(),
        )
        self.wo_created += 1
        self.notified += 1

    # -- PM audit -------------------------------------------------------------

    def _audit_pm_schedules(self, prop: Property) -> int:
        """Flag PM schedules well past due; returns the number flagged."""
        now = self.ctx.now()
        pm_escalated = 0

        with self.rec.step("PM Schedule Overdue Audit", {"propertyId": prop.id}) as step:
            overdue = [
                s for s in self.ctx.repos.pm_schedules.list_active(prop.id)
                if s.next_due_at <= now - timedelta(days=1)
            ]
            for schedule in overdue:
                days_overdue = days_between(now, schedule.next_due_at)
                # Ignore slippage under half a period
                if days_overdue > max(PM_MIN_DAYS_OVERDUE, schedule.frequency_days * 0.5):
                    self.rec.raise_exception(
                        Severity.MEDIUM,
                        ExceptionCategory.SLA,
                        title=f"PM schedule overdue: {schedule.title}",
                        details=f"PM schedule was due {days_overdue} day(s) ago. Asset: {schedule.asset_name}",
                        context={
                            "scheduleId": schedule.id,
                            "scheduleTitle": schedule.title,
                            "nextDueAt": schedule.next_due_at.isoformat(),
                            "daysOverdue": days_overdue,
                        },
                    )
                    pm_escalated += 1
            step.output = {"pmSchedulesChecked": len(overdue), "pmEscalated": pm_escalated}

        return pm_escalated


def run_compliance_autopilot(ctx: WorkflowContext, trigger: ComplianceTrigger) -> None:
    """Run the compliance + PM scan for one property; the outcome is in the ledger."""
    execute_workflow(
        ctx,
        trigger.run_id,
        trigger.property_id,
        "compliance",
        lambda rec: _ComplianceRun(ctx, rec, trigger).run(),
    )
