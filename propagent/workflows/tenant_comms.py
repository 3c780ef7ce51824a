"""
Tenant comms autopilot.

Triggered by a new tenant message thread or a new tenant message. The
latest tenant message is classified, checked against MESSAGE_SEND policy
and then handled one of three ways:

    BLOCK     legal or harassment content: no reply, CRITICAL exception,
              urgent manager notification
    APPROVAL  a draft reply is generated and parked in an exception for the
              manager to review
    ALLOW     an automated reply is posted to the thread (maintenance
              requests also get a work order)

The legal keyword scan runs locally on every message and cannot be turned
off by the classifier: its result is OR-ed with the classifier's flag.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from propagent.clients.reasoning import scan_legal_keywords
from propagent.errors import NotFoundError
from propagent.policy.engine import evaluate_action
from propagent.schemas.domain import (
    OPEN_WORK_ORDER_STATUSES,
    LeaseStatus,
    MessageThread,
    NotificationType,
    WorkOrder,
    WorkOrderCategory,
    WorkOrderPriority,
    WorkOrderStatus,
)
from propagent.schemas.ledger import ActionLogType, ExceptionCategory, Severity
from propagent.schemas.memory import TenantContext
from propagent.schemas.policy import PolicyActionType, PolicyDecision, PolicyResult
from propagent.templates import render_prompt
from propagent.utils import generate_ulid, truncate
from propagent.workflows.base import RunRecorder, WorkflowContext, execute_workflow

logger = logging.getLogger(__name__)

AUTO_REPLY_PREFIX = "[Automated Response]\n\n"
LEGAL_RESPONSE_WINDOW = timedelta(hours=4)
MAX_CONTEXT_WORK_ORDERS = 3

INTENT_PROMPTS = {
    "MAINTENANCE_INTAKE": (
        "Acknowledge the maintenance request and confirm a work order was created. "
        "Provide expected response time (typically 24-48 hours for non-emergency)."
    ),
    "BILLING": (
        "Address billing or payment questions professionally. "
        "Reference the tenant portal for payment history and upcoming charges."
    ),
    "LEASE_INFO": (
        "Answer lease-related questions clearly. "
        "For specific lease term changes, direct them to speak with management."
    ),
    "FAQ": "Answer the general question helpfully and concisely.",
    "RENEWAL_INFO": (
        "Provide information about the lease renewal process. "
        "Encourage them to use the tenant portal to view any renewal offers."
    ),
    "STATUS_UPDATE": (
        "Provide a clear status update. "
        "Be specific about what is known and when they can expect further updates."
    ),
    "COMPLAINT": (
        "Respond with genuine empathy and acknowledgment. "
        "Express commitment to addressing their concern promptly."
    ),
}
DEFAULT_INTENT_PROMPT = "Acknowledge their message and let them know a team member will follow up."

FALLBACK_REPLY = "Thank you for your message. We've received your inquiry and will follow up shortly."


@dataclass(frozen=True)
class TenantCommsTrigger:
    run_id: str
    property_id: str
    thread_id: str


def fallback_draft(subject: str) -> str:
    return f'Thank you for reaching out. A member of our team will be in touch shortly regarding: "{subject}".'


class _TenantCommsRun:
    def __init__(self, ctx: WorkflowContext, rec: RunRecorder, trigger: TenantCommsTrigger):
        self.ctx = ctx
        self.rec = rec
        self.trigger = trigger

    def run(self) -> str:
        ctx = self.ctx
        thread_id = self.trigger.thread_id

        with self.rec.step("Load Thread Context", {"threadId": thread_id}) as step:
            thread = ctx.repos.threads.get(thread_id)
            if thread is None:
                raise NotFoundError("MessageThread", thread_id)
            tenant = ctx.repos.tenants.get(thread.tenant_id)
            if tenant is None:
                raise NotFoundError("Tenant", thread.tenant_id)
            manager_id = ctx.load_property(thread.property_id).manager_id

            latest = thread.latest_from(tenant.user_id)
            if latest is None:
                step.complete({"skipped": True, "reason": "No tenant message found in thread"})
                return "No tenant message to process, skipping"

            step.output = {
                "threadId": thread_id,
                "subject": thread.subject,
                "messagePreview": truncate(latest.body, 80),
                "managerId": manager_id,
            }

        self.thread = thread
        self.tenant_user_id = tenant.user_id
        self.manager_id = manager_id
        self.body = latest.body
        policy = ctx.policy_store.load_policy_for_property(self.trigger.property_id)

        with self.rec.step(
            "Classify Message Intent",
            {"subject": thread.subject, "messagePreview": truncate(self.body, 200)},
        ) as step:
            intent, has_legal = self._classify()
            step.output = {"intent": intent, "hasLegalKeywords": has_legal}

        self._remember_intent(thread.tenant_id, intent, latest.created_at.isoformat())

        with self.rec.step("Policy: MESSAGE_SEND", {"intent": intent, "hasLegalKeywords": has_legal}) as step:
            result = evaluate_action(
                PolicyActionType.MESSAGE_SEND,
                {"intent": intent, "has_legal_keywords": has_legal, "now": ctx.local_now()},
                policy,
            )
            step.log_decision(PolicyActionType.MESSAGE_SEND.value, result)
            step.output = {"decision": result.decision.value, "reason": result.reason}

        if result.decision == PolicyDecision.BLOCK:
            self._handle_block(intent, has_legal)
        elif result.decision == PolicyDecision.APPROVAL:
            self._handle_approval(intent, result)
        else:
            self._handle_allow(intent)

        if self.rec.escalated:
            return "Tenant comms workflow completed with escalation"
        return "Tenant comms autopilot completed, reply sent"

    # -- classification -------------------------------------------------------

    def _classify(self) -> tuple[str, bool]:
        local_hit = scan_legal_keywords(self.body)
        try:
            classification = self.ctx.reasoning.classify(self.thread.subject, self.body)
        except Exception as e:
            logger.warning(
                f"Classification failed, falling back to OTHER: {e}",
                extra={"run_id": self.rec.run_id, "step": "Classify Message Intent"},
            )
            return "OTHER", local_hit
        return classification.intent, local_hit or classification.has_legal_keywords

    def _remember_intent(self, tenant_id: str, intent: str, message_at: str) -> None:
        memory = self.ctx.memory
        previous = memory.get_tenant_context(tenant_id)
        memory.set_tenant_context(tenant_id, TenantContext(
            last_intent=intent,
            message_count=(previous.message_count if previous else 0) + 1,
            last_message_at=message_at,
        ))
        self.rec.log_action(ActionLogType.MEMORY_WRITE, "comms_context", request={"lastIntent": intent})

    # -- BLOCK ----------------------------------------------------------------

    def _handle_block(self, intent: str, has_legal: bool) -> None:
        thread = self.thread
        with self.rec.step(
            "Escalate: Legal/Policy Block",
            {"intent": intent, "hasLegalKeywords": has_legal},
        ) as step:
            is_legal = has_legal or intent == "LEGAL"
            is_harassment = intent == "HARASSMENT"
            if is_harassment:
                title = f"Harassment detected in tenant message, thread: {thread.subject}"
            else:
                title = f"Legal content detected in tenant message, thread: {thread.subject}"
            if is_legal:
                details = (
                    "Message contains legal keywords or legal intent. Requires attorney review "
                    f"before any response is sent. Thread ID: {thread.id}"
                )
            else:
                details = f"Message flagged for harassment. Requires manager review. Thread ID: {thread.id}"

            self.rec.raise_exception(
                Severity.CRITICAL,
                ExceptionCategory.LEGAL,
                title=title,
                details=details,
                context={
                    "threadId": thread.id,
                    "intent": intent,
                    "hasLegalKeywords": has_legal,
                    "messagePreview": truncate(self.body, 200),
                },
                requires_by=self.ctx.now() + LEGAL_RESPONSE_WINDOW,
            )
            self.ctx.notify(
                self.manager_id,
                "legal_block_manager",
                entity_type="MessageThread",
                entity_id=thread.id,
                is_harassment=is_harassment,
                subject=thread.subject,
            )
            step.output = {"escalated": True, "reason": "BLOCK"}

    # -- APPROVAL -------------------------------------------------------------

    def _handle_approval(self, intent: str, result: PolicyResult) -> None:
        thread = self.thread
        with self.rec.step(
            "Generate Draft + Escalate for Review",
            {"intent": intent, "reason": result.reason},
        ) as step:
            try:
                draft = self.ctx.reasoning.draft(
                    render_prompt("draft_review_system", intent=intent),
                    render_prompt("draft_review_user", subject=thread.subject, body=self.body),
                )
            except Exception as e:
                logger.warning(f"Draft generation failed: {e}", extra={"run_id": self.rec.run_id})
                draft = fallback_draft(thread.subject)
            step.log(ActionLogType.API_CALL, "reasoning.draft", response={"draftLength": len(draft)})

            self.rec.raise_exception(
                Severity.MEDIUM,
                ExceptionCategory.SYSTEM,
                title=f'Auto-reply pending review, "{thread.subject}"',
                details=result.reason,
                context={"threadId": thread.id, "intent": intent, "draft": draft},
            )
            self.ctx.notify(
                self.manager_id,
                "draft_review_manager",
                entity_type="MessageThread",
                entity_id=thread.id,
                subject=thread.subject,
                intent=intent,
                draft=draft,
            )
            step.output = {"escalated": True, "draftLength": len(draft)}

    # -- ALLOW ----------------------------------------------------------------

    def _handle_allow(self, intent: str) -> None:
        ctx = self.ctx
        thread = self.thread
        with self.rec.step("Generate & Send Auto-Reply", {"intent": intent}) as step:
            new_work_order_id: Optional[str] = None
            if intent == "MAINTENANCE_INTAKE":
                new_work_order_id = self._create_intake_work_order(step)

            try:
                reply = ctx.reasoning.draft(
                    render_prompt(
                        "auto_reply_system",
                        intent=intent,
                        intent_prompt=INTENT_PROMPTS.get(intent, DEFAULT_INTENT_PROMPT),
                        context_block=self._context_block(thread),
                        work_order_id=new_work_order_id,
                    ),
                    render_prompt("auto_reply_user", subject=thread.subject, body=self.body),
                )
            except Exception as e:
                logger.warning(f"Auto-reply generation failed: {e}", extra={"run_id": self.rec.run_id})
                reply = FALLBACK_REPLY

            final_body = AUTO_REPLY_PREFIX + reply
            try:
                ctx.repos.threads.add_message(thread.id, self.manager_id, final_body, ctx.now())
            except Exception as e:
                logger.error(f"Failed to post reply to thread {thread.id}: {e}", extra={"run_id": self.rec.run_id})
                step.fail(f"Failed to post reply: {e}")
                return
            step.log(
                ActionLogType.API_CALL,
                "threads.add_message",
                response={"threadId": thread.id, "replyLength": len(final_body)},
            )

            ctx.notify(
                self.tenant_user_id,
                "auto_reply_tenant",
                type=NotificationType.GENERAL,
                entity_type="MessageThread",
                entity_id=thread.id,
                reply=reply,
            )
            ctx.notify(
                self.manager_id,
                "auto_reply_manager",
                entity_type="MessageThread",
                entity_id=thread.id,
                subject=thread.subject,
                intent=intent,
                work_order_created=new_work_order_id is not None,
            )

            escalated = False
            if intent == "COMPLAINT":
                self.rec.raise_exception(
                    Severity.MEDIUM,
                    ExceptionCategory.SYSTEM,
                    title=f"Tenant complaint received, {thread.subject}",
                    details=(
                        "Auto-reply was sent but complaint requires follow-up. "
                        f"Message: {truncate(self.body, 200)}"
                    ),
                    context={"threadId": thread.id},
                )
                escalated = True

            step.output = {
                "replySent": True,
                "replyLength": len(final_body),
                "newWorkOrderId": new_work_order_id,
                "escalated": escalated,
            }

    def _create_intake_work_order(self, step) -> Optional[str]:
        try:
            work_order = self.ctx.repos.work_orders.add(WorkOrder(
                id=generate_ulid(),
                property_id=self.trigger.property_id,
                submitted_by_id=self.manager_id,
                title=f"Tenant Request: {self.thread.subject}",
                description=self.body,
                category=WorkOrderCategory.GENERAL,
                priority=WorkOrderPriority.MEDIUM,
                status=WorkOrderStatus.NEW,
                created_at=self.ctx.now(),
            ))
        except Exception as e:
            logger.error(f"Work order create failed for thread {self.thread.id}: {e}", extra={"run_id": self.rec.run_id})
            return None
        step.log(ActionLogType.API_CALL, "work_orders.add", response={"workOrderId": work_order.id})
        return work_order.id

    def _context_block(self, thread: MessageThread) -> str:
        """Active lease and open work orders, used to ground the reply."""
        repos = self.ctx.repos
        lines = []

        for lease in repos.leases.list_for_tenant(thread.tenant_id):
            if lease.status != LeaseStatus.ACTIVE:
                continue
            unit = repos.units.get(lease.unit_id)
            unit_number = unit.unit_number if unit else lease.unit_id
            lines.append(
                f"Active Lease: Unit {unit_number}, ${lease.monthly_rent:g}/mo, "
                f"ends {lease.end_date.date().isoformat()}"
            )
            break

        open_work_orders = [
            wo for wo in repos.work_orders.list_for_property(self.trigger.property_id)
            if wo.status in OPEN_WORK_ORDER_STATUSES
        ][:MAX_CONTEXT_WORK_ORDERS]
        if open_work_orders:
            listed = ", ".join(f'"{wo.title}" ({wo.status.value})' for wo in open_work_orders)
            lines.append(f"Open Work Orders: {listed}")

        return "\n".join(lines)


def run_tenant_comms_autopilot(ctx: WorkflowContext, trigger: TenantCommsTrigger) -> None:
    """Run the tenant comms autopilot for one thread; the outcome is in the ledger."""
    execute_workflow(
        ctx,
        trigger.run_id,
        trigger.property_id,
        "tenant_comms",
        lambda rec: _TenantCommsRun(ctx, rec, trigger).run(),
    )
