"""
Agentic proposal loop.

run_agent_for_manager() shows the reasoning service a snapshot of one
manager's portfolio and lets it call four tools until it stops asking for
tools or MAX_AGENT_TURNS is reached:

- propose_action: record an AgentAction. Types the manager opted into
  auto-execute run immediately when policy says ALLOW and the safety
  governor permits; everything else waits in PENDING_APPROVAL.
- get_best_vendor: top vendors for a category at a property
- draft_message: a tenant message body in the manager's tone
- get_submitted_bids: submitted bids for a work order, cheapest first

The loop never executes anything the executor's scope check would reject,
and it ends quietly if the reasoning service is unavailable.
"""

import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Optional

from propagent.actions import ActionExecutor
from propagent.clients.reasoning import ToolCall, ToolDefinition
from propagent.errors import PayloadValidationError, ReasoningServiceError
from propagent.governor import SafetyGovernor
from propagent.schemas.actions import AgentAction, AgentActionStatus, AgentActionType, parse_action_payload
from propagent.schemas.domain import (
    AgentSettings,
    BidStatus,
    NotificationType,
    RenewalOfferStatus,
    WorkOrderStatus,
)
from propagent.schemas.policy import PolicyDecision
from propagent.selection import rank_vendors
from propagent.templates import render_prompt
from propagent.utils import generate_ulid, truncate
from propagent.workflows.base import WorkflowContext

logger = logging.getLogger(__name__)

MAX_AGENT_TURNS = 10
MAX_PROPOSED_ACTIONS = 10
DRAFT_MAX_TOKENS = 300
UNASSIGNED_GRACE = timedelta(hours=1)
LEASE_LOOKAHEAD = timedelta(days=60)


class AgentTool(str, Enum):
    PROPOSE_ACTION = "propose_action"
    GET_BEST_VENDOR = "get_best_vendor"
    DRAFT_MESSAGE = "draft_message"
    GET_SUBMITTED_BIDS = "get_submitted_bids"


AGENT_TOOLS = [
    ToolDefinition(
        name=AgentTool.PROPOSE_ACTION.value,
        description="Propose or queue an agent action for the manager to review or auto-execute.",
        input_schema={
            "type": "object",
            "properties": {
                "actionType": {"type": "string", "enum": [t.value for t in AgentActionType]},
                "title": {"type": "string"},
                "reasoning": {"type": "string"},
                "propertyId": {"type": "string"},
                "entityType": {"type": "string"},
                "entityId": {"type": "string"},
                "payload": {"type": "object"},
            },
            "required": ["actionType", "title", "reasoning", "payload"],
        },
    ),
    ToolDefinition(
        name=AgentTool.GET_BEST_VENDOR.value,
        description="Find the best vendors for a given category and property.",
        input_schema={
            "type": "object",
            "properties": {
                "category": {
                    "type": "string",
                    "description": "WO category: PLUMBING, HVAC, ELECTRICAL, GENERAL, TURNOVER, OTHER",
                },
                "propertyId": {"type": "string"},
            },
            "required": ["category", "propertyId"],
        },
    ),
    ToolDefinition(
        name=AgentTool.DRAFT_MESSAGE.value,
        description="Draft a professional message body for a tenant.",
        input_schema={
            "type": "object",
            "properties": {
                "context": {"type": "string", "description": "What the message is about"},
                "tone": {"type": "string", "description": "Tone: professional, friendly, concise"},
                "tenantName": {"type": "string"},
            },
            "required": ["context"],
        },
    ),
    ToolDefinition(
        name=AgentTool.GET_SUBMITTED_BIDS.value,
        description="Get submitted bids for a work order.",
        input_schema={
            "type": "object",
            "properties": {"workOrderId": {"type": "string"}},
            "required": ["workOrderId"],
        },
    ),
]


@dataclass
class AgentRunCounters:
    actions_queued: int = 0
    actions_executed: int = 0
    items_reviewed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "actionsQueued": self.actions_queued,
            "actionsExecuted": self.actions_executed,
            "itemsReviewed": self.items_reviewed,
        }


@dataclass(frozen=True)
class PortfolioSnapshot:
    text: str
    items_reviewed: int
    property_count: int


# =============================================================================
# SNAPSHOT
# =============================================================================

def _bid_sort_key(bid) -> tuple:
    return (bid.amount is None, bid.amount or 0)


def build_portfolio_snapshot(ctx: WorkflowContext, manager_id: str) -> PortfolioSnapshot:
    """
    Text summary of what needs the manager's attention, per property.

    Covers NEW unassigned work orders older than an hour (or with submitted
    bids), open threads and ACTIVE leases ending within 60 days.
    """
    repos = ctx.repos
    now = ctx.now()
    properties = repos.properties.list_for_manager(manager_id)
    lines: list[str] = []
    items = 0

    for prop in properties:
        lines.append(f"\n### Property: {prop.name} (id: {prop.id})")

        pending = []
        for wo in repos.work_orders.list_for_property(prop.id):
            bids = sorted(repos.bids.list_for_work_order(wo.id, BidStatus.SUBMITTED), key=_bid_sort_key)
            stale_unassigned = (
                wo.status == WorkOrderStatus.NEW
                and wo.assigned_vendor_id is None
                and wo.created_at <= now - UNASSIGNED_GRACE
            )
            if stale_unassigned or bids:
                pending.append((wo, bids))
        if pending:
            lines.append("**Pending Work Orders:**")
            for wo, bids in pending:
                unit = repos.units.get(wo.unit_id) if wo.unit_id else None
                line = f'- WO {wo.id}: "{wo.title}" status={wo.status.value} unit={unit.unit_number if unit else "N/A"}'
                if bids:
                    listed = ", ".join(_describe_bid(ctx, b) for b in bids)
                    line += f" | Submitted bids: {listed}"
                lines.append(line)
            items += len(pending)

        threads = repos.threads.list_open(prop.id)
        if threads:
            lines.append("**Open Message Threads:**")
            for thread in threads:
                tenant = repos.tenants.get(thread.tenant_id)
                last = max(thread.messages, key=lambda m: m.created_at) if thread.messages else None
                preview = truncate(last.body, 80) if last else ""
                lines.append(
                    f'- Thread {thread.id}: tenant={tenant.name if tenant and tenant.name else "unknown"} '
                    f'lastMsg="{preview}"...'
                )
            items += len(threads)

        leases = repos.leases.list_expiring(prop.id, now + LEASE_LOOKAHEAD)
        if leases:
            lines.append("**Expiring Leases (within 60 days):**")
            for lease in leases:
                tenant = repos.tenants.get(lease.tenant_id)
                unit = repos.units.get(lease.unit_id)
                days_left = (lease.end_date - now).days
                offered = bool(repos.renewal_offers.list_for_lease(lease.id, RenewalOfferStatus.PENDING))
                lines.append(
                    f'- Lease {lease.id}: tenant={tenant.name if tenant and tenant.name else "unknown"} '
                    f"tenantId={lease.tenant_id} unit={unit.unit_number if unit else 'N/A'} "
                    f"expires in {days_left}d rent=${lease.monthly_rent:g}/mo"
                    f"{' [offer already sent]' if offered else ' [no offer sent]'}"
                )
            items += len(leases)

    return PortfolioSnapshot("\n".join(lines), items, len(properties))


def _describe_bid(ctx: WorkflowContext, bid) -> str:
    vendor = ctx.repos.vendors.get(bid.vendor_id)
    amount = "?" if bid.amount is None else f"{bid.amount:g}"
    return f"{vendor.name if vendor else bid.vendor_id} ${amount}"


# =============================================================================
# TOOLS
# =============================================================================

class AgentToolbox:
    """
    Tool implementations for one manager's proposal run.

    Tool methods take the model's raw input dict and return a JSON-able
    result; bad input is reported back as {"error": ...} rather than raised.
    """

    def __init__(
        self,
        ctx: WorkflowContext,
        executor: ActionExecutor,
        settings: AgentSettings,
        counters: AgentRunCounters,
        governor: Optional[SafetyGovernor] = None,
    ):
        self.ctx = ctx
        self.executor = executor
        self.settings = settings
        self.counters = counters
        self.governor = governor

    def call(self, tool_call: ToolCall) -> Any:
        handlers = {
            AgentTool.PROPOSE_ACTION.value: self.propose_action,
            AgentTool.GET_BEST_VENDOR.value: self.get_best_vendor,
            AgentTool.DRAFT_MESSAGE.value: self.draft_message,
            AgentTool.GET_SUBMITTED_BIDS.value: self.get_submitted_bids,
        }
        handler = handlers.get(tool_call.name)
        if handler is None:
            return {"error": "Unknown tool"}
        return handler(tool_call.input)

    def propose_action(self, tool_input: dict[str, Any]) -> dict[str, Any]:
        action_type = tool_input.get("actionType")
        payload = tool_input.get("payload")
        try:
            parse_action_payload(action_type, payload)
        except PayloadValidationError as e:
            return {"error": str(e)}

        manager_id = self.settings.manager_id
        action = AgentAction(
            id=generate_ulid(),
            manager_id=manager_id,
            action_type=str(action_type),
            payload=dict(payload),
            title=str(tool_input.get("title", "")),
            reasoning=str(tool_input.get("reasoning", "")),
            property_id=tool_input.get("propertyId"),
            entity_type=tool_input.get("entityType"),
            entity_id=tool_input.get("entityId"),
            created_at=self.ctx.now(),
        )
        self.ctx.repos.actions.add(action)

        if action.action_type in self.settings.auto_execute_types:
            blocked_reason = self._auto_execution_blocker(action)
            if blocked_reason is None:
                result = self.executor.execute_action(action, manager_id)
                action.status = AgentActionStatus.AUTO_EXECUTED if result.ok else AgentActionStatus.FAILED
                action.result = result.to_dict()
                action.executed_at = self.ctx.now()
                self.ctx.repos.actions.save(action)
                self.counters.actions_executed += 1
                logger.info(f"Auto-executed {action.action_type} {action.id}: ok={result.ok}")
                return {"queued": True, "autoExecuted": True, "actionId": action.id, "execResult": result.to_dict()}
            logger.info(f"Auto-execution of {action.id} declined: {blocked_reason}")
            self.counters.actions_queued += 1
            return {"queued": True, "autoExecuted": False, "actionId": action.id, "reason": blocked_reason}

        self.counters.actions_queued += 1
        return {"queued": True, "autoExecuted": False, "actionId": action.id}

    def _auto_execution_blocker(self, action: AgentAction) -> Optional[str]:
        """Why the action must wait for approval, or None if it may run now."""
        if self.governor is not None:
            check = self.governor.can_execute_autonomy()
            if not check.ok:
                return check.reason
        decision = self.executor.validator.auto_execution_policy_decision(action)
        if decision.decision != PolicyDecision.ALLOW:
            return decision.reason
        return None

    def get_best_vendor(self, tool_input: dict[str, Any]) -> Any:
        category = tool_input.get("category")
        property_id = tool_input.get("propertyId")
        if not isinstance(category, str) or not isinstance(property_id, str):
            return {"error": "category and propertyId are required"}
        vendors = rank_vendors(
            self.ctx.repos.vendors.list_serving(property_id, category),
            as_of=self.ctx.now(),
            require_insurance=True,
        )
        return [
            {
                "id": v.id,
                "name": v.name,
                "performanceScore": v.performance_score,
                "reviewCount": v.review_count,
                "serviceCategories": list(v.service_categories),
            }
            for v in vendors
        ]

    def draft_message(self, tool_input: dict[str, Any]) -> dict[str, Any]:
        context = tool_input.get("context")
        if not isinstance(context, str):
            return {"error": "context is required"}
        prompt = render_prompt(
            "tenant_message_draft",
            tone=tool_input.get("tone") or self.settings.tone,
            tenant_name=tool_input.get("tenantName") or "",
            context=context,
        )
        try:
            return {"draft": self.ctx.reasoning.draft(None, prompt, max_tokens=DRAFT_MAX_TOKENS)}
        except ReasoningServiceError as e:
            return {"error": str(e)}

    def get_submitted_bids(self, tool_input: dict[str, Any]) -> Any:
        work_order_id = tool_input.get("workOrderId")
        if not isinstance(work_order_id, str):
            return {"error": "workOrderId is required"}
        bids = sorted(
            self.ctx.repos.bids.list_for_work_order(work_order_id, BidStatus.SUBMITTED),
            key=_bid_sort_key,
        )
        result = []
        for bid in bids:
            vendor = self.ctx.repos.vendors.get(bid.vendor_id)
            result.append({
                "id": bid.id,
                "workOrderId": bid.work_order_id,
                "amount": bid.amount,
                "status": bid.status.value,
                "vendor": {
                    "id": bid.vendor_id,
                    "name": vendor.name if vendor else None,
                    "performanceScore": vendor.performance_score if vendor else None,
                },
            })
        return result


# =============================================================================
# LOOP
# =============================================================================

def run_agent_for_manager(
    ctx: WorkflowContext,
    executor: ActionExecutor,
    manager_id: str,
    governor: Optional[SafetyGovernor] = None,
) -> AgentRunCounters:
    """
    Review one manager's portfolio and record the proposed actions.

    Returns:
        AgentRunCounters (zero when the manager has no properties)
    """
    counters = AgentRunCounters()
    settings = ctx.repos.settings.get_or_create(manager_id)

    snapshot = build_portfolio_snapshot(ctx, manager_id)
    if snapshot.property_count == 0:
        return counters
    counters.items_reviewed = snapshot.items_reviewed

    system_prompt = render_prompt(
        "agent_system",
        manager_id=manager_id,
        snapshot=snapshot.text,
        tone=settings.tone,
        max_actions=MAX_PROPOSED_ACTIONS,
    )
    toolbox = AgentToolbox(ctx, executor, settings, counters, governor)
    messages: list[dict[str, Any]] = [{"role": "user", "content": render_prompt("agent_user")}]

    for turn_number in range(MAX_AGENT_TURNS):
        try:
            turn = ctx.reasoning.chat_turn(system_prompt, messages, AGENT_TOOLS)
        except ReasoningServiceError as e:
            logger.warning(f"Agent run for {manager_id} stopped at turn {turn_number + 1}: {e}")
            break
        if not turn.has_tool_calls:
            break

        messages.append({
            "role": "assistant",
            "content": json.dumps({
                "text": turn.text,
                "tool_calls": [{"id": c.id, "name": c.name, "input": c.input} for c in turn.tool_calls],
            }),
        })
        results = [
            {"tool_use_id": call.id, "content": toolbox.call(call)}
            for call in turn.tool_calls
        ]
        messages.append({"role": "user", "content": json.dumps(results, default=str)})

    if counters.actions_queued > 0:
        ctx.notify(
            manager_id,
            "actions_queued_manager",
            type=NotificationType.GENERAL,
            entity_type="AgentAction",
            entity_id=manager_id,
            count=counters.actions_queued,
        )

    logger.info(f"Agent run for {manager_id}: {counters.to_dict()}")
    return counters
