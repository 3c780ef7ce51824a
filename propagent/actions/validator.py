"""
Action validation - ownership scope and auto-execution policy.

Two independent checks run before an AgentAction touches anything:

1. validate_action_scope(): every entity the payload references must
   belong, transitively, to a property the actor manages. Returns a
   ScopeCheck with a specific "Forbidden: ..." reason; never raises.
2. auto_execution_policy_decision(): re-derives live context (work order
   category/priority, vendor load, bid amount, message intent) and asks the
   policy engine whether the action may run without a human. Only ALLOW
   permits auto-execution.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable, Optional

from propagent.clients.reasoning import scan_legal_keywords
from propagent.errors import PayloadValidationError
from propagent.policy.engine import evaluate_action
from propagent.policy.store import PolicyStore
from propagent.repositories import Repositories
from propagent.schemas.actions import (
    AcceptBidPayload,
    AgentAction,
    AgentActionType,
    AssignVendorPayload,
    CloseThreadPayload,
    CreateWorkOrderPayload,
    SendBidRequestPayload,
    SendMessagePayload,
    SendRenewalOfferPayload,
)
from propagent.schemas.policy import PolicyActionType, PolicyDecision, PolicyResult
from propagent.utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE_INTENT = "STATUS_UPDATE"


@dataclass(frozen=True)
class ScopeCheck:
    ok: bool
    reason: Optional[str] = None


_OK = ScopeCheck(ok=True)


def _forbidden(reason: str) -> ScopeCheck:
    return ScopeCheck(ok=False, reason=f"Forbidden: {reason}")


class ActionValidator:
    """
    Scope and policy checks for agent actions.

    Args:
        repos: Domain repositories used to resolve ownership
        policy_store: Source of the effective policy per property
        clock: Returns the current UTC time
        tz: Timezone quiet hours are expressed in
    """

    def __init__(
        self,
        repos: Repositories,
        policy_store: PolicyStore,
        clock: Callable[[], datetime] = utcnow,
        tz: tzinfo = timezone.utc,
    ):
        self.repos = repos
        self.policy_store = policy_store
        self._clock = clock
        self._tz = tz

    # =========================================================================
    # SCOPE
    # =========================================================================

    def _manages(self, property_id: Optional[str], actor_id: str) -> bool:
        if property_id is None:
            return False
        prop = self.repos.properties.get(property_id)
        return prop is not None and prop.manager_id == actor_id

    def validate_action_scope(self, action: AgentAction, actor_id: str) -> ScopeCheck:
        """
        Check that everything the action references is within the actor's scope.

        Returns:
            ScopeCheck(ok=True) or ScopeCheck(ok=False, reason="Forbidden: ...")
        """
        if action.manager_id != actor_id:
            return _forbidden("action manager mismatch")

        try:
            payload = action.parsed_payload()
        except PayloadValidationError as e:
            if e.field == "actionType":
                return ScopeCheck(ok=False, reason=f"Unknown action type: {action.action_type}")
            return ScopeCheck(ok=False, reason=f"Invalid payload: {e}")

        if isinstance(payload, SendMessagePayload):
            if payload.is_reply:
                return self._check_thread(payload.thread_id, actor_id)
            return self._check_new_thread(payload, actor_id)
        if isinstance(payload, CloseThreadPayload):
            return self._check_thread(payload.thread_id, actor_id)
        if isinstance(payload, AssignVendorPayload):
            return self._check_work_order_vendors(payload.work_order_id, (payload.vendor_id,), actor_id)
        if isinstance(payload, SendBidRequestPayload):
            return self._check_work_order_vendors(payload.work_order_id, payload.vendor_ids, actor_id)
        if isinstance(payload, AcceptBidPayload):
            return self._check_bid(payload.bid_id, actor_id)
        if isinstance(payload, SendRenewalOfferPayload):
            return self._check_lease(payload.lease_id, actor_id)
        if isinstance(payload, CreateWorkOrderPayload):
            return self._check_new_work_order(payload, actor_id)
        return ScopeCheck(ok=False, reason=f"Unknown action type: {action.action_type}")

    def _check_thread(self, thread_id: str, actor_id: str) -> ScopeCheck:
        thread = self.repos.threads.get(thread_id)
        if thread is None:
            return _forbidden("thread not found")
        if not self._manages(thread.property_id, actor_id):
            return _forbidden("thread is outside manager scope")
        return _OK

    def _check_new_thread(self, payload: SendMessagePayload, actor_id: str) -> ScopeCheck:
        if not self._manages(payload.property_id, actor_id):
            return _forbidden("property is outside manager scope")
        leases = self.repos.leases.list_for_tenant(payload.tenant_id)
        if not any(lease.property_id == payload.property_id for lease in leases):
            return _forbidden("tenant has no lease at this property")
        return _OK

    def _check_work_order_vendors(self, work_order_id: str, vendor_ids, actor_id: str) -> ScopeCheck:
        work_order = self.repos.work_orders.get(work_order_id)
        if work_order is None:
            return _forbidden("work order not found")
        if not self._manages(work_order.property_id, actor_id):
            return _forbidden("work order is outside manager scope")
        for vendor_id in vendor_ids:
            vendor = self.repos.vendors.get(vendor_id)
            if vendor is None or work_order.property_id not in vendor.property_ids:
                return _forbidden("vendor is not linked to the work order's property")
        return _OK

    def _check_bid(self, bid_id: str, actor_id: str) -> ScopeCheck:
        bid = self.repos.bids.get(bid_id)
        if bid is None:
            return _forbidden("bid not found")
        work_order = self.repos.work_orders.get(bid.work_order_id)
        if work_order is None or not self._manages(work_order.property_id, actor_id):
            return _forbidden("bid is outside manager scope")
        return _OK

    def _check_lease(self, lease_id: str, actor_id: str) -> ScopeCheck:
        lease = self.repos.leases.get(lease_id)
        if lease is None:
            return _forbidden("lease not found")
        if not self._manages(lease.property_id, actor_id):
            return _forbidden("lease is outside manager scope")
        return _OK

    def _check_new_work_order(self, payload: CreateWorkOrderPayload, actor_id: str) -> ScopeCheck:
        if not self._manages(payload.property_id, actor_id):
            return _forbidden("property is outside manager scope")
        if payload.unit_id is not None:
            unit = self.repos.units.get(payload.unit_id)
            if unit is None or unit.property_id != payload.property_id:
                return _forbidden("unit does not belong to the property")
        return _OK

    # =========================================================================
    # AUTO-EXECUTION POLICY
    # =========================================================================

    def auto_execution_policy_decision(self, action: AgentAction) -> PolicyResult:
        """
        Decide whether an action may execute without manager approval.

        Malformed payloads and actions whose referenced entities cannot be
        loaded fall back to APPROVAL.
        """
        try:
            payload = action.parsed_payload()
        except PayloadValidationError as e:
            return PolicyResult(PolicyDecision.APPROVAL, f"Invalid payload requires manager review: {e}")

        property_id = action.property_id
        context: dict[str, Any] = {}
        policy_action: str = action.action_type

        if isinstance(payload, AssignVendorPayload):
            work_order = self.repos.work_orders.get(payload.work_order_id)
            if work_order is None:
                return PolicyResult(PolicyDecision.APPROVAL, f"Work order {payload.work_order_id} not found")
            property_id = work_order.property_id
            policy_action = PolicyActionType.WO_ASSIGN_VENDOR.value
            context = {
                "category": work_order.category.value,
                "priority": work_order.priority.value,
                "vendor_open_wo_count": self.repos.work_orders.count_open_for_vendor(payload.vendor_id),
            }
        elif isinstance(payload, AcceptBidPayload):
            bid = self.repos.bids.get(payload.bid_id)
            if bid is None:
                return PolicyResult(PolicyDecision.APPROVAL, f"Bid {payload.bid_id} not found")
            if bid.amount is None:
                return PolicyResult(PolicyDecision.APPROVAL, "Bid has no amount")
            work_order = self.repos.work_orders.get(bid.work_order_id)
            property_id = work_order.property_id if work_order else property_id
            policy_action = PolicyActionType.SPEND_APPROVE.value
            context = {"amount": bid.amount}
        elif isinstance(payload, SendBidRequestPayload):
            work_order = self.repos.work_orders.get(payload.work_order_id)
            property_id = work_order.property_id if work_order else property_id
            policy_action = PolicyActionType.WO_BID_REQUEST.value
        elif isinstance(payload, CreateWorkOrderPayload):
            property_id = payload.property_id
            policy_action = PolicyActionType.WO_CREATE.value
            context = {"priority": payload.priority, "category": payload.category}
        elif isinstance(payload, SendMessagePayload):
            if payload.is_reply:
                thread = self.repos.threads.get(payload.thread_id)
                property_id = thread.property_id if thread else property_id
            else:
                property_id = payload.property_id
            policy_action = PolicyActionType.MESSAGE_SEND.value
            context = {
                "intent": payload.intent or DEFAULT_MESSAGE_INTENT,
                "has_legal_keywords": scan_legal_keywords(payload.body),
                "now": self._clock().astimezone(self._tz),
            }

        policy = self.policy_store.load_policy_for_property(property_id)
        result = evaluate_action(policy_action, context, policy)
        logger.debug(f"Auto-execution decision for {action.id} ({action.action_type}): {result.decision.value}")
        return result
