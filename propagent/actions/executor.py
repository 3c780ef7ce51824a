"""
Action executor - performs the side effects of an AgentAction.

execute_action() never raises: every outcome, including a scope rejection
or an unexpected repository error, comes back as an ActionResult. Order of
checks:

1. action.manager_id must equal the actor
2. validate_action_scope() must pass
3. dispatch on the action type

approve_action() is the human approval path for PENDING_APPROVAL actions.
It holds a per-action lock so two concurrent approvals cannot both execute.
"""

import logging
import threading
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from propagent.actions.validator import ActionValidator
from propagent.clients.notifications import Notifier
from propagent.errors import ActionStateError, ForbiddenError, NotFoundError, PayloadValidationError
from propagent.repositories import Repositories
from propagent.schemas.actions import (
    AcceptBidPayload,
    AgentAction,
    AgentActionStatus,
    AssignVendorPayload,
    CloseThreadPayload,
    CreateWorkOrderPayload,
    SendBidRequestPayload,
    SendMessagePayload,
    SendRenewalOfferPayload,
)
from propagent.schemas.domain import (
    AuditRecord,
    BidRequest,
    BidStatus,
    MessageThread,
    Notification,
    NotificationType,
    RenewalOffer,
    ThreadStatus,
    WorkOrder,
    WorkOrderCategory,
    WorkOrderPriority,
    WorkOrderStatus,
)
from propagent.templates import render_notification
from propagent.utils import generate_ulid, utcnow

logger = logging.getLogger(__name__)

DEFAULT_OFFER_EXPIRY_DAYS = 14
DEFAULT_TERM_MONTHS = 12


@dataclass(frozen=True)
class ActionResult:
    ok: bool
    detail: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"ok": self.ok}
        if self.detail is not None:
            result["detail"] = self.detail
        if self.error is not None:
            result["error"] = self.error
        return result


class ActionExecutor:
    """
    Executes validated agent actions against the domain repositories.

    Args:
        repos: Domain repositories
        validator: Scope checker run before every execution
        notifier: Delivery for tenant-facing notifications
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        repos: Repositories,
        validator: ActionValidator,
        notifier: Notifier,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repos = repos
        self.validator = validator
        self.notifier = notifier
        self._clock = clock
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    # =========================================================================
    # EXECUTION
    # =========================================================================

    def execute_action(self, action: AgentAction, actor_id: str) -> ActionResult:
        """
        Execute an action on behalf of ``actor_id``.

        Returns:
            ActionResult; ok=False carries the rejection or failure reason
        """
        try:
            check = self.validator.validate_action_scope(action, actor_id)
            if not check.ok:
                logger.warning(f"Action {action.id} rejected: {check.reason}")
                return ActionResult(ok=False, error=check.reason)

            payload = action.parsed_payload()
            if isinstance(payload, SendMessagePayload):
                return self._send_message(payload, actor_id)
            if isinstance(payload, AssignVendorPayload):
                return self._assign_vendor(payload, actor_id)
            if isinstance(payload, SendBidRequestPayload):
                return self._send_bid_requests(payload)
            if isinstance(payload, AcceptBidPayload):
                return self._accept_bid(payload, actor_id)
            if isinstance(payload, SendRenewalOfferPayload):
                return self._send_renewal_offer(payload, actor_id)
            if isinstance(payload, CreateWorkOrderPayload):
                return self._create_work_order(payload, actor_id)
            if isinstance(payload, CloseThreadPayload):
                return self._close_thread(payload)
            return ActionResult(ok=False, error=f"Unknown action type: {action.action_type}")
        except PayloadValidationError as e:
            return ActionResult(ok=False, error=f"Invalid payload: {e}")
        except Exception as e:
            logger.exception(f"Action {action.id} ({action.action_type}) failed")
            return ActionResult(ok=False, error=str(e) or type(e).__name__)

    def _notify_tenant(self, tenant_id: str, template: str, entity_type: str, entity_id: str, **variables) -> None:
        tenant = self.repos.tenants.get(tenant_id)
        if tenant is None or not tenant.user_id:
            return
        title, body = render_notification(template, **variables)
        self.notifier.deliver(Notification(
            user_id=tenant.user_id,
            title=title,
            body=body,
            type=NotificationType.GENERAL,
            entity_type=entity_type,
            entity_id=entity_id,
            created_at=self._clock(),
        ))

    def _send_message(self, payload: SendMessagePayload, actor_id: str) -> ActionResult:
        now = self._clock()
        if payload.is_reply:
            self.repos.threads.add_message(payload.thread_id, actor_id, payload.body, now)
            thread = self.repos.threads.get(payload.thread_id)
            if thread is not None:
                self._notify_tenant(
                    thread.tenant_id, "manager_message_tenant", "MessageThread", thread.id, body=payload.body,
                )
            return ActionResult(ok=True, detail="Message sent to existing thread")

        thread = self.repos.threads.add(MessageThread(
            id=generate_ulid(),
            property_id=payload.property_id,
            tenant_id=payload.tenant_id,
            subject=payload.subject,
            updated_at=now,
        ))
        self.repos.threads.add_message(thread.id, actor_id, payload.body, now)
        self._notify_tenant(
            thread.tenant_id, "manager_message_tenant", "MessageThread", thread.id, body=payload.body,
        )
        return ActionResult(ok=True, detail=f"Thread created: {thread.id}")

    def _assign_vendor(self, payload: AssignVendorPayload, actor_id: str) -> ActionResult:
        work_order = self.repos.work_orders.get(payload.work_order_id)
        if work_order is None:
            raise NotFoundError("WorkOrder", payload.work_order_id)
        work_order.assigned_vendor_id = payload.vendor_id
        work_order.status = WorkOrderStatus.ASSIGNED
        self.repos.work_orders.save(work_order)
        self.repos.audit.write(AuditRecord(
            actor_user_id=actor_id,
            action="UPDATE",
            entity_type="WorkOrder",
            entity_id=work_order.id,
            diff={"assignedVendorId": payload.vendor_id, "status": WorkOrderStatus.ASSIGNED.value},
            created_at=self._clock(),
        ))
        return ActionResult(ok=True, detail="Vendor assigned and WO moved to ASSIGNED")

    def _send_bid_requests(self, payload: SendBidRequestPayload) -> ActionResult:
        pending = {
            b.vendor_id
            for b in self.repos.bids.list_for_work_order(payload.work_order_id, BidStatus.PENDING)
        }
        created = 0
        for vendor_id in payload.vendor_ids:
            if vendor_id in pending:
                continue
            self.repos.bids.add(BidRequest(
                id=generate_ulid(),
                work_order_id=payload.work_order_id,
                vendor_id=vendor_id,
                status=BidStatus.PENDING,
                created_at=self._clock(),
            ))
            created += 1
        return ActionResult(ok=True, detail=f"{created} bid request(s) created")

    def _accept_bid(self, payload: AcceptBidPayload, actor_id: str) -> ActionResult:
        bid = self.repos.bids.get(payload.bid_id)
        if bid is None:
            return ActionResult(ok=False, error="Bid not found")
        if bid.status != BidStatus.SUBMITTED:
            return ActionResult(ok=False, error=f"Bid status is {bid.status.value}, not SUBMITTED")

        bid.status = BidStatus.ACCEPTED
        self.repos.bids.save(bid)

        work_order = self.repos.work_orders.get(bid.work_order_id)
        if work_order is None:
            raise NotFoundError("WorkOrder", bid.work_order_id)
        work_order.assigned_vendor_id = bid.vendor_id
        work_order.status = WorkOrderStatus.ASSIGNED
        self.repos.work_orders.save(work_order)

        for other in self.repos.bids.list_for_work_order(bid.work_order_id, BidStatus.PENDING):
            if other.id != bid.id:
                other.status = BidStatus.DECLINED
                self.repos.bids.save(other)

        self.repos.audit.write(AuditRecord(
            actor_user_id=actor_id,
            action="UPDATE",
            entity_type="BidRequest",
            entity_id=bid.id,
            diff={"status": BidStatus.ACCEPTED.value, "workOrderId": bid.work_order_id},
            created_at=self._clock(),
        ))
        return ActionResult(ok=True, detail="Bid accepted, WO assigned to vendor")

    def _send_renewal_offer(self, payload: SendRenewalOfferPayload, actor_id: str) -> ActionResult:
        lease = self.repos.leases.get(payload.lease_id)
        if lease is None:
            return ActionResult(ok=False, error=f"Lease {payload.lease_id} not found")

        expiry_days = payload.expiry_days if payload.expiry_days is not None else DEFAULT_OFFER_EXPIRY_DAYS
        offered_rent = payload.offered_rent if payload.offered_rent is not None else lease.monthly_rent
        term_months = payload.term_months if payload.term_months is not None else DEFAULT_TERM_MONTHS

        offer = self.repos.renewal_offers.add(RenewalOffer(
            id=generate_ulid(),
            lease_id=lease.id,
            offered_rent=offered_rent,
            term_months=term_months,
            expiry_date=self._clock() + timedelta(days=expiry_days),
            notes=payload.notes,
        ))
        self._notify_tenant(
            lease.tenant_id,
            "renewal_offer_tenant",
            "LeaseRenewalOffer",
            offer.id,
            term_months=term_months,
            offered_rent=offered_rent,
        )
        self.repos.audit.write(AuditRecord(
            actor_user_id=actor_id,
            action="CREATE",
            entity_type="LeaseRenewalOffer",
            entity_id=offer.id,
            created_at=self._clock(),
        ))
        return ActionResult(ok=True, detail=f"Renewal offer sent: {offer.id}")

    def _create_work_order(self, payload: CreateWorkOrderPayload, actor_id: str) -> ActionResult:
        work_order = self.repos.work_orders.add(WorkOrder(
            id=generate_ulid(),
            property_id=payload.property_id,
            unit_id=payload.unit_id,
            submitted_by_id=actor_id,
            title=payload.title,
            description=payload.description,
            category=WorkOrderCategory(payload.category),
            priority=WorkOrderPriority(payload.priority),
            status=WorkOrderStatus.NEW,
            created_at=self._clock(),
        ))
        self.repos.audit.write(AuditRecord(
            actor_user_id=actor_id,
            action="CREATE",
            entity_type="WorkOrder",
            entity_id=work_order.id,
            created_at=self._clock(),
        ))
        return ActionResult(ok=True, detail=f"Work order created: {work_order.id}")

    def _close_thread(self, payload: CloseThreadPayload) -> ActionResult:
        thread = self.repos.threads.get(payload.thread_id)
        if thread is None:
            raise NotFoundError("MessageThread", payload.thread_id)
        thread.status = ThreadStatus.CLOSED
        self.repos.threads.save(thread)
        return ActionResult(ok=True, detail="Thread closed")

    # =========================================================================
    # APPROVAL
    # =========================================================================

    def _lock_for(self, action_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(action_id, threading.Lock())

    def approve_action(self, action_id: str, actor_id: str) -> AgentAction:
        """
        Approve and execute a PENDING_APPROVAL action.

        Returns:
            The updated action, APPROVED if execution succeeded, else FAILED

        Raises:
            NotFoundError: If the action does not exist
            ForbiddenError: If the action belongs to another manager
            ActionStateError: If the action is not PENDING_APPROVAL
        """
        with self._lock_for(action_id):
            action = self.repos.actions.get(action_id)
            if action is None:
                raise NotFoundError("AgentAction", action_id)
            if action.manager_id != actor_id:
                raise ForbiddenError("Forbidden")
            if action.status != AgentActionStatus.PENDING_APPROVAL:
                raise ActionStateError(f"Action is already {action.status.value}")

            result = self.execute_action(action, actor_id)
            now = self._clock()
            action.status = AgentActionStatus.APPROVED if result.ok else AgentActionStatus.FAILED
            action.result = result.to_dict()
            action.executed_at = now
            action.responded_at = now
            self.repos.actions.save(action)

        logger.info(f"Action {action_id} approved by {actor_id}: {action.status.value}")
        return action
