"""Tests for propagent.actions.executor."""

import gc
import threading
from datetime import timedelta

import pytest
from conftest import NOW

from propagent.actions.executor import ActionExecutor
from propagent.actions.validator import ActionValidator
from propagent.errors import ActionStateError, ForbiddenError, NotFoundError
from propagent.schemas.actions import AgentAction, AgentActionStatus
from propagent.schemas.domain import (
    BidRequest,
    BidStatus,
    MessageThread,
    RenewalOfferStatus,
    ThreadStatus,
    WorkOrder,
    WorkOrderStatus,
)


@pytest.fixture
def executor(repos, policy_store, notifier, clock):
    validator = ActionValidator(repos, policy_store, clock=clock)
    return ActionExecutor(repos, validator, notifier, clock=clock)


@pytest.fixture
def seeded(repos):
    repos.work_orders.add(WorkOrder(id="wo-1", property_id="prop-1", title="Broken heater"))
    repos.threads.add(MessageThread(id="th-1", property_id="prop-1", tenant_id="ten-1", subject="Heater"))
    for bid_id, vendor_id, status in [
        ("bid-1", "v-1", BidStatus.SUBMITTED),
        ("bid-2", "v-2", BidStatus.PENDING),
    ]:
        repos.bids.add(BidRequest(id=bid_id, work_order_id="wo-1", vendor_id=vendor_id, status=status, amount=300))
    return repos


def _action(action_type, payload, manager_id="mgr-1", action_id="act-1"):
    return AgentAction(id=action_id, manager_id=manager_id, action_type=action_type, payload=payload)


class TestExecuteAction:
    def test_scope_rejection_is_a_result(self, executor, seeded):
        result = executor.execute_action(_action("CLOSE_THREAD", {"threadId": "th-1"}), "mgr-2")
        assert not result.ok
        assert result.error == "Forbidden: action manager mismatch"
        assert seeded.threads.get("th-1").status == ThreadStatus.OPEN

    def test_repository_error_during_scope_check_is_a_result(self, executor, seeded, monkeypatch):
        def unavailable(thread_id):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(seeded.threads, "get", unavailable)
        result = executor.execute_action(_action("CLOSE_THREAD", {"threadId": "th-1"}), "mgr-1")
        assert not result.ok
        assert result.error == "database is locked"

    def test_reply_adds_message_and_notifies_tenant(self, executor, seeded, notifier):
        result = executor.execute_action(
            _action("SEND_MESSAGE", {"threadId": "th-1", "body": "Technician booked for Tuesday"}), "mgr-1"
        )
        assert result.ok
        assert result.detail == "Message sent to existing thread"
        thread = seeded.threads.get("th-1")
        assert thread.messages[-1].body == "Technician booked for Tuesday"
        assert thread.messages[-1].author_id == "mgr-1"
        sent = notifier.for_user("usr-ten-1")
        assert [n.title for n in sent] == ["New message from your manager"]

    def test_new_thread(self, executor, seeded):
        result = executor.execute_action(
            _action("SEND_MESSAGE", {"propertyId": "prop-1", "tenantId": "ten-1", "subject": "Parking", "body": "b"}),
            "mgr-1",
        )
        assert result.ok
        assert result.detail.startswith("Thread created: ")
        thread_id = result.detail.split(": ", 1)[1]
        assert seeded.threads.get(thread_id).subject == "Parking"

    def test_assign_vendor_audited(self, executor, seeded):
        result = executor.execute_action(_action("ASSIGN_VENDOR", {"workOrderId": "wo-1", "vendorId": "v-2"}), "mgr-1")
        assert result.ok
        work_order = seeded.work_orders.get("wo-1")
        assert work_order.assigned_vendor_id == "v-2"
        assert work_order.status == WorkOrderStatus.ASSIGNED
        audit = seeded.audit.list_for_entity("WorkOrder", "wo-1")
        assert audit[0].diff == {"assignedVendorId": "v-2", "status": "ASSIGNED"}

    def test_bid_requests_skip_pending_vendors(self, executor, seeded):
        result = executor.execute_action(
            _action("SEND_BID_REQUEST", {"workOrderId": "wo-1", "vendorIds": ["v-1", "v-2"]}), "mgr-1"
        )
        assert result.detail == "1 bid request(s) created"
        assert len(seeded.bids.list_for_work_order("wo-1", BidStatus.PENDING)) == 2

    def test_accept_bid_declines_other_pending(self, executor, seeded):
        result = executor.execute_action(_action("ACCEPT_BID", {"bidId": "bid-1"}), "mgr-1")
        assert result.ok
        assert seeded.bids.get("bid-1").status == BidStatus.ACCEPTED
        assert seeded.bids.get("bid-2").status == BidStatus.DECLINED
        assert seeded.work_orders.get("wo-1").assigned_vendor_id == "v-1"

    def test_accept_bid_requires_submitted(self, executor, seeded):
        result = executor.execute_action(_action("ACCEPT_BID", {"bidId": "bid-2"}), "mgr-1")
        assert not result.ok
        assert result.error == "Bid status is PENDING, not SUBMITTED"

    def test_renewal_offer_defaults(self, executor, seeded, notifier):
        result = executor.execute_action(_action("SEND_RENEWAL_OFFER", {"leaseId": "lease-1"}), "mgr-1")
        assert result.ok
        offers = seeded.renewal_offers.list_for_lease("lease-1", RenewalOfferStatus.PENDING)
        assert len(offers) == 1
        assert offers[0].offered_rent == 1500
        assert offers[0].term_months == 12
        assert offers[0].expiry_date == NOW + timedelta(days=14)
        assert "12 months at $1500/mo" in notifier.for_user("usr-ten-1")[0].body

    def test_create_work_order(self, executor, seeded):
        payload = {"propertyId": "prop-1", "title": "Paint hallway", "description": "Scuffed", "category": "TURNOVER"}
        result = executor.execute_action(_action("CREATE_WORK_ORDER", payload), "mgr-1")
        work_order_id = result.detail.split(": ", 1)[1]
        work_order = seeded.work_orders.get(work_order_id)
        assert work_order.status == WorkOrderStatus.NEW
        assert work_order.submitted_by_id == "mgr-1"

    def test_close_thread(self, executor, seeded):
        assert executor.execute_action(_action("CLOSE_THREAD", {"threadId": "th-1"}), "mgr-1").ok
        assert seeded.threads.get("th-1").status == ThreadStatus.CLOSED


class TestApproveAction:
    def test_approve_executes_once(self, executor, seeded):
        seeded.actions.add(_action("CLOSE_THREAD", {"threadId": "th-1"}))
        action = executor.approve_action("act-1", "mgr-1")
        assert action.status == AgentActionStatus.APPROVED
        assert action.result == {"ok": True, "detail": "Thread closed"}
        assert action.executed_at == NOW
        with pytest.raises(ActionStateError):
            executor.approve_action("act-1", "mgr-1")

    def test_failed_execution_marks_failed(self, executor, seeded):
        seeded.actions.add(_action("ACCEPT_BID", {"bidId": "bid-2"}))
        assert executor.approve_action("act-1", "mgr-1").status == AgentActionStatus.FAILED

    def test_missing_and_foreign(self, executor, seeded):
        with pytest.raises(NotFoundError):
            executor.approve_action("nope", "mgr-1")
        seeded.actions.add(_action("CLOSE_THREAD", {"threadId": "th-1"}))
        with pytest.raises(ForbiddenError):
            executor.approve_action("act-1", "mgr-2")

    def test_concurrent_approvals_execute_once(self, executor, seeded):
        seeded.actions.add(_action("SEND_MESSAGE", {"threadId": "th-1", "body": "Fixed"}))
        outcomes = []

        def approve():
            try:
                outcomes.append(executor.approve_action("act-1", "mgr-1").status)
            except ActionStateError:
                outcomes.append("rejected")

        threads = [threading.Thread(target=approve) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count(AgentActionStatus.APPROVED) == 1
        assert outcomes.count("rejected") == 3
        assert len(seeded.threads.get("th-1").messages) == 1

    def test_approval_locks_are_released(self, executor, seeded):
        seeded.actions.add(_action("CLOSE_THREAD", {"threadId": "th-1"}))
        executor.approve_action("act-1", "mgr-1")
        gc.collect()
        assert "act-1" not in executor._locks
