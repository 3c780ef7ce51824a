"""Tests for the agentic proposal loop and its tools."""

import json
from datetime import timedelta

import pytest
from conftest import NOW

from propagent.actions import ActionExecutor, ActionValidator
from propagent.agent_loop import AgentRunCounters, AgentToolbox, build_portfolio_snapshot, run_agent_for_manager
from propagent.clients.reasoning import ChatTurn, ToolCall
from propagent.governor import SafetyGovernor
from propagent.schemas.actions import AgentActionStatus
from propagent.schemas.domain import (
    AgentSettings,
    BidRequest,
    BidStatus,
    Message,
    MessageThread,
    Vendor,
    WorkOrder,
    WorkOrderStatus,
)


@pytest.fixture
def executor(ctx):
    validator = ActionValidator(ctx.repos, ctx.policy_store, clock=ctx.clock)
    return ActionExecutor(ctx.repos, validator, ctx.notifier, clock=ctx.clock)


@pytest.fixture
def governor(ctx):
    return SafetyGovernor(ctx.memory.store, ctx.ledger, ctx.policy_store, clock=ctx.clock)


@pytest.fixture
def stale_work_order(repos):
    repos.work_orders.add(WorkOrder(
        id="wo-1", property_id="prop-1", unit_id="unit-1", title="Dishwasher leak",
        created_at=NOW - timedelta(hours=2),
    ))


def _propose(call_id, action_type, payload):
    return ToolCall(
        id=call_id,
        name="propose_action",
        input={"actionType": action_type, "title": f"{action_type} proposal", "reasoning": "needed", "payload": payload},
    )


def _tool_results(reasoning):
    """Tool results sent back to the model in the final chat turn."""
    last_messages = [c for c in reasoning.calls if c[0] == "chat_turn"][-1][2]
    return json.loads(last_messages[-1]["content"])


# =============================================================================
# Snapshot
# =============================================================================

class TestPortfolioSnapshot:
    def test_lists_attention_items(self, ctx, repos, stale_work_order):
        repos.work_orders.add(WorkOrder(id="wo-fresh", property_id="prop-1", title="Just filed", created_at=NOW))
        repos.threads.add(MessageThread(
            id="th-1", property_id="prop-1", tenant_id="ten-1", subject="Noise",
            messages=[Message(id="m-1", thread_id="th-1", author_id="usr-ten-1", body="Loud music upstairs", created_at=NOW)],
        ))
        snapshot = build_portfolio_snapshot(ctx, "mgr-1")

        assert snapshot.property_count == 1
        assert snapshot.items_reviewed == 3
        assert '- WO wo-1: "Dishwasher leak" status=NEW unit=101' in snapshot.text
        assert "wo-fresh" not in snapshot.text
        assert 'tenant=Dana Lee lastMsg="Loud music upstairs"' in snapshot.text
        assert "expires in 45d rent=$1500/mo [no offer sent]" in snapshot.text

    def test_submitted_bids_listed_cheapest_first(self, ctx, repos):
        repos.work_orders.add(WorkOrder(
            id="wo-2", property_id="prop-1", title="Roof patch", status=WorkOrderStatus.NEW, created_at=NOW,
        ))
        repos.bids.add(BidRequest(id="b-1", work_order_id="wo-2", vendor_id="v-1", status=BidStatus.SUBMITTED, amount=900))
        repos.bids.add(BidRequest(id="b-2", work_order_id="wo-2", vendor_id="v-2", status=BidStatus.SUBMITTED, amount=450))
        snapshot = build_portfolio_snapshot(ctx, "mgr-1")
        assert "Submitted bids: Brightline Repair $450, Acme Services $900" in snapshot.text


# =============================================================================
# Loop
# =============================================================================

class TestRunAgentForManager:
    def test_no_properties(self, ctx, executor, reasoning):
        counters = run_agent_for_manager(ctx, executor, "mgr-nobody")
        assert counters == AgentRunCounters()
        assert reasoning.calls == []

    def test_proposal_queued_and_manager_notified(self, ctx, repos, executor, reasoning, notifier):
        reasoning.turns = [ChatTurn(tool_calls=[
            _propose("c1", "SEND_RENEWAL_OFFER", {"leaseId": "lease-1", "offeredRent": 1550, "termMonths": 12}),
        ])]
        counters = run_agent_for_manager(ctx, executor, "mgr-1")

        assert counters.actions_queued == 1
        assert counters.actions_executed == 0
        assert counters.items_reviewed == 1
        (action,) = repos.actions.list_for_manager("mgr-1")
        assert action.status == AgentActionStatus.PENDING_APPROVAL
        assert action.payload["offeredRent"] == 1550
        assert repos.renewal_offers.list_for_lease("lease-1") == []
        assert [n.title for n in notifier.for_user("mgr-1")] == ["Agent queued 1 action for your review"]

    def test_opted_in_type_auto_executes(self, ctx, repos, executor, reasoning, notifier, stale_work_order):
        repos.settings.save(AgentSettings(manager_id="mgr-1", enabled=True, auto_execute_types=("ASSIGN_VENDOR",)))
        reasoning.turns = [ChatTurn(tool_calls=[
            _propose("c1", "ASSIGN_VENDOR", {"workOrderId": "wo-1", "vendorId": "v-1"}),
        ])]
        counters = run_agent_for_manager(ctx, executor, "mgr-1")

        assert counters.actions_executed == 1
        assert counters.actions_queued == 0
        (action,) = repos.actions.list_for_manager("mgr-1")
        assert action.status == AgentActionStatus.AUTO_EXECUTED
        assert action.result["ok"] is True
        assert repos.work_orders.get("wo-1").assigned_vendor_id == "v-1"
        assert notifier.for_user("mgr-1") == []
        assert _tool_results(reasoning)[0]["content"]["autoExecuted"] is True

    def test_kill_switch_declines_auto_execution(self, ctx, repos, executor, reasoning, governor, stale_work_order):
        repos.settings.save(AgentSettings(manager_id="mgr-1", enabled=True, auto_execute_types=("ASSIGN_VENDOR",)))
        governor.set_kill_switch(True, "maintenance window")
        reasoning.turns = [ChatTurn(tool_calls=[
            _propose("c1", "ASSIGN_VENDOR", {"workOrderId": "wo-1", "vendorId": "v-1"}),
        ])]
        counters = run_agent_for_manager(ctx, executor, "mgr-1", governor=governor)

        assert counters.actions_queued == 1
        (action,) = repos.actions.list_for_manager("mgr-1")
        assert action.status == AgentActionStatus.PENDING_APPROVAL
        assert repos.work_orders.get("wo-1").assigned_vendor_id is None
        result = _tool_results(reasoning)[0]["content"]
        assert result == {"queued": True, "autoExecuted": False, "actionId": action.id, "reason": "maintenance window"}

    def test_policy_declines_auto_execution(self, ctx, repos, executor, reasoning):
        repos.settings.save(AgentSettings(manager_id="mgr-1", enabled=True, auto_execute_types=("CREATE_WORK_ORDER",)))
        reasoning.turns = [ChatTurn(tool_calls=[_propose("c1", "CREATE_WORK_ORDER", {
            "propertyId": "prop-1", "title": "Gas smell", "description": "Lobby", "priority": "EMERGENCY",
        })])]
        counters = run_agent_for_manager(ctx, executor, "mgr-1")

        assert counters.actions_queued == 1
        assert repos.work_orders.list_for_property("prop-1") == []

    def test_invalid_payload_reported_to_model(self, ctx, repos, executor, reasoning):
        reasoning.turns = [ChatTurn(tool_calls=[_propose("c1", "ACCEPT_BID", {})])]
        counters = run_agent_for_manager(ctx, executor, "mgr-1")

        assert counters.actions_queued == 0
        assert repos.actions.list_for_manager("mgr-1") == []
        result = _tool_results(reasoning)[0]
        assert result["tool_use_id"] == "c1"
        assert "bidId" in result["content"]["error"]

    def test_turn_limit(self, ctx, executor, reasoning):
        reasoning.turns = [
            ChatTurn(tool_calls=[ToolCall(id=f"c{i}", name="get_submitted_bids", input={"workOrderId": "wo-x"})])
            for i in range(15)
        ]
        run_agent_for_manager(ctx, executor, "mgr-1")
        assert len([c for c in reasoning.calls if c[0] == "chat_turn"]) == 10

    def test_reasoning_outage_ends_quietly(self, ctx, executor, reasoning):
        reasoning.fail = True
        counters = run_agent_for_manager(ctx, executor, "mgr-1")
        assert counters.actions_queued == 0
        assert counters.items_reviewed == 1


# =============================================================================
# Tools
# =============================================================================

class TestAgentToolbox:
    @pytest.fixture
    def toolbox(self, ctx, executor, repos):
        settings = repos.settings.get("mgr-1")
        return AgentToolbox(ctx, executor, settings, AgentRunCounters())

    def test_unknown_tool(self, toolbox):
        assert toolbox.call(ToolCall(id="x", name="launch", input={})) == {"error": "Unknown tool"}

    def test_best_vendor_requires_valid_insurance(self, toolbox, repos):
        repos.vendors.add(Vendor(
            id="v-9", name="Lapsed Co", service_categories=("HVAC",), property_ids=("prop-1",),
            performance_score=5.0, insurance_expiry=NOW - timedelta(days=1),
        ))
        result = toolbox.get_best_vendor({"category": "HVAC", "propertyId": "prop-1"})
        assert [v["id"] for v in result] == ["v-1", "v-2"]
        assert result[0]["serviceCategories"] == ["GENERAL", "PLUMBING", "HVAC"]

    def test_best_vendor_missing_input(self, toolbox):
        assert toolbox.get_best_vendor({"category": "HVAC"}) == {"error": "category and propertyId are required"}

    def test_draft_message_uses_manager_tone(self, toolbox, reasoning):
        assert toolbox.draft_message({"context": "rent increase", "tenantName": "Dana"}) == {
            "draft": "Thanks for reaching out, we are on it."
        }
        prompt = reasoning.calls[-1][2]
        assert prompt.startswith("Write a professional message to tenant Dana about: rent increase.")

    def test_draft_message_reports_outage(self, toolbox, reasoning):
        reasoning.fail = True
        assert toolbox.draft_message({"context": "x"}) == {"error": "service down"}

    def test_submitted_bids(self, toolbox, repos):
        repos.bids.add(BidRequest(id="b-1", work_order_id="wo-1", vendor_id="v-1", status=BidStatus.SUBMITTED, amount=300))
        repos.bids.add(BidRequest(id="b-2", work_order_id="wo-1", vendor_id="v-2", status=BidStatus.PENDING))
        result = toolbox.get_submitted_bids({"workOrderId": "wo-1"})
        assert [b["id"] for b in result] == ["b-1"]
        assert result[0]["vendor"]["name"] == "Acme Services"
