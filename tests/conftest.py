"""Shared fixtures: a small seeded portfolio on in-memory backends and a fixed clock."""

from datetime import datetime, timedelta, timezone

import pytest

from propagent.clients.notifications import InMemoryNotifier
from propagent.clients.reasoning import ChatTurn, Classification
from propagent.errors import ReasoningServiceError
from propagent.ledger import InMemoryRunLedger
from propagent.memory import AgentMemory, InMemoryMemoryStore
from propagent.policy.store import InMemoryPolicyStore
from propagent.repositories import Repositories
from propagent.schemas.domain import (
    AgentSettings,
    Lease,
    LeaseStatus,
    Property,
    Tenant,
    Unit,
    Vendor,
)
from propagent.workflows.base import WorkflowContext

# Monday 15:00 UTC, outside the default 21:00-07:00 quiet hours
NOW = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


class FakeReasoningClient:
    """
    Scripted ReasoningClient.

    Set ``classification`` / ``draft_text`` / ``turns``; set ``fail`` to make
    every call raise ReasoningServiceError.
    """

    def __init__(self):
        self.classification = Classification(intent="FAQ", has_legal_keywords=False)
        self.draft_text = "Thanks for reaching out, we are on it."
        self.turns: list[ChatTurn] = []
        self.fail = False
        self.calls: list[tuple] = []

    def classify(self, subject, body):
        self.calls.append(("classify", subject, body))
        if self.fail:
            raise ReasoningServiceError("service down")
        return self.classification

    def draft(self, system_prompt, prompt, max_tokens=512):
        self.calls.append(("draft", system_prompt, prompt))
        if self.fail:
            raise ReasoningServiceError("service down")
        return self.draft_text

    def chat_turn(self, system_prompt, messages, tools):
        self.calls.append(("chat_turn", system_prompt, list(messages)))
        if self.fail:
            raise ReasoningServiceError("service down")
        if not self.turns:
            return ChatTurn(text="done")
        return self.turns.pop(0)


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def repos():
    """
    Portfolio:
        prop-1 "Maple Court" (mgr-1): unit-1 leased to ten-1, vendors v-1 and v-2
        prop-2 "Oak Tower"   (mgr-2): only an ELECTRICAL vendor (v-3)
    """
    r = Repositories.in_memory()
    r.properties.add(Property(id="prop-1", name="Maple Court", manager_id="mgr-1"))
    r.properties.add(Property(id="prop-2", name="Oak Tower", manager_id="mgr-2"))
    r.units.add(Unit(id="unit-1", property_id="prop-1", unit_number="101", monthly_rent=1500))
    r.tenants.add(Tenant(id="ten-1", user_id="usr-ten-1", name="Dana Lee"))
    r.leases.add(Lease(
        id="lease-1",
        unit_id="unit-1",
        tenant_id="ten-1",
        property_id="prop-1",
        status=LeaseStatus.ACTIVE,
        end_date=NOW + timedelta(days=45),
        monthly_rent=1500,
    ))
    r.vendors.add(Vendor(
        id="v-1",
        name="Acme Services",
        service_categories=("GENERAL", "PLUMBING", "HVAC"),
        property_ids=("prop-1",),
        performance_score=4.8,
        review_count=40,
    ))
    r.vendors.add(Vendor(
        id="v-2",
        name="Brightline Repair",
        service_categories=("GENERAL", "HVAC"),
        property_ids=("prop-1",),
        performance_score=4.2,
        review_count=12,
    ))
    r.vendors.add(Vendor(
        id="v-3",
        name="Volt Electric",
        service_categories=("ELECTRICAL",),
        property_ids=("prop-2",),
        performance_score=4.5,
    ))
    r.settings.add(AgentSettings(manager_id="mgr-1", enabled=True))
    r.settings.add(AgentSettings(manager_id="mgr-2", enabled=True))
    return r


@pytest.fixture
def ledger(clock):
    return InMemoryRunLedger(clock=clock)


@pytest.fixture
def memory_store():
    return InMemoryMemoryStore()


@pytest.fixture
def policy_store():
    return InMemoryPolicyStore()


@pytest.fixture
def notifier():
    return InMemoryNotifier()


@pytest.fixture
def reasoning():
    return FakeReasoningClient()


@pytest.fixture
def ctx(repos, ledger, memory_store, policy_store, reasoning, notifier, clock):
    return WorkflowContext(
        repos=repos,
        ledger=ledger,
        memory=AgentMemory(memory_store),
        policy_store=policy_store,
        reasoning=reasoning,
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
def new_run(ledger):
    """Factory for QUEUED runs."""
    def _new_run(property_id="prop-1", trigger_type="event"):
        return ledger.create_run(trigger_type, property_id=property_id)
    return _new_run


def assert_all_steps_terminal(ledger, run_id):
    steps = ledger.get_steps(run_id)
    assert steps, "run recorded no steps"
    for step in steps:
        assert step.status.is_terminal, f"step {step.name} left {step.status.value}"
    assert [s.step_order for s in steps] == list(range(1, len(steps) + 1))
