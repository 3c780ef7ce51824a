"""Tests for notification and prompt templates."""

import pytest
from jinja2 import UndefinedError

from propagent.templates import render_notification, render_prompt


class TestRenderNotification:
    def test_title_and_body(self):
        title, body = render_notification("wo_assigned_tenant", title="Leaky faucet")
        assert title == "Work order assigned"
        assert body == 'Your maintenance request "Leaky faucet" has been assigned and is being handled.'

    def test_conditional_title(self):
        title, _ = render_notification("legal_block_manager", is_harassment=True, subject="Noise")
        assert title == "URGENT: Tenant message flagged for harassment"
        title, _ = render_notification("legal_block_manager", is_harassment=False, subject="Noise")
        assert title == "URGENT: Tenant message contains legal content"

    def test_money_filter(self):
        _, body = render_notification("renewal_offer_tenant", term_months=12, offered_rent=1550.0)
        assert "12 months at $1550/mo" in body

    def test_pluralization(self):
        title, body = render_notification("actions_queued_manager", count=1)
        assert title == "Agent queued 1 action for your review"
        assert "1 proposed action needs" in body
        title, body = render_notification("actions_queued_manager", count=3)
        assert title == "Agent queued 3 actions for your review"
        assert "3 proposed actions need your" in body

    def test_body_truncated(self):
        _, body = render_notification("manager_message_tenant", body="x" * 300)
        assert body == "x" * 120

    def test_compliance_category_spacing(self):
        _, body = render_notification(
            "compliance_block_manager",
            is_overdue=True,
            title="Fire inspection",
            property_name="Maple Court",
            category="FIRE_SAFETY",
            due_date="2026-03-01",
        )
        assert body == "Maple Court · FIRE SAFETY · Due: 2026-03-01"

    def test_missing_variable_raises(self):
        with pytest.raises(UndefinedError):
            render_notification("wo_assigned_tenant")

    def test_unknown_template(self):
        with pytest.raises(KeyError):
            render_notification("no_such_template")


class TestRenderPrompt:
    def test_classify_system_lists_intents(self):
        prompt = render_prompt("classify_system", intents=["FAQ", "MAINTENANCE"], keywords=["lawyer"])
        assert "FAQ, MAINTENANCE" in prompt
        assert "lawyer" in prompt

    def test_auto_reply_optional_sections(self):
        bare = render_prompt(
            "auto_reply_system", intent="FAQ", intent_prompt="Answer briefly.", context_block="", work_order_id=None
        )
        assert "Context:" not in bare
        assert "work order has already been created" not in bare

        full = render_prompt(
            "auto_reply_system",
            intent="MAINTENANCE",
            intent_prompt="Acknowledge the issue.",
            context_block="Unit 101",
            work_order_id="wo-9",
        )
        assert "Context:\nUnit 101" in full
        assert "(ID: wo-9)" in full

    def test_agent_system_includes_limit(self):
        prompt = render_prompt("agent_system", manager_id="mgr-1", snapshot="(none)", tone="friendly", max_actions=10)
        assert "mgr-1" in prompt
        assert "more than 10 actions" in prompt
