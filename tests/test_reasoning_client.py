"""Tests for the reasoning service adapters."""

import time
from unittest.mock import MagicMock

import pytest

from propagent.clients.notifications import LoggingNotifier, Notifier
from propagent.clients.reasoning import (
    LLMReasoningClient,
    NoOpReasoningClient,
    ReasoningClient,
    ToolDefinition,
    scan_legal_keywords,
    strip_code_fences,
)
from propagent.errors import ReasoningServiceError
from propagent.schemas.domain import Notification


def _compute(response):
    compute = MagicMock()
    compute.llm_invoke.return_value = {"response": response, "model": "m", "usage": {}}
    return compute


class TestHelpers:
    @pytest.mark.parametrize("text,expected", [
        ("I will call my LAWYER", True),
        ("There is an issue with the sink", True),
        ("Black mold in the bathroom", True),
        ("Kitchen tap is dripping", False),
    ])
    def test_scan_legal_keywords(self, text, expected):
        assert scan_legal_keywords(text) is expected

    def test_strip_code_fences(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert strip_code_fences('  {"a": 1} ') == '{"a": 1}'

    def test_protocols(self):
        assert isinstance(NoOpReasoningClient(), ReasoningClient)
        assert isinstance(LLMReasoningClient(_compute("")), ReasoningClient)
        assert isinstance(LoggingNotifier(), Notifier)


class TestNoOpReasoningClient:
    def test_every_call_reports_unavailable(self):
        client = NoOpReasoningClient()
        with pytest.raises(ReasoningServiceError):
            client.classify("s", "b")
        with pytest.raises(ReasoningServiceError):
            client.draft(None, "p")
        with pytest.raises(ReasoningServiceError):
            client.chat_turn("sys", [], [])


class TestLLMReasoningClient:
    def test_classify_parses_fenced_json(self):
        compute = _compute('```json\n{"intent": "BILLING", "hasLegalKeywords": false}\n```')
        result = LLMReasoningClient(compute, model="small").classify("Rent", "Was my payment received?")

        assert result.intent == "BILLING"
        assert result.has_legal_keywords is False
        kwargs = compute.llm_invoke.call_args.kwargs
        assert kwargs["model"] == "small"
        assert kwargs["max_tokens"] == 256
        assert "Was my payment received?" in kwargs["prompt"]
        assert "BILLING" in kwargs["system_prompt"]

    def test_unknown_intent_becomes_other(self):
        client = LLMReasoningClient(_compute('{"intent": "GOSSIP", "hasLegalKeywords": "yes"}'))
        result = client.classify("s", "b")
        assert result.intent == "OTHER"
        assert result.has_legal_keywords is False

    @pytest.mark.parametrize("response", ["not json", "[1, 2]"])
    def test_unusable_classification(self, response):
        with pytest.raises(ReasoningServiceError):
            LLMReasoningClient(_compute(response)).classify("s", "b")

    def test_draft_strips_whitespace(self):
        compute = _compute("  Hello there.  \n")
        assert LLMReasoningClient(compute).draft("Be brief.", "Say hi", max_tokens=50) == "Hello there."
        assert compute.llm_invoke.call_args.kwargs["system_prompt"] == "Be brief."

    def test_backend_error_wrapped(self):
        compute = MagicMock()
        compute.llm_invoke.side_effect = RuntimeError("quota exceeded")
        with pytest.raises(ReasoningServiceError, match="quota exceeded"):
            LLMReasoningClient(compute).draft(None, "p")

    def test_missing_response_text(self):
        compute = MagicMock()
        compute.llm_invoke.return_value = {"model": "m"}
        with pytest.raises(ReasoningServiceError, match="no text response"):
            LLMReasoningClient(compute).draft(None, "p")

    def test_timeout(self):
        compute = MagicMock()
        compute.llm_invoke.side_effect = lambda **kwargs: time.sleep(0.5)
        with pytest.raises(ReasoningServiceError, match="timed out"):
            LLMReasoningClient(compute, timeout_seconds=0.05).draft(None, "p")

    def test_chat_turn_parses_tool_calls(self):
        compute = _compute(
            '{"text": "Checking bids", "tool_calls": ['
            '{"id": "t1", "name": "get_submitted_bids", "input": {"workOrderId": "wo-1"}},'
            '{"name": "get_best_vendor", "input": "bad"},'
            '{"id": "t3"}'
            "]}"
        )
        tools = [ToolDefinition("get_submitted_bids", "Get bids", {"type": "object"})]
        turn = LLMReasoningClient(compute).chat_turn(
            "You are an agent.", [{"role": "user", "content": {"note": "structured"}}], tools
        )

        assert turn.text == "Checking bids"
        assert [(c.id, c.name, c.input) for c in turn.tool_calls] == [
            ("t1", "get_submitted_bids", {"workOrderId": "wo-1"}),
            ("call-2", "get_best_vendor", {}),
        ]
        kwargs = compute.llm_invoke.call_args.kwargs
        assert "get_submitted_bids" in kwargs["system_prompt"]
        assert "You are an agent." in kwargs["system_prompt"]
        assert '{"note": "structured"}' in kwargs["prompt"]

    def test_chat_turn_without_calls_is_final(self):
        turn = LLMReasoningClient(_compute('{"text": "All done"}')).chat_turn("sys", [], [])
        assert not turn.has_tool_calls


class TestLoggingNotifier:
    def test_logs_instead_of_delivering(self, caplog):
        caplog.set_level("INFO", logger="propagent")
        LoggingNotifier().deliver(Notification(user_id="mgr-1", title="Heads up", body="b"))
        assert "Notification for mgr-1: Heads up" in caplog.text
