"""
Reasoning (LLM) service client.

Workflows and the agent loop talk to the reasoning service through the
ReasoningClient protocol:

- classify(): tenant message -> Classification(intent, has_legal_keywords)
- draft(): free-text completion for replies and message drafts
- chat_turn(): one turn of the tool-using proposal loop

Every method raises ReasoningServiceError when the service fails or returns
something unusable; callers own the fallback (intent OTHER, canned reply
text, end of the proposal loop).

LLMReasoningClient adapts any ComputeClient (``llm_invoke`` returning
{"response", "model", "usage"}) to this protocol. Tool turns are exchanged as
a JSON envelope rendered from the ``tool_protocol`` prompt template, so the
compute backend does not need native tool support.
"""

import json
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

from propagent.errors import ReasoningServiceError
from propagent.templates import render_prompt

logger = logging.getLogger(__name__)

VALID_INTENTS = (
    "MAINTENANCE_INTAKE",
    "BILLING",
    "LEASE_INFO",
    "FAQ",
    "RENEWAL_INFO",
    "STATUS_UPDATE",
    "COMPLAINT",
    "LEGAL",
    "HARASSMENT",
    "OTHER",
)

LEGAL_KEYWORDS = (
    "lawsuit",
    "sue",
    "attorney",
    "lawyer",
    "legal action",
    "discrimination",
    "harassment",
    "eviction notice",
    "habitability",
    "uninhabitable",
    "breach of contract",
    "negligence",
    "personal injury",
    "threat",
    "threatening",
    "mold",
    "retaliation",
)


def scan_legal_keywords(text: str) -> bool:
    """
    Case-insensitive substring scan for legal keywords.

    Matches substrings, so "sue" also matches "issue".

        >>> scan_legal_keywords("My lawyer will call you")
        True
        >>> scan_legal_keywords("Kitchen tap is dripping")
        False
    """
    lowered = text.lower()
    return any(keyword in lowered for keyword in LEGAL_KEYWORDS)


@dataclass(frozen=True)
class Classification:
    intent: str
    has_legal_keywords: bool


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    input: dict[str, Any]


@dataclass
class ChatTurn:
    """One assistant turn: optional text plus the tool calls it requested."""
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@runtime_checkable
class ReasoningClient(Protocol):
    """
    Protocol for reasoning-service operations.

    This interface abstracts the LLM so that:
    1. Workflows have no model-vendor imports
    2. The backend can be swapped (hosted API, local model, scripted fake)
    3. Tests drive every branch through fake implementations
    """

    def classify(self, subject: str, body: str) -> Classification:
        """Classify a tenant message into one of VALID_INTENTS."""
        ...

    def draft(self, system_prompt: Optional[str], prompt: str, max_tokens: int = 512) -> str:
        """Free-text completion, stripped of surrounding whitespace."""
        ...

    def chat_turn(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[ToolDefinition],
    ) -> ChatTurn:
        """
        Run one turn of a tool-using conversation.

        Args:
            system_prompt: Instructions and context for the whole conversation
            messages: Transcript so far, each {"role": ..., "content": ...}
            tools: Tools the model may call

        Returns:
            ChatTurn; no tool calls means the model is done
        """
        ...


class NoOpReasoningClient:
    """
    No-op implementation of ReasoningClient.

    Reports the service as unavailable on every call, so workflows take
    their fallback paths and the proposal loop ends immediately.
    """

    def classify(self, subject: str, body: str) -> Classification:
        raise ReasoningServiceError("No reasoning service configured")

    def draft(self, system_prompt: Optional[str], prompt: str, max_tokens: int = 512) -> str:
        raise ReasoningServiceError("No reasoning service configured")

    def chat_turn(self, system_prompt, messages, tools) -> ChatTurn:
        raise ReasoningServiceError("No reasoning service configured")


@runtime_checkable
class ComputeClient(Protocol):
    """Protocol for a raw LLM compute backend."""

    def llm_invoke(
        self,
        prompt: str,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        system_prompt: str | None = None,
    ) -> dict[str, Any]:
        """
        Invoke an LLM and return the response.

        Returns:
            Dict with {"response": str, "model": str, "usage": {...}}
        """
        ...


_FENCE_START = re.compile(r"^```(?:json)?\n?")
_FENCE_END = re.compile(r"\n?```$")


def strip_code_fences(text: str) -> str:
    """
    Remove a surrounding markdown code fence.

        >>> strip_code_fences('```json\\n{"a": 1}\\n```')
        '{"a": 1}'
    """
    text = text.strip()
    return _FENCE_END.sub("", _FENCE_START.sub("", text)).strip()


class LLMReasoningClient:
    """
    ReasoningClient backed by a ComputeClient.

    Each call runs on a worker thread and is abandoned after
    ``timeout_seconds``; the compute backend itself is not interrupted.
    """

    def __init__(
        self,
        compute: ComputeClient,
        model: Optional[str] = None,
        timeout_seconds: float = 30.0,
    ):
        self._compute = compute
        self._model = model
        self._timeout_seconds = timeout_seconds
        self._pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="propagent-llm")

    def _invoke(self, prompt: str, system_prompt: Optional[str], max_tokens: int) -> str:
        future = self._pool.submit(
            self._compute.llm_invoke,
            prompt=prompt,
            model=self._model,
            max_tokens=max_tokens,
            system_prompt=system_prompt,
        )
        try:
            result = future.result(timeout=self._timeout_seconds)
        except FutureTimeoutError as e:
            future.cancel()
            raise ReasoningServiceError(
                f"Reasoning service timed out after {self._timeout_seconds}s"
            ) from e
        except Exception as e:
            raise ReasoningServiceError(f"Reasoning service call failed: {e}") from e

        response = result.get("response") if isinstance(result, dict) else None
        if not isinstance(response, str):
            raise ReasoningServiceError("Reasoning service returned no text response")
        return response.strip()

    def _invoke_json(self, prompt: str, system_prompt: Optional[str], max_tokens: int) -> Any:
        raw = self._invoke(prompt, system_prompt, max_tokens)
        try:
            return json.loads(strip_code_fences(raw))
        except json.JSONDecodeError as e:
            raise ReasoningServiceError(f"Reasoning service returned invalid JSON: {e}") from e

    def classify(self, subject: str, body: str) -> Classification:
        parsed = self._invoke_json(
            prompt=render_prompt("classify_user", subject=subject, body=body),
            system_prompt=render_prompt("classify_system", intents=VALID_INTENTS, keywords=LEGAL_KEYWORDS),
            max_tokens=256,
        )
        if not isinstance(parsed, dict):
            raise ReasoningServiceError("Classification response is not a JSON object")

        intent = parsed.get("intent")
        if intent not in VALID_INTENTS:
            logger.debug(f"Unrecognised intent {intent!r}, using OTHER")
            intent = "OTHER"
        return Classification(intent=intent, has_legal_keywords=parsed.get("hasLegalKeywords") is True)

    def draft(self, system_prompt: Optional[str], prompt: str, max_tokens: int = 512) -> str:
        return self._invoke(prompt, system_prompt, max_tokens)

    def chat_turn(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[ToolDefinition],
    ) -> ChatTurn:
        transcript = [
            {
                "role": m["role"],
                "content": m["content"] if isinstance(m["content"], str) else json.dumps(m["content"]),
            }
            for m in messages
        ]
        parsed = self._invoke_json(
            prompt=render_prompt("tool_transcript", messages=transcript),
            system_prompt=render_prompt("tool_protocol", system_prompt=system_prompt, tools=tools),
            max_tokens=2048,
        )
        if not isinstance(parsed, dict):
            raise ReasoningServiceError("Tool turn response is not a JSON object")

        calls = []
        for index, raw_call in enumerate(parsed.get("tool_calls") or []):
            if not isinstance(raw_call, dict) or not isinstance(raw_call.get("name"), str):
                logger.warning(f"Ignoring malformed tool call: {raw_call!r}")
                continue
            calls.append(ToolCall(
                id=str(raw_call.get("id") or f"call-{index + 1}"),
                name=raw_call["name"],
                input=raw_call.get("input") if isinstance(raw_call.get("input"), dict) else {},
            ))
        text = parsed.get("text")
        return ChatTurn(text=text if isinstance(text, str) else "", tool_calls=calls)
