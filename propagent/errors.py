"""
Error classes for propagent.

These error types classify failures at workflow and action boundaries:
- TransientError: Safe to retry (reasoning service timeouts, storage hiccups)
- PermanentError: Do not retry (missing entities, ownership violations,
  malformed payloads, illegal state transitions)

Workflows let these propagate to their entry point, where the Run is
marked FAILED. The external trigger dispatcher decides whether a FAILED Run
is redelivered; nothing in this package retries on its own.

Error handling contract:
- execute_action / validate_action_scope return typed results, never raise
- Workflow entry points never raise; outcomes are observed via the ledger
- Everything else raises the errors below
"""

from typing import Optional


class PropagentError(Exception):
    """Base exception for propagent."""
    pass


class TransientError(PropagentError):
    """
    Transient error - safe to retry.

    Examples:
    - Reasoning service timeout or rate limit
    - Storage backend temporarily unavailable
    - Lock contention on the memory store

    Retries are the responsibility of the external trigger dispatcher
    (at-least-once redelivery); the core converts these into FAILED Runs.
    """
    pass


class PermanentError(PropagentError):
    """
    Permanent error - do not retry.

    Examples:
    - Referenced entity not found
    - Ownership / scope violation
    - Malformed action payload
    - Illegal Run or Step status transition
    """
    pass


class ReasoningServiceError(TransientError):
    """The reasoning (LLM) service failed or returned an unusable response."""
    pass


class StorageError(TransientError):
    """A persistence backend failed to read or write."""
    pass


class NotFoundError(PermanentError):
    """A referenced entity does not exist."""

    def __init__(self, entity_type: str, entity_id: Optional[str]):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class ForbiddenError(PermanentError):
    """The actor does not own (transitively) an entity the action touches."""
    pass


class PayloadValidationError(PermanentError, ValueError):
    """An agent action payload is missing a field or has the wrong type."""

    def __init__(self, action_type: str, field: str, message: str):
        self.action_type = action_type
        self.field = field
        super().__init__(f"{action_type}: {message}")


class InvalidTransitionError(PermanentError):
    """A Run or Step status change would violate the ledger state machine."""

    def __init__(self, kind: str, record_id: str, current: str, target: str):
        self.kind = kind
        self.record_id = record_id
        self.current = current
        self.target = target
        super().__init__(
            f"{kind} {record_id}: cannot transition from {current} to {target}"
        )


class ActionStateError(PermanentError):
    """An agent action is not in a state that allows the requested operation."""
    pass
