"""
Schemas for propagent.

Records for:
- policy: PolicyConfig sections, PolicyResult, PolicyRecord
- ledger: RunRecord, StepRecord, ActionLogRecord, ExceptionRecord
- memory: MemoryEntry and the typed values kept in memory
- actions: AgentAction and its payload variants
- domain: property-management entities reached through repositories
"""

from .policy import (
    DEFAULT_POLICY,
    CompliancePolicy,
    EscalationPolicy,
    MessagingPolicy,
    PolicyActionType,
    PolicyConfig,
    PolicyDecision,
    PolicyRecord,
    PolicyResult,
    PolicyScope,
    QuietHours,
    SpendPolicy,
    WorkOrderPolicy,
)
from .ledger import (
    ActionLogRecord,
    ActionLogType,
    ExceptionCategory,
    ExceptionRecord,
    ExceptionStatus,
    RunRecord,
    RunStatus,
    Severity,
    StepRecord,
    StepStatus,
)
from .memory import ComplianceSnapshot, MemoryEntry, ScopeType, TenantContext
from .actions import (
    AgentAction,
    AgentActionStatus,
    AgentActionType,
    parse_action_payload,
)

__all__ = [
    # policy
    "DEFAULT_POLICY",
    "PolicyConfig",
    "SpendPolicy",
    "WorkOrderPolicy",
    "QuietHours",
    "MessagingPolicy",
    "CompliancePolicy",
    "EscalationPolicy",
    "PolicyDecision",
    "PolicyActionType",
    "PolicyResult",
    "PolicyScope",
    "PolicyRecord",
    # ledger
    "RunStatus",
    "StepStatus",
    "ActionLogType",
    "Severity",
    "ExceptionCategory",
    "ExceptionStatus",
    "RunRecord",
    "StepRecord",
    "ActionLogRecord",
    "ExceptionRecord",
    # memory
    "ScopeType",
    "MemoryEntry",
    "TenantContext",
    "ComplianceSnapshot",
    # actions
    "AgentAction",
    "AgentActionStatus",
    "AgentActionType",
    "parse_action_payload",
]
