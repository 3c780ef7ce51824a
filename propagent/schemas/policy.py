"""
Policy schemas - the immutable configuration the policy engine evaluates.

A PolicyConfig is a nested, frozen record with five sections:

    spend         - dollar thresholds for auto-approval and hard blocks
    work_orders   - auto-assign category whitelist, emergency rule, vendor cap
    messaging     - quiet hours, auto-send intents, legal keyword escalation
    compliance    - critical window, task auto-creation, overdue escalation
    escalation    - notification channels

Stored policy records carry a *partial* config in camelCase JSON
(``{"spend": {"autoApproveMax": 500}}``). ``PolicyConfig.overlay()`` applies
such a partial over a complete config section by section; it is the single
place where stored JSON is turned into a typed value.
"""

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional


def _camel(name: str) -> str:
    """Convert a snake_case field name to the stored camelCase key."""
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _coerce(current: Any, value: Any) -> Any:
    """
    Coerce a stored override value to the type of the current value.

    Returns the current value unchanged when the override has the wrong
    shape, so a malformed stored policy degrades to the base instead of
    raising.
    """
    if isinstance(current, bool):
        return value if isinstance(value, bool) else current
    if isinstance(current, (int, float)):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return current
        return value
    if isinstance(current, str):
        return value if isinstance(value, str) else current
    if isinstance(current, tuple):
        if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
            return tuple(value)
        return current
    return current


class _Section:
    """Mixin for flat policy sections: camelCase (de)serialization and overlay."""

    def to_dict(self) -> dict[str, Any]:
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, tuple):
                value = list(value)
            elif isinstance(value, _Section):
                value = value.to_dict()
            result[_camel(f.name)] = value
        return result

    def overlay(self, partial: Any):
        """Return a copy with every recognised key of ``partial`` applied."""
        if not isinstance(partial, Mapping):
            return self
        changes = {}
        for f in fields(self):
            key = _camel(f.name)
            if key not in partial:
                continue
            current = getattr(self, f.name)
            if isinstance(current, _Section):
                changes[f.name] = current.overlay(partial[key])
            else:
                changes[f.name] = _coerce(current, partial[key])
        return replace(self, **changes) if changes else self


@dataclass(frozen=True)
class SpendPolicy(_Section):
    auto_approve_max: float = 750
    require_approval_above: float = 750
    hard_block_above: float = 5000


@dataclass(frozen=True)
class WorkOrderPolicy(_Section):
    auto_assign_allowed_categories: tuple[str, ...] = ("PLUMBING", "HVAC", "ELECTRICAL", "GENERAL")
    emergency_always_escalate: bool = True
    max_open_per_vendor: int = 25


@dataclass(frozen=True)
class QuietHours(_Section):
    """Quiet-hours window as "HH:MM" strings; may wrap past midnight."""
    start: str = "21:00"
    end: str = "07:00"


@dataclass(frozen=True)
class MessagingPolicy(_Section):
    quiet_hours: QuietHours = field(default_factory=QuietHours)
    allowed_auto_intents: tuple[str, ...] = ("STATUS_UPDATE", "FAQ", "MAINTENANCE_INTAKE", "RENEWAL_INFO")
    legal_keywords_escalate: bool = True


@dataclass(frozen=True)
class CompliancePolicy(_Section):
    critical_days_before_due: int = 7
    auto_create_tasks: bool = True
    overdue_always_escalate: bool = True


@dataclass(frozen=True)
class EscalationPolicy(_Section):
    channels: tuple[str, ...] = ("in_app", "email")
    critical_also_sms: bool = False


@dataclass(frozen=True)
class PolicyConfig(_Section):
    """
    Complete, immutable policy configuration.

    Pass instances explicitly to ``evaluate_action``; there is no module-level
    "current policy".
    """
    spend: SpendPolicy = field(default_factory=SpendPolicy)
    work_orders: WorkOrderPolicy = field(default_factory=WorkOrderPolicy)
    messaging: MessagingPolicy = field(default_factory=MessagingPolicy)
    compliance: CompliancePolicy = field(default_factory=CompliancePolicy)
    escalation: EscalationPolicy = field(default_factory=EscalationPolicy)

    @classmethod
    def from_dict(cls, data: Any) -> "PolicyConfig":
        """Build a config from stored camelCase JSON, defaults filling any gaps."""
        return DEFAULT_POLICY.overlay(data)


DEFAULT_POLICY = PolicyConfig()


class PolicyDecision(str, Enum):
    """Outcome of a policy evaluation."""
    ALLOW = "ALLOW"
    APPROVAL = "APPROVAL"
    BLOCK = "BLOCK"


class PolicyActionType(str, Enum):
    """Action types the policy engine has rules for."""
    SPEND_APPROVE = "SPEND_APPROVE"
    WO_ASSIGN_VENDOR = "WO_ASSIGN_VENDOR"
    WO_BID_REQUEST = "WO_BID_REQUEST"
    WO_CREATE = "WO_CREATE"
    MESSAGE_SEND = "MESSAGE_SEND"
    COMPLIANCE_TASK_CREATE = "COMPLIANCE_TASK_CREATE"
    ESCALATE = "ESCALATE"


@dataclass(frozen=True)
class PolicyResult:
    """A policy decision and its human-readable reason."""
    decision: PolicyDecision
    reason: str

    @property
    def allowed(self) -> bool:
        return self.decision == PolicyDecision.ALLOW

    def to_dict(self) -> dict[str, Any]:
        return {"decision": self.decision.value, "reason": self.reason}


class PolicyScope(str, Enum):
    GLOBAL = "global"
    PROPERTY = "property"


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class PolicyRecord:
    """
    A stored, versioned policy.

    Attributes:
        policy_id: Identifier of the record
        scope_type: global or property
        scope_id: Property id for property-scoped records, None for global
        version: Monotonic version; the highest active version of a scope wins
        is_active: Inactive records are ignored by the store
        config: Partial camelCase config overlaid during resolution
    """
    policy_id: str
    scope_type: PolicyScope
    version: int = 1
    scope_id: Optional[str] = None
    is_active: bool = True
    config: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "scope_type": self.scope_type.value,
            "scope_id": self.scope_id,
            "version": self.version,
            "is_active": self.is_active,
            "config": self.config,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PolicyRecord":
        created_at = data.get("created_at")
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        return cls(
            policy_id=str(data["policy_id"]),
            scope_type=PolicyScope(data.get("scope_type", "global")),
            scope_id=data.get("scope_id"),
            version=int(data.get("version", 1)),
            is_active=bool(data.get("is_active", True)),
            config=data.get("config") or {},
            created_at=created_at or _utcnow(),
        )
