"""
Agent action schemas - proposed or executed side effects.

An AgentAction is created before execution is attempted, either by a
workflow or by the agentic proposal loop. Its payload is a tagged union
keyed by action_type: each variant is a frozen dataclass with its own
``from_dict`` validator, so malformed payloads are rejected with the name of
the offending field instead of surfacing as a KeyError mid-execution.

    parse_action_payload("ASSIGN_VENDOR", {"workOrderId": "wo-1", "vendorId": "v-1"})
    -> AssignVendorPayload(work_order_id="wo-1", vendor_id="v-1")

Raw payloads use the camelCase keys the reasoning service is prompted with.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from propagent.errors import PayloadValidationError
from propagent.schemas.domain import WorkOrderCategory, WorkOrderPriority


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class AgentActionType(str, Enum):
    SEND_MESSAGE = "SEND_MESSAGE"
    ASSIGN_VENDOR = "ASSIGN_VENDOR"
    SEND_BID_REQUEST = "SEND_BID_REQUEST"
    ACCEPT_BID = "ACCEPT_BID"
    SEND_RENEWAL_OFFER = "SEND_RENEWAL_OFFER"
    CREATE_WORK_ORDER = "CREATE_WORK_ORDER"
    CLOSE_THREAD = "CLOSE_THREAD"


class AgentActionStatus(str, Enum):
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    AUTO_EXECUTED = "AUTO_EXECUTED"
    FAILED = "FAILED"


# =============================================================================
# FIELD READERS
# =============================================================================


def _require_str(action_type: str, raw: dict[str, Any], key: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise PayloadValidationError(action_type, key, f"'{key}' is required and must be a non-empty string")
    return value


def _optional_str(action_type: str, raw: dict[str, Any], key: str) -> Optional[str]:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise PayloadValidationError(action_type, key, f"'{key}' must be a string")
    return value


def _optional_number(action_type: str, raw: dict[str, Any], key: str) -> Optional[float]:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PayloadValidationError(action_type, key, f"'{key}' must be a number")
    return value


# =============================================================================
# PAYLOAD VARIANTS
# =============================================================================


@dataclass(frozen=True)
class SendMessagePayload:
    """Either ``thread_id`` (reply) or property/tenant/subject (new thread)."""
    body: str
    thread_id: Optional[str] = None
    property_id: Optional[str] = None
    tenant_id: Optional[str] = None
    subject: Optional[str] = None
    intent: Optional[str] = None

    @property
    def is_reply(self) -> bool:
        return self.thread_id is not None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "SendMessagePayload":
        kind = AgentActionType.SEND_MESSAGE.value
        body = _require_str(kind, raw, "body")
        thread_id = _optional_str(kind, raw, "threadId")
        if thread_id is None:
            return cls(
                body=body,
                property_id=_require_str(kind, raw, "propertyId"),
                tenant_id=_require_str(kind, raw, "tenantId"),
                subject=_require_str(kind, raw, "subject"),
                intent=_optional_str(kind, raw, "intent"),
            )
        return cls(body=body, thread_id=thread_id, intent=_optional_str(kind, raw, "intent"))


@dataclass(frozen=True)
class AssignVendorPayload:
    work_order_id: str
    vendor_id: str

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "AssignVendorPayload":
        kind = AgentActionType.ASSIGN_VENDOR.value
        return cls(
            work_order_id=_require_str(kind, raw, "workOrderId"),
            vendor_id=_require_str(kind, raw, "vendorId"),
        )


@dataclass(frozen=True)
class SendBidRequestPayload:
    work_order_id: str
    vendor_ids: tuple[str, ...]

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "SendBidRequestPayload":
        kind = AgentActionType.SEND_BID_REQUEST.value
        vendor_ids = raw.get("vendorIds")
        if (
            not isinstance(vendor_ids, (list, tuple))
            or not vendor_ids
            or not all(isinstance(v, str) and v for v in vendor_ids)
        ):
            raise PayloadValidationError(kind, "vendorIds", "'vendorIds' must be a non-empty list of strings")
        return cls(
            work_order_id=_require_str(kind, raw, "workOrderId"),
            vendor_ids=tuple(dict.fromkeys(vendor_ids)),
        )


@dataclass(frozen=True)
class AcceptBidPayload:
    bid_id: str

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "AcceptBidPayload":
        return cls(bid_id=_require_str(AgentActionType.ACCEPT_BID.value, raw, "bidId"))


@dataclass(frozen=True)
class SendRenewalOfferPayload:
    lease_id: str
    offered_rent: Optional[float] = None
    term_months: Optional[int] = None
    expiry_days: Optional[int] = None
    notes: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "SendRenewalOfferPayload":
        kind = AgentActionType.SEND_RENEWAL_OFFER.value
        term_months = _optional_number(kind, raw, "termMonths")
        expiry_days = _optional_number(kind, raw, "expiryDays")
        return cls(
            lease_id=_require_str(kind, raw, "leaseId"),
            offered_rent=_optional_number(kind, raw, "offeredRent"),
            term_months=int(term_months) if term_months is not None else None,
            expiry_days=int(expiry_days) if expiry_days is not None else None,
            notes=_optional_str(kind, raw, "notes"),
        )


@dataclass(frozen=True)
class CreateWorkOrderPayload:
    property_id: str
    title: str
    description: str
    unit_id: Optional[str] = None
    category: str = "GENERAL"
    priority: str = "MEDIUM"

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "CreateWorkOrderPayload":
        kind = AgentActionType.CREATE_WORK_ORDER.value
        category = _optional_str(kind, raw, "category") or "GENERAL"
        priority = _optional_str(kind, raw, "priority") or "MEDIUM"
        if category not in WorkOrderCategory.__members__:
            raise PayloadValidationError(kind, "category", f"unknown work order category '{category}'")
        if priority not in WorkOrderPriority.__members__:
            raise PayloadValidationError(kind, "priority", f"unknown work order priority '{priority}'")
        return cls(
            property_id=_require_str(kind, raw, "propertyId"),
            title=_require_str(kind, raw, "title"),
            description=_require_str(kind, raw, "description"),
            unit_id=_optional_str(kind, raw, "unitId"),
            category=category,
            priority=priority,
        )


@dataclass(frozen=True)
class CloseThreadPayload:
    thread_id: str

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "CloseThreadPayload":
        return cls(thread_id=_require_str(AgentActionType.CLOSE_THREAD.value, raw, "threadId"))


ActionPayload = Union[
    SendMessagePayload,
    AssignVendorPayload,
    SendBidRequestPayload,
    AcceptBidPayload,
    SendRenewalOfferPayload,
    CreateWorkOrderPayload,
    CloseThreadPayload,
]

PAYLOAD_TYPES: dict[AgentActionType, type] = {
    AgentActionType.SEND_MESSAGE: SendMessagePayload,
    AgentActionType.ASSIGN_VENDOR: AssignVendorPayload,
    AgentActionType.SEND_BID_REQUEST: SendBidRequestPayload,
    AgentActionType.ACCEPT_BID: AcceptBidPayload,
    AgentActionType.SEND_RENEWAL_OFFER: SendRenewalOfferPayload,
    AgentActionType.CREATE_WORK_ORDER: CreateWorkOrderPayload,
    AgentActionType.CLOSE_THREAD: CloseThreadPayload,
}


def parse_action_type(value: Any) -> AgentActionType:
    """Resolve an action type, raising PayloadValidationError if unknown."""
    try:
        return AgentActionType(value)
    except ValueError:
        raise PayloadValidationError(str(value), "actionType", f"Unknown action type: {value}")


def parse_action_payload(action_type: Any, raw: Any) -> ActionPayload:
    """
    Validate a raw payload against the variant for ``action_type``.

    Raises:
        PayloadValidationError: unknown action type, non-object payload, or a
            missing / malformed field
    """
    kind = parse_action_type(action_type)
    if not isinstance(raw, dict):
        raise PayloadValidationError(kind.value, "payload", "payload must be an object")
    return PAYLOAD_TYPES[kind].from_dict(raw)


@dataclass
class AgentAction:
    """
    A proposed or executed side effect.

    ``payload`` holds the raw JSON as proposed; ``parsed_payload()`` returns
    the validated variant.
    """
    id: str
    manager_id: str
    action_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    status: AgentActionStatus = AgentActionStatus.PENDING_APPROVAL
    title: str = ""
    reasoning: str = ""
    property_id: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    created_at: datetime = field(default_factory=_utcnow)
    executed_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None

    def parsed_payload(self) -> ActionPayload:
        return parse_action_payload(self.action_type, self.payload)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "manager_id": self.manager_id,
            "action_type": self.action_type,
            "payload": self.payload,
            "status": self.status.value,
            "title": self.title,
            "reasoning": self.reasoning,
            "property_id": self.property_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "result": self.result,
            "created_at": self.created_at.isoformat(),
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "responded_at": self.responded_at.isoformat() if self.responded_at else None,
        }
