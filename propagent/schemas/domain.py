"""
Domain schemas - the property-management entities the agent reads and mutates.

These are plain records owned by the surrounding platform; the agent core
only reaches them through the repository interfaces in
propagent.repositories.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    return value


class _Record:
    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return _jsonable(asdict(self))


# =============================================================================
# ENUMS
# =============================================================================


class WorkOrderStatus(str, Enum):
    NEW = "NEW"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"


OPEN_WORK_ORDER_STATUSES = (WorkOrderStatus.NEW, WorkOrderStatus.ASSIGNED, WorkOrderStatus.IN_PROGRESS)
VENDOR_LOAD_STATUSES = (WorkOrderStatus.ASSIGNED, WorkOrderStatus.IN_PROGRESS)
TERMINAL_WORK_ORDER_STATUSES = (WorkOrderStatus.COMPLETED, WorkOrderStatus.CANCELED)


class WorkOrderPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    EMERGENCY = "EMERGENCY"


class WorkOrderCategory(str, Enum):
    PLUMBING = "PLUMBING"
    HVAC = "HVAC"
    ELECTRICAL = "ELECTRICAL"
    GENERAL = "GENERAL"
    TURNOVER = "TURNOVER"
    OTHER = "OTHER"


class VendorStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class LeaseStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    ENDED = "ENDED"
    TERMINATED = "TERMINATED"


class ComplianceStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    OVERDUE = "OVERDUE"


class ComplianceCategory(str, Enum):
    HVAC_CERT = "HVAC_CERT"
    ELECTRICAL = "ELECTRICAL"
    PLUMBING = "PLUMBING"
    FIRE_SAFETY = "FIRE_SAFETY"
    ELEVATOR = "ELEVATOR"
    LEAD_PAINT = "LEAD_PAINT"
    OTHER = "OTHER"


class IncidentSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ThreadStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class BidStatus(str, Enum):
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"


class RenewalOfferStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"


class NotificationType(str, Enum):
    GENERAL = "GENERAL"
    WORK_ORDER = "WORK_ORDER"
    AGENT_ACTION = "AGENT_ACTION"


# =============================================================================
# ENTITIES
# =============================================================================


@dataclass
class Property(_Record):
    id: str
    name: str
    manager_id: str


@dataclass
class Unit(_Record):
    id: str
    property_id: str
    unit_number: str
    monthly_rent: float = 0.0


@dataclass
class Tenant(_Record):
    id: str
    user_id: str
    name: str = ""


@dataclass
class Lease(_Record):
    id: str
    unit_id: str
    tenant_id: str
    property_id: str
    status: LeaseStatus
    end_date: datetime
    monthly_rent: float = 0.0
    start_date: Optional[datetime] = None


@dataclass
class Vendor(_Record):
    """
    A service vendor.

    A vendor serves a set of categories and is linked to the properties it
    may work at. Expiry dates of None mean "not tracked" and count as valid.
    """
    id: str
    name: str
    status: VendorStatus = VendorStatus.ACTIVE
    service_categories: tuple[str, ...] = ()
    property_ids: tuple[str, ...] = ()
    performance_score: float = 0.0
    review_count: int = 0
    license_expiry: Optional[datetime] = None
    insurance_expiry: Optional[datetime] = None

    def license_valid(self, as_of: datetime) -> bool:
        return self.license_expiry is None or self.license_expiry >= as_of

    def insurance_valid(self, as_of: datetime) -> bool:
        return self.insurance_expiry is None or self.insurance_expiry >= as_of

    def serves(self, property_id: str, category: str) -> bool:
        return property_id in self.property_ids and category in self.service_categories


@dataclass
class WorkOrder(_Record):
    id: str
    property_id: str
    title: str
    description: str = ""
    category: WorkOrderCategory = WorkOrderCategory.GENERAL
    priority: WorkOrderPriority = WorkOrderPriority.MEDIUM
    status: WorkOrderStatus = WorkOrderStatus.NEW
    unit_id: Optional[str] = None
    assigned_vendor_id: Optional[str] = None
    submitted_by_id: Optional[str] = None
    sla_date: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Incident(_Record):
    id: str
    property_id: str
    title: str
    description: str = ""
    severity: IncidentSeverity = IncidentSeverity.MEDIUM


@dataclass
class PMSchedule(_Record):
    """A preventive-maintenance schedule attached to an asset of a property."""
    id: str
    property_id: str
    title: str
    next_due_at: datetime
    frequency_days: int = 30
    description: Optional[str] = None
    asset_name: str = ""
    unit_id: Optional[str] = None
    is_active: bool = True
    last_run_at: Optional[datetime] = None


@dataclass
class ComplianceItem(_Record):
    id: str
    property_id: str
    title: str
    category: ComplianceCategory
    due_date: datetime
    status: ComplianceStatus = ComplianceStatus.PENDING
    notes: Optional[str] = None


@dataclass
class Message(_Record):
    id: str
    thread_id: str
    author_id: str
    body: str
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class MessageThread(_Record):
    id: str
    property_id: str
    tenant_id: str
    subject: str
    status: ThreadStatus = ThreadStatus.OPEN
    messages: list[Message] = field(default_factory=list)
    updated_at: datetime = field(default_factory=_utcnow)

    def latest_from(self, author_id: str) -> Optional[Message]:
        """Most recent message written by ``author_id``, if any."""
        authored = [m for m in self.messages if m.author_id == author_id]
        if not authored:
            return None
        return max(authored, key=lambda m: m.created_at)


@dataclass
class BidRequest(_Record):
    id: str
    work_order_id: str
    vendor_id: str
    status: BidStatus = BidStatus.PENDING
    amount: Optional[float] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class RenewalOffer(_Record):
    id: str
    lease_id: str
    offered_rent: float
    term_months: int
    expiry_date: datetime
    status: RenewalOfferStatus = RenewalOfferStatus.PENDING
    notes: Optional[str] = None


@dataclass
class AuditRecord(_Record):
    actor_user_id: str
    action: str
    entity_type: str
    entity_id: str
    diff: Optional[dict[str, Any]] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Notification(_Record):
    user_id: str
    title: str
    body: str
    type: NotificationType = NotificationType.GENERAL
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class AgentSettings(_Record):
    """Per-manager agent settings; a new manager starts disabled."""
    manager_id: str
    enabled: bool = False
    auto_execute_types: tuple[str, ...] = ()
    tone: str = "professional"
