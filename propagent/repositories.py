"""
Repository interfaces for the domain entities the agent reads and mutates.

The surrounding platform owns persistence of properties, work orders,
vendors, threads and the rest; the agent core only depends on the narrow
Protocols below. This keeps the core free of any database imports:

1. Workflows and the action executor are written against these Protocols
2. The platform plugs in its own implementations (SQL, HTTP, ...)
3. Tests use the in-memory implementations bundled by Repositories.in_memory()

In-memory implementations hand out copies, so a caller must save() an
entity after mutating it, exactly as with a real backend.
"""

import copy
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Generic, Iterable, Optional, Protocol, TypeVar, runtime_checkable

from propagent.schemas.actions import AgentAction
from propagent.schemas.domain import (
    OPEN_WORK_ORDER_STATUSES,
    TERMINAL_WORK_ORDER_STATUSES,
    VENDOR_LOAD_STATUSES,
    AgentSettings,
    AuditRecord,
    BidRequest,
    BidStatus,
    ComplianceItem,
    ComplianceStatus,
    Incident,
    Lease,
    LeaseStatus,
    Message,
    MessageThread,
    PMSchedule,
    Property,
    RenewalOffer,
    RenewalOfferStatus,
    Tenant,
    ThreadStatus,
    Unit,
    Vendor,
    VendorStatus,
    WorkOrder,
    WorkOrderStatus,
)
from propagent.utils import generate_ulid

T = TypeVar("T")


# =============================================================================
# PROTOCOLS
# =============================================================================


@runtime_checkable
class PropertyRepository(Protocol):
    def get(self, property_id: str) -> Optional[Property]: ...
    def list_for_manager(self, manager_id: str) -> list[Property]: ...


@runtime_checkable
class UnitRepository(Protocol):
    def get(self, unit_id: str) -> Optional[Unit]: ...


@runtime_checkable
class TenantRepository(Protocol):
    def get(self, tenant_id: str) -> Optional[Tenant]: ...


@runtime_checkable
class LeaseRepository(Protocol):
    def get(self, lease_id: str) -> Optional[Lease]: ...

    def find_for_unit(self, unit_id: str, statuses: Iterable[LeaseStatus]) -> Optional[Lease]:
        """First lease on a unit whose status is one of ``statuses``."""
        ...

    def list_for_tenant(self, tenant_id: str) -> list[Lease]: ...

    def list_expiring(self, property_id: str, ends_before: datetime) -> list[Lease]:
        """ACTIVE leases at a property ending on or before ``ends_before``."""
        ...


@runtime_checkable
class VendorRepository(Protocol):
    def get(self, vendor_id: str) -> Optional[Vendor]: ...

    def list_serving(self, property_id: str, category: str) -> list[Vendor]:
        """ACTIVE vendors linked to a property that serve a category."""
        ...


@runtime_checkable
class WorkOrderRepository(Protocol):
    def get(self, work_order_id: str) -> Optional[WorkOrder]: ...
    def add(self, work_order: WorkOrder) -> WorkOrder: ...
    def save(self, work_order: WorkOrder) -> None: ...
    def list_for_property(self, property_id: str) -> list[WorkOrder]: ...

    def find_open_by_title(self, property_id: str, fragment: str) -> Optional[WorkOrder]:
        """An open work order at a property whose title contains ``fragment``."""
        ...

    def count_open_for_vendor(self, vendor_id: str) -> int:
        """Work orders ASSIGNED or IN_PROGRESS with this vendor."""
        ...

    def list_sla_breached(self, now: datetime) -> list[WorkOrder]:
        """Non-terminal work orders whose sla_date is at or before ``now``."""
        ...


@runtime_checkable
class IncidentRepository(Protocol):
    def get(self, incident_id: str) -> Optional[Incident]: ...


@runtime_checkable
class PMScheduleRepository(Protocol):
    def get(self, schedule_id: str) -> Optional[PMSchedule]: ...
    def save(self, schedule: PMSchedule) -> None: ...

    def list_active(self, property_id: Optional[str] = None) -> list[PMSchedule]:
        """Active schedules, optionally restricted to one property."""
        ...


@runtime_checkable
class ComplianceRepository(Protocol):
    def get(self, item_id: str) -> Optional[ComplianceItem]: ...
    def save(self, item: ComplianceItem) -> None: ...

    def list_due(self, due_before: datetime, property_id: Optional[str] = None) -> list[ComplianceItem]:
        """PENDING or OVERDUE items due on or before ``due_before``, by due date."""
        ...


@runtime_checkable
class ThreadRepository(Protocol):
    def get(self, thread_id: str) -> Optional[MessageThread]: ...
    def add(self, thread: MessageThread) -> MessageThread: ...
    def save(self, thread: MessageThread) -> None: ...
    def add_message(self, thread_id: str, author_id: str, body: str, sent_at: datetime) -> Message: ...
    def list_open(self, property_id: str) -> list[MessageThread]: ...


@runtime_checkable
class BidRepository(Protocol):
    def get(self, bid_id: str) -> Optional[BidRequest]: ...
    def add(self, bid: BidRequest) -> BidRequest: ...
    def save(self, bid: BidRequest) -> None: ...
    def list_for_work_order(self, work_order_id: str, status: Optional[BidStatus] = None) -> list[BidRequest]: ...


@runtime_checkable
class RenewalOfferRepository(Protocol):
    def add(self, offer: RenewalOffer) -> RenewalOffer: ...
    def list_for_lease(self, lease_id: str, status: Optional[RenewalOfferStatus] = None) -> list[RenewalOffer]: ...


@runtime_checkable
class AuditRepository(Protocol):
    def write(self, record: AuditRecord) -> None: ...
    def list_for_entity(self, entity_type: str, entity_id: str) -> list[AuditRecord]: ...


@runtime_checkable
class AgentActionRepository(Protocol):
    def get(self, action_id: str) -> Optional[AgentAction]: ...
    def add(self, action: AgentAction) -> AgentAction: ...
    def save(self, action: AgentAction) -> None: ...
    def list_for_manager(self, manager_id: str) -> list[AgentAction]: ...


@runtime_checkable
class SettingsRepository(Protocol):
    def get(self, manager_id: str) -> Optional[AgentSettings]: ...

    def get_or_create(self, manager_id: str) -> AgentSettings:
        """Settings for a manager, created disabled on first access."""
        ...

    def save(self, settings: AgentSettings) -> None: ...


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================


class _InMemoryTable(Generic[T]):
    """Dict-backed table keyed by ``key_attr``; reads and writes copy."""

    key_attr = "id"

    def __init__(self, items: Iterable[T] = ()):
        self._items: dict[str, T] = {}
        self._lock = threading.RLock()
        for item in items:
            self.add(item)

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            item = self._items.get(key)
            return copy.deepcopy(item) if item is not None else None

    def add(self, item: T) -> T:
        with self._lock:
            self._items[getattr(item, self.key_attr)] = copy.deepcopy(item)
        return item

    def save(self, item: T) -> None:
        self.add(item)

    def _all(self) -> list[T]:
        with self._lock:
            return [copy.deepcopy(item) for item in self._items.values()]


class InMemoryPropertyRepository(_InMemoryTable[Property]):
    def list_for_manager(self, manager_id: str) -> list[Property]:
        return [p for p in self._all() if p.manager_id == manager_id]


class InMemoryUnitRepository(_InMemoryTable[Unit]):
    pass


class InMemoryTenantRepository(_InMemoryTable[Tenant]):
    pass


class InMemoryLeaseRepository(_InMemoryTable[Lease]):
    def find_for_unit(self, unit_id: str, statuses: Iterable[LeaseStatus]) -> Optional[Lease]:
        wanted = set(statuses)
        for lease in self._all():
            if lease.unit_id == unit_id and lease.status in wanted:
                return lease
        return None

    def list_for_tenant(self, tenant_id: str) -> list[Lease]:
        return [lease for lease in self._all() if lease.tenant_id == tenant_id]

    def list_expiring(self, property_id: str, ends_before: datetime) -> list[Lease]:
        return [
            lease for lease in self._all()
            if lease.property_id == property_id
            and lease.status == LeaseStatus.ACTIVE
            and lease.end_date <= ends_before
        ]


class InMemoryVendorRepository(_InMemoryTable[Vendor]):
    def list_serving(self, property_id: str, category: str) -> list[Vendor]:
        return [
            v for v in self._all()
            if v.status == VendorStatus.ACTIVE and v.serves(property_id, category)
        ]


class InMemoryWorkOrderRepository(_InMemoryTable[WorkOrder]):
    def list_for_property(self, property_id: str) -> list[WorkOrder]:
        return sorted(
            (wo for wo in self._all() if wo.property_id == property_id),
            key=lambda wo: wo.created_at,
        )

    def find_open_by_title(self, property_id: str, fragment: str) -> Optional[WorkOrder]:
        for wo in self.list_for_property(property_id):
            if wo.status in OPEN_WORK_ORDER_STATUSES and fragment in wo.title:
                return wo
        return None

    def count_open_for_vendor(self, vendor_id: str) -> int:
        return sum(
            1 for wo in self._all()
            if wo.assigned_vendor_id == vendor_id and wo.status in VENDOR_LOAD_STATUSES
        )

    def list_sla_breached(self, now: datetime) -> list[WorkOrder]:
        return [
            wo for wo in self._all()
            if wo.sla_date is not None
            and wo.sla_date <= now
            and wo.status not in TERMINAL_WORK_ORDER_STATUSES
        ]


class InMemoryIncidentRepository(_InMemoryTable[Incident]):
    pass


class InMemoryPMScheduleRepository(_InMemoryTable[PMSchedule]):
    def list_active(self, property_id: Optional[str] = None) -> list[PMSchedule]:
        return [
            s for s in self._all()
            if s.is_active and (property_id is None or s.property_id == property_id)
        ]


class InMemoryComplianceRepository(_InMemoryTable[ComplianceItem]):
    def list_due(self, due_before: datetime, property_id: Optional[str] = None) -> list[ComplianceItem]:
        items = [
            item for item in self._all()
            if item.status in (ComplianceStatus.PENDING, ComplianceStatus.OVERDUE)
            and item.due_date <= due_before
            and (property_id is None or item.property_id == property_id)
        ]
        return sorted(items, key=lambda item: item.due_date)


class InMemoryThreadRepository(_InMemoryTable[MessageThread]):
    def add_message(self, thread_id: str, author_id: str, body: str, sent_at: datetime) -> Message:
        with self._lock:
            thread = self._items.get(thread_id)
            if thread is None:
                raise KeyError(f"MessageThread {thread_id} not found")
            message = Message(
                id=generate_ulid(),
                thread_id=thread_id,
                author_id=author_id,
                body=body,
                created_at=sent_at,
            )
            thread.messages.append(message)
            thread.updated_at = sent_at
            return copy.deepcopy(message)

    def list_open(self, property_id: str) -> list[MessageThread]:
        return [
            t for t in self._all()
            if t.property_id == property_id and t.status == ThreadStatus.OPEN
        ]


class InMemoryBidRepository(_InMemoryTable[BidRequest]):
    def list_for_work_order(self, work_order_id: str, status: Optional[BidStatus] = None) -> list[BidRequest]:
        return [
            b for b in self._all()
            if b.work_order_id == work_order_id and (status is None or b.status == status)
        ]


class InMemoryRenewalOfferRepository(_InMemoryTable[RenewalOffer]):
    def list_for_lease(self, lease_id: str, status: Optional[RenewalOfferStatus] = None) -> list[RenewalOffer]:
        return [
            o for o in self._all()
            if o.lease_id == lease_id and (status is None or o.status == status)
        ]


class InMemoryAuditRepository:
    def __init__(self):
        self._records: list[AuditRecord] = []
        self._lock = threading.Lock()

    def write(self, record: AuditRecord) -> None:
        with self._lock:
            self._records.append(record)

    def list_for_entity(self, entity_type: str, entity_id: str) -> list[AuditRecord]:
        with self._lock:
            return [r for r in self._records if r.entity_type == entity_type and r.entity_id == entity_id]


class InMemoryAgentActionRepository(_InMemoryTable[AgentAction]):
    def list_for_manager(self, manager_id: str) -> list[AgentAction]:
        return sorted(
            (a for a in self._all() if a.manager_id == manager_id),
            key=lambda a: a.created_at,
        )


class InMemorySettingsRepository(_InMemoryTable[AgentSettings]):
    key_attr = "manager_id"

    def get_or_create(self, manager_id: str) -> AgentSettings:
        with self._lock:
            existing = self.get(manager_id)
            if existing is not None:
                return existing
            settings = AgentSettings(manager_id=manager_id)
            self.add(settings)
            return settings


@dataclass
class Repositories:
    """Bundle of every repository the agent core uses."""
    properties: PropertyRepository
    units: UnitRepository
    tenants: TenantRepository
    leases: LeaseRepository
    vendors: VendorRepository
    work_orders: WorkOrderRepository
    incidents: IncidentRepository
    pm_schedules: PMScheduleRepository
    compliance: ComplianceRepository
    threads: ThreadRepository
    bids: BidRepository
    renewal_offers: RenewalOfferRepository
    audit: AuditRepository
    actions: AgentActionRepository
    settings: SettingsRepository = field(default_factory=InMemorySettingsRepository)

    @classmethod
    def in_memory(cls) -> "Repositories":
        """Empty in-memory repositories, for tests and local runs."""
        return cls(
            properties=InMemoryPropertyRepository(),
            units=InMemoryUnitRepository(),
            tenants=InMemoryTenantRepository(),
            leases=InMemoryLeaseRepository(),
            vendors=InMemoryVendorRepository(),
            work_orders=InMemoryWorkOrderRepository(),
            incidents=InMemoryIncidentRepository(),
            pm_schedules=InMemoryPMScheduleRepository(),
            compliance=InMemoryComplianceRepository(),
            threads=InMemoryThreadRepository(),
            bids=InMemoryBidRepository(),
            renewal_offers=InMemoryRenewalOfferRepository(),
            audit=InMemoryAuditRepository(),
            actions=InMemoryAgentActionRepository(),
            settings=InMemorySettingsRepository(),
        )
