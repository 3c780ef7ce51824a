"""
Periodic scans that produce agent events.

Each scan only reads the repositories and returns the events it would
fire; the caller (a scheduler or the external trigger dispatcher) hands
them to EventDispatcher.publish. Publishing is deduplicated per hour, so a
scan may safely run more than once per hour.
"""

import logging
from datetime import datetime, timedelta

from propagent.dispatcher import AgentEvent, EventDispatcher, PublishResult
from propagent.repositories import Repositories

logger = logging.getLogger(__name__)

COMPLIANCE_LOOKAHEAD = timedelta(days=30)


def scan_sla_breaches(repos: Repositories, now: datetime) -> list[AgentEvent]:
    """One WO_SLA_BREACH event per open work order past its SLA date."""
    return [
        AgentEvent("WO_SLA_BREACH", property_id=wo.property_id, entity_id=wo.id, entity_type="work_order")
        for wo in repos.work_orders.list_sla_breached(now)
    ]


def scan_pm_due(repos: Repositories, now: datetime) -> list[AgentEvent]:
    """One PM_DUE event per active PM schedule that has come due."""
    return [
        AgentEvent("PM_DUE", property_id=s.property_id, entity_id=s.id, entity_type="pm_schedule")
        for s in repos.pm_schedules.list_active()
        if s.next_due_at <= now
    ]


def scan_compliance_due(repos: Repositories, now: datetime) -> list[AgentEvent]:
    """One COMPLIANCE_DUE event per property with items due within 30 days."""
    property_ids: list[str] = []
    for item in repos.compliance.list_due(now + COMPLIANCE_LOOKAHEAD):
        if item.property_id not in property_ids:
            property_ids.append(item.property_id)
    return [
        AgentEvent("COMPLIANCE_DUE", property_id=pid, entity_id=pid, entity_type="property")
        for pid in property_ids
    ]


def publish_all(dispatcher: EventDispatcher, events: list[AgentEvent]) -> list[PublishResult]:
    results = [dispatcher.publish(event) for event in events]
    logger.info(f"Published {len(events)} event(s)")
    return results
