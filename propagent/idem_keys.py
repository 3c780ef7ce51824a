"""
Dedupe key generation for workflow triggers.

A trigger that may be delivered more than once (scheduled scans, webhook
redelivery, event replays) carries a dedupe key; the RunLedger stores it as
the Run's trigger_ref and refuses to create a second Run for the same key.

Dedupe key pattern:
    {trigger_type}|{trigger_ref}|{property_id or ''}|{date_bucket}

Examples:
    - event|PM_DUE-pm-42|prop-1|2026-03-01T09
    - schedule|compliance-scan|prop-1|2026-03-01
    - event|COMPLIANCE_DUE-global||2026-03-01T09

Rule: the key is opaque - never parsed. Callers choose the time bucket
(hour_bucket / day_bucket) before building the key; the key function itself
never reads the clock.
"""

from datetime import datetime, timezone
from typing import Optional


def make_dedupe_key(
    trigger_type: str,
    trigger_ref: str,
    property_id: Optional[str],
    date_bucket: str,
) -> str:
    """
    Build the dedupe key for a trigger.

    Pure: equal inputs give equal keys, and distinct inputs free of "|" give
    distinct keys.

    Args:
        trigger_type: Trigger family (e.g. "event", "schedule")
        trigger_ref: Identity of the trigger within its family
        property_id: Property the trigger concerns (None -> empty segment)
        date_bucket: Caller-chosen time bucket

    Example:
        >>> make_dedupe_key("event", "PM_DUE-pm-42", "prop-1", "2026-03-01T09")
        'event|PM_DUE-pm-42|prop-1|2026-03-01T09'
        >>> make_dedupe_key("schedule", "scan", None, "2026-03-01")
        'schedule|scan||2026-03-01'
    """
    return f"{trigger_type}|{trigger_ref}|{property_id or ''}|{date_bucket}"


def hour_bucket(now: datetime) -> str:
    """
    Hour-granularity bucket in UTC.

    Example:
        >>> hour_bucket(datetime(2026, 3, 1, 9, 41, tzinfo=timezone.utc))
        '2026-03-01T09'
    """
    return _as_utc(now).strftime("%Y-%m-%dT%H")


def day_bucket(now: datetime) -> str:
    """
    Day-granularity bucket in UTC.

    Example:
        >>> day_bucket(datetime(2026, 3, 1, 23, 59, tzinfo=timezone.utc))
        '2026-03-01'
    """
    return _as_utc(now).strftime("%Y-%m-%d")


def _as_utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)
