"""
Memory schemas - scoped key/value entries and the typed values stored in them.

Every entry is addressed by a (scope_type, scope_id, key) triple, e.g.
("property", "prop-1", "preferred_vendor_HVAC"). Values are JSON; the typed
helpers in propagent.memory convert them to and from the dataclasses below.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class ScopeType(str, Enum):
    """What a memory entry is about."""
    PROPERTY = "property"
    TENANT = "tenant"
    VENDOR = "vendor"
    SYSTEM = "system"


@dataclass
class MemoryEntry:
    scope_type: str
    scope_id: str
    key: str
    value: Any = None
    confidence: Optional[float] = None
    updated_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope_type": self.scope_type,
            "scope_id": self.scope_id,
            "key": self.key,
            "value": self.value,
            "confidence": self.confidence,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class TenantContext:
    """Last classified intent and message count for a tenant."""
    last_intent: str
    message_count: int
    last_message_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "lastIntent": self.last_intent,
            "messageCount": self.message_count,
            "lastMessageAt": self.last_message_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TenantContext":
        return cls(
            last_intent=str(data.get("lastIntent", "OTHER")),
            message_count=int(data.get("messageCount", 0)),
            last_message_at=str(data.get("lastMessageAt", "")),
        )


@dataclass(frozen=True)
class ComplianceSnapshot:
    """Result of the latest compliance scan plus the running exception total."""
    last_scan_at: str
    wo_created: int
    exceptions: int
    total_exceptions_all_time: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "lastScanAt": self.last_scan_at,
            "woCreated": self.wo_created,
            "exceptions": self.exceptions,
            "totalExceptionsAllTime": self.total_exceptions_all_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ComplianceSnapshot":
        return cls(
            last_scan_at=str(data.get("lastScanAt", "")),
            wo_created=int(data.get("woCreated", 0)),
            exceptions=int(data.get("exceptions", 0)),
            total_exceptions_all_time=int(data.get("totalExceptionsAllTime", 0)),
        )
