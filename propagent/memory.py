"""
Agent memory - persistent, per-scope key/value facts that survive across runs.

Entries are addressed by (scope_type, scope_id, key) and upserted; there is
no history. Workflows read memory before acting and write it after observing
an outcome (e.g. the vendor that last handled an HVAC job at a property).

Keys in use:
    property/{id}  preferred_vendor_{category}   vendor id (confidence 0.9)
    property/{id}  compliance_snapshot           ComplianceSnapshot
    vendor/{id}    breach_count                  int, atomically incremented
    tenant/{id}    comms_context                 TenantContext
    system/global  governor_state                safety governor state

Implementations:
- InMemoryMemoryStore: lock-guarded dict, for tests and single-process use
- SQLiteMemoryStore: stdlib sqlite3 with a UNIQUE(scope_type, scope_id, key)
  upsert; increments run inside BEGIN IMMEDIATE
"""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from propagent.errors import StorageError
from propagent.schemas.memory import ComplianceSnapshot, MemoryEntry, ScopeType, TenantContext

logger = logging.getLogger(__name__)


class MemoryStore(ABC):
    """Abstract base class for scoped agent memory."""

    @abstractmethod
    def read(self, scope_type: str, scope_id: str, key: str) -> Any:
        """
        Read a value.

        Returns:
            The stored JSON value, or None if the entry does not exist
        """
        pass

    @abstractmethod
    def write(
        self,
        scope_type: str,
        scope_id: str,
        key: str,
        value: Any,
        confidence: Optional[float] = None,
    ) -> None:
        """
        Upsert a value.

        On update, a confidence of None keeps the stored confidence.
        """
        pass

    @abstractmethod
    def increment(self, scope_type: str, scope_id: str, key: str, by: int = 1) -> int:
        """
        Atomically add ``by`` to an integer value and return the new value.

        A missing or non-integer value counts as 0.
        """
        pass

    @abstractmethod
    def get_entry(self, scope_type: str, scope_id: str, key: str) -> Optional[MemoryEntry]:
        """Full entry including confidence and updated_at."""
        pass


def _as_count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryMemoryStore(MemoryStore):
    """
    In-memory implementation of MemoryStore for testing.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self):
        self._entries: dict[tuple[str, str, str], MemoryEntry] = {}
        self._lock = threading.Lock()

    def read(self, scope_type: str, scope_id: str, key: str) -> Any:
        with self._lock:
            entry = self._entries.get((scope_type, scope_id, key))
            return entry.value if entry else None

    def write(self, scope_type, scope_id, key, value, confidence=None) -> None:
        with self._lock:
            existing = self._entries.get((scope_type, scope_id, key))
            if existing is not None and confidence is None:
                confidence = existing.confidence
            self._entries[(scope_type, scope_id, key)] = MemoryEntry(
                scope_type=scope_type,
                scope_id=scope_id,
                key=key,
                value=value,
                confidence=confidence,
            )

    def increment(self, scope_type: str, scope_id: str, key: str, by: int = 1) -> int:
        with self._lock:
            existing = self._entries.get((scope_type, scope_id, key))
            new_value = _as_count(existing.value if existing else None) + by
            self._entries[(scope_type, scope_id, key)] = MemoryEntry(
                scope_type=scope_type,
                scope_id=scope_id,
                key=key,
                value=new_value,
                confidence=existing.confidence if existing else None,
            )
            return new_value

    def get_entry(self, scope_type: str, scope_id: str, key: str) -> Optional[MemoryEntry]:
        with self._lock:
            return self._entries.get((scope_type, scope_id, key))

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        with self._lock:
            self._entries.clear()


class SQLiteMemoryStore(MemoryStore):
    """
    SQLite implementation of MemoryStore.

    One short-lived connection per operation, so the store can be shared by
    threads and processes. Values are stored as JSON text.
    """

    _SCHEMA = """
        CREATE TABLE IF NOT EXISTS agent_memory (
            scope_type TEXT NOT NULL,
            scope_id   TEXT NOT NULL,
            key        TEXT NOT NULL,
            value_json TEXT,
            confidence REAL,
            updated_at TEXT NOT NULL,
            UNIQUE (scope_type, scope_id, key)
        )
    """

    def __init__(self, path: Path | str, timeout: float = 10.0):
        self._path = Path(path)
        self._timeout = timeout
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            conn.execute(self._SCHEMA)
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        try:
            # Autocommit mode; transactions are opened explicitly
            conn = sqlite3.connect(self._path, timeout=self._timeout, isolation_level=None)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open memory store {self._path}: {e}") from e
        conn.row_factory = sqlite3.Row
        return conn

    def read(self, scope_type: str, scope_id: str, key: str) -> Any:
        entry = self.get_entry(scope_type, scope_id, key)
        return entry.value if entry else None

    def get_entry(self, scope_type: str, scope_id: str, key: str) -> Optional[MemoryEntry]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT value_json, confidence, updated_at FROM agent_memory "
                "WHERE scope_type = ? AND scope_id = ? AND key = ?",
                (scope_type, scope_id, key),
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Memory read failed for {scope_type}/{scope_id}/{key}: {e}") from e
        finally:
            conn.close()

        if row is None:
            return None
        return MemoryEntry(
            scope_type=scope_type,
            scope_id=scope_id,
            key=key,
            value=json.loads(row["value_json"]) if row["value_json"] is not None else None,
            confidence=row["confidence"],
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def write(self, scope_type, scope_id, key, value, confidence=None) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO agent_memory (scope_type, scope_id, key, value_json, confidence, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (scope_type, scope_id, key) DO UPDATE SET
                    value_json = excluded.value_json,
                    confidence = COALESCE(excluded.confidence, agent_memory.confidence),
                    updated_at = excluded.updated_at
                """,
                (scope_type, scope_id, key, json.dumps(value), confidence, _utcnow().isoformat()),
            )
        except sqlite3.Error as e:
            raise StorageError(f"Memory write failed for {scope_type}/{scope_id}/{key}: {e}") from e
        finally:
            conn.close()

    def increment(self, scope_type: str, scope_id: str, key: str, by: int = 1) -> int:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT value_json FROM agent_memory WHERE scope_type = ? AND scope_id = ? AND key = ?",
                    (scope_type, scope_id, key),
                ).fetchone()
                current = json.loads(row["value_json"]) if row and row["value_json"] is not None else None
                new_value = _as_count(current) + by
                conn.execute(
                    """
                    INSERT INTO agent_memory (scope_type, scope_id, key, value_json, confidence, updated_at)
                    VALUES (?, ?, ?, ?, NULL, ?)
                    ON CONFLICT (scope_type, scope_id, key) DO UPDATE SET
                        value_json = excluded.value_json,
                        updated_at = excluded.updated_at
                    """,
                    (scope_type, scope_id, key, json.dumps(new_value), _utcnow().isoformat()),
                )
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
        except sqlite3.Error as e:
            raise StorageError(f"Memory increment failed for {scope_type}/{scope_id}/{key}: {e}") from e
        finally:
            conn.close()
        return new_value


# =============================================================================
# TYPED HELPERS
# =============================================================================


PREFERRED_VENDOR_CONFIDENCE = 0.9


class AgentMemory:
    """
    Typed accessors over a MemoryStore.

    Each helper owns one key convention so workflows never build memory
    keys by hand.
    """

    def __init__(self, store: MemoryStore):
        self.store = store

    # -- Vendor preference (property scope) ----------------------------------

    @staticmethod
    def preferred_vendor_key(category: str) -> str:
        return f"preferred_vendor_{category}"

    def get_preferred_vendor(self, property_id: str, category: str) -> Optional[str]:
        """Vendor that last successfully took a WO of this category here, if any."""
        value = self.store.read(ScopeType.PROPERTY.value, property_id, self.preferred_vendor_key(category))
        return value if isinstance(value, str) else None

    def set_preferred_vendor(self, property_id: str, category: str, vendor_id: str) -> None:
        self.store.write(
            ScopeType.PROPERTY.value,
            property_id,
            self.preferred_vendor_key(category),
            vendor_id,
            confidence=PREFERRED_VENDOR_CONFIDENCE,
        )

    # -- Vendor reliability (vendor scope) ------------------------------------

    def get_vendor_breach_count(self, vendor_id: str) -> int:
        """SLA breaches recorded against a vendor across all properties."""
        return _as_count(self.store.read(ScopeType.VENDOR.value, vendor_id, "breach_count"))

    def increment_vendor_breach_count(self, vendor_id: str) -> int:
        return self.store.increment(ScopeType.VENDOR.value, vendor_id, "breach_count")

    # -- Tenant context (tenant scope) ----------------------------------------

    def get_tenant_context(self, tenant_id: str) -> Optional[TenantContext]:
        value = self.store.read(ScopeType.TENANT.value, tenant_id, "comms_context")
        if isinstance(value, dict):
            return TenantContext.from_dict(value)
        return None

    def set_tenant_context(self, tenant_id: str, context: TenantContext) -> None:
        self.store.write(ScopeType.TENANT.value, tenant_id, "comms_context", context.to_dict())

    # -- Compliance snapshot (property scope) ---------------------------------

    def get_compliance_snapshot(self, property_id: str) -> Optional[ComplianceSnapshot]:
        value = self.store.read(ScopeType.PROPERTY.value, property_id, "compliance_snapshot")
        if isinstance(value, dict):
            return ComplianceSnapshot.from_dict(value)
        return None

    def record_compliance_scan(
        self,
        property_id: str,
        last_scan_at: datetime,
        wo_created: int,
        exceptions: int,
    ) -> ComplianceSnapshot:
        """Store this scan's counts; the all-time total accumulates exceptions."""
        previous = self.get_compliance_snapshot(property_id)
        snapshot = ComplianceSnapshot(
            last_scan_at=last_scan_at.isoformat(),
            wo_created=wo_created,
            exceptions=exceptions,
            total_exceptions_all_time=(previous.total_exceptions_all_time if previous else 0) + exceptions,
        )
        self.store.write(ScopeType.PROPERTY.value, property_id, "compliance_snapshot", snapshot.to_dict())
        return snapshot
