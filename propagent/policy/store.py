"""
Policy storage - versioned policy records and per-property resolution.

Records are scoped either ``global`` or ``property/{property_id}``. For a
property, the effective policy is resolved as:

    DEFAULT_POLICY
      <- highest active global version          (merge_policy)
      <- highest active property version        (merge_policy)

Each layer is merged section by section over the one below it, so a
property record that only sets ``spend.autoApproveMax`` keeps every other
spend field from the global record.

Implementations:
- InMemoryPolicyStore: dict-backed, for tests and embedding
- YamlPolicyStore: records kept in a YAML file, read with PyYAML
"""

import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import yaml

from propagent.errors import StorageError
from propagent.policy.engine import merge_policy
from propagent.schemas.policy import DEFAULT_POLICY, PolicyConfig, PolicyRecord, PolicyScope

logger = logging.getLogger(__name__)


def _latest(records: list[PolicyRecord]) -> Optional[PolicyRecord]:
    if not records:
        return None
    return max(records, key=lambda r: r.version)


class PolicyStore(ABC):
    """
    Abstract base class for policy record storage.

    Implementations provide record access; resolution lives here.
    """

    @abstractmethod
    def all_records(self) -> list[PolicyRecord]:
        """Every stored record, active or not."""
        pass

    @abstractmethod
    def save(self, record: PolicyRecord) -> None:
        """Insert or replace a record by policy_id."""
        pass

    def list_active(self, property_id: Optional[str] = None) -> list[PolicyRecord]:
        """
        Active records relevant to a property.

        Args:
            property_id: Include records scoped to this property (None -> global only)

        Returns:
            Active global records plus active records for ``property_id``
        """
        result = []
        for record in self.all_records():
            if not record.is_active:
                continue
            if record.scope_type == PolicyScope.GLOBAL:
                result.append(record)
            elif property_id is not None and record.scope_id == property_id:
                result.append(record)
        return result

    def count_active_global(self) -> int:
        """Number of active global records; more than one means drift."""
        return sum(
            1 for r in self.all_records()
            if r.is_active and r.scope_type == PolicyScope.GLOBAL
        )

    def load_policy_for_property(self, property_id: Optional[str]) -> PolicyConfig:
        """
        Resolve the effective policy for a property.

        Property-scoped overrides global, global overrides DEFAULT_POLICY;
        within each scope the highest active version wins.
        """
        active = self.list_active(property_id)
        global_record = _latest([r for r in active if r.scope_type == PolicyScope.GLOBAL])
        property_record = _latest([r for r in active if r.scope_type == PolicyScope.PROPERTY])

        policy = DEFAULT_POLICY
        if global_record is not None:
            policy = merge_policy(global_record.config, policy)
        if property_record is not None:
            policy = merge_policy(property_record.config, policy)
        return policy


class InMemoryPolicyStore(PolicyStore):
    """In-memory implementation of PolicyStore for testing."""

    def __init__(self, records: Optional[list[PolicyRecord]] = None):
        self._records: dict[str, PolicyRecord] = {}
        self._lock = threading.Lock()
        for record in records or []:
            self.save(record)

    def all_records(self) -> list[PolicyRecord]:
        with self._lock:
            return list(self._records.values())

    def save(self, record: PolicyRecord) -> None:
        with self._lock:
            self._records[record.policy_id] = record


class YamlPolicyStore(PolicyStore):
    """
    YAML-file implementation of PolicyStore.

    File format:

        policies:
          - policy_id: global-v2
            scope_type: global
            version: 2
            config:
              spend:
                autoApproveMax: 500
          - policy_id: tower-a
            scope_type: property
            scope_id: prop-1
            config:
              messaging:
                quietHours: {start: "22:00", end: "06:00"}

    Quote "HH:MM" values: YAML 1.1 reads an unquoted 21:00 as a sexagesimal
    integer, which the merge then ignores.
    """

    def __init__(self, path: Path | str):
        self._path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> list[PolicyRecord]:
        if not self._path.exists():
            return []
        try:
            with open(self._path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise StorageError(f"Invalid policy file {self._path}: {e}") from e

        entries = data.get("policies", []) if isinstance(data, dict) else []
        records = []
        for entry in entries:
            try:
                records.append(PolicyRecord.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed policy record in {self._path}: {e}")
        return records

    def all_records(self) -> list[PolicyRecord]:
        with self._lock:
            return self._read()

    def save(self, record: PolicyRecord) -> None:
        with self._lock:
            records = {r.policy_id: r for r in self._read()}
            records[record.policy_id] = record
            payload: dict[str, Any] = {"policies": [r.to_dict() for r in records.values()]}
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "w") as f:
                yaml.safe_dump(payload, f, sort_keys=False)
        logger.info(f"Saved policy {record.policy_id} (v{record.version}) to {self._path}")
