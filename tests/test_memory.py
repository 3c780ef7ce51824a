"""Tests for agent memory stores and the typed AgentMemory helpers."""

from datetime import datetime, timezone

import pytest

from propagent.memory import AgentMemory, InMemoryMemoryStore, SQLiteMemoryStore
from propagent.schemas.memory import TenantContext


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryMemoryStore()
    return SQLiteMemoryStore(tmp_path / "memory.db")


# =============================================================================
# Store contract (both backends)
# =============================================================================

class TestMemoryStore:
    def test_missing_entry_reads_none(self, store):
        assert store.read("property", "prop-1", "nothing") is None
        assert store.get_entry("property", "prop-1", "nothing") is None

    def test_write_then_read(self, store):
        store.write("property", "prop-1", "notes", {"gate": "code 1234", "floors": [1, 2]})
        assert store.read("property", "prop-1", "notes") == {"gate": "code 1234", "floors": [1, 2]}

    def test_upsert_replaces_value(self, store):
        store.write("vendor", "v-1", "rating", 3)
        store.write("vendor", "v-1", "rating", 5)
        assert store.read("vendor", "v-1", "rating") == 5

    def test_scopes_are_isolated(self, store):
        store.write("property", "prop-1", "k", "a")
        store.write("property", "prop-2", "k", "b")
        store.write("vendor", "prop-1", "k", "c")
        assert store.read("property", "prop-1", "k") == "a"
        assert store.read("property", "prop-2", "k") == "b"
        assert store.read("vendor", "prop-1", "k") == "c"

    def test_confidence_kept_when_update_omits_it(self, store):
        store.write("property", "prop-1", "k", "a", confidence=0.9)
        store.write("property", "prop-1", "k", "b")
        entry = store.get_entry("property", "prop-1", "k")
        assert entry.value == "b"
        assert entry.confidence == pytest.approx(0.9)

    def test_confidence_replaced_when_given(self, store):
        store.write("property", "prop-1", "k", "a", confidence=0.9)
        store.write("property", "prop-1", "k", "b", confidence=0.4)
        assert store.get_entry("property", "prop-1", "k").confidence == pytest.approx(0.4)

    def test_increment_from_missing(self, store):
        assert store.increment("vendor", "v-1", "breach_count") == 1
        assert store.increment("vendor", "v-1", "breach_count") == 2
        assert store.read("vendor", "v-1", "breach_count") == 2

    def test_increment_by(self, store):
        store.write("vendor", "v-1", "breach_count", 3)
        assert store.increment("vendor", "v-1", "breach_count", by=4) == 7

    def test_increment_non_integer_counts_as_zero(self, store):
        store.write("vendor", "v-1", "breach_count", "many")
        assert store.increment("vendor", "v-1", "breach_count") == 1


class TestSQLiteMemoryStore:
    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "memory.db"
        SQLiteMemoryStore(path).write("system", "global", "flag", True)
        assert SQLiteMemoryStore(path).read("system", "global", "flag") is True

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "deep" / "dir" / "memory.db"
        SQLiteMemoryStore(path).write("system", "global", "k", 1)
        assert path.exists()


# =============================================================================
# Typed helpers
# =============================================================================

class TestAgentMemory:
    @pytest.fixture
    def memory(self):
        return AgentMemory(InMemoryMemoryStore())

    def test_preferred_vendor(self, memory):
        assert memory.get_preferred_vendor("prop-1", "HVAC") is None
        memory.set_preferred_vendor("prop-1", "HVAC", "v-2")
        assert memory.get_preferred_vendor("prop-1", "HVAC") == "v-2"
        assert memory.get_preferred_vendor("prop-1", "PLUMBING") is None
        entry = memory.store.get_entry("property", "prop-1", "preferred_vendor_HVAC")
        assert entry.confidence == pytest.approx(0.9)

    def test_preferred_vendor_ignores_non_string(self, memory):
        memory.store.write("property", "prop-1", "preferred_vendor_HVAC", 17)
        assert memory.get_preferred_vendor("prop-1", "HVAC") is None

    def test_breach_count(self, memory):
        assert memory.get_vendor_breach_count("v-1") == 0
        memory.increment_vendor_breach_count("v-1")
        assert memory.increment_vendor_breach_count("v-1") == 2
        assert memory.get_vendor_breach_count("v-1") == 2

    def test_tenant_context(self, memory):
        assert memory.get_tenant_context("ten-1") is None
        context = TenantContext(last_intent="MAINTENANCE", message_count=3, last_message_at="2026-03-02T15:00:00+00:00")
        memory.set_tenant_context("ten-1", context)
        assert memory.get_tenant_context("ten-1") == context

    def test_compliance_snapshot_accumulates_exceptions(self, memory):
        at = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)
        first = memory.record_compliance_scan("prop-1", at, wo_created=2, exceptions=1)
        second = memory.record_compliance_scan("prop-1", at, wo_created=0, exceptions=3)
        assert first.total_exceptions_all_time == 1
        assert second.total_exceptions_all_time == 4
        snapshot = memory.get_compliance_snapshot("prop-1")
        assert snapshot.exceptions == 3
        assert snapshot.wo_created == 0
        assert snapshot.last_scan_at == at.isoformat()
