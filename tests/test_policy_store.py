"""Tests for policy record storage and per-property resolution."""

import pytest
import yaml

from propagent.errors import StorageError
from propagent.policy.store import InMemoryPolicyStore, YamlPolicyStore
from propagent.schemas.policy import DEFAULT_POLICY, PolicyRecord, PolicyScope


def _global(policy_id, version, config, active=True):
    return PolicyRecord(policy_id=policy_id, scope_type=PolicyScope.GLOBAL, version=version, config=config, is_active=active)


def _property(policy_id, property_id, config, version=1):
    return PolicyRecord(
        policy_id=policy_id,
        scope_type=PolicyScope.PROPERTY,
        scope_id=property_id,
        version=version,
        config=config,
    )


class TestResolution:
    """DEFAULT <- global <- property, highest active version per scope."""

    def test_no_records_gives_default(self):
        assert InMemoryPolicyStore().load_policy_for_property("prop-1") == DEFAULT_POLICY

    def test_highest_active_global_version_wins(self):
        store = InMemoryPolicyStore([
            _global("g1", 1, {"spend": {"autoApproveMax": 100}}),
            _global("g2", 2, {"spend": {"autoApproveMax": 200}}),
            _global("g3", 3, {"spend": {"autoApproveMax": 300}}, active=False),
        ])
        assert store.load_policy_for_property(None).spend.auto_approve_max == 200

    def test_property_overrides_global_field_by_field(self):
        store = InMemoryPolicyStore([
            _global("g1", 1, {"spend": {"autoApproveMax": 100, "hardBlockAbove": 2000}}),
            _property("p1", "prop-1", {"spend": {"autoApproveMax": 400}}),
        ])
        policy = store.load_policy_for_property("prop-1")
        assert policy.spend.auto_approve_max == 400
        assert policy.spend.hard_block_above == 2000

    def test_other_property_records_ignored(self):
        store = InMemoryPolicyStore([_property("p2", "prop-2", {"spend": {"autoApproveMax": 10}})])
        assert store.load_policy_for_property("prop-1") == DEFAULT_POLICY

    def test_count_active_global(self):
        store = InMemoryPolicyStore([
            _global("g1", 1, {}),
            _global("g2", 2, {}),
            _global("g3", 3, {}, active=False),
            _property("p1", "prop-1", {}),
        ])
        assert store.count_active_global() == 2

    def test_save_replaces_by_id(self):
        store = InMemoryPolicyStore([_global("g1", 1, {"spend": {"autoApproveMax": 100}})])
        store.save(_global("g1", 1, {"spend": {"autoApproveMax": 900}}))
        assert len(store.all_records()) == 1
        assert store.load_policy_for_property(None).spend.auto_approve_max == 900


class TestYamlPolicyStore:
    def test_missing_file_is_empty(self, tmp_path):
        store = YamlPolicyStore(tmp_path / "absent.yaml")
        assert store.all_records() == []
        assert store.load_policy_for_property("prop-1") == DEFAULT_POLICY

    def test_reads_records(self, tmp_path):
        path = tmp_path / "policies.yaml"
        path.write_text(yaml.safe_dump({
            "policies": [
                {"policy_id": "global", "scope_type": "global", "config": {"spend": {"autoApproveMax": 500}}},
                {
                    "policy_id": "tower",
                    "scope_type": "property",
                    "scope_id": "prop-1",
                    "config": {"messaging": {"quietHours": {"start": "22:00", "end": "06:00"}}},
                },
            ]
        }))
        policy = YamlPolicyStore(path).load_policy_for_property("prop-1")
        assert policy.spend.auto_approve_max == 500
        assert policy.messaging.quiet_hours.start == "22:00"

    def test_save_then_reload(self, tmp_path):
        path = tmp_path / "nested" / "policies.yaml"
        YamlPolicyStore(path).save(_global("g1", 4, {"compliance": {"criticalDaysBeforeDue": 14}}))
        records = YamlPolicyStore(path).all_records()
        assert [r.policy_id for r in records] == ["g1"]
        assert records[0].version == 4
        assert YamlPolicyStore(path).load_policy_for_property(None).compliance.critical_days_before_due == 14

    def test_malformed_record_skipped(self, tmp_path):
        path = tmp_path / "policies.yaml"
        path.write_text(yaml.safe_dump({"policies": [{"scope_type": "global"}, {"policy_id": "ok"}]}))
        assert [r.policy_id for r in YamlPolicyStore(path).all_records()] == ["ok"]

    def test_invalid_yaml_raises_storage_error(self, tmp_path):
        path = tmp_path / "policies.yaml"
        path.write_text("policies: [unclosed")
        with pytest.raises(StorageError):
            YamlPolicyStore(path).all_records()
