"""Tests for vendor ranking and policy-gated selection."""

from datetime import timedelta

from conftest import NOW

from propagent.policy.engine import merge_policy
from propagent.schemas.domain import (
    Vendor,
    VendorStatus,
    WorkOrder,
    WorkOrderCategory,
    WorkOrderPriority,
)
from propagent.schemas.policy import DEFAULT_POLICY
from propagent.selection import first_allowed, prefer_first, rank_vendors


def _vendor(vendor_id, score, **kwargs):
    return Vendor(id=vendor_id, name=vendor_id, performance_score=score, **kwargs)


class TestRankVendors:
    def test_orders_by_score(self):
        ranked = rank_vendors([_vendor("a", 3.0), _vendor("b", 4.9), _vendor("c", 4.1)], NOW)
        assert [v.id for v in ranked] == ["b", "c", "a"]

    def test_drops_inactive_and_expired_license(self):
        vendors = [
            _vendor("inactive", 5.0, status=VendorStatus.INACTIVE),
            _vendor("expired", 4.9, license_expiry=NOW - timedelta(days=1)),
            _vendor("untracked", 4.0),
            _vendor("valid", 3.0, license_expiry=NOW + timedelta(days=30)),
        ]
        assert [v.id for v in rank_vendors(vendors, NOW)] == ["untracked", "valid"]

    def test_insurance_only_when_required(self):
        vendors = [_vendor("uninsured", 4.0, insurance_expiry=NOW - timedelta(days=1))]
        assert [v.id for v in rank_vendors(vendors, NOW)] == ["uninsured"]
        assert rank_vendors(vendors, NOW, require_insurance=True) == []

    def test_limit(self):
        vendors = [_vendor(str(i), float(i)) for i in range(10)]
        assert len(rank_vendors(vendors, NOW)) == 5
        assert [v.id for v in rank_vendors(vendors, NOW, limit=2)] == ["9", "8"]


class TestPreferFirst:
    def test_moves_preferred_to_front(self):
        vendors = [_vendor("a", 5), _vendor("b", 4), _vendor("c", 3)]
        reordered, found = prefer_first(vendors, "c")
        assert found
        assert [v.id for v in reordered] == ["c", "a", "b"]

    def test_absent_preference_keeps_order(self):
        vendors = [_vendor("a", 5), _vendor("b", 4)]
        reordered, found = prefer_first(vendors, "zzz")
        assert not found
        assert [v.id for v in reordered] == ["a", "b"]

    def test_no_preference(self):
        assert prefer_first([_vendor("a", 5)], None)[1] is False


class TestFirstAllowed:
    def _work_order(self, **kwargs):
        defaults = {"id": "wo-1", "property_id": "prop-1", "title": "Leak", "category": WorkOrderCategory.PLUMBING}
        defaults.update(kwargs)
        return WorkOrder(**defaults)

    def test_skips_vendor_at_capacity(self):
        loads = {"a": 25, "b": 2}
        chosen = first_allowed(
            [_vendor("a", 5), _vendor("b", 4)], self._work_order(), loads.get, DEFAULT_POLICY
        )
        assert chosen.id == "b"

    def test_none_when_all_at_capacity(self):
        policy = merge_policy({"workOrders": {"maxOpenPerVendor": 1}})
        assert first_allowed([_vendor("a", 5)], self._work_order(), lambda _: 1, policy) is None

    def test_emergency_never_assigned(self):
        work_order = self._work_order(priority=WorkOrderPriority.EMERGENCY)
        assert first_allowed([_vendor("a", 5)], work_order, lambda _: 0, DEFAULT_POLICY) is None

    def test_category_outside_whitelist(self):
        work_order = self._work_order(category=WorkOrderCategory.TURNOVER)
        assert first_allowed([_vendor("a", 5)], work_order, lambda _: 0, DEFAULT_POLICY) is None
