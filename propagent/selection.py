"""
Vendor selection shared by the maintenance and SLA breach workflows and the
agent's get_best_vendor tool.

Selection is two-phase:
1. rank_vendors() filters eligible vendors (active, serving the category at
   the property, license valid or untracked) and orders them by
   performance score
2. first_allowed() walks that order and returns the first vendor for which
   WO_ASSIGN_VENDOR policy, evaluated with the vendor's live open-WO count,
   is ALLOW
"""

from datetime import datetime
from typing import Callable, Iterable, Optional

from propagent.policy.engine import evaluate_action
from propagent.schemas.domain import Vendor, VendorStatus, WorkOrder
from propagent.schemas.policy import PolicyActionType, PolicyConfig, PolicyDecision

MAX_CANDIDATES = 5


def rank_vendors(
    vendors: Iterable[Vendor],
    as_of: datetime,
    limit: int = MAX_CANDIDATES,
    require_insurance: bool = False,
) -> list[Vendor]:
    """
    Eligible vendors ordered by performance score, best first.

    Args:
        vendors: Vendors already matched to the property and category
        as_of: Reference time for license/insurance expiry
        limit: Maximum number of vendors returned
        require_insurance: Also require insurance valid or untracked
    """
    eligible = [
        v for v in vendors
        if v.status == VendorStatus.ACTIVE
        and v.license_valid(as_of)
        and (not require_insurance or v.insurance_valid(as_of))
    ]
    eligible.sort(key=lambda v: v.performance_score, reverse=True)
    return eligible[:limit]


def prefer_first(vendors: list[Vendor], preferred_id: Optional[str]) -> tuple[list[Vendor], bool]:
    """
    Move the preferred vendor to the front, keeping the rest in order.

    Returns:
        (reordered vendors, whether the preferred vendor was among them)
    """
    if preferred_id is None:
        return list(vendors), False
    for index, vendor in enumerate(vendors):
        if vendor.id == preferred_id:
            return [vendor] + vendors[:index] + vendors[index + 1:], True
    return list(vendors), False


def first_allowed(
    vendors: Iterable[Vendor],
    work_order: WorkOrder,
    count_open: Callable[[str], int],
    policy: PolicyConfig,
) -> Optional[Vendor]:
    """
    First vendor whose assignment policy decision is ALLOW.

    Args:
        vendors: Candidates in preference order
        work_order: The work order being assigned
        count_open: vendor_id -> number of ASSIGNED/IN_PROGRESS work orders
        policy: Effective policy for the work order's property
    """
    for vendor in vendors:
        result = evaluate_action(
            PolicyActionType.WO_ASSIGN_VENDOR,
            {
                "category": work_order.category.value,
                "priority": work_order.priority.value,
                "vendor_open_wo_count": count_open(vendor.id),
            },
            policy,
        )
        if result.decision == PolicyDecision.ALLOW:
            return vendor
    return None
