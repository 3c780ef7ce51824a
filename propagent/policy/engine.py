"""
Policy engine - deterministic evaluation of proposed agent actions.

evaluate_action() has no side effects and no I/O: given an action type, a
context and a PolicyConfig it returns ALLOW, APPROVAL or BLOCK with a
human-readable reason. Unknown action types fail safe to APPROVAL; the
engine never ALLOWs or BLOCKs something it has no rule for.

Context keys (all optional):
    amount                SPEND_APPROVE
    category, priority    WO_ASSIGN_VENDOR, WO_CREATE
    vendor_open_wo_count  WO_ASSIGN_VENDOR
    intent                MESSAGE_SEND
    has_legal_keywords    MESSAGE_SEND
    now                   MESSAGE_SEND quiet-hours check (local wall clock)
    is_overdue            COMPLIANCE_TASK_CREATE
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union

from propagent.schemas.policy import (
    DEFAULT_POLICY,
    PolicyActionType,
    PolicyConfig,
    PolicyDecision,
    PolicyResult,
)
from propagent.utils import format_money

logger = logging.getLogger(__name__)


def evaluate_action(
    action_type: Union[PolicyActionType, str],
    context: Optional[Mapping[str, Any]] = None,
    policy: PolicyConfig = DEFAULT_POLICY,
) -> PolicyResult:
    """
    Evaluate one proposed action against a policy.

    Args:
        action_type: A PolicyActionType or its string value
        context: Facts about the action (see module docstring)
        policy: Effective policy, usually from PolicyStore.load_policy_for_property

    Returns:
        PolicyResult with a non-empty reason
    """
    context = context or {}
    kind = action_type.value if isinstance(action_type, PolicyActionType) else str(action_type)

    if kind == PolicyActionType.SPEND_APPROVE.value:
        return _evaluate_spend(context, policy)
    if kind == PolicyActionType.WO_ASSIGN_VENDOR.value:
        return _evaluate_assign_vendor(context, policy)
    if kind == PolicyActionType.WO_BID_REQUEST.value:
        return PolicyResult(PolicyDecision.ALLOW, "Bid request collection is always permitted")
    if kind == PolicyActionType.WO_CREATE.value:
        if context.get("priority") == "EMERGENCY" and policy.work_orders.emergency_always_escalate:
            return PolicyResult(PolicyDecision.BLOCK, "Emergency WO creation requires human review")
        return PolicyResult(PolicyDecision.ALLOW, "Work order creation is within policy")
    if kind == PolicyActionType.MESSAGE_SEND.value:
        return _evaluate_message_send(context, policy)
    if kind == PolicyActionType.COMPLIANCE_TASK_CREATE.value:
        return _evaluate_compliance_task(context, policy)
    if kind == PolicyActionType.ESCALATE.value:
        return PolicyResult(PolicyDecision.ALLOW, "Escalation is always permitted")

    logger.debug(f"No policy rule for action type {kind!r}, requiring approval")
    return PolicyResult(
        PolicyDecision.APPROVAL,
        f'Unknown action type "{kind}", defaulting to require manager approval',
    )


def _evaluate_spend(context: Mapping[str, Any], policy: PolicyConfig) -> PolicyResult:
    amount = _number(context.get("amount"))
    if amount is None:
        return PolicyResult(
            PolicyDecision.APPROVAL,
            f"Spend amount {context.get('amount')!r} is not a number; manager approval required",
        )
    spend = policy.spend
    if amount > spend.hard_block_above:
        return PolicyResult(
            PolicyDecision.BLOCK,
            f"Spend ${format_money(amount)} exceeds hard block limit of ${format_money(spend.hard_block_above)}",
        )
    if amount > spend.auto_approve_max:
        return PolicyResult(
            PolicyDecision.APPROVAL,
            f"Spend ${format_money(amount)} exceeds auto-approve limit of "
            f"${format_money(spend.auto_approve_max)}; manager approval required",
        )
    return PolicyResult(PolicyDecision.ALLOW, f"Spend ${format_money(amount)} within auto-approve limit")


def _evaluate_assign_vendor(context: Mapping[str, Any], policy: PolicyConfig) -> PolicyResult:
    category = context.get("category") or ""
    priority = context.get("priority") or ""
    open_count = _number(context.get("vendor_open_wo_count"))
    rules = policy.work_orders

    if priority == "EMERGENCY" and rules.emergency_always_escalate:
        return PolicyResult(PolicyDecision.BLOCK, "Emergency priority WO requires human escalation")
    if category not in rules.auto_assign_allowed_categories:
        return PolicyResult(PolicyDecision.APPROVAL, f'Category "{category}" not in auto-assign whitelist')
    if open_count is None:
        return PolicyResult(PolicyDecision.APPROVAL, "Vendor open work order count is not a number")
    if open_count >= rules.max_open_per_vendor:
        return PolicyResult(
            PolicyDecision.APPROVAL,
            f"Vendor already has {int(open_count)} open WOs (max {rules.max_open_per_vendor})",
        )
    return PolicyResult(PolicyDecision.ALLOW, f'Auto-assign allowed for category "{category}"')


def _evaluate_message_send(context: Mapping[str, Any], policy: PolicyConfig) -> PolicyResult:
    intent = context.get("intent") or ""
    messaging = policy.messaging

    if context.get("has_legal_keywords") is True and messaging.legal_keywords_escalate:
        return PolicyResult(
            PolicyDecision.BLOCK,
            "Message contains legal keywords, requires human review before sending",
        )
    if intent not in messaging.allowed_auto_intents:
        return PolicyResult(PolicyDecision.APPROVAL, f'Intent "{intent}" is not in the allowed auto-send list')

    now = context.get("now")
    if not isinstance(now, datetime):
        now = datetime.now(timezone.utc)
    quiet = messaging.quiet_hours
    if is_in_quiet_hours(now, quiet.start, quiet.end):
        return PolicyResult(
            PolicyDecision.APPROVAL,
            f"Message blocked by quiet hours ({quiet.start}-{quiet.end})",
        )
    return PolicyResult(PolicyDecision.ALLOW, f'Auto-send permitted for intent "{intent}"')


def _evaluate_compliance_task(context: Mapping[str, Any], policy: PolicyConfig) -> PolicyResult:
    rules = policy.compliance
    if not rules.auto_create_tasks:
        return PolicyResult(PolicyDecision.APPROVAL, "Auto-creation of compliance tasks is disabled by policy")
    if context.get("is_overdue") is True and rules.overdue_always_escalate:
        return PolicyResult(PolicyDecision.BLOCK, "Overdue compliance item requires immediate human escalation")
    return PolicyResult(PolicyDecision.ALLOW, "Compliance task auto-creation is within policy")


def _number(value: Any) -> Optional[float]:
    """Absent means 0; a numeric string is converted; anything else is None."""
    if value is None:
        return 0
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = value
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _minute_of_day(hhmm: str) -> int:
    hours, minutes = hhmm.split(":", 1)
    return int(hours) * 60 + int(minutes)


def is_in_quiet_hours(now: datetime, start: str, end: str) -> bool:
    """
    True if the wall-clock time of ``now`` falls in the [start, end) window.

    ``start`` and ``end`` are "HH:MM". A window whose start is not before its
    end wraps past midnight (21:00-07:00 covers 22:00 and 06:59, not 07:00).
    Convert ``now`` to the portfolio's timezone before calling. A malformed
    window is treated as "not quiet".
    """
    try:
        start_min = _minute_of_day(start)
        end_min = _minute_of_day(end)
    except (AttributeError, ValueError):
        logger.warning(f"Ignoring malformed quiet hours window {start!r}-{end!r}")
        return False

    now_min = now.hour * 60 + now.minute
    if start_min < end_min:
        return start_min <= now_min < end_min
    return now_min >= start_min or now_min < end_min


def merge_policy(partial: Any, base: PolicyConfig = DEFAULT_POLICY) -> PolicyConfig:
    """
    Overlay a stored partial config over ``base``.

    Merges section by section, with messaging.quietHours merged as its own
    object. Non-dict input returns ``base`` unchanged; unknown keys and
    wrongly typed values are ignored. Never raises.

    Example:
        >>> merge_policy({"spend": {"autoApproveMax": 500}}).spend.auto_approve_max
        500
        >>> merge_policy("garbage") is DEFAULT_POLICY
        True
    """
    return base.overlay(partial)
