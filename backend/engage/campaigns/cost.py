# /engage/campaigns/cost.py

"""WhatsApp conversation cost estimates for a campaign and its follow-ups, in INR."""

import math
from typing import Any, Dict, List, Optional

from engage.models.campaign import FollowUpCondition

RATE_TEMPLATE = 0.50
RATE_UTILITY = 0.30
RATE_FREE_FORM = 0.0

TRIGGER_RATES = {
    FollowUpCondition.NOT_READ.value: 0.55,
    FollowUpCondition.READ.value: 0.45,
    FollowUpCondition.NOT_CLICKED.value: 0.35,
    FollowUpCondition.CLICKED.value: 0.10,
    FollowUpCondition.NOT_CONVERTED.value: 0.08,
    FollowUpCondition.CONVERTED.value: 0.03,
    FollowUpCondition.REPLIED.value: 0.05,
    FollowUpCondition.NOT_REPLIED.value: 0.40,
}
DEFAULT_TRIGGER_RATE = 0.20


def estimate_trigger_rate(condition: Any) -> float:
    """Expected share of the audience a follow-up with this condition reaches."""
    key = condition.value if isinstance(condition, FollowUpCondition) else str(condition or "").upper()
    return TRIGGER_RATES.get(key, DEFAULT_TRIGGER_RATE)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _money(amount: float) -> float:
    return round(amount, 2)


def estimate_campaign_cost(
    audience_size: int,
    in_window_count: int,
    follow_ups: Optional[List[Dict[str, Any]]] = None,
    use_smart_window: bool = True
) -> Dict[str, Any]:
    """
    Cost of the initial send plus each follow-up. Customers inside the free
    window cost nothing when the smart window is used; follow-ups are billed
    at the utility rate.
    """
    in_window_count = min(in_window_count, audience_size)
    ratio = in_window_count / audience_size if audience_size > 0 else 0.0

    # In-window customers get free-form text; the rest need a marketing template.
    initial_cost = (audience_size - in_window_count) * RATE_TEMPLATE
    initial_savings = in_window_count * RATE_TEMPLATE

    breakdown = []
    follow_up_cost = 0.0
    follow_up_savings = 0.0
    for index, follow_up in enumerate(follow_ups or [], start=1):
        condition = follow_up.get("condition")
        rate = estimate_trigger_rate(condition)
        recipients = _round_half_up(audience_size * rate)
        smart = follow_up.get("use_smart_window", use_smart_window)
        free = _round_half_up(recipients * ratio) if smart else 0
        cost = (recipients - free) * RATE_UTILITY
        savings = _round_half_up(recipients * ratio) * RATE_UTILITY
        follow_up_cost += cost
        follow_up_savings += savings
        breakdown.append({
            "step_index": follow_up.get("step_index") or index,
            "condition": condition.value if isinstance(condition, FollowUpCondition) else condition,
            "trigger_rate": rate,
            "estimated_recipients": recipients,
            "free_form_recipients": free,
            "cost": _money(cost),
            "savings": _money(savings),
        })

    total_cost = initial_cost + follow_up_cost
    total_savings = initial_savings + follow_up_savings
    without_window = total_cost + total_savings
    return {
        "audience_size": audience_size,
        "in_window_count": in_window_count,
        "in_window_ratio": round(ratio, 4),
        "initial_cost": _money(initial_cost),
        "initial_savings": _money(initial_savings),
        "follow_ups": breakdown,
        "follow_up_cost": _money(follow_up_cost),
        "total_cost": _money(total_cost),
        "total_savings": _money(total_savings),
        "savings_percent": round(total_savings / without_window * 100, 1) if without_window > 0 else 0.0,
    }


def _indian_grouping(number: int) -> str:
    digits = str(number)
    if len(digits) <= 3:
        return digits
    head, tail = digits[:-3], digits[-3:]
    groups = []
    while len(head) > 2:
        groups.insert(0, head[-2:])
        head = head[:-2]
    if head:
        groups.insert(0, head)
    return ",".join(groups + [tail])


def format_cost_inr(amount: float) -> str:
    if amount == 0:
        return "₹0"
    if abs(amount) < 1:
        return f"₹{amount:.2f}"
    sign = "-" if amount < 0 else ""
    return f"{sign}₹{_indian_grouping(_round_half_up(abs(amount)))}"
