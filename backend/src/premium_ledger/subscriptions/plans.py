"""Premium plan durations and upgrade ordering."""

from datetime import timedelta
from enum import Enum


class PlanType(str, Enum):
    """Premium subscription plans."""
    MONTHLY = "monthly"
    HALF_YEAR = "half-year"
    YEARLY = "yearly"


PLAN_DURATIONS: dict[PlanType, timedelta] = {
    PlanType.MONTHLY: timedelta(days=30),
    PlanType.HALF_YEAR: timedelta(days=180),
    PlanType.YEARLY: timedelta(days=365),
}

# Upgrade ordering: monthly < half-year < yearly
PLAN_ORDER: dict[PlanType, int] = {
    PlanType.MONTHLY: 1,
    PlanType.HALF_YEAR: 2,
    PlanType.YEARLY: 3,
}


def parse_plan(value: "str | PlanType | None") -> PlanType | None:
    """Coerce a stored or gateway-supplied plan identifier.

    Returns None for empty or unknown values.
    """
    if value is None or value == "":
        return None
    try:
        return PlanType(value)
    except ValueError:
        return None


def plan_duration(plan: "str | PlanType") -> timedelta:
    """Entitlement length bought by one billing period of ``plan``.

    Raises:
        ValueError: If the plan is unknown
    """
    parsed = parse_plan(plan)
    if parsed is None:
        raise ValueError(f"Unknown plan: {plan}")
    return PLAN_DURATIONS[parsed]


def is_upgrade(current: "str | PlanType | None", target: "str | PlanType") -> bool:
    """True iff ``target`` sits strictly above ``current`` in the plan ordering.

    Having no current plan makes any known target an upgrade.
    """
    target_plan = parse_plan(target)
    if target_plan is None:
        return False
    current_plan = parse_plan(current)
    if current_plan is None:
        return True
    return PLAN_ORDER[target_plan] > PLAN_ORDER[current_plan]


def plan_for_period(length: timedelta) -> PlanType:
    """Plan whose duration is closest to a billed period's length."""
    return min(PLAN_DURATIONS, key=lambda plan: abs(PLAN_DURATIONS[plan] - length))
