"""Effective premium entitlement.

Pure functions over the stored subscription fields of an account. Callers
persist any correction they derive (e.g. clearing ``premium_active`` once
the window has elapsed); nothing here writes.
"""

from datetime import datetime
from typing import Protocol

from premium_ledger.subscriptions.plans import parse_plan, plan_duration


class PremiumFields(Protocol):
    """The subset of account fields the resolver reads."""

    premium_active: bool
    premium_plan: object
    premium_start: datetime | None
    premium_end: datetime | None


def entitlement_end(account: PremiumFields) -> datetime | None:
    """End of the entitlement window, stored or derived from the plan.

    Legacy records without an explicit end get ``start + plan duration``.
    Returns None when neither is available.
    """
    if account.premium_end is not None:
        return account.premium_end
    plan = parse_plan(account.premium_plan)
    if account.premium_start is not None and plan is not None:
        return account.premium_start + plan_duration(plan)
    return None


def is_premium_active(account: PremiumFields, now: datetime) -> bool:
    """Whether the account is entitled to premium at ``now``."""
    if not account.premium_active:
        return False

    end = entitlement_end(account)
    if end is None:
        # No way to verify expiry
        return bool(account.premium_active)

    return now < end
