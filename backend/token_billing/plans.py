"""
Plan Resolver - Subscription plans, token bundles and billing cycles

Reads the reference catalogues from config. Plans and bundles are immutable
once published; an unknown id is a NotFound, an unknown cycle a
ValidationError.
"""

import calendar
from datetime import datetime
from typing import List, Optional, Union

from .config import BILLING_CYCLE_MONTHS, SUBSCRIPTION_PLANS, TOKEN_BUNDLES
from .errors import NotFound, ValidationError
from .models import BillingCycle, SubscriptionPlan, TokenBundle

_PLANS = {
    plan_id: SubscriptionPlan(id=plan_id, **plan)
    for plan_id, plan in SUBSCRIPTION_PLANS.items()
}

_BUNDLES = {
    bundle_id: TokenBundle(id=bundle_id, **bundle)
    for bundle_id, bundle in TOKEN_BUNDLES.items()
}


def list_plans() -> List[SubscriptionPlan]:
    return list(_PLANS.values())


def get_plan(plan_id: str) -> SubscriptionPlan:
    plan = _PLANS.get(plan_id)
    if plan is None:
        raise NotFound("Plan", plan_id)
    return plan


def list_bundles() -> List[TokenBundle]:
    return list(_BUNDLES.values())


def get_bundle(bundle_id: str) -> TokenBundle:
    bundle = _BUNDLES.get(bundle_id)
    if bundle is None:
        raise NotFound("Bundle", bundle_id)
    return bundle


def parse_cycle(cycle: Union[str, BillingCycle]) -> BillingCycle:
    if isinstance(cycle, BillingCycle):
        return cycle
    try:
        return BillingCycle(str(cycle).lower())
    except ValueError:
        raise ValidationError(
            f"Invalid billing cycle: {cycle}. Valid options: {list(BILLING_CYCLE_MONTHS.keys())}"
        )


def add_months(moment: datetime, months: int, anchor_day: Optional[int] = None) -> datetime:
    """
    Shift by calendar months, clamping the day to the target month's end.

    anchor_day is the day of month the schedule started on; pass it so a
    clamped date (Jan 31 -> Feb 28) returns to the anchor (Mar 31) next time.
    """
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(anchor_day or moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def advance_cycle(moment: datetime, cycle: BillingCycle, anchor_day: Optional[int] = None) -> datetime:
    """Billing date one cycle after moment."""
    return add_months(moment, BILLING_CYCLE_MONTHS[cycle.value], anchor_day)
