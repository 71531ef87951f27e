"""Rolling-window customer tier evaluation.

A customer's tier is a cached, derived field. It is recomputed from the
sales history after every change that can affect it and is never treated as
authoritative input.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from . import log
from .models import ZERO, Customer, CustomerTier, Period, Sale


@dataclass(frozen=True)
class WindowActivity:
    """Visits and spend of one customer inside a rolling window."""

    cutoff: datetime
    visit_count: int
    total_spend: Decimal


def window_activity(
    customer: Customer,
    sales: Iterable[Sale],
    period: Period,
    now: datetime,
) -> WindowActivity:
    """Count the visits and paid amounts of ``customer`` since ``now - period``.

    The manual visit adjustment is added to the visit count so that staff can
    correct tier eligibility without fabricating sales.
    """

    cutoff = period.before(now)
    matching = [
        sale
        for sale in sales
        if sale.customer_id == customer.customer_id and sale.timestamp >= cutoff
    ]
    return WindowActivity(
        cutoff=cutoff,
        visit_count=len(matching) + customer.manual_visit_adjustment,
        total_spend=sum((sale.amount_paid for sale in matching), ZERO),
    )


def evaluate_tier(
    customer: Customer,
    sales: Sequence[Sale],
    tiers: Sequence[CustomerTier],
    now: datetime,
) -> Optional[CustomerTier]:
    """Return the highest-ranked tier ``customer`` qualifies for at ``now``.

    Tiers are tried best first; each one uses its own rolling period. The
    rank-0 base tier has no requirements and is the fallback. ``None`` is
    returned only for a catalog without a base tier.
    """

    for tier in sorted(tiers, key=lambda t: t.rank, reverse=True):
        if tier.rank == 0:
            continue
        activity = window_activity(customer, sales, tier.period, now)
        if activity.visit_count >= tier.min_visits and activity.total_spend >= tier.min_spend:
            log.debug(
                "Customer '%s' qualifies for tier '%s' (visits=%d, spend=%s)",
                customer.customer_id,
                tier.name,
                activity.visit_count,
                activity.total_spend,
            )
            return tier

    return next((tier for tier in tiers if tier.rank == 0), None)
