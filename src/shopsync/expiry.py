"""Advisory estimate of loyalty points that are about to lapse.

Nothing here removes points. The estimate feeds "points expiring soon"
warnings only.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable

from .models import Customer, LoyaltyExpirySettings, LoyaltyTransaction


def points_expiring_soon(
    customer: Customer,
    transactions: Iterable[LoyaltyTransaction],
    settings: LoyaltyExpirySettings,
    now: datetime,
) -> int:
    """Estimate the unspent points of ``customer`` lapsing within the reminder window.

    Debits are consumed against credits oldest-first (FIFO). Each credit's
    unspent residual expires ``points_lifespan`` after it was granted; the
    residual is counted when that moment falls in ``(now, now + reminder]``.

    Args:
        customer: Customer whose balance is inspected.
        transactions: Ledger entries; entries of other customers are ignored.
        settings: Expiry policy.
        now: Evaluation moment.

    Returns:
        int: Rounded number of points expiring soon, ``0`` when expiry is
            disabled, the balance is empty, or the customer has been inactive
            longer than the inactivity period.
    """

    if not settings.enabled or customer.loyalty_points <= 0:
        return 0

    if customer.last_seen < settings.inactivity_period.before(now):
        return 0

    reminder_end = settings.reminder_period.after(now)
    own = [t for t in transactions if t.customer_id == customer.customer_id]
    credits = sorted((t for t in own if t.type.is_credit), key=lambda t: t.timestamp)
    debit_pool = sum(t.points for t in own if not t.type.is_credit)

    expiring = 0
    for credit in credits:
        unspent = credit.points
        if debit_pool > 0:
            consumed = min(unspent, debit_pool)
            unspent -= consumed
            debit_pool -= consumed

        expires_at = settings.points_lifespan.after(credit.timestamp)
        if unspent > 0 and now < expires_at <= reminder_end:
            expiring += unspent

    return round(expiring)
