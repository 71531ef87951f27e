"""Unit tests for the points-expiring-soon estimate."""

from __future__ import annotations

from datetime import UTC, datetime
from itertools import count

import pytest

from shopsync.constants import LoyaltyTransactionType, PeriodUnit
from shopsync.expiry import points_expiring_soon
from shopsync.models import Customer, LoyaltyExpirySettings, LoyaltyTransaction, Period

NOW = datetime(2024, 3, 15, tzinfo=UTC)
ENABLED = LoyaltyExpirySettings(
    enabled=True,
    inactivity_period=Period(12, PeriodUnit.MONTHS),
    points_lifespan=Period(24, PeriodUnit.MONTHS),
    reminder_period=Period(1, PeriodUnit.MONTHS),
)
_ids = count(1)


def _entry(kind: LoyaltyTransactionType, points: int, when: datetime, customer_id: str = "C1") -> LoyaltyTransaction:
    return LoyaltyTransaction(
        transaction_id=f"T{next(_ids)}",
        customer_id=customer_id,
        type=kind,
        points=points,
        timestamp=when,
        points_before=0,
        points_after=0,
    )


def _customer(points: int, last_seen: datetime = NOW) -> Customer:
    return Customer(
        customer_id="C1",
        name="Ravi",
        sale_ids=(),
        first_seen=datetime(2021, 1, 1, tzinfo=UTC),
        last_seen=last_seen,
        loyalty_points=points,
    )


def test_credit_expiring_inside_reminder_window_is_counted():
    entries = [_entry(LoyaltyTransactionType.EARNED, 50, datetime(2022, 4, 1, tzinfo=UTC))]

    assert points_expiring_soon(_customer(50), entries, ENABLED, NOW) == 50


def test_credit_expiring_later_is_not_counted():
    entries = [_entry(LoyaltyTransactionType.EARNED, 50, datetime(2022, 6, 1, tzinfo=UTC))]

    assert points_expiring_soon(_customer(50), entries, ENABLED, NOW) == 0


def test_debits_consume_oldest_credits_first():
    entries = [
        _entry(LoyaltyTransactionType.EARNED, 50, datetime(2022, 4, 1, tzinfo=UTC)),
        _entry(LoyaltyTransactionType.MANUAL_ADD, 40, datetime(2022, 4, 2, tzinfo=UTC)),
        _entry(LoyaltyTransactionType.REDEEMED, 30, datetime(2023, 1, 1, tzinfo=UTC)),
        _entry(LoyaltyTransactionType.EARNED, 100, datetime(2023, 6, 1, tzinfo=UTC)),
    ]

    # 30 of the first 50 were spent; the 40 from the second credit also lapse.
    assert points_expiring_soon(_customer(160), entries, ENABLED, NOW) == 60


def test_other_customers_entries_are_ignored():
    entries = [_entry(LoyaltyTransactionType.EARNED, 50, datetime(2022, 4, 1, tzinfo=UTC), customer_id="C2")]

    assert points_expiring_soon(_customer(50), entries, ENABLED, NOW) == 0


@pytest.mark.parametrize(
    "settings, customer",
    [
        (LoyaltyExpirySettings(enabled=False), _customer(50)),
        (ENABLED, _customer(0)),
        (ENABLED, _customer(50, last_seen=datetime(2023, 1, 1, tzinfo=UTC))),
    ],
)
def test_no_estimate_when_disabled_empty_or_inactive(settings, customer):
    entries = [_entry(LoyaltyTransactionType.EARNED, 50, datetime(2022, 4, 1, tzinfo=UTC))]

    assert points_expiring_soon(customer, entries, settings, NOW) == 0
