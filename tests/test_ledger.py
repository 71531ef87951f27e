"""Unit tests for ledger entry construction, splicing and replay."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from shopsync import ledger
from shopsync.constants import LoyaltyTransactionType

T0 = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)


def test_sale_entries_chain_earn_before_redeem():
    entries = ledger.record_sale_entries(
        "C1",
        100,
        points_earned=20,
        redeemed_points=50,
        sale_id="2401010900",
        timestamp=T0,
    )

    earned, redeemed = entries
    assert earned.type is LoyaltyTransactionType.EARNED
    assert (earned.points_before, earned.points_after) == (100, 120)
    assert redeemed.type is LoyaltyTransactionType.REDEEMED
    assert (redeemed.points_before, redeemed.points_after) == (120, 70)
    assert {entry.related_sale_id for entry in entries} == {"2401010900"}


def test_sale_without_point_movement_emits_nothing():
    assert ledger.record_sale_entries("C1", 10, points_earned=0, redeemed_points=0, sale_id="S", timestamp=T0) == ()


def test_manual_adjustment_types():
    add = ledger.record_manual_adjustment("C1", 10, 5, reason="goodwill", timestamp=T0)
    subtract = ledger.record_manual_adjustment("C1", 10, -4, reason=None, timestamp=T0)

    assert add.type is LoyaltyTransactionType.MANUAL_ADD
    assert add.points_after == 15
    assert subtract.type is LoyaltyTransactionType.MANUAL_SUBTRACT
    assert subtract.points == 4
    assert subtract.points_after == 6


@pytest.mark.parametrize("delta", [0, -11])
def test_manual_adjustment_rejects_zero_and_overdraw(delta):
    with pytest.raises(ValueError):
        ledger.record_manual_adjustment("C1", 10, delta, reason=None, timestamp=T0)


def _history():
    first = ledger.record_sale_entries("C1", 0, points_earned=30, redeemed_points=0, sale_id="A", timestamp=T0)
    second = ledger.record_sale_entries(
        "C1", 30, points_earned=10, redeemed_points=20, sale_id="B", timestamp=T0 + timedelta(days=1)
    )
    third = (ledger.record_manual_adjustment("C1", 20, 5, reason="fix", timestamp=T0 + timedelta(days=2)),)
    return first + second + third


def test_audit_accepts_consistent_chain():
    audit = ledger.audit_chain(_history(), "C1", 25)

    assert audit.consistent
    assert audit.entries_checked == 4
    assert audit.final_balance == 25


def test_audit_reports_first_broken_entry():
    entries = list(_history())
    entries[2] = replace(entries[2], points_before=999)

    audit = ledger.audit_chain(entries, "C1", 25)

    assert not audit.consistent
    assert audit.first_inconsistency.transaction_id == entries[2].transaction_id


def test_audit_detects_balance_mismatch():
    assert not ledger.audit_chain(_history(), "C1", 40).consistent


def test_splice_keeps_position_and_rebases_later_entries():
    entries = _history()
    replacement = ledger.record_sale_entries("C1", 0, points_earned=60, redeemed_points=0, sale_id="A", timestamp=T0)

    spliced = ledger.splice_sale_entries(entries, "A", replacement, customer_id="C1", opening=0)

    assert spliced[0].transaction_id == replacement[0].transaction_id
    assert [entry.points_after for entry in spliced] == [60, 70, 50, 55]
    assert ledger.audit_chain(spliced, "C1", 55).consistent


def test_splice_inserts_new_entries_by_timestamp():
    entries = _history()
    replacement = ledger.record_sale_entries(
        "C1", 0, points_earned=7, redeemed_points=0, sale_id="NEW", timestamp=T0 + timedelta(hours=12)
    )

    spliced = ledger.splice_sale_entries(entries, "NEW", replacement, customer_id="C1", opening=0)

    assert [entry.related_sale_id for entry in spliced] == ["A", "NEW", "B", "B", None]
    assert ledger.audit_chain(spliced, "C1", 32).consistent


def test_rebase_leaves_other_customers_alone():
    mine = ledger.record_sale_entries("C1", 5, points_earned=10, redeemed_points=0, sale_id="A", timestamp=T0)
    theirs = ledger.record_sale_entries("C2", 7, points_earned=3, redeemed_points=0, sale_id="X", timestamp=T0)

    rebased = ledger.rebase_chain(mine + theirs, "C1", 0)

    assert rebased[0].points_before == 0
    assert rebased[1] is theirs[0]


def test_settle_lifts_a_dip_and_lands_on_target():
    remaining = [entry for entry in _history() if entry.related_sale_id != "A"]

    settled = ledger.settle_chain(remaining, "C1", 0, target=0, timestamp=T0, reason="Reversal of sale A")

    assert [entry.type for entry in settled] == [
        LoyaltyTransactionType.EARNED,
        LoyaltyTransactionType.MANUAL_ADD,
        LoyaltyTransactionType.REDEEMED,
        LoyaltyTransactionType.MANUAL_ADD,
        LoyaltyTransactionType.MANUAL_SUBTRACT,
    ]
    assert settled[1].points == 10
    assert settled[1].timestamp == remaining[1].timestamp
    assert settled[-1].timestamp == remaining[-1].timestamp
    assert min(entry.points_after for entry in settled) == 0
    assert ledger.audit_chain(settled, "C1", 0).consistent


def test_settle_leaves_consistent_chain_untouched():
    entries = _history()

    assert ledger.settle_chain(entries, "C1", 0, target=25, timestamp=T0, reason="noop") == entries


def test_settle_ignores_other_customers():
    theirs = ledger.record_sale_entries("C2", 0, points_earned=3, redeemed_points=0, sale_id="X", timestamp=T0)
    mine = ledger.record_sale_entries("C1", 5, points_earned=0, redeemed_points=5, sale_id="B", timestamp=T0)

    settled = ledger.settle_chain(theirs + mine, "C1", 0, target=0, timestamp=T0, reason="fix", recorded_by="ops")

    assert settled[0] is theirs[0]
    assert settled[1].customer_id == "C1"
    assert settled[1].recorded_by == "ops"
    assert ledger.audit_chain(settled, "C2", 3).consistent
    assert ledger.audit_chain(settled, "C1", 0).consistent


def test_opening_balance_defaults_without_entries():
    assert ledger.opening_balance((), "C1", default=12) == 12
    assert ledger.opening_balance(_history(), "C1", default=12) == 0
