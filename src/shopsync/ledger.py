"""Loyalty ledger entries with before/after balance snapshots.

Every change to a customer's point balance is described by a
:class:`~shopsync.models.LoyaltyTransaction`. Replaying a customer's
entries in chronological order must reproduce each ``points_before`` and end
at the customer's current balance; :func:`audit_chain` checks exactly that.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from . import log
from .constants import LoyaltyTransactionType
from .models import LoyaltyTransaction


def new_entry_id() -> str:
    """Return a fresh ledger entry identifier."""

    return uuid.uuid4().hex


def apply_entry(balance: int, entry: LoyaltyTransaction) -> int:
    """Return ``balance`` after applying ``entry`` according to its type sign."""

    return balance + entry.type.sign * entry.points


def record_sale_entries(
    customer_id: str,
    points_before: int,
    *,
    points_earned: int,
    redeemed_points: int,
    sale_id: str,
    timestamp: datetime,
    recorded_by: Optional[str] = None,
) -> Tuple[LoyaltyTransaction, ...]:
    """Build the ledger entries produced by one sale.

    At most one ``earned`` and one ``redeemed`` entry are emitted. The earn is
    always chained before the redeem, both starting from the balance the
    customer held before the sale.
    """

    entries: List[LoyaltyTransaction] = []
    running = points_before

    if points_earned > 0:
        entries.append(
            LoyaltyTransaction(
                transaction_id=new_entry_id(),
                customer_id=customer_id,
                type=LoyaltyTransactionType.EARNED,
                points=points_earned,
                timestamp=timestamp,
                points_before=running,
                points_after=running + points_earned,
                related_sale_id=sale_id,
                recorded_by=recorded_by,
            )
        )
        running += points_earned

    if redeemed_points > 0:
        entries.append(
            LoyaltyTransaction(
                transaction_id=new_entry_id(),
                customer_id=customer_id,
                type=LoyaltyTransactionType.REDEEMED,
                points=redeemed_points,
                timestamp=timestamp,
                points_before=running,
                points_after=running - redeemed_points,
                related_sale_id=sale_id,
                recorded_by=recorded_by,
            )
        )

    return tuple(entries)


def record_manual_adjustment(
    customer_id: str,
    points_before: int,
    delta: int,
    *,
    reason: Optional[str],
    timestamp: datetime,
    recorded_by: Optional[str] = None,
) -> LoyaltyTransaction:
    """Build a ``manual_add``/``manual_subtract`` entry for a signed ``delta``.

    Raises:
        ValueError: If ``delta`` is zero or would drive the balance negative.
    """

    if delta == 0:
        raise ValueError("Point adjustment must be non-zero")
    points_after = points_before + delta
    if points_after < 0:
        raise ValueError("Point adjustment would make the balance negative")

    return LoyaltyTransaction(
        transaction_id=new_entry_id(),
        customer_id=customer_id,
        type=LoyaltyTransactionType.MANUAL_ADD if delta > 0 else LoyaltyTransactionType.MANUAL_SUBTRACT,
        points=abs(delta),
        timestamp=timestamp,
        points_before=points_before,
        points_after=points_after,
        reason=reason,
        recorded_by=recorded_by,
    )


def chronological(entries: Sequence[LoyaltyTransaction], customer_id: str) -> List[LoyaltyTransaction]:
    """Entries of ``customer_id`` sorted by timestamp; ties keep list order."""

    own = [entry for entry in entries if entry.customer_id == customer_id]
    return sorted(own, key=lambda entry: entry.timestamp)


def opening_balance(entries: Sequence[LoyaltyTransaction], customer_id: str, default: int) -> int:
    """Balance the customer's chain starts from, or ``default`` without entries."""

    own = chronological(entries, customer_id)
    return own[0].points_before if own else default


def rebase_chain(
    entries: Sequence[LoyaltyTransaction],
    customer_id: str,
    opening: int,
) -> Tuple[LoyaltyTransaction, ...]:
    """Recompute before/after snapshots of one customer's entries.

    Used after entries in the middle of a chain were replaced or removed.
    Entries of other customers pass through untouched.
    """

    running = opening
    rebased: List[LoyaltyTransaction] = []
    for entry in entries:
        if entry.customer_id != customer_id:
            rebased.append(entry)
            continue
        after = apply_entry(running, entry)
        if entry.points_before != running or entry.points_after != after:
            entry = replace(entry, points_before=running, points_after=after)
        rebased.append(entry)
        running = after
    return tuple(rebased)


def settle_chain(
    entries: Sequence[LoyaltyTransaction],
    customer_id: str,
    opening: int,
    *,
    target: int,
    timestamp: datetime,
    reason: str,
    recorded_by: Optional[str] = None,
) -> Tuple[LoyaltyTransaction, ...]:
    """Re-base one customer's chain so it never dips below zero and ends at ``target``.

    Removing or shrinking a sale can leave later redemptions spending points
    the customer no longer had. Each such entry is preceded by a
    ``manual_add`` correction that lifts the running balance back to zero.
    When the chain then ends away from ``target`` (the balance stored on the
    customer), a closing correction is appended.

    Args:
        entries (Sequence[LoyaltyTransaction]): Full ledger in chain order.
        customer_id (str): Customer whose entries are re-based.
        opening (int): Balance the customer's chain starts from.
        target (int): Non-negative balance the chain must end at.
        timestamp (datetime): Earliest moment for the closing correction.
        reason (str): Reason recorded on every correction.
        recorded_by (str | None): Actor recorded on every correction.

    Returns:
        tuple[LoyaltyTransaction, ...]: Ledger with corrections inserted.
    """

    running = opening
    latest = timestamp
    settled: List[LoyaltyTransaction] = []
    for entry in entries:
        if entry.customer_id != customer_id:
            settled.append(entry)
            continue
        after = apply_entry(running, entry)
        if after < 0:
            correction = record_manual_adjustment(
                customer_id,
                running,
                -after,
                reason=reason,
                timestamp=entry.timestamp,
                recorded_by=recorded_by,
            )
            log.warning(
                "Ledger of customer '%s' would drop to %d at entry '%s'; added %d points",
                customer_id,
                after,
                entry.transaction_id,
                correction.points,
            )
            settled.append(correction)
            running = correction.points_after
            after = apply_entry(running, entry)
        if entry.points_before != running or entry.points_after != after:
            entry = replace(entry, points_before=running, points_after=after)
        settled.append(entry)
        running = after
        latest = max(latest, entry.timestamp)

    if running != target:
        closing = record_manual_adjustment(
            customer_id,
            running,
            target - running,
            reason=reason,
            timestamp=latest,
            recorded_by=recorded_by,
        )
        log.info("Closed ledger of customer '%s' at %d (was %d)", customer_id, target, running)
        settled.append(closing)
    return tuple(settled)


def splice_sale_entries(
    entries: Sequence[LoyaltyTransaction],
    sale_id: str,
    replacement: Sequence[LoyaltyTransaction],
    *,
    customer_id: str,
    opening: int,
) -> Tuple[LoyaltyTransaction, ...]:
    """Swap the entries tied to ``sale_id`` for ``replacement`` and re-base.

    Replacement entries take the chain position of the entries they replace.
    When the sale had no entries they are inserted by timestamp.
    """

    positions = [index for index, entry in enumerate(entries) if entry.related_sale_id == sale_id]
    remaining = [entry for entry in entries if entry.related_sale_id != sale_id]

    if positions:
        insert_at = positions[0]
    elif replacement:
        moment = replacement[0].timestamp
        insert_at = next(
            (index for index, entry in enumerate(remaining) if entry.timestamp > moment),
            len(remaining),
        )
    else:
        insert_at = len(remaining)

    spliced = remaining[:insert_at] + list(replacement) + remaining[insert_at:]
    log.debug(
        "Spliced %d ledger entries for sale '%s' (removed %d)",
        len(replacement),
        sale_id,
        len(positions),
    )
    return rebase_chain(spliced, customer_id, opening)


@dataclass(frozen=True)
class LedgerAudit:
    """Outcome of replaying one customer's ledger."""

    customer_id: str
    entries_checked: int
    final_balance: int
    expected_balance: int
    first_inconsistency: Optional[LoyaltyTransaction] = None

    @property
    def consistent(self) -> bool:
        return self.first_inconsistency is None and self.final_balance == self.expected_balance


def audit_chain(
    entries: Sequence[LoyaltyTransaction],
    customer_id: str,
    expected_balance: int,
) -> LedgerAudit:
    """Replay a customer's ledger from zero and report the first broken link."""

    running = 0
    first_bad: Optional[LoyaltyTransaction] = None
    own = chronological(entries, customer_id)
    for entry in own:
        after = apply_entry(running, entry)
        if first_bad is None and (entry.points_before != running or entry.points_after != after):
            first_bad = entry
            log.warning(
                "Ledger entry '%s' for customer '%s' breaks the chain (before=%d, expected=%d)",
                entry.transaction_id,
                customer_id,
                entry.points_before,
                running,
            )
        running = after

    return LedgerAudit(
        customer_id=customer_id,
        entries_checked=len(own),
        final_balance=running,
        expected_balance=expected_balance,
        first_inconsistency=first_bad,
    )
