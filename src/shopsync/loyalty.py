"""Loyalty rule resolution: points earned on a sale and redemption value.

Points are earned on item revenue only. Labour, tuning and outside-service
charges never count towards the points base, but the overall and loyalty
discounts are shared proportionally between items and charges before the
item revenue is netted, so discounting a service does not inflate
item-derived points.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from .constants import RedemptionMethod
from .models import (
    ZERO,
    AppliedMultiplier,
    CustomerTier,
    EarningRule,
    LoyaltyExpirySettings,
    Promotion,
    RedemptionRule,
    floor_points,
    to_money,
)

HUNDRED = Decimal("100")
ONE = Decimal("1")


@dataclass(frozen=True)
class EarningOutcome:
    """Points earned on a sale together with the multipliers that applied."""

    points: int
    qualifying_spend: Decimal
    rule: Optional[EarningRule] = None
    promotion: Optional[AppliedMultiplier] = None
    tier: Optional[AppliedMultiplier] = None


def net_item_revenue(
    item_subtotal: Decimal,
    service_charges: Decimal,
    overall_discount_amount: Decimal,
    total_outside_services: Decimal,
    loyalty_discount: Decimal,
) -> Decimal:
    """Return the revenue attributable to catalog items after discounts.

    Args:
        item_subtotal: Item value after per-line discounts.
        service_charges: Tuning plus labour charges.
        overall_discount_amount: Overall discount applied to items and charges.
        total_outside_services: Outside services billed after the discount.
        loyalty_discount: Currency value of the points redeemed on the sale.

    Returns:
        Decimal: Qualifying spend, never negative.
    """

    discount_base = item_subtotal + service_charges
    item_ratio = item_subtotal / discount_base if discount_base > ZERO else ZERO
    net_before_loyalty = item_subtotal - overall_discount_amount * item_ratio

    bill_before_loyalty = discount_base - overall_discount_amount + total_outside_services
    loyalty_ratio = net_before_loyalty / bill_before_loyalty if bill_before_loyalty > ZERO else ZERO
    net = net_before_loyalty - loyalty_discount * loyalty_ratio
    return max(ZERO, net)


def select_earning_rule(rules: Iterable[EarningRule], spend: Decimal) -> Optional[EarningRule]:
    """Pick the band containing ``spend``; the highest ``min_spend`` wins overlaps."""

    ordered = sorted(rules, key=lambda rule: rule.min_spend, reverse=True)
    return next((rule for rule in ordered if rule.covers(spend)), None)


def active_promotion(promotions: Sequence[Promotion], day: date) -> Optional[Promotion]:
    """Return the promotion running on ``day``.

    Overlapping promotions resolve to the highest multiplier, then the most
    recent start date, then catalog order.
    """

    running = [promo for promo in promotions if promo.is_active_on(day)]
    if not running:
        return None
    return max(
        enumerate(running),
        key=lambda pair: (pair[1].multiplier, pair[1].start_date, -pair[0]),
    )[1]


def promotion_snapshot(promotion: Optional[Promotion]) -> Optional[AppliedMultiplier]:
    if promotion is None:
        return None
    return AppliedMultiplier(name=promotion.name, multiplier=promotion.multiplier)


def tier_snapshot(tier: Optional[CustomerTier]) -> Optional[AppliedMultiplier]:
    if tier is None:
        return None
    return AppliedMultiplier(name=tier.name, multiplier=tier.points_multiplier)


def calculate_points_earned(
    qualifying_spend: Decimal,
    rules: Iterable[EarningRule],
    *,
    promotion: Optional[AppliedMultiplier] = None,
    tier: Optional[AppliedMultiplier] = None,
) -> EarningOutcome:
    """Apply the matching earning rule and multipliers to ``qualifying_spend``.

    ``floor(spend / 100 * pointsPerHundred * tierMultiplier * promoMultiplier)``;
    zero or negative spend, or spend outside every band, earns nothing.
    """

    if qualifying_spend <= ZERO:
        return EarningOutcome(points=0, qualifying_spend=ZERO)

    rule = select_earning_rule(rules, qualifying_spend)
    if rule is None:
        return EarningOutcome(points=0, qualifying_spend=qualifying_spend)

    multiplier = ONE
    if tier is not None:
        multiplier *= tier.multiplier
    if promotion is not None:
        multiplier *= promotion.multiplier

    raw = qualifying_spend / HUNDRED * rule.points_per_hundred * multiplier
    return EarningOutcome(
        points=max(0, floor_points(raw)),
        qualifying_spend=qualifying_spend,
        rule=rule,
        promotion=promotion,
        tier=tier,
    )


def redemption_value(rule: RedemptionRule, points: int, total_before_loyalty: Decimal) -> Decimal:
    """Currency discount for redeeming ``points``, clamped to ``[0, total]``."""

    ceiling = max(total_before_loyalty, ZERO)
    if points <= 0 or rule.points <= 0:
        return ZERO

    ratio = Decimal(points) / Decimal(rule.points)
    if rule.method is RedemptionMethod.FIXED_VALUE:
        value = ratio * rule.value
    else:
        value = total_before_loyalty * (ratio * rule.value) / HUNDRED
    return min(max(to_money(value), ZERO), ceiling)


def loyalty_program_problems(
    *,
    earning_rules: Sequence[EarningRule],
    redemption_rule: RedemptionRule,
    promotions: Sequence[Promotion],
    tiers: Sequence[CustomerTier],
    expiry_settings: LoyaltyExpirySettings,
) -> List[str]:
    """Describe every inconsistency in a loyalty program definition.

    Returns an empty list for a valid program. The caller decides whether a
    non-empty result is fatal.
    """

    problems: List[str] = []

    for rule in earning_rules:
        if rule.min_spend < ZERO:
            problems.append(f"Earning rule '{rule.rule_id}' has a negative minimum spend")
        if rule.max_spend is not None and rule.max_spend <= rule.min_spend:
            problems.append(f"Earning rule '{rule.rule_id}' has maxSpend <= minSpend")
        if rule.points_per_hundred < ZERO:
            problems.append(f"Earning rule '{rule.rule_id}' awards negative points")

    if redemption_rule.points <= 0:
        problems.append("Redemption rule must convert a positive number of points")
    if redemption_rule.value < ZERO:
        problems.append("Redemption rule value cannot be negative")

    for promo in promotions:
        if promo.multiplier <= ONE:
            problems.append(f"Promotion '{promo.name}' multiplier must be greater than 1")
        if promo.start_date > promo.end_date:
            problems.append(f"Promotion '{promo.name}' ends before it starts")

    base_tiers = [tier for tier in tiers if tier.rank == 0]
    if len(base_tiers) != 1:
        problems.append("Exactly one rank-0 base tier is required")
    elif base_tiers[0].min_visits > 0 or base_tiers[0].min_spend > ZERO:
        problems.append("The base tier cannot have visit or spend requirements")
    ranks = [tier.rank for tier in tiers]
    if len(ranks) != len(set(ranks)):
        problems.append("Tier ranks must be unique")
    for tier in tiers:
        if tier.points_multiplier <= ZERO:
            problems.append(f"Tier '{tier.name}' multiplier must be positive")
        if tier.period.value <= 0:
            problems.append(f"Tier '{tier.name}' rolling period must be positive")

    for label, period in (
        ("inactivity", expiry_settings.inactivity_period),
        ("points lifespan", expiry_settings.points_lifespan),
        ("reminder", expiry_settings.reminder_period),
    ):
        if period.value <= 0:
            problems.append(f"Expiry {label} period must be positive")

    return problems
