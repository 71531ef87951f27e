"""Cart pricing.

Turns cart lines, service charges and an overall discount into the subtotal
and total breakdown of a sale. The calculator is total: it clamps instead of
raising, so callers that must reject oversized discounts validate first (see
:func:`shopsync.core_logic.validate_discounts`).
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional, Sequence, Tuple

from .models import ZERO, CartLine, Discount, OutsideService, SaleItem, to_money


@dataclass(frozen=True)
class PriceBreakdown:
    """Every intermediate figure of a sale before loyalty redemption."""

    items: Tuple[SaleItem, ...]
    subtotal: Decimal
    total_item_discounts: Decimal
    subtotal_after_item_discounts: Decimal
    tuning_charges: Decimal
    labor_charges: Decimal
    subtotal_with_charges: Decimal
    overall_discount: Discount
    overall_discount_amount: Decimal
    outside_services: Tuple[OutsideService, ...]
    total_outside_services: Decimal
    pre_loyalty_total: Decimal

    @property
    def service_charges(self) -> Decimal:
        return self.tuning_charges + self.labor_charges


def line_discount_amount(line: CartLine) -> Decimal:
    """Per-unit discount for ``line``, clamped to ``[0, unit_price]``."""

    amount = line.discount.amount_on(line.unit_price)
    return min(max(amount, ZERO), line.unit_price)


def price_line(line: CartLine) -> SaleItem:
    """Freeze a cart line into a sale item with its discounted unit price."""

    discount_amount = line_discount_amount(line)
    return SaleItem(
        product=line.product,
        name=line.name,
        quantity=line.quantity,
        original_price=line.unit_price,
        discount=line.discount,
        price=line.unit_price - discount_amount,
        purchase_price=line.purchase_price,
    )


def overall_discount_amount(discount: Discount, subtotal_with_charges: Decimal) -> Decimal:
    """Currency value of the overall discount, clamped to the discountable base."""

    base = max(subtotal_with_charges, ZERO)
    return min(max(discount.amount_on(base), ZERO), base)


def calculate_pricing(
    lines: Sequence[CartLine],
    *,
    tuning_charges: Decimal = ZERO,
    labor_charges: Decimal = ZERO,
    outside_services: Iterable[OutsideService] = (),
    overall_discount: Optional[Discount] = None,
) -> PriceBreakdown:
    """Compute the pre-loyalty breakdown of a cart.

    Order of operations:

    1. Per line, the discount amount (fixed, or a percentage of the unit
       price) gives the final unit price.
    2. ``subtotal`` sums undiscounted line values and
       ``total_item_discounts`` sums the per-line discounts times quantity.
    3. Tuning and labour charges are added to the discounted item subtotal.
    4. The overall discount applies to that subtotal-with-charges.
    5. Outside services are added after the overall discount; they are
       never discounted.

    Args:
        lines: Cart lines to price.
        tuning_charges: Tuning charge added before the overall discount.
        labor_charges: Labour charge added before the overall discount.
        outside_services: Pass-through services billed at face value.
        overall_discount: Discount applied to the subtotal with charges.

    Returns:
        PriceBreakdown: Immutable figures for the sale.
    """

    overall_discount = overall_discount or Discount.none()
    items = tuple(price_line(line) for line in lines)
    services = tuple(outside_services)

    subtotal = sum((item.original_price * item.quantity for item in items), ZERO)
    total_item_discounts = sum(
        ((item.original_price - item.price) * item.quantity for item in items),
        ZERO,
    )
    subtotal_after_item_discounts = subtotal - total_item_discounts
    subtotal_with_charges = subtotal_after_item_discounts + tuning_charges + labor_charges
    discount_amount = overall_discount_amount(overall_discount, subtotal_with_charges)
    total_outside = sum((service.amount for service in services), ZERO)

    return PriceBreakdown(
        items=items,
        subtotal=to_money(subtotal),
        total_item_discounts=to_money(total_item_discounts),
        subtotal_after_item_discounts=to_money(subtotal_after_item_discounts),
        tuning_charges=tuning_charges,
        labor_charges=labor_charges,
        subtotal_with_charges=to_money(subtotal_with_charges),
        overall_discount=overall_discount,
        overall_discount_amount=discount_amount,
        outside_services=services,
        total_outside_services=to_money(total_outside),
        pre_loyalty_total=to_money(subtotal_with_charges - discount_amount + total_outside),
    )
