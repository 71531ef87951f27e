"""Domain records shared by the sale engine and the persistence layer.

Every record is a frozen dataclass. State transitions never mutate a record
in place; they build replacements with :func:`dataclasses.replace` and return
a fresh :class:`AppState` snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Tuple, Union

from dateutil.relativedelta import relativedelta

from .constants import (
    WALK_IN_CUSTOMER_ID,
    DiscountType,
    LoyaltyTransactionType,
    PaymentStatus,
    PeriodUnit,
    RedemptionMethod,
    SaleState,
)


ZERO = Decimal("0")
CENT = Decimal("0.01")
MANUAL_PREFIX = "manual-"


def to_money(value: Decimal) -> Decimal:
    """Quantize a currency amount to cents using half-up rounding."""

    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def round_whole(value: Decimal) -> Decimal:
    """Round a currency amount to a whole unit using half-up rounding."""

    return Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def floor_points(value: Decimal) -> int:
    """Floor a fractional point amount to an integer."""

    return int(Decimal(value).to_integral_value(rounding=ROUND_FLOOR))


def normalize_customer_number(raw: str) -> str:
    """Normalize a bike/asset number into the customer business key."""

    return "".join(raw.split()).upper()


@dataclass(frozen=True)
class Discount:
    """A discount tagged as either a fixed amount or a percentage."""

    kind: DiscountType
    value: Decimal

    @classmethod
    def fixed(cls, amount: Decimal | str | int) -> "Discount":
        return cls(DiscountType.FIXED, Decimal(amount))

    @classmethod
    def percentage(cls, pct: Decimal | str | int) -> "Discount":
        return cls(DiscountType.PERCENTAGE, Decimal(pct))

    @classmethod
    def none(cls) -> "Discount":
        return cls(DiscountType.FIXED, ZERO)

    def amount_on(self, base: Decimal) -> Decimal:
        """Return the currency amount this discount removes from ``base``."""

        if self.kind is DiscountType.FIXED:
            return to_money(self.value)
        return to_money(base * self.value / Decimal("100"))


@dataclass(frozen=True)
class CatalogRef:
    """Reference to an inventory-backed product."""

    product_id: str

    @property
    def key(self) -> str:
        return self.product_id


@dataclass(frozen=True)
class ManualRef:
    """Reference to an ad-hoc line with no inventory backing."""

    label: str

    @property
    def key(self) -> str:
        return f"{MANUAL_PREFIX}{self.label}"


ProductRef = Union[CatalogRef, ManualRef]


def product_ref_from_key(key: str) -> ProductRef:
    """Rebuild a :data:`ProductRef` from its persisted key."""

    if key.startswith(MANUAL_PREFIX):
        return ManualRef(key[len(MANUAL_PREFIX):])
    return CatalogRef(key)


@dataclass(frozen=True)
class IdentifiedCustomer:
    """Customer known by a bike/asset number."""

    customer_number: str
    name: str
    contact_number: Optional[str] = None
    service_frequency: Optional[Period] = None

    @property
    def customer_id(self) -> str:
        return normalize_customer_number(self.customer_number)


@dataclass(frozen=True)
class WalkInCustomer:
    """Anonymous customer sharing the reserved walk-in account."""

    name: str = "Walk-in Customer"

    @property
    def customer_id(self) -> str:
        return WALK_IN_CUSTOMER_ID


CustomerRef = Union[IdentifiedCustomer, WalkInCustomer]


def customer_ref_from_input(
    number: str,
    name: str,
    contact_number: Optional[str] = None,
    service_frequency: Optional[Period] = None,
) -> CustomerRef:
    """Map raw POS input onto a :data:`CustomerRef` variant."""

    if normalize_customer_number(number) == WALK_IN_CUSTOMER_ID:
        return WalkInCustomer(name=name.strip() or WalkInCustomer().name)
    return IdentifiedCustomer(
        customer_number=number,
        name=name.strip(),
        contact_number=contact_number,
        service_frequency=service_frequency,
    )


@dataclass(frozen=True)
class Period:
    """A rolling span measured in calendar units."""

    value: int
    unit: PeriodUnit

    def _delta(self) -> relativedelta:
        if self.unit is PeriodUnit.DAYS:
            return relativedelta(days=self.value)
        if self.unit is PeriodUnit.MONTHS:
            return relativedelta(months=self.value)
        return relativedelta(years=self.value)

    def before(self, moment: datetime) -> datetime:
        return moment - self._delta()

    def after(self, moment: datetime) -> datetime:
        return moment + self._delta()


@dataclass(frozen=True)
class Product:
    product_id: str
    name: str
    quantity: int
    purchase_price: Decimal
    sale_price: Decimal
    category_id: Optional[str] = None
    sub_category_id: Optional[str] = None
    barcode: Optional[str] = None


@dataclass(frozen=True)
class CartLine:
    """A line in the cart before it is committed as a :class:`SaleItem`."""

    product: ProductRef
    name: str
    unit_price: Decimal
    quantity: int
    discount: Discount = field(default_factory=Discount.none)
    purchase_price: Decimal = ZERO

    @property
    def is_manual(self) -> bool:
        return isinstance(self.product, ManualRef)


@dataclass(frozen=True)
class OutsideService:
    label: str
    amount: Decimal


@dataclass(frozen=True)
class SaleItem:
    """A committed line carrying both the original and discounted unit price."""

    product: ProductRef
    name: str
    quantity: int
    original_price: Decimal
    discount: Discount
    price: Decimal
    purchase_price: Decimal

    @property
    def is_manual(self) -> bool:
        return isinstance(self.product, ManualRef)


@dataclass(frozen=True)
class AppliedMultiplier:
    """Name and multiplier of a promotion or tier captured at sale time."""

    name: str
    multiplier: Decimal


@dataclass(frozen=True)
class Sale:
    sale_id: str
    customer_id: str
    customer_name: str
    items: Tuple[SaleItem, ...]
    subtotal: Decimal
    total_item_discounts: Decimal
    overall_discount: Discount
    overall_discount_amount: Decimal
    tuning_charges: Decimal
    labor_charges: Decimal
    outside_services: Tuple[OutsideService, ...]
    total_outside_services: Decimal
    loyalty_discount: Decimal
    total: Decimal
    amount_paid: Decimal
    payment_status: PaymentStatus
    balance_due: Decimal
    previous_balance: Decimal
    balance_applied: Decimal
    timestamp: datetime
    points_earned: int = 0
    redeemed_points: int = 0
    final_loyalty_points: int = 0
    promotion_applied: Optional[AppliedMultiplier] = None
    tier_applied: Optional[AppliedMultiplier] = None
    recorded_by: Optional[str] = None
    state: SaleState = SaleState.COMMITTED

    @property
    def has_charges(self) -> bool:
        return bool(self.tuning_charges or self.labor_charges or self.outside_services)


@dataclass(frozen=True)
class Customer:
    customer_id: str
    name: str
    sale_ids: Tuple[str, ...]
    first_seen: datetime
    last_seen: datetime
    loyalty_points: int = 0
    tier_id: Optional[str] = None
    balance: Decimal = ZERO
    manual_visit_adjustment: int = 0
    contact_number: Optional[str] = None
    service_frequency: Optional[Period] = None
    servicing_notes: Optional[str] = None
    next_service_date: Optional[date] = None

    @property
    def is_walk_in(self) -> bool:
        return self.customer_id == WALK_IN_CUSTOMER_ID


@dataclass(frozen=True)
class LoyaltyTransaction:
    """Append-only ledger entry; ``points`` is always a positive magnitude."""

    transaction_id: str
    customer_id: str
    type: LoyaltyTransactionType
    points: int
    timestamp: datetime
    points_before: int
    points_after: int
    related_sale_id: Optional[str] = None
    reason: Optional[str] = None
    recorded_by: Optional[str] = None


@dataclass(frozen=True)
class EarningRule:
    rule_id: str
    min_spend: Decimal
    max_spend: Optional[Decimal]
    points_per_hundred: Decimal

    def covers(self, spend: Decimal) -> bool:
        if spend < self.min_spend:
            return False
        return self.max_spend is None or spend < self.max_spend


@dataclass(frozen=True)
class RedemptionRule:
    method: RedemptionMethod
    points: int
    value: Decimal


@dataclass(frozen=True)
class Promotion:
    promotion_id: str
    name: str
    start_date: date
    end_date: date
    multiplier: Decimal

    def is_active_on(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date


@dataclass(frozen=True)
class CustomerTier:
    tier_id: str
    name: str
    min_visits: int
    min_spend: Decimal
    period: Period
    points_multiplier: Decimal
    rank: int


@dataclass(frozen=True)
class Payment:
    payment_id: str
    customer_id: str
    amount: Decimal
    timestamp: datetime
    notes: Optional[str] = None
    recorded_by: Optional[str] = None


@dataclass(frozen=True)
class LoyaltyExpirySettings:
    enabled: bool = False
    inactivity_period: Period = Period(12, PeriodUnit.MONTHS)
    points_lifespan: Period = Period(24, PeriodUnit.MONTHS)
    reminder_period: Period = Period(1, PeriodUnit.MONTHS)


DEFAULT_EARNING_RULES: Tuple[EarningRule, ...] = (
    EarningRule(rule_id="default", min_spend=ZERO, max_spend=None, points_per_hundred=Decimal("1")),
)
DEFAULT_REDEMPTION_RULE = RedemptionRule(method=RedemptionMethod.FIXED_VALUE, points=1, value=Decimal("1"))
DEFAULT_TIERS: Tuple[CustomerTier, ...] = (
    CustomerTier(
        tier_id="base-tier",
        name="Standard",
        min_visits=0,
        min_spend=ZERO,
        period=Period(12, PeriodUnit.MONTHS),
        points_multiplier=Decimal("1"),
        rank=0,
    ),
)


@dataclass(frozen=True)
class AppState:
    """Single consistent snapshot handed to and returned by every transition."""

    products: Tuple[Product, ...] = ()
    customers: Tuple[Customer, ...] = ()
    sales: Tuple[Sale, ...] = ()
    loyalty_transactions: Tuple[LoyaltyTransaction, ...] = ()
    payments: Tuple[Payment, ...] = ()
    earning_rules: Tuple[EarningRule, ...] = DEFAULT_EARNING_RULES
    redemption_rule: RedemptionRule = DEFAULT_REDEMPTION_RULE
    promotions: Tuple[Promotion, ...] = ()
    tiers: Tuple[CustomerTier, ...] = DEFAULT_TIERS
    expiry_settings: LoyaltyExpirySettings = field(default_factory=LoyaltyExpirySettings)

    def find_product(self, product_id: str) -> Optional[Product]:
        return next((p for p in self.products if p.product_id == product_id), None)

    def find_customer(self, customer_id: str) -> Optional[Customer]:
        return next((c for c in self.customers if c.customer_id == customer_id), None)

    def find_sale(self, sale_id: str) -> Optional[Sale]:
        return next((s for s in self.sales if s.sale_id == sale_id), None)

    def find_tier(self, tier_id: Optional[str]) -> Optional[CustomerTier]:
        if tier_id is None:
            return None
        return next((t for t in self.tiers if t.tier_id == tier_id), None)

    def base_tier(self) -> Optional[CustomerTier]:
        return next((t for t in self.tiers if t.rank == 0), None)

    def sales_for(self, customer_id: str) -> List[Sale]:
        return [s for s in self.sales if s.customer_id == customer_id]

    def transactions_for(self, customer_id: str) -> List[LoyaltyTransaction]:
        return [t for t in self.loyalty_transactions if t.customer_id == customer_id]


def replace_by_key(records: Iterable, key: str, value: str, replacement) -> tuple:
    """Return ``records`` with the element whose ``key`` equals ``value`` swapped.

    When no element matches the replacement is appended, giving upsert
    semantics for customers and products alike.
    """

    result = []
    replaced = False
    for record in records:
        if getattr(record, key) == value:
            result.append(replacement)
            replaced = True
        else:
            result.append(record)
    if not replaced:
        result.append(replacement)
    return tuple(result)
