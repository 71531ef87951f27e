"""Sale transaction engine for ShopSync.

This module orchestrates sale creation, sale updates, full and partial
reversals, manual loyalty adjustments and customer payments. Every operation
is split in two layers:

* a pure transition ``apply_*(state, command, now=...) -> (state, result)``
  that derives the complete set of inventory, customer, sale and ledger
  changes from one :class:`~shopsync.models.AppState` snapshot, and
* a context-bound wrapper (``record_sale``, ``reverse_sale`` ...) that runs
  the transition under the runtime lock, asks the persistence collaborator to
  save the new snapshot and only then swaps it into the in-memory cache.

A rejected operation therefore leaves the stored state untouched.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from . import data_manager, ledger, log
from .constants import EXPECTED_SCHEMA_VERSION, PAID_TOLERANCE, DiscountType, PaymentStatus, SaleState
from .expiry import points_expiring_soon as estimate_expiring_points
from .loyalty import (
    EarningOutcome,
    active_promotion,
    calculate_points_earned,
    loyalty_program_problems,
    net_item_revenue,
    promotion_snapshot,
    redemption_value,
    tier_snapshot,
)
from .models import (
    ZERO,
    AppliedMultiplier,
    AppState,
    CartLine,
    CatalogRef,
    Customer,
    CustomerRef,
    CustomerTier,
    Discount,
    EarningRule,
    IdentifiedCustomer,
    LoyaltyExpirySettings,
    LoyaltyTransaction,
    ManualRef,
    OutsideService,
    Payment,
    Product,
    ProductRef,
    Promotion,
    RedemptionRule,
    Sale,
    WalkInCustomer,
    normalize_customer_number,
    replace_by_key,
    round_whole,
    to_money,
)
from .pricing import PriceBreakdown, calculate_pricing
from .tiers import evaluate_tier

T = TypeVar("T")
Clock = Callable[[], datetime]

HUNDRED = Decimal("100")


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, customer, or sale is unknown."""


class InsufficientStock(BusinessRuleViolation):
    """Raised when a cart asks for more units than are on hand."""


class InsufficientLoyaltyBalance(BusinessRuleViolation):
    """Raised when a redemption or deduction exceeds the point balance."""


class PaymentExceedsBalance(BusinessRuleViolation):
    """Raised when a payment is larger than the outstanding balance."""


class InvalidDiscount(BusinessRuleViolation):
    """Raised when a line or overall discount exceeds what it applies to."""


class InvalidLoyaltyConfiguration(BusinessRuleViolation):
    """Raised when a loyalty program definition is inconsistent."""


class SaleStateError(BusinessRuleViolation):
    """Raised when a sale is in a state that forbids the requested operation."""


class CommitError(RuntimeError):
    """Raised when the persistence collaborator does not acknowledge a save."""


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class RuntimeContext:
    """Configuration, persistence collaborator, clock and cached state."""

    settings: data_manager.ConfigSettings
    store: data_manager.StateStore
    clock: Clock = utc_now
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


@dataclass(frozen=True)
class SaleCommand:
    """User intent for committing a cart as a new sale."""

    customer: CustomerRef
    lines: Tuple[CartLine, ...]
    amount_paid: Decimal = ZERO
    overall_discount: Discount = field(default_factory=Discount.none)
    tuning_charges: Decimal = ZERO
    labor_charges: Decimal = ZERO
    outside_services: Tuple[OutsideService, ...] = ()
    points_to_redeem: int = 0
    timestamp: Optional[datetime] = None
    operator: Optional[str] = None


@dataclass(frozen=True)
class UpdateSaleCommand:
    """User intent for replacing the contents of an existing sale."""

    sale_id: str
    lines: Tuple[CartLine, ...]
    amount_paid: Decimal = ZERO
    overall_discount: Discount = field(default_factory=Discount.none)
    tuning_charges: Decimal = ZERO
    labor_charges: Decimal = ZERO
    outside_services: Tuple[OutsideService, ...] = ()
    points_to_redeem: int = 0
    operator: Optional[str] = None


@dataclass(frozen=True)
class ReturnLine:
    """Product returned from a sale; ``quantity=None`` returns every unit."""

    product: ProductRef
    quantity: Optional[int] = None


@dataclass(frozen=True)
class ReverseSaleCommand:
    """User intent for reversing a sale, fully or by selected lines."""

    sale_id: str
    lines: Optional[Tuple[ReturnLine, ...]] = None
    operator: Optional[str] = None


@dataclass(frozen=True)
class PointsAdjustmentCommand:
    """Manual loyalty correction; ``points`` is signed."""

    customer_id: str
    points: int
    reason: Optional[str] = None
    timestamp: Optional[datetime] = None
    operator: Optional[str] = None


@dataclass(frozen=True)
class PaymentCommand:
    """Settlement of part or all of a customer's outstanding balance."""

    customer_id: str
    amount: Decimal
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None
    operator: Optional[str] = None


@dataclass(frozen=True)
class RestockCommand:
    """User intent for adding units to a product, optionally repricing it."""

    product_id: str
    quantity: int
    new_sale_price: Optional[Decimal] = None


@dataclass(frozen=True)
class VisitAdjustmentCommand:
    customer_id: str
    adjustment: int


@dataclass(frozen=True)
class LoyaltyProgramCommand:
    """Replacement loyalty program; ``None`` keeps the current part."""

    earning_rules: Optional[Tuple[EarningRule, ...]] = None
    redemption_rule: Optional[RedemptionRule] = None
    promotions: Optional[Tuple[Promotion, ...]] = None
    tiers: Optional[Tuple[CustomerTier, ...]] = None
    expiry_settings: Optional[LoyaltyExpirySettings] = None


@dataclass(frozen=True)
class SaleResult:
    """Sale as committed along with the customer and ledger entries it produced."""

    sale: Sale
    customer: Customer
    ledger_entries: Tuple[LoyaltyTransaction, ...] = ()


@dataclass(frozen=True)
class ReversalResult:
    """Outcome of a reversal.

    ``requires_manual_adjustment`` is set for partial returns: the sale is
    restated but the customer's balance and points are left for staff to
    correct. ``unapplied_balance`` is the balance change that was not applied.
    """

    sale_id: str
    fully_reversed: bool
    restocked: Tuple[Tuple[str, int], ...] = ()
    sale: Optional[Sale] = None
    customer: Optional[Customer] = None
    requires_manual_adjustment: bool = False
    unapplied_balance: Decimal = ZERO


@dataclass(frozen=True)
class _Settlement:
    loyalty_discount: Decimal
    total: Decimal
    earning: EarningOutcome
    redeemed_points: int
    balance_due: Decimal
    payment_status: PaymentStatus


def _resolve_operator(context: RuntimeContext, candidate: Optional[str]) -> Optional[str]:
    return candidate or context.settings.default_operator


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets hold the last acknowledged state snapshot and lookups derived
    from it so that reads do not go back to the persistence collaborator.

    Args:
        context (RuntimeContext): Runtime state carrying the shared cache
            dictionary.
        name (str): Logical bucket name to fetch or create.

    Returns:
        dict[str, Any]: Mutable mapping used to cache derived collections.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after the state snapshot changed.

    Args:
        context (RuntimeContext): Active runtime context whose cache should be
            pruned.
        *names (str): Bucket identifiers to remove. Missing buckets are
            ignored.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def current_state(context: RuntimeContext) -> AppState:
    """Return the last acknowledged snapshot, loading it on first use."""

    bucket = _get_cache_bucket(context, "state")
    if "snapshot" not in bucket:
        snapshot = context.store.load()
        bucket["snapshot"] = snapshot
        log.debug(
            "Loaded state snapshot (%d products, %d customers, %d sales)",
            len(snapshot.products),
            len(snapshot.customers),
            len(snapshot.sales),
        )
    return bucket["snapshot"]


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the product cache bucket on demand.

    Args:
        context (RuntimeContext): Runtime state used to access the snapshot
            and shared caches.

    Returns:
        dict[str, Any]: Bucket containing ``all`` products, a ``by_id`` lookup
            and a ``by_barcode`` lookup for products that carry a barcode.
    """

    bucket = _get_cache_bucket(context, "products")
    if "all" not in bucket:
        all_products = list(current_state(context).products)
        bucket.update(
            by_id={product.product_id: product for product in all_products},
            by_barcode={product.barcode: product for product in all_products if product.barcode},
            all=all_products,
        )
        log.debug(
            "Populated products cache with %d entries (%d with barcode)",
            len(all_products),
            len(bucket["by_barcode"]),
        )
    return bucket


def _commit(
    context: RuntimeContext,
    transition: Callable[[AppState], Tuple[AppState, T]],
    description: str,
) -> T:
    """Run ``transition`` against the current snapshot and persist the result.

    The lock serializes writers, so sale id suffixes and ledger chains are
    always derived from the latest acknowledged state. The cached snapshot is
    replaced only once the store acknowledges the save.

    Raises:
        CommitError: If the store reports that the save did not happen.
    """

    with context._lock:
        state = current_state(context)
        new_state, result = transition(state)
        if not context.store.save(new_state):
            log.error("Persistence did not acknowledge %s; state left unchanged", description)
            raise CommitError(f"Could not persist {description}")
        _get_cache_bucket(context, "state")["snapshot"] = new_state
        _invalidate_cache(context, "products")
    return result


def load_runtime_context(config_path: Optional[Path] = None, *, clock: Optional[Clock] = None) -> RuntimeContext:
    """Load configuration settings and the workbook-backed store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.
        clock (Callable[[], datetime] | None): Injectable source of "now";
            defaults to the UTC wall clock.

    Returns:
        RuntimeContext: Context ready for the engine operations.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = data_manager.WorkbookStore(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, store=store, clock=clock or utc_now)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Args:
        context (RuntimeContext): Runtime context containing the resolved
            settings.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Return a context with an empty cache so the next read reloads the store.

    Args:
        context (RuntimeContext): Runtime context whose settings, store and
            clock should be reused.

    Returns:
        RuntimeContext: Fresh context sharing the collaborators of ``context``.
    """
    log.info("Discarding cached state for '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, store=context.store, clock=context.clock)


def require_positive_quantity(quantity: int | Decimal) -> None:
    """Validate that a quantity is strictly positive.

    Args:
        quantity (int | Decimal): Quantity supplied by a command object.

    Raises:
        ValueError: If ``quantity`` is zero or negative.
    """
    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Args:
        amount (Decimal): Currency value supplied by a command object.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < ZERO:
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def _with_collision_suffix(base: str, existing: Iterable[str]) -> str:
    taken = set(existing)
    if base not in taken:
        return base
    suffix = 1
    while f"{base}-{suffix}" in taken:
        suffix += 1
    return f"{base}-{suffix}"


def generate_sale_id(existing: Iterable[str], when: datetime) -> str:
    """Generate a minute-resolution sale identifier.

    Args:
        existing (Iterable[str]): Identifiers already in use.
        when (datetime): Sale timestamp the identifier is derived from.

    Returns:
        str: ``YYMMDDHHmm`` of ``when``; a ``-1``, ``-2`` ... suffix is appended
            when other sales were committed within the same minute.
    """
    return _with_collision_suffix(when.strftime("%y%m%d%H%M"), existing)


def generate_record_id(*, prefix: str, when: datetime, existing: Iterable[str] = ()) -> str:
    """Generate a sortable identifier such as ``P20240105093000000000``."""

    return _with_collision_suffix(f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}", existing)


def payment_status_for(balance_due: Decimal, amount_paid: Decimal) -> PaymentStatus:
    """Classify a sale: paid within tolerance, partially paid, or unpaid."""

    if balance_due <= PAID_TOLERANCE:
        return PaymentStatus.PAID
    if amount_paid > ZERO:
        return PaymentStatus.PARTIAL
    return PaymentStatus.UNPAID


def build_cart_line(product: Product, quantity: int, discount: Optional[Discount] = None) -> CartLine:
    """Snapshot a catalog product's price into a cart line."""

    return CartLine(
        product=CatalogRef(product.product_id),
        name=product.name,
        unit_price=product.sale_price,
        quantity=quantity,
        discount=discount or Discount.none(),
        purchase_price=product.purchase_price,
    )


def manual_cart_line(label: str, unit_price: Decimal, quantity: int = 1, discount: Optional[Discount] = None) -> CartLine:
    """Build an ad-hoc line that has no inventory backing."""

    return CartLine(
        product=ManualRef(label),
        name=label,
        unit_price=unit_price,
        quantity=quantity,
        discount=discount or Discount.none(),
    )


def _validate_discount_value(discount: Discount, ceiling: Decimal, what: str) -> None:
    if discount.value < ZERO:
        log.warning("Rejected negative discount %s on %s", discount.value, what)
        raise InvalidDiscount(f"Discount on {what} cannot be negative")
    if discount.kind is DiscountType.PERCENTAGE:
        if discount.value > HUNDRED:
            log.warning("Rejected %s%% discount on %s", discount.value, what)
            raise InvalidDiscount(f"Percentage discount on {what} cannot exceed 100%")
        return
    if discount.value > ceiling:
        log.warning("Rejected discount %s above %s on %s", discount.value, ceiling, what)
        raise InvalidDiscount(f"Discount on {what} exceeds its price ({ceiling})")


def validate_discounts(
    lines: Sequence[CartLine],
    overall_discount: Discount,
    subtotal_with_charges: Decimal,
) -> None:
    """Reject discounts that would price a line or the bill below zero.

    Args:
        lines (Sequence[CartLine]): Cart lines with per-line discounts.
        overall_discount (Discount): Discount applied to the subtotal with
            charges.
        subtotal_with_charges (Decimal): Base of the overall discount.

    Raises:
        InvalidDiscount: If a line discount exceeds its unit price, the overall
            discount exceeds the subtotal with charges, a percentage exceeds
            100, or any discount is negative.
    """
    for line in lines:
        _validate_discount_value(line.discount, line.unit_price, f"line '{line.name}'")
    _validate_discount_value(overall_discount, subtotal_with_charges, "the sale")


def _validate_cart(
    lines: Sequence[CartLine],
    *,
    amount_paid: Decimal,
    tuning_charges: Decimal,
    labor_charges: Decimal,
    outside_services: Sequence[OutsideService],
    points_to_redeem: int,
) -> None:
    if not lines and not (tuning_charges or labor_charges or outside_services):
        log.warning("Rejected empty cart")
        raise BusinessRuleViolation("A sale needs at least one line or charge")
    for line in lines:
        require_positive_quantity(line.quantity)
        require_nonnegative_money(line.unit_price)
    for amount in (amount_paid, tuning_charges, labor_charges):
        require_nonnegative_money(amount)
    for service in outside_services:
        require_nonnegative_money(service.amount)
    if points_to_redeem < 0:
        log.error("Redemption validation failed: %s", points_to_redeem)
        raise ValueError("Points to redeem cannot be negative")


def _catalog_quantities(lines: Iterable[CartLine]) -> Dict[str, int]:
    """Total units per catalog product; manual lines are skipped."""

    totals: Dict[str, int] = {}
    for line in lines:
        if isinstance(line.product, CatalogRef):
            product_id = line.product.product_id
            totals[product_id] = totals.get(product_id, 0) + line.quantity
    return totals


def _apply_stock_delta(products: Sequence[Product], delta: Dict[str, int]) -> Tuple[Product, ...]:
    """Apply signed per-product quantity changes in one step.

    Raises:
        MissingReferenceError: If units are taken from an unknown product.
        InsufficientStock: If any product would drop below zero.
    """

    by_id = {product.product_id: product for product in products}
    for product_id, change in delta.items():
        product = by_id.get(product_id)
        if product is None:
            if change < 0:
                log.warning("Product lookup failed for id '%s'", product_id)
                raise MissingReferenceError(f"Unknown product id: {product_id}")
            if change > 0:
                log.warning("Product '%s' no longer exists; %d units not restocked", product_id, change)
            continue
        if product.quantity + change < 0:
            log.warning(
                "Insufficient stock for '%s': %d on hand, %d requested",
                product_id,
                product.quantity,
                -change,
            )
            raise InsufficientStock(
                f"Insufficient stock for '{product.name}': {product.quantity} on hand, {-change} requested"
            )

    return tuple(
        replace(product, quantity=product.quantity + delta[product.product_id])
        if delta.get(product.product_id)
        else product
        for product in products
    )


def _require_customer(state: AppState, customer_id: str) -> Customer:
    customer = state.find_customer(customer_id)
    if customer is None:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise MissingReferenceError(f"Unknown customer id: {customer_id}")
    return customer


def _require_sale(state: AppState, sale_id: str) -> Sale:
    sale = state.find_sale(sale_id)
    if sale is None:
        log.warning("Sale lookup failed for id '%s'", sale_id)
        raise MissingReferenceError(f"Unknown sale id: {sale_id}")
    return sale


def _require_open_sale(state: AppState, sale_id: str) -> Sale:
    sale = _require_sale(state, sale_id)
    if sale.state is SaleState.PARTIALLY_REVERSED:
        log.warning("Sale '%s' was partially reversed and is awaiting manual correction", sale_id)
        raise SaleStateError(f"Sale '{sale_id}' was partially reversed and cannot be changed")
    return sale


def _current_tier(state: AppState, customer: Optional[Customer], now: datetime) -> Optional[CustomerTier]:
    """Tier the customer holds before a sale; the base tier for newcomers."""

    if customer is None:
        return state.base_tier()
    tier = state.find_tier(customer.tier_id)
    if tier is None:
        tier = evaluate_tier(customer, state.sales_for(customer.customer_id), state.tiers, now)
    return tier


def _refresh_tier(state: AppState, customer_id: str, now: datetime) -> AppState:
    """Recompute the cached tier of ``customer_id``; walk-in has none."""

    customer = state.find_customer(customer_id)
    if customer is None or customer.is_walk_in:
        return state
    tier = evaluate_tier(customer, state.sales_for(customer_id), state.tiers, now)
    tier_id = tier.tier_id if tier is not None else None
    if tier_id == customer.tier_id:
        return state
    log.info("Customer '%s' moved to tier '%s'", customer_id, tier.name if tier else None)
    updated = replace(customer, tier_id=tier_id)
    return replace(state, customers=replace_by_key(state.customers, "customer_id", customer_id, updated))


def _settle(
    state: AppState,
    breakdown: PriceBreakdown,
    *,
    walk_in: bool,
    points_available: int,
    points_to_redeem: int,
    amount_paid: Decimal,
    previous_balance: Decimal,
    promotion: Optional[AppliedMultiplier],
    tier: Optional[AppliedMultiplier],
) -> _Settlement:
    """Apply redemption, earning and payment to a priced cart."""

    if points_to_redeem > 0 and walk_in:
        log.warning("Rejected redemption of %d points for walk-in customer", points_to_redeem)
        raise InsufficientLoyaltyBalance("Walk-in customers cannot redeem points")
    if points_to_redeem > points_available:
        log.warning(
            "Rejected redemption of %d points; only %d available",
            points_to_redeem,
            points_available,
        )
        raise InsufficientLoyaltyBalance(
            f"Cannot redeem {points_to_redeem} points; balance is {points_available}"
        )

    loyalty_discount = redemption_value(state.redemption_rule, points_to_redeem, breakdown.pre_loyalty_total)
    total = breakdown.pre_loyalty_total - loyalty_discount

    if walk_in:
        earning = EarningOutcome(points=0, qualifying_spend=ZERO)
    else:
        spend = net_item_revenue(
            breakdown.subtotal_after_item_discounts,
            breakdown.service_charges,
            breakdown.overall_discount_amount,
            breakdown.total_outside_services,
            loyalty_discount,
        )
        earning = calculate_points_earned(spend, state.earning_rules, promotion=promotion, tier=tier)

    balance_due = round_whole(total) + previous_balance - amount_paid
    return _Settlement(
        loyalty_discount=loyalty_discount,
        total=total,
        earning=earning,
        redeemed_points=points_to_redeem,
        balance_due=balance_due,
        payment_status=payment_status_for(balance_due, amount_paid),
    )


def shop_day(moment: datetime) -> date:
    """Calendar day of ``moment`` on the shop's local clock."""

    return moment.astimezone().date()


def _promotion_on(state: AppState, moment: datetime, walk_in: bool) -> Optional[AppliedMultiplier]:
    if walk_in:
        return None
    return promotion_snapshot(active_promotion(state.promotions, shop_day(moment)))


def _require_ledger_tail(state: AppState, customer_id: str, timestamp: datetime) -> None:
    """Refuse ledger entries dated before the customer's latest entry."""

    own = ledger.chronological(state.loyalty_transactions, customer_id)
    if own and timestamp < own[-1].timestamp:
        log.warning(
            "Rejected ledger entry for '%s' at %s; latest entry is at %s",
            customer_id,
            timestamp.isoformat(),
            own[-1].timestamp.isoformat(),
        )
        raise BusinessRuleViolation(
            f"Cannot record points for '{customer_id}' before {own[-1].timestamp.isoformat()}"
        )


def apply_sale(
    state: AppState,
    command: SaleCommand,
    *,
    now: datetime,
    operator: Optional[str] = None,
) -> Tuple[AppState, SaleResult]:
    """Commit a cart as a new sale against ``state``.

    Inventory is decremented for every catalog line, the customer is created
    or merged (points, balance and last-seen always overwritten), ledger
    entries are appended and the customer's tier is re-evaluated.

    Args:
        state (AppState): Snapshot the sale is applied to.
        command (SaleCommand): Cart, customer and payment details.
        now (datetime): Clock reading; also the sale timestamp when the
            command carries none.
        operator (str | None): Actor recorded on the sale and ledger entries.

    Returns:
        tuple[AppState, SaleResult]: New snapshot and the committed sale.

    Raises:
        InsufficientStock: If any catalog line exceeds the units on hand.
        InsufficientLoyaltyBalance: If the redemption exceeds the balance.
        InvalidDiscount: If a discount exceeds the value it applies to.
        MissingReferenceError: If a catalog line references an unknown product.
        ValueError: On non-positive quantities or negative amounts.
    """
    lines = tuple(command.lines)
    tuning = to_money(command.tuning_charges)
    labor = to_money(command.labor_charges)
    services = tuple(command.outside_services)
    _validate_cart(
        lines,
        amount_paid=command.amount_paid,
        tuning_charges=tuning,
        labor_charges=labor,
        outside_services=services,
        points_to_redeem=command.points_to_redeem,
    )

    customer_id = command.customer.customer_id
    if not customer_id:
        log.warning("Rejected sale without a customer number")
        raise ValueError("Customer number is required")
    walk_in = isinstance(command.customer, WalkInCustomer)
    timestamp = command.timestamp or now

    breakdown = calculate_pricing(
        lines,
        tuning_charges=tuning,
        labor_charges=labor,
        outside_services=services,
        overall_discount=command.overall_discount,
    )
    validate_discounts(lines, command.overall_discount, breakdown.subtotal_with_charges)
    products = _apply_stock_delta(state.products, {pid: -qty for pid, qty in _catalog_quantities(lines).items()})

    existing = state.find_customer(customer_id)
    points_before = existing.loyalty_points if existing is not None and not walk_in else 0
    previous_balance = existing.balance if existing is not None else ZERO
    tier = None if walk_in else tier_snapshot(_current_tier(state, existing, now))
    promotion = _promotion_on(state, timestamp, walk_in)

    settlement = _settle(
        state,
        breakdown,
        walk_in=walk_in,
        points_available=points_before,
        points_to_redeem=command.points_to_redeem,
        amount_paid=command.amount_paid,
        previous_balance=previous_balance,
        promotion=promotion,
        tier=tier,
    )
    points_earned = settlement.earning.points
    final_points = points_before + points_earned - settlement.redeemed_points
    customer_balance = max(ZERO, settlement.balance_due)

    sale_id = generate_sale_id((sale.sale_id for sale in state.sales), timestamp)
    sale = Sale(
        sale_id=sale_id,
        customer_id=customer_id,
        customer_name=command.customer.name,
        items=breakdown.items,
        subtotal=breakdown.subtotal,
        total_item_discounts=breakdown.total_item_discounts,
        overall_discount=breakdown.overall_discount,
        overall_discount_amount=breakdown.overall_discount_amount,
        tuning_charges=tuning,
        labor_charges=labor,
        outside_services=services,
        total_outside_services=breakdown.total_outside_services,
        loyalty_discount=settlement.loyalty_discount,
        total=settlement.total,
        amount_paid=command.amount_paid,
        payment_status=settlement.payment_status,
        balance_due=settlement.balance_due,
        previous_balance=previous_balance,
        balance_applied=customer_balance - previous_balance,
        timestamp=timestamp,
        points_earned=points_earned,
        redeemed_points=settlement.redeemed_points,
        final_loyalty_points=final_points,
        promotion_applied=promotion,
        tier_applied=tier,
        recorded_by=operator,
    )

    contact = frequency = None
    if isinstance(command.customer, IdentifiedCustomer):
        contact = command.customer.contact_number
        frequency = command.customer.service_frequency
    if existing is None:
        customer = Customer(
            customer_id=customer_id,
            name=WalkInCustomer().name if walk_in else command.customer.name,
            sale_ids=(sale_id,),
            first_seen=timestamp,
            last_seen=timestamp,
            loyalty_points=final_points,
            balance=customer_balance,
            contact_number=contact,
            service_frequency=frequency,
        )
    else:
        # Servicing notes and the next service date are maintained outside the sale flow.
        customer = replace(
            existing,
            name=existing.name if walk_in else (command.customer.name or existing.name),
            contact_number=contact or existing.contact_number,
            service_frequency=frequency or existing.service_frequency,
            sale_ids=existing.sale_ids + (sale_id,),
            last_seen=timestamp,
            loyalty_points=final_points,
            balance=customer_balance,
        )

    entries = ledger.record_sale_entries(
        customer_id,
        points_before,
        points_earned=points_earned,
        redeemed_points=settlement.redeemed_points,
        sale_id=sale_id,
        timestamp=timestamp,
        recorded_by=operator,
    )
    if entries:
        _require_ledger_tail(state, customer_id, timestamp)

    new_state = replace(
        state,
        products=products,
        sales=state.sales + (sale,),
        customers=replace_by_key(state.customers, "customer_id", customer_id, customer),
        loyalty_transactions=state.loyalty_transactions + entries,
    )
    new_state = _refresh_tier(new_state, customer_id, now)
    return new_state, SaleResult(sale=sale, customer=new_state.find_customer(customer_id), ledger_entries=entries)


def apply_sale_update(
    state: AppState,
    command: UpdateSaleCommand,
    *,
    now: datetime,
    operator: Optional[str] = None,
) -> Tuple[AppState, SaleResult]:
    """Replace the contents of a sale, applying only the difference.

    Stock moves by (old quantities restored) minus (new quantities taken) in
    one step. The customer's balance and points move by the difference between
    the old and new settlement so payments recorded since the sale survive.
    The sale keeps its id, timestamp and customer.

    Raises:
        MissingReferenceError: If the sale or its customer is unknown.
        SaleStateError: If the sale was partially reversed.
        InsufficientStock: If the new lines need more units than are available.
        InsufficientLoyaltyBalance: If the new redemption exceeds the balance
            left once the old sale's point effect is removed.
        InvalidDiscount: If a discount exceeds the value it applies to.
    """
    old = _require_open_sale(state, command.sale_id)
    customer = _require_customer(state, old.customer_id)
    walk_in = customer.is_walk_in

    lines = tuple(command.lines)
    tuning = to_money(command.tuning_charges)
    labor = to_money(command.labor_charges)
    services = tuple(command.outside_services)
    _validate_cart(
        lines,
        amount_paid=command.amount_paid,
        tuning_charges=tuning,
        labor_charges=labor,
        outside_services=services,
        points_to_redeem=command.points_to_redeem,
    )

    breakdown = calculate_pricing(
        lines,
        tuning_charges=tuning,
        labor_charges=labor,
        outside_services=services,
        overall_discount=command.overall_discount,
    )
    validate_discounts(lines, command.overall_discount, breakdown.subtotal_with_charges)

    delta = _catalog_quantities(old.items)
    for product_id, quantity in _catalog_quantities(lines).items():
        delta[product_id] = delta.get(product_id, 0) - quantity
    products = _apply_stock_delta(state.products, delta)

    old_effect = old.points_earned - old.redeemed_points
    points_available = 0 if walk_in else max(0, customer.loyalty_points - old_effect)
    tier = None
    if not walk_in:
        tier = old.tier_applied or tier_snapshot(_current_tier(state, customer, now))
    promotion = _promotion_on(state, old.timestamp, walk_in)

    settlement = _settle(
        state,
        breakdown,
        walk_in=walk_in,
        points_available=points_available,
        points_to_redeem=command.points_to_redeem,
        amount_paid=command.amount_paid,
        previous_balance=old.previous_balance,
        promotion=promotion,
        tier=tier,
    )
    points_earned = settlement.earning.points
    new_effect = points_earned - settlement.redeemed_points
    balance_applied = max(ZERO, settlement.balance_due) - old.previous_balance

    customer_points = max(0, customer.loyalty_points + new_effect - old_effect)
    customer_balance = max(ZERO, customer.balance + balance_applied - old.balance_applied)
    updated_customer = replace(customer, loyalty_points=customer_points, balance=customer_balance)

    sale = replace(
        old,
        items=breakdown.items,
        subtotal=breakdown.subtotal,
        total_item_discounts=breakdown.total_item_discounts,
        overall_discount=breakdown.overall_discount,
        overall_discount_amount=breakdown.overall_discount_amount,
        tuning_charges=tuning,
        labor_charges=labor,
        outside_services=services,
        total_outside_services=breakdown.total_outside_services,
        loyalty_discount=settlement.loyalty_discount,
        total=settlement.total,
        amount_paid=command.amount_paid,
        payment_status=settlement.payment_status,
        balance_due=settlement.balance_due,
        balance_applied=balance_applied,
        points_earned=points_earned,
        redeemed_points=settlement.redeemed_points,
        final_loyalty_points=customer_points,
        promotion_applied=promotion,
        tier_applied=tier,
        recorded_by=operator or old.recorded_by,
        state=SaleState.UPDATED,
    )

    opening = ledger.opening_balance(
        state.loyalty_transactions,
        customer.customer_id,
        default=customer.loyalty_points - old_effect,
    )
    replacement = ledger.record_sale_entries(
        customer.customer_id,
        opening,
        points_earned=points_earned,
        redeemed_points=settlement.redeemed_points,
        sale_id=old.sale_id,
        timestamp=old.timestamp,
        recorded_by=operator,
    )
    entries = ledger.settle_chain(
        ledger.splice_sale_entries(
            state.loyalty_transactions,
            old.sale_id,
            replacement,
            customer_id=customer.customer_id,
            opening=opening,
        ),
        customer.customer_id,
        opening,
        target=customer_points,
        timestamp=now,
        reason=f"Update of sale {old.sale_id}",
        recorded_by=operator,
    )

    new_state = replace(
        state,
        products=products,
        sales=replace_by_key(state.sales, "sale_id", old.sale_id, sale),
        customers=replace_by_key(state.customers, "customer_id", customer.customer_id, updated_customer),
        loyalty_transactions=entries,
    )
    new_state = _refresh_tier(new_state, customer.customer_id, now)
    sale_entries = tuple(entry for entry in entries if entry.related_sale_id == old.sale_id)
    return new_state, SaleResult(
        sale=sale,
        customer=new_state.find_customer(customer.customer_id),
        ledger_entries=sale_entries,
    )


def _remaining_quantities(sale: Sale, returns: Optional[Sequence[ReturnLine]]) -> List[int]:
    """Units left on each sale line after ``returns``; ``None`` returns all."""

    if returns is None:
        return [0 for _ in sale.items]

    remaining = [item.quantity for item in sale.items]
    for returned in returns:
        if returned.quantity is not None:
            require_positive_quantity(returned.quantity)
        key = returned.product.key
        indices = [index for index, item in enumerate(sale.items) if item.product.key == key]
        if not indices:
            log.warning("Sale '%s' has no line for '%s'", sale.sale_id, key)
            raise MissingReferenceError(f"Sale '{sale.sale_id}' has no line for '{key}'")
        available = sum(remaining[index] for index in indices)
        wanted = available if returned.quantity is None else returned.quantity
        if wanted > available:
            log.warning(
                "Return of %d x '%s' exceeds the %d units left on sale '%s'",
                wanted,
                key,
                available,
                sale.sale_id,
            )
            raise BusinessRuleViolation(f"Only {available} units of '{key}' remain on sale '{sale.sale_id}'")
        for index in indices:
            taken = min(wanted, remaining[index])
            remaining[index] -= taken
            wanted -= taken
    return remaining


def apply_reversal(
    state: AppState,
    command: ReverseSaleCommand,
    *,
    now: datetime,
    operator: Optional[str] = None,
) -> Tuple[AppState, ReversalResult]:
    """Reverse a sale fully or by selected lines.

    Returned catalog units are restocked; manual lines are not. A full
    reversal (no line selection, or every line returned from a sale without
    charges) deletes the sale and its ledger entries and inverts the customer's
    point and balance changes, floored at zero. Any other selection is a
    partial reversal: the remainder is re-priced and restated on the sale, the
    customer is left untouched and the result is flagged for manual
    correction.

    Raises:
        MissingReferenceError: If the sale, or a selected line, is unknown.
        SaleStateError: If the sale was already partially reversed.
        BusinessRuleViolation: If more units are returned than remain.
    """
    sale = _require_open_sale(state, command.sale_id)
    lines = tuple(command.lines) if command.lines is not None else None
    if lines is not None and not lines:
        log.warning("Rejected reversal of sale '%s' without selected lines", sale.sale_id)
        raise BusinessRuleViolation("Select at least one line to return")
    remaining = _remaining_quantities(sale, lines)
    fully_reversed = lines is None or (not any(remaining) and not sale.has_charges)

    returned = [
        CartLine(product=item.product, name=item.name, unit_price=item.original_price, quantity=item.quantity - left)
        for item, left in zip(sale.items, remaining)
        if item.quantity - left > 0
    ]
    delta = _catalog_quantities(returned)
    products = _apply_stock_delta(state.products, delta)
    restocked = tuple(
        (product_id, quantity)
        for product_id, quantity in sorted(delta.items())
        if state.find_product(product_id) is not None
    )

    if fully_reversed:
        return _apply_full_reversal(state, sale, products, restocked, now, operator)

    kept = [
        CartLine(
            product=item.product,
            name=item.name,
            unit_price=item.original_price,
            quantity=left,
            discount=item.discount,
            purchase_price=item.purchase_price,
        )
        for item, left in zip(sale.items, remaining)
        if left > 0
    ]
    breakdown = calculate_pricing(
        kept,
        tuning_charges=sale.tuning_charges,
        labor_charges=sale.labor_charges,
        outside_services=sale.outside_services,
        overall_discount=sale.overall_discount,
    )
    loyalty_discount = min(sale.loyalty_discount, breakdown.pre_loyalty_total)
    total = breakdown.pre_loyalty_total - loyalty_discount
    balance_due = round_whole(total) + sale.previous_balance - sale.amount_paid
    restated = replace(
        sale,
        items=breakdown.items,
        subtotal=breakdown.subtotal,
        total_item_discounts=breakdown.total_item_discounts,
        overall_discount_amount=breakdown.overall_discount_amount,
        loyalty_discount=loyalty_discount,
        total=total,
        balance_due=balance_due,
        payment_status=payment_status_for(balance_due, sale.amount_paid),
        state=SaleState.PARTIALLY_REVERSED,
    )
    unapplied = max(ZERO, balance_due) - sale.previous_balance - sale.balance_applied

    log.warning(
        "Partial return on sale '%s' by %s: loyalty points and balance need manual adjustment (balance difference %s)",
        sale.sale_id,
        operator or "unknown operator",
        unapplied,
    )
    new_state = replace(
        state,
        products=products,
        sales=replace_by_key(state.sales, "sale_id", sale.sale_id, restated),
    )
    return new_state, ReversalResult(
        sale_id=sale.sale_id,
        fully_reversed=False,
        restocked=restocked,
        sale=restated,
        customer=state.find_customer(sale.customer_id),
        requires_manual_adjustment=True,
        unapplied_balance=unapplied,
    )


def _apply_full_reversal(
    state: AppState,
    sale: Sale,
    products: Tuple[Product, ...],
    restocked: Tuple[Tuple[str, int], ...],
    now: datetime,
    operator: Optional[str],
) -> Tuple[AppState, ReversalResult]:
    customer = state.find_customer(sale.customer_id)
    sales = tuple(existing for existing in state.sales if existing.sale_id != sale.sale_id)
    remaining_entries = tuple(
        entry for entry in state.loyalty_transactions if entry.related_sale_id != sale.sale_id
    )

    if customer is None:
        log.warning("Customer '%s' of sale '%s' is missing; only stock restored", sale.customer_id, sale.sale_id)
        new_state = replace(state, products=products, sales=sales, loyalty_transactions=remaining_entries)
        return new_state, ReversalResult(sale_id=sale.sale_id, fully_reversed=True, restocked=restocked)

    opening = ledger.opening_balance(state.loyalty_transactions, customer.customer_id, default=customer.loyalty_points)
    reverted = replace(
        customer,
        sale_ids=tuple(sale_id for sale_id in customer.sale_ids if sale_id != sale.sale_id),
        loyalty_points=max(0, customer.loyalty_points - sale.points_earned + sale.redeemed_points),
        balance=max(ZERO, customer.balance - sale.balance_applied),
    )
    entries = ledger.settle_chain(
        remaining_entries,
        customer.customer_id,
        opening,
        target=reverted.loyalty_points,
        timestamp=now,
        reason=f"Reversal of sale {sale.sale_id}",
        recorded_by=operator,
    )
    new_state = replace(
        state,
        products=products,
        sales=sales,
        customers=replace_by_key(state.customers, "customer_id", customer.customer_id, reverted),
        loyalty_transactions=entries,
    )
    new_state = _refresh_tier(new_state, customer.customer_id, now)
    return new_state, ReversalResult(
        sale_id=sale.sale_id,
        fully_reversed=True,
        restocked=restocked,
        customer=new_state.find_customer(customer.customer_id),
    )


def apply_points_adjustment(
    state: AppState,
    command: PointsAdjustmentCommand,
    *,
    now: datetime,
    operator: Optional[str] = None,
) -> Tuple[AppState, LoyaltyTransaction]:
    """Add or subtract points outside the sale flow.

    Raises:
        MissingReferenceError: If the customer is unknown.
        BusinessRuleViolation: For the walk-in customer.
        InsufficientLoyaltyBalance: If the balance would become negative.
        ValueError: If ``points`` is zero.
    """
    customer_id = normalize_customer_number(command.customer_id)
    customer = _require_customer(state, customer_id)
    if customer.is_walk_in:
        log.warning("Rejected point adjustment for walk-in customer")
        raise BusinessRuleViolation("Walk-in customers do not collect points")
    if command.points == 0:
        log.error("Point adjustment validation failed: zero points")
        raise ValueError("Point adjustment must be non-zero")
    if customer.loyalty_points + command.points < 0:
        log.warning(
            "Rejected deduction of %d points from '%s' holding %d",
            -command.points,
            customer_id,
            customer.loyalty_points,
        )
        raise InsufficientLoyaltyBalance(
            f"Cannot deduct {-command.points} points; balance is {customer.loyalty_points}"
        )

    timestamp = command.timestamp or now
    _require_ledger_tail(state, customer_id, timestamp)
    entry = ledger.record_manual_adjustment(
        customer_id,
        customer.loyalty_points,
        command.points,
        reason=command.reason,
        timestamp=timestamp,
        recorded_by=operator,
    )
    updated = replace(customer, loyalty_points=entry.points_after)
    new_state = replace(
        state,
        customers=replace_by_key(state.customers, "customer_id", customer_id, updated),
        loyalty_transactions=state.loyalty_transactions + (entry,),
    )
    return new_state, entry


def apply_payment(
    state: AppState,
    command: PaymentCommand,
    *,
    now: datetime,
    operator: Optional[str] = None,
) -> Tuple[AppState, Payment]:
    """Record a payment against a customer's outstanding balance.

    Raises:
        MissingReferenceError: If the customer is unknown.
        PaymentExceedsBalance: If ``amount`` is larger than the balance.
        ValueError: If ``amount`` is not positive.
    """
    customer_id = normalize_customer_number(command.customer_id)
    customer = _require_customer(state, customer_id)
    amount = to_money(command.amount)
    if amount <= ZERO:
        log.error("Payment validation failed: %s", amount)
        raise ValueError("Payment amount must be greater than zero")
    if amount > customer.balance:
        log.warning(
            "Rejected payment of %s from '%s' with balance %s",
            amount,
            customer_id,
            customer.balance,
        )
        raise PaymentExceedsBalance(f"Payment {amount} exceeds outstanding balance {customer.balance}")

    timestamp = command.timestamp or now
    payment = Payment(
        payment_id=generate_record_id(
            prefix="P",
            when=timestamp,
            existing=(existing.payment_id for existing in state.payments),
        ),
        customer_id=customer_id,
        amount=amount,
        timestamp=timestamp,
        notes=command.notes,
        recorded_by=operator,
    )
    updated = replace(customer, balance=customer.balance - amount)
    new_state = replace(
        state,
        customers=replace_by_key(state.customers, "customer_id", customer_id, updated),
        payments=state.payments + (payment,),
    )
    return new_state, payment


def apply_restock(state: AppState, command: RestockCommand) -> Tuple[AppState, Product]:
    """Add units to a product and optionally replace its sale price."""

    product = state.find_product(command.product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", command.product_id)
        raise MissingReferenceError(f"Unknown product id: {command.product_id}")
    require_positive_quantity(command.quantity)
    sale_price = product.sale_price
    if command.new_sale_price is not None:
        require_nonnegative_money(command.new_sale_price)
        sale_price = to_money(command.new_sale_price)

    updated = replace(product, quantity=product.quantity + command.quantity, sale_price=sale_price)
    return replace(state, products=replace_by_key(state.products, "product_id", product.product_id, updated)), updated


def apply_visit_adjustment(
    state: AppState,
    command: VisitAdjustmentCommand,
    *,
    now: datetime,
) -> Tuple[AppState, Customer]:
    """Set a customer's manual visit adjustment and re-evaluate the tier."""

    customer_id = normalize_customer_number(command.customer_id)
    customer = _require_customer(state, customer_id)
    if customer.is_walk_in:
        log.warning("Rejected visit adjustment for walk-in customer")
        raise BusinessRuleViolation("Walk-in customers have no tier")

    updated = replace(customer, manual_visit_adjustment=command.adjustment)
    new_state = replace(state, customers=replace_by_key(state.customers, "customer_id", customer_id, updated))
    new_state = _refresh_tier(new_state, customer_id, now)
    return new_state, new_state.find_customer(customer_id)


def apply_loyalty_program(
    state: AppState,
    command: LoyaltyProgramCommand,
    *,
    now: datetime,
) -> Tuple[AppState, AppState]:
    """Replace parts of the loyalty program and re-evaluate every tier.

    Raises:
        InvalidLoyaltyConfiguration: Listing every problem found.
    """

    candidate = replace(
        state,
        earning_rules=state.earning_rules if command.earning_rules is None else tuple(command.earning_rules),
        redemption_rule=command.redemption_rule or state.redemption_rule,
        promotions=state.promotions if command.promotions is None else tuple(command.promotions),
        tiers=state.tiers if command.tiers is None else tuple(command.tiers),
        expiry_settings=command.expiry_settings or state.expiry_settings,
    )
    problems = loyalty_program_problems(
        earning_rules=candidate.earning_rules,
        redemption_rule=candidate.redemption_rule,
        promotions=candidate.promotions,
        tiers=candidate.tiers,
        expiry_settings=candidate.expiry_settings,
    )
    if problems:
        for problem in problems:
            log.warning("Loyalty program rejected: %s", problem)
        raise InvalidLoyaltyConfiguration("; ".join(problems))

    for customer in state.customers:
        candidate = _refresh_tier(candidate, customer.customer_id, now)
    return candidate, candidate


def record_sale(context: RuntimeContext, command: SaleCommand) -> SaleResult:
    """Validate, price and persist a new sale.

    Args:
        context (RuntimeContext): Runtime context providing the store, clock
            and caches.
        command (SaleCommand): Structured intent describing the sale.

    Returns:
        SaleResult: Committed sale with the updated customer and the ledger
            entries it produced.

    Raises:
        BusinessRuleViolation: Any rule violation raised by :func:`apply_sale`.
        CommitError: If the store does not acknowledge the save.
    """
    now = context.clock()
    operator = _resolve_operator(context, command.operator)
    result = _commit(
        context,
        lambda state: apply_sale(state, command, now=now, operator=operator),
        "sale",
    )
    log.info(
        "Recorded sale '%s' for customer '%s' (total=%s, paid=%s, earned=%d, redeemed=%d)",
        result.sale.sale_id,
        result.sale.customer_id,
        result.sale.total,
        result.sale.amount_paid,
        result.sale.points_earned,
        result.sale.redeemed_points,
    )
    return result


def update_sale(context: RuntimeContext, command: UpdateSaleCommand) -> SaleResult:
    """Replace the contents of a committed sale.

    Args:
        context (RuntimeContext): Runtime context providing the store, clock
            and caches.
        command (UpdateSaleCommand): New cart for the sale.

    Returns:
        SaleResult: Updated sale, customer and replacement ledger entries.

    Raises:
        BusinessRuleViolation: Any rule violation raised by
            :func:`apply_sale_update`.
        CommitError: If the store does not acknowledge the save.
    """
    now = context.clock()
    operator = _resolve_operator(context, command.operator)
    result = _commit(
        context,
        lambda state: apply_sale_update(state, command, now=now, operator=operator),
        f"update of sale {command.sale_id}",
    )
    log.info(
        "Updated sale '%s' (total=%s, earned=%d, redeemed=%d)",
        result.sale.sale_id,
        result.sale.total,
        result.sale.points_earned,
        result.sale.redeemed_points,
    )
    return result


def reverse_sale(context: RuntimeContext, command: ReverseSaleCommand) -> ReversalResult:
    """Reverse a sale fully or partially; see :func:`apply_reversal`."""

    now = context.clock()
    operator = _resolve_operator(context, command.operator)
    result = _commit(
        context,
        lambda state: apply_reversal(state, command, now=now, operator=operator),
        f"reversal of sale {command.sale_id}",
    )
    log.info(
        "Reversed sale '%s' (%s, restocked=%s)",
        result.sale_id,
        "full" if result.fully_reversed else "partial",
        dict(result.restocked),
    )
    return result


def adjust_customer_points(context: RuntimeContext, command: PointsAdjustmentCommand) -> LoyaltyTransaction:
    """Apply a manual loyalty correction and return its ledger entry."""

    now = context.clock()
    operator = _resolve_operator(context, command.operator)
    entry = _commit(
        context,
        lambda state: apply_points_adjustment(state, command, now=now, operator=operator),
        "point adjustment",
    )
    log.info(
        "Recorded %s of %d points for '%s' (%d -> %d)",
        entry.type.value,
        entry.points,
        entry.customer_id,
        entry.points_before,
        entry.points_after,
    )
    return entry


def record_customer_payment(context: RuntimeContext, command: PaymentCommand) -> Payment:
    """Record a customer payment.

    Args:
        context (RuntimeContext): Runtime context providing the store, clock
            and caches.
        command (PaymentCommand): Structured payment intent.

    Returns:
        Payment: Persisted payment record.

    Raises:
        MissingReferenceError: If the customer is unknown.
        PaymentExceedsBalance: If the payment exceeds the outstanding balance.
        ValueError: If the amount is not positive.
    """
    now = context.clock()
    operator = _resolve_operator(context, command.operator)
    payment = _commit(
        context,
        lambda state: apply_payment(state, command, now=now, operator=operator),
        "payment",
    )
    log.info("Recorded payment '%s' of %s for '%s'", payment.payment_id, payment.amount, payment.customer_id)
    return payment


def record_restock(context: RuntimeContext, command: RestockCommand) -> Product:
    """Add stock to a product and persist the change.

    Args:
        context (RuntimeContext): Runtime context providing the store and
            caches.
        command (RestockCommand): Structured restock intent.

    Returns:
        Product: Product with the new quantity and price.

    Raises:
        MissingReferenceError: When the referenced product cannot be located.
        ValueError: If quantity or price validations fail.
    """
    product = _commit(context, lambda state: apply_restock(state, command), "restock")
    log.info(
        "Restocked product '%s' (+%d, now %d, price=%s)",
        product.product_id,
        command.quantity,
        product.quantity,
        product.sale_price,
    )
    return product


def set_manual_visit_adjustment(context: RuntimeContext, command: VisitAdjustmentCommand) -> Customer:
    now = context.clock()
    customer = _commit(
        context,
        lambda state: apply_visit_adjustment(state, command, now=now),
        "visit adjustment",
    )
    log.info(
        "Set manual visit adjustment of '%s' to %d (tier=%s)",
        customer.customer_id,
        customer.manual_visit_adjustment,
        customer.tier_id,
    )
    return customer


def update_loyalty_program(context: RuntimeContext, command: LoyaltyProgramCommand) -> AppState:
    """Persist a new loyalty program and return the resulting snapshot."""

    now = context.clock()
    state = _commit(
        context,
        lambda current: apply_loyalty_program(current, command, now=now),
        "loyalty program",
    )
    log.info(
        "Updated loyalty program (%d earning rules, %d promotions, %d tiers)",
        len(state.earning_rules),
        len(state.promotions),
        len(state.tiers),
    )
    return state


def list_products(context: RuntimeContext) -> List[Product]:
    """Return the product catalog in stored order.

    Args:
        context (RuntimeContext): Runtime context providing the snapshot and
            caches.

    Returns:
        list[Product]: Copy of the cached product list.
    """
    return list(_ensure_products_cache(context)["all"])


def get_product(context: RuntimeContext, product_id: str) -> Product:
    """Resolve a product record by its identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is unknown.
    """
    cache = _ensure_products_cache(context)
    try:
        return cache["by_id"][product_id]
    except KeyError as exc:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}") from exc


def find_product_by_barcode(context: RuntimeContext, barcode: str) -> Optional[Product]:
    return _ensure_products_cache(context)["by_barcode"].get(barcode.strip())


def get_customer(context: RuntimeContext, customer_number: str) -> Customer:
    """Resolve a customer by bike/asset number (normalized before lookup).

    Raises:
        MissingReferenceError: If no such customer exists.
    """
    return _require_customer(current_state(context), normalize_customer_number(customer_number))


def get_sale(context: RuntimeContext, sale_id: str) -> Sale:
    return _require_sale(current_state(context), sale_id)


def evaluate_customer_tier(context: RuntimeContext, customer_number: str) -> Optional[CustomerTier]:
    """Evaluate a customer's tier at the context clock without persisting it."""

    state = current_state(context)
    customer = get_customer(context, customer_number)
    if customer.is_walk_in:
        return None
    return evaluate_tier(customer, state.sales_for(customer.customer_id), state.tiers, context.clock())


def points_expiring_soon(context: RuntimeContext, customer_number: str) -> int:
    """Estimate the customer's points lapsing within the reminder window."""

    state = current_state(context)
    customer = get_customer(context, customer_number)
    return estimate_expiring_points(
        customer,
        state.transactions_for(customer.customer_id),
        state.expiry_settings,
        context.clock(),
    )


def audit_customer_ledger(context: RuntimeContext, customer_number: str) -> ledger.LedgerAudit:
    """Replay a customer's ledger and compare it with the stored balance."""

    state = current_state(context)
    customer = get_customer(context, customer_number)
    audit = ledger.audit_chain(state.loyalty_transactions, customer.customer_id, customer.loyalty_points)
    if not audit.consistent:
        log.warning(
            "Ledger of '%s' is inconsistent (replayed %d, stored %d)",
            customer.customer_id,
            audit.final_balance,
            customer.loyalty_points,
        )
    return audit
