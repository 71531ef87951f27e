"""Data access layer for ShopSync.

This module provides low-level helpers that read from and write to the
master workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. State persistence: converting every sheet to and from the
   :class:`~shopsync.models.AppState` snapshot the engine works on, exposed
   through the ``load()``/``save()`` store interface.
"""


from __future__ import annotations

import configparser
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from . import log
from .constants import (
    DiscountType,
    LoyaltyTransactionType,
    PaymentStatus,
    PeriodUnit,
    RedemptionMethod,
    SaleState,
    SheetName,
)
from .models import (
    DEFAULT_EARNING_RULES,
    DEFAULT_REDEMPTION_RULE,
    DEFAULT_TIERS,
    ZERO,
    AppliedMultiplier,
    AppState,
    Customer,
    CustomerTier,
    Discount,
    EarningRule,
    LoyaltyExpirySettings,
    LoyaltyTransaction,
    OutsideService,
    Payment,
    Period,
    Product,
    Promotion,
    RedemptionRule,
    Sale,
    SaleItem,
    product_ref_from_key,
    to_money,
)


CONFIG_FILE_NAME = "config.ini"

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.PRODUCTS.value: [
        "ProductID",
        "Name",
        "CategoryID",
        "SubCategoryID",
        "Quantity",
        "PurchasePrice",
        "SalePrice",
        "Barcode",
    ],
    SheetName.CUSTOMERS.value: [
        "CustomerID",
        "Name",
        "ContactNumber",
        "SaleIDs",
        "FirstSeen",
        "LastSeen",
        "LoyaltyPoints",
        "TierID",
        "Balance",
        "ManualVisitAdjustment",
        "ServiceFrequencyValue",
        "ServiceFrequencyUnit",
        "ServicingNotes",
        "NextServiceDate",
    ],
    SheetName.SALES.value: [
        "SaleID",
        "CustomerID",
        "CustomerName",
        "Timestamp",
        "Subtotal",
        "TotalItemDiscounts",
        "OverallDiscountType",
        "OverallDiscountValue",
        "OverallDiscountAmount",
        "TuningCharges",
        "LaborCharges",
        "TotalOutsideServices",
        "LoyaltyDiscount",
        "Total",
        "AmountPaid",
        "PaymentStatus",
        "BalanceDue",
        "PreviousBalance",
        "BalanceApplied",
        "PointsEarned",
        "RedeemedPoints",
        "FinalLoyaltyPoints",
        "PromotionName",
        "PromotionMultiplier",
        "TierName",
        "TierMultiplier",
        "RecordedBy",
        "State",
    ],
    SheetName.SALE_ITEMS.value: [
        "SaleID",
        "LineNo",
        "ProductKey",
        "Name",
        "Quantity",
        "OriginalPrice",
        "DiscountType",
        "DiscountValue",
        "Price",
        "PurchasePrice",
    ],
    SheetName.OUTSIDE_SERVICES.value: [
        "SaleID",
        "LineNo",
        "Label",
        "Amount",
    ],
    SheetName.LOYALTY_TRANSACTIONS.value: [
        "TransactionID",
        "CustomerID",
        "Type",
        "Points",
        "Timestamp",
        "PointsBefore",
        "PointsAfter",
        "RelatedSaleID",
        "Reason",
        "RecordedBy",
    ],
    SheetName.PAYMENTS.value: [
        "PaymentID",
        "CustomerID",
        "Amount",
        "Timestamp",
        "Notes",
        "RecordedBy",
    ],
    SheetName.EARNING_RULES.value: [
        "RuleID",
        "MinSpend",
        "MaxSpend",
        "PointsPerHundred",
    ],
    SheetName.PROMOTIONS.value: [
        "PromotionID",
        "Name",
        "StartDate",
        "EndDate",
        "Multiplier",
    ],
    SheetName.CUSTOMER_TIERS.value: [
        "TierID",
        "Name",
        "MinVisits",
        "MinSpend",
        "PeriodValue",
        "PeriodUnit",
        "PointsMultiplier",
        "Rank",
    ],
    SheetName.SETTINGS.value: [
        "Key",
        "Value",
    ],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    default_operator: str


class StateStore(Protocol):
    """Persistence collaborator consumed by the sale engine."""

    def load(self) -> AppState:
        ...

    def save(self, state: AppState) -> bool:
        ...


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. When no explicit path is given the function walks
    up from the current working directory toward the filesystem root looking
    for a file named ``CONFIG_FILE_NAME``. The first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are expanded against ``base_path`` when
    provided, or against the current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings with the resolved data file path,
            shop name, schema version, and default operator.

    Raises:
        KeyError: If one of the required sections or options is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
        default_operator = parser.get("Defaults", "DefaultOperator")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        default_operator=default_operator,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def ensure_sheets(workbook: Workbook) -> List[str]:
    """Create any missing sheet with its bold header row.

    Returns:
        list[str]: Names of the sheets that had to be created.
    """

    bold_font = Font(bold=True)
    created: List[str] = []
    for sheet_name, columns in SHEET_COLUMNS.items():
        if sheet_name in workbook.sheetnames:
            continue
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font
        created.append(sheet_name)
    return created


def _worksheet(workbook: Workbook, sheet: SheetName) -> Worksheet:
    if sheet.value not in workbook.sheetnames:
        raise KeyError(f"Workbook is missing sheet: {sheet.value}")
    return workbook[sheet.value]


def iter_rows(workbook: Workbook, sheet: SheetName) -> Iterable[Tuple[Any, ...]]:
    """Yield the raw data rows of ``sheet``, skipping the header and empty rows.

    Rows are padded to the sheet's column count so that older workbooks
    lacking trailing columns still unpack cleanly.
    """

    width = len(SHEET_COLUMNS[sheet.value])
    for raw in _worksheet(workbook, sheet).iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            padded = tuple(raw[:width]) + (None,) * max(0, width - len(raw))
            yield padded


def replace_rows(workbook: Workbook, sheet: SheetName, rows: Iterable[Sequence[object]]) -> int:
    """Overwrite every data row of ``sheet`` with ``rows``; the header stays."""

    worksheet = _worksheet(workbook, sheet)
    if worksheet.max_row > 1:
        worksheet.delete_rows(2, worksheet.max_row - 1)
    count = 0
    for row in rows:
        worksheet.append(list(row))
        count += 1
    return count


def _text(raw: object) -> Optional[str]:
    if raw is None:
        return None
    value = str(raw).strip()
    return value or None


def _decimal(raw: object, default: Decimal = ZERO) -> Decimal:
    return Decimal(str(raw)) if raw is not None and str(raw).strip() != "" else default


def _money(raw: object) -> Decimal:
    return to_money(_decimal(raw))


def _int(raw: object, default: int = 0) -> int:
    return int(_decimal(raw, Decimal(default)))


def _timestamp(raw: object) -> datetime:
    if isinstance(raw, datetime):
        value = raw
    else:
        value = datetime.fromisoformat(str(raw))
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _day(raw: object) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw))


def _multiplier(name: object, multiplier: object) -> Optional[AppliedMultiplier]:
    if _text(name) is None:
        return None
    return AppliedMultiplier(name=str(name), multiplier=_decimal(multiplier, Decimal("1")))


def serialize_product(record: Product) -> List[object]:
    """Convert a product into the ``Products`` column ordering."""

    return [
        record.product_id,
        record.name,
        record.category_id,
        record.sub_category_id,
        record.quantity,
        record.purchase_price,
        record.sale_price,
        record.barcode,
    ]


def deserialize_product(raw_row: Sequence[object]) -> Product:
    """Convert a raw ``Products`` row into a :class:`Product`.

    Identifiers are coerced to ``str`` to avoid surprises caused by Excel
    interpreting numeric ids and barcodes as numbers.
    """

    product_id, name, category_id, sub_category_id, quantity, purchase_price, sale_price, barcode = raw_row
    return Product(
        product_id=str(product_id),
        name=str(name) if name is not None else "",
        quantity=_int(quantity),
        purchase_price=_money(purchase_price),
        sale_price=_money(sale_price),
        category_id=_text(category_id),
        sub_category_id=_text(sub_category_id),
        barcode=_text(barcode),
    )


def serialize_customer(record: Customer) -> List[object]:
    return [
        record.customer_id,
        record.name,
        record.contact_number,
        ",".join(record.sale_ids),
        record.first_seen.isoformat(),
        record.last_seen.isoformat(),
        record.loyalty_points,
        record.tier_id,
        record.balance,
        record.manual_visit_adjustment,
        record.service_frequency.value if record.service_frequency else None,
        record.service_frequency.unit.value if record.service_frequency else None,
        record.servicing_notes,
        record.next_service_date.isoformat() if record.next_service_date else None,
    ]


def deserialize_customer(raw_row: Sequence[object]) -> Customer:
    (
        customer_id,
        name,
        contact_number,
        sale_ids,
        first_seen,
        last_seen,
        loyalty_points,
        tier_id,
        balance,
        manual_visit_adjustment,
        frequency_value,
        frequency_unit,
        servicing_notes,
        next_service_date,
    ) = raw_row
    joined = _text(sale_ids)
    frequency = None
    if _text(frequency_value) is not None and _text(frequency_unit) is not None:
        frequency = Period(_int(frequency_value), PeriodUnit(str(frequency_unit).strip()))
    return Customer(
        customer_id=str(customer_id),
        name=str(name) if name is not None else "",
        sale_ids=tuple(part.strip() for part in joined.split(",") if part.strip()) if joined else (),
        first_seen=_timestamp(first_seen),
        last_seen=_timestamp(last_seen),
        loyalty_points=_int(loyalty_points),
        tier_id=_text(tier_id),
        balance=_money(balance),
        manual_visit_adjustment=_int(manual_visit_adjustment),
        contact_number=_text(contact_number),
        service_frequency=frequency,
        servicing_notes=_text(servicing_notes),
        next_service_date=_day(next_service_date) if _text(next_service_date) is not None else None,
    )


def serialize_sale(record: Sale) -> List[object]:
    """Convert the header of a sale into the ``Sales`` column ordering.

    Line items and outside services live on their own sheets; see
    :func:`serialize_sale_items` and :func:`serialize_outside_services`.
    """

    promotion = record.promotion_applied
    tier = record.tier_applied
    return [
        record.sale_id,
        record.customer_id,
        record.customer_name,
        record.timestamp.isoformat(),
        record.subtotal,
        record.total_item_discounts,
        record.overall_discount.kind.value,
        record.overall_discount.value,
        record.overall_discount_amount,
        record.tuning_charges,
        record.labor_charges,
        record.total_outside_services,
        record.loyalty_discount,
        record.total,
        record.amount_paid,
        record.payment_status.value,
        record.balance_due,
        record.previous_balance,
        record.balance_applied,
        record.points_earned,
        record.redeemed_points,
        record.final_loyalty_points,
        promotion.name if promotion else None,
        promotion.multiplier if promotion else None,
        tier.name if tier else None,
        tier.multiplier if tier else None,
        record.recorded_by,
        record.state.value,
    ]


def serialize_sale_items(record: Sale) -> List[List[object]]:
    return [
        [
            record.sale_id,
            line_no,
            item.product.key,
            item.name,
            item.quantity,
            item.original_price,
            item.discount.kind.value,
            item.discount.value,
            item.price,
            item.purchase_price,
        ]
        for line_no, item in enumerate(record.items, start=1)
    ]


def serialize_outside_services(record: Sale) -> List[List[object]]:
    return [
        [record.sale_id, line_no, service.label, service.amount]
        for line_no, service in enumerate(record.outside_services, start=1)
    ]


def deserialize_sale_item(raw_row: Sequence[object]) -> Tuple[str, int, SaleItem]:
    """Convert a ``SaleItems`` row into ``(sale_id, line_no, item)``."""

    (
        sale_id,
        line_no,
        product_key,
        name,
        quantity,
        original_price,
        discount_type,
        discount_value,
        price,
        purchase_price,
    ) = raw_row
    item = SaleItem(
        product=product_ref_from_key(str(product_key)),
        name=str(name) if name is not None else "",
        quantity=_int(quantity),
        original_price=_money(original_price),
        discount=Discount(DiscountType(discount_type or DiscountType.FIXED.value), _decimal(discount_value)),
        price=_money(price),
        purchase_price=_money(purchase_price),
    )
    return str(sale_id), _int(line_no), item


def deserialize_outside_service(raw_row: Sequence[object]) -> Tuple[str, int, OutsideService]:
    sale_id, line_no, label, amount = raw_row
    return str(sale_id), _int(line_no), OutsideService(label=str(label), amount=_money(amount))


def deserialize_sale(
    raw_row: Sequence[object],
    items: Sequence[SaleItem] = (),
    outside_services: Sequence[OutsideService] = (),
) -> Sale:
    """Convert a ``Sales`` row plus its already parsed lines into a :class:`Sale`.

    Args:
        raw_row (Sequence[object]): Raw cell values from the ``Sales`` sheet.
        items (Sequence[SaleItem]): Lines of the sale in line order.
        outside_services (Sequence[OutsideService]): Services of the sale in
            line order.

    Returns:
        Sale: Immutable sale record.
    """

    (
        sale_id,
        customer_id,
        customer_name,
        timestamp,
        subtotal,
        total_item_discounts,
        overall_discount_type,
        overall_discount_value,
        overall_discount_amount,
        tuning_charges,
        labor_charges,
        total_outside_services,
        loyalty_discount,
        total,
        amount_paid,
        payment_status,
        balance_due,
        previous_balance,
        balance_applied,
        points_earned,
        redeemed_points,
        final_loyalty_points,
        promotion_name,
        promotion_multiplier,
        tier_name,
        tier_multiplier,
        recorded_by,
        state,
    ) = raw_row
    return Sale(
        sale_id=str(sale_id),
        customer_id=str(customer_id),
        customer_name=str(customer_name) if customer_name is not None else "",
        items=tuple(items),
        subtotal=_money(subtotal),
        total_item_discounts=_money(total_item_discounts),
        overall_discount=Discount(
            DiscountType(overall_discount_type or DiscountType.FIXED.value),
            _decimal(overall_discount_value),
        ),
        overall_discount_amount=_money(overall_discount_amount),
        tuning_charges=_money(tuning_charges),
        labor_charges=_money(labor_charges),
        outside_services=tuple(outside_services),
        total_outside_services=_money(total_outside_services),
        loyalty_discount=_money(loyalty_discount),
        total=_money(total),
        amount_paid=_money(amount_paid),
        payment_status=PaymentStatus(payment_status or PaymentStatus.UNPAID.value),
        balance_due=_money(balance_due),
        previous_balance=_money(previous_balance),
        balance_applied=_money(balance_applied),
        timestamp=_timestamp(timestamp),
        points_earned=_int(points_earned),
        redeemed_points=_int(redeemed_points),
        final_loyalty_points=_int(final_loyalty_points),
        promotion_applied=_multiplier(promotion_name, promotion_multiplier),
        tier_applied=_multiplier(tier_name, tier_multiplier),
        recorded_by=_text(recorded_by),
        state=SaleState(state or SaleState.COMMITTED.value),
    )


def serialize_loyalty_transaction(record: LoyaltyTransaction) -> List[object]:
    return [
        record.transaction_id,
        record.customer_id,
        record.type.value,
        record.points,
        record.timestamp.isoformat(),
        record.points_before,
        record.points_after,
        record.related_sale_id,
        record.reason,
        record.recorded_by,
    ]


def deserialize_loyalty_transaction(raw_row: Sequence[object]) -> LoyaltyTransaction:
    (
        transaction_id,
        customer_id,
        entry_type,
        points,
        timestamp,
        points_before,
        points_after,
        related_sale_id,
        reason,
        recorded_by,
    ) = raw_row
    return LoyaltyTransaction(
        transaction_id=str(transaction_id),
        customer_id=str(customer_id),
        type=LoyaltyTransactionType(entry_type),
        points=_int(points),
        timestamp=_timestamp(timestamp),
        points_before=_int(points_before),
        points_after=_int(points_after),
        related_sale_id=_text(related_sale_id),
        reason=_text(reason),
        recorded_by=_text(recorded_by),
    )


def serialize_payment(record: Payment) -> List[object]:
    return [
        record.payment_id,
        record.customer_id,
        record.amount,
        record.timestamp.isoformat(),
        record.notes,
        record.recorded_by,
    ]


def deserialize_payment(raw_row: Sequence[object]) -> Payment:
    payment_id, customer_id, amount, timestamp, notes, recorded_by = raw_row
    return Payment(
        payment_id=str(payment_id),
        customer_id=str(customer_id),
        amount=_money(amount),
        timestamp=_timestamp(timestamp),
        notes=_text(notes),
        recorded_by=_text(recorded_by),
    )


def serialize_earning_rule(record: EarningRule) -> List[object]:
    return [record.rule_id, record.min_spend, record.max_spend, record.points_per_hundred]


def deserialize_earning_rule(raw_row: Sequence[object]) -> EarningRule:
    rule_id, min_spend, max_spend, points_per_hundred = raw_row
    return EarningRule(
        rule_id=str(rule_id),
        min_spend=_decimal(min_spend),
        max_spend=None if _text(max_spend) is None else _decimal(max_spend),
        points_per_hundred=_decimal(points_per_hundred),
    )


def serialize_promotion(record: Promotion) -> List[object]:
    return [
        record.promotion_id,
        record.name,
        record.start_date.isoformat(),
        record.end_date.isoformat(),
        record.multiplier,
    ]


def deserialize_promotion(raw_row: Sequence[object]) -> Promotion:
    promotion_id, name, start_date, end_date, multiplier = raw_row
    return Promotion(
        promotion_id=str(promotion_id),
        name=str(name) if name is not None else "",
        start_date=_day(start_date),
        end_date=_day(end_date),
        multiplier=_decimal(multiplier, Decimal("1")),
    )


def serialize_tier(record: CustomerTier) -> List[object]:
    return [
        record.tier_id,
        record.name,
        record.min_visits,
        record.min_spend,
        record.period.value,
        record.period.unit.value,
        record.points_multiplier,
        record.rank,
    ]


def deserialize_tier(raw_row: Sequence[object]) -> CustomerTier:
    tier_id, name, min_visits, min_spend, period_value, period_unit, points_multiplier, rank = raw_row
    return CustomerTier(
        tier_id=str(tier_id),
        name=str(name) if name is not None else "",
        min_visits=_int(min_visits),
        min_spend=_money(min_spend),
        period=Period(_int(period_value), PeriodUnit(period_unit or PeriodUnit.MONTHS.value)),
        points_multiplier=_decimal(points_multiplier, Decimal("1")),
        rank=_int(rank),
    )


def serialize_settings(redemption_rule: RedemptionRule, expiry: LoyaltyExpirySettings) -> List[List[object]]:
    """Flatten the singleton loyalty settings into ``Settings`` key/value rows."""

    return [
        ["RedemptionMethod", redemption_rule.method.value],
        ["RedemptionPoints", str(redemption_rule.points)],
        ["RedemptionValue", str(redemption_rule.value)],
        ["ExpiryEnabled", "true" if expiry.enabled else "false"],
        ["InactivityPeriodValue", str(expiry.inactivity_period.value)],
        ["InactivityPeriodUnit", expiry.inactivity_period.unit.value],
        ["PointsLifespanValue", str(expiry.points_lifespan.value)],
        ["PointsLifespanUnit", expiry.points_lifespan.unit.value],
        ["ReminderPeriodValue", str(expiry.reminder_period.value)],
        ["ReminderPeriodUnit", expiry.reminder_period.unit.value],
    ]


def deserialize_settings(rows: Iterable[Sequence[object]]) -> Tuple[RedemptionRule, LoyaltyExpirySettings]:
    """Rebuild the redemption rule and expiry settings; missing keys use defaults."""

    values: Dict[str, str] = {str(key): str(value) for key, value in rows if key is not None and value is not None}
    defaults = LoyaltyExpirySettings()

    def period(prefix: str, fallback: Period) -> Period:
        return Period(
            int(values.get(f"{prefix}Value", fallback.value)),
            PeriodUnit(values.get(f"{prefix}Unit", fallback.unit.value)),
        )

    redemption = RedemptionRule(
        method=RedemptionMethod(values.get("RedemptionMethod", DEFAULT_REDEMPTION_RULE.method.value)),
        points=int(values.get("RedemptionPoints", DEFAULT_REDEMPTION_RULE.points)),
        value=Decimal(values.get("RedemptionValue", str(DEFAULT_REDEMPTION_RULE.value))),
    )
    expiry = LoyaltyExpirySettings(
        enabled=values.get("ExpiryEnabled", "false").strip().lower() in ("true", "1", "yes"),
        inactivity_period=period("InactivityPeriod", defaults.inactivity_period),
        points_lifespan=period("PointsLifespan", defaults.points_lifespan),
        reminder_period=period("ReminderPeriod", defaults.reminder_period),
    )
    return redemption, expiry


def read_state(workbook: Workbook) -> AppState:
    """Assemble an :class:`AppState` from every sheet of ``workbook``.

    Sale lines and outside services are grouped under their sale and ordered
    by ``LineNo``. Empty ``EarningRules`` or ``CustomerTiers`` sheets fall back
    to the default loyalty program.

    Raises:
        KeyError: If a required sheet is missing.
    """

    items_by_sale: Dict[str, List[Tuple[int, SaleItem]]] = defaultdict(list)
    for raw in iter_rows(workbook, SheetName.SALE_ITEMS):
        sale_id, line_no, item = deserialize_sale_item(raw)
        items_by_sale[sale_id].append((line_no, item))

    services_by_sale: Dict[str, List[Tuple[int, OutsideService]]] = defaultdict(list)
    for raw in iter_rows(workbook, SheetName.OUTSIDE_SERVICES):
        sale_id, line_no, service = deserialize_outside_service(raw)
        services_by_sale[sale_id].append((line_no, service))

    sales = []
    for raw in iter_rows(workbook, SheetName.SALES):
        sale_id = str(raw[0])
        items = [item for _, item in sorted(items_by_sale.get(sale_id, []), key=lambda pair: pair[0])]
        services = [service for _, service in sorted(services_by_sale.get(sale_id, []), key=lambda pair: pair[0])]
        sales.append(deserialize_sale(raw, items, services))

    redemption_rule, expiry_settings = deserialize_settings(iter_rows(workbook, SheetName.SETTINGS))
    earning_rules = tuple(deserialize_earning_rule(raw) for raw in iter_rows(workbook, SheetName.EARNING_RULES))
    tiers = tuple(deserialize_tier(raw) for raw in iter_rows(workbook, SheetName.CUSTOMER_TIERS))

    state = AppState(
        products=tuple(deserialize_product(raw) for raw in iter_rows(workbook, SheetName.PRODUCTS)),
        customers=tuple(deserialize_customer(raw) for raw in iter_rows(workbook, SheetName.CUSTOMERS)),
        sales=tuple(sales),
        loyalty_transactions=tuple(
            deserialize_loyalty_transaction(raw) for raw in iter_rows(workbook, SheetName.LOYALTY_TRANSACTIONS)
        ),
        payments=tuple(deserialize_payment(raw) for raw in iter_rows(workbook, SheetName.PAYMENTS)),
        earning_rules=earning_rules or DEFAULT_EARNING_RULES,
        redemption_rule=redemption_rule,
        promotions=tuple(deserialize_promotion(raw) for raw in iter_rows(workbook, SheetName.PROMOTIONS)),
        tiers=tiers or DEFAULT_TIERS,
        expiry_settings=expiry_settings,
    )
    log.debug(
        "Read workbook state: %d products, %d customers, %d sales, %d ledger entries",
        len(state.products),
        len(state.customers),
        len(state.sales),
        len(state.loyalty_transactions),
    )
    return state


def write_state(workbook: Workbook, state: AppState) -> None:
    """Rewrite every data sheet of ``workbook`` from ``state``."""

    created = ensure_sheets(workbook)
    if created:
        log.warning("Created missing sheets: %s", ", ".join(created))

    replace_rows(workbook, SheetName.PRODUCTS, (serialize_product(p) for p in state.products))
    replace_rows(workbook, SheetName.CUSTOMERS, (serialize_customer(c) for c in state.customers))
    replace_rows(workbook, SheetName.SALES, (serialize_sale(s) for s in state.sales))
    replace_rows(workbook, SheetName.SALE_ITEMS, (row for s in state.sales for row in serialize_sale_items(s)))
    replace_rows(
        workbook,
        SheetName.OUTSIDE_SERVICES,
        (row for s in state.sales for row in serialize_outside_services(s)),
    )
    replace_rows(
        workbook,
        SheetName.LOYALTY_TRANSACTIONS,
        (serialize_loyalty_transaction(t) for t in state.loyalty_transactions),
    )
    replace_rows(workbook, SheetName.PAYMENTS, (serialize_payment(p) for p in state.payments))
    replace_rows(workbook, SheetName.EARNING_RULES, (serialize_earning_rule(r) for r in state.earning_rules))
    replace_rows(workbook, SheetName.PROMOTIONS, (serialize_promotion(p) for p in state.promotions))
    replace_rows(workbook, SheetName.CUSTOMER_TIERS, (serialize_tier(t) for t in state.tiers))
    replace_rows(workbook, SheetName.SETTINGS, serialize_settings(state.redemption_rule, state.expiry_settings))


class WorkbookStore:
    """Persistence collaborator backed by the master workbook on disk."""

    def __init__(self, data_file: Path) -> None:
        self.data_file = Path(data_file)

    def load(self) -> AppState:
        """Read the whole workbook into a state snapshot.

        Raises:
            FileNotFoundError: If the workbook does not exist.
        """

        return read_state(open_workbook(self.data_file))

    def save(self, state: AppState) -> bool:
        """Rewrite the workbook from ``state``.

        Returns ``False`` (no acknowledgement) when the file cannot be written,
        for example because it is open in Excel.
        """

        workbook = open_workbook(self.data_file)
        write_state(workbook, state)
        try:
            save_workbook(workbook, self.data_file)
        except OSError as exc:
            log.error("Unable to write workbook '%s': %s", self.data_file, exc)
            return False
        log.debug("Persisted workbook '%s'", self.data_file)
        return True


class MemoryStore:
    """In-process persistence collaborator holding the last saved snapshot."""

    def __init__(self, state: Optional[AppState] = None, *, acknowledge: bool = True) -> None:
        self.state = state if state is not None else AppState()
        self.acknowledge = acknowledge
        self.saves = 0

    def load(self) -> AppState:
        return self.state

    def save(self, state: AppState) -> bool:
        if not self.acknowledge:
            log.error("In-memory store refused the save")
            return False
        self.state = state
        self.saves += 1
        return True
