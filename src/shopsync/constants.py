"""Enumerations shared across ShopSync modules.

Centralises domain constants so that the persistence layer, the sale engine,
and the CLI rely on a single source of truth for tags and identifiers.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "2.0.0"

# Reserved customer id shared by every anonymous sale.
WALK_IN_CUSTOMER_ID = "WALKIN"

# Remaining balance at or below this amount still counts as fully paid.
PAID_TOLERANCE = Decimal("0.50")


class DiscountType(str, Enum):
    """Enumerate how a discount value is interpreted."""

    FIXED = "fixed"
    PERCENTAGE = "percentage"


class PaymentStatus(str, Enum):
    """Enumerate the settlement states of a sale."""

    PAID = "Paid"
    PARTIAL = "Partial"
    UNPAID = "Unpaid"


class LoyaltyTransactionType(str, Enum):
    """Enumerate the entry types recorded in the loyalty ledger."""

    EARNED = "earned"
    REDEEMED = "redeemed"
    MANUAL_ADD = "manual_add"
    MANUAL_SUBTRACT = "manual_subtract"

    @property
    def is_credit(self) -> bool:
        return self in (LoyaltyTransactionType.EARNED, LoyaltyTransactionType.MANUAL_ADD)

    @property
    def sign(self) -> int:
        return 1 if self.is_credit else -1


class SaleState(str, Enum):
    """Enumerate the lifecycle states of a committed sale."""

    COMMITTED = "committed"
    UPDATED = "updated"
    PARTIALLY_REVERSED = "partiallyReversed"


class RedemptionMethod(str, Enum):
    """Enumerate the supported point-to-currency conversions."""

    FIXED_VALUE = "fixedValue"
    PERCENTAGE = "percentage"


class PeriodUnit(str, Enum):
    """Enumerate calendar units used by rolling windows."""

    DAYS = "days"
    MONTHS = "months"
    YEARS = "years"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    PRODUCTS = "Products"
    CUSTOMERS = "Customers"
    SALES = "Sales"
    SALE_ITEMS = "SaleItems"
    OUTSIDE_SERVICES = "OutsideServices"
    LOYALTY_TRANSACTIONS = "LoyaltyTransactions"
    PAYMENTS = "Payments"
    EARNING_RULES = "EarningRules"
    PROMOTIONS = "Promotions"
    CUSTOMER_TIERS = "CustomerTiers"
    SETTINGS = "Settings"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "WALK_IN_CUSTOMER_ID",
    "PAID_TOLERANCE",
    "DiscountType",
    "PaymentStatus",
    "LoyaltyTransactionType",
    "SaleState",
    "RedemptionMethod",
    "PeriodUnit",
    "SheetName",
]
