"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from dataclasses import replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from shopsync import constants, data_manager
from shopsync.models import (
    AppState,
    AppliedMultiplier,
    CatalogRef,
    Customer,
    Discount,
    LoyaltyExpirySettings,
    LoyaltyTransaction,
    ManualRef,
    OutsideService,
    Payment,
    Period,
    Promotion,
    RedemptionRule,
    Sale,
    SaleItem,
)

WHEN = datetime(2024, 3, 15, 10, 30, tzinfo=UTC)


def _sale() -> Sale:
    return Sale(
        sale_id="2403151030",
        customer_id="KA01AB1234",
        customer_name="Ravi",
        items=(
            SaleItem(
                product=CatalogRef("P-OIL"),
                name="Engine Oil 1L",
                quantity=2,
                original_price=Decimal("1000.00"),
                discount=Discount.percentage("10"),
                price=Decimal("900.00"),
                purchase_price=Decimal("600.00"),
            ),
            SaleItem(
                product=ManualRef("Chain lube"),
                name="Chain lube",
                quantity=1,
                original_price=Decimal("89.99"),
                discount=Discount.none(),
                price=Decimal("89.99"),
                purchase_price=Decimal("0.00"),
            ),
        ),
        subtotal=Decimal("2089.99"),
        total_item_discounts=Decimal("200.00"),
        overall_discount=Discount.fixed("50"),
        overall_discount_amount=Decimal("50.00"),
        tuning_charges=Decimal("0.00"),
        labor_charges=Decimal("200.00"),
        outside_services=(OutsideService("Welding", Decimal("300.00")),),
        total_outside_services=Decimal("300.00"),
        loyalty_discount=Decimal("10.00"),
        total=Decimal("2329.99"),
        amount_paid=Decimal("2000.00"),
        payment_status=constants.PaymentStatus.PARTIAL,
        balance_due=Decimal("330.00"),
        previous_balance=Decimal("0.00"),
        balance_applied=Decimal("330.00"),
        timestamp=WHEN,
        points_earned=34,
        redeemed_points=10,
        final_loyalty_points=24,
        promotion_applied=AppliedMultiplier("Spring", Decimal("1.5")),
        tier_applied=AppliedMultiplier("Standard", Decimal("1")),
        recorded_by="counter-1",
        state=constants.SaleState.UPDATED,
    )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent_directories(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=shopsync.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    parser = data_manager.read_config(config_file)
    assert parser.get("System", "ShopName") == "Test Garage"
    assert parser.get("Defaults", "DefaultOperator") == "counter-1"


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True)
    parser = configparser.ConfigParser()
    parser.read(bundle.config_path)

    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.default_operator == "counter-1"
    assert settings.schema_version == constants.EXPECTED_SCHEMA_VERSION


def test_parse_settings_requires_expected_sections(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=x.xlsx\nShopName=Garage\nSchemaVersion=2.0.0")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert set(data_manager.SHEET_COLUMNS).issubset(workbook.sheetnames)


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_ensure_sheets_adds_missing_headers():
    workbook = openpyxl.Workbook()

    created = data_manager.ensure_sheets(workbook)

    assert set(created) == set(data_manager.SHEET_COLUMNS)
    header = [cell.value for cell in workbook[constants.SheetName.SALES.value][1]]
    assert header == list(data_manager.SHEET_COLUMNS[constants.SheetName.SALES.value])
    assert data_manager.ensure_sheets(workbook) == []


def test_iter_rows_pads_short_rows():
    workbook = openpyxl.Workbook()
    data_manager.ensure_sheets(workbook)
    workbook[constants.SheetName.PRODUCTS.value].append(["P1", "Bolt", None, None, 3])

    rows = list(data_manager.iter_rows(workbook, constants.SheetName.PRODUCTS))

    assert rows == [("P1", "Bolt", None, None, 3, None, None, None)]


def test_missing_sheet_raises_key_error():
    with pytest.raises(KeyError):
        list(data_manager.iter_rows(openpyxl.Workbook(), constants.SheetName.PAYMENTS))


def test_replace_rows_keeps_header():
    workbook = openpyxl.Workbook()
    data_manager.ensure_sheets(workbook)
    sheet = constants.SheetName.PAYMENTS
    data_manager.replace_rows(workbook, sheet, [["A"] * 6, ["B"] * 6])

    assert data_manager.replace_rows(workbook, sheet, [["C"] * 6]) == 1
    assert [row[0] for row in data_manager.iter_rows(workbook, sheet)] == ["C"]
    assert workbook[sheet.value]["A1"].value == "PaymentID"


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------


def test_product_ids_are_coerced_to_text():
    product = data_manager.deserialize_product((1001, "Bolt", None, None, 3.0, 1.5, 2, 890100))

    assert product.product_id == "1001"
    assert product.quantity == 3
    assert product.sale_price == Decimal("2.00")
    assert product.barcode == "890100"


def test_sale_rows_rebuild_items_and_services():
    sale = _sale()
    items = [data_manager.deserialize_sale_item(row) for row in data_manager.serialize_sale_items(sale)]
    services = [data_manager.deserialize_outside_service(row) for row in data_manager.serialize_outside_services(sale)]

    restored = data_manager.deserialize_sale(
        data_manager.serialize_sale(sale),
        [item for _, _, item in items],
        [service for _, _, service in services],
    )

    assert restored == sale
    assert items[1][2].product == ManualRef("Chain lube")
    assert [line_no for _, line_no, _ in items] == [1, 2]


def test_sale_without_snapshots_reads_back_none():
    sale = replace(_sale(), promotion_applied=None, tier_applied=None, recorded_by=None)

    restored = data_manager.deserialize_sale(data_manager.serialize_sale(sale), sale.items, sale.outside_services)

    assert restored.promotion_applied is None
    assert restored.tier_applied is None
    assert restored.recorded_by is None


def test_customer_sale_ids_are_comma_joined():
    customer = Customer(
        customer_id="KA01AB1234",
        name="Ravi",
        sale_ids=("2403151030", "2403151030-1"),
        first_seen=WHEN,
        last_seen=WHEN,
        loyalty_points=12,
        tier_id="gold",
        balance=Decimal("330.00"),
        manual_visit_adjustment=2,
        contact_number="98450",
        service_frequency=Period(6, constants.PeriodUnit.MONTHS),
        servicing_notes="Chain slack",
        next_service_date=date(2024, 9, 15),
    )
    row = data_manager.serialize_customer(customer)

    assert row[3] == "2403151030,2403151030-1"
    assert data_manager.deserialize_customer(row) == customer


def test_customer_rows_without_service_columns_read_as_none():
    row = ["KA01AB1234", "Ravi", None, "", WHEN, WHEN, 0, None, 0, 0, None, None, None, None]

    customer = data_manager.deserialize_customer(row)

    assert customer.service_frequency is None
    assert customer.servicing_notes is None
    assert customer.next_service_date is None


def test_naive_timestamps_are_read_as_utc():
    row = ["T1", "C1", "earned", 5, "2024-03-15T10:30:00", 0, 5, "S1", None, None]

    entry = data_manager.deserialize_loyalty_transaction(row)

    assert entry.timestamp == WHEN
    assert entry.type is constants.LoyaltyTransactionType.EARNED


def test_settings_rows_round_trip_and_default():
    redemption = RedemptionRule(constants.RedemptionMethod.PERCENTAGE, 100, Decimal("2"))
    expiry = LoyaltyExpirySettings(enabled=True, reminder_period=Period(14, constants.PeriodUnit.DAYS))

    assert data_manager.deserialize_settings(data_manager.serialize_settings(redemption, expiry)) == (
        redemption,
        expiry,
    )
    default_redemption, default_expiry = data_manager.deserialize_settings([])
    assert default_redemption.points == 1
    assert default_expiry == LoyaltyExpirySettings()


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


def test_workbook_store_persists_full_state(master_workbook_path, state):
    sale = _sale()
    expanded = replace(
        state,
        sales=(sale,),
        loyalty_transactions=(
            LoyaltyTransaction(
                transaction_id="abc",
                customer_id="KA01AB1234",
                type=constants.LoyaltyTransactionType.EARNED,
                points=34,
                timestamp=WHEN,
                points_before=0,
                points_after=34,
                related_sale_id=sale.sale_id,
            ),
        ),
        payments=(Payment("P1", "KA01AB1234", Decimal("100.00"), WHEN, notes="cash"),),
        promotions=(Promotion("spring", "Spring", date(2024, 3, 1), date(2024, 3, 31), Decimal("1.5")),),
    )
    store = data_manager.WorkbookStore(master_workbook_path)

    assert store.save(expanded) is True
    loaded = data_manager.WorkbookStore(master_workbook_path).load()

    assert loaded.products == expanded.products
    assert loaded.customers == expanded.customers
    assert loaded.sales == expanded.sales
    assert loaded.loyalty_transactions == expanded.loyalty_transactions
    assert loaded.payments == expanded.payments
    assert loaded.promotions == expanded.promotions
    assert loaded.earning_rules == expanded.earning_rules
    assert loaded.tiers == expanded.tiers


def test_workbook_store_reports_failed_save(master_workbook_path, monkeypatch, state):
    def _refuse(workbook, destination):
        raise PermissionError("workbook is open in Excel")

    monkeypatch.setattr(data_manager, "save_workbook", _refuse)

    assert data_manager.WorkbookStore(master_workbook_path).save(state) is False


def test_empty_loyalty_sheets_fall_back_to_defaults(workbook_factory):
    path = workbook_factory(initial_state=AppState(earning_rules=(), tiers=()))

    loaded = data_manager.WorkbookStore(path).load()

    assert loaded.earning_rules == AppState().earning_rules
    assert loaded.tiers == AppState().tiers


def test_memory_store_acknowledgement(state):
    store = data_manager.MemoryStore(state, acknowledge=False)

    assert store.save(AppState()) is False
    assert store.load() is state
    assert store.saves == 0
