"""Integration tests describing the end-to-end ShopSync workflows.

These scenarios drive the sale engine against a real workbook on disk and
reload it between steps, so every assertion also covers what the data access
layer writes and reads back.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from shopsync import cli, constants, core_logic, data_manager
from shopsync.models import (
    CatalogRef,
    Discount,
    IdentifiedCustomer,
    LoyaltyExpirySettings,
    Period,
    Promotion,
    RedemptionRule,
)

RAVI = IdentifiedCustomer("KA01AB1234", "Ravi")


def _line(context: core_logic.RuntimeContext, product_id: str, quantity: int, discount: Discount | None = None):
    return core_logic.build_cart_line(core_logic.get_product(context, product_id), quantity, discount)


def _reload(context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    """Drop cached state so the next read goes back to the workbook."""

    return core_logic.refresh_context(context)


def test_credit_sale_and_payment_flow(runtime_context):
    """A part-paid sale leaves a balance that a later payment settles."""

    context = runtime_context

    sale = core_logic.record_sale(
        context,
        core_logic.SaleCommand(
            customer=RAVI,
            lines=(
                _line(context, "P-OIL", 1),
                core_logic.manual_cart_line("Chain lube", Decimal("89.99")),
            ),
            labor_charges=Decimal("200"),
            amount_paid=Decimal("500"),
        ),
    ).sale
    assert sale.payment_status is constants.PaymentStatus.PARTIAL

    # Everything the sale touched must survive a round trip through the file.
    context = _reload(context)
    assert core_logic.get_sale(context, sale.sale_id) == sale
    customer = core_logic.get_customer(context, "KA01AB1234")
    assert customer.balance == sale.balance_due
    assert customer.loyalty_points == sale.points_earned
    assert customer.sale_ids == (sale.sale_id,)
    assert core_logic.get_product(context, "P-OIL").quantity == 9

    payment = core_logic.record_customer_payment(
        context,
        core_logic.PaymentCommand("KA01AB1234", customer.balance, notes="Cash"),
    )

    context = _reload(context)
    assert core_logic.get_customer(context, "KA01AB1234").balance == Decimal("0")
    assert core_logic.current_state(context).payments == (payment,)
    assert core_logic.audit_customer_ledger(context, "KA01AB1234").consistent


def test_update_then_full_reversal_flow(runtime_context):
    """Updating and then fully reversing a sale leaves the shop as it started."""

    context = runtime_context
    customer_before = core_logic.get_customer(context, "KA01AB1234")

    original = core_logic.record_sale(
        context,
        core_logic.SaleCommand(customer=RAVI, lines=(_line(context, "P-OIL", 1),), amount_paid=Decimal("1000")),
    ).sale

    context = _reload(context)
    updated = core_logic.update_sale(
        context,
        core_logic.UpdateSaleCommand(
            sale_id=original.sale_id,
            lines=(_line(context, "P-OIL", 2), _line(context, "P-PLUG", 1)),
            amount_paid=Decimal("2150"),
        ),
    ).sale
    assert updated.state is constants.SaleState.UPDATED

    context = _reload(context)
    assert core_logic.get_sale(context, original.sale_id) == updated
    assert core_logic.get_product(context, "P-OIL").quantity == 8
    assert core_logic.get_product(context, "P-PLUG").quantity == 4
    assert core_logic.audit_customer_ledger(context, "KA01AB1234").consistent

    result = core_logic.reverse_sale(context, core_logic.ReverseSaleCommand(original.sale_id))
    assert result.fully_reversed

    context = _reload(context)
    state = core_logic.current_state(context)
    assert state.sales == ()
    assert state.transactions_for("KA01AB1234") == []
    customer_after = core_logic.get_customer(context, "KA01AB1234")
    assert customer_after.loyalty_points == customer_before.loyalty_points
    assert customer_after.balance == customer_before.balance
    assert customer_after.sale_ids == customer_before.sale_ids
    assert customer_after.tier_id == customer_before.tier_id
    assert core_logic.get_product(context, "P-OIL").quantity == 10
    assert core_logic.get_product(context, "P-PLUG").quantity == 5


def test_partial_reversal_is_terminal_after_reload(runtime_context):
    context = runtime_context
    sale = core_logic.record_sale(
        context,
        core_logic.SaleCommand(
            customer=RAVI,
            lines=(_line(context, "P-OIL", 1), _line(context, "P-PLUG", 2)),
            amount_paid=Decimal("1300"),
        ),
    ).sale

    result = core_logic.reverse_sale(
        context,
        core_logic.ReverseSaleCommand(sale.sale_id, lines=(core_logic.ReturnLine(CatalogRef("P-PLUG"), 1),)),
    )
    assert result.requires_manual_adjustment

    context = _reload(context)
    stored = core_logic.get_sale(context, sale.sale_id)
    assert stored.state is constants.SaleState.PARTIALLY_REVERSED
    assert stored.items[1].quantity == 1
    assert core_logic.get_product(context, "P-PLUG").quantity == 4

    with pytest.raises(core_logic.SaleStateError):
        core_logic.update_sale(
            context,
            core_logic.UpdateSaleCommand(sale_id=sale.sale_id, lines=(_line(context, "P-OIL", 1),)),
        )


def test_loyalty_program_changes_are_persisted(runtime_context):
    context = runtime_context
    core_logic.update_loyalty_program(
        context,
        core_logic.LoyaltyProgramCommand(
            redemption_rule=RedemptionRule(constants.RedemptionMethod.FIXED_VALUE, 10, Decimal("5")),
            promotions=(Promotion("spring", "Spring Service", date(2024, 3, 10), date(2024, 3, 20), Decimal("2")),),
            expiry_settings=LoyaltyExpirySettings(enabled=True, reminder_period=Period(2, constants.PeriodUnit.MONTHS)),
        ),
    )

    context = _reload(context)
    state = core_logic.current_state(context)
    assert state.redemption_rule.points == 10
    assert state.promotions[0].name == "Spring Service"
    assert state.expiry_settings.enabled
    assert state.expiry_settings.reminder_period == Period(2, constants.PeriodUnit.MONTHS)

    sale = core_logic.record_sale(
        context,
        core_logic.SaleCommand(customer=RAVI, lines=(_line(context, "P-OIL", 1),), amount_paid=Decimal("1000")),
    ).sale
    assert sale.promotion_applied.name == "Spring Service"
    assert sale.points_earned == 40


def test_unwritable_workbook_keeps_previous_state(runtime_context, monkeypatch):
    """A save the store cannot acknowledge must not leak into cached or stored state."""

    context = runtime_context
    core_logic.list_products(context)

    def _locked(workbook, destination):
        raise PermissionError("workbook is open in another program")

    with monkeypatch.context() as patch:
        patch.setattr(data_manager, "save_workbook", _locked)
        with pytest.raises(core_logic.CommitError):
            core_logic.record_sale(
                context,
                core_logic.SaleCommand(customer=RAVI, lines=(_line(context, "P-OIL", 3),)),
            )

    assert core_logic.get_product(context, "P-OIL").quantity == 10
    assert core_logic.get_product(_reload(context), "P-OIL").quantity == 10
    assert core_logic.current_state(_reload(context)).sales == ()


def test_cli_credit_sale_payment_and_reports_flow(config_factory, monkeypatch, clock, capsys):
    """Drive a credit sale, its payment and the loyalty reports through main()."""

    bundle = config_factory()
    monkeypatch.setattr(
        cli,
        "load_runtime_context",
        lambda path=None: core_logic.load_runtime_context(path, clock=clock),
    )
    config = ["--config", str(bundle.config_path)]

    assert cli.main([*config, "sale", "--customer", "ka01 ab1234", "--item", "P-PLUG:2", "--paid", "100"]) == 0
    assert "(Partial)" in capsys.readouterr().out

    assert cli.main([*config, "pay", "--customer", "KA01AB1234", "--amount", "200", "--notes", "UPI"]) == 0
    assert "remaining balance 0" in capsys.readouterr().out

    assert cli.main([*config, "pay", "--customer", "KA01AB1234", "--amount", "1"]) == 2

    assert cli.main([*config, "tier", "--customer", "KA01AB1234"]) == 0
    assert capsys.readouterr().out.strip() == "Standard"

    assert cli.main([*config, "expiring", "--customer", "KA01AB1234"]) == 0
    assert capsys.readouterr().out.strip() == "0"

    stored = data_manager.WorkbookStore(bundle.workbook_path).load()
    assert stored.find_product("P-PLUG").quantity == 3
    assert [p.notes for p in stored.payments] == ["UPI"]
