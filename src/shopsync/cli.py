"""Command-line entry points for the ShopSync toolkit.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the sale engine.
Keeping the CLI thin ensures the same parser configuration can be reused by
tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, log
from .constants import PeriodUnit
from .models import (
    CatalogRef,
    CartLine,
    Discount,
    ManualRef,
    OutsideService,
    Period,
    customer_ref_from_input,
)


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


@dataclass(frozen=True)
class ItemSpec:
    """Catalog line as typed on the command line."""

    product_id: str
    quantity: int
    discount: Optional[Discount] = None


def _decimal_arg(text: str) -> Decimal:
    try:
        return Decimal(text)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Not a number: {text!r}") from exc


def _int_arg(text: str) -> int:
    try:
        return int(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Not an integer: {text!r}") from exc


def parse_discount(text: str) -> Discount:
    """``"10%"`` is a percentage discount, ``"150"`` a fixed amount."""

    text = text.strip()
    if text.endswith("%"):
        return Discount.percentage(_decimal_arg(text[:-1]))
    return Discount.fixed(_decimal_arg(text))


def parse_item_spec(text: str) -> ItemSpec:
    """Parse ``PRODUCT_ID:QTY[:DISCOUNT[%]]``."""

    parts = text.split(":")
    if len(parts) not in (2, 3) or not parts[0]:
        raise argparse.ArgumentTypeError(f"Expected PRODUCT_ID:QTY[:DISCOUNT[%]], got {text!r}")
    discount = parse_discount(parts[2]) if len(parts) == 3 and parts[2] else None
    return ItemSpec(product_id=parts[0], quantity=_int_arg(parts[1]), discount=discount)


def parse_manual_spec(text: str) -> CartLine:
    """Parse ``LABEL:PRICE:QTY`` into a manual cart line."""

    parts = text.rsplit(":", 2)
    if len(parts) != 3 or not parts[0]:
        raise argparse.ArgumentTypeError(f"Expected LABEL:PRICE:QTY, got {text!r}")
    return core_logic.manual_cart_line(parts[0], _decimal_arg(parts[1]), _int_arg(parts[2]))


def parse_service_spec(text: str) -> OutsideService:
    """Parse ``LABEL:AMOUNT`` into an outside service."""

    parts = text.rsplit(":", 1)
    if len(parts) != 2 or not parts[0]:
        raise argparse.ArgumentTypeError(f"Expected LABEL:AMOUNT, got {text!r}")
    return OutsideService(label=parts[0], amount=_decimal_arg(parts[1]))


def parse_period(text: str) -> Period:
    """Parse ``VALUE:UNIT`` (days, months or years) into a period."""

    value, _, unit = text.partition(":")
    try:
        parsed_unit = PeriodUnit(unit.strip().lower())
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Expected VALUE:days|months|years, got {text!r}") from exc
    parsed_value = _int_arg(value)
    if parsed_value <= 0:
        raise argparse.ArgumentTypeError(f"Period must be positive, got {text!r}")
    return Period(parsed_value, parsed_unit)


def parse_return_spec(text: str) -> core_logic.ReturnLine:
    """Parse ``PRODUCT_ID[:QTY]`` or ``manual-LABEL[:QTY]`` into a return line."""

    key, _, quantity = text.partition(":")
    if not key:
        raise argparse.ArgumentTypeError(f"Expected PRODUCT_ID[:QTY], got {text!r}")
    product = ManualRef(key[len("manual-"):]) if key.startswith("manual-") else CatalogRef(key)
    return core_logic.ReturnLine(product=product, quantity=_int_arg(quantity) if quantity else None)


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="shopsync-cli",
        description="Command-line tools for the ShopSync point-of-sale workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and reversals."""
    specs = {
        "sale": register_sale_command(subparsers),
        "update-sale": register_update_sale_command(subparsers),
        "reverse": register_reverse_command(subparsers),
        "adjust-points": register_adjust_points_command(subparsers),
        "pay": register_pay_command(subparsers),
        "restock": register_restock_command(subparsers),
        "visits": register_visits_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as stock and loyalty reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "tier": register_tier_command(subparsers),
        "expiring": register_expiring_command(subparsers),
        "audit-ledger": register_audit_ledger_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_cart_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--item",
        dest="items",
        action="append",
        type=parse_item_spec,
        default=[],
        help="Catalog line as PRODUCT_ID:QTY[:DISCOUNT[%%]]; repeatable.",
    )
    parser.add_argument(
        "--manual",
        dest="manual_lines",
        action="append",
        type=parse_manual_spec,
        default=[],
        help="Ad-hoc line as LABEL:PRICE:QTY; repeatable.",
    )
    parser.add_argument(
        "--service",
        dest="services",
        action="append",
        type=parse_service_spec,
        default=[],
        help="Outside service as LABEL:AMOUNT; repeatable.",
    )
    parser.add_argument("--tuning", type=_decimal_arg, default=Decimal("0"))
    parser.add_argument("--labor", type=_decimal_arg, default=Decimal("0"))
    parser.add_argument("--discount", type=parse_discount, default=None, help="Overall discount, e.g. 150 or 5%%.")
    parser.add_argument("--paid", type=_decimal_arg, default=Decimal("0"))
    parser.add_argument("--redeem", type=_int_arg, default=0, help="Loyalty points to redeem.")
    parser.add_argument("--operator", default=None)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Commit a cart as a new sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer", required=True, help="Bike/asset number, or WALKIN.")
        parser.add_argument("--name", default="")
        parser.add_argument("--contact", default=None)
        parser.add_argument(
            "--service-every",
            dest="service_frequency",
            type=parse_period,
            default=None,
            help="Servicing interval such as 6:months.",
        )
        _add_cart_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_update_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-sale``."""
    name = "update-sale"
    help_text = "Replace the contents of an existing sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        _add_cart_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_sale)


def register_reverse_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reverse``."""
    name = "reverse"
    help_text = "Reverse a sale, fully or by returned lines."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.add_argument(
            "--return",
            dest="returns",
            action="append",
            type=parse_return_spec,
            default=[],
            help="Returned line as PRODUCT_ID[:QTY] or manual-LABEL[:QTY]; omit for a full reversal.",
        )
        parser.add_argument("--operator", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reverse)


def register_adjust_points_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``adjust-points``."""
    name = "adjust-points"
    help_text = "Add (positive) or subtract (negative) loyalty points."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer", required=True)
        parser.add_argument("--points", type=_int_arg, required=True)
        parser.add_argument("--reason", default=None)
        parser.add_argument("--operator", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_adjust_points)


def register_pay_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay``."""
    name = "pay"
    help_text = "Record a payment against a customer's outstanding balance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer", required=True)
        parser.add_argument("--amount", type=_decimal_arg, required=True)
        parser.add_argument("--notes", default=None)
        parser.add_argument("--operator", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay)


def register_restock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``restock``."""
    name = "restock"
    help_text = "Add units to a product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", type=_int_arg, required=True)
        parser.add_argument("--sale-price", type=_decimal_arg, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_restock)


def register_visits_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``visits``."""
    name = "visits"
    help_text = "Set a customer's manual visit adjustment."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer", required=True)
        parser.add_argument("--adjustment", type=_int_arg, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_visits)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--barcode", default=None, help="Show only the product with this barcode.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def _register_customer_report(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_tier_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``tier``."""
    return _register_customer_report(subparsers, "tier", "Evaluate a customer's tier now.", run_tier_report)


def register_expiring_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``expiring``."""
    return _register_customer_report(
        subparsers, "expiring", "Estimate a customer's points expiring soon.", run_expiring_report
    )


def register_audit_ledger_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``audit-ledger``."""
    return _register_customer_report(
        subparsers, "audit-ledger", "Replay a customer's loyalty ledger.", run_audit_ledger_report
    )


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context; without ``--config`` the search walks up from the CWD."""
    return core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_cart(context: core_logic.RuntimeContext, args: argparse.Namespace) -> Tuple[CartLine, ...]:
    """Resolve catalog lines against the product list and append manual lines."""
    lines: List[CartLine] = []
    for item in args.items:
        product = core_logic.get_product(context, item.product_id)
        lines.append(core_logic.build_cart_line(product, item.quantity, item.discount))
    lines.extend(args.manual_lines)
    return tuple(lines)


def translate_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        customer=customer_ref_from_input(args.customer, args.name, args.contact, args.service_frequency),
        lines=translate_cart(context, args),
        amount_paid=args.paid,
        overall_discount=args.discount or Discount.none(),
        tuning_charges=args.tuning,
        labor_charges=args.labor,
        outside_services=tuple(args.services),
        points_to_redeem=args.redeem,
        operator=args.operator,
    )


def translate_update_sale(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
) -> core_logic.UpdateSaleCommand:
    """Translate CLI args into an update-sale command object."""
    return core_logic.UpdateSaleCommand(
        sale_id=args.sale_id,
        lines=translate_cart(context, args),
        amount_paid=args.paid,
        overall_discount=args.discount or Discount.none(),
        tuning_charges=args.tuning,
        labor_charges=args.labor,
        outside_services=tuple(args.services),
        points_to_redeem=args.redeem,
        operator=args.operator,
    )


def translate_reverse(args: argparse.Namespace) -> core_logic.ReverseSaleCommand:
    """Translate CLI args into a reversal; no ``--return`` means a full reversal."""
    return core_logic.ReverseSaleCommand(
        sale_id=args.sale_id,
        lines=tuple(args.returns) if args.returns else None,
        operator=args.operator,
    )


def translate_adjust_points(args: argparse.Namespace) -> core_logic.PointsAdjustmentCommand:
    return core_logic.PointsAdjustmentCommand(
        customer_id=args.customer,
        points=args.points,
        reason=args.reason,
        operator=args.operator,
    )


def translate_pay(args: argparse.Namespace) -> core_logic.PaymentCommand:
    return core_logic.PaymentCommand(
        customer_id=args.customer,
        amount=args.amount,
        notes=args.notes,
        operator=args.operator,
    )


def translate_restock(args: argparse.Namespace) -> core_logic.RestockCommand:
    return core_logic.RestockCommand(
        product_id=args.product_id,
        quantity=args.quantity,
        new_sale_price=args.sale_price,
    )


def translate_visits(args: argparse.Namespace) -> core_logic.VisitAdjustmentCommand:
    return core_logic.VisitAdjustmentCommand(customer_id=args.customer, adjustment=args.adjustment)


def _print_sale(result: core_logic.SaleResult) -> None:
    sale = result.sale
    print(
        f"Sale {sale.sale_id}: total {sale.total}, paid {sale.amount_paid}, "
        f"balance due {sale.balance_due} ({sale.payment_status.value})"
    )
    if not result.customer.is_walk_in:
        print(
            f"Points: +{sale.points_earned} / -{sale.redeemed_points}, "
            f"balance {result.customer.loyalty_points}"
        )


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the engine."""
    core_logic.ensure_schema_version(context)
    command = translate_sale(context, args)
    _print_sale(core_logic.record_sale(context, command))
    return 0


def run_update_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-sale workflow via the engine."""
    core_logic.ensure_schema_version(context)
    command = translate_update_sale(context, args)
    _print_sale(core_logic.update_sale(context, command))
    return 0


def run_reverse(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the reversal workflow via the engine."""
    core_logic.ensure_schema_version(context)
    result = core_logic.reverse_sale(context, translate_reverse(args))
    if result.fully_reversed:
        print(f"Sale {result.sale_id} fully reversed.")
    else:
        print(f"Sale {result.sale_id} partially reversed; new total {result.sale.total}.")
        print(
            "Loyalty points and customer balance were NOT adjusted "
            f"(unapplied balance change {result.unapplied_balance}); adjust them manually."
        )
    return 0


def run_adjust_points(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.ensure_schema_version(context)
    entry = core_logic.adjust_customer_points(context, translate_adjust_points(args))
    print(f"{entry.customer_id}: {entry.points_before} -> {entry.points_after} points")
    return 0


def run_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.ensure_schema_version(context)
    payment = core_logic.record_customer_payment(context, translate_pay(args))
    customer = core_logic.get_customer(context, payment.customer_id)
    print(f"Payment {payment.payment_id}: {payment.amount}; remaining balance {customer.balance}")
    return 0


def run_restock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.ensure_schema_version(context)
    product = core_logic.record_restock(context, translate_restock(args))
    print(f"{product.product_id}: {product.quantity} on hand at {product.sale_price}")
    return 0


def run_visits(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.ensure_schema_version(context)
    customer = core_logic.set_manual_visit_adjustment(context, translate_visits(args))
    print(f"{customer.customer_id}: visit adjustment {customer.manual_visit_adjustment}, tier {customer.tier_id}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    if getattr(args, "barcode", None):
        product = core_logic.find_product_by_barcode(context, args.barcode)
        if product is None:
            print(f"No product with barcode {args.barcode}")
            return 1
        products = [product]
    else:
        products = core_logic.list_products(context)
    for product in products:
        print(f"{product.product_id}\t{product.name}\t{product.quantity}\t{product.sale_price}")
    return 0


def run_tier_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    tier = core_logic.evaluate_customer_tier(context, args.customer)
    print(tier.name if tier is not None else "No tier")
    return 0


def run_expiring_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    print(core_logic.points_expiring_soon(context, args.customer))
    return 0


def run_audit_ledger_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the ledger replay; a broken chain yields exit code 1."""
    audit = core_logic.audit_customer_ledger(context, args.customer)
    status = "consistent" if audit.consistent else "INCONSISTENT"
    print(
        f"{audit.customer_id}: {audit.entries_checked} entries, replayed {audit.final_balance}, "
        f"stored {audit.expected_balance} ({status})"
    )
    if audit.first_inconsistency is not None:
        print(f"First broken entry: {audit.first_inconsistency.transaction_id}")
    return 0 if audit.consistent else 1


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
