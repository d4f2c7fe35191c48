"""Command-line entry points for the Standkasse toolkit.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the ledger
engine, and printing the read-side reports. Keeping the CLI thin ensures the
same parser configuration can be reused by tests, scripts, or any alternative
front-end that wants to expose the package capabilities.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass, replace
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, log, use_log_directory
from .checkout import parse_amount
from .constants import AuthMode, CancelReason, Denomination, PaymentMethod, TaxType
from .data_manager import CartLine, Product


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="standkasse",
        description="Command-line tools for the Standkasse event ledger.",
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
    """Declare mutating CLI commands such as sales and cancellations."""
    specs = {
        "start-event": register_start_event_command(subparsers),
        "sell": register_sell_command(subparsers),
        "cancel": register_cancel_command(subparsers),
        "tip": register_tip_command(subparsers),
        "stock-set": register_stock_set_command(subparsers),
        "refill": register_refill_command(subparsers),
        "close-event": register_close_event_command(subparsers),
        "reset-orders": register_reset_orders_command(subparsers),
        "set-passcode": register_set_passcode_command(subparsers),
        "add-product": register_add_product_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "products": register_products_command(subparsers),
        "stock": register_stock_command(subparsers),
        "orders": register_orders_command(subparsers),
        "report": register_report_command(subparsers),
        "kassensturz": register_kassensturz_command(subparsers),
        "archive": register_archive_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_count_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--count",
        action="append",
        default=[],
        metavar="DENOMINATION=N",
        help="Counted notes or coins, e.g. 20_note=3 (repeatable).",
    )


def register_start_event_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``start-event``."""
    name = "start-event"
    help_text = "Open a new event with a name and a starting cash float."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--balance", default=None, help="Starting cash float (default 0).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_start_event)


def register_sell_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sell``."""
    name = "sell"
    help_text = "Book an order for the active event."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            action="append",
            required=True,
            metavar="PRODUCT[:QTY]",
            help="Product id with an optional quantity (repeatable).",
        )
        parser.add_argument(
            "--price-override",
            action="append",
            default=[],
            metavar="PRODUCT=PRICE",
            help="Manual unit price for a product; requires --passcode.",
        )
        parser.add_argument(
            "--payment",
            choices=[member.value for member in PaymentMethod],
            required=True,
        )
        parser.add_argument(
            "--tax-type",
            choices=[member.value for member in TaxType],
            required=True,
        )
        parser.add_argument("--tendered", default=None, help="Cash handed over by the customer.")
        parser.add_argument("--passcode", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sell)


def register_cancel_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``cancel``."""
    name = "cancel"
    help_text = "Cancel (Storno) an order and put its items back into stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.add_argument(
            "--reason",
            choices=[member.value for member in CancelReason],
            required=True,
        )
        parser.add_argument("--note", default=None, help="Required when the reason is Other.")
        parser.add_argument("--passcode", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_cancel)


def register_tip_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``tip``."""
    name = "tip"
    help_text = "Record a tip for the active event."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--amount", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_tip)


def register_stock_set_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock-set``."""
    name = "stock-set"
    help_text = "Start stock tracking for products of the active event."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item", action="append", required=True, metavar="PRODUCT=QTY")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_set)


def register_refill_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``refill``."""
    name = "refill"
    help_text = "Add stock to tracked products."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item", action="append", required=True, metavar="PRODUCT=QTY")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_refill)


def register_close_event_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``close-event``."""
    name = "close-event"
    help_text = "Archive the active event, optionally with a till count."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_count_argument(parser)
        parser.add_argument("--yes", action="store_true", help="Confirm archiving without a prompt.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_close_event)


def register_reset_orders_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reset-orders``."""
    name = "reset-orders"
    help_text = "Delete every order of the active ledger (test bookings)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--passcode", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reset_orders)


def register_set_passcode_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-passcode``."""
    name = "set-passcode"
    help_text = "Change the shared passcode."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--current", required=True)
        parser.add_argument("--new", dest="new_passcode", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_passcode)


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Add or replace a catalog product (only between events)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--price", required=True)
        parser.add_argument("--category", required=True)
        parser.add_argument("--color", default="#e5e7eb", help="Display colour of the product tile.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_products_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``products``."""
    name = "products"
    help_text = "List the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--category", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_products_report)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display tracked stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_orders_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``orders``."""
    name = "orders"
    help_text = "Display the order ledger of the active event."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--active-only", action="store_true", help="Hide cancelled orders.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_orders_report)


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""
    name = "report"
    help_text = "Display revenue, payment split, VAT and product volume."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--event-id", default=None, help="Report an archived event instead.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_event_report)


def register_kassensturz_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``kassensturz``."""
    name = "kassensturz"
    help_text = "Compare a till count against the expected cash."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_count_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_kassensturz_report)


def register_archive_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``archive``."""
    name = "archive"
    help_text = "List archived events."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_archive_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
    use_log_directory(context.settings.data_file.parent / ".logs")
    return context


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


# ---------------------------------------------------------------------------
# Argument translation
# ---------------------------------------------------------------------------


def parse_pair(raw: str, separator: str = "=") -> Tuple[str, str]:
    """Split ``KEY<sep>VALUE`` and reject blank halves."""
    key, found, value = raw.partition(separator)
    if not found or not key.strip() or not value.strip():
        raise ValueError(f"Expected KEY{separator}VALUE, got '{raw}'")
    return key.strip(), value.strip()


def parse_quantity(raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Not a whole number: {raw}") from exc


def parse_quantities(entries: Sequence[str]) -> Dict[str, int]:
    """Turn ``PRODUCT=QTY`` entries into a mapping; repeated products add up."""
    quantities: Dict[str, int] = {}
    for entry in entries:
        product_id, raw_quantity = parse_pair(entry)
        quantities[product_id] = quantities.get(product_id, 0) + parse_quantity(raw_quantity)
    return quantities


def parse_cash_count(entries: Sequence[str]) -> Dict[str, int]:
    """Turn ``DENOMINATION=N`` entries into a till count."""
    counts: Dict[str, int] = {}
    for entry in entries:
        denomination, raw_count = parse_pair(entry)
        try:
            key = Denomination(denomination).value
        except ValueError as exc:
            raise ValueError(f"Unknown denomination: {denomination}") from exc
        counts[key] = counts.get(key, 0) + parse_quantity(raw_count)
    return counts


def translate_start_event(args: argparse.Namespace) -> core_logic.StartEventCommand:
    """Translate CLI args into a start-event command object."""
    return core_logic.StartEventCommand(
        name=args.name,
        initial_balance=parse_amount(args.balance, default=Decimal("0")),
    )


def build_sale_lines(
    context: core_logic.RuntimeContext,
    items: Sequence[str],
    overrides: Mapping[str, Decimal],
) -> Tuple[CartLine, ...]:
    """Resolve ``PRODUCT[:QTY]`` entries into cart lines.

    Entries for the same product are merged into one line. A product named
    in ``overrides`` gets the manual unit price and keeps its catalog price
    as ``original_price``.

    Raises:
        MissingReferenceError: If a product id is not in the catalog.
        ValueError: On a malformed entry or quantity.
    """
    quantities: Dict[str, int] = {}
    for entry in items:
        product_id, separator, raw_quantity = entry.partition(":")
        product_id = product_id.strip()
        if not product_id:
            raise ValueError(f"Expected PRODUCT[:QTY], got '{entry}'")
        quantity = parse_quantity(raw_quantity) if separator else 1
        quantities[product_id] = quantities.get(product_id, 0) + quantity

    unknown = set(overrides) - set(quantities)
    if unknown:
        raise ValueError(f"Price override for a product not being sold: {', '.join(sorted(unknown))}")

    lines: List[CartLine] = []
    for product_id, quantity in quantities.items():
        product: Product = core_logic.get_product(context, product_id)
        line = CartLine(
            product_id=product.product_id,
            name=product.name,
            unit_price=product.unit_price,
            quantity=quantity,
        )
        if product_id in overrides:
            line = replace(
                line,
                unit_price=overrides[product_id],
                original_price=product.unit_price,
                is_overridden=True,
            )
        lines.append(line)
    return tuple(lines)


def translate_sell(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.CheckoutCommand:
    """Translate CLI args into a checkout command object.

    Price overrides are checked against the passcode here, because the
    ledger engine only sees the resulting line prices.
    """
    overrides = {
        product_id: parse_amount(raw_price)
        for product_id, raw_price in (parse_pair(entry) for entry in args.price_override)
    }
    if overrides:
        core_logic.require_authorization(context, args.passcode, AuthMode.PRICE_OVERRIDE)
    payment = PaymentMethod(args.payment)
    return core_logic.CheckoutCommand(
        lines=build_sale_lines(context, args.item, overrides),
        payment_method=payment,
        tax_type=TaxType(args.tax_type),
        tendered=parse_amount(args.tendered) if args.tendered is not None else None,
        passcode=args.passcode,
    )


def translate_cancel(args: argparse.Namespace) -> core_logic.CancelCommand:
    """Translate CLI args into a cancel command object."""
    return core_logic.CancelCommand(
        order_id=args.order_id,
        reason_code=CancelReason(args.reason),
        passcode=args.passcode,
        note=args.note,
    )


def translate_add_product(args: argparse.Namespace) -> Product:
    """Translate CLI args into a catalog product."""
    return Product(
        product_id=args.product_id,
        name=args.name,
        unit_price=parse_amount(args.price),
        category=args.category,
        display_color=args.color,
    )


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def run_start_event(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the start-event workflow via the BLL."""
    session = core_logic.start_event(context, translate_start_event(args))
    print(f"Event '{session.active_event_name}' started with {session.active_initial_balance} in the till.")
    return 0


def run_sell(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    command = translate_sell(context, args)
    order = core_logic.finalize_order(context, command)
    print(f"Order #{order.order_number} ({order.order_id}) booked: {order.total} {order.payment_method.value}")
    if order.payment_method is PaymentMethod.CASH and command.tendered is not None:
        print(f"Change: {command.tendered - order.total:.2f}")
    return 0


def run_cancel(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the cancellation workflow via the BLL."""
    order = core_logic.cancel_order(context, translate_cancel(args))
    print(f"Order #{order.order_number} cancelled.")
    return 0


def run_tip(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the tip workflow via the BLL."""
    tip = core_logic.record_tip(context, parse_amount(args.amount))
    print(f"Tip of {tip.amount} recorded.")
    return 0


def run_stock_set(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the starting stock workflow via the BLL."""
    core_logic.set_starting_stock(context, parse_quantities(args.item))
    return run_stock_report(context, args)


def run_refill(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the refill workflow via the BLL."""
    core_logic.refill_inventory(context, parse_quantities(args.item))
    return run_stock_report(context, args)


def run_close_event(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the close-event workflow via the BLL."""
    counts = parse_cash_count(args.count) if args.count else None
    if not args.yes:
        event_name = core_logic.require_active_event(core_logic.get_session(context))
        print(
            f"Closing archives '{event_name}' and clears the ledger. "
            "Re-run with --yes to confirm."
        )
        return 1
    archived = core_logic.close_event(context, cash_count=counts)
    print(f"Event '{archived.name}' archived as {archived.event_id} (revenue {archived.total_revenue}).")
    if archived.final_difference is not None:
        print(f"Kassensturz difference: {archived.final_difference}")
    return 0


def run_reset_orders(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the order reset workflow via the BLL."""
    removed = core_logic.reset_orders(context, args.passcode)
    print(f"{removed} order(s) removed.")
    return 0


def run_set_passcode(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the passcode change via the BLL."""
    core_logic.update_passcode(context, args.current, args.new_passcode)
    print("Passcode updated.")
    return 0


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow via the BLL."""
    product = core_logic.save_product(context, translate_add_product(args))
    print(f"Product '{product.product_id}' saved.")
    return 0


def run_products_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the catalog."""
    for product in core_logic.list_products(context, category=args.category):
        print(f"{product.product_id:<8} {product.name:<20} {product.unit_price:>8} {product.category}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the tracked stock of the active event."""
    inventory = core_logic.get_inventory(context)
    if not inventory:
        print("No products under stock tracking.")
        return 0
    for product_id, item in inventory.items():
        print(f"{product_id:<8} {item.current:>5} / {item.start:<5}")
    return 0


def run_orders_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the order ledger of the active event."""
    for order in core_logic.list_orders(context, include_cancelled=not args.active_only):
        status = f" CANCELLED ({order.status.reason})" if order.is_cancelled else ""
        print(
            f"#{order.order_number:<4} {order.order_id} {order.total:>8} "
            f"{order.payment_method.value:<12} {order.tax_type.value}{status}"
        )
    return 0


def format_summary(summary: core_logic.EventSummary) -> List[str]:
    """Render an event summary as printable lines."""
    rendered = [
        f"Revenue:       {summary.revenue}",
        f"  Cash:        {summary.cash_revenue}",
        f"  Card:        {summary.card_revenue}",
        f"Free of charge (list value): {summary.free_value}",
        f"Tips:          {summary.tips_total}",
        f"Orders:        {summary.order_count} (cancelled {summary.cancelled_count})",
    ]
    for rate, share in summary.tax_breakdown.items():
        rendered.append(f"VAT {rate:>2}%:      gross {share.gross}, contained VAT {share.vat}")
    for name, quantity in summary.product_volume:
        rendered.append(f"  {quantity:>4} x {name}")
    return rendered


def run_event_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the summary of the active or an archived event."""
    if args.event_id:
        summary = core_logic.archived_event_report(context, args.event_id)
    else:
        summary = core_logic.event_report(context)
    for line in format_summary(summary):
        print(line)
    return 0


def run_kassensturz_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the Kassensturz of the active event."""
    report = core_logic.compute_kassensturz(context, parse_cash_count(args.count))
    print(f"Initial balance: {report.initial_balance}")
    print(f"Cash revenue:    {report.cash_revenue}")
    print(f"Expected:        {report.expected}")
    print(f"Counted:         {report.actual}")
    print(f"Difference:      {report.difference}")
    return 0


def run_archive_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the archived events, newest first."""
    for event in core_logic.list_archive(context):
        difference = "" if event.final_difference is None else f" difference {event.final_difference}"
        print(f"{event.event_id} {event.name:<24} {event.total_revenue:>10}{difference}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, ValueError):
        log.error("%s", error)
        return 4
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution.

    Every store write is flushed by the store itself, so there is no
    separate persistence step after a successful command.
    """
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
