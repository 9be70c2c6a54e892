"""Command-line entry points for the POS ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing report output. The workbook is saved only after a command
finishes successfully, so a failing command never leaves partial changes on
disk.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, log
from .constants import PaymentMethod, SaleStatus
from .data_manager import PurchaseItem, StoreFailure


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


ItemArgument = Tuple[str, int, Optional[Decimal]]


def parse_item(text: str) -> ItemArgument:
    """Parse ``PRODUCT_ID:QUANTITY[:AMOUNT]`` into its parts."""
    parts = text.split(":")
    if len(parts) not in (2, 3) or not parts[0]:
        raise argparse.ArgumentTypeError(f"Expected PRODUCT_ID:QUANTITY[:AMOUNT], got '{text}'")
    try:
        quantity = int(parts[1])
        amount = Decimal(parts[2]) if len(parts) == 3 else None
    except (ValueError, InvalidOperation) as exc:
        raise argparse.ArgumentTypeError(f"Invalid item '{text}': {exc}") from exc
    return parts[0], quantity, amount


def parse_money(text: str) -> Decimal:
    """Parse a monetary amount such as a price."""
    try:
        return Decimal(text)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Invalid amount '{text}'") from exc


def parse_date(text: str) -> datetime:
    """Parse an ISO date or datetime as UTC."""
    try:
        moment = datetime.fromisoformat(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date '{text}'") from exc
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=UTC)


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pos-ledger",
        description="Command-line tools for the POS ledger workbook.",
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


def _simple_spec(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
    configure: Callable[[argparse.ArgumentParser], None] = lambda parser: None,
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        configure(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and purchase receptions."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "edit-product": register_edit_product_command(subparsers),
        "delete-product": _simple_spec(
            "delete-product",
            "Delete a product (its stock history is kept).",
            run_delete_product,
            lambda parser: parser.add_argument("--product-id", required=True),
        ),
        "add-category": _simple_spec(
            "add-category",
            "Register a product category.",
            run_add_category,
            lambda parser: parser.add_argument("--name", required=True),
        ),
        "rename-category": register_rename_category_command(subparsers),
        "delete-category": _simple_spec(
            "delete-category",
            "Delete a category and clear it from its products.",
            run_delete_category,
            lambda parser: parser.add_argument("--category-id", required=True),
        ),
        "add-supplier": register_add_supplier_command(subparsers),
        "add-client": register_add_client_command(subparsers),
        "sale": register_sale_command(subparsers),
        "cancel-sale": _simple_spec(
            "cancel-sale",
            "Cancel a completed sale and restore its stock.",
            run_cancel_sale,
            lambda parser: parser.add_argument("--sale-id", required=True),
        ),
        "add-purchase": register_add_purchase_command(subparsers),
        "receive-purchase": register_receive_purchase_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": _simple_spec("stock", "Display current stock levels.", run_stock_report),
        "history": _simple_spec(
            "history",
            "Display the stock history.",
            run_history_report,
            lambda parser: parser.add_argument("--product-id", default=None),
        ),
        "sales": _simple_spec("sales", "Display recorded sales.", run_sales_report),
        "profit": register_profit_command(subparsers),
        "low-stock": _simple_spec(
            "low-stock",
            "Display products at or below their threshold and backordered products.",
            run_low_stock_report,
        ),
        "valuation": _simple_spec("valuation", "Display stock valuation at cost.", run_valuation_report),
        "verify": _simple_spec(
            "verify",
            "Check that stock history reconstructs current stock.",
            run_verify_report,
        ),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--name", required=True)
        parser.add_argument("--selling-price", type=parse_money, required=True)
        parser.add_argument("--cost-price", type=parse_money, default="0")
        parser.add_argument("--sku", default="")
        parser.add_argument("--category", default="")
        parser.add_argument("--supplier-id", default="")
        parser.add_argument("--stock", type=int, default=0)
        parser.add_argument("--threshold", type=int, default=None)
        parser.add_argument("--description", default=None)

    return _simple_spec("add-product", "Register a new product.", run_add_product, configure)


def register_edit_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-product``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--selling-price", type=parse_money, default=None)
        parser.add_argument("--cost-price", type=parse_money, default=None)
        parser.add_argument("--category", default=None)
        parser.add_argument("--stock", type=int, default=None, help="New absolute stock level.")
        parser.add_argument("--threshold", type=int, default=None)

    return _simple_spec(
        "edit-product",
        "Edit a product; stock changes are logged as manual adjustments.",
        run_edit_product,
        configure,
    )


def register_rename_category_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--category-id", required=True)
        parser.add_argument("--name", required=True)

    return _simple_spec(
        "rename-category",
        "Rename a category and update its products.",
        run_rename_category,
        configure,
    )


def register_add_supplier_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--name", required=True)
        parser.add_argument("--contact-name", default="")
        parser.add_argument("--phone", default="")
        parser.add_argument("--email", default="")

    return _simple_spec("add-supplier", "Register a supplier.", run_add_supplier, configure)


def register_add_client_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--name", required=True)
        parser.add_argument("--address", default="")
        parser.add_argument("--phone", default="")
        parser.add_argument("--email", default="")
        parser.add_argument("--document-number", default="")

    return _simple_spec("add-client", "Register a client.", run_add_client, configure)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_item,
            required=True,
            help="PRODUCT_ID:QUANTITY[:UNIT_PRICE]; defaults to the selling price.",
        )
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            default=PaymentMethod.CASH.value,
        )
        parser.add_argument("--client-id", default=None)
        parser.add_argument("--customer-name", default="")
        parser.add_argument("--customer-phone", default="")

    return _simple_spec("sale", "Record a point-of-sale sale.", run_sale, configure)


def register_add_purchase_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--supplier-id", required=True)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_item,
            required=True,
            help="PRODUCT_ID:QUANTITY:UNIT_COST",
        )

    return _simple_spec("add-purchase", "Register a pending purchase.", run_add_purchase, configure)


def register_receive_purchase_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--purchase-id", required=True)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_item,
            default=None,
            help="Delivered PRODUCT_ID:QUANTITY:UNIT_COST; defaults to the ordered items.",
        )

    return _simple_spec(
        "receive-purchase",
        "Receive a pending purchase into stock.",
        run_receive_purchase,
        configure,
    )


def register_profit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--start", type=parse_date, default=None)
        parser.add_argument("--end", type=parse_date, default=None)

    return _simple_spec(
        "profit",
        "Display revenue, cost, and profit of completed sales.",
        run_profit_report,
        configure,
    )


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
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
# Translators
# ---------------------------------------------------------------------------


def translate_add_product(args: argparse.Namespace) -> core_logic.NewProductCommand:
    """Translate CLI args into a new-product command object."""
    return core_logic.NewProductCommand(
        name=args.name,
        selling_price=args.selling_price,
        cost_price=args.cost_price,
        sku=args.sku,
        category=args.category,
        supplier_id=args.supplier_id,
        stock=args.stock,
        low_stock_threshold=args.threshold,
        description=args.description,
    )


def translate_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object.

    Lines without a price use the product's selling price. Without a client
    or customer name the sale goes to the configured default client.
    """
    lines = [
        core_logic.SaleLine(
            product_id=product_id,
            quantity=quantity,
            unit_price=(
                price
                if price is not None
                else core_logic.get_product(context, product_id).selling_price
            ),
        )
        for product_id, quantity, price in args.items
    ]
    client_id = args.client_id
    if client_id is None and not args.customer_name:
        client_id = context.settings.default_client_id
    return core_logic.SaleCommand(
        items=lines,
        payment_method=PaymentMethod(args.payment_method),
        client_id=client_id,
        customer_name=args.customer_name,
        customer_phone=args.customer_phone,
    )


def translate_purchase_items(items: Sequence[ItemArgument]) -> List[PurchaseItem]:
    """Translate ``--item`` values into purchase lines; a unit cost is required."""
    lines = []
    for product_id, quantity, cost in items:
        if cost is None:
            raise core_logic.ValidationError(f"Missing unit cost for product '{product_id}'")
        lines.append(PurchaseItem(product_id=product_id, quantity=quantity, unit_cost=cost))
    return lines


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    product = core_logic.add_product(context, translate_add_product(args))
    print(product.product_id)
    return 0


def run_edit_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Apply the supplied field changes to an existing product."""
    product = core_logic.get_product(context, args.product_id)
    changes = {}
    if args.name is not None:
        changes["name"] = args.name
    if args.selling_price is not None:
        changes["selling_price"] = args.selling_price
    if args.cost_price is not None:
        changes["cost_price"] = args.cost_price
    if args.category is not None:
        changes["category"] = args.category
    if args.stock is not None:
        changes["stock"] = args.stock
    if args.threshold is not None:
        changes["low_stock_threshold"] = args.threshold
    core_logic.update_product(context, replace(product, **changes))
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_product(context, args.product_id)
    return 0


def run_add_category(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    category = core_logic.add_category(context, args.name)
    print(category.category_id)
    return 0


def run_rename_category(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.rename_category(context, args.category_id, args.name)
    return 0


def run_delete_category(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_category(context, args.category_id)
    return 0


def run_add_supplier(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    supplier = core_logic.add_supplier(
        context,
        args.name,
        contact_name=args.contact_name,
        phone=args.phone,
        email=args.email,
    )
    print(supplier.supplier_id)
    return 0


def run_add_client(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    client = core_logic.add_client(
        context,
        args.name,
        address=args.address,
        phone=args.phone,
        email=args.email,
        document_number=args.document_number,
    )
    print(client.client_id)
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    sale = core_logic.commit_sale(context, translate_sale(context, args))
    print(f"{sale.sale_id} total={sale.total}")
    return 0


def run_cancel_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.cancel_sale(context, args.sale_id)
    return 0


def run_add_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    purchase = core_logic.add_purchase(
        context,
        core_logic.PurchaseCommand(
            supplier_id=args.supplier_id,
            items=translate_purchase_items(args.items),
        ),
    )
    print(f"{purchase.purchase_id} total={purchase.total}")
    return 0


def run_receive_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    reconciled = translate_purchase_items(args.items) if args.items else None
    purchase = core_logic.receive_purchase(context, args.purchase_id, reconciled)
    print(f"{purchase.purchase_id} total={purchase.total}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for product in core_logic.list_products(context):
        print(f"{product.product_id}\t{product.name}\t{product.stock}")
    return 0


def run_history_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for entry in core_logic.get_stock_history(context, args.product_id):
        print(
            f"{entry.timestamp_iso}\t{entry.product_id}\t{entry.movement_type}\t"
            f"{entry.quantity_change:+d}\t{entry.new_stock_level}\t{entry.notes or ''}"
        )
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for sale in core_logic.list_sales(context):
        marker = "" if sale.status == SaleStatus.COMPLETED.value else " (cancelled)"
        print(f"{sale.sale_id}\t{sale.timestamp_iso}\t{sale.customer_name}\t{sale.total}{marker}")
    return 0


def run_profit_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    summary = core_logic.calculate_profit_summary(context, start=args.start, end=args.end)
    print(f"STORE\t{context.settings.store_name}")
    for key, value in summary.items():
        print(f"{key}\t{value}")
    return 0


def run_low_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for product in core_logic.list_low_stock_products(context):
        print(f"LOW\t{product.product_id}\t{product.name}\t{product.stock}/{product.low_stock_threshold}")
    for product in core_logic.list_negative_stock_products(context):
        print(f"NEGATIVE\t{product.product_id}\t{product.name}\t{product.stock}")
    return 0


def run_valuation_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    valuation = core_logic.calculate_stock_valuation(context)
    print(f"STORE\t{context.settings.store_name}")
    for product_id, value in valuation.items():
        print(f"{product_id}\t{value}")
    print(f"TOTAL\t{sum(valuation.values(), Decimal('0'))}")
    return 0


def run_verify_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    problems = core_logic.verify_stock_history(context)
    for product_id, message in problems.items():
        print(f"{product_id}\t{message}")
    return 1 if problems else 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, StoreFailure):
        log.error("%s", error)
        return 4
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            core_logic.persist_context(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
