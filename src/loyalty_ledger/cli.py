"""Command-line entry points for the loyalty ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and rendering results as plain text. Keeping the CLI thin ensures the
same parser configuration can be reused by tests or scripts.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, log
from .errors import BusinessRuleViolation, ConcurrencyConflict, UnitOfWorkTimeout
from .pricing import format_money, to_money


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
        prog="loyalty-cli",
        description="Command-line tools for the loyalty ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
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
    """Declare mutating CLI commands such as purchases and conversions."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "update-product": register_update_product_command(subparsers),
        "add-customer": register_add_customer_command(subparsers),
        "purchase": register_purchase_command(subparsers),
        "convert-points": register_convert_points_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and summaries."""
    specs = {
        "products": register_products_command(subparsers),
        "customers": register_customers_command(subparsers),
        "transactions": register_transactions_command(subparsers),
        "loyalty": register_loyalty_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_line_item(raw: str) -> core_logic.LineItem:
    """Parse a ``PRODUCT_ID:QTY`` token into a :class:`LineItem`."""
    product_part, separator, quantity_part = raw.partition(":")
    if not separator:
        raise argparse.ArgumentTypeError(f"Expected PRODUCT_ID:QTY, got '{raw}'")
    try:
        return core_logic.LineItem(product_id=int(product_part), quantity=int(quantity_part))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Expected whole numbers in '{raw}'") from exc


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Add a product to the Products sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--price", required=True)
        parser.add_argument("--stock", type=int, required=True)
        parser.add_argument("--category", required=True)
        parser.add_argument("--description", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_update_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-product``."""
    name = "update-product"
    help_text = "Change selected fields of an existing product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", type=int, required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--price", default=None)
        parser.add_argument("--stock", type=int, default=None)
        parser.add_argument("--category", default=None)
        description = parser.add_mutually_exclusive_group()
        description.add_argument("--description", default=None)
        description.add_argument("--clear-description", action="store_true")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_product)


def register_add_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Register a customer with empty balances."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--email", required=True)
        parser.add_argument("--phone", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer)


def register_purchase_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``purchase``."""
    name = "purchase"
    help_text = "Commit a purchase, optionally redeeming cashback."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", type=int, required=True)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_line_item,
            required=True,
            metavar="PRODUCT_ID:QTY",
            help="Line item; repeat for several products.",
        )
        parser.add_argument("--cashback", default=None, help="Cashback to redeem against the purchase.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_purchase)


def register_convert_points_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``convert-points``."""
    name = "convert-points"
    help_text = "Redeem loyalty points as cashback."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", type=int, required=True)
        parser.add_argument("--points", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_convert_points)


def register_products_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``products``."""
    name = "products"
    help_text = "List products with price and stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_products_report)


def register_customers_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``customers``."""
    name = "customers"
    help_text = "List customers with their balances."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_customers_report)


def register_transactions_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``transactions``."""
    name = "transactions"
    help_text = "Display the transaction journal."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_transactions_report)


def register_loyalty_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``loyalty``."""
    name = "loyalty"
    help_text = "Display a customer's loyalty summary."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_loyalty_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations and check its schema."""
    context = core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)
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


def translate_add_product(args: argparse.Namespace) -> core_logic.CreateProductCommand:
    """Translate CLI args into a product creation command."""
    return core_logic.CreateProductCommand(
        name=args.name,
        price=to_money(args.price),
        stock_quantity=args.stock,
        category=args.category,
        description=args.description,
    )


def translate_update_product(args: argparse.Namespace) -> core_logic.UpdateProductCommand:
    """Translate CLI args into a partial product update."""
    return core_logic.UpdateProductCommand(
        product_id=args.product_id,
        name=args.name,
        description=args.description,
        price=to_money(args.price) if args.price is not None else None,
        stock_quantity=args.stock,
        category=args.category,
        clear_description=args.clear_description,
    )


def translate_add_customer(args: argparse.Namespace) -> core_logic.CreateCustomerCommand:
    return core_logic.CreateCustomerCommand(name=args.name, email=args.email, phone=args.phone)


def translate_purchase(args: argparse.Namespace) -> core_logic.PurchaseCommand:
    """Translate CLI args into a purchase command object."""
    return core_logic.PurchaseCommand(
        customer_id=args.customer_id,
        items=list(args.items),
        cashback_used=to_money(args.cashback) if args.cashback is not None else None,
    )


def translate_convert_points(args: argparse.Namespace) -> core_logic.ConvertPointsCommand:
    return core_logic.ConvertPointsCommand(customer_id=args.customer_id, points_to_convert=args.points)


def format_product(product: data_manager.ProductRow) -> str:
    return (
        f"{product.product_id}\t{product.name}\t{product.category}\t"
        f"price={format_money(product.price)}\tstock={product.stock_quantity}"
    )


def format_customer(customer: data_manager.CustomerRow) -> str:
    return (
        f"{customer.customer_id}\t{customer.name}\t{customer.email}\t"
        f"points={customer.points_balance}\tcashback={format_money(customer.cashback_balance)}"
    )


def format_transaction(transaction: data_manager.TransactionRow) -> str:
    return (
        f"{transaction.transaction_id}\tcustomer={transaction.customer_id}\t"
        f"total={format_money(transaction.total_amount)}\t"
        f"cashback_used={format_money(transaction.cashback_used)}\t"
        f"points={transaction.points_earned}\t{data_manager.serialize_timestamp(transaction.created_at)}"
    )


def format_loyalty_summary(summary: core_logic.LoyaltySummary) -> List[str]:
    return [
        f"Customer: {summary.customer_id} ({summary.name})",
        f"Points balance: {summary.points_balance}",
        f"Cashback balance: {format_money(summary.cashback_balance)}",
        f"Transactions: {summary.total_transactions}",
        f"Total spent: {format_money(summary.total_spent)}",
    ]


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.create_product(context, translate_add_product(args))
    print(format_product(product))
    return 0


def run_update_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-product workflow in the BLL."""
    product = core_logic.update_product(context, translate_update_product(args))
    print(format_product(product))
    return 0


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-customer workflow in the BLL."""
    customer = core_logic.create_customer(context, translate_add_customer(args))
    print(format_customer(customer))
    return 0


def run_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase workflow via the commit engine."""
    transaction = core_logic.create_transaction(context, translate_purchase(args))
    print(format_transaction(transaction))
    for item in core_logic.list_transaction_items(context, transaction.transaction_id):
        print(
            f"  product={item.product_id}\tqty={item.quantity}\t"
            f"unit={format_money(item.unit_price)}\tline={format_money(item.total_price)}"
        )
    return 0


def run_convert_points(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the points conversion workflow."""
    customer = core_logic.convert_points_to_cashback(context, translate_convert_points(args))
    print(format_customer(customer))
    return 0


def run_products_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for product in core_logic.list_products(context):
        print(format_product(product))
    return 0


def run_customers_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for customer in core_logic.list_customers(context):
        print(format_customer(customer))
    return 0


def run_transactions_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the journal listing, optionally filtered by customer."""
    for transaction in core_logic.list_transactions(context, customer_id=args.customer_id):
        print(format_transaction(transaction))
    return 0


def run_loyalty_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    summary = core_logic.get_customer_loyalty_info(context, args.customer_id)
    for line in format_loyalty_summary(summary):
        print(line)
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    log.error("%s", error)
    if isinstance(error, BusinessRuleViolation):
        return 2
    if isinstance(error, FileNotFoundError):
        return 3
    if isinstance(error, (ConcurrencyConflict, UnitOfWorkTimeout)):
        return 4
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution.

    Every write command commits its own unit of work, so no explicit save step
    is needed once the executor returns.
    """
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
