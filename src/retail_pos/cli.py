"""Command-line entry points for the retail POS engine.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and rendering results as plain text. Write commands persist through
the business layer itself, so the CLI never saves the workbook directly.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, log
from .constants import CategoryStatus, PaymentMethod


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
        prog="retail-pos",
        description="Point-of-sale and inventory tools for the store workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the current directory by default).",
    )
    parser.add_argument(
        "--user",
        default=None,
        help="Username of the acting operator (defaults to [Defaults] DefaultUser).",
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
    """Declare mutating CLI commands such as sales and catalog edits."""
    specs = {
        "sale": register_sale_command(subparsers),
        "add-category": register_add_category_command(subparsers),
        "delete-category": register_delete_category_command(subparsers),
        "edit-category": register_edit_category_command(subparsers),
        "add-product": register_add_product_command(subparsers),
        "delete-product": register_delete_product_command(subparsers),
        "edit-product": register_edit_product_command(subparsers),
        "restock": register_restock_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "low-stock": register_low_stock_command(subparsers),
        "sales": register_sales_command(subparsers),
        "analytics": register_analytics_command(subparsers),
        "dashboard": register_dashboard_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_cart_item(raw: str) -> core_logic.CartLine:
    """Parse a ``PRODUCT_ID:QTY`` token into a :class:`CartLine`."""
    product_part, separator, quantity_part = raw.partition(":")
    if not separator:
        raise argparse.ArgumentTypeError(f"Expected PRODUCT_ID:QTY, got '{raw}'")
    try:
        return core_logic.CartLine(product_id=int(product_part), quantity=int(quantity_part))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Expected integer PRODUCT_ID:QTY, got '{raw}'") from exc


def parse_decimal(raw: str) -> Decimal:
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Not a number: '{raw}'") from exc


def parse_date_bound(raw: str) -> date | datetime:
    """Accept ``YYYY-MM-DD`` or a full ISO-8601 timestamp."""
    try:
        if "T" in raw or " " in raw:
            return datetime.fromisoformat(raw)
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date: '{raw}'") from exc


def _add_date_range_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--start", type=parse_date_bound, default=None, help="Inclusive start date (YYYY-MM-DD or ISO timestamp).")
    parser.add_argument("--end", type=parse_date_bound, default=None, help="Inclusive end date; a plain date covers the whole day.")


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Commit a sale and print its receipt."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_cart_item,
            default=[],
            metavar="PRODUCT_ID:QTY",
            help="Cart line; repeat for several products.",
        )
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            default=PaymentMethod.CASH.value,
        )
        parser.add_argument("--customer", dest="customer_name", default=None)
        parser.add_argument("--discount", type=parse_decimal, default=Decimal("0"), help="Discount percentage (0-100).")
        parser.add_argument("--tax", type=parse_decimal, default=Decimal("0"), help="Tax percentage (0-100).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_add_category_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-category``."""
    name = "add-category"
    help_text = "Register a new product category (admin only)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--description", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_category)


def register_delete_category_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-category``."""
    name = "delete-category"
    help_text = "Delete a category without products (admin only)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--category-id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_category)


def register_edit_category_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-category``."""
    name = "edit-category"
    help_text = "Rename, describe or retire a category (admin only)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--category-id", type=int, required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--description", default=None)
        parser.add_argument(
            "--status",
            choices=[member.value for member in CategoryStatus],
            default=None,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_category)


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product (admin only)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--sku", required=True)
        parser.add_argument("--category-id", type=int, required=True)
        parser.add_argument("--price", type=parse_decimal, required=True)
        parser.add_argument("--stock", type=int, default=0)
        parser.add_argument("--reorder-point", type=int, default=0)
        parser.add_argument("--description", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_delete_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-product``."""
    name = "delete-product"
    help_text = "Delete a product (admin only)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_product)


def register_edit_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-product``.

    Options left out keep the product's stored value.
    """
    name = "edit-product"
    help_text = "Edit a product's catalog fields (admin only)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", type=int, required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--sku", default=None)
        parser.add_argument("--category-id", type=int, default=None)
        parser.add_argument("--price", type=parse_decimal, default=None)
        parser.add_argument("--stock", type=int, default=None, help="New absolute stock level.")
        parser.add_argument("--reorder-point", type=int, default=None)
        parser.add_argument("--description", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_product)


def register_restock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``restock``."""
    name = "restock"
    help_text = "Add received units to a product's stock (admin only)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", type=int, required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_restock)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_low_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``low-stock``."""
    name = "low-stock"
    help_text = "Display products at or below their reorder point."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_low_stock_report)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "List committed sales, optionally within a date range."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_date_range_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report)


def register_analytics_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``analytics``."""
    name = "analytics"
    help_text = "Display revenue, revenue by category and top products."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_date_range_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_analytics_report)


def register_dashboard_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dashboard``."""
    name = "dashboard"
    help_text = "Display the store overview."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dashboard_report)


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


def resolve_actor(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.ActorIdentity:
    """Map ``--user`` (or the configured default user) to an actor identity."""
    username = getattr(args, "user", None) or context.settings.default_username
    return core_logic.resolve_actor(context, username)


def translate_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        cart=list(args.items),
        payment_method=PaymentMethod(args.payment_method),
        actor=resolve_actor(context, args),
        customer_name=args.customer_name,
        discount_percent=args.discount,
        tax_percent=args.tax,
    )


def translate_add_category(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.AddCategoryCommand:
    return core_logic.AddCategoryCommand(
        name=args.name,
        description=args.description,
        actor=resolve_actor(context, args),
    )


def translate_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.AddProductCommand:
    """Translate CLI args into an add-product command object."""
    return core_logic.AddProductCommand(
        name=args.name,
        sku=args.sku,
        category_id=args.category_id,
        price=args.price,
        stock=args.stock,
        reorder_point=args.reorder_point,
        description=args.description,
        actor=resolve_actor(context, args),
    )


def translate_restock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.RestockCommand:
    return core_logic.RestockCommand(
        product_id=args.product_id,
        quantity=args.quantity,
        actor=resolve_actor(context, args),
    )


def translate_edit_category(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.UpdateCategoryCommand:
    """Translate CLI args into an update-category command, keeping the stored name when omitted."""
    current = core_logic.get_category(context, args.category_id)
    return core_logic.UpdateCategoryCommand(
        category_id=args.category_id,
        name=args.name if args.name is not None else current.name,
        description=args.description,
        status=CategoryStatus(args.status) if args.status is not None else None,
        actor=resolve_actor(context, args),
    )


def translate_edit_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.UpdateProductCommand:
    """Translate CLI args into an update-product command over the stored values."""
    current = core_logic.get_product(context, args.product_id)

    def pick(value, stored):
        return stored if value is None else value

    return core_logic.UpdateProductCommand(
        product_id=args.product_id,
        name=pick(args.name, current.name),
        sku=pick(args.sku, current.sku),
        category_id=pick(args.category_id, current.category_id),
        price=pick(args.price, current.price),
        stock=pick(args.stock, current.stock),
        reorder_point=pick(args.reorder_point, current.reorder_point),
        description=args.description,
        actor=resolve_actor(context, args),
    )


def format_receipt(sale: data_manager.SaleRow, store_name: str) -> str:
    """Render a committed sale as a plain-text receipt."""
    money = core_logic.format_money
    lines: List[str] = [
        store_name,
        f"Receipt #{sale.sale_id}  {sale.created_at.astimezone(UTC).strftime('%Y-%m-%d %H:%M:%S')} UTC",
        f"Customer: {sale.customer_name}",
        f"Cashier: {sale.cashier_name}",
        "-" * 40,
    ]
    for item in sale.items:
        lines.append(f"{item.product_name} ({item.sku})")
        lines.append(f"  {item.quantity} x {money(item.price)} = {money(item.total)}")
    lines.append("-" * 40)
    lines.append(f"Subtotal: {money(sale.subtotal)}")
    if sale.discount:
        lines.append(f"Discount ({sale.discount_percent}%): -{money(sale.discount)}")
    if sale.tax:
        lines.append(f"Tax ({sale.tax_percent}%): {money(sale.tax)}")
    lines.append(f"Total: {money(sale.total)}")
    lines.append(f"Paid by: {sale.payment_method}")
    return "\n".join(lines)


def _print_products(products: Sequence[data_manager.ProductRow]) -> None:
    if not products:
        print("No products found.")
        return
    print(f"{'ID':>4}  {'SKU':<10} {'Name':<24} {'Price':>10} {'Stock':>6} {'Reorder':>8}")
    for product in products:
        flag = " *" if product.is_low_stock else ""
        print(
            f"{product.product_id:>4}  {product.sku:<10} {product.name:<24} "
            f"{core_logic.format_money(product.price):>10} {product.stock:>6} {product.reorder_point:>8}{flag}"
        )


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL and print the receipt."""
    command = translate_sale(context, args)
    sale = core_logic.commit_sale(context, command)
    print(format_receipt(sale, context.settings.store_name))
    return 0


def run_add_category(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    category = core_logic.add_category(context, translate_add_category(context, args))
    print(f"Added category {category.category_id}: {category.name}")
    return 0


def run_delete_category(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_category(context, resolve_actor(context, args), args.category_id)
    print(f"Deleted category {args.category_id}")
    return 0


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(context, translate_add_product(context, args))
    print(f"Added product {product.product_id}: {product.name} ({product.sku})")
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_product(context, resolve_actor(context, args), args.product_id)
    print(f"Deleted product {args.product_id}")
    return 0


def run_edit_category(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    category = core_logic.update_category(context, translate_edit_category(context, args))
    print(f"Updated category {category.category_id}: {category.name} ({category.status})")
    return 0


def run_edit_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the edit-product workflow in the BLL."""
    product = core_logic.update_product(context, translate_edit_product(context, args))
    print(
        f"Updated product {product.product_id}: {product.name} ({product.sku}) "
        f"price {core_logic.format_money(product.price)}, stock {product.stock}"
    )
    return 0


def run_restock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the restock workflow via the BLL."""
    product = core_logic.restock_product(context, translate_restock(context, args))
    print(f"Product {product.product_id} ({product.name}) stock is now {product.stock}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    _print_products(core_logic.list_products(context))
    return 0


def run_low_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    _print_products(core_logic.list_low_stock_products(context))
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List sales in the requested range."""
    sales = core_logic.list_sales(context, args.start, args.end)
    if not sales:
        print("No sales found.")
        return 0
    for sale in sales:
        print(
            f"#{sale.sale_id:<5} {sale.created_at.isoformat()}  {sale.customer_name:<20} "
            f"{sale.payment_method:<8} {core_logic.format_money(sale.total):>12}"
        )
    return 0


def run_analytics_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the analytics reporting workflow."""
    result = core_logic.calculate_sales_analytics(context, args.start, args.end)
    print(f"Total sales: {core_logic.format_money(result.total_sales)}")
    print(f"Transactions: {result.total_transactions}")
    print("Sales by category:")
    for name, amount in result.sales_by_category.items():
        print(f"  {name:<24} {core_logic.format_money(amount):>12}")
    print("Top products:")
    for rank, product in enumerate(result.top_products, start=1):
        print(
            f"  {rank:>2}. {product.product_name:<24} qty {product.quantity:>5}  "
            f"{core_logic.format_money(product.total):>12}"
        )
    return 0


def run_dashboard_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    stats = core_logic.calculate_dashboard_stats(context)
    print(f"Products: {stats.total_products}")
    print(f"Active categories: {stats.total_categories}")
    print(f"Low stock: {stats.low_stock_count}")
    print(f"Total sales: {core_logic.format_money(stats.total_sales)}")
    print("Recent sales:")
    for sale in stats.recent_sales:
        print(f"  #{sale.sale_id} {sale.created_at.isoformat()} {core_logic.format_money(sale.total)}")
    if stats.low_stock_products:
        print("Reorder soon:")
        for product in stats.low_stock_products:
            print(f"  {product.name} ({product.stock} left, reorder at {product.reorder_point})")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, core_logic.PersistenceError):
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
        return dispatch_command(context, args, command_table)
    except Exception as error:
        return handle_cli_error(error)
