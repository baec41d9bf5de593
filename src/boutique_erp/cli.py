"""Command-line entry points for the boutique ERP.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the requests consumed by the business layer and
printing the results. Keeping the CLI thin ensures the same parser
configuration can be reused by tests, scripts, or any alternative front-end
that wants to expose the package capabilities.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .constants import (
    LOW_STOCK_LISTING_LIMIT,
    RECENT_SALES_LIMIT,
    UPCOMING_RETURNS_DAYS,
    ProductType,
    TransactionStatus,
    TransactionType,
)
from .data_manager import CustomerRow, ProductRow


SubParsers = argparse._SubParsersAction


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed.

    ``mutates`` marks commands whose success must be followed by a save.
    """

    name: str
    help_text: str
    register: Callable[[SubParsers], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="boutique-cli",
        description="Command-line tools for the Boutique ERP workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
    )
    return parser


def configure_subcommands(parser: argparse.ArgumentParser) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(subparsers: SubParsers) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as catalog edits and new transactions."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "update-product": register_update_product_command(subparsers),
        "delete-product": register_delete_product_command(subparsers),
        "add-customer": register_add_customer_command(subparsers),
        "update-customer": register_update_customer_command(subparsers),
        "new-transaction": register_new_transaction_command(subparsers),
        "set-status": register_set_status_command(subparsers),
        "seed": register_seed_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(subparsers: SubParsers) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and reports."""
    specs = {
        "products": register_products_command(subparsers),
        "low-stock": register_low_stock_command(subparsers),
        "customers": register_customers_command(subparsers),
        "transactions": register_transactions_command(subparsers),
        "show-transaction": register_show_transaction_command(subparsers),
        "recent-sales": register_recent_sales_command(subparsers),
        "returns": register_returns_command(subparsers),
        "dashboard": register_dashboard_command(subparsers),
        "report": register_report_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_product_fields(parser: argparse.ArgumentParser, *, required: bool) -> None:
    parser.add_argument("--codigo", required=required)
    parser.add_argument("--nombre", required=required)
    parser.add_argument("--descripcion", default=None)
    parser.add_argument("--tipo", choices=[member.value for member in ProductType], required=required)
    parser.add_argument("--precio", required=required)
    parser.add_argument("--stock", required=required)


def _add_customer_fields(parser: argparse.ArgumentParser, *, required: bool) -> None:
    parser.add_argument("--nombre", required=required)
    parser.add_argument("--domicilio", required=required)
    parser.add_argument("--telefono", required=required)


def register_add_product_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new dress in the Products sheet."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_product_fields(parser, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product, mutates=True)


def register_update_product_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``update-product``."""
    name = "update-product"
    help_text = "Edit fields of an existing product."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--id", dest="product_id", type=int, required=True)
        _add_product_fields(parser, required=False)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_product, mutates=True)


def register_delete_product_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``delete-product``."""
    name = "delete-product"
    help_text = "Remove a product from the catalog."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--id", dest="product_id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_product, mutates=True)


def register_add_customer_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Register a new customer."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_customer_fields(parser, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer, mutates=True)


def register_update_customer_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``update-customer``."""
    name = "update-customer"
    help_text = "Edit fields of an existing customer."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--id", dest="customer_id", type=int, required=True)
        _add_customer_fields(parser, required=False)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_customer, mutates=True)


def register_new_transaction_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``new-transaction``."""
    name = "new-transaction"
    help_text = "Record a rental or a sale."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--cliente-nombre", required=True)
        parser.add_argument("--cliente-domicilio", required=True)
        parser.add_argument("--cliente-telefono", required=True)
        parser.add_argument("--producto-id", required=True)
        parser.add_argument("--tipo", choices=[member.value for member in TransactionType], required=True)
        parser.add_argument("--fecha-entrega", required=True, help="Delivery date (YYYY-MM-DD).")
        parser.add_argument("--fecha-devolucion", default=None, help="Return date for rentals (YYYY-MM-DD).")
        parser.add_argument("--abono", default=None)
        parser.add_argument("--total", required=True)
        parser.add_argument("--fecha-creacion", default=None, help="Defaults to today (UTC).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_new_transaction, mutates=True)


def register_set_status_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``set-status``."""
    name = "set-status"
    help_text = "Change the status of a transaction."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--id", dest="transaction_id", type=int, required=True)
        parser.add_argument("--estado", choices=[member.value for member in TransactionStatus], required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_status, mutates=True)


def register_seed_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``seed``."""
    name = "seed"
    help_text = "Load the demo dataset into an empty workbook."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_seed, mutates=True)


def register_products_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``products``."""
    name = "products"
    help_text = "List every product."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_products_report)


def register_low_stock_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``low-stock``."""
    name = "low-stock"
    help_text = "List products running low on stock."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--threshold", type=int, default=None)
        parser.add_argument("--limit", type=int, default=LOW_STOCK_LISTING_LIMIT)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_low_stock_report)


def register_customers_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``customers``."""
    name = "customers"
    help_text = "List every customer."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_customers_report)


def register_transactions_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``transactions``."""
    name = "transactions"
    help_text = "Search the transaction log."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--tipo", choices=[member.value for member in TransactionType], default=None)
        parser.add_argument("--estado", choices=[member.value for member in TransactionStatus], default=None)
        parser.add_argument("--query", default=None, help="Match folio, customer or product name.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_transactions_report)


def register_show_transaction_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``show-transaction``."""
    name = "show-transaction"
    help_text = "Show one transaction with its product and customer."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        target = parser.add_mutually_exclusive_group(required=True)
        target.add_argument("--id", dest="transaction_id", type=int)
        target.add_argument("--folio")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_show_transaction)


def register_recent_sales_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``recent-sales``."""
    name = "recent-sales"
    help_text = "Show the newest transactions."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--limit", type=int, default=RECENT_SALES_LIMIT)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_recent_sales_report)


def register_returns_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``returns``."""
    name = "returns"
    help_text = "Show rentals due back soon."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--days", type=int, default=UPCOMING_RETURNS_DAYS)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_returns_report)


def register_dashboard_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``dashboard``."""
    name = "dashboard"
    help_text = "Display headline figures."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dashboard_report)


def register_report_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``report``."""
    name = "report"
    help_text = "Summarize transactions for a date range."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--start", type=date.fromisoformat, required=True, help="YYYY-MM-DD")
        parser.add_argument("--end", type=date.fromisoformat, required=True, help="YYYY-MM-DD")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_period_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations and check its schema."""
    context = core_logic.load_runtime_context(config_path)
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


def build_command_table(specs: Iterable[CommandSpec]) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def _supplied(args: argparse.Namespace, names: Sequence[str]) -> Dict[str, Any]:
    return {name: getattr(args, name) for name in names if getattr(args, name, None) is not None}


def translate_add_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into a create-product request."""
    return {
        "codigo": args.codigo,
        "nombre": args.nombre,
        "descripcion": args.descripcion,
        "tipo": args.tipo,
        "precio": args.precio,
        "stock": args.stock,
    }


def translate_update_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Keep only the product fields given on the command line."""
    return _supplied(args, core_logic.PRODUCT_FIELDS)


def translate_add_customer(args: argparse.Namespace) -> Mapping[str, Any]:
    return {"nombre": args.nombre, "domicilio": args.domicilio, "telefono": args.telefono}


def translate_update_customer(args: argparse.Namespace) -> Mapping[str, Any]:
    return _supplied(args, core_logic.CUSTOMER_FIELDS)


def translate_new_transaction(args: argparse.Namespace) -> core_logic.TransactionForm:
    """Translate CLI args into a transaction form.

    Values stay as text; the business layer coerces and validates them.
    """
    return core_logic.TransactionForm(
        cliente_nombre=args.cliente_nombre,
        cliente_domicilio=args.cliente_domicilio,
        cliente_telefono=args.cliente_telefono,
        id_producto=args.producto_id,
        tipo=args.tipo,
        fecha_entrega=args.fecha_entrega,
        fecha_devolucion=args.fecha_devolucion,
        abono=args.abono,
        total=args.total,
        fecha_creacion=args.fecha_creacion,
    )


def format_product(product: ProductRow) -> str:
    return (
        f"[{product.id}] {product.codigo} | {product.nombre} | {product.tipo} | "
        f"${product.precio:.2f} | stock {product.stock}"
    )


def format_customer(customer: CustomerRow) -> str:
    return f"[{customer.id}] {customer.nombre} | {customer.telefono} | {customer.domicilio}"


def format_transaction(view: core_logic.TransactionView) -> str:
    """Render an enriched transaction on one line.

    Dangling product or customer references print as ``?``.
    """
    transaction = view.transaction
    producto = view.producto.nombre if view.producto else "?"
    cliente = view.cliente.nombre if view.cliente else "?"
    devolucion = transaction.fecha_devolucion.isoformat() if transaction.fecha_devolucion else "-"
    return (
        f"{transaction.folio} | {transaction.tipo} | {transaction.estado} | {cliente} | {producto} | "
        f"creado {transaction.fecha_creacion.isoformat()} | entrega {transaction.fecha_entrega.isoformat()} | "
        f"devolucion {devolucion} | total ${transaction.total:.2f}"
    )


def _print_lines(lines: Iterable[str], empty_message: str) -> None:
    printed = False
    for line in lines:
        print(line)
        printed = True
    if not printed:
        print(empty_message)


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the create-product workflow in the BLL."""
    product = core_logic.create_product(context, translate_add_product(args))
    print(f"Created product {format_product(product)}")
    return 0


def run_update_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-product workflow in the BLL."""
    product = core_logic.update_product(context, args.product_id, translate_update_product(args))
    print(f"Updated product {format_product(product)}")
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-product workflow in the BLL."""
    core_logic.delete_product(context, args.product_id)
    print(f"Deleted product {args.product_id}")
    return 0


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the create-customer workflow in the BLL."""
    customer = core_logic.create_customer(context, translate_add_customer(args))
    print(f"Created customer {format_customer(customer)}")
    return 0


def run_update_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-customer workflow in the BLL."""
    customer = core_logic.update_customer(context, args.customer_id, translate_update_customer(args))
    print(f"Updated customer {format_customer(customer)}")
    return 0


def run_new_transaction(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the transaction workflow via the BLL."""
    transaction = core_logic.create_transaction(context, translate_new_transaction(args))
    print(f"Recorded transaction {transaction.folio} (id {transaction.id})")
    return 0


def run_set_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a status change under the configured policy."""
    transaction = core_logic.set_transaction_status(context, args.transaction_id, args.estado)
    print(f"Transaction {transaction.folio} is now {transaction.estado}")
    return 0


def run_seed(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Load the demo dataset when the workbook is still empty."""
    if core_logic.seed_development_data(context):
        print("Loaded demo data.")
    else:
        print("Workbook already holds data; nothing seeded.")
    return 0


def run_products_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the product listing workflow."""
    _print_lines((format_product(p) for p in core_logic.list_products(context)), "No products.")
    return 0


def run_low_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the low-stock listing workflow."""
    products = core_logic.list_low_stock_products(context, threshold=args.threshold, limit=args.limit)
    _print_lines((format_product(p) for p in products), "No products below the stock threshold.")
    return 0


def run_customers_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    _print_lines((format_customer(c) for c in core_logic.list_customers(context)), "No customers.")
    return 0


def run_transactions_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the transaction search workflow."""
    views = core_logic.search_transactions(context, tipo=args.tipo, estado=args.estado, query=args.query)
    _print_lines((format_transaction(view) for view in views), "No transactions.")
    return 0


def run_show_transaction(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print a single transaction with its customer and product details."""
    if args.folio is not None:
        transaction = core_logic.get_transaction_by_folio(context, args.folio)
        if transaction is None:
            raise core_logic.NotFoundError(f"Unknown folio: {args.folio}")
        view = core_logic.enrich_transaction(context, transaction)
    else:
        view = core_logic.get_transaction_detail(context, args.transaction_id)

    print(format_transaction(view))
    if view.cliente is not None:
        print(f"  Cliente: {format_customer(view.cliente)}")
    if view.producto is not None:
        print(f"  Producto: {format_product(view.producto)}")
    if view.transaction.abono is not None:
        saldo = view.transaction.total - view.transaction.abono
        print(f"  Abono: ${view.transaction.abono:.2f} | Saldo: ${saldo:.2f}")
    return 0


def run_recent_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    views = core_logic.list_recent_sales(context, limit=args.limit)
    _print_lines((format_transaction(view) for view in views), "No transactions.")
    return 0


def run_returns_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    views = core_logic.list_upcoming_returns(context, days=args.days)
    _print_lines((format_transaction(view) for view in views), "No rentals due back.")
    return 0


def run_dashboard_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the dashboard workflow."""
    stats = core_logic.compute_dashboard_stats(context)
    print(f"{context.settings.store_name}")
    print(f"  Productos: {stats.total_productos}")
    print(f"  Ventas del mes: ${stats.ventas_mes:.2f}")
    print(f"  Rentas activas: {stats.rentas_activas}")
    print(f"  Bajo stock: {stats.cantidad_bajo_stock}")
    return 0


def run_period_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the period report workflow."""
    report = core_logic.build_period_report(context, args.start, args.end)
    print(f"Periodo {report.start.isoformat()} a {report.end.isoformat()}")
    for tipo, total in report.totals_by_tipo.items():
        print(f"  {tipo}: {report.counts_by_tipo.get(tipo, 0)} transacciones, ${total:.2f}")
    for estado, count in report.counts_by_estado.items():
        print(f"  {estado}: {count}")
    for item in report.top_products:
        print(f"  #{item.id_producto} {item.codigo or '?'} {item.nombre or '?'}: {item.cantidad}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.ValidationError):
        log.error("%s", error)
        return 2
    if isinstance(error, core_logic.NotFoundError):
        log.error("%s", error)
        return 4
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    core_logic.persist_context(context)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
