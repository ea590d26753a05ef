"""Command-line entry points for the PharmaStore toolkit.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the objects consumed by the business layer, and
printing results. Keeping the CLI thin ensures the same parser configuration
can be reused by tests, scripts, or any other front-end.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import audit, core_logic, data_manager, export, log
from .constants import AdjustmentType, PaymentMethod
from .money import calculate_sale_summary
from .validation import SaleLineItem, validate_sale_request


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def format_money(value: Decimal) -> str:
    """Render a money value with exactly two decimals."""
    return f"{value:.2f}"


def emit(line: str = "") -> None:
    print(line)


def parse_item(text: str) -> SaleLineItem:
    """Parse ``DRUG_ID:QTY[:PRICE]`` into a :class:`SaleLineItem`."""
    parts = text.split(":")
    if len(parts) not in (2, 3) or not parts[0].strip():
        raise argparse.ArgumentTypeError(f"Expected DRUG_ID:QTY[:PRICE], got '{text}'")
    try:
        qty = int(parts[1])
        unit_price = Decimal(parts[2]) if len(parts) == 3 and parts[2] else None
    except (ValueError, InvalidOperation) as exc:
        raise argparse.ArgumentTypeError(f"Invalid sale item '{text}': {exc}") from exc
    return SaleLineItem(drug_id=parts[0].strip(), qty=qty, unit_price=unit_price)


def parse_date(text: str) -> date:
    try:
        return date.fromisoformat(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Expected YYYY-MM-DD, got '{text}'") from exc


def parse_money(text: str) -> Decimal:
    try:
        return Decimal(text)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Invalid amount '{text}'") from exc


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pharmastore-cli",
        description="Command-line tools for the PharmaStore pharmacy point of sale.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "--actor",
        default=None,
        help="User performing the operation (defaults to DefaultActor).",
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
    """Declare mutating CLI commands such as sales and stock adjustments."""
    specs = {
        "add-drug": register_add_drug_command(subparsers),
        "sale": register_sale_command(subparsers),
        "delete-sale": register_delete_sale_command(subparsers),
        "adjust-stock": register_adjust_stock_command(subparsers),
        "delete-drug": register_delete_drug_command(subparsers),
        "clear-audit": register_clear_audit_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports and quotes."""
    specs = {
        "stock": register_stock_command(subparsers),
        "sales": register_sales_command(subparsers),
        "quote": register_quote_command(subparsers),
        "audit": register_audit_command(subparsers),
        "export": register_export_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_drug_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-drug``."""
    name = "add-drug"
    help_text = "Register a new drug in the inventory."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--drug-id", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--price", type=parse_money, required=True)
        parser.add_argument("--category", default="")
        parser.add_argument("--expiry", type=parse_date, default=None)
        parser.add_argument("--supplier", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_drug)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Process a sale of one or more line items."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_item,
            required=True,
            help="Line item as DRUG_ID:QTY[:PRICE]; repeat for more lines.",
        )
        parser.add_argument("--customer", default=None)
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            default=PaymentMethod.CASH.value,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_delete_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-sale``."""
    name = "delete-sale"
    help_text = "Delete a sale and return its quantity to stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_sale)


def register_adjust_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``adjust-stock``."""
    name = "adjust-stock"
    help_text = "Increase, decrease, or set the stock of a drug."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--drug-id", required=True)
        parser.add_argument(
            "--type",
            dest="adjustment_type",
            choices=[member.value for member in AdjustmentType],
            required=True,
        )
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--reason", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_adjust_stock)


def register_delete_drug_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-drug``."""
    name = "delete-drug"
    help_text = "Remove a drug from the inventory."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--drug-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_drug)


def register_clear_audit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``clear-audit``."""
    name = "clear-audit"
    help_text = "Wipe the audit log."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--yes", action="store_true", help="Confirm the wipe.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_clear_audit)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--low", action="store_true", help="Only show drugs at or below the low stock threshold.")
        parser.add_argument("--expiring-days", type=int, default=None, help="Only show drugs expiring within N days.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "Display recorded sales and their totals."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", dest="on_date", type=parse_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report)


def register_quote_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``quote``."""
    name = "quote"
    help_text = "Price a proposed sale without committing it."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item", dest="items", action="append", type=parse_item, required=True)
        parser.add_argument("--tax-rate", type=parse_money, default=None)
        parser.add_argument("--discount-rate", type=parse_money, default=None)
        parser.add_argument("--cash", type=parse_money, default=Decimal("0"))
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_quote)


def register_audit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``audit``."""
    name = "audit"
    help_text = "Display the audit log."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--action", dest="audit_action", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_audit_report)


def register_export_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export``."""
    name = "export"
    help_text = "Export all documents to an Excel workbook."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--output", type=Path, required=True)
        parser.add_argument("--force", action="store_true", help="Overwrite an existing file.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export)


def load_runtime_context(config_path: Optional[Path] = None, actor: Optional[str] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target, actor=actor)


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


def translate_add_drug(args: argparse.Namespace) -> data_manager.Drug:
    """Translate CLI args into a drug record."""
    return data_manager.Drug(
        id=args.drug_id,
        name=args.name,
        category=args.category,
        quantity=args.quantity,
        price=args.price,
        expiry=args.expiry,
        supplier=args.supplier,
    )


def translate_sale(args: argparse.Namespace) -> core_logic.SaleOptions:
    """Translate CLI args into sale options."""
    return core_logic.SaleOptions(
        customer_name=args.customer,
        payment_method=PaymentMethod(args.payment_method),
    )


def translate_adjust_stock(args: argparse.Namespace) -> core_logic.StockAdjustmentCommand:
    """Translate CLI args into a stock adjustment command."""
    return core_logic.StockAdjustmentCommand(
        drug_id=args.drug_id,
        adjustment_type=AdjustmentType(args.adjustment_type),
        quantity=args.quantity,
        reason=args.reason,
    )


def report_persistence(result: Any) -> int:
    """Surface a storage warning carried by a mutation result."""
    if getattr(result, "persisted", True):
        return 0
    log.warning("%s", result.warning)
    print(f"WARNING: {result.warning}", file=sys.stderr)
    return 5


def run_add_drug(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-drug workflow in the BLL."""
    result = core_logic.add_drug(context, translate_add_drug(args))
    emit(f"Added {result.drug.id}: {result.drug.name} ({result.drug.quantity} units)")
    return report_persistence(result)


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    result = core_logic.process_sale(context, args.items, translate_sale(args))
    for record in result.records:
        emit(f"{record.id}  {record.quantity} x {record.drug_name} @ {format_money(record.unit_price)} = {format_money(record.line_total)}")
    emit(f"Total: {format_money(result.total)}")
    return report_persistence(result)


def run_delete_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale reversal workflow via the BLL."""
    result = core_logic.delete_sale(context, args.sale_id)
    if result.stock_restored:
        emit(f"Deleted {result.record.id}; restored {result.record.quantity} of {result.record.drug_name}")
    else:
        emit(f"Deleted {result.record.id}; {result.record.drug_name} is no longer in inventory")
    return report_persistence(result)


def run_adjust_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock adjustment workflow via the BLL."""
    result = core_logic.adjust_stock(context, translate_adjust_stock(args))
    adjustment = result.adjustment
    emit(f"{adjustment.drug_name}: {adjustment.old_quantity} -> {adjustment.new_quantity} ({adjustment.delta})")
    return report_persistence(result)


def run_delete_drug(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the drug removal workflow via the BLL."""
    result = core_logic.delete_drug(context, args.drug_id)
    emit(f"Deleted {result.drug.id}: {result.drug.name}")
    return report_persistence(result)


def run_clear_audit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the audit wipe after explicit confirmation."""
    if not args.yes:
        emit("Refusing to clear the audit log without --yes")
        return 1
    audit.clear(context)
    emit("Audit log cleared")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    if args.expiring_days is not None:
        drugs = core_logic.find_expiring(context, within_days=args.expiring_days)
    elif args.low:
        drugs = core_logic.find_low_stock(context)
    else:
        drugs = core_logic.list_drugs(context)
    for drug in drugs:
        expiry = drug.expiry.isoformat() if drug.expiry else "-"
        emit(f"{drug.id}\t{drug.name}\t{drug.quantity}\t{format_money(drug.price)}\t{expiry}")
    emit(f"Inventory value: {format_money(core_logic.calculate_inventory_value(context))}")
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sales reporting workflow."""
    for record in core_logic.list_sales(context, on_date=args.on_date):
        emit(
            f"{record.id}\t{record.date} {record.time}\t{record.drug_name}\t"
            f"{record.quantity}\t{format_money(record.line_total)}\t{record.sold_by}"
        )
    totals = core_logic.calculate_sales_totals(context, on_date=args.on_date)
    emit(f"Lines: {totals['lines']}  Units: {totals['units']}  Revenue: {format_money(totals['revenue'])}")
    return 0


def price_items(context: core_logic.RuntimeContext, items: Iterable[SaleLineItem]) -> List[SaleLineItem]:
    """Fill in catalogue prices for items quoted without an explicit price."""
    priced: List[SaleLineItem] = []
    for item in items:
        drug = core_logic.find_drug(context, item.drug_id)
        unit_price = item.unit_price
        if unit_price is None and drug is not None:
            unit_price = drug.price
        priced.append(
            SaleLineItem(
                drug_id=item.drug_id,
                qty=item.qty,
                drug_name=drug.name if drug is not None else item.drug_name,
                unit_price=unit_price,
            )
        )
    return priced


def run_quote(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Price a proposed sale and report any validation issues."""
    items = price_items(context, args.items)
    tax_rate = args.tax_rate if args.tax_rate is not None else context.settings.tax_rate
    discount_rate = args.discount_rate if args.discount_rate is not None else context.settings.discount_rate
    summary = calculate_sale_summary(items, tax_rate, discount_rate, args.cash)
    emit(f"Subtotal: {format_money(summary.subtotal)}")
    emit(f"Tax: {format_money(summary.tax_amount)}")
    emit(f"Discount: {format_money(summary.discount_amount)}")
    emit(f"Grand total: {format_money(summary.grand_total)}")
    emit(f"Change due: {format_money(summary.change_due)}")
    emit(f"Units: {summary.total_units}")
    validation = validate_sale_request(context.drugs, items)
    for issue in validation.issues:
        emit(f"! {issue}")
    return 0 if validation.ok else 2


def run_audit_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the audit log reporting workflow."""
    for event in audit.list_events(context, action=args.audit_action):
        emit(f"{event.timestamp}\t{event.user}\t{event.action}\t{event.details}")
    return 0


def run_export(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the spreadsheet export workflow."""
    destination = export.export_workbook(context, args.output, overwrite=args.force)
    emit(f"Exported to {destination}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.ValidationRejected):
        for issue in error.issues:
            log.error("%s", issue)
        return 2
    if isinstance(error, core_logic.MissingReferenceError):
        log.error("%s", error)
        return 4
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, data_manager.StorageError):
        log.error("%s", error)
        return 5
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None), getattr(args, "actor", None))
        core_logic.ensure_schema_version(context)
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
