"""``chantier-cli``: quotes and invoices from the command line.

Each sub-command is declared once as a :class:`CommandSpec`; ``main`` builds
the parser from that table, loads the runtime context, runs the command and
saves the workbook when a mutating command succeeds. Parsing results are
turned into the command objects of :mod:`chantier_erp.core_logic` by the
``translate_*`` helpers so scripts can reuse them.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .assembler import AssemblyOverrides
from .constants import DocumentKind, InvoiceStatus, LineCategory
from .data_manager import DocumentRow, LineRow
from .errors import ChantierError, NoMonetaryData, SourceNotFound


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutating: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="chantier-cli",
        description="Command-line tools for the chantier ERP workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the current directory by default).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    specs = [*register_write_commands(), *register_read_commands()]
    for spec in specs:
        spec.register(subparsers)
    return build_command_table(specs)


def _decimal(raw: str) -> Decimal:
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"not a decimal amount: {raw!r}") from exc


def _simple_command(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
    arguments: Callable[[argparse.ArgumentParser], None],
    *,
    mutating: bool = True,
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute, mutating=mutating)


def _vat_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--vat-rate", type=_decimal, default=None, help="VAT rate as a fraction, e.g. 0.20.")
    exemption = parser.add_mutually_exclusive_group()
    exemption.add_argument("--vat-exempt", dest="vat_exempt", action="store_true", default=None)
    exemption.add_argument("--vat-liable", dest="vat_exempt", action="store_false")


def _create_quote_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--client", required=True, help="Free-text client reference.")
    parser.add_argument("--description", default=None)
    parser.add_argument("--estimated-amount", type=_decimal, default=None, help="Single HT amount when no lines are given.")
    parser.add_argument("--ttc", type=_decimal, default=None, help="Tax-inclusive total the quote must show.")
    _vat_arguments(parser)


def _add_line_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--quote-id", required=True)
    parser.add_argument("--label", required=True)
    parser.add_argument("--unit-price", type=_decimal, required=True, help="Tax-exclusive unit price.")
    parser.add_argument("--quantity", type=_decimal, default=Decimal("1"))
    parser.add_argument("--vat-rate", type=_decimal, default=None)
    parser.add_argument("--category", choices=[member.value for member in LineCategory], default=None)
    parser.add_argument("--unit", default=None)


def _convert_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--quote-id", required=True)
    parser.add_argument("--ttc", type=_decimal, default=None, help="Tax-inclusive total overriding the quote.")
    parser.add_argument("--due-date", default=None, help="ISO date; defaults to the configured payment terms.")
    parser.add_argument("--allow-empty", action="store_true", help="Accept a quote without any usable amount.")
    _vat_arguments(parser)


def _create_invoice_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--client", required=True)
    parser.add_argument("--amount-ht", type=_decimal, default=None)
    parser.add_argument("--ttc", type=_decimal, default=None)
    parser.add_argument("--description", default=None)
    parser.add_argument("--due-date", default=None)
    _vat_arguments(parser)


def _status_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--invoice-id", required=True)
    parser.add_argument("--status", required=True, choices=[member.value for member in InvoiceStatus])


def _quote_id_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--quote-id", required=True, nargs="+")


def _invoice_id_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--invoice-id", required=True)


def _no_arguments(parser: argparse.ArgumentParser) -> None:
    return None


def _show_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--kind", choices=[member.value for member in DocumentKind], required=True)
    parser.add_argument("--id", dest="document_id", required=True)


def register_write_commands() -> List[CommandSpec]:
    """Declare mutating CLI commands."""
    return [
        _simple_command("create-quote", "Create a draft quote.", run_create_quote, _create_quote_arguments),
        _simple_command("add-line", "Append a line to a quote.", run_add_line, _add_line_arguments),
        _simple_command("convert-quote", "Create an invoice from a quote.", run_convert_quote, _convert_arguments),
        _simple_command("create-invoice", "Create an invoice without a quote.", run_create_invoice, _create_invoice_arguments),
        _simple_command("invoice-status", "Change the status of an invoice.", run_invoice_status, _status_arguments),
        _simple_command("delete-quote", "Delete one or more quotes.", run_delete_quote, _quote_id_argument),
        _simple_command("delete-invoice", "Delete an invoice.", run_delete_invoice, _invoice_id_argument),
    ]


def register_read_commands() -> List[CommandSpec]:
    """Declare read-only CLI commands."""
    return [
        _simple_command("quotes", "List quotes.", run_list_quotes, _no_arguments, mutating=False),
        _simple_command("invoices", "List invoices.", run_list_invoices, _no_arguments, mutating=False),
        _simple_command("show", "Show one document with its lines.", run_show, _show_arguments, mutating=False),
    ]


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
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


def translate_create_quote(args: argparse.Namespace) -> core_logic.QuoteCommand:
    """Translate CLI args into a quote command object."""
    return core_logic.QuoteCommand(
        client_ref=args.client,
        description=args.description,
        vat_rate=args.vat_rate,
        vat_exempt=args.vat_exempt,
        estimated_amount=args.estimated_amount,
        ttc_override=args.ttc,
    )


def translate_line(args: argparse.Namespace) -> core_logic.LineCommand:
    """Translate CLI args into a line command object."""
    return core_logic.LineCommand(
        label=args.label,
        unit_price_ht=args.unit_price,
        quantity=args.quantity,
        vat_rate=args.vat_rate,
        category=args.category,
        unit=args.unit,
    )


def translate_overrides(args: argparse.Namespace) -> AssemblyOverrides:
    """Translate CLI args into assembly overrides."""
    return AssemblyOverrides(
        vat_rate=args.vat_rate,
        vat_exempt=args.vat_exempt,
        ttc_override=args.ttc,
        due_date=args.due_date,
    )


def translate_create_invoice(args: argparse.Namespace) -> core_logic.InvoiceCommand:
    """Translate CLI args into an invoice command object."""
    return core_logic.InvoiceCommand(
        client_ref=args.client,
        amount_ht=args.amount_ht,
        ttc_override=args.ttc,
        description=args.description,
        vat_rate=args.vat_rate,
        vat_exempt=args.vat_exempt,
        due_date=args.due_date,
    )


def format_document(document: DocumentRow) -> str:
    """Render a document as one listing line."""
    return (
        f"{document.number or '-':<18} {document.document_id}  {document.status:<10} "
        f"{document.client_ref:<20} HT {document.subtotal_ht:>10.2f}  TVA {document.total_vat:>9.2f}  "
        f"TTC {document.total_ttc:>10.2f}"
    )


def format_line(line: LineRow) -> str:
    """Render a line item for ``show``."""
    return (
        f"  {line.position:>3}. {line.label:<30} {line.quantity} x {line.unit_price_ht} "
        f"@ {line.vat_rate}  = {line.total_ht:.2f} HT / {line.total_ttc:.2f} TTC"
    )


def report_warnings(result: core_logic.DocumentResult) -> None:
    """Log the warnings attached to a workflow result."""
    for code in result.warnings:
        log.warning("Document %s: %s", result.document.document_id, code.value)


def run_create_quote(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the create-quote workflow in the BLL."""
    result = core_logic.create_quote(context, translate_create_quote(args))
    report_warnings(result)
    print(format_document(result.document))
    return 0


def run_add_line(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-line workflow in the BLL."""
    result = core_logic.add_quote_line(context, args.quote_id, translate_line(args))
    report_warnings(result)
    print(format_document(result.document))
    return 0


def run_convert_quote(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the quote-to-invoice conversion in the BLL."""
    result = core_logic.convert_quote_to_invoice(
        context,
        args.quote_id,
        translate_overrides(args),
        allow_empty=args.allow_empty,
    )
    report_warnings(result)
    print(format_document(result.document))
    return 0


def run_create_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the create-invoice workflow in the BLL."""
    result = core_logic.create_invoice(context, translate_create_invoice(args))
    report_warnings(result)
    print(format_document(result.document))
    return 0


def run_invoice_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the invoice status change in the BLL."""
    document = core_logic.set_invoice_status(context, args.invoice_id, args.status)
    print(format_document(document))
    return 0


def run_delete_quote(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the quote deletion workflow in the BLL."""
    for document_id in core_logic.delete_quotes_bulk(context, args.quote_id):
        print(f"Deleted quote {document_id}")
    return 0


def run_delete_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the invoice deletion workflow in the BLL."""
    print(f"Deleted invoice {core_logic.delete_invoice(context, args.invoice_id)}")
    return 0


def run_list_quotes(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List visible quotes."""
    for document in core_logic.list_documents(context, DocumentKind.QUOTE):
        print(format_document(document))
    return 0


def run_list_invoices(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List visible invoices."""
    for document in core_logic.list_documents(context, DocumentKind.INVOICE):
        print(format_document(document))
    return 0


def run_show(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Show one document with its lines."""
    kind = DocumentKind(args.kind)
    document = core_logic.get_document(context, kind, args.document_id)
    print(format_document(document))
    for line in core_logic.get_lines(context, kind, document.document_id):
        print(format_line(line))
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, (core_logic.BusinessRuleViolation, NoMonetaryData, SourceNotFound)):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, ChantierError):
        log.error("Store error: %s", error)
        return 1
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutating:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
