"""Command-line entry points for the cold-storage ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing results. Keeping the CLI thin ensures the same parser
configuration can be reused by tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .charges import Extras, round_for_display
from .constants import BagCategory, ChargeBasis, LotSaleStatus, PaymentMode, PaymentStatus, Quality
from .errors import BusinessRuleViolation, SettlementFailure


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    writes: bool = False


def _decimal(raw: str) -> Decimal:
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"invalid decimal value: {raw!r}") from exc


def _date(raw: str) -> date:
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date (expected YYYY-MM-DD): {raw!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="coldstore-cli",
        description="Command-line tools for the cold-storage ledger workbook.",
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
        "add-lot": register_add_lot_command(subparsers),
        "sale": register_sale_command(subparsers),
        "edit-sale": register_edit_sale_command(subparsers),
        "mark-paid": register_mark_paid_command(subparsers),
        "mark-due": register_mark_due_command(subparsers),
        "reverse-sale": register_reverse_sale_command(subparsers),
        "edit-lot": register_edit_lot_command(subparsers),
        "reverse-lot-edit": register_reverse_lot_edit_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and reports."""
    specs = {
        "lots": register_lots_command(subparsers),
        "sales": register_sales_command(subparsers),
        "history": register_history_command(subparsers),
        "dues": register_dues_command(subparsers),
        "verify-charges": register_verify_charges_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_lot_detail_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--contact", dest="contact_number", default=None)
    parser.add_argument("--village", default=None)
    parser.add_argument("--district", default=None)
    parser.add_argument("--state", default=None)
    parser.add_argument("--net-weight", type=_decimal, default=None, help="Net weight of the whole lot in kg.")
    parser.add_argument("--chamber", default=None)
    parser.add_argument("--floor", type=int, default=None)
    parser.add_argument("--position", default=None)


def register_add_lot_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-lot``."""
    name = "add-lot"
    help_text = "Register a deposited lot."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--farmer-name", required=True)
        parser.add_argument("--bag-type", choices=[member.value for member in BagCategory], required=True)
        parser.add_argument("--quality", choices=[member.value for member in Quality], required=True)
        parser.add_argument("--bags", type=int, required=True, help="Number of bags deposited.")
        parser.add_argument("--lot-no", default=None, help="Lot number; allocated automatically when omitted.")
        parser.add_argument("--storage-year", type=int, default=None)
        parser.add_argument("--up-for-sale", action="store_true")
        _add_lot_detail_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_lot, writes=True)


def _add_charge_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--cold-rate", type=_decimal, default=None, help="Cold charge rate override.")
    parser.add_argument("--hammali-rate", type=_decimal, default=None, help="Hammali rate override.")
    parser.add_argument("--weighing", type=_decimal, default=None)
    parser.add_argument("--extra-handling", type=_decimal, default=None, help="Extra hammali per bag sold.")
    parser.add_argument("--grading", type=_decimal, default=None)
    parser.add_argument("--price-per-kg", type=_decimal, default=None)


def _add_payment_arguments(parser: argparse.ArgumentParser, *, default_status: Optional[str]) -> None:
    parser.add_argument(
        "--status",
        choices=[member.value for member in PaymentStatus],
        default=default_status,
    )
    parser.add_argument("--paid-amount", type=_decimal, default=None)
    parser.add_argument("--mode", choices=[member.value for member in PaymentMode], default=None)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Settle a sale against a lot."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--lot-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--buyer", dest="buyer_name", required=True)
        parser.add_argument(
            "--basis",
            choices=[member.value for member in ChargeBasis],
            default=ChargeBasis.ACTUAL.value,
            help="Bill the base charge over the bags sold or over every bag left.",
        )
        parser.add_argument("--final", action="store_true", help="Require the sale to exhaust the lot.")
        _add_charge_arguments(parser)
        _add_payment_arguments(parser, default_status=PaymentStatus.DUE.value)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale, writes=True)


def register_edit_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-sale``."""
    name = "edit-sale"
    help_text = "Edit a settled sale and reconcile its payment."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.add_argument("--buyer", dest="buyer_name", default=None)
        parser.add_argument("--net-weight", type=_decimal, default=None)
        _add_charge_arguments(parser)
        _add_payment_arguments(parser, default_status=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_sale, writes=True)


def register_mark_paid_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``mark-paid``."""
    name = "mark-paid"
    help_text = "Mark a sale as fully paid."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.add_argument("--mode", choices=[member.value for member in PaymentMode], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_mark_paid, writes=True)


def register_mark_due_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``mark-due``."""
    name = "mark-due"
    help_text = "Mark a sale as fully outstanding."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_mark_due, writes=True)


def register_reverse_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reverse-sale``."""
    name = "reverse-sale"
    help_text = "Reverse a sale and restore its bags to the lot."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reverse_sale, writes=True)


def register_edit_lot_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-lot``."""
    name = "edit-lot"
    help_text = "Edit the display and location fields of a lot."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--lot-id", required=True)
        parser.add_argument("--farmer-name", default=None)
        parser.add_argument("--quality", choices=[member.value for member in Quality], default=None)
        sale_flag = parser.add_mutually_exclusive_group()
        sale_flag.add_argument("--up-for-sale", dest="up_for_sale", action="store_true", default=None)
        sale_flag.add_argument("--not-for-sale", dest="up_for_sale", action="store_false")
        _add_lot_detail_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_lot, writes=True)


def register_reverse_lot_edit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reverse-lot-edit``."""
    name = "reverse-lot-edit"
    help_text = "Undo the most recent edit of a lot."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--lot-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reverse_lot_edit, writes=True)


def register_lots_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``lots``."""
    name = "lots"
    help_text = "List lots and their remaining bags."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--bag-type", choices=[member.value for member in BagCategory], default=None)
        parser.add_argument("--year", dest="storage_year", type=int, default=None)
        parser.add_argument("--status", choices=[member.value for member in LotSaleStatus], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_lots_report)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "List sales with optional filters."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--lot-id", default=None)
        parser.add_argument("--from", dest="date_from", type=_date, default=None, help="First day (YYYY-MM-DD).")
        parser.add_argument("--to", dest="date_to", type=_date, default=None, help="Last day (YYYY-MM-DD).")
        parser.add_argument("--status", choices=[member.value for member in PaymentStatus], default=None)
        parser.add_argument("--buyer", dest="buyer_name", default=None)
        parser.add_argument("--include-reversed", action="store_true")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report)


def register_history_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``history``."""
    name = "history"
    help_text = "Show the audit trail of a lot or a sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        target = parser.add_mutually_exclusive_group(required=True)
        target.add_argument("--lot-id", default=None)
        target.add_argument("--sale-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_history_report)


def register_dues_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dues``."""
    name = "dues"
    help_text = "Display outstanding balances per buyer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dues_report)


def register_verify_charges_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``verify-charges``."""
    name = "verify-charges"
    help_text = "Recalculate every sale and report inconsistent totals."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_verify_charges)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve and validate the runtime context for CLI operations."""
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


def translate_add_lot(args: argparse.Namespace) -> core_logic.LotCommand:
    """Translate CLI args into a lot registration command."""
    return core_logic.LotCommand(
        farmer_name=args.farmer_name,
        bag_type=BagCategory(args.bag_type),
        quality=Quality(args.quality),
        original_size=args.bags,
        net_weight=args.net_weight,
        lot_no=args.lot_no,
        storage_year=args.storage_year,
        contact_number=args.contact_number,
        village=args.village,
        district=args.district,
        state=args.state,
        chamber=args.chamber,
        floor=args.floor,
        position=args.position,
        up_for_sale=args.up_for_sale,
    )


def translate_sale(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    overrides = None
    if args.cold_rate is not None or args.hammali_rate is not None:
        overrides = core_logic.PricingOverrides(
            cold_charge_rate=args.cold_rate,
            hammali_rate=args.hammali_rate,
        )
    zero = Decimal("0")
    return core_logic.SaleCommand(
        lot_id=args.lot_id,
        quantity=args.quantity,
        buyer_name=args.buyer_name,
        payment=core_logic.PaymentIntent(
            status=PaymentStatus(args.status),
            paid_amount=args.paid_amount,
            mode=PaymentMode(args.mode) if args.mode else None,
        ),
        charge_basis=ChargeBasis(args.basis),
        extras=Extras(
            weighing=args.weighing if args.weighing is not None else zero,
            extra_handling_per_bag=args.extra_handling if args.extra_handling is not None else zero,
            grading=args.grading if args.grading is not None else zero,
        ),
        overrides=overrides,
        price_per_kg=args.price_per_kg,
        final=args.final,
    )


def translate_edit_sale(args: argparse.Namespace) -> core_logic.SaleChanges:
    """Translate CLI args into a sale changeset."""
    return core_logic.SaleChanges(
        buyer_name=args.buyer_name,
        price_per_kg=args.price_per_kg,
        cold_charge_rate=args.cold_rate,
        hammali_rate=args.hammali_rate,
        net_weight=args.net_weight,
        weighing=args.weighing,
        extra_handling_per_bag=args.extra_handling,
        grading=args.grading,
        payment_status=PaymentStatus(args.status) if args.status else None,
        paid_amount=args.paid_amount,
        payment_mode=PaymentMode(args.mode) if args.mode else None,
    )


def translate_edit_lot(args: argparse.Namespace) -> core_logic.LotChanges:
    """Translate CLI args into a lot changeset."""
    return core_logic.LotChanges(
        farmer_name=args.farmer_name,
        contact_number=args.contact_number,
        village=args.village,
        district=args.district,
        state=args.state,
        quality=Quality(args.quality) if args.quality else None,
        net_weight=args.net_weight,
        chamber=args.chamber,
        floor=args.floor,
        position=args.position,
        up_for_sale=args.up_for_sale,
    )


def translate_sales_filters(args: argparse.Namespace) -> Dict[str, object]:
    """Translate CLI args into keyword filters for :func:`core_logic.list_sales`.

    ``--to`` is inclusive, so the upper bound becomes the start of the next day.
    """
    start = datetime.combine(args.date_from, time.min, tzinfo=UTC) if args.date_from else None
    end = None
    if args.date_to:
        end = datetime.combine(args.date_to + timedelta(days=1), time.min, tzinfo=UTC)
    return {
        "lot_id": args.lot_id,
        "start": start,
        "end": end,
        "payment_status": PaymentStatus(args.status) if args.status else None,
        "buyer_name": args.buyer_name,
        "include_reversed": args.include_reversed,
    }


def _money(amount: Decimal) -> str:
    return f"{round_for_display(amount):.1f}"


def _print_sale(sale) -> None:
    flag = " [reversed]" if sale.reversed else ""
    print(
        f"{sale.sale_id}  lot={sale.lot_id}  {sale.sale_type:<7}  bags={sale.quantity:<4}  "
        f"buyer={sale.buyer_name}  total={_money(sale.total_charge)}  paid={_money(sale.paid_amount)}  "
        f"due={_money(sale.due_amount)}  {sale.payment_status}{flag}"
    )


def run_add_lot(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the lot registration workflow in the BLL."""
    lot = core_logic.create_lot(context, translate_add_lot(args))
    print(f"Registered lot {lot.lot_id} (no. {lot.lot_no}, {lot.original_size} bags)")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    sale = core_logic.create_sale(context, translate_sale(args))
    _print_sale(sale)
    return 0


def run_edit_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale edit workflow via the BLL."""
    sale = core_logic.edit_sale(context, args.sale_id, translate_edit_sale(args))
    _print_sale(sale)
    return 0


def run_mark_paid(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the mark-paid workflow via the BLL."""
    mode = PaymentMode(args.mode) if args.mode else None
    _print_sale(core_logic.mark_sale_paid(context, args.sale_id, mode=mode))
    return 0


def run_mark_due(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the mark-due workflow via the BLL."""
    _print_sale(core_logic.mark_sale_due(context, args.sale_id))
    return 0


def run_reverse_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale reversal workflow via the BLL."""
    _print_sale(core_logic.reverse_sale(context, args.sale_id))
    return 0


def run_edit_lot(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the lot edit workflow via the BLL."""
    lot = core_logic.edit_lot(context, args.lot_id, translate_edit_lot(args))
    print(f"Lot {lot.lot_id} updated")
    return 0


def run_reverse_lot_edit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the lot edit reversal workflow via the BLL."""
    lot = core_logic.reverse_lot_edit(context, args.lot_id)
    print(f"Lot {lot.lot_id} restored")
    return 0


def run_lots_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the lot listing workflow."""
    lots = core_logic.list_lots(
        context,
        bag_type=BagCategory(args.bag_type) if args.bag_type else None,
        storage_year=args.storage_year,
        status=LotSaleStatus(args.status) if args.status else None,
    )
    for lot in lots:
        print(
            f"{lot.lot_id}  no={lot.lot_no:<5}  {lot.bag_type:<6}  {lot.farmer_name}  "
            f"{lot.remaining_size}/{lot.original_size}  {core_logic.lot_sale_status(lot).value}"
        )
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale listing workflow."""
    for sale in core_logic.list_sales(context, **translate_sales_filters(args)):
        _print_sale(sale)
    return 0


def run_history_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the audit trail workflow."""
    if args.lot_id:
        for entry in core_logic.get_lot_history(context, args.lot_id):
            print(f"{entry.changed_at}  {entry.change_type:<14}  {entry.previous_data} -> {entry.new_data}")
    else:
        for edit in core_logic.get_sale_history(context, args.sale_id):
            print(f"{edit.changed_at}  {edit.field_changed}: {edit.old_value} -> {edit.new_value}")
    return 0


def run_dues_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the outstanding dues reporting workflow."""
    for due in core_logic.calculate_buyer_dues(context):
        print(f"{due.buyer_name}: {_money(due.due_amount)} over {due.sale_count} sale(s)")
    return 0


def run_verify_charges(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the charge verification workflow."""
    findings = core_logic.verify_sale_charges(context)
    for finding in findings:
        computed = _money(finding.computed_total) if finding.computed_total is not None else "n/a"
        print(
            f"{finding.sale_id}: {finding.reason} "
            f"(stored={_money(finding.stored_total)}, computed={computed}, paid+due={_money(finding.paid_plus_due)})"
        )
    if not findings:
        print("All sale charges are consistent.")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, SettlementFailure):
        log.error("Operation aborted: %s", error)
        return 4
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
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].writes:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
