"""Command-line entry points for the booking ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing reports. Keeping the CLI thin ensures the same parser
configuration can be reused by tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import accounts, core_logic, data_manager, log
from .constants import CIRCLE_NAMES, CircleType, EntityType, RecordKind


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    writes: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="booking-cli",
        description="Command-line tools for the booking ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini upward from here).",
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
    """Declare mutating CLI commands such as bookings and settlements."""
    specs = {
        "add-office": register_add_office_command(subparsers),
        "add-source": register_add_source_command(subparsers),
        "set-prices": register_set_prices_command(subparsers),
        "rename-office": register_rename_office_command(subparsers),
        "remove-office": register_remove_office_command(subparsers),
        "add-record": register_add_record_command(subparsers),
        "change-circle": register_change_circle_command(subparsers),
        "book": register_book_command(subparsers),
        "unbook": register_unbook_command(subparsers),
        "relink": register_relink_command(subparsers),
        "upload": register_upload_command(subparsers),
        "archive": register_archive_command(subparsers),
        "unarchive": register_unarchive_command(subparsers),
        "trash": register_trash_command(subparsers),
        "restore": register_restore_command(subparsers),
        "settle": register_settle_command(subparsers),
        "backfill-offices": register_backfill_offices_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as balances and statements."""
    specs = {
        "balance": register_balance_command(subparsers),
        "accounts": register_accounts_command(subparsers),
        "statement": register_statement_command(subparsers),
        "trash-list": register_trash_list_command(subparsers),
        "bookings": register_bookings_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


# ---------------------------------------------------------------------------
# Shared argument groups
# ---------------------------------------------------------------------------


def _add_price_arguments(parser: argparse.ArgumentParser) -> None:
    for attribute in data_manager.PRICE_COLUMN_MAP:
        parser.add_argument(f"--price-{attribute.replace('_', '-')}", dest=f"price_{attribute}", default="0")


def _add_entity_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--entity", choices=[member.value for member in EntityType], required=True)
    parser.add_argument("--id", dest="entity_id", required=True)


def _add_record_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--kind", choices=[member.value for member in RecordKind], required=True)
    parser.add_argument("--record-id", required=True)


def register_add_office_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-office``."""
    name = "add-office"
    help_text = "Register an office and its price list."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--username", required=True)
        parser.add_argument("--password", default=None)
        parser.add_argument("--phone", default=None)
        _add_price_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_office)


def register_add_source_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-source``."""
    name = "add-source"
    help_text = "Register an external booking source and its price list."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--phone", default=None)
        _add_price_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_source)


def register_set_prices_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-prices``."""
    name = "set-prices"
    help_text = "Replace the current price list of an office or source."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_entity_arguments(parser)
        _add_price_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_prices)


def register_rename_office_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``rename-office``."""
    name = "rename-office"
    help_text = "Rename an office and its records' affiliation."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--office-id", required=True)
        parser.add_argument("--name", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_rename_office)


def register_remove_office_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``remove-office``."""
    name = "remove-office"
    help_text = "Delete an office and re-label its records."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--office-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_remove_office)


def register_add_record_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-record``."""
    name = "add-record"
    help_text = "Create a reviewer or office record."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--kind", choices=[member.value for member in RecordKind], required=True)
        parser.add_argument("--circle", choices=[member.value for member in CircleType], required=True)
        parser.add_argument("--full-name", required=True)
        parser.add_argument("--surname", default="")
        parser.add_argument("--mother-name", default="")
        parser.add_argument("--dob", default="")
        parser.add_argument("--phone", default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.add_argument("--affiliation", default=None, help="Office name (office records only).")
        parser.add_argument("--table-number", default=None)
        parser.add_argument(
            "--family",
            action="append",
            default=[],
            metavar="RELATIONSHIP:FULL_NAME",
            help="Add a family member; repeat to keep their order.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_record)


def register_change_circle_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``change-circle``."""
    name = "change-circle"
    help_text = "Move a record to another circle."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_record_arguments(parser)
        parser.add_argument("--circle", choices=[member.value for member in CircleType], required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_change_circle)


def register_book_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``book``."""
    name = "book"
    help_text = "Book a record and freeze its price."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_record_arguments(parser)
        parser.add_argument("--source-id", default=None)
        parser.add_argument("--image", dest="booking_image", default=None)
        parser.add_argument("--date", dest="booking_date", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_book)


def register_unbook_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``unbook``."""
    name = "unbook"
    help_text = "Cancel a booking and clear its frozen price."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_record_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_unbook)


def register_relink_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``relink``."""
    name = "relink"
    help_text = "Link a booking to another source, or detach it."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_record_arguments(parser)
        group = parser.add_mutually_exclusive_group(required=True)
        group.add_argument("--source-id", default=None)
        group.add_argument("--clear", action="store_true", help="Detach the booking from any source.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_relink)


def register_upload_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``upload``."""
    name = "upload"
    help_text = "Flag records as uploaded, or clear the flag."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--kind", choices=[member.value for member in RecordKind], required=True)
        parser.add_argument("--record-id", dest="record_ids", action="append", required=True)
        parser.add_argument("--source-id", default=None)
        parser.add_argument("--clear", action="store_true", help="Mark the records as not uploaded.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_upload)


def register_archive_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``archive``."""
    name = "archive"
    help_text = "Archive a record."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_record_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_archive)


def register_unarchive_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``unarchive``."""
    name = "unarchive"
    help_text = "Return an archived record to the active set."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_record_arguments(parser)
        parser.add_argument(
            "--force",
            action="store_true",
            help="Unarchive even if a settlement archived the record.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_unarchive)


def register_trash_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``trash``."""
    name = "trash"
    help_text = "Move records to the recycle bin."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--kind", choices=[member.value for member in RecordKind], required=True)
        parser.add_argument("--record-id", dest="record_ids", action="append", required=True)
        parser.add_argument("--deleted-by", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_trash)


def register_restore_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``restore``."""
    name = "restore"
    help_text = "Restore a record from the recycle bin."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--bin-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_restore)


def register_settle_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``settle``."""
    name = "settle"
    help_text = "Record a payment from an office or source."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_entity_arguments(parser)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--recorded-by", default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_settle)


def register_backfill_offices_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``backfill-offices``."""
    name = "backfill-offices"
    help_text = "Link legacy office records to their office by id."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_backfill_offices)


def register_balance_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``balance``."""
    name = "balance"
    help_text = "Display what an office or source still owes."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_entity_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_balance_report, writes=False)


def register_accounts_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``accounts``."""
    name = "accounts"
    help_text = "Display every office or source account, largest balance first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--entity", choices=[member.value for member in EntityType], required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_accounts_report, writes=False)


def register_statement_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``statement``."""
    name = "statement"
    help_text = "Display an account statement broken down by circle."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_entity_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_statement_report, writes=False)


def register_trash_list_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``trash-list``."""
    name = "trash-list"
    help_text = "Display recoverable recycle bin entries."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--query", default=None, help="Filter by part of the full name.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_trash_report, writes=False)


def register_bookings_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``bookings``."""
    name = "bookings"
    help_text = "Display active or archived bookings."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--archived", action="store_true", help="List archived records instead.")
        parser.add_argument("--kind", choices=[member.value for member in RecordKind], default=None)
        parser.add_argument("--circle", choices=[member.value for member in CircleType], default=None)
        parser.add_argument("--office", dest="office_name", default=None)
        parser.add_argument("--source-id", default=None)
        parser.add_argument("--manual", action="store_true", help="Only bookings without a source.")
        parser.add_argument("--date", dest="booking_date", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_bookings_report, writes=False)


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


# ---------------------------------------------------------------------------
# Translators
# ---------------------------------------------------------------------------


def parse_money(raw: str) -> Decimal:
    """Parse a monetary CLI value.

    Raises:
        ValueError: If ``raw`` is not a number.
    """
    try:
        return Decimal(str(raw).replace(",", ""))
    except InvalidOperation as exc:
        raise ValueError(f"Not a monetary value: {raw!r}") from exc


def translate_prices(args: argparse.Namespace) -> data_manager.PriceList:
    """Translate the ``--price-*`` flags into a price list."""
    return data_manager.PriceList(
        **{attribute: parse_money(getattr(args, f"price_{attribute}")) for attribute in data_manager.PRICE_COLUMN_MAP}
    )


def translate_family(entries: Sequence[str]) -> List[data_manager.FamilyMember]:
    """Translate ``RELATIONSHIP:FULL_NAME`` entries into family members."""
    members = []
    for entry in entries:
        relationship, separator, full_name = entry.partition(":")
        if not separator or not full_name.strip():
            raise ValueError(f"Family member must look like RELATIONSHIP:FULL_NAME, got {entry!r}")
        members.append(
            data_manager.FamilyMember(
                member_id=core_logic.generate_id(prefix="F"),
                relationship=relationship.strip(),
                full_name=full_name.strip(),
            )
        )
    return members


def translate_add_office(args: argparse.Namespace) -> core_logic.OfficeCommand:
    """Translate CLI args into an office registration command."""
    return core_logic.OfficeCommand(
        office_name=args.name,
        username=args.username,
        password=args.password,
        phone=args.phone,
        prices=translate_prices(args),
    )


def translate_add_source(args: argparse.Namespace) -> core_logic.SourceCommand:
    """Translate CLI args into a source registration command."""
    return core_logic.SourceCommand(
        source_name=args.name,
        phone_number=args.phone,
        prices=translate_prices(args),
    )


def translate_add_record(args: argparse.Namespace) -> core_logic.RecordCommand:
    """Translate CLI args into a record creation command."""
    return core_logic.RecordCommand(
        kind=RecordKind(args.kind),
        circle_type=CircleType(args.circle),
        full_name=args.full_name,
        surname=args.surname,
        mother_name=args.mother_name,
        dob=args.dob,
        phone=args.phone,
        notes=args.notes,
        affiliation=args.affiliation,
        table_number=args.table_number,
        family_members=tuple(translate_family(args.family)),
    )


def translate_book(args: argparse.Namespace) -> core_logic.BookingCommand:
    """Translate CLI args into a booking command."""
    return core_logic.BookingCommand(
        kind=RecordKind(args.kind),
        record_id=args.record_id,
        source_id=args.source_id,
        booking_image=args.booking_image,
        booking_date=args.booking_date,
    )


def translate_settle(args: argparse.Namespace) -> accounts.SettlementCommand:
    """Translate CLI args into a settlement command."""
    return accounts.SettlementCommand(
        entity_type=EntityType(args.entity),
        entity_id=args.entity_id,
        amount=parse_money(args.amount),
        notes=args.notes,
        recorded_by=args.recorded_by,
    )


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def run_add_office(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the office registration workflow in the BLL."""
    office = core_logic.register_office(context, translate_add_office(args))
    print(f"Registered office {office.office_name} ({office.office_id})")
    return 0


def run_add_source(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the source registration workflow in the BLL."""
    source = core_logic.register_source(context, translate_add_source(args))
    print(f"Registered source {source.source_name} ({source.source_id})")
    return 0


def run_set_prices(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the price list update workflow in the BLL."""
    prices = translate_prices(args)
    if EntityType(args.entity) is EntityType.OFFICE:
        core_logic.update_office_prices(context, args.entity_id, prices)
    else:
        core_logic.update_source_prices(context, args.entity_id, prices)
    return 0


def run_rename_office(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the office rename workflow in the BLL."""
    core_logic.rename_office(context, args.office_id, args.name)
    return 0


def run_remove_office(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the office removal workflow in the BLL."""
    moved = core_logic.remove_office(context, args.office_id)
    print(f"Removed office {args.office_id}; {moved} records re-labelled")
    return 0


def run_add_record(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the record creation workflow in the BLL."""
    record = core_logic.add_person_record(context, translate_add_record(args))
    print(f"Added {record.kind.value} record {record.record_id}")
    return 0


def run_change_circle(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the circle change workflow in the BLL."""
    core_logic.change_circle_type(context, RecordKind(args.kind), args.record_id, CircleType(args.circle))
    return 0


def run_book(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the booking workflow in the BLL."""
    record = core_logic.book_record(context, translate_book(args))
    print(f"Booked {record.record_id} at frozen price {record.frozen_price}")
    return 0


def run_unbook(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the unbooking workflow in the BLL."""
    core_logic.unbook_record(context, RecordKind(args.kind), args.record_id)
    return 0


def run_relink(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the source relink workflow in the BLL."""
    source_id = None if args.clear else args.source_id
    core_logic.relink_booking_source(context, RecordKind(args.kind), args.record_id, source_id)
    return 0


def run_upload(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the upload flag workflow in the BLL."""
    updated = core_logic.set_upload_status(
        context,
        RecordKind(args.kind),
        args.record_ids,
        uploaded=not args.clear,
        source_id=args.source_id,
    )
    print(f"Updated {updated} records")
    return 0


def run_archive(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the archive workflow in the BLL."""
    core_logic.archive_record(context, RecordKind(args.kind), args.record_id)
    return 0


def run_unarchive(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the unarchive workflow in the BLL."""
    core_logic.unarchive_record(context, RecordKind(args.kind), args.record_id, force=args.force)
    return 0


def run_trash(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the recycle bin workflow in the BLL."""
    entries = core_logic.trash_records(
        context, RecordKind(args.kind), args.record_ids, deleted_by=args.deleted_by
    )
    for entry in entries:
        print(f"{entry.original_id} -> {entry.bin_id}")
    return 0


def run_restore(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the restore workflow in the BLL."""
    record = core_logic.restore_from_trash(context, args.bin_id)
    print(f"Restored {record.kind.value} record {record.record_id}")
    return 0


def run_settle(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the settlement workflow in the BLL."""
    result = accounts.settle(context, translate_settle(args))
    print(
        f"Transaction {result.transaction.transaction_id}: owed {result.total_owed}, "
        f"paid {result.total_paid}, outstanding {result.outstanding_balance}"
    )
    if result.archived:
        print(f"Account settled; archived {result.archived_count} bookings")
    return 0


def run_backfill_offices(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the office id backfill migration."""
    linked = core_logic.backfill_office_ids(context)
    print(f"Linked {linked} records")
    return 0


def run_balance_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the balance reporting workflow."""
    summary = accounts.account_summary(context, EntityType(args.entity), args.entity_id)
    print(f"{summary.entity_name}: owed {summary.total_owed}, paid {summary.total_paid}, balance {summary.balance}")
    return 0


def run_accounts_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the accounts overview reporting workflow."""
    summaries = accounts.accounts_overview(context, EntityType(args.entity))
    for summary in summaries:
        print(
            f"{summary.entity_name}\t{summary.bookings_count}\t"
            f"{summary.total_owed}\t{summary.total_paid}\t{summary.balance}"
        )
    totals = accounts.overview_totals(summaries)
    print(f"TOTAL\t\t{totals['total_owed']}\t{totals['total_paid']}\t{totals['balance']}")
    return 0


def run_statement_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the account statement reporting workflow."""
    statement = accounts.account_statement(context, EntityType(args.entity), args.entity_id)
    summary = statement.summary
    print(f"Statement for {summary.entity_name} ({summary.entity_id})")
    for circle, count in summary.circle_counts.items():
        print(f"  {CIRCLE_NAMES[circle]}: {count} x = {summary.circle_totals[circle]}")
    for row in statement.settlements:
        print(f"  {row.transaction_date}  {row.transaction_id}  {row.amount}")
    print(f"Owed {summary.total_owed}, paid {summary.total_paid}, balance {summary.balance}")
    return 0


def run_trash_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the recycle bin reporting workflow."""
    for entry in core_logic.list_trash(context, query=args.query):
        print(f"{entry.bin_id}\t{entry.record_type.value}\t{entry.full_name}\t{entry.deleted_at}")
    return 0


def run_bookings_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the bookings listing workflow."""
    listing = core_logic.list_archived_bookings if args.archived else core_logic.list_completed_bookings
    records = listing(
        context,
        RecordKind(args.kind) if args.kind else None,
        circle_type=CircleType(args.circle) if args.circle else None,
        office_name=args.office_name,
        source_id=args.source_id,
        manual_only=args.manual,
        booking_date=args.booking_date,
    )
    for record in records:
        print(f"{record.record_id}\t{record.kind.value}\t{record.full_name}\t{record.frozen_price}")
    return 0


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


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise core_logic.PersistenceFailure(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        spec = command_table[args.command]
        if spec.writes:
            core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and spec.writes:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
