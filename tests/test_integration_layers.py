"""Integration tests exercising the layers together on real workbook files."""

from __future__ import annotations

from decimal import Decimal

import pytest

from booking_erp import accounts, cli, core_logic, data_manager
from booking_erp.constants import CircleType, EntityType, RecordKind

from conftest import make_prices


def test_booking_and_settlement_survive_reload(runtime_context):
    """Frozen prices, settlements and archive flags persist to disk."""

    context = runtime_context
    office = core_logic.register_office(
        context,
        core_logic.OfficeCommand(office_name="Al-Najah", username="najah", prices=make_prices(right_mosul=50000)),
    )
    record = core_logic.add_person_record(
        context,
        core_logic.RecordCommand(
            kind=RecordKind.OFFICE,
            circle_type=CircleType.RIGHT_MOSUL,
            full_name="Ahmed Ali",
            affiliation="Al-Najah",
        ),
    )
    core_logic.book_record(context, core_logic.BookingCommand(kind=RecordKind.OFFICE, record_id=record.record_id))

    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)

    # A price change after booking must not alter what is owed.
    core_logic.update_office_prices(context, office.office_id, make_prices(right_mosul=90000))
    assert accounts.calculate_owed(context, EntityType.OFFICE, office.office_id) == Decimal("50000")

    result = accounts.settle(
        context,
        accounts.SettlementCommand(entity_type=EntityType.OFFICE, entity_id=office.office_id, amount=Decimal("50000")),
    )
    assert result.archived

    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)

    stored = core_logic.get_record(context, RecordKind.OFFICE, record.record_id)
    assert stored.is_archived
    assert stored.frozen_price == Decimal("50000")
    assert stored.settled_by_transaction_id == result.transaction.transaction_id
    assert accounts.total_paid(context, EntityType.OFFICE, office.office_id) == Decimal("50000")
    assert accounts.outstanding_balance(context, EntityType.OFFICE, office.office_id) == Decimal("0")


def test_refresh_discards_unsaved_payment(runtime_context):
    """Work that was never persisted disappears on refresh."""

    context = runtime_context
    source = core_logic.register_source(context, core_logic.SourceCommand(source_name="Gateway", prices=make_prices()))
    core_logic.persist_context(context)

    accounts.record_payment(context, EntityType.SOURCE, source.source_id, Decimal("1000"))
    context = core_logic.refresh_context(context)

    assert accounts.list_settlements(context, EntityType.SOURCE) == []


def test_trash_and_restore_across_saves(runtime_context):
    """A trashed record, family included, comes back intact after reloads."""

    context = runtime_context
    record = core_logic.add_person_record(
        context,
        core_logic.RecordCommand(
            kind=RecordKind.REVIEWER,
            circle_type=CircleType.BAAJ,
            full_name="محمد علي",
            family_members=(
                data_manager.FamilyMember(member_id="F-1", relationship="زوجة", full_name="سارة"),
                data_manager.FamilyMember(member_id="F-2", relationship="ابن", full_name="علي"),
            ),
        ),
    )
    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)
    before = core_logic.get_record(context, RecordKind.REVIEWER, record.record_id)

    entry = core_logic.trash_record(context, RecordKind.REVIEWER, record.record_id)
    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)
    assert core_logic.list_records(context, RecordKind.REVIEWER) == []

    core_logic.restore_from_trash(context, entry.bin_id)
    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)

    assert core_logic.get_record(context, RecordKind.REVIEWER, record.record_id) == before
    assert core_logic.list_trash(context) == []


def test_cli_book_and_settle_flow(config_factory, capsys):
    """Drive a full booking and settlement through the command line."""

    bundle = config_factory()
    config = ["--config", str(bundle.config_path)]

    assert cli.main([*config, "add-office", "--name", "Al-Najah", "--username", "najah", "--price-right-mosul", "50000"]) == 0
    context = core_logic.load_runtime_context(bundle.config_path)
    [office] = core_logic.list_offices(context)

    assert cli.main(
        [
            *config,
            "add-record",
            "--kind",
            "office",
            "--circle",
            "1021",
            "--full-name",
            "Ahmed Ali",
            "--affiliation",
            "Al-Najah",
            "--family",
            "wife:Sara",
        ]
    ) == 0
    context = core_logic.refresh_context(context)
    [record] = core_logic.list_records(context, RecordKind.OFFICE)
    assert [member.full_name for member in record.family_members] == ["Sara"]

    assert cli.main([*config, "book", "--kind", "office", "--record-id", record.record_id]) == 0
    capsys.readouterr()
    assert cli.main([*config, "balance", "--entity", "office", "--id", office.office_id]) == 0
    assert "balance 50000" in capsys.readouterr().out

    assert cli.main([*config, "settle", "--entity", "office", "--id", office.office_id, "--amount", "0"]) == 2
    assert cli.main([*config, "settle", "--entity", "office", "--id", office.office_id, "--amount", "50,000"]) == 0

    context = core_logic.refresh_context(context)
    assert core_logic.get_record(context, RecordKind.OFFICE, record.record_id).is_archived
    assert len(accounts.list_settlements(context, EntityType.OFFICE, office.office_id)) == 1

    assert cli.main([*config, "unarchive", "--kind", "office", "--record-id", record.record_id]) == 2


def test_cli_reports_missing_workbook(config_factory):
    """A config pointing at a missing workbook exits with code 3."""

    bundle = config_factory()
    bundle.workbook_path.unlink()

    assert cli.main(["--config", str(bundle.config_path), "accounts", "--entity", "office"]) == 3


def test_cli_rejects_schema_mismatch_for_writes(config_factory):
    """Writes against a workbook of another schema version are refused."""

    bundle = config_factory(schema_version="1.0.0")

    assert cli.main(["--config", str(bundle.config_path), "backfill-offices"]) == 1


@pytest.mark.parametrize("strict, expected", [(False, 0), (True, 2)])
def test_cli_strict_price_lookup(config_factory, strict, expected):
    """The configured lookup policy decides whether unpriced bookings fail."""

    bundle = config_factory(strict=strict)
    config = ["--config", str(bundle.config_path)]
    assert cli.main(
        [*config, "add-record", "--kind", "office", "--circle", "0000", "--full-name", "X", "--affiliation", "Ghost"]
    ) == 0
    context = core_logic.load_runtime_context(bundle.config_path)
    [record] = core_logic.list_records(context, RecordKind.OFFICE)

    assert cli.main([*config, "book", "--kind", "office", "--record-id", record.record_id]) == expected
