"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from dataclasses import replace
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from booking_erp import constants, data_manager, setup_excel  # noqa: E402
from booking_erp.constants import CircleType, EntityType, RecordKind  # noqa: E402


def _office(office_id: str, name: str, **prices: int) -> data_manager.Office:
    return data_manager.Office(
        office_id=office_id,
        office_name=name,
        username=f"{office_id.lower()}-user",
        password=None,
        phone=None,
        prices=data_manager.PriceList(**{key: Decimal(value) for key, value in prices.items()}),
        created_at="2024-05-01T09:00:00+00:00",
    )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery should walk upward from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=master_workbook.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "OperatorName") == "Test Bureau"
    assert parser.get("Defaults", "RecordedBy") == "cashier"


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    parser = configparser.ConfigParser()
    bundle = config_factory(make_relative=True)
    parser.read(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)
    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.recorded_by == "cashier"


def test_parse_settings_reads_settlement_section(config_factory):
    """The optional Settlement section should tune lookup policy and retention."""

    bundle = config_factory(strict=True, retention=24)
    settings = data_manager.parse_settings(data_manager.read_config(bundle.config_path))
    assert settings.strict_price_lookup is True
    assert settings.trash_retention_hours == 24


def test_parse_settings_defaults_without_settlement_section(tmp_path):
    """Legacy configs without a Settlement section keep the lenient defaults."""

    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile=book.xlsx\nOperatorName=X\nSchemaVersion=2.1.0\n"
        "[Defaults]\nRecordedBy=clerk\n"
    )
    settings = data_manager.parse_settings(parser, base_path=tmp_path)
    assert settings.strict_price_lookup is False
    assert settings.trash_retention_hours == constants.DEFAULT_TRASH_RETENTION_HOURS


def test_parse_settings_rejects_non_positive_retention(tmp_path):
    """A retention window of zero hours is not a valid configuration."""

    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile=book.xlsx\nOperatorName=X\nSchemaVersion=2.1.0\n"
        "[Defaults]\nRecordedBy=clerk\n[Settlement]\nTrashRetentionHours=0\n"
    )
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    """open_workbook should hand back a loaded Workbook object."""

    workbook = data_manager.open_workbook(master_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)


def test_open_workbook_missing_file_raises(tmp_path):
    """Missing workbook files should yield FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_persists_inserted_rows(master_workbook_path):
    """Rows written through the collection API should survive a save."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.insert(workbook, data_manager.OFFICES, _office("O1", "Al-Najah", right_mosul=50000))
    data_manager.save_workbook(workbook, master_workbook_path)

    reloaded = data_manager.open_workbook(master_workbook_path)
    [office] = data_manager.find(reloaded, data_manager.OFFICES)
    assert office.office_name == "Al-Najah"
    assert office.prices.right_mosul == Decimal("50000")


def test_refresh_workbook_discards_unsaved_changes(master_workbook_path):
    """refresh_workbook should reload the on-disk state."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.insert(workbook, data_manager.OFFICES, _office("O1", "Al-Najah"))

    refreshed = data_manager.refresh_workbook(master_workbook_path)
    assert refreshed is not workbook
    assert data_manager.find(refreshed, data_manager.OFFICES) == []


def test_build_master_workbook_creates_every_sheet_with_headers():
    """The bootstrap workbook should contain one sheet per collection."""

    workbook = setup_excel.build_master_workbook()
    assert workbook.sheetnames == [sheet.value for sheet in constants.SheetName]
    headers = [cell.value for cell in workbook[constants.SheetName.OFFICE_RECORDS.value][1]]
    assert headers[-3:] == ["Affiliation", "OfficeID", "TableNumber"]
    assert workbook[constants.SheetName.OFFICES.value]["A1"].font.bold


def test_frozen_price_list_round_trips_through_the_sheet():
    """Every circle of the booking-time snapshot is stored in its own column."""

    workbook = setup_excel.build_master_workbook()
    snapshot = data_manager.PriceList(right_mosul=Decimal("50000"), baaj=Decimal("30000"))
    record = data_manager.PersonRecord(
        record_id="R1",
        kind=RecordKind.REVIEWER,
        circle_type=CircleType.RIGHT_MOSUL,
        full_name="Omar",
        is_booked=True,
        frozen_prices=snapshot,
    )
    data_manager.insert(workbook, data_manager.REVIEWERS, record)

    headers = data_manager.header_map(workbook, constants.SheetName.REVIEWERS.value)
    assert set(data_manager.FROZEN_PRICE_COLUMN_MAP.values()) <= set(headers)
    [stored] = data_manager.find(workbook, data_manager.REVIEWERS)
    assert stored.frozen_prices == snapshot


def test_create_master_workbook_refuses_to_overwrite(master_workbook_path):
    """Existing workbooks are protected unless overwrite is requested."""

    with pytest.raises(FileExistsError):
        setup_excel.create_master_workbook(master_workbook_path)
    assert setup_excel.create_master_workbook(master_workbook_path, overwrite=True) == master_workbook_path.resolve()


def test_setup_main_reports_missing_config(tmp_path, capsys):
    """The setup script should exit non-zero when the config is missing."""

    exit_code = setup_excel.main(["--config", str(tmp_path / "absent.ini")])
    assert exit_code == 1
    assert "[ERROR]" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# Collection primitives
# ---------------------------------------------------------------------------


def test_find_applies_predicate_in_sheet_order(workbook):
    """find should filter rows and preserve insertion order."""

    for office_id, name in (("O1", "Alpha"), ("O2", "Beta"), ("O3", "Gamma")):
        data_manager.insert(workbook, data_manager.OFFICES, _office(office_id, name))

    names = [office.office_name for office in data_manager.find(workbook, data_manager.OFFICES)]
    assert names == ["Alpha", "Beta", "Gamma"]

    matches = data_manager.find(workbook, data_manager.OFFICES, lambda office: office.office_id != "O2")
    assert [office.office_id for office in matches] == ["O1", "O3"]


def test_insert_rejects_duplicate_keys(workbook):
    """A second insert with the same primary key should fail."""

    data_manager.insert(workbook, data_manager.OFFICES, _office("O1", "Alpha"))
    with pytest.raises(data_manager.DuplicateKeyError):
        data_manager.insert(workbook, data_manager.OFFICES, _office("O1", "Other"))


def test_update_where_touches_only_listed_columns(workbook):
    """update_where should update matching rows and report how many."""

    data_manager.insert(workbook, data_manager.OFFICES, _office("O1", "Alpha", right_mosul=100))
    data_manager.insert(workbook, data_manager.OFFICES, _office("O2", "Beta", right_mosul=200))

    updated = data_manager.update_where(
        workbook,
        data_manager.OFFICES,
        lambda office: office.office_id == "O2",
        {"OfficeName": "Beta Prime"},
    )

    assert updated == 1
    beta = data_manager.find(workbook, data_manager.OFFICES, lambda office: office.office_id == "O2")[0]
    assert beta.office_name == "Beta Prime"
    assert beta.prices.right_mosul == Decimal("200")


def test_update_where_rejects_unknown_columns(workbook):
    """Typos in column names must not silently create data."""

    data_manager.insert(workbook, data_manager.OFFICES, _office("O1", "Alpha"))
    with pytest.raises(KeyError):
        data_manager.update_where(workbook, data_manager.OFFICES, lambda office: True, {"Nickname": "x"})


def test_delete_where_removes_matching_rows(workbook):
    """delete_where should remove all matches and keep the rest intact."""

    for office_id in ("O1", "O2", "O3", "O4"):
        data_manager.insert(workbook, data_manager.OFFICES, _office(office_id, office_id))

    removed = data_manager.delete_where(
        workbook, data_manager.OFFICES, lambda office: office.office_id in {"O2", "O3"}
    )

    assert removed == 2
    assert [office.office_id for office in data_manager.find(workbook, data_manager.OFFICES)] == ["O1", "O4"]


def test_settlement_collections_are_kept_apart(workbook):
    """Office and source payments live in separate ledgers."""

    row = data_manager.SettlementRow(
        transaction_id="T1",
        entity_type=EntityType.SOURCE,
        entity_id="S1",
        amount=Decimal("1500.50"),
        transaction_date="2024-05-01T09:00:00+00:00",
        recorded_by="cashier",
        notes=None,
    )
    data_manager.insert(workbook, data_manager.settlement_collection(EntityType.SOURCE), row)

    assert data_manager.find(workbook, data_manager.OFFICE_SETTLEMENTS) == []
    assert data_manager.find(workbook, data_manager.SOURCE_SETTLEMENTS) == [row]


# ---------------------------------------------------------------------------
# Converters
# ---------------------------------------------------------------------------


def test_to_circle_pads_numeric_codes():
    """Excel may return circle codes as integers; they must still map."""

    assert data_manager.to_circle(1021) is CircleType.RIGHT_MOSUL
    assert data_manager.to_circle(0) is CircleType.OTHERS
    assert data_manager.to_circle(None) is None


def test_to_circle_bills_unknown_codes_as_others():
    """Unrecognised codes fall into the others bucket."""

    assert data_manager.to_circle("9999") is CircleType.OTHERS


def test_to_decimal_rejects_garbage():
    """Non-numeric cells should raise instead of being read as zero."""

    assert data_manager.to_decimal("") == Decimal("0")
    with pytest.raises(ValueError):
        data_manager.to_decimal("fifty")


def test_price_for_falls_back_to_others():
    """Circles without a dedicated price use the others price."""

    prices = data_manager.PriceList(right_mosul=Decimal("50000"), others=Decimal("20000"))
    assert prices.price_for(CircleType.RIGHT_MOSUL) == Decimal("50000")
    assert prices.price_for(CircleType.OTHERS) == Decimal("20000")
    assert prices.price_for(None) == Decimal("20000")


def test_frozen_price_follows_the_current_circle():
    """The snapshot is read for whichever circle the record is in now."""

    record = data_manager.PersonRecord(
        record_id="R1",
        kind=RecordKind.REVIEWER,
        circle_type=CircleType.RIGHT_MOSUL,
        full_name="Omar",
        frozen_prices=data_manager.PriceList(right_mosul=Decimal("50000"), left_mosul=Decimal("40000")),
    )
    assert record.frozen_price == Decimal("50000")
    assert replace(record, circle_type=CircleType.LEFT_MOSUL).frozen_price == Decimal("40000")
    assert replace(record, circle_type=CircleType.BAAJ).frozen_price == Decimal("0")


def test_record_json_snapshot_keeps_family_and_price():
    """Recycle bin snapshots must carry everything needed for a restore."""

    record = data_manager.PersonRecord(
        record_id="R1",
        kind=RecordKind.OFFICE,
        circle_type=CircleType.BAAJ,
        full_name="محمد علي",
        is_booked=True,
        frozen_prices=data_manager.PriceList(baaj=Decimal("42500.50"), others=Decimal("1000")),
        created_at="2024-05-01T09:00:00+00:00",
        affiliation="Al-Najah",
        family_members=(
            data_manager.FamilyMember(member_id="F1", relationship="wife", full_name="Sara"),
            data_manager.FamilyMember(member_id="F2", relationship="son", full_name="Ali"),
        ),
    )

    restored = data_manager.record_from_json(data_manager.record_to_json(record))

    assert restored == record
