"""Utility for initializing the booking ledger master workbook.

The module doubles as a script (``python -m booking_erp.setup_excel``) and as
a library used by tests or other tooling. Shared helpers keep the workbook
bootstrap logic consistent regardless of the execution path.
"""

from __future__ import annotations

import argparse
import configparser
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from .constants import SheetName

PERSON_COLUMNS: Sequence[str] = [
    "RecordID",
    "CircleType",
    "FullName",
    "Surname",
    "MotherName",
    "DOB",
    "Phone",
    "Notes",
    "IsBooked",
    "BookingImage",
    "BookingDate",
    "BookingCreatedAt",
    "BookedSourceID",
    "IsUploaded",
    "UploadedSourceID",
    "FrozenPriceRightMosul",
    "FrozenPriceLeftMosul",
    "FrozenPriceHammamAlAlil",
    "FrozenPriceAlShoura",
    "FrozenPriceBaaj",
    "FrozenPriceOthers",
    "IsArchived",
    "SettledByTransactionID",
    "CreatedAt",
]

PRICE_COLUMNS: Sequence[str] = [
    "PriceRightMosul",
    "PriceLeftMosul",
    "PriceHammamAlAlil",
    "PriceAlShoura",
    "PriceBaaj",
    "PriceOthers",
]

# Define the schema exactly as the data layer expects it
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.REVIEWERS.value: list(PERSON_COLUMNS),
    SheetName.OFFICE_RECORDS.value: [
        *PERSON_COLUMNS,
        "Affiliation",
        "OfficeID",
        "TableNumber",
    ],
    SheetName.FAMILY_MEMBERS.value: [
        "MemberID",
        "RecordID",
        "RecordKind",
        "Position",
        "Relationship",
        "FullName",
        "Surname",
        "MotherName",
        "DOB",
    ],
    SheetName.OFFICES.value: [
        "OfficeID",
        "OfficeName",
        "Username",
        "Password",
        "Phone",
        *PRICE_COLUMNS,
        "LastSeen",
        "ForceLogout",
        "CreatedAt",
    ],
    SheetName.SOURCES.value: [
        "SourceID",
        "SourceName",
        "PhoneNumber",
        *PRICE_COLUMNS,
        "CreatedAt",
        "CreatedBy",
    ],
    SheetName.OFFICE_SETTLEMENTS.value: [
        "TransactionID",
        "OfficeID",
        "Amount",
        "TransactionDate",
        "RecordedBy",
        "Notes",
    ],
    SheetName.SOURCE_SETTLEMENTS.value: [
        "TransactionID",
        "SourceID",
        "Amount",
        "TransactionDate",
        "RecordedBy",
        "Notes",
    ],
    SheetName.RECYCLE_BIN.value: [
        "BinID",
        "OriginalID",
        "RecordType",
        "FullName",
        "DeletedBy",
        "DeletedAt",
        "OriginalData",
    ],
}

CONFIG_FILE = "config.ini"


@dataclass(frozen=True)
class SetupSettings:
    """Type-safe representation of configuration values used during setup."""

    data_file: Path


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config file's
    directory, matching how the data layer resolves them.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")

    try:
        data_file_raw = parser.get("System", "DataFile")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (config_path.parent / data_file_path).resolve()

    return SetupSettings(data_file=data_file_path)


def build_master_workbook(
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
) -> Workbook:
    """Build an empty in-memory workbook with every sheet and header row."""

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    return workbook


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the master workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)
    workbook = build_master_workbook(sheet_columns)
    workbook.save(destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``config.ini``."""

    settings = load_settings(config_path)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the booking ledger data file")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Booking Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except KeyError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
