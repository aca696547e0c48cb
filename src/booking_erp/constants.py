"""Enumerations shared across the booking ledger modules.

Centralises domain constants so that the data access layer (DAL), business
logic layer (BLL), and the CLI rely on a single source of truth for circle
codes, record kinds, and workbook sheet names.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "2.1.0"

# Recycle bin entries older than this are hidden from listings and restores.
DEFAULT_TRASH_RETENTION_HOURS = 72

# Affiliation assigned to records whose office has been removed.
DELETED_OFFICE_LABEL = "المكتب المحذوف"


class CircleType(str, Enum):
    """Administrative districts a booking can be filed under."""

    RIGHT_MOSUL = "1021"
    LEFT_MOSUL = "1022"
    OTHERS = "0000"
    HAMMAM_ALALIL = "1023"
    ALSHOURA = "1024"
    BAAJ = "1025"


CIRCLE_NAMES: dict[CircleType, str] = {
    CircleType.RIGHT_MOSUL: "موصل الأيمن",
    CircleType.LEFT_MOSUL: "موصل الأيسر",
    CircleType.OTHERS: "دوائر أخرى",
    CircleType.HAMMAM_ALALIL: "دائرة الحمام العليل",
    CircleType.ALSHOURA: "دائرة الشورة",
    CircleType.BAAJ: "دائرة البعاج",
}


class RecordKind(str, Enum):
    """Enumerate the two person record collections."""

    REVIEWER = "reviewer"
    OFFICE = "office"


class EntityType(str, Enum):
    """Enumerate the financing entities that carry a settlement ledger."""

    OFFICE = "office"
    SOURCE = "source"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    REVIEWERS = "Reviewers"
    OFFICE_RECORDS = "OfficeRecords"
    FAMILY_MEMBERS = "FamilyMembers"
    OFFICES = "Offices"
    SOURCES = "Sources"
    OFFICE_SETTLEMENTS = "OfficeSettlements"
    SOURCE_SETTLEMENTS = "SourceSettlements"
    RECYCLE_BIN = "RecycleBin"


RECORD_SHEETS: dict[RecordKind, SheetName] = {
    RecordKind.REVIEWER: SheetName.REVIEWERS,
    RecordKind.OFFICE: SheetName.OFFICE_RECORDS,
}

SETTLEMENT_SHEETS: dict[EntityType, SheetName] = {
    EntityType.OFFICE: SheetName.OFFICE_SETTLEMENTS,
    EntityType.SOURCE: SheetName.SOURCE_SETTLEMENTS,
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_TRASH_RETENTION_HOURS",
    "DELETED_OFFICE_LABEL",
    "CircleType",
    "CIRCLE_NAMES",
    "RecordKind",
    "EntityType",
    "SheetName",
    "RECORD_SHEETS",
    "SETTLEMENT_SHEETS",
]
