"""Data access layer for the booking ledger.

This module provides low-level helpers that read from and write to the
master workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Collection operations: the four primitives every business rule is built
   on (``find``, ``insert``, ``update_where``, ``delete_where``), applied to
   one worksheet per collection and converting rows to typed records.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Generic, Iterable, Mapping, Optional, TypeVar

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_TRASH_RETENTION_HOURS,
    RECORD_SHEETS,
    SETTLEMENT_SHEETS,
    CircleType,
    EntityType,
    RecordKind,
    SheetName,
)


CONFIG_FILE_NAME = "config.ini"
ZERO = Decimal("0")

T = TypeVar("T")


class DuplicateKeyError(ValueError):
    """Raised when an insert would reuse the primary key of a live row."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    operator_name: str
    schema_version: str
    recorded_by: str
    strict_price_lookup: bool = False
    trash_retention_hours: int = DEFAULT_TRASH_RETENTION_HOURS


@dataclass(frozen=True)
class PriceList:
    """Current per-circle prices charged by an office or a booking source."""

    right_mosul: Decimal = ZERO
    left_mosul: Decimal = ZERO
    hammam_alalil: Decimal = ZERO
    alshoura: Decimal = ZERO
    baaj: Decimal = ZERO
    others: Decimal = ZERO

    def price_for(self, circle_type: Optional[CircleType]) -> Decimal:
        """Return the price charged for ``circle_type``.

        Circles without a dedicated column, including ``None``, fall back to
        the ``others`` price.
        """

        attribute = PRICE_FIELDS.get(circle_type, "others") if circle_type is not None else "others"
        return getattr(self, attribute)


# Circle -> PriceList attribute; anything missing is billed as "others".
PRICE_FIELDS: dict[CircleType, str] = {
    CircleType.RIGHT_MOSUL: "right_mosul",
    CircleType.LEFT_MOSUL: "left_mosul",
    CircleType.HAMMAM_ALALIL: "hammam_alalil",
    CircleType.ALSHOURA: "alshoura",
    CircleType.BAAJ: "baaj",
    CircleType.OTHERS: "others",
}

PRICE_COLUMN_MAP: dict[str, str] = {
    "right_mosul": "PriceRightMosul",
    "left_mosul": "PriceLeftMosul",
    "hammam_alalil": "PriceHammamAlAlil",
    "alshoura": "PriceAlShoura",
    "baaj": "PriceBaaj",
    "others": "PriceOthers",
}

# Booking-time snapshot of the whole price list, one column per circle.
FROZEN_PRICE_COLUMN_MAP: dict[str, str] = {
    attribute: f"Frozen{column}" for attribute, column in PRICE_COLUMN_MAP.items()
}


@dataclass(frozen=True)
class FamilyMember:
    """A relative riding on the head of family's booking."""

    member_id: str
    relationship: str
    full_name: str
    surname: str = ""
    mother_name: str = ""
    dob: str = ""


@dataclass(frozen=True)
class FamilyMemberRow:
    """In-memory view of a row from the ``FamilyMembers`` sheet."""

    member_id: str
    record_id: str
    record_kind: RecordKind
    position: int
    relationship: str
    full_name: str
    surname: str
    mother_name: str
    dob: str

    def to_member(self) -> FamilyMember:
        return FamilyMember(
            member_id=self.member_id,
            relationship=self.relationship,
            full_name=self.full_name,
            surname=self.surname,
            mother_name=self.mother_name,
            dob=self.dob,
        )


@dataclass(frozen=True)
class PersonRecord:
    """In-memory view of a reviewer or office record.

    ``frozen_prices`` is the financing entity's whole price list as it
    stood at booking time. It never follows later price-list edits, and a
    circle change after booking is still billed from it.
    """

    record_id: str
    kind: RecordKind
    circle_type: Optional[CircleType]
    full_name: str
    surname: str = ""
    mother_name: str = ""
    dob: str = ""
    phone: Optional[str] = None
    notes: Optional[str] = None
    is_booked: bool = False
    booking_image: Optional[str] = None
    booking_date: Optional[str] = None
    booking_created_at: Optional[str] = None
    booked_source_id: Optional[str] = None
    is_uploaded: bool = False
    uploaded_source_id: Optional[str] = None
    frozen_prices: PriceList = field(default_factory=PriceList)
    is_archived: bool = False
    settled_by_transaction_id: Optional[str] = None
    created_at: str = ""
    affiliation: Optional[str] = None
    office_id: Optional[str] = None
    table_number: Optional[str] = None
    family_members: tuple[FamilyMember, ...] = field(default=(), compare=True)

    @property
    def has_booking_evidence(self) -> bool:
        """True when the record is booked or carries a booking image."""
        return self.is_booked or bool(self.booking_image)

    @property
    def frozen_price(self) -> Decimal:
        """The booking-time price for the record's current circle."""
        return self.frozen_prices.price_for(self.circle_type)


@dataclass(frozen=True)
class Office:
    """In-memory view of a row from the ``Offices`` sheet."""

    office_id: str
    office_name: str
    username: str
    password: Optional[str]
    phone: Optional[str]
    prices: PriceList
    last_seen: Optional[str] = None
    force_logout: bool = False
    created_at: str = ""


@dataclass(frozen=True)
class BookingSource:
    """In-memory view of a row from the ``Sources`` sheet."""

    source_id: str
    source_name: str
    phone_number: Optional[str]
    prices: PriceList
    created_at: str = ""
    created_by: Optional[str] = None


@dataclass(frozen=True)
class SettlementRow:
    """One immutable payment recorded against an office or a source."""

    transaction_id: str
    entity_type: EntityType
    entity_id: str
    amount: Decimal
    transaction_date: str
    recorded_by: Optional[str]
    notes: Optional[str]


@dataclass(frozen=True)
class RecycleBinRow:
    """Soft-delete snapshot of a person record."""

    bin_id: str
    original_id: str
    record_type: RecordKind
    full_name: str
    deleted_by: Optional[str]
    deleted_at: str
    original_data: str


@dataclass(frozen=True)
class Collection(Generic[T]):
    """Binds a worksheet to the converters for its typed rows."""

    sheet_name: str
    key_column: str
    key_of: Callable[[T], str]
    serialize: Callable[[T], dict[str, object]]
    deserialize: Callable[[Mapping[str, object]], T]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory contains
            ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` and ``[Defaults]`` entries are mandatory. The optional
    ``[Settlement]`` section tunes the price lookup policy and the recycle bin
    retention window. Relative ``DataFile`` paths are anchored to
    ``base_path`` (or the current working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If an optional setting cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        operator_name = parser.get("System", "OperatorName")
        schema_version = parser.get("System", "SchemaVersion")
        recorded_by = parser.get("Defaults", "RecordedBy")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    strict_price_lookup = parser.getboolean("Settlement", "StrictPriceLookup", fallback=False)
    retention_hours = parser.getint(
        "Settlement", "TrashRetentionHours", fallback=DEFAULT_TRASH_RETENTION_HOURS)
    if retention_hours <= 0:
        raise ValueError("TrashRetentionHours must be a positive number of hours")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        operator_name=operator_name,
        schema_version=schema_version,
        recorded_by=recorded_by,
        strict_price_lookup=strict_price_lookup,
        trash_retention_hours=retention_hours,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def header_map(workbook: Workbook, sheet_name: str) -> dict[str, int]:
    """Map each header title of ``sheet_name`` to its 1-based column index."""

    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterable[tuple[int, dict[str, object]]]:
    """Yield ``(row_index, {header: value})`` for every populated data row.

    The header row and rows whose cells are all ``None`` are skipped.
    """

    sheet = workbook[sheet_name]
    headers = [cell.value for cell in sheet[1]]
    for row_idx, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if not any(cell is not None for cell in raw):
            continue
        yield row_idx, {header: value for header, value in zip(headers, raw) if header is not None}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the key column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    columns = header_map(workbook, sheet_name)
    if key_column not in columns:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = columns[key_column]
    sheet = workbook[sheet_name]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == str(key_value):
            return row_idx

    return None


def find(
    workbook: Workbook,
    collection: Collection[T],
    predicate: Optional[Callable[[T], bool]] = None,
) -> list[T]:
    """Return every typed row of ``collection`` accepted by ``predicate``.

    Rows come back in sheet order, which is insertion order for the
    append-only sheets.
    """

    matches: list[T] = []
    for _, raw in iter_raw_rows(workbook, collection.sheet_name):
        entity = collection.deserialize(raw)
        if predicate is None or predicate(entity):
            matches.append(entity)
    return matches


def insert(workbook: Workbook, collection: Collection[T], entity: T) -> T:
    """Append ``entity`` to its worksheet.

    Values are written in header order; serialized keys with no matching
    header are ignored so one serializer can serve sheets with optional
    columns.

    Raises:
        DuplicateKeyError: If a row with the same primary key already exists.
    """

    key = collection.key_of(entity)
    if locate_row(workbook, collection.sheet_name, collection.key_column, key) is not None:
        raise DuplicateKeyError(
            f"{collection.sheet_name} already contains {collection.key_column}={key}")

    sheet = workbook[collection.sheet_name]
    headers = [cell.value for cell in sheet[1]]
    values = collection.serialize(entity)
    sheet.append([values.get(header) if header is not None else None for header in headers])
    return entity


def update_where(
    workbook: Workbook,
    collection: Collection[T],
    predicate: Callable[[T], bool],
    field_values: Mapping[str, Any],
) -> int:
    """Write ``field_values`` into every row accepted by ``predicate``.

    ``field_values`` is keyed by column header. Only the listed columns are
    touched; the function returns the number of rows updated.

    Raises:
        KeyError: If any referenced column is missing from the sheet.
    """

    columns = header_map(workbook, collection.sheet_name)
    for column in field_values:
        if column not in columns:
            raise KeyError(f"Unknown {collection.sheet_name} field: {column}")

    sheet = workbook[collection.sheet_name]
    updated = 0
    for row_idx, raw in list(iter_raw_rows(workbook, collection.sheet_name)):
        if not predicate(collection.deserialize(raw)):
            continue
        for column, value in field_values.items():
            sheet.cell(row=row_idx, column=columns[column], value=value)
        updated += 1
    return updated


def delete_where(
    workbook: Workbook,
    collection: Collection[T],
    predicate: Callable[[T], bool],
) -> int:
    """Physically remove every row accepted by ``predicate``.

    Rows are deleted bottom-up so earlier indices stay valid. Returns the
    number of rows removed.
    """

    doomed = [
        row_idx
        for row_idx, raw in iter_raw_rows(workbook, collection.sheet_name)
        if predicate(collection.deserialize(raw))
    ]
    sheet = workbook[collection.sheet_name]
    for row_idx in reversed(doomed):
        sheet.delete_rows(row_idx)
    return len(doomed)


# ---------------------------------------------------------------------------
# Value converters
# ---------------------------------------------------------------------------


def format_timestamp(moment: datetime) -> str:
    """Serialize a timezone-aware timestamp as ISO-8601 text."""

    return moment.isoformat()


def parse_timestamp(raw: str) -> datetime:
    """Parse ISO-8601 text produced by :func:`format_timestamp`."""

    return datetime.fromisoformat(raw)


def to_decimal(raw: object) -> Decimal:
    """Coerce a worksheet cell into a :class:`~decimal.Decimal` (blank -> 0)."""

    if raw is None or raw == "":
        return ZERO
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValueError(f"Not a monetary value: {raw!r}") from exc


def to_circle(raw: object) -> Optional[CircleType]:
    """Convert a stored circle code into :class:`CircleType`.

    Excel may hand numeric-looking codes back as integers, so the value is
    re-padded to four digits. Unknown codes are billed as ``OTHERS``.
    """

    if raw is None or raw == "":
        return None
    text = str(raw).strip()
    if text.isdigit():
        text = text.zfill(4)
    try:
        return CircleType(text)
    except ValueError:
        log.warning("Unknown circle code '%s' treated as OTHERS", raw)
        return CircleType.OTHERS


def _opt_str(raw: object) -> Optional[str]:
    return str(raw) if raw is not None and raw != "" else None


def _str(raw: object) -> str:
    return str(raw) if raw is not None else ""


def _circle_value(circle: Optional[CircleType]) -> Optional[str]:
    return circle.value if circle is not None else None


# ---------------------------------------------------------------------------
# Serializers
# ---------------------------------------------------------------------------


def serialize_prices(prices: PriceList, columns: Mapping[str, str] = PRICE_COLUMN_MAP) -> dict[str, object]:
    return {column: getattr(prices, attribute) for attribute, column in columns.items()}


def deserialize_prices(raw: Mapping[str, object], columns: Mapping[str, str] = PRICE_COLUMN_MAP) -> PriceList:
    return PriceList(**{attribute: to_decimal(raw.get(column)) for attribute, column in columns.items()})


def serialize_person(record: PersonRecord) -> dict[str, object]:
    """Convert a person record into a ``{header: value}`` mapping.

    Family members are stored on their own sheet and are not part of the
    mapping.
    """

    return {
        "RecordID": record.record_id,
        "CircleType": _circle_value(record.circle_type),
        "FullName": record.full_name,
        "Surname": record.surname,
        "MotherName": record.mother_name,
        "DOB": record.dob,
        "Phone": record.phone,
        "Notes": record.notes,
        "IsBooked": record.is_booked,
        "BookingImage": record.booking_image,
        "BookingDate": record.booking_date,
        "BookingCreatedAt": record.booking_created_at,
        "BookedSourceID": record.booked_source_id,
        "IsUploaded": record.is_uploaded,
        "UploadedSourceID": record.uploaded_source_id,
        **serialize_prices(record.frozen_prices, FROZEN_PRICE_COLUMN_MAP),
        "IsArchived": record.is_archived,
        "SettledByTransactionID": record.settled_by_transaction_id,
        "CreatedAt": record.created_at,
        "Affiliation": record.affiliation,
        "OfficeID": record.office_id,
        "TableNumber": record.table_number,
    }


def _person_deserializer(kind: RecordKind) -> Callable[[Mapping[str, object]], PersonRecord]:
    def _deserialize(raw: Mapping[str, object]) -> PersonRecord:
        return PersonRecord(
            record_id=_str(raw.get("RecordID")),
            kind=kind,
            circle_type=to_circle(raw.get("CircleType")),
            full_name=_str(raw.get("FullName")),
            surname=_str(raw.get("Surname")),
            mother_name=_str(raw.get("MotherName")),
            dob=_str(raw.get("DOB")),
            phone=_opt_str(raw.get("Phone")),
            notes=_opt_str(raw.get("Notes")),
            is_booked=bool(raw.get("IsBooked")),
            booking_image=_opt_str(raw.get("BookingImage")),
            booking_date=_opt_str(raw.get("BookingDate")),
            booking_created_at=_opt_str(raw.get("BookingCreatedAt")),
            booked_source_id=_opt_str(raw.get("BookedSourceID")),
            is_uploaded=bool(raw.get("IsUploaded")),
            uploaded_source_id=_opt_str(raw.get("UploadedSourceID")),
            frozen_prices=deserialize_prices(raw, FROZEN_PRICE_COLUMN_MAP),
            is_archived=bool(raw.get("IsArchived")),
            settled_by_transaction_id=_opt_str(raw.get("SettledByTransactionID")),
            created_at=_str(raw.get("CreatedAt")),
            affiliation=_opt_str(raw.get("Affiliation")) if kind is RecordKind.OFFICE else None,
            office_id=_opt_str(raw.get("OfficeID")) if kind is RecordKind.OFFICE else None,
            table_number=_opt_str(raw.get("TableNumber")) if kind is RecordKind.OFFICE else None,
        )

    return _deserialize


def serialize_family_member(row: FamilyMemberRow) -> dict[str, object]:
    return {
        "MemberID": row.member_id,
        "RecordID": row.record_id,
        "RecordKind": row.record_kind.value,
        "Position": row.position,
        "Relationship": row.relationship,
        "FullName": row.full_name,
        "Surname": row.surname,
        "MotherName": row.mother_name,
        "DOB": row.dob,
    }


def deserialize_family_member(raw: Mapping[str, object]) -> FamilyMemberRow:
    position = raw.get("Position")
    return FamilyMemberRow(
        member_id=_str(raw.get("MemberID")),
        record_id=_str(raw.get("RecordID")),
        record_kind=RecordKind(_str(raw.get("RecordKind"))),
        position=int(position) if position is not None else 0,
        relationship=_str(raw.get("Relationship")),
        full_name=_str(raw.get("FullName")),
        surname=_str(raw.get("Surname")),
        mother_name=_str(raw.get("MotherName")),
        dob=_str(raw.get("DOB")),
    )


def serialize_office(office: Office) -> dict[str, object]:
    return {
        "OfficeID": office.office_id,
        "OfficeName": office.office_name,
        "Username": office.username,
        "Password": office.password,
        "Phone": office.phone,
        **serialize_prices(office.prices),
        "LastSeen": office.last_seen,
        "ForceLogout": office.force_logout,
        "CreatedAt": office.created_at,
    }


def deserialize_office(raw: Mapping[str, object]) -> Office:
    return Office(
        office_id=_str(raw.get("OfficeID")),
        office_name=_str(raw.get("OfficeName")),
        username=_str(raw.get("Username")),
        password=_opt_str(raw.get("Password")),
        phone=_opt_str(raw.get("Phone")),
        prices=deserialize_prices(raw),
        last_seen=_opt_str(raw.get("LastSeen")),
        force_logout=bool(raw.get("ForceLogout")),
        created_at=_str(raw.get("CreatedAt")),
    )


def serialize_source(source: BookingSource) -> dict[str, object]:
    return {
        "SourceID": source.source_id,
        "SourceName": source.source_name,
        "PhoneNumber": source.phone_number,
        **serialize_prices(source.prices),
        "CreatedAt": source.created_at,
        "CreatedBy": source.created_by,
    }


def deserialize_source(raw: Mapping[str, object]) -> BookingSource:
    return BookingSource(
        source_id=_str(raw.get("SourceID")),
        source_name=_str(raw.get("SourceName")),
        phone_number=_opt_str(raw.get("PhoneNumber")),
        prices=deserialize_prices(raw),
        created_at=_str(raw.get("CreatedAt")),
        created_by=_opt_str(raw.get("CreatedBy")),
    )


_ENTITY_KEY_COLUMNS: dict[EntityType, str] = {
    EntityType.OFFICE: "OfficeID",
    EntityType.SOURCE: "SourceID",
}


def _settlement_serializer(entity_type: EntityType) -> Callable[[SettlementRow], dict[str, object]]:
    def _serialize(row: SettlementRow) -> dict[str, object]:
        return {
            "TransactionID": row.transaction_id,
            _ENTITY_KEY_COLUMNS[entity_type]: row.entity_id,
            "Amount": row.amount,
            "TransactionDate": row.transaction_date,
            "RecordedBy": row.recorded_by,
            "Notes": row.notes,
        }

    return _serialize


def _settlement_deserializer(entity_type: EntityType) -> Callable[[Mapping[str, object]], SettlementRow]:
    def _deserialize(raw: Mapping[str, object]) -> SettlementRow:
        return SettlementRow(
            transaction_id=_str(raw.get("TransactionID")),
            entity_type=entity_type,
            entity_id=_str(raw.get(_ENTITY_KEY_COLUMNS[entity_type])),
            amount=to_decimal(raw.get("Amount")),
            transaction_date=_str(raw.get("TransactionDate")),
            recorded_by=_opt_str(raw.get("RecordedBy")),
            notes=_opt_str(raw.get("Notes")),
        )

    return _deserialize


def serialize_recycle_bin(row: RecycleBinRow) -> dict[str, object]:
    return {
        "BinID": row.bin_id,
        "OriginalID": row.original_id,
        "RecordType": row.record_type.value,
        "FullName": row.full_name,
        "DeletedBy": row.deleted_by,
        "DeletedAt": row.deleted_at,
        "OriginalData": row.original_data,
    }


def deserialize_recycle_bin(raw: Mapping[str, object]) -> RecycleBinRow:
    return RecycleBinRow(
        bin_id=_str(raw.get("BinID")),
        original_id=_str(raw.get("OriginalID")),
        record_type=RecordKind(_str(raw.get("RecordType"))),
        full_name=_str(raw.get("FullName")),
        deleted_by=_opt_str(raw.get("DeletedBy")),
        deleted_at=_str(raw.get("DeletedAt")),
        original_data=_str(raw.get("OriginalData")),
    )


def record_to_json(record: PersonRecord) -> str:
    """Serialize a full person record, family included, for the recycle bin.

    Decimal values are written as strings so no precision is lost.
    """

    payload = asdict(record)
    payload["kind"] = record.kind.value
    payload["circle_type"] = _circle_value(record.circle_type)
    payload["frozen_prices"] = {attribute: str(value) for attribute, value in asdict(record.frozen_prices).items()}
    payload["family_members"] = [asdict(member) for member in record.family_members]
    return json.dumps(payload, ensure_ascii=False)


def record_from_json(text: str) -> PersonRecord:
    """Rebuild a :class:`PersonRecord` from :func:`record_to_json` output."""

    payload = json.loads(text)
    known = {item.name for item in fields(PersonRecord)}
    values = {key: value for key, value in payload.items() if key in known}
    values["kind"] = RecordKind(values["kind"])
    values["circle_type"] = to_circle(values.get("circle_type"))
    values["frozen_prices"] = PriceList(
        **{attribute: to_decimal(value) for attribute, value in (values.get("frozen_prices") or {}).items()}
    )
    values["family_members"] = tuple(FamilyMember(**member) for member in values.get("family_members", ()))
    return PersonRecord(**values)


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------


REVIEWERS: Collection[PersonRecord] = Collection(
    sheet_name=SheetName.REVIEWERS.value,
    key_column="RecordID",
    key_of=lambda record: record.record_id,
    serialize=serialize_person,
    deserialize=_person_deserializer(RecordKind.REVIEWER),
)

OFFICE_RECORDS: Collection[PersonRecord] = Collection(
    sheet_name=SheetName.OFFICE_RECORDS.value,
    key_column="RecordID",
    key_of=lambda record: record.record_id,
    serialize=serialize_person,
    deserialize=_person_deserializer(RecordKind.OFFICE),
)

FAMILY_MEMBERS: Collection[FamilyMemberRow] = Collection(
    sheet_name=SheetName.FAMILY_MEMBERS.value,
    key_column="MemberID",
    key_of=lambda row: row.member_id,
    serialize=serialize_family_member,
    deserialize=deserialize_family_member,
)

OFFICES: Collection[Office] = Collection(
    sheet_name=SheetName.OFFICES.value,
    key_column="OfficeID",
    key_of=lambda office: office.office_id,
    serialize=serialize_office,
    deserialize=deserialize_office,
)

SOURCES: Collection[BookingSource] = Collection(
    sheet_name=SheetName.SOURCES.value,
    key_column="SourceID",
    key_of=lambda source: source.source_id,
    serialize=serialize_source,
    deserialize=deserialize_source,
)

OFFICE_SETTLEMENTS: Collection[SettlementRow] = Collection(
    sheet_name=SETTLEMENT_SHEETS[EntityType.OFFICE].value,
    key_column="TransactionID",
    key_of=lambda row: row.transaction_id,
    serialize=_settlement_serializer(EntityType.OFFICE),
    deserialize=_settlement_deserializer(EntityType.OFFICE),
)

SOURCE_SETTLEMENTS: Collection[SettlementRow] = Collection(
    sheet_name=SETTLEMENT_SHEETS[EntityType.SOURCE].value,
    key_column="TransactionID",
    key_of=lambda row: row.transaction_id,
    serialize=_settlement_serializer(EntityType.SOURCE),
    deserialize=_settlement_deserializer(EntityType.SOURCE),
)

RECYCLE_BIN: Collection[RecycleBinRow] = Collection(
    sheet_name=SheetName.RECYCLE_BIN.value,
    key_column="BinID",
    key_of=lambda row: row.bin_id,
    serialize=serialize_recycle_bin,
    deserialize=deserialize_recycle_bin,
)


def record_collection(kind: RecordKind) -> Collection[PersonRecord]:
    """Return the collection storing person records of ``kind``."""

    return REVIEWERS if RECORD_SHEETS[kind] is SheetName.REVIEWERS else OFFICE_RECORDS


def settlement_collection(entity_type: EntityType) -> Collection[SettlementRow]:
    """Return the ledger collection for ``entity_type``."""

    return OFFICE_SETTLEMENTS if entity_type is EntityType.OFFICE else SOURCE_SETTLEMENTS
