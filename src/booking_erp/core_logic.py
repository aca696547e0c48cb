"""Business logic layer for the booking ledger.

This module owns the runtime context, the entity registry (offices, booking
sources, person records), the price snapshot taken when a record is booked,
and the lifecycle every person record moves through (booked, archived,
trashed, restored). All I/O goes through the Data Access Layer (DAL);
settlement and debt rules live in :mod:`booking_erp.accounts`.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    DELETED_OFFICE_LABEL,
    EXPECTED_SCHEMA_VERSION,
    CircleType,
    RecordKind,
)


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced office, source, record, or bin entry is unknown."""


class InvalidSettlementAmount(BusinessRuleViolation, ValueError):
    """Raised when a settlement amount is zero or negative."""


class RestoreConflictError(BusinessRuleViolation):
    """Raised when a trashed record is restored over a live record with the same id."""


class PersistenceFailure(RuntimeError):
    """Raised when a multi-step write fails after its compensating action ran."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class OfficeCommand:
    """User intent for registering an office and its price list."""

    office_name: str
    username: str
    prices: data_manager.PriceList
    password: Optional[str] = None
    phone: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SourceCommand:
    """User intent for registering an external booking source."""

    source_name: str
    prices: data_manager.PriceList
    phone_number: Optional[str] = None
    created_by: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class RecordCommand:
    """User intent for creating a reviewer or office record."""

    kind: RecordKind
    circle_type: CircleType
    full_name: str
    surname: str = ""
    mother_name: str = ""
    dob: str = ""
    phone: Optional[str] = None
    notes: Optional[str] = None
    affiliation: Optional[str] = None
    table_number: Optional[str] = None
    family_members: Sequence[data_manager.FamilyMember] = ()
    record_id: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class BookingCommand:
    """User intent for moving a record from unbooked to booked."""

    kind: RecordKind
    record_id: str
    source_id: Optional[str] = None
    booking_image: Optional[str] = None
    booking_date: Optional[str] = None
    timestamp: Optional[datetime] = None


FinancingEntity = Union[data_manager.Office, data_manager.BookingSource]


def resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def generate_id(*, prefix: str, when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier using UTC timestamps.

    Args:
        prefix (str): Designator prepended to the identifier (``"T"`` for
            settlements, ``"B"`` for recycle bin entries, and so on).
        when (datetime | None): Timestamp used for the sortable part. When
            ``None`` the current UTC time is used.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}{XXXX}``.

    The trailing random hex block keeps identifiers unique when several
    rows are written within the same microsecond or under a frozen clock.
    """
    when = when or resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}{uuid.uuid4().hex[:4].upper()}"


# ---------------------------------------------------------------------------
# Cache management
# ---------------------------------------------------------------------------


def cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets are plain dictionaries holding precomputed query results so the
    worksheets are not re-scanned between reads. Every write path evicts the
    buckets it affects through :func:`invalidate_cache`.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Missing buckets are ignored so callers can request targeted invalidation
    without checking what was populated.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _records_bucket_name(kind: RecordKind) -> str:
    return f"records:{kind.value}"


def _ensure_offices_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = cache_bucket(context, "offices")
    if "all" not in bucket:
        all_offices = data_manager.find(context.workbook, data_manager.OFFICES)
        bucket["all"] = all_offices
        bucket["by_id"] = {office.office_id: office for office in all_offices}
        log.debug("Populated offices cache with %d entries", len(all_offices))
    return bucket


def _ensure_sources_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = cache_bucket(context, "sources")
    if "all" not in bucket:
        all_sources = data_manager.find(context.workbook, data_manager.SOURCES)
        bucket["all"] = all_sources
        bucket["by_id"] = {source.source_id: source for source in all_sources}
        log.debug("Populated sources cache with %d entries", len(all_sources))
    return bucket


def _ensure_records_cache(context: RuntimeContext, kind: RecordKind) -> Dict[str, Any]:
    """Populate the person record bucket for ``kind`` on demand.

    Family members are joined onto their head record here, ordered by their
    stored position, so every reader sees complete records. Records are kept
    in ``created_at`` order which also places restored records back where
    they were.
    """

    bucket = cache_bucket(context, _records_bucket_name(kind))
    if "all" not in bucket:
        members: Dict[str, List[data_manager.FamilyMemberRow]] = {}
        for row in data_manager.find(
            context.workbook,
            data_manager.FAMILY_MEMBERS,
            lambda member: member.record_kind is kind,
        ):
            members.setdefault(row.record_id, []).append(row)

        records = []
        for record in data_manager.find(context.workbook, data_manager.record_collection(kind)):
            family = sorted(members.get(record.record_id, []), key=lambda row: row.position)
            records.append(replace(record, family_members=tuple(row.to_member() for row in family)))
        records.sort(key=lambda record: record.created_at)

        bucket["all"] = records
        bucket["by_id"] = {record.record_id: record for record in records}
        log.debug("Populated %s record cache with %d entries", kind.value, len(records))
    return bucket


# ---------------------------------------------------------------------------
# Context lifecycle
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context containing a newly opened workbook and
            an empty cache.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


# ---------------------------------------------------------------------------
# Registry reads
# ---------------------------------------------------------------------------


def list_offices(context: RuntimeContext) -> List[data_manager.Office]:
    """Return every registered office in sheet order."""
    return list(_ensure_offices_cache(context)["all"])


def list_sources(context: RuntimeContext) -> List[data_manager.BookingSource]:
    """Return every registered booking source in sheet order."""
    return list(_ensure_sources_cache(context)["all"])


def list_records(context: RuntimeContext, kind: RecordKind) -> List[data_manager.PersonRecord]:
    """Return every live record of ``kind`` ordered by creation time."""
    return list(_ensure_records_cache(context, kind)["all"])


def list_all_records(context: RuntimeContext) -> List[data_manager.PersonRecord]:
    """Return reviewers followed by office records."""
    return [*list_records(context, RecordKind.REVIEWER), *list_records(context, RecordKind.OFFICE)]


def get_office(context: RuntimeContext, office_id: str) -> data_manager.Office:
    """Resolve an office by its identifier.

    Raises:
        MissingReferenceError: If ``office_id`` is unknown.
    """
    cache = _ensure_offices_cache(context)
    try:
        return cache["by_id"][office_id]
    except KeyError as exc:
        log.warning("Office lookup failed for id '%s'", office_id)
        raise MissingReferenceError(f"Unknown office id: {office_id}") from exc


def get_source(context: RuntimeContext, source_id: str) -> data_manager.BookingSource:
    """Resolve a booking source by its identifier.

    Raises:
        MissingReferenceError: If ``source_id`` is unknown.
    """
    cache = _ensure_sources_cache(context)
    try:
        return cache["by_id"][source_id]
    except KeyError as exc:
        log.warning("Source lookup failed for id '%s'", source_id)
        raise MissingReferenceError(f"Unknown source id: {source_id}") from exc


def get_record(context: RuntimeContext, kind: RecordKind, record_id: str) -> data_manager.PersonRecord:
    """Resolve a live person record, family members included.

    Raises:
        MissingReferenceError: If no live record of ``kind`` has ``record_id``.
    """
    cache = _ensure_records_cache(context, kind)
    try:
        return cache["by_id"][record_id]
    except KeyError as exc:
        log.warning("%s record lookup failed for id '%s'", kind.value, record_id)
        raise MissingReferenceError(f"Unknown {kind.value} record id: {record_id}") from exc


def find_office_by_name(context: RuntimeContext, office_name: str) -> Optional[data_manager.Office]:
    """Return the office whose trimmed name equals ``office_name`` trimmed."""
    wanted = office_name.strip()
    for office in _ensure_offices_cache(context)["all"]:
        if office.office_name.strip() == wanted:
            return office
    return None


def office_matches(record: data_manager.PersonRecord, office: data_manager.Office) -> bool:
    """Tell whether ``record`` belongs to ``office``.

    Records carrying an ``office_id`` are matched by id. Legacy records only
    have the ``affiliation`` string and are matched on trimmed equality with
    the office name; interior whitespace differences do not match.
    """
    if record.kind is not RecordKind.OFFICE:
        return False
    if record.office_id:
        return record.office_id == office.office_id
    return (record.affiliation or "").strip() == office.office_name.strip()


def office_for_record(context: RuntimeContext, record: data_manager.PersonRecord) -> Optional[data_manager.Office]:
    """Return the office financing an office record, or ``None``."""
    if record.kind is not RecordKind.OFFICE:
        return None
    if record.office_id:
        return _ensure_offices_cache(context)["by_id"].get(record.office_id)
    return find_office_by_name(context, record.affiliation or "")


# ---------------------------------------------------------------------------
# Registry writes
# ---------------------------------------------------------------------------


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def require_valid_price_list(prices: data_manager.PriceList) -> None:
    """Validate every price of a price list."""
    for attribute in data_manager.PRICE_COLUMN_MAP:
        require_nonnegative_money(getattr(prices, attribute))


def _price_field_values(prices: data_manager.PriceList) -> Dict[str, Any]:
    return data_manager.serialize_prices(prices)


def register_office(context: RuntimeContext, command: OfficeCommand) -> data_manager.Office:
    """Register an office together with its current price list.

    Office names double as the legacy foreign key held by office records,
    so trimmed names must be unique, as must usernames.

    Raises:
        BusinessRuleViolation: If the name is blank or the name or username
            is already taken.
        ValueError: If a price is negative.
    """
    office_name = command.office_name.strip()
    username = command.username.strip()
    if not office_name or not username:
        raise BusinessRuleViolation("Office name and username are required")
    if find_office_by_name(context, office_name) is not None:
        log.warning("Rejected duplicate office name '%s'", office_name)
        raise BusinessRuleViolation(f"Office '{office_name}' already exists")
    if any(office.username == username for office in list_offices(context)):
        log.warning("Rejected duplicate office username '%s'", username)
        raise BusinessRuleViolation(f"Username '{username}' is already in use")
    require_valid_price_list(command.prices)

    timestamp = resolve_timestamp(command.timestamp)
    office = data_manager.Office(
        office_id=generate_id(prefix="O", when=timestamp),
        office_name=office_name,
        username=username,
        password=command.password,
        phone=command.phone,
        prices=command.prices,
        created_at=data_manager.format_timestamp(timestamp),
    )
    data_manager.insert(context.workbook, data_manager.OFFICES, office)
    invalidate_cache(context, "offices")
    log.info("Registered office '%s' (%s)", office.office_name, office.office_id)
    return office


def register_source(context: RuntimeContext, command: SourceCommand) -> data_manager.BookingSource:
    """Register an external booking source and its price list."""
    source_name = command.source_name.strip()
    if not source_name:
        raise BusinessRuleViolation("Source name is required")
    require_valid_price_list(command.prices)

    timestamp = resolve_timestamp(command.timestamp)
    source = data_manager.BookingSource(
        source_id=generate_id(prefix="S", when=timestamp),
        source_name=source_name,
        phone_number=command.phone_number,
        prices=command.prices,
        created_at=data_manager.format_timestamp(timestamp),
        created_by=command.created_by or context.settings.recorded_by,
    )
    data_manager.insert(context.workbook, data_manager.SOURCES, source)
    invalidate_cache(context, "sources")
    log.info("Registered booking source '%s' (%s)", source.source_name, source.source_id)
    return source


def update_office_prices(
    context: RuntimeContext, office_id: str, prices: data_manager.PriceList
) -> data_manager.Office:
    """Replace an office's current price list.

    Only future bookings see the new prices; frozen prices on existing
    records are left untouched.
    """
    get_office(context, office_id)
    require_valid_price_list(prices)
    data_manager.update_where(
        context.workbook,
        data_manager.OFFICES,
        lambda office: office.office_id == office_id,
        _price_field_values(prices),
    )
    invalidate_cache(context, "offices")
    log.info("Updated price list for office '%s'", office_id)
    return get_office(context, office_id)


def update_source_prices(
    context: RuntimeContext, source_id: str, prices: data_manager.PriceList
) -> data_manager.BookingSource:
    """Replace a booking source's current price list."""
    get_source(context, source_id)
    require_valid_price_list(prices)
    data_manager.update_where(
        context.workbook,
        data_manager.SOURCES,
        lambda source: source.source_id == source_id,
        _price_field_values(prices),
    )
    invalidate_cache(context, "sources")
    log.info("Updated price list for source '%s'", source_id)
    return get_source(context, source_id)


def rename_office(context: RuntimeContext, office_id: str, new_name: str) -> data_manager.Office:
    """Rename an office and carry the new name onto its records' affiliation.

    Returns:
        data_manager.Office: The renamed office.

    Raises:
        BusinessRuleViolation: If ``new_name`` is blank or used by another
            office.
    """
    office = get_office(context, office_id)
    new_name = new_name.strip()
    if not new_name:
        raise BusinessRuleViolation("Office name is required")
    clash = find_office_by_name(context, new_name)
    if clash is not None and clash.office_id != office_id:
        raise BusinessRuleViolation(f"Office '{new_name}' already exists")

    moved = data_manager.update_where(
        context.workbook,
        data_manager.OFFICE_RECORDS,
        lambda record: office_matches(record, office),
        {"Affiliation": new_name},
    )
    data_manager.update_where(
        context.workbook,
        data_manager.OFFICES,
        lambda candidate: candidate.office_id == office_id,
        {"OfficeName": new_name},
    )
    invalidate_cache(context, "offices", _records_bucket_name(RecordKind.OFFICE))
    log.info("Renamed office '%s' to '%s' (%d records re-labelled)", office.office_name, new_name, moved)
    return get_office(context, office_id)


def remove_office(context: RuntimeContext, office_id: str) -> int:
    """Delete an office, re-labelling its records as belonging to a removed office.

    Returns:
        int: Number of records re-labelled.
    """
    office = get_office(context, office_id)
    moved = data_manager.update_where(
        context.workbook,
        data_manager.OFFICE_RECORDS,
        lambda record: office_matches(record, office),
        {"Affiliation": DELETED_OFFICE_LABEL, "OfficeID": None},
    )
    data_manager.delete_where(
        context.workbook,
        data_manager.OFFICES,
        lambda candidate: candidate.office_id == office_id,
    )
    invalidate_cache(context, "offices", _records_bucket_name(RecordKind.OFFICE))
    log.info("Removed office '%s' (%d records re-labelled)", office.office_name, moved)
    return moved


def backfill_office_ids(context: RuntimeContext) -> int:
    """Populate ``office_id`` on legacy office records matched by affiliation.

    This is the one-time migration from name-based to id-based office links.
    Records whose affiliation matches no office keep an empty id.

    Returns:
        int: Number of records linked.
    """
    linked = 0
    for office in list_offices(context):
        linked += data_manager.update_where(
            context.workbook,
            data_manager.OFFICE_RECORDS,
            lambda record, office=office: not record.office_id and office_matches(record, office),
            {"OfficeID": office.office_id},
        )
    invalidate_cache(context, _records_bucket_name(RecordKind.OFFICE))
    log.info("Backfilled office ids on %d records", linked)
    return linked


# ---------------------------------------------------------------------------
# Person records
# ---------------------------------------------------------------------------


def _family_row(
    record_id: str, kind: RecordKind, position: int, member: data_manager.FamilyMember
) -> data_manager.FamilyMemberRow:
    return data_manager.FamilyMemberRow(
        member_id=member.member_id,
        record_id=record_id,
        record_kind=kind,
        position=position,
        relationship=member.relationship,
        full_name=member.full_name,
        surname=member.surname,
        mother_name=member.mother_name,
        dob=member.dob,
    )


def _insert_family(
    context: RuntimeContext,
    record_id: str,
    kind: RecordKind,
    members: Iterable[data_manager.FamilyMember],
) -> None:
    for position, member in enumerate(members):
        data_manager.insert(
            context.workbook, data_manager.FAMILY_MEMBERS, _family_row(record_id, kind, position, member)
        )


def _require_free_family_ids(context: RuntimeContext, members: Sequence[data_manager.FamilyMember]) -> None:
    """Reject family member ids that repeat or already belong to a live row.

    Runs before anything is written so a rejected record leaves no rows.
    """
    seen: set[str] = set()
    for member in members:
        if member.member_id in seen:
            raise BusinessRuleViolation(f"Family member id {member.member_id} is repeated")
        seen.add(member.member_id)
    if not seen:
        return
    taken = data_manager.find(
        context.workbook, data_manager.FAMILY_MEMBERS, lambda row: row.member_id in seen
    )
    if taken:
        raise BusinessRuleViolation(f"Family member id {taken[0].member_id} is already in use")


def _reinstate_family(context: RuntimeContext, record: data_manager.PersonRecord) -> None:
    live = {
        row.member_id
        for row in data_manager.find(
            context.workbook,
            data_manager.FAMILY_MEMBERS,
            lambda row: row.record_id == record.record_id and row.record_kind is record.kind,
        )
    }
    for position, member in enumerate(record.family_members):
        if member.member_id not in live:
            data_manager.insert(
                context.workbook,
                data_manager.FAMILY_MEMBERS,
                _family_row(record.record_id, record.kind, position, member),
            )


def _delete_family(context: RuntimeContext, record_id: str, kind: RecordKind) -> int:
    return data_manager.delete_where(
        context.workbook,
        data_manager.FAMILY_MEMBERS,
        lambda row: row.record_id == record_id and row.record_kind is kind,
    )


def add_person_record(context: RuntimeContext, command: RecordCommand) -> data_manager.PersonRecord:
    """Create a reviewer or office record with its ordered family members.

    Office records must name their office. When the affiliation matches a
    registered office its id is stored alongside the legacy name.

    Raises:
        BusinessRuleViolation: If the name is blank or an office record has
            no affiliation, or a family member id repeats or is
            already in use.
        PersistenceFailure: If the family rows could not be written.
    """
    if not command.full_name.strip():
        raise BusinessRuleViolation("Full name is required")
    if not isinstance(command.circle_type, CircleType):
        raise BusinessRuleViolation(f"Unsupported circle type: {command.circle_type}")

    affiliation = None
    office_id = None
    if command.kind is RecordKind.OFFICE:
        affiliation = (command.affiliation or "").strip()
        if not affiliation:
            raise BusinessRuleViolation("Office records require an affiliation")
        office = find_office_by_name(context, affiliation)
        office_id = office.office_id if office is not None else None

    timestamp = resolve_timestamp(command.timestamp)
    record = data_manager.PersonRecord(
        record_id=command.record_id or generate_id(prefix="R", when=timestamp),
        kind=command.kind,
        circle_type=command.circle_type,
        full_name=command.full_name.strip(),
        surname=command.surname,
        mother_name=command.mother_name,
        dob=command.dob,
        phone=command.phone,
        notes=command.notes,
        created_at=data_manager.format_timestamp(timestamp),
        affiliation=affiliation,
        office_id=office_id,
        table_number=command.table_number,
        family_members=tuple(command.family_members),
    )
    _require_free_family_ids(context, record.family_members)
    collection = data_manager.record_collection(command.kind)
    try:
        data_manager.insert(context.workbook, collection, record)
    except data_manager.DuplicateKeyError as exc:
        raise BusinessRuleViolation(f"Record id {record.record_id} is already in use") from exc

    try:
        _insert_family(context, record.record_id, command.kind, record.family_members)
    except Exception as exc:
        log.error(
            "Writing family of %s record '%s' failed; removing the record: %s",
            command.kind.value,
            record.record_id,
            exc,
        )
        _delete_family(context, record.record_id, command.kind)
        data_manager.delete_where(context.workbook, collection, lambda row: row.record_id == record.record_id)
        raise PersistenceFailure(f"Could not add record {record.record_id}") from exc
    finally:
        invalidate_cache(context, _records_bucket_name(command.kind))
    log.info(
        "Added %s record '%s' with %d family members",
        command.kind.value,
        record.record_id,
        len(record.family_members),
    )
    return record


def change_circle_type(
    context: RuntimeContext, kind: RecordKind, record_id: str, circle_type: CircleType
) -> data_manager.PersonRecord:
    """Move a record to another circle.

    A booked record keeps its booking-time price list, so it is billed at
    the new circle's price as it stood when the booking was made.
    """
    get_record(context, kind, record_id)
    data_manager.update_where(
        context.workbook,
        data_manager.record_collection(kind),
        lambda record: record.record_id == record_id,
        {"CircleType": circle_type.value},
    )
    invalidate_cache(context, _records_bucket_name(kind))
    log.info("Moved %s record '%s' to circle %s", kind.value, record_id, circle_type.value)
    return get_record(context, kind, record_id)


# ---------------------------------------------------------------------------
# Pricing snapshot
# ---------------------------------------------------------------------------


def freeze_price(
    record: data_manager.PersonRecord, price_list: Optional[data_manager.PriceList]
) -> Decimal:
    """Return the price to freeze onto ``record`` at booking time.

    The price list's entry for the record's circle type is selected, with
    unmapped circles billed at the ``others`` price. Without a price list
    the frozen price is zero.
    """
    if price_list is None:
        return Decimal("0")
    return price_list.price_for(record.circle_type)


def snapshot_prices(price_list: Optional[data_manager.PriceList]) -> data_manager.PriceList:
    """Return the price list to store on a record at booking time.

    The whole list is kept so a later circle change still reads a
    booking-time price. Without a price list every circle freezes zero.
    """
    return price_list if price_list is not None else data_manager.PriceList()


def resolve_financing_price_list(
    context: RuntimeContext,
    record: data_manager.PersonRecord,
    source_id: Optional[str],
) -> Optional[data_manager.PriceList]:
    """Find the price list that prices a booking of ``record``.

    Office records are priced by their office; reviewers by the source
    financing the booking. A reviewer booked without a source has no
    financing entity and freezes zero.

    When the referenced office or source cannot be found the price silently
    degrades to zero, unless ``StrictPriceLookup`` is enabled.

    Raises:
        MissingReferenceError: If the financing entity is missing and the
            strict lookup policy is on.
    """
    if record.kind is RecordKind.OFFICE:
        office = office_for_record(context, record)
        if office is not None:
            return office.prices
        missing = f"office '{record.affiliation}'"
    elif source_id:
        source = _ensure_sources_cache(context)["by_id"].get(source_id)
        if source is not None:
            return source.prices
        missing = f"source '{source_id}'"
    else:
        log.debug("Reviewer '%s' booked without a source; freezing zero", record.record_id)
        return None

    if context.settings.strict_price_lookup:
        log.error("Price lookup failed for record '%s': %s not found", record.record_id, missing)
        raise MissingReferenceError(f"Cannot price record {record.record_id}: {missing} not found")
    log.warning("Price lookup failed for record '%s': %s not found; freezing zero", record.record_id, missing)
    return None


def book_record(context: RuntimeContext, command: BookingCommand) -> data_manager.PersonRecord:
    """Move a record from unbooked to booked and freeze its price.

    The price is captured only on the unbooked to booked transition. Booking
    a record that is already booked leaves it untouched, so its frozen price
    cannot drift.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        command (BookingCommand): Booking intent; ``source_id`` links the
            booking to an external source.

    Returns:
        data_manager.PersonRecord: The record after the booking.

    Raises:
        BusinessRuleViolation: If the record is archived or has no circle.
        MissingReferenceError: If the record is unknown, or the financing
            entity is missing under strict price lookup.
    """
    record = get_record(context, command.kind, command.record_id)
    if record.is_booked:
        log.info("Record '%s' is already booked; keeping frozen price %s", record.record_id, record.frozen_price)
        return record
    if record.is_archived:
        log.warning("Attempted to book archived record '%s'", record.record_id)
        raise BusinessRuleViolation(f"Record '{record.record_id}' is archived")
    if record.circle_type is None:
        raise BusinessRuleViolation(f"Record '{record.record_id}' has no circle type")

    price_list = resolve_financing_price_list(context, record, command.source_id)
    frozen = freeze_price(record, price_list)
    timestamp = resolve_timestamp(command.timestamp)

    data_manager.update_where(
        context.workbook,
        data_manager.record_collection(command.kind),
        lambda candidate: candidate.record_id == record.record_id,
        {
            "IsBooked": True,
            "BookingCreatedAt": data_manager.format_timestamp(timestamp),
            "BookingImage": command.booking_image or record.booking_image,
            "BookingDate": command.booking_date or record.booking_date,
            "BookedSourceID": command.source_id,
            **data_manager.serialize_prices(snapshot_prices(price_list), data_manager.FROZEN_PRICE_COLUMN_MAP),
        },
    )
    invalidate_cache(context, _records_bucket_name(command.kind))
    log.info(
        "Booked %s record '%s' (circle=%s, source=%s, frozen price=%s)",
        command.kind.value,
        record.record_id,
        record.circle_type.value,
        command.source_id,
        frozen,
    )
    return get_record(context, command.kind, record.record_id)


def unbook_record(context: RuntimeContext, kind: RecordKind, record_id: str) -> data_manager.PersonRecord:
    """Return a record to the unbooked state.

    Booking metadata, the source link, the frozen price, and the upload flag
    are all cleared so a later re-booking freezes a fresh price.
    """
    record = get_record(context, kind, record_id)
    if not record.has_booking_evidence:
        log.info("Record '%s' is not booked; nothing to unbook", record_id)
        return record

    data_manager.update_where(
        context.workbook,
        data_manager.record_collection(kind),
        lambda candidate: candidate.record_id == record_id,
        {
            "IsBooked": False,
            "BookingCreatedAt": None,
            "BookingImage": None,
            "BookingDate": None,
            "BookedSourceID": None,
            **data_manager.serialize_prices(data_manager.PriceList(), data_manager.FROZEN_PRICE_COLUMN_MAP),
            "IsUploaded": False,
            "UploadedSourceID": None,
        },
    )
    invalidate_cache(context, _records_bucket_name(kind))
    log.info("Unbooked %s record '%s'", kind.value, record_id)
    return get_record(context, kind, record_id)


def relink_booking_source(
    context: RuntimeContext, kind: RecordKind, record_id: str, source_id: Optional[str]
) -> data_manager.PersonRecord:
    """Point a booked record at another source, or detach it with ``None``.

    The frozen price is kept as captured.
    """
    record = get_record(context, kind, record_id)
    if not record.has_booking_evidence:
        raise BusinessRuleViolation(f"Record '{record_id}' is not booked")
    if source_id is not None:
        get_source(context, source_id)

    data_manager.update_where(
        context.workbook,
        data_manager.record_collection(kind),
        lambda candidate: candidate.record_id == record_id,
        {"BookedSourceID": source_id},
    )
    invalidate_cache(context, _records_bucket_name(kind))
    log.info("Linked %s record '%s' to source '%s'", kind.value, record_id, source_id)
    return get_record(context, kind, record_id)


def set_upload_status(
    context: RuntimeContext,
    kind: RecordKind,
    record_ids: Sequence[str],
    uploaded: bool,
    source_id: Optional[str] = None,
) -> int:
    """Flag records as uploaded (delivered externally) or not.

    This workflow flag is independent of settlement. Clearing it also
    clears the upload source.

    Returns:
        int: Number of records updated.
    """
    if not record_ids:
        return 0
    if uploaded and source_id is not None:
        get_source(context, source_id)

    wanted = set(record_ids)
    updated = data_manager.update_where(
        context.workbook,
        data_manager.record_collection(kind),
        lambda record: record.record_id in wanted,
        {"IsUploaded": uploaded, "UploadedSourceID": source_id if uploaded else None},
    )
    invalidate_cache(context, _records_bucket_name(kind))
    log.info("Set upload status=%s on %d %s records", uploaded, updated, kind.value)
    return updated


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def archive_record(context: RuntimeContext, kind: RecordKind, record_id: str) -> data_manager.PersonRecord:
    """Archive a record; its frozen price is kept for audit."""
    get_record(context, kind, record_id)
    data_manager.update_where(
        context.workbook,
        data_manager.record_collection(kind),
        lambda record: record.record_id == record_id,
        {"IsArchived": True},
    )
    invalidate_cache(context, _records_bucket_name(kind))
    log.info("Archived %s record '%s'", kind.value, record_id)
    return get_record(context, kind, record_id)


def unarchive_record(
    context: RuntimeContext, kind: RecordKind, record_id: str, *, force: bool = False
) -> data_manager.PersonRecord:
    """Return an archived record to the active set.

    A record archived by a full settlement would re-create debt that was
    already paid, so it is refused unless ``force`` is set. Forcing clears
    the settlement marker.

    Raises:
        BusinessRuleViolation: If the record was settled and ``force`` is
            not set.
    """
    record = get_record(context, kind, record_id)
    if record.settled_by_transaction_id and not force:
        log.warning(
            "Refused to unarchive record '%s' settled by '%s'",
            record_id,
            record.settled_by_transaction_id,
        )
        raise BusinessRuleViolation(
            f"Record '{record_id}' was settled by {record.settled_by_transaction_id}; "
            "unarchiving would re-open paid debt"
        )

    data_manager.update_where(
        context.workbook,
        data_manager.record_collection(kind),
        lambda candidate: candidate.record_id == record_id,
        {"IsArchived": False, "SettledByTransactionID": None},
    )
    invalidate_cache(context, _records_bucket_name(kind))
    log.info("Unarchived %s record '%s'", kind.value, record_id)
    return get_record(context, kind, record_id)


def trash_record(
    context: RuntimeContext,
    kind: RecordKind,
    record_id: str,
    *,
    deleted_by: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.RecycleBinRow:
    """Move a record, family included, into the recycle bin.

    The snapshot is written before the live rows are deleted. Family rows go
    first and the record row last. If any delete fails the removed family
    rows are reinstated and the snapshot is withdrawn, so the record always
    exists in exactly one place.

    Raises:
        MissingReferenceError: If the record is unknown.
        PersistenceFailure: If the live rows could not be deleted.
    """
    record = get_record(context, kind, record_id)
    moment = resolve_timestamp(timestamp)
    entry = data_manager.RecycleBinRow(
        bin_id=generate_id(prefix="B", when=moment),
        original_id=record.record_id,
        record_type=kind,
        full_name=record.full_name,
        deleted_by=deleted_by or context.settings.recorded_by,
        deleted_at=data_manager.format_timestamp(moment),
        original_data=data_manager.record_to_json(record),
    )
    data_manager.insert(context.workbook, data_manager.RECYCLE_BIN, entry)

    try:
        _delete_family(context, record_id, kind)
        data_manager.delete_where(
            context.workbook,
            data_manager.record_collection(kind),
            lambda candidate: candidate.record_id == record_id,
        )
    except Exception as exc:
        log.error("Deleting %s record '%s' failed; withdrawing bin entry: %s", kind.value, record_id, exc)
        _reinstate_family(context, record)
        data_manager.delete_where(
            context.workbook,
            data_manager.RECYCLE_BIN,
            lambda row: row.bin_id == entry.bin_id,
        )
        raise PersistenceFailure(f"Could not move record {record_id} to the recycle bin") from exc
    finally:
        invalidate_cache(context, _records_bucket_name(kind))

    log.info("Moved %s record '%s' to recycle bin entry '%s'", kind.value, record_id, entry.bin_id)
    return entry


def trash_records(
    context: RuntimeContext,
    kind: RecordKind,
    record_ids: Sequence[str],
    *,
    deleted_by: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> List[data_manager.RecycleBinRow]:
    """Move several records to the recycle bin, one snapshot each."""
    return [
        trash_record(context, kind, record_id, deleted_by=deleted_by, timestamp=timestamp)
        for record_id in record_ids
    ]


def _retention_cutoff(context: RuntimeContext, now: Optional[datetime]) -> datetime:
    return resolve_timestamp(now) - timedelta(hours=context.settings.trash_retention_hours)


def _is_retained(entry: data_manager.RecycleBinRow, cutoff: datetime) -> bool:
    return data_manager.parse_timestamp(entry.deleted_at) > cutoff


def list_trash(
    context: RuntimeContext,
    *,
    now: Optional[datetime] = None,
    query: Optional[str] = None,
) -> List[data_manager.RecycleBinRow]:
    """List recoverable recycle bin entries, newest first.

    Entries older than the retention window are hidden but not purged.
    ``query`` filters by a case-insensitive substring of the full name.
    """
    cutoff = _retention_cutoff(context, now)
    needle = query.strip().lower() if query else None
    entries = [
        entry
        for entry in data_manager.find(context.workbook, data_manager.RECYCLE_BIN)
        if _is_retained(entry, cutoff) and (needle is None or needle in entry.full_name.lower())
    ]
    entries.sort(key=lambda entry: entry.deleted_at, reverse=True)
    return entries


def restore_from_trash(
    context: RuntimeContext, bin_id: str, *, now: Optional[datetime] = None
) -> data_manager.PersonRecord:
    """Re-insert a trashed record, family included, and drop its bin entry.

    The original id, ``created_at`` and frozen price are preserved, so the
    record returns to its previous position and financial state.

    Raises:
        MissingReferenceError: If the bin entry is unknown or expired.
        RestoreConflictError: If a live record already uses the id, or a
            live family row uses one of its member ids.
    """
    matches = data_manager.find(
        context.workbook, data_manager.RECYCLE_BIN, lambda row: row.bin_id == bin_id
    )
    if not matches:
        raise MissingReferenceError(f"Unknown recycle bin entry: {bin_id}")
    entry = matches[0]
    if not _is_retained(entry, _retention_cutoff(context, now)):
        log.warning("Recycle bin entry '%s' is past the retention window", bin_id)
        raise MissingReferenceError(f"Recycle bin entry {bin_id} has expired")

    record = data_manager.record_from_json(entry.original_data)
    collection = data_manager.record_collection(record.kind)
    try:
        _require_free_family_ids(context, record.family_members)
    except BusinessRuleViolation as exc:
        log.error("Restore of '%s' conflicts with live family rows", bin_id)
        raise RestoreConflictError(str(exc)) from exc

    try:
        data_manager.insert(context.workbook, collection, record)
    except data_manager.DuplicateKeyError as exc:
        log.error("Restore of '%s' conflicts with live record '%s'", bin_id, record.record_id)
        raise RestoreConflictError(f"Record {record.record_id} already exists") from exc
    _insert_family(context, record.record_id, record.kind, record.family_members)

    data_manager.delete_where(context.workbook, data_manager.RECYCLE_BIN, lambda row: row.bin_id == bin_id)
    invalidate_cache(context, _records_bucket_name(record.kind))
    log.info("Restored %s record '%s' from bin entry '%s'", record.kind.value, record.record_id, bin_id)
    return get_record(context, record.kind, record.record_id)


# ---------------------------------------------------------------------------
# Booking listings
# ---------------------------------------------------------------------------


def _filter_bookings(
    records: Iterable[data_manager.PersonRecord],
    *,
    circle_type: Optional[CircleType],
    office_name: Optional[str],
    source_id: Optional[str],
    manual_only: bool,
    booking_date: Optional[str],
) -> List[data_manager.PersonRecord]:
    result = []
    for record in records:
        if circle_type is not None and record.circle_type != circle_type:
            continue
        if office_name is not None and (record.affiliation or "").strip() != office_name.strip():
            continue
        if manual_only and record.booked_source_id:
            continue
        if source_id is not None and record.booked_source_id != source_id:
            continue
        if booking_date is not None and record.booking_date != booking_date:
            continue
        result.append(record)
    return result


def list_completed_bookings(
    context: RuntimeContext,
    kind: Optional[RecordKind] = None,
    *,
    circle_type: Optional[CircleType] = None,
    office_name: Optional[str] = None,
    source_id: Optional[str] = None,
    manual_only: bool = False,
    booking_date: Optional[str] = None,
) -> List[data_manager.PersonRecord]:
    """Return booked, non-archived records matching every given filter.

    ``manual_only`` keeps bookings with no source link.
    """
    records = list_records(context, kind) if kind is not None else list_all_records(context)
    return _filter_bookings(
        (record for record in records if record.has_booking_evidence and not record.is_archived),
        circle_type=circle_type,
        office_name=office_name,
        source_id=source_id,
        manual_only=manual_only,
        booking_date=booking_date,
    )


def list_archived_bookings(
    context: RuntimeContext,
    kind: Optional[RecordKind] = None,
    *,
    circle_type: Optional[CircleType] = None,
    office_name: Optional[str] = None,
    source_id: Optional[str] = None,
    manual_only: bool = False,
    booking_date: Optional[str] = None,
) -> List[data_manager.PersonRecord]:
    """Return archived records matching every given filter."""
    records = list_records(context, kind) if kind is not None else list_all_records(context)
    return _filter_bookings(
        (record for record in records if record.is_archived),
        circle_type=circle_type,
        office_name=office_name,
        source_id=source_id,
        manual_only=manual_only,
        booking_date=booking_date,
    )
