"""Money owed between the operator, offices and booking sources.

The functions here answer three questions for a financing entity (an office
or a booking source): how much its active bookings are worth, how much it has
paid over its lifetime, and whether a payment closes the account. A payment
that covers everything owed archives the bookings it paid for, which resets
the amount owed to zero while the ledger keeps every payment.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from . import data_manager, log
from .constants import CircleType, EntityType, RecordKind
from .core_logic import (
    FinancingEntity,
    InvalidSettlementAmount,
    PersistenceFailure,
    RuntimeContext,
    cache_bucket,
    generate_id,
    get_office,
    get_source,
    invalidate_cache,
    list_all_records,
    list_offices,
    list_records,
    list_sources,
    office_matches,
    resolve_timestamp,
)

ZERO = Decimal("0")


@dataclass(frozen=True)
class SettlementCommand:
    """User intent for paying down an office or source account."""

    entity_type: EntityType
    entity_id: str
    amount: Decimal
    notes: Optional[str] = None
    recorded_by: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SettlementResult:
    """Outcome of :func:`settle`."""

    transaction: data_manager.SettlementRow
    total_owed: Decimal
    total_paid: Decimal
    outstanding_balance: Decimal
    archived: bool
    archived_count: int


@dataclass(frozen=True)
class AccountSummary:
    """Debt position of one office or source."""

    entity_type: EntityType
    entity_id: str
    entity_name: str
    bookings_count: int
    total_owed: Decimal
    total_paid: Decimal
    balance: Decimal
    circle_counts: Dict[CircleType, int] = field(default_factory=dict)
    circle_totals: Dict[CircleType, Decimal] = field(default_factory=dict)


@dataclass(frozen=True)
class AccountStatement:
    """Account summary plus the records and payments behind it."""

    summary: AccountSummary
    records: List[data_manager.PersonRecord]
    settlements: List[data_manager.SettlementRow]


def require_positive_amount(amount: Decimal) -> None:
    """Validate a settlement amount.

    Raises:
        InvalidSettlementAmount: If ``amount`` is zero or negative.
    """
    if amount <= ZERO:
        log.error("Settlement amount validation failed: %s", amount)
        raise InvalidSettlementAmount(f"Settlement amount must be greater than zero, got {amount}")


def entity_id_of(entity: FinancingEntity) -> str:
    """Return the office or source id of ``entity``."""
    if isinstance(entity, data_manager.Office):
        return entity.office_id
    return entity.source_id


def entity_name_of(entity: FinancingEntity) -> str:
    """Return the display name of ``entity``."""
    if isinstance(entity, data_manager.Office):
        return entity.office_name
    return entity.source_name


def get_entity(context: RuntimeContext, entity_type: EntityType, entity_id: str) -> FinancingEntity:
    """Resolve the office or source an account belongs to.

    Raises:
        MissingReferenceError: If the entity is unknown.
    """
    if entity_type is EntityType.OFFICE:
        return get_office(context, entity_id)
    return get_source(context, entity_id)


# ---------------------------------------------------------------------------
# Debt aggregation
# ---------------------------------------------------------------------------


def qualifies_for_debt(
    record: data_manager.PersonRecord, entity: FinancingEntity, entity_type: EntityType
) -> bool:
    """Tell whether ``record`` is an active booking billed to ``entity``.

    Office accounts count the office's own records carrying booking
    evidence. Source accounts count every record linked to the source,
    reviewers and office records alike. Archived records never count.
    """
    if record.is_archived:
        return False
    if entity_type is EntityType.OFFICE:
        return office_matches(record, entity) and record.has_booking_evidence
    return record.booked_source_id == entity_id_of(entity)


def price_owed_for(
    record: data_manager.PersonRecord, current_prices: Optional[data_manager.PriceList]
) -> Decimal:
    """Return the amount one record contributes to a debt.

    The booking-time price for the record's current circle is
    authoritative. A missing or zero frozen price falls back to the current price list, which
    covers records booked before prices were captured.
    """
    frozen = record.frozen_price
    if frozen > ZERO:
        return frozen
    if current_prices is None:
        return ZERO
    return current_prices.price_for(record.circle_type)


def qualifying_records(
    entity: FinancingEntity,
    entity_type: EntityType,
    records: Iterable[data_manager.PersonRecord],
) -> List[data_manager.PersonRecord]:
    """Filter ``records`` down to the active bookings billed to ``entity``.

    These are exactly the records a full settlement archives.
    """
    return [record for record in records if qualifies_for_debt(record, entity, entity_type)]


def compute_owed(
    entity: FinancingEntity,
    entity_type: EntityType,
    records: Iterable[data_manager.PersonRecord],
) -> Decimal:
    """Sum the value of the active bookings billed to ``entity``.

    This is a pure function over the supplied records; identical inputs
    always produce the same total.

    Args:
        entity: The office or booking source whose account is evaluated.
        entity_type (EntityType): Which kind of account ``entity`` is.
        records: Every live record to consider, of either kind.

    Returns:
        Decimal: Total owed, zero when nothing qualifies.
    """
    return sum(
        (price_owed_for(record, entity.prices) for record in qualifying_records(entity, entity_type, records)),
        ZERO,
    )


def calculate_owed(context: RuntimeContext, entity_type: EntityType, entity_id: str) -> Decimal:
    """Return the live amount owed by an office or source."""
    entity = get_entity(context, entity_type, entity_id)
    return compute_owed(entity, entity_type, list_all_records(context))


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


def _settlements_bucket_name(entity_type: EntityType) -> str:
    return f"settlements:{entity_type.value}"


def _ensure_settlements_cache(context: RuntimeContext, entity_type: EntityType) -> Dict[str, object]:
    bucket = cache_bucket(context, _settlements_bucket_name(entity_type))
    if "by_entity" not in bucket:
        by_entity: Dict[str, List[data_manager.SettlementRow]] = {}
        rows = data_manager.find(context.workbook, data_manager.settlement_collection(entity_type))
        for row in rows:
            by_entity.setdefault(row.entity_id, []).append(row)
        bucket["all"] = rows
        bucket["by_entity"] = by_entity
        log.debug("Populated %s settlements cache with %d entries", entity_type.value, len(rows))
    return bucket


def list_settlements(
    context: RuntimeContext, entity_type: EntityType, entity_id: Optional[str] = None
) -> List[data_manager.SettlementRow]:
    """Return ledger entries, newest first, optionally for one entity."""
    bucket = _ensure_settlements_cache(context, entity_type)
    rows = bucket["all"] if entity_id is None else bucket["by_entity"].get(entity_id, [])
    return sorted(rows, key=lambda row: row.transaction_date, reverse=True)


def total_paid(context: RuntimeContext, entity_type: EntityType, entity_id: str) -> Decimal:
    """Return the lifetime sum of payments made by an entity."""
    bucket = _ensure_settlements_cache(context, entity_type)
    return sum((row.amount for row in bucket["by_entity"].get(entity_id, [])), ZERO)


def record_payment(
    context: RuntimeContext,
    entity_type: EntityType,
    entity_id: str,
    amount: Decimal,
    *,
    notes: Optional[str] = None,
    recorded_by: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.SettlementRow:
    """Append an immutable payment to an entity's ledger.

    Ledger rows are never edited or deleted by normal operations; the
    transaction date is assigned here rather than taken from the caller's
    input.

    Returns:
        data_manager.SettlementRow: The stored ledger entry.

    Raises:
        InvalidSettlementAmount: If ``amount`` is not positive.
        MissingReferenceError: If the entity is unknown.
    """
    require_positive_amount(amount)
    get_entity(context, entity_type, entity_id)

    when = resolve_timestamp(timestamp)
    row = data_manager.SettlementRow(
        transaction_id=generate_id(prefix="T", when=when),
        entity_type=entity_type,
        entity_id=entity_id,
        amount=amount,
        transaction_date=data_manager.format_timestamp(when),
        recorded_by=recorded_by or context.settings.recorded_by,
        notes=notes,
    )
    data_manager.insert(context.workbook, data_manager.settlement_collection(entity_type), row)
    invalidate_cache(context, _settlements_bucket_name(entity_type))
    log.info(
        "Recorded %s payment %s of %s for '%s'",
        entity_type.value,
        row.transaction_id,
        amount,
        entity_id,
    )
    return row


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def outstanding_balance(context: RuntimeContext, entity_type: EntityType, entity_id: str) -> Decimal:
    """Return what an entity still owes, floored at zero."""
    owed = calculate_owed(context, entity_type, entity_id)
    return max(ZERO, owed - total_paid(context, entity_type, entity_id))


def _archive_settled(
    context: RuntimeContext,
    records: Sequence[data_manager.PersonRecord],
    transaction_id: str,
) -> int:
    archived = 0
    for kind in RecordKind:
        wanted = {record.record_id for record in records if record.kind is kind}
        if not wanted:
            continue
        archived += data_manager.update_where(
            context.workbook,
            data_manager.record_collection(kind),
            lambda record, wanted=wanted: record.record_id in wanted and not record.is_archived,
            {"IsArchived": True, "SettledByTransactionID": transaction_id},
        )
    return archived


def _release_settled(context: RuntimeContext, transaction_id: str) -> int:
    released = 0
    for kind in RecordKind:
        released += data_manager.update_where(
            context.workbook,
            data_manager.record_collection(kind),
            lambda record: record.settled_by_transaction_id == transaction_id,
            {"IsArchived": False, "SettledByTransactionID": None},
        )
    return released


def settle(context: RuntimeContext, command: SettlementCommand) -> SettlementResult:
    """Record a payment and close the account when it is fully paid.

    The lifetime total paid, including this payment, is compared with the
    amount owed by the active bookings. When it covers them every one of
    those bookings is archived, so the next balance starts from zero.
    Partial payments are recorded without archiving anything.

    If archiving fails part way, the bookings it already archived are
    reopened and the payment is withdrawn, leaving the account as it was.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        command (SettlementCommand): Payment details.

    Returns:
        SettlementResult: The ledger entry and the account totals.

    Raises:
        InvalidSettlementAmount: If the amount is not positive.
        MissingReferenceError: If the entity is unknown.
        PersistenceFailure: If archiving failed after the payment was written.
    """
    entity = get_entity(context, command.entity_type, command.entity_id)
    previously_paid = total_paid(context, command.entity_type, command.entity_id)

    transaction = record_payment(
        context,
        command.entity_type,
        command.entity_id,
        command.amount,
        notes=command.notes,
        recorded_by=command.recorded_by,
        timestamp=command.timestamp,
    )

    records = qualifying_records(entity, command.entity_type, list_all_records(context))
    owed = compute_owed(entity, command.entity_type, records)
    paid = previously_paid + command.amount
    balance = max(ZERO, owed - paid)

    archived_count = 0
    if paid >= owed and records:
        try:
            archived_count = _archive_settled(context, records, transaction.transaction_id)
        except Exception as exc:
            log.error(
                "Archiving after payment %s failed; withdrawing the payment: %s",
                transaction.transaction_id,
                exc,
            )
            released = _release_settled(context, transaction.transaction_id)
            if released:
                log.warning("Reopened %d bookings archived by payment %s", released, transaction.transaction_id)
            data_manager.delete_where(
                context.workbook,
                data_manager.settlement_collection(command.entity_type),
                lambda row: row.transaction_id == transaction.transaction_id,
            )
            raise PersistenceFailure(
                f"Settlement {transaction.transaction_id} rolled back: archiving failed"
            ) from exc
        finally:
            invalidate_cache(
                context,
                _settlements_bucket_name(command.entity_type),
                *(f"records:{kind.value}" for kind in RecordKind),
            )
        log.info(
            "Settled %s '%s' in full: archived %d bookings (owed=%s, paid=%s)",
            command.entity_type.value,
            command.entity_id,
            archived_count,
            owed,
            paid,
        )
    else:
        log.info(
            "Partial settlement for %s '%s': owed=%s, paid=%s, outstanding=%s",
            command.entity_type.value,
            command.entity_id,
            owed,
            paid,
            balance,
        )

    return SettlementResult(
        transaction=transaction,
        total_owed=owed,
        total_paid=paid,
        outstanding_balance=balance,
        archived=archived_count > 0,
        archived_count=archived_count,
    )


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------


def _summarize(
    context: RuntimeContext,
    entity: FinancingEntity,
    entity_type: EntityType,
    records: Sequence[data_manager.PersonRecord],
) -> AccountSummary:
    counts: Counter = Counter()
    totals: Dict[CircleType, Decimal] = {}
    owed = ZERO
    for record in records:
        circle = record.circle_type or CircleType.OTHERS
        price = price_owed_for(record, entity.prices)
        counts[circle] += 1
        totals[circle] = totals.get(circle, ZERO) + price
        owed += price

    entity_id = entity_id_of(entity)
    paid = total_paid(context, entity_type, entity_id)
    return AccountSummary(
        entity_type=entity_type,
        entity_id=entity_id,
        entity_name=entity_name_of(entity),
        bookings_count=len(records),
        total_owed=owed,
        total_paid=paid,
        balance=max(ZERO, owed - paid),
        circle_counts=dict(counts),
        circle_totals=totals,
    )


def account_summary(context: RuntimeContext, entity_type: EntityType, entity_id: str) -> AccountSummary:
    """Return the debt position of one office or source."""
    entity = get_entity(context, entity_type, entity_id)
    records = qualifying_records(entity, entity_type, list_all_records(context))
    return _summarize(context, entity, entity_type, records)


def account_statement(context: RuntimeContext, entity_type: EntityType, entity_id: str) -> AccountStatement:
    """Return an account summary with its active bookings and payment history."""
    entity = get_entity(context, entity_type, entity_id)
    records = qualifying_records(entity, entity_type, list_all_records(context))
    return AccountStatement(
        summary=_summarize(context, entity, entity_type, records),
        records=records,
        settlements=list_settlements(context, entity_type, entity_id),
    )


def accounts_overview(context: RuntimeContext, entity_type: EntityType) -> List[AccountSummary]:
    """Summarize every office or every source, largest balance first."""
    entities: Sequence[FinancingEntity]
    if entity_type is EntityType.OFFICE:
        entities = list_offices(context)
        candidates = list_records(context, RecordKind.OFFICE)
    else:
        entities = list_sources(context)
        candidates = list_all_records(context)

    summaries = [
        _summarize(context, entity, entity_type, qualifying_records(entity, entity_type, candidates))
        for entity in entities
    ]
    summaries.sort(key=lambda summary: summary.balance, reverse=True)
    return summaries


def overview_totals(summaries: Iterable[AccountSummary]) -> Dict[str, Decimal]:
    """Return grand totals for an accounts overview."""
    totals = {"total_owed": ZERO, "total_paid": ZERO, "balance": ZERO}
    for summary in summaries:
        totals["total_owed"] += summary.total_owed
        totals["total_paid"] += summary.total_paid
        totals["balance"] += summary.balance
    return totals
