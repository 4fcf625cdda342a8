"""
Ledger store — idempotent writes and reads over Transaction records.

THIS IS WHERE THE IDEMPOTENCY GUARANTEES LIVE. It handles:
  - Upserting a normalized event by (merchant_id, reference)
  - Claiming a record for settlement with a conditional status update
  - Recording settlement outcomes
  - Read accessors for reporting (by reference, wallet, time range)

Atomic upsert:
  On SQLite and PostgreSQL the upsert is ONE statement:

      INSERT ... ON CONFLICT (merchant_id, reference) DO UPDATE SET ...

  so two deliveries of the same reference racing each other can never
  create two rows; the later statement merges into the row the earlier one
  created. On other dialects the insert runs inside a SAVEPOINT and a
  unique-constraint violation (ConflictError) falls back to a conditional
  UPDATE, which is equivalent.

Merge rules on conflict:
  - `status` and `settlement` are never written by events.
  - Audit fields (source status, chain context, raw provider payload,
    metadata, recorded_at) are always refreshed.
  - Every other field is only overwritten while the record is still
    PENDING. Once settlement has started, amounts and parties are frozen.
  - Only non-empty fields are written (NormalizedEvent.ledger_fields()).

Status transitions are all conditional UPDATEs (WHERE status IN ...), so
concurrent settlement attempts are serialized by the database, not by any
in-process lock.
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import case, func, literal, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.exceptions import ConflictError, TransactionNotFoundError
from settlement_engine.models.transaction import Transaction, TransactionStatus
from settlement_engine.schemas.events import NormalizedEvent
from settlement_engine.schemas.merchant import MerchantContext

logger = logging.getLogger(__name__)

PENDING = TransactionStatus.PENDING.value
PROCESSING = TransactionStatus.PROCESSING.value
SETTLED = TransactionStatus.SETTLED.value
FAILED = TransactionStatus.FAILED.value

# Refreshed by every delivery, whatever the settlement state
ALWAYS_MERGED = frozenset({
    "source_status",
    "tx_hash",
    "block_number",
    "network",
    "provider_response",
    "event_metadata",
    "recorded_at",
})

FIAT_PAYOUT_CURRENCIES = frozenset({"NGN", "USD", "EUR"})

# Producer statuses meaning the payer's funds actually arrived
SETTLEABLE_SOURCE_STATUSES = frozenset({
    "SUCCESSFUL",
    "SUCCESS",
    "SUCCEEDED",
    "COMPLETED",
    "CONFIRMED",
    "PAID",
})

_table = Transaction.__table__


def source_succeeded(txn: Transaction) -> bool:
    """True when the producer reported the payment as successful."""
    return (txn.source_status or "").upper() in SETTLEABLE_SOURCE_STATUSES


def is_settleable(txn: Transaction) -> bool:
    """True when the record awaits its first settlement and the payment succeeded upstream."""
    return txn.status == PENDING and source_succeeded(txn)


def default_fiat_currency(merchant: MerchantContext) -> str:
    """The merchant's preferred currency when it is fiat, otherwise NGN."""
    preferred = (merchant.payout_currency or "").upper()
    return preferred if preferred in FIAT_PAYOUT_CURRENCIES else "NGN"


# ---------------------------------------------------------------------------
# Upsert
# ---------------------------------------------------------------------------

async def upsert_event(
    db: AsyncSession,
    merchant: MerchantContext,
    event: NormalizedEvent,
) -> Transaction:
    """
    Insert or merge the ledger record for (merchant, event.reference).

    A new record starts in PENDING. An existing record is merged following
    the rules in the module docstring.

    Args:
        db: Database session. The caller commits.
        merchant: Resolved owning merchant.
        event: Normalized event.

    Returns:
        The Transaction as stored after the write.
    """
    now = datetime.now(timezone.utc)
    fields = event.ledger_fields()
    fields["recorded_at"] = now
    fields.pop("reference", None)

    insert_values: dict[str, Any] = {
        "fiat_currency": default_fiat_currency(merchant),
        **fields,
        "id": uuid.uuid4(),
        "merchant_id": merchant.merchant_id,
        "merchant_wallet_address": merchant.wallet_address,
        "reference": event.reference,
        "status": PENDING,
        "created_at": now,
        "updated_at": now,
    }

    dialect = db.get_bind().dialect.name
    if dialect in ("sqlite", "postgresql"):
        await _native_upsert(db, dialect, insert_values, fields, now)
    else:
        try:
            await _insert_new(db, insert_values)
        except ConflictError:
            logger.info(
                "Insert race lost for reference %s, merging into existing record",
                event.reference,
            )
            await _merge_existing(db, merchant.merchant_id, event.reference, fields, now)

    txn = await get_by_reference(db, merchant.merchant_id, event.reference)
    if txn is None:
        # The statement above either inserted or updated this exact key
        raise TransactionNotFoundError(event.reference)
    return txn


def _merge_assignments(fields: dict[str, Any], incoming, now: datetime) -> dict[str, Any]:
    assignments: dict[str, Any] = {}
    for key in fields:
        value = incoming(key)
        if key in ALWAYS_MERGED:
            assignments[key] = value
        else:
            assignments[key] = case(
                (_table.c.status == PENDING, value),
                else_=_table.c[key],
            )
    assignments["updated_at"] = now
    return assignments


async def _native_upsert(
    db: AsyncSession,
    dialect: str,
    insert_values: dict[str, Any],
    fields: dict[str, Any],
    now: datetime,
) -> None:
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert

    stmt = insert(Transaction).values(**insert_values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["merchant_id", "reference"],
        set_=_merge_assignments(fields, lambda key: stmt.excluded[key], now),
    )
    await db.execute(stmt)


async def _insert_new(db: AsyncSession, insert_values: dict[str, Any]) -> None:
    from sqlalchemy import insert

    try:
        async with db.begin_nested():
            await db.execute(insert(Transaction).values(**insert_values))
    except IntegrityError as exc:
        raise ConflictError(f"Reference {insert_values['reference']} already recorded") from exc


async def _merge_existing(
    db: AsyncSession,
    merchant_id: uuid.UUID,
    reference: str,
    fields: dict[str, Any],
    now: datetime,
) -> None:
    assignments = _merge_assignments(
        fields,
        lambda key: literal(fields[key], type_=_table.c[key].type),
        now,
    )
    await db.execute(
        update(Transaction)
        .where(Transaction.merchant_id == merchant_id)
        .where(Transaction.reference == reference)
        .values(**assignments)
    )


# ---------------------------------------------------------------------------
# Settlement state transitions
# ---------------------------------------------------------------------------

async def claim_for_settlement(db: AsyncSession, transaction_id: uuid.UUID) -> bool:
    """
    Move a PENDING or FAILED record to PROCESSING.

    This is the double-payout guard: it is a single conditional UPDATE,
    so of two concurrent claims exactly one sees rowcount == 1.

    Returns:
        True if this call claimed the record.
    """
    now = datetime.now(timezone.utc)
    result = await db.execute(
        update(Transaction)
        .where(Transaction.id == transaction_id)
        .where(Transaction.status.in_([PENDING, FAILED]))
        .values(status=PROCESSING, settlement_started_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def record_settlement_success(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    settlement: dict[str, Any],
) -> bool:
    """
    Mark a record SETTLED with its settlement metadata.

    Applies from PROCESSING and also from FAILED: a sweep may have marked
    a slow attempt as interrupted while the payout was in fact completing,
    and a completed payout must always be recorded.
    """
    result = await db.execute(
        update(Transaction)
        .where(Transaction.id == transaction_id)
        .where(Transaction.status.in_([PROCESSING, FAILED]))
        .values(status=SETTLED, settlement=settlement, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def record_settlement_failure(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    settlement: dict[str, Any],
) -> bool:
    """Mark a PROCESSING (or already swept FAILED) record FAILED with the error."""
    result = await db.execute(
        update(Transaction)
        .where(Transaction.id == transaction_id)
        .where(Transaction.status.in_([PROCESSING, FAILED]))
        .values(status=FAILED, settlement=settlement, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def mark_interrupted(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    started_before: datetime,
    settlement: dict[str, Any],
) -> bool:
    """FAIL a PROCESSING record whose settlement started before the cutoff."""
    result = await db.execute(
        update(Transaction)
        .where(Transaction.id == transaction_id)
        .where(Transaction.status == PROCESSING)
        .where(Transaction.settlement_started_at < started_before)
        .values(status=FAILED, settlement=settlement, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_transaction(db: AsyncSession, transaction_id: uuid.UUID) -> Transaction:
    """
    Get a ledger record by id, always reloading from the database.

    Raises:
        TransactionNotFoundError: If no such record exists.
    """
    result = await db.execute(
        select(Transaction)
        .where(Transaction.id == transaction_id)
        .execution_options(populate_existing=True)
    )
    txn = result.scalar_one_or_none()
    if txn is None:
        raise TransactionNotFoundError(transaction_id)
    return txn


async def get_by_reference(
    db: AsyncSession,
    merchant_id: uuid.UUID,
    reference: str,
) -> Transaction | None:
    result = await db.execute(
        select(Transaction)
        .where(Transaction.merchant_id == merchant_id)
        .where(Transaction.reference == reference)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_by_wallet(
    db: AsyncSession,
    wallet_address: str,
    status: str | None = None,
    method: str | None = None,
    currency: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[Transaction], int]:
    """
    List a merchant wallet's records, newest event first.

    Filters are optional and case-insensitive for status/method/currency.
    The date range applies to event_timestamp (inclusive on both ends).

    Returns:
        (page of transactions, total matching count)
    """
    conditions = [Transaction.merchant_wallet_address == wallet_address.lower()]
    if status:
        conditions.append(Transaction.status == status.upper())
    if method:
        conditions.append(Transaction.method == method.upper())
    if currency:
        conditions.append(Transaction.currency == currency.upper())
    if start:
        conditions.append(Transaction.event_timestamp >= start)
    if end:
        conditions.append(Transaction.event_timestamp <= end)

    total = await db.scalar(select(func.count()).select_from(Transaction).where(*conditions))
    result = await db.execute(
        select(Transaction)
        .where(*conditions)
        .order_by(Transaction.event_timestamp.desc(), Transaction.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), total or 0


async def recent_by_wallet(db: AsyncSession, wallet_address: str, limit: int = 10) -> list[Transaction]:
    result = await db.execute(
        select(Transaction)
        .where(Transaction.merchant_wallet_address == wallet_address.lower())
        .order_by(Transaction.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_by_time_range(
    db: AsyncSession,
    start: datetime,
    end: datetime,
    merchant_id: uuid.UUID | None = None,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Transaction]:
    """List records whose event_timestamp falls in [start, end), oldest first."""
    query = (
        select(Transaction)
        .where(Transaction.event_timestamp >= start)
        .where(Transaction.event_timestamp < end)
        .order_by(Transaction.event_timestamp.asc())
        .limit(limit)
        .offset(offset)
    )
    if merchant_id is not None:
        query = query.where(Transaction.merchant_id == merchant_id)
    if status:
        query = query.where(Transaction.status == status.upper())

    result = await db.execute(query)
    return list(result.scalars().all())


async def list_failed(db: AsyncSession, limit: int = 50, offset: int = 0) -> list[Transaction]:
    result = await db.execute(
        select(Transaction)
        .where(Transaction.status == FAILED)
        .order_by(Transaction.updated_at.asc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())


async def list_stale_processing(db: AsyncSession, started_before: datetime) -> list[Transaction]:
    """PROCESSING records whose settlement began before the cutoff."""
    result = await db.execute(
        select(Transaction)
        .where(Transaction.status == PROCESSING)
        .where(Transaction.settlement_started_at < started_before)
        .order_by(Transaction.settlement_started_at.asc())
    )
    return list(result.scalars().all())


async def summarize(db: AsyncSession, merchant_id: uuid.UUID, since: datetime) -> dict[str, Any]:
    """
    Aggregate a merchant's records created since `since`.

    Amounts are stored as exact decimal strings, so sums are computed in
    Python with Decimal rather than with SQL SUM().
    """
    result = await db.execute(
        select(Transaction.status, Transaction.amount, Transaction.method, Transaction.currency)
        .where(Transaction.merchant_id == merchant_id)
        .where(Transaction.created_at >= since)
    )
    rows = result.all()

    counts = {PENDING: 0, PROCESSING: 0, SETTLED: 0, FAILED: 0}
    total_amount = Decimal("0")
    settled_amount = Decimal("0")
    methods: list[str] = []
    currencies: list[str] = []

    for row_status, amount, method, currency in rows:
        counts[row_status] = counts.get(row_status, 0) + 1
        total_amount += amount
        if row_status == SETTLED:
            settled_amount += amount
        if method not in methods:
            methods.append(method)
        if currency not in currencies:
            currencies.append(currency)

    total = len(rows)
    success_rate = (
        (Decimal(counts[SETTLED]) * 100 / Decimal(total)).quantize(Decimal("0.01"))
        if total else Decimal("0.00")
    )

    return {
        "total_transactions": total,
        "total_amount": total_amount,
        "settled_transactions": counts[SETTLED],
        "settled_amount": settled_amount,
        "pending_transactions": counts[PENDING],
        "processing_transactions": counts[PROCESSING],
        "failed_transactions": counts[FAILED],
        "success_rate": success_rate,
        "payment_methods": methods,
        "currencies": currencies,
    }


async def list_orphaned_pending(db: AsyncSession, created_before: datetime) -> list[Transaction]:
    """
    Settleable PENDING records older than the cutoff.

    These were recorded but never reached a settlement worker, for example
    because the process stopped with them still queued.
    """
    result = await db.execute(
        select(Transaction)
        .where(Transaction.status == PENDING)
        .where(Transaction.source_status.in_(sorted(SETTLEABLE_SOURCE_STATUSES)))
        .where(Transaction.created_at < created_before)
        .order_by(Transaction.created_at.asc())
    )
    return list(result.scalars().all())
