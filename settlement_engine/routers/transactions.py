"""
Transactions router — read access to the ledger for reporting.

Endpoints:
  GET /transactions                                   — by time range
  GET /transactions/{transaction_id}                  — one record
  GET /transactions/merchant/{merchant_id}/{reference} — by idempotency key
  GET /transactions/wallet/{wallet}                   — a merchant's records
  GET /transactions/wallet/{wallet}/recent            — latest N
  GET /transactions/wallet/{wallet}/stats             — aggregates per period

All endpoints require the operator key. Nothing here writes.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.database import get_db
from settlement_engine.dependencies import require_operator
from settlement_engine.exceptions import TransactionNotFoundError
from settlement_engine.schemas.transaction import (
    PaginationInfo,
    TransactionResponse,
    TransactionStatsResponse,
    WalletTransactionsResponse,
)
from settlement_engine.services import ledger, merchant_resolver

router = APIRouter(dependencies=[Depends(require_operator)])

STATS_PERIODS = {
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
    "1y": timedelta(days=365),
}


@router.get(
    "",
    response_model=list[TransactionResponse],
    summary="List transactions in a time range",
)
async def list_transactions(
    start: datetime = Query(..., description="Inclusive lower bound on event time"),
    end: datetime = Query(..., description="Exclusive upper bound on event time"),
    merchant_id: uuid.UUID | None = None,
    status: str | None = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    return await ledger.list_by_time_range(
        db,
        start=_aware(start),
        end=_aware(end),
        merchant_id=merchant_id,
        status=status,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/merchant/{merchant_id}/{reference}",
    response_model=TransactionResponse,
    summary="Get a transaction by merchant and reference",
)
async def get_by_reference(
    merchant_id: uuid.UUID,
    reference: str,
    db: AsyncSession = Depends(get_db),
):
    txn = await ledger.get_by_reference(db, merchant_id, reference)
    if txn is None:
        raise TransactionNotFoundError(f"{merchant_id}/{reference}")
    return txn


@router.get(
    "/wallet/{wallet}",
    response_model=WalletTransactionsResponse,
    summary="List a merchant wallet's transactions",
)
async def list_wallet_transactions(
    wallet: str,
    status: str | None = None,
    method: str | None = None,
    currency: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """
    Filter a merchant's transactions.

    - **status / method / currency**: case-insensitive exact match
    - **start / end**: inclusive bounds on event time
    """
    merchant = await merchant_resolver.resolve(db, wallet_address=wallet)
    transactions, total = await ledger.list_by_wallet(
        db,
        merchant.wallet_address,
        status=status,
        method=method,
        currency=currency,
        start=_aware(start),
        end=_aware(end),
        limit=limit,
        offset=offset,
    )
    return WalletTransactionsResponse(
        merchant_id=merchant.merchant_id,
        wallet_address=merchant.wallet_address,
        transactions=[TransactionResponse.model_validate(txn) for txn in transactions],
        pagination=PaginationInfo(
            total_count=total,
            limit=limit,
            offset=offset,
            has_next_page=offset + len(transactions) < total,
        ),
    )


@router.get(
    "/wallet/{wallet}/recent",
    response_model=list[TransactionResponse],
    summary="Most recent transactions for a merchant wallet",
)
async def recent_wallet_transactions(
    wallet: str,
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    merchant = await merchant_resolver.resolve(db, wallet_address=wallet)
    return await ledger.recent_by_wallet(db, merchant.wallet_address, limit=limit)


@router.get(
    "/wallet/{wallet}/stats",
    response_model=TransactionStatsResponse,
    summary="Transaction statistics for a merchant wallet",
)
async def wallet_stats(
    wallet: str,
    period: Literal["7d", "30d", "90d", "1y"] = "30d",
    db: AsyncSession = Depends(get_db),
):
    merchant = await merchant_resolver.resolve(db, wallet_address=wallet)
    period_end = datetime.now(timezone.utc)
    period_start = period_end - STATS_PERIODS[period]
    summary = await ledger.summarize(db, merchant.merchant_id, since=period_start)
    return TransactionStatsResponse(
        merchant_id=merchant.merchant_id,
        period=period,
        period_start=period_start,
        period_end=period_end,
        **summary,
    )


@router.get(
    "/{transaction_id}",
    response_model=TransactionResponse,
    summary="Get a transaction",
)
async def get_transaction(
    transaction_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    return await ledger.get_transaction(db, transaction_id)


def _aware(value: datetime | None) -> datetime | None:
    # Query strings without an offset are taken as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
