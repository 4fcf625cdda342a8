"""
Pydantic schemas for ledger records, settlement results and reporting.

Monetary amounts are exact Decimals; FastAPI serializes them as strings so
no client ever sees a binary float.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel


class ChainContextResponse(BaseModel):
    tx_hash: str | None
    block_number: int | None
    network: str | None


class TransactionResponse(BaseModel):
    """Public representation of a ledger record."""
    id: uuid.UUID
    merchant_id: uuid.UUID
    merchant_wallet_address: str | None
    reference: str
    payer: str | None
    source_kind: str
    payment_type: str | None
    amount: Decimal
    amount_raw: str | None
    fiat_equivalent: Decimal | None
    fiat_currency: str
    charge_fee: Decimal
    symbol: str | None
    currency: str
    method: str
    provider: str
    status: str
    source_status: str | None
    event_timestamp: datetime | None
    recorded_at: datetime | None
    chain_context: ChainContextResponse | None
    settlement: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class SettlementResult(BaseModel):
    """
    Outcome of one settle() call.

    outcome:
      - "SETTLED": this call paid the merchant
      - "ALREADY_SETTLED": the record was SETTLED before the call; no payout
      - "IN_PROGRESS": another settlement holds the record; no payout
      - "NOT_SETTLEABLE": the producer did not report the payment as
        successful; no payout
      - "FAILED": this call failed; the error is recorded on the transaction
    """
    transaction_id: uuid.UUID
    reference: str
    outcome: Literal["SETTLED", "ALREADY_SETTLED", "IN_PROGRESS", "NOT_SETTLEABLE", "FAILED"]
    status: str
    settlement: dict[str, Any] | None = None


class SweepResponse(BaseModel):
    """Result of a stale-settlement sweep."""
    recovered: list[uuid.UUID]
    resubmitted: list[uuid.UUID]


class PaginationInfo(BaseModel):
    total_count: int
    limit: int
    offset: int
    has_next_page: bool


class WalletTransactionsResponse(BaseModel):
    """Transactions for one merchant wallet, with pagination info."""
    merchant_id: uuid.UUID
    wallet_address: str
    transactions: list[TransactionResponse]
    pagination: PaginationInfo


class TransactionStatsResponse(BaseModel):
    """Aggregates over a merchant's transactions since `period_start`."""
    merchant_id: uuid.UUID
    period: str
    period_start: datetime
    period_end: datetime
    total_transactions: int
    total_amount: Decimal
    settled_transactions: int
    settled_amount: Decimal
    pending_transactions: int
    processing_transactions: int
    failed_transactions: int
    success_rate: Decimal
    payment_methods: list[str]
    currencies: list[str]
