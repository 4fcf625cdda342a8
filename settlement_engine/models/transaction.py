"""
Transaction model — the unified ledger record, one per (merchant, reference).

A Transaction is created by the first normalized event for a reference
(fiat webhook or chain log) and refined by every later event for the same
reference. The settlement dispatcher then drives it through the settlement
state machine:

    PENDING ──> PROCESSING ──> SETTLED
                    │   ^
                    v   │  (retry)
                  FAILED

  - PENDING is the only initial state.
  - PROCESSING is claimed with a conditional UPDATE before any external
    call, so a second concurrent settlement sees it and stays away.
  - SETTLED is terminal; settling again returns the stored settlement.
  - FAILED is recoverable: a retry claims it back to PROCESSING.

Two status fields:
  `status` is the ledger/settlement state above. `source_status` is what
  the producer reported (e.g. "SUCCESSFUL", "PENDING") and is kept for
  audit only; events never move `status`.

Amounts:
  `amount`, `fiat_equivalent` and `charge_fee` are exact Decimals stored as
  strings (see DecimalString). `amount_raw` keeps the producer's base-unit
  integer string (token smallest units or fiat minor units) for audit.

Never deleted:
  Failed settlements stay in the table for operator inspection and retry.
"""

import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import String, BigInteger, DateTime, ForeignKey, JSON, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from settlement_engine.database import Base
from settlement_engine.models.types import DecimalString


class TransactionStatus(str, enum.Enum):
    """Settlement state of a ledger record."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SETTLED = "SETTLED"
    FAILED = "FAILED"


class SourceKind(str, enum.Enum):
    """Whether the payment is denominated in fiat or a crypto token."""
    FIAT = "FIAT"
    CRYPTO = "CRYPTO"


class PaymentMethod(str, enum.Enum):
    CARD = "CARD"
    BANK = "BANK"
    WALLET = "WALLET"
    CRYPTO = "CRYPTO"
    FIAT = "FIAT"


class Provider(str, enum.Enum):
    CONTRACT = "CONTRACT"
    FLUTTERWAVE = "FLUTTERWAVE"
    MANUAL = "MANUAL"


class Transaction(Base):
    __tablename__ = "transactions"

    __table_args__ = (
        # The idempotency key: one ledger record per merchant + reference.
        # The upsert's ON CONFLICT target is this constraint.
        UniqueConstraint("merchant_id", "reference", name="uq_transactions_merchant_reference"),
        Index("ix_transactions_wallet_event_ts", "merchant_wallet_address", "event_timestamp"),
        Index("ix_transactions_payer_event_ts", "payer", "event_timestamp"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    # Owning merchant, immutable after creation
    merchant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("merchants.id"),
        nullable=False,
        index=True,
    )

    merchant_wallet_address: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Upstream gateway tx_ref or on-chain txRef
    reference: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
    )

    # Wallet address (lower-cased) or gateway customer identifier
    payer: Mapped[str | None] = mapped_column(String(255), nullable=True)

    source_kind: Mapped[str] = mapped_column(String(10), nullable=False)
    payment_type: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # --- Money ---
    amount: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    amount_raw: Mapped[str | None] = mapped_column(String(80), nullable=True)
    fiat_equivalent: Mapped[Decimal | None] = mapped_column(DecimalString, nullable=True)
    fiat_currency: Mapped[str] = mapped_column(String(10), nullable=False, default="NGN")
    charge_fee: Mapped[Decimal] = mapped_column(DecimalString, nullable=False, default=Decimal("0"))
    symbol: Mapped[str | None] = mapped_column(String(16), nullable=True)
    currency: Mapped[str] = mapped_column(String(16), nullable=False, default="NGN")

    method: Mapped[str] = mapped_column(String(10), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False, default=Provider.CONTRACT.value)

    # Ledger settlement state (see module docstring)
    status: Mapped[str] = mapped_column(
        String(12),
        nullable=False,
        default=TransactionStatus.PENDING.value,
        index=True,
    )

    # Producer-reported status, audit only
    source_status: Mapped[str | None] = mapped_column(String(32), nullable=True)

    event_timestamp: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
    )
    recorded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # --- Chain context (crypto-sourced records only) ---
    tx_hash: Mapped[str | None] = mapped_column(String(80), nullable=True, index=True)
    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    network: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Most recent settlement attempt: lastRunAt, method, provider, reference,
    # status, error, details
    settlement: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    # Set when a settlement claims the record; drives the stale-PROCESSING sweep
    settlement_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    provider_response: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    event_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    @property
    def chain_context(self) -> dict[str, Any] | None:
        if self.tx_hash is None and self.block_number is None and self.network is None:
            return None
        return {
            "tx_hash": self.tx_hash,
            "block_number": self.block_number,
            "network": self.network,
        }
