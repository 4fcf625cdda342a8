"""
Merchant model — the payee identity the engine settles to.

Merchants are owned by the merchant-management collaborator; the settlement
engine only reads them (through the merchant resolver). The table lives in
the same database so the resolver and the ledger share one session.

Wallet addresses:
  Stored lower-cased. Every lookup and comparison lower-cases at the
  boundary, so "0xAbC…" and "0xabc…" resolve to the same merchant.

Payout preferences:
  - payout_method: "bank_transfer", "mobile_money" or "crypto". Only
    "crypto" selects the on-chain credit path; anything else is paid by
    bank transfer.
  - payout_currency: the currency the merchant wants to be paid in.
  - bank_code / routing_number / account_name / bank_name: transfer
    destination. bank_code falls back to routing_number.

Account number encryption:
  The full bank account number is Fernet-encrypted at rest
  (account_number_encrypted). Only the last four digits are stored in
  plaintext for display and logging.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import String, DateTime, LargeBinary
from sqlalchemy.orm import Mapped, mapped_column

from settlement_engine.database import Base


class Merchant(Base):
    __tablename__ = "merchants"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    # Lower-cased EVM address, unique; the lookup key for chain events
    wallet_address: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True,
    )

    business_name: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        nullable=False,
    )

    country: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="Nigeria",
    )

    # "pending", "approved" or "rejected"
    kyc_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="pending",
    )

    # --- Payout preferences ---
    payout_currency: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default="NGN",
    )

    payout_method: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="bank_transfer",
    )

    bank_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    bank_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    routing_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    account_name: Mapped[str | None] = mapped_column(String(150), nullable=True)

    # Fernet ciphertext of the full account number
    account_number_encrypted: Mapped[bytes | None] = mapped_column(
        LargeBinary,
        nullable=True,
    )

    account_number_last_four: Mapped[str | None] = mapped_column(
        String(4),
        nullable=True,
    )

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
