"""
Pydantic schemas for inbound payment events.

  - NormalizedEvent: the canonical shape both producers are mapped into by
    the event normalizer. It is what the reconciliation coordinator and the
    ledger store consume.
  - ChainEventRequest: request body for POST /events/chain — one decoded
    PaymentRecorded log plus its log metadata, as pushed by an external
    chain-log subscriber.

Amounts in ChainEventRequest are base-unit integers (token smallest units);
amounts in NormalizedEvent are exact Decimals in major units.
"""

import enum
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from settlement_engine.models.transaction import PaymentMethod, Provider, SourceKind


class NormalizedEvent(BaseModel):
    """Canonical payment event, independent of which producer emitted it."""

    reference: str
    source_kind: SourceKind
    provider: Provider
    method: PaymentMethod
    payment_type: str | None = None
    payer: str | None = None

    amount: Decimal
    amount_raw: str | None = None
    fiat_equivalent: Decimal | None = None
    fiat_currency: str | None = None
    charge_fee: Decimal | None = None
    symbol: str | None = None
    currency: str | None = None

    source_status: str | None = None
    event_timestamp: datetime | None = None

    # Chain context (CRYPTO producer only)
    tx_hash: str | None = None
    block_number: int | None = None
    network: str | None = None

    # Merchant context carried by the event, resolved by the coordinator
    merchant_id: str | None = None
    merchant_wallet_address: str | None = None

    provider_response: dict[str, Any] | None = None
    event_metadata: dict[str, Any] | None = None

    def ledger_fields(self) -> dict[str, Any]:
        """
        Column values for the ledger upsert, with empty values stripped.

        None, empty strings and empty dicts are dropped so a sparse
        re-delivery never blanks out fields an earlier event filled in.
        Merchant context is excluded — the coordinator resolves it.
        """
        raw = self.model_dump(exclude={"merchant_id", "merchant_wallet_address"})
        fields: dict[str, Any] = {}
        for key, value in raw.items():
            if value is None or value == "" or value == {}:
                continue
            if isinstance(value, enum.Enum):
                value = value.value
            fields[key] = value
        return fields


class ChainEventRequest(BaseModel):
    """
    Request body for POST /events/chain.

    Field names accept both the contract's camelCase (txRef, tokenSymbol)
    and snake_case.
    """

    model_config = ConfigDict(populate_by_name=True)

    payer: str | None = None
    merchant: str | None = None
    amount: int = Field(ge=0, description="Token amount in base units")
    token_symbol: str | None = Field(None, alias="tokenSymbol")
    fiat_equivalent: int | None = Field(None, ge=0, alias="fiatEquivalent")
    fiat_currency: str | None = Field(None, alias="fiatCurrency")
    tx_ref: str = Field(alias="txRef", min_length=1)
    timestamp: int | None = None
    payment_type: str | None = Field(None, alias="paymentType")
    status: str | None = None
    charge_fee: int | None = Field(None, ge=0, alias="chargeFee")

    transaction_hash: str | None = Field(None, alias="transactionHash")
    block_number: int | None = Field(None, alias="blockNumber")
    network: str | None = None
    merchant_id: str | None = Field(None, alias="merchantId")
