"""
Custom exception classes and FastAPI exception handlers.

Why custom exceptions?
  The engine's services (normalizer, resolver, ledger, dispatcher) raise
  domain-specific errors without importing HTTP concepts. The router layer
  translates these into HTTP responses, and the settlement dispatcher
  absorbs the settlement-time ones into the transaction's `settlement`
  record instead of propagating them to event producers.

Exception hierarchy:
    SettlementEngineError (base)
    ├── ValidationError              — malformed event, never persisted
    │   ├── MissingReferenceError
    │   └── InvalidAmountError
    ├── MerchantNotFoundError        — no merchant for id/wallet
    ├── InvalidMerchantIdError       — merchant id is not a UUID
    ├── MerchantMismatchError        — id and wallet name different merchants
    ├── ConflictError                — lost an upsert race (absorbed)
    ├── TransactionNotFoundError
    ├── WebhookSignatureError
    └── SettlementError              — recorded as FAILED on the transaction
        ├── MissingPayoutAccountError
        ├── MissingPayoutWalletError
        ├── ProviderError
        └── ConversionError
            ├── UnsupportedPairError
            └── FeedUnavailableError
"""

import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


# ---------------------------------------------------------------------------
# Base exception
# ---------------------------------------------------------------------------

class SettlementEngineError(Exception):
    """Base exception for all settlement engine domain errors."""

    error_type = "settlement_engine_error"

    def __init__(self, detail: str = "An error occurred"):
        self.detail = detail
        super().__init__(self.detail)


# ---------------------------------------------------------------------------
# Ingestion errors (surface to producers)
# ---------------------------------------------------------------------------

class ValidationError(SettlementEngineError):
    """Raised when an inbound event cannot be normalized."""

    error_type = "validation_error"


class MissingReferenceError(ValidationError):
    """Raised when no idempotency reference can be resolved from an event."""

    error_type = "missing_reference"

    def __init__(self, source: str):
        self.source = source
        super().__init__(f"Unable to resolve a transaction reference from {source} event")


class InvalidAmountError(ValidationError):
    """Raised when an amount field cannot be parsed as an exact decimal."""

    error_type = "invalid_amount"

    def __init__(self, field: str, value: object):
        self.field = field
        self.value = value
        super().__init__(f"Invalid amount for {field}: {value!r}")


class MerchantNotFoundError(SettlementEngineError):
    """Raised when no merchant matches the supplied id or wallet address."""

    error_type = "merchant_not_found"

    def __init__(self, detail: str = "Merchant not found"):
        super().__init__(detail)


class InvalidMerchantIdError(SettlementEngineError):
    """Raised when a merchant id is not a valid identifier."""

    error_type = "invalid_merchant_id"

    def __init__(self, merchant_id: object):
        self.merchant_id = merchant_id
        super().__init__(f"Invalid merchant id: {merchant_id!r}")


class MerchantMismatchError(SettlementEngineError):
    """Raised when the merchant id and wallet address belong to different merchants."""

    error_type = "merchant_mismatch"

    def __init__(self, merchant_id: uuid.UUID, wallet_address: str):
        self.merchant_id = merchant_id
        self.wallet_address = wallet_address
        super().__init__(
            f"Wallet {wallet_address} does not belong to merchant {merchant_id}"
        )


class ConflictError(SettlementEngineError):
    """Raised when a concurrent writer won the race for the same reference."""

    error_type = "conflict"


class TransactionNotFoundError(SettlementEngineError):
    """Raised when a requested transaction does not exist."""

    error_type = "transaction_not_found"

    def __init__(self, transaction_id: object):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} not found")


class WebhookSignatureError(SettlementEngineError):
    """Raised when an inbound webhook or operator call fails verification."""

    error_type = "invalid_signature"

    def __init__(self, detail: str = "Invalid or missing signature"):
        super().__init__(detail)


# ---------------------------------------------------------------------------
# Settlement errors (recorded on the transaction, never sent to producers)
# ---------------------------------------------------------------------------

class SettlementError(SettlementEngineError):
    """Base class for failures that end a settlement attempt in FAILED."""

    error_type = "settlement_error"


class MissingPayoutAccountError(SettlementError):
    """Raised when a fiat payout has no bank account number or bank code."""

    error_type = "missing_payout_account"


class MissingPayoutWalletError(SettlementError):
    """Raised when a crypto payout has no merchant wallet address."""

    error_type = "missing_payout_wallet"

    def __init__(self, detail: str = "Merchant wallet address is required for crypto settlement"):
        super().__init__(detail)


class ProviderError(SettlementError):
    """
    Raised when the fiat gateway or the chain rejects a payout.

    Attributes:
        provider: Provider name ("FLUTTERWAVE", "CONTRACT").
        provider_message: The provider's own message, kept verbatim for audit.
    """

    error_type = "provider_error"

    def __init__(self, provider: str, detail: str, provider_message: str | None = None):
        self.provider = provider
        self.provider_message = provider_message
        super().__init__(detail)


class ConversionError(SettlementError):
    """Base class for currency conversion failures."""

    error_type = "conversion_error"


class UnsupportedPairError(ConversionError):
    """Raised when no direct rate exists for the requested currency pair."""

    error_type = "unsupported_pair"

    def __init__(self, from_currency: str, to_currency: str):
        self.from_currency = from_currency
        self.to_currency = to_currency
        super().__init__(f"Unsupported pair: {from_currency}/{to_currency}")


class FeedUnavailableError(ConversionError):
    """Raised when an upstream price feed cannot be read."""

    error_type = "feed_unavailable"


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------

_STATUS_CODES: list[tuple[type[SettlementEngineError], int]] = [
    (ValidationError, 422),
    (InvalidMerchantIdError, 422),
    (MerchantNotFoundError, 404),
    (TransactionNotFoundError, 404),
    (MerchantMismatchError, 409),
    (ConflictError, 409),
    (WebhookSignatureError, 401),
    (ProviderError, 502),
    (ConversionError, 502),
    (SettlementError, 422),
]


def status_code_for(exc: SettlementEngineError) -> int:
    """Most specific HTTP status for a domain error (500 when unmapped)."""
    for exc_type, status_code in _STATUS_CODES:
        if isinstance(exc, exc_type):
            return status_code
    return 500


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register the domain exception handler with the FastAPI application.

    Every domain error is rendered as {"detail": ..., "error_type": ...}
    with the status code from status_code_for(). Called once in main.py.
    """

    @app.exception_handler(SettlementEngineError)
    async def settlement_engine_error_handler(
        request: Request, exc: SettlementEngineError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status_code_for(exc),
            content={"detail": exc.detail, "error_type": exc.error_type},
        )
