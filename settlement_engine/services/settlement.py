"""
Settlement dispatcher — pays the merchant for one ledger record.

THIS IS WHERE MONEY LEAVES THE SYSTEM. settle(transaction_id):

  1. SETTLED already?  -> return the stored settlement, no external call.
  2. Claim: conditional UPDATE PENDING|FAILED -> PROCESSING, committed
     BEFORE any external I/O. Losing the claim means another settlement
     holds the record -> return IN_PROGRESS, no external call.
  3. Pick the channel from the merchant's payout method:
       "crypto"          -> on-chain creditMerchant (USDT)
       anything else     -> fiat bank transfer through the gateway
  4. Record the outcome: SETTLED with details, or FAILED with the error.

Settlement-time errors (SettlementError subclasses) are absorbed into the
record's `settlement` field and returned as a FAILED result; they never
reach the event producer. Nothing is retried inside a call: a FAILED
record is re-triggered explicitly (operator endpoint or sweep).

No database session is held open across external calls. Each step opens
a short session from the injected session factory.

Amounts:
  Fiat   settle fiat_equivalent (in fiat_currency) when present, otherwise
         amount (in currency). Convert to the merchant's preferred currency,
         then to the gateway settlement currency. A failed conversion falls
         back to the currency already resolved and is recorded under
         details.conversion_fallback; if that currency is still not the
         gateway's, the settlement fails.
  Crypto USDT records settle their own amount. Anything else converts to
         USDT; a failed conversion fails the settlement (no fallback).
         The fee, converted the same way, is passed to the contract
         separately in base units.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement_engine.exceptions import (
    ConversionError,
    MissingPayoutAccountError,
    MissingPayoutWalletError,
    ProviderError,
    SettlementEngineError,
    SettlementError,
)
from settlement_engine.models.transaction import Provider, TransactionStatus
from settlement_engine.schemas.merchant import MerchantContext
from settlement_engine.schemas.transaction import SettlementResult
from settlement_engine.services import ledger, merchant_resolver
from settlement_engine.services.pricing import PriceConversionService
from settlement_engine.services.units import quantize, to_base_units

logger = logging.getLogger(__name__)

STABLE_TOKEN = "USDT"
CRYPTO_PAYOUT_METHOD = "crypto"


class TransferClient(Protocol):
    async def create_transfer(self, payload: dict[str, Any]) -> dict[str, Any]: ...


class ChainClient(Protocol):
    async def credit_merchant(
        self,
        merchant_wallet: str,
        amount_units: int,
        charge_fee_units: int,
        tx_ref: str,
    ) -> dict[str, Any]: ...


@dataclass(frozen=True)
class _Payable:
    """The fields of a claimed record the payout needs, detached from the session."""
    id: uuid.UUID
    reference: str
    amount: Decimal
    currency: str
    fiat_equivalent: Decimal | None
    fiat_currency: str
    charge_fee: Decimal


class SettlementDispatcher:
    """
    Settles ledger records through the fiat gateway or the credit contract.

    All collaborators are injected so tests can pass fakes:

        dispatcher = SettlementDispatcher(
            session_factory=AsyncSessionLocal,
            price_service=PriceConversionService(rate_source),
            transfer_client=FlutterwaveTransferClient(...),
            chain_client=ChainCreditClient(...),
        )
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        price_service: PriceConversionService,
        transfer_client: TransferClient | None,
        chain_client: ChainClient | None,
        *,
        settlement_currency: str = "NGN",
        token_decimals: int = 6,
        fiat_decimals: int = 2,
    ):
        self._session_factory = session_factory
        self._price_service = price_service
        self._transfer_client = transfer_client
        self._chain_client = chain_client
        self._settlement_currency = settlement_currency.upper()
        self._token_decimals = token_decimals
        self._fiat_decimals = fiat_decimals

    async def settle(self, transaction_id: uuid.UUID) -> SettlementResult:
        """
        Run one settlement attempt for a ledger record.

        Returns:
            SettlementResult describing what this call did.

        Raises:
            TransactionNotFoundError: No record with this id.
        """
        async with self._session_factory() as db:
            txn = await ledger.get_transaction(db, transaction_id)
            if txn.status == TransactionStatus.SETTLED.value:
                logger.info("Transaction %s (%s) already settled, skipping", txn.id, txn.reference)
                return _result(txn, "ALREADY_SETTLED")
            if not ledger.source_succeeded(txn):
                logger.info(
                    "Transaction %s (%s) has source status %s, not settling",
                    txn.id, txn.reference, txn.source_status,
                )
                return _result(txn, "NOT_SETTLEABLE")

            claimed = await ledger.claim_for_settlement(db, transaction_id)
            await db.commit()

            # Reload: the claim may have raced a refinement or another claim
            txn = await ledger.get_transaction(db, transaction_id)
            if not claimed:
                outcome = "ALREADY_SETTLED" if txn.status == TransactionStatus.SETTLED.value else "IN_PROGRESS"
                logger.info(
                    "Transaction %s (%s) is %s, another settlement holds it",
                    txn.id, txn.reference, txn.status,
                )
                return _result(txn, outcome)

            payable = _Payable(
                id=txn.id,
                reference=txn.reference,
                amount=txn.amount,
                currency=txn.currency,
                fiat_equivalent=txn.fiat_equivalent,
                fiat_currency=txn.fiat_currency,
                charge_fee=txn.charge_fee or Decimal("0"),
            )
            logger.info("Claimed transaction %s (%s) for settlement", payable.id, payable.reference)

            resolve_error = None
            try:
                merchant = await merchant_resolver.resolve(db, merchant_id=txn.merchant_id)
            except Exception as exc:
                resolve_error = exc

        if isinstance(resolve_error, SettlementEngineError):
            return await self._record_failure(payable, None, None, resolve_error)
        if resolve_error is not None:
            logger.error(
                "Unexpected error loading merchant for transaction %s", payable.id, exc_info=resolve_error
            )
            await self._record_failure(payable, None, None, resolve_error)
            raise resolve_error

        method = "CRYPTO" if merchant.payout_method == CRYPTO_PAYOUT_METHOD else "FIAT"
        try:
            if method == "CRYPTO":
                outcome = await self._settle_crypto(payable, merchant)
            else:
                outcome = await self._settle_fiat(payable, merchant)
        except SettlementError as exc:
            return await self._record_failure(payable, method, merchant, exc)
        except Exception as exc:
            # Unexpected: still leave a terminal state behind before propagating
            logger.exception("Unexpected error settling transaction %s", payable.id)
            await self._record_failure(payable, method, merchant, exc)
            raise

        settlement = {
            "last_run_at": _now_iso(),
            "method": method,
            "provider": outcome["provider"],
            "reference": outcome["reference"],
            "status": "SUCCESS",
            "error": None,
            "details": outcome["details"],
        }
        async with self._session_factory() as db:
            await ledger.record_settlement_success(db, payable.id, settlement)
            await db.commit()

        logger.info(
            "Settled transaction %s (%s) via %s, payout reference %s",
            payable.id, payable.reference, outcome["provider"], outcome["reference"],
        )
        return SettlementResult(
            transaction_id=payable.id,
            reference=payable.reference,
            outcome="SETTLED",
            status=TransactionStatus.SETTLED.value,
            settlement=settlement,
        )

    # ------------------------------------------------------------------
    # Fiat path
    # ------------------------------------------------------------------

    async def _settle_fiat(self, txn: _Payable, merchant: MerchantContext) -> dict[str, Any]:
        if not merchant.account_number:
            raise MissingPayoutAccountError("Merchant is missing payout account number")
        if not merchant.bank_code:
            raise MissingPayoutAccountError(
                "Merchant is missing bank code/routing number required for payout"
            )
        if self._transfer_client is None:
            raise ProviderError(Provider.FLUTTERWAVE.value, "Fiat transfer client is not configured")

        if txn.fiat_equivalent:
            amount, currency = txn.fiat_equivalent, txn.fiat_currency.upper()
        else:
            amount, currency = txn.amount, txn.currency.upper()
        if amount <= 0:
            raise SettlementError("Unable to resolve fiat amount for settlement")

        fallbacks: list[dict[str, str]] = []
        amount, currency = await self._convert_or_fall_back(
            currency, merchant.payout_currency, amount, fallbacks
        )
        amount, currency = await self._convert_or_fall_back(
            currency, self._settlement_currency, amount, fallbacks
        )
        if currency != self._settlement_currency:
            raise ConversionError(
                f"Cannot pay out {currency} through the fiat gateway "
                f"(settles in {self._settlement_currency})"
            )

        payout_reference = f"PAYOUT-{txn.reference}-{int(datetime.now(timezone.utc).timestamp() * 1000)}"
        payload: dict[str, Any] = {
            "account_bank": merchant.bank_code,
            "account_number": merchant.account_number,
            "amount": str(quantize(amount, self._fiat_decimals)),
            "currency": currency,
            "narration": f"Settlement for {merchant.business_name or 'merchant'} ({txn.reference})",
            "reference": payout_reference,
            "debit_currency": currency,
        }
        if merchant.account_name:
            payload["beneficiary_name"] = merchant.account_name

        response = await self._transfer_client.create_transfer(payload)

        # The full account number stays out of the stored audit trail
        audit_request = {**payload, "account_number": f"****{merchant.account_number_last_four}"}
        details: dict[str, Any] = {"request": audit_request, "response": response}
        if fallbacks:
            details["conversion_fallback"] = fallbacks
        return {
            "provider": Provider.FLUTTERWAVE.value,
            "reference": payout_reference,
            "details": details,
        }

    async def _convert_or_fall_back(
        self,
        from_currency: str,
        to_currency: str,
        amount: Decimal,
        fallbacks: list[dict[str, str]],
    ) -> tuple[Decimal, str]:
        to_upper = to_currency.upper()
        if from_currency == to_upper:
            return amount, from_currency
        try:
            return await self._price_service.convert(from_currency, to_upper, amount), to_upper
        except ConversionError as exc:
            logger.warning(
                "Conversion %s -> %s failed, keeping %s: %s",
                from_currency, to_upper, from_currency, exc.detail,
            )
            fallbacks.append({"from": from_currency, "to": to_upper, "error": exc.detail})
            return amount, from_currency

    # ------------------------------------------------------------------
    # Crypto path
    # ------------------------------------------------------------------

    async def _settle_crypto(self, txn: _Payable, merchant: MerchantContext) -> dict[str, Any]:
        if not merchant.wallet_address:
            raise MissingPayoutWalletError()
        if self._chain_client is None:
            raise ProviderError(Provider.CONTRACT.value, "Chain credit client is not configured")

        if txn.currency.upper() == STABLE_TOKEN:
            usdt_amount = txn.amount
            usdt_fee = txn.charge_fee
        else:
            if txn.fiat_equivalent:
                usdt_amount = await self._price_service.convert(txn.fiat_currency, STABLE_TOKEN, txn.fiat_equivalent)
            else:
                usdt_amount = await self._price_service.convert(txn.currency, STABLE_TOKEN, txn.amount)
            # Fees are denominated in the record currency
            usdt_fee = (
                await self._price_service.convert(txn.currency, STABLE_TOKEN, txn.charge_fee)
                if txn.charge_fee else Decimal("0")
            )

        if usdt_amount <= 0:
            raise SettlementError("Unable to resolve settlement amount for crypto payout")

        usdt_amount = quantize(usdt_amount, self._token_decimals)
        amount_units = int(to_base_units(usdt_amount, self._token_decimals))
        usdt_fee = quantize(usdt_fee, self._token_decimals)
        fee_units = int(to_base_units(usdt_fee, self._token_decimals))

        receipt = await self._chain_client.credit_merchant(
            merchant.wallet_address, amount_units, fee_units, txn.reference
        )

        return {
            "provider": Provider.CONTRACT.value,
            "reference": txn.reference,
            "details": {
                "merchant": merchant.wallet_address,
                "amount": str(usdt_amount),
                "amount_units": str(amount_units),
                "charge_fee": str(usdt_fee),
                "charge_fee_units": str(fee_units),
                "transaction_hash": receipt.get("transaction_hash"),
                "receipt": receipt,
            },
        }

    # ------------------------------------------------------------------
    # Failure bookkeeping
    # ------------------------------------------------------------------

    async def _record_failure(
        self,
        txn: _Payable,
        method: str | None,
        merchant: MerchantContext | None,
        exc: Exception,
    ) -> SettlementResult:
        message = exc.detail if isinstance(exc, SettlementEngineError) else str(exc)
        provider = None
        if isinstance(exc, ProviderError):
            provider = exc.provider
        elif method == "CRYPTO":
            provider = Provider.CONTRACT.value
        elif method == "FIAT":
            provider = Provider.FLUTTERWAVE.value

        details: dict[str, Any] = {"error_type": getattr(exc, "error_type", type(exc).__name__)}
        if isinstance(exc, ProviderError) and exc.provider_message:
            details["provider_message"] = exc.provider_message
        if merchant is not None:
            details["payout_method"] = merchant.payout_method

        settlement = {
            "last_run_at": _now_iso(),
            "method": method,
            "provider": provider,
            "reference": txn.reference,
            "status": "FAILED",
            "error": message,
            "details": details,
        }
        async with self._session_factory() as db:
            await ledger.record_settlement_failure(db, txn.id, settlement)
            await db.commit()

        logger.error("Settlement failed for transaction %s (%s): %s", txn.id, txn.reference, message)
        return SettlementResult(
            transaction_id=txn.id,
            reference=txn.reference,
            outcome="FAILED",
            status=TransactionStatus.FAILED.value,
            settlement=settlement,
        )


def _result(txn, outcome: str) -> SettlementResult:
    return SettlementResult(
        transaction_id=txn.id,
        reference=txn.reference,
        outcome=outcome,
        status=txn.status,
        settlement=txn.settlement,
    )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
