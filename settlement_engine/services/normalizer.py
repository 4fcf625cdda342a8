"""
Event normalizer — maps raw producer payloads onto NormalizedEvent.

Two producers feed the engine:

  FIAT    a payment-gateway webhook body:
          {"event": "...", "data": {"tx_ref", "status", "amount", "currency",
           "charged_amount", "app_fee", "customer", "meta", "created_at", ...}}

  CRYPTO  a decoded PaymentRecorded contract log:
          {payer, merchant, amount, tokenSymbol, fiatEquivalent, txRef,
           timestamp, paymentType, status, chargeFee}
          plus log metadata {transactionHash, blockNumber, network}

Both are tolerant of missing optional fields; both refuse an event with no
resolvable reference (MissingReferenceError) or no usable amount
(InvalidAmountError). Nothing here touches the database.

Classification:
  classify() is the single place that decides FIAT vs CRYPTO for a payment:
    1. a flow type "X_TO_Y" is classified by its payer leg X
       (CRYPTO_TO_FIAT -> CRYPTO, FIAT_TO_CRYPTO -> FIAT)
    2. paymentType containing "FIAT"   -> FIAT
    3. paymentType containing "CRYPTO" -> CRYPTO
    4. symbol in CRYPTO_SYMBOLS        -> CRYPTO
    5. otherwise                       -> FIAT
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping

from settlement_engine.exceptions import InvalidAmountError, MissingReferenceError
from settlement_engine.models.transaction import PaymentMethod, Provider, SourceKind
from settlement_engine.schemas.events import NormalizedEvent
from settlement_engine.services.units import from_base_units, to_base_units, to_decimal

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_DECIMALS = 6
DEFAULT_FIAT_DECIMALS = 2

CRYPTO_SYMBOLS = frozenset({"USDT", "USDC", "BTC", "ETH", "WETH", "WBTC"})


def classify(payment_type: str | None, symbol: str | None) -> SourceKind:
    """Decide whether a payment is fiat- or token-denominated."""
    payment_type_upper = (payment_type or "").upper()

    # The payer leg says how the money came in
    if "_TO_" in payment_type_upper:
        payer_leg = payment_type_upper.split("_TO_", 1)[0]
        if "CRYPTO" in payer_leg:
            return SourceKind.CRYPTO
        if "FIAT" in payer_leg:
            return SourceKind.FIAT

    if "FIAT" in payment_type_upper:
        return SourceKind.FIAT
    if "CRYPTO" in payment_type_upper:
        return SourceKind.CRYPTO

    if symbol and symbol.strip().upper() in CRYPTO_SYMBOLS:
        return SourceKind.CRYPTO

    return SourceKind.FIAT


def normalize_address(address: Any) -> str | None:
    """Lower-case a wallet address; anything that isn't a non-empty string is None."""
    if not address or not isinstance(address, str):
        return None
    return address.strip().lower()


def normalize(
    raw_event: Mapping[str, Any],
    source_kind: SourceKind,
    *,
    token_decimals: int = DEFAULT_TOKEN_DECIMALS,
    fiat_decimals: int = DEFAULT_FIAT_DECIMALS,
    network: str | None = None,
) -> NormalizedEvent:
    """
    Normalize a raw event from the given producer.

    Args:
        raw_event: Webhook body (FIAT) or decoded contract log (CRYPTO).
        source_kind: Which producer the event came from.
        token_decimals: Fixed-point base of on-chain token amounts.
        fiat_decimals: Fixed-point base of on-chain fiat equivalents and
            the minor-unit precision used for fiat amount_raw.
        network: Chain network name when the log doesn't carry one.

    Raises:
        MissingReferenceError: No reference could be resolved.
        InvalidAmountError: Amount missing or not an exact non-negative number.
    """
    if source_kind == SourceKind.CRYPTO:
        return _normalize_chain_log(raw_event, token_decimals, fiat_decimals, network)
    return _normalize_webhook(raw_event, fiat_decimals)


# ---------------------------------------------------------------------------
# CRYPTO: decoded contract log
# ---------------------------------------------------------------------------

def _normalize_chain_log(
    event: Mapping[str, Any],
    token_decimals: int,
    fiat_decimals: int,
    network: str | None,
) -> NormalizedEvent:
    reference = _first(event, "txRef", "tx_ref", "reference")
    if not reference:
        raise MissingReferenceError("chain")

    raw_amount = _first(event, "amount")
    if raw_amount is None:
        raise InvalidAmountError("amount", None)
    amount = from_base_units(raw_amount, token_decimals, "amount")

    token_symbol = _first(event, "tokenSymbol", "token_symbol")
    payment_type = _first(event, "paymentType", "payment_type")
    symbol = str(token_symbol or "USDT").strip().upper()
    status_raw = _first(event, "status")

    fiat_raw = _first(event, "fiatEquivalent", "fiat_equivalent")
    fiat_equivalent = (
        from_base_units(fiat_raw, fiat_decimals, "fiatEquivalent") if fiat_raw is not None else None
    )
    fee_raw = _first(event, "chargeFee", "charge_fee")
    charge_fee = (
        from_base_units(fee_raw, token_decimals, "chargeFee") if fee_raw is not None else Decimal("0")
    )

    fiat_currency = _first(event, "fiatCurrency", "fiat_currency")
    block_number = _first(event, "blockNumber", "block_number")

    return NormalizedEvent(
        reference=str(reference),
        source_kind=classify(payment_type, symbol),
        provider=Provider.CONTRACT,
        method=PaymentMethod.CRYPTO,
        payment_type=payment_type,
        payer=normalize_address(_first(event, "payer")),
        amount=amount,
        amount_raw=to_base_units(amount, token_decimals),
        fiat_equivalent=fiat_equivalent,
        fiat_currency=str(fiat_currency).upper() if fiat_currency else None,
        charge_fee=charge_fee,
        symbol=symbol,
        currency=symbol,
        source_status=str(status_raw or "PENDING").upper(),
        event_timestamp=_from_unix(_first(event, "timestamp")),
        tx_hash=_first(event, "transactionHash", "transaction_hash", "tx_hash"),
        block_number=int(block_number) if block_number is not None else None,
        network=_first(event, "network") or network,
        merchant_id=_str_or_none(_first(event, "merchantId", "merchant_id")),
        merchant_wallet_address=normalize_address(_first(event, "merchant")),
        provider_response=_json_safe(dict(event)),
        event_metadata={
            "source": "CONTRACT_EVENT",
            "payment_type_raw": payment_type,
            "status_raw": status_raw,
        },
    )


# ---------------------------------------------------------------------------
# FIAT: payment-gateway webhook
# ---------------------------------------------------------------------------

def _normalize_webhook(payload: Mapping[str, Any], fiat_decimals: int) -> NormalizedEvent:
    data = payload.get("data") or payload
    if not isinstance(data, Mapping):
        raise MissingReferenceError("webhook")

    reference = _first(data, "tx_ref", "txRef", "reference") or payload.get("tx_ref")
    if not reference:
        raise MissingReferenceError("webhook")

    currency = str(data.get("currency") or payload.get("currency") or "NGN").upper()
    status_raw = data.get("status") or payload.get("status")
    payment_type_raw = _first(data, "payment_type", "paymentType")

    charged_amount = (
        to_decimal(data["charged_amount"], "charged_amount")
        if data.get("charged_amount") is not None else None
    )
    if data.get("amount") is not None:
        amount = to_decimal(data["amount"], "amount")
    elif charged_amount is not None:
        amount = charged_amount
    else:
        raise InvalidAmountError("amount", None)

    fee = _first(data, "app_fee", "fee")
    customer = data.get("customer") if isinstance(data.get("customer"), Mapping) else {}
    meta = data.get("meta") if isinstance(data.get("meta"), Mapping) else {}

    return NormalizedEvent(
        reference=str(reference),
        source_kind=classify(payment_type_raw, currency),
        provider=Provider.FLUTTERWAVE,
        method=_fiat_method(payment_type_raw or data.get("payment_method")),
        payment_type=payment_type_raw if _is_flow_type(payment_type_raw) else "FIAT_TO_FIAT",
        payer=customer.get("email") or customer.get("name"),
        amount=amount,
        amount_raw=to_base_units(amount, fiat_decimals),
        fiat_equivalent=charged_amount if charged_amount is not None else amount,
        fiat_currency=currency,
        charge_fee=to_decimal(fee, "app_fee") if fee is not None else None,
        symbol=currency,
        currency=currency,
        source_status=str(status_raw or "PENDING").upper(),
        event_timestamp=_parse_timestamp(data.get("created_at")),
        merchant_id=_str_or_none(meta.get("merchantId") or meta.get("merchant_id")),
        merchant_wallet_address=normalize_address(
            meta.get("merchantWalletAddress") or meta.get("merchant_wallet") or meta.get("walletAddress")
        ),
        provider_response=_json_safe(dict(payload)),
        event_metadata={
            "source": "FLUTTERWAVE",
            "event": payload.get("event"),
            "narration": data.get("narration"),
            "gateway_id": data.get("id"),
            "processor_response": data.get("processor_response"),
            "customer": dict(customer) or None,
            "meta": dict(meta) or None,
        },
    )


def _is_flow_type(payment_type: str | None) -> bool:
    # Gateway payment_type is a channel ("card", "bank_transfer"); a flow
    # type names both legs ("FIAT_TO_CRYPTO").
    return bool(payment_type) and "_TO_" in payment_type.upper()


def _fiat_method(channel: Any) -> PaymentMethod:
    channel_lower = str(channel or "").lower()
    if "card" in channel_lower:
        return PaymentMethod.CARD
    if "bank" in channel_lower or "account" in channel_lower or "ussd" in channel_lower:
        return PaymentMethod.BANK
    if "wallet" in channel_lower or "mobilemoney" in channel_lower or "mobile_money" in channel_lower:
        return PaymentMethod.WALLET
    if "crypto" in channel_lower:
        return PaymentMethod.CRYPTO
    return PaymentMethod.FIAT


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _first(mapping: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value is not None and value != "":
            return value
    return None


def _str_or_none(value: Any) -> str | None:
    return str(value) if value is not None else None


def _from_unix(value: Any) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        logger.warning("Unparseable chain timestamp %r, using receive time", value)
        return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable webhook created_at %r, using receive time", value)
        return datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _json_safe(value: Any) -> Any:
    """Make a raw payload storable in a JSON column (bytes, Decimal, datetime)."""
    if isinstance(value, Mapping):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value
