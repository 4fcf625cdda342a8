"""
Tests for exact decimal precision — no floating point anywhere.

Floating point representations of money cause rounding errors
(0.1 + 0.2 = 0.30000000000000004), and 6- or 18-decimal token amounts
lose digits entirely as floats. Every conversion goes through Decimal and
every stored amount is an exact decimal string.

Tests verify:
  - Base units <-> decimal round-trip exactly
  - Large and tiny values survive unchanged
  - Extra fractional digits round half-up
  - Amounts persisted in the ledger read back exactly
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from conftest import chain_log
from settlement_engine.exceptions import InvalidAmountError
from settlement_engine.models.transaction import SourceKind
from settlement_engine.schemas.merchant import MerchantContext
from settlement_engine.services import ledger
from settlement_engine.services.normalizer import normalize
from settlement_engine.services.units import (
    from_base_units,
    quantize,
    to_base_units,
    to_decimal,
)


class TestBaseUnits:
    """from_base_units / to_base_units are exact inverses."""

    def test_round_trip_1_5_usdt(self):
        assert from_base_units("1500000", 6) == Decimal("1.5")
        assert to_base_units(Decimal("1.5"), 6) == "1500000"

    def test_smallest_unit(self):
        assert from_base_units(1, 6) == Decimal("0.000001")
        assert to_base_units(Decimal("0.000001"), 6) == "1"

    def test_eighteen_decimals(self):
        """1.000000000000000001 ETH cannot be represented as a float."""
        raw = "1000000000000000001"
        amount = from_base_units(raw, 18)
        assert amount == Decimal("1.000000000000000001")
        assert to_base_units(amount, 18) == raw

    def test_large_values(self):
        raw = str(10**30 + 7)
        assert to_base_units(from_base_units(raw, 6), 6) == raw

    def test_extra_digits_round_half_up(self):
        assert to_base_units(Decimal("1.0000005"), 6) == "1000001"
        assert to_base_units(Decimal("1.0000004"), 6) == "1000000"
        assert quantize(Decimal("2.345"), 2) == Decimal("2.35")

    def test_zero(self):
        assert from_base_units(0, 6) == Decimal("0")
        assert to_base_units(Decimal("0"), 6) == "0"


class TestDecimalParsing:
    def test_float_goes_through_repr(self):
        assert to_decimal(0.1) + to_decimal(0.2) == Decimal("0.3")

    def test_string_amount(self):
        assert to_decimal(" 10140.50 ") == Decimal("10140.50")

    @pytest.mark.parametrize("value", [None, True, "NaN", "Infinity", "-5", "ten"])
    def test_invalid_amounts(self, value):
        with pytest.raises(InvalidAmountError):
            to_decimal(value)


class TestStoredPrecision:
    """Amounts written to the ledger come back as the same Decimal."""

    async def test_ledger_round_trip(self, db_session, crypto_merchant):
        merchant = MerchantContext.from_model(crypto_merchant)
        event = normalize(
            chain_log(txRef="PRECISION-1", amount=123_456_789_012, chargeFee=1),
            SourceKind.CRYPTO,
        )

        await ledger.upsert_event(db_session, merchant, event)
        await db_session.commit()

        txn = await ledger.get_by_reference(db_session, merchant.merchant_id, "PRECISION-1")
        assert txn.amount == Decimal("123456.789012")
        assert txn.amount_raw == "123456789012"
        assert txn.charge_fee == Decimal("0.000001")
        assert isinstance(txn.amount, Decimal)

    async def test_many_small_amounts_sum_exactly(self, db_session, crypto_merchant):
        """Ten payments of 0.1 USDT sum to exactly 1 in the stats."""
        merchant = MerchantContext.from_model(crypto_merchant)
        for n in range(10):
            event = normalize(chain_log(txRef=f"DIME-{n}", amount=100_000), SourceKind.CRYPTO)
            await ledger.upsert_event(db_session, merchant, event)
        await db_session.commit()

        summary = await ledger.summarize(
            db_session, merchant.merchant_id, since=datetime.now(timezone.utc) - timedelta(days=1)
        )
        assert summary["total_transactions"] == 10
        assert summary["total_amount"] == Decimal("1")
