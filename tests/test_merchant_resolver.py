"""
Tests for merchant resolution.

These tests verify:
  - Lookup by id and by wallet (any casing)
  - Id takes precedence, but a conflicting wallet is a hard error
  - Garbage ids, unknown merchants and missing identifiers are refused
  - The returned context carries the decrypted payout account
"""

import uuid

import pytest

from conftest import BANK_WALLET, CRYPTO_WALLET
from settlement_engine.exceptions import (
    InvalidMerchantIdError,
    MerchantMismatchError,
    MerchantNotFoundError,
)
from settlement_engine.services import merchant_resolver


class TestResolveById:
    async def test_by_uuid(self, db_session, bank_merchant):
        merchant = await merchant_resolver.resolve(db_session, merchant_id=bank_merchant.id)
        assert merchant.merchant_id == bank_merchant.id
        assert merchant.business_name == "Ada Stores"

    async def test_by_string_id(self, db_session, bank_merchant):
        merchant = await merchant_resolver.resolve(db_session, merchant_id=str(bank_merchant.id))
        assert merchant.merchant_id == bank_merchant.id

    async def test_payout_account_is_decrypted(self, db_session, bank_merchant):
        merchant = await merchant_resolver.resolve(db_session, merchant_id=bank_merchant.id)
        assert merchant.account_number == "0690000031"
        assert merchant.account_number_last_four == "0031"
        assert merchant.bank_code == "044"

    async def test_invalid_id(self, db_session):
        with pytest.raises(InvalidMerchantIdError):
            await merchant_resolver.resolve(db_session, merchant_id="not-a-uuid")

    async def test_unknown_id(self, db_session, bank_merchant):
        with pytest.raises(MerchantNotFoundError):
            await merchant_resolver.resolve(db_session, merchant_id=uuid.uuid4())


class TestResolveByWallet:
    async def test_wallet_is_case_insensitive(self, db_session, crypto_merchant):
        merchant = await merchant_resolver.resolve(db_session, wallet_address=CRYPTO_WALLET.upper().replace("0X", "0x"))
        assert merchant.merchant_id == crypto_merchant.id
        assert merchant.wallet_address == CRYPTO_WALLET

    async def test_unknown_wallet(self, db_session, bank_merchant):
        with pytest.raises(MerchantNotFoundError):
            await merchant_resolver.resolve(db_session, wallet_address="0x" + "9" * 40)

    async def test_neither_identifier(self, db_session):
        with pytest.raises(MerchantNotFoundError):
            await merchant_resolver.resolve(db_session)


class TestPrecedence:
    async def test_id_and_matching_wallet(self, db_session, bank_merchant):
        merchant = await merchant_resolver.resolve(
            db_session, merchant_id=bank_merchant.id, wallet_address=BANK_WALLET
        )
        assert merchant.merchant_id == bank_merchant.id

    async def test_id_and_other_merchants_wallet(self, db_session, bank_merchant, crypto_merchant):
        """The wallet belongs to a different merchant: never silently re-attributed."""
        with pytest.raises(MerchantMismatchError):
            await merchant_resolver.resolve(
                db_session, merchant_id=bank_merchant.id, wallet_address=CRYPTO_WALLET
            )

    async def test_empty_id_falls_back_to_wallet(self, db_session, crypto_merchant):
        merchant = await merchant_resolver.resolve(
            db_session, merchant_id="", wallet_address=CRYPTO_WALLET
        )
        assert merchant.merchant_id == crypto_merchant.id
