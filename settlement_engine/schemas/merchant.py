"""
Merchant context handed from the merchant resolver to the engine.

MerchantContext is a read-only snapshot of the merchant row, with the bank
account number already decrypted. It is detached from the ORM
session so the settlement dispatcher can hold it across slow external calls
without keeping a database session open.
"""

import uuid
from dataclasses import dataclass

from settlement_engine.models.merchant import Merchant
from settlement_engine.security import decrypt_value


@dataclass(frozen=True)
class MerchantContext:
    merchant_id: uuid.UUID
    wallet_address: str
    business_name: str
    payout_currency: str
    payout_method: str
    bank_name: str | None = None
    bank_code: str | None = None
    account_name: str | None = None
    account_number: str | None = None

    @classmethod
    def from_model(cls, merchant: Merchant) -> "MerchantContext":
        account_number = None
        if merchant.account_number_encrypted:
            account_number = decrypt_value(merchant.account_number_encrypted)
        return cls(
            merchant_id=merchant.id,
            wallet_address=merchant.wallet_address.lower(),
            business_name=merchant.business_name,
            payout_currency=(merchant.payout_currency or "NGN").upper(),
            payout_method=(merchant.payout_method or "bank_transfer").lower(),
            bank_name=merchant.bank_name,
            # Gateways accept either the bank code or the routing number
            bank_code=merchant.bank_code or merchant.routing_number,
            account_name=merchant.account_name,
            account_number=account_number,
        )

    @property
    def account_number_last_four(self) -> str | None:
        if not self.account_number:
            return None
        return self.account_number[-4:]
