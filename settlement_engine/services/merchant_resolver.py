"""
Merchant resolver — finds the merchant an event or settlement belongs to.

Lookups (read-only; the engine never creates or edits merchants):
  - by merchant id (UUID), which takes precedence when both are supplied
  - by wallet address, case-insensitive (addresses are lower-cased here,
    at the boundary, and stored lower-cased)

When both an id and a wallet are supplied, the wallet is still normalized
and cross-checked: a wallet that belongs to a different merchant is a hard
error (MerchantMismatchError), never a silent re-attribution.

Failing to resolve is always an error — no ledger record may be attached
to an unknown merchant.
"""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.exceptions import (
    InvalidMerchantIdError,
    MerchantMismatchError,
    MerchantNotFoundError,
)
from settlement_engine.models.merchant import Merchant
from settlement_engine.schemas.merchant import MerchantContext
from settlement_engine.services.normalizer import normalize_address


def parse_merchant_id(merchant_id) -> uuid.UUID:
    """Parse a merchant id, raising InvalidMerchantIdError for garbage."""
    if isinstance(merchant_id, uuid.UUID):
        return merchant_id
    try:
        return uuid.UUID(str(merchant_id))
    except (TypeError, ValueError, AttributeError):
        raise InvalidMerchantIdError(merchant_id)


async def get_merchant(db: AsyncSession, merchant_id: uuid.UUID) -> Merchant | None:
    result = await db.execute(select(Merchant).where(Merchant.id == merchant_id))
    return result.scalar_one_or_none()


async def get_merchant_by_wallet(db: AsyncSession, wallet_address: str) -> Merchant | None:
    result = await db.execute(
        select(Merchant).where(Merchant.wallet_address == wallet_address.lower())
    )
    return result.scalar_one_or_none()


async def resolve(
    db: AsyncSession,
    merchant_id=None,
    wallet_address: str | None = None,
) -> MerchantContext:
    """
    Resolve a merchant by id and/or wallet address.

    Args:
        db: Database session.
        merchant_id: Merchant UUID (or its string form).
        wallet_address: Merchant wallet, any casing.

    Returns:
        A detached MerchantContext snapshot.

    Raises:
        MerchantNotFoundError: Neither identifier supplied, or no match.
        InvalidMerchantIdError: merchant_id is not a UUID.
        MerchantMismatchError: id and wallet resolve to different merchants.
    """
    wallet = normalize_address(wallet_address)

    if merchant_id is not None and merchant_id != "":
        parsed_id = parse_merchant_id(merchant_id)
        merchant = await get_merchant(db, parsed_id)
        if merchant is None:
            raise MerchantNotFoundError(f"Merchant {parsed_id} not found")
        if wallet and merchant.wallet_address.lower() != wallet:
            raise MerchantMismatchError(parsed_id, wallet)
        return MerchantContext.from_model(merchant)

    if not wallet:
        raise MerchantNotFoundError("merchantId or merchantWalletAddress is required")

    merchant = await get_merchant_by_wallet(db, wallet)
    if merchant is None:
        raise MerchantNotFoundError(f"No merchant found for wallet address {wallet}")
    return MerchantContext.from_model(merchant)
