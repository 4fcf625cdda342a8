"""
Test fixtures for the settlement engine test suite.

This module provides shared fixtures used across all test files:

  - db_engine / session_factory / db_session: Fresh file-backed SQLite
    database for each test
  - bank_merchant / crypto_merchant: Merchants with each payout method
  - transfer_client / chain_client / rate_source: Fakes for the external
    collaborators, injected through constructor parameters
  - dispatcher / settlement_queue / coordinator: Engine components wired
    to the fakes
  - client: Async HTTP test client with the components on app.state and
    the operator key header set

Key design decisions:
  - Required settings are set in the environment BEFORE the package is
    imported, because config.settings is built at import time.
  - The database is a SQLite file under tmp_path, not :memory:. An
    in-memory database shares one connection across sessions, so a
    settlement worker returning its connection would roll back whatever a
    concurrent request had not committed yet. With a file every session
    has its own connection and SQLite's locking serializes the writers,
    which is also what the double-payout race test needs.
  - The settlement queue is started per test and stopped afterwards; tests
    call `await settlement_queue.join()` to observe background settlements.
"""

import asyncio
import os
import uuid
from decimal import Decimal
from typing import Any

os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("OPERATOR_API_KEY", "test-operator-key")
os.environ.setdefault("PAYOUT_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from settlement_engine.database import Base, get_db
from settlement_engine.exceptions import ProviderError
from settlement_engine.main import app
from settlement_engine.models.merchant import Merchant
from settlement_engine.models.transaction import Provider
from settlement_engine.security import encrypt_value
from settlement_engine.services.pricing import (
    ETH_USD,
    NGN_USD,
    USDT_USD,
    PriceConversionService,
    StaticRateSource,
)
from settlement_engine.services.reconciliation import ReconciliationCoordinator
from settlement_engine.services.settlement import SettlementDispatcher
from settlement_engine.services.settlement_queue import SettlementQueue


OPERATOR_HEADERS = {"X-Operator-Key": "test-operator-key"}
WEBHOOK_HEADERS = {"verif-hash": "test-webhook-secret"}

BANK_WALLET = "0x1111111111111111111111111111111111111111"
CRYPTO_WALLET = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
PAYER_WALLET = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"


# ---------------------------------------------------------------------------
# Fakes for external collaborators
# ---------------------------------------------------------------------------

class FakeTransferClient:
    """Records transfer payloads and lookups; fails with ProviderError when `error` is set."""

    def __init__(self):
        self.calls: list[dict[str, Any]] = []
        self.error: str | None = None
        self.lookups: list[str] = []

    async def create_transfer(self, payload: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(payload)
        if self.error:
            raise ProviderError(
                Provider.FLUTTERWAVE.value,
                f"Flutterwave transfer failed: {self.error}",
                self.error,
            )
        return {"status": "success", "message": "Transfer Queued Successfully", "data": {"id": 4242}}

    async def verify_transaction(self, tx_ref: str) -> dict[str, Any]:
        self.lookups.append(tx_ref)
        if self.error:
            raise ProviderError(
                Provider.FLUTTERWAVE.value,
                f"Flutterwave verification failed: {self.error}",
                self.error,
            )
        return {"status": "success", "data": {"tx_ref": tx_ref, "status": "successful"}}


class FakeChainClient:
    """Records credit calls; `delay` widens race windows, `error` simulates a revert."""

    def __init__(self):
        self.calls: list[tuple[str, int, int, str]] = []
        self.error: str | None = None
        self.delay: float = 0

    async def credit_merchant(
        self,
        merchant_wallet: str,
        amount_units: int,
        charge_fee_units: int,
        tx_ref: str,
    ) -> dict[str, Any]:
        self.calls.append((merchant_wallet, amount_units, charge_fee_units, tx_ref))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise ProviderError(Provider.CONTRACT.value, f"creditMerchant failed: {self.error}", self.error)
        return {"transaction_hash": "0x" + "ab" * 32, "block_number": 1234, "status": 1}


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Create a fresh async engine with all tables for each test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Provide an async session bound to the test engine."""
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Merchants
# ---------------------------------------------------------------------------

async def create_merchant(session_factory, **overrides) -> Merchant:
    """Insert a merchant row; account_number is encrypted like production data."""
    account_number = overrides.pop("account_number", "0690000031")
    values = {
        "wallet_address": BANK_WALLET,
        "business_name": f"Merchant {uuid.uuid4().hex[:8]}",
        "payout_currency": "NGN",
        "payout_method": "bank_transfer",
        "bank_name": "Access Bank",
        "bank_code": "044",
        "account_name": "Ada Stores Ltd",
        **overrides,
    }
    if account_number:
        values["account_number_encrypted"] = encrypt_value(account_number)
        values["account_number_last_four"] = account_number[-4:]

    async with session_factory() as session:
        merchant = Merchant(**values)
        session.add(merchant)
        await session.commit()
        return merchant


@pytest_asyncio.fixture
async def bank_merchant(session_factory) -> Merchant:
    return await create_merchant(session_factory, business_name="Ada Stores")


@pytest_asyncio.fixture
async def crypto_merchant(session_factory) -> Merchant:
    return await create_merchant(
        session_factory,
        wallet_address=CRYPTO_WALLET,
        business_name="Kola Crypto",
        payout_currency="USDT",
        payout_method="crypto",
        account_number=None,
        bank_code=None,
    )


# ---------------------------------------------------------------------------
# Engine components
# ---------------------------------------------------------------------------

@pytest.fixture
def transfer_client() -> FakeTransferClient:
    return FakeTransferClient()


@pytest.fixture
def chain_client() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
def rate_source() -> StaticRateSource:
    """NGN 1500 per USD, USDT at par, ETH at 3000 USD."""
    return StaticRateSource({
        NGN_USD: Decimal("1500"),
        USDT_USD: Decimal("1"),
        ETH_USD: Decimal("3000"),
    })


def build_dispatcher(session_factory, rate_source, transfer_client, chain_client) -> SettlementDispatcher:
    return SettlementDispatcher(
        session_factory,
        PriceConversionService(rate_source),
        transfer_client,
        chain_client,
        settlement_currency="NGN",
        token_decimals=6,
        fiat_decimals=2,
    )


@pytest.fixture
def dispatcher(session_factory, rate_source, transfer_client, chain_client) -> SettlementDispatcher:
    return build_dispatcher(session_factory, rate_source, transfer_client, chain_client)


@pytest_asyncio.fixture
async def settlement_queue(dispatcher, session_factory):
    queue = SettlementQueue(dispatcher, session_factory, workers=2, stale_after_seconds=900)
    await queue.start()
    yield queue
    await queue.stop()


@pytest.fixture
def coordinator(settlement_queue) -> ReconciliationCoordinator:
    return ReconciliationCoordinator(settlement_queue, network="lisk-sepolia")


@pytest_asyncio.fixture
async def client(session_factory, coordinator, dispatcher, settlement_queue, transfer_client):
    """
    Async HTTP test client with the test database and engine components injected.

    ASGITransport does not run the lifespan, so the components the lifespan
    would build are placed on app.state here.
    """

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.state.coordinator = coordinator
    app.state.dispatcher = dispatcher
    app.state.settlement_queue = settlement_queue
    app.state.transfer_client = transfer_client

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Raw event builders
# ---------------------------------------------------------------------------

def chain_log(**overrides) -> dict[str, Any]:
    """A decoded PaymentRecorded log: 5 USDT from PAYER to CRYPTO merchant."""
    log = {
        "payer": "0xAAAAaaaaAAAAaaaaAAAAaaaaAAAAaaaaAAAAaaaa",
        "merchant": "0xBBBBbbbbBBBBbbbbBBBBbbbbBBBBbbbbBBBBbbbb",
        "amount": 5_000_000,
        "tokenSymbol": "USDT",
        "fiatEquivalent": 0,
        "txRef": "KP-1",
        "timestamp": 1_717_000_000,
        "paymentType": "CRYPTO_TO_CRYPTO",
        "status": "successful",
        "chargeFee": 0,
        "transactionHash": "0x" + "cd" * 32,
        "blockNumber": 777,
    }
    log.update(overrides)
    return log


def gateway_webhook(merchant_id=None, wallet=None, **data_overrides) -> dict[str, Any]:
    """A charge.completed webhook for NGN 10,000 paid by card."""
    meta: dict[str, Any] = {}
    if merchant_id is not None:
        meta["merchantId"] = str(merchant_id)
    if wallet is not None:
        meta["merchantWalletAddress"] = wallet
    data = {
        "id": 285959875,
        "tx_ref": "FLW-TX-001",
        "flw_ref": "FLW-MOCK-1",
        "amount": 10000,
        "currency": "NGN",
        "charged_amount": 10140,
        "app_fee": 140,
        "status": "successful",
        "payment_type": "card",
        "created_at": "2024-05-29T16:26:40.000Z",
        "customer": {"id": 215604089, "name": "Yemi Desola", "email": "user@example.com"},
        "meta": meta,
    }
    data.update(data_overrides)
    return {"event": "charge.completed", "data": data}
