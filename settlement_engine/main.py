"""
FastAPI application and entry point.

This module creates and configures the FastAPI application:
  1. Lifespan manager — logging, table creation, and construction of the
     engine components (price service, payout clients, dispatcher,
     settlement queue, coordinator, optional chain log poller)
  2. Exception handlers — maps domain errors to HTTP responses
  3. Router registration — webhooks, chain events, transactions, settlements

Running locally:
    uvicorn settlement_engine.main:app --reload

Engine components live on app.state so handlers receive them through the
getters in dependencies.py. Payout clients are only built when their
credentials are configured; without them, settlements on that channel
fail with a recorded ProviderError instead of crashing startup.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from web3 import AsyncHTTPProvider, AsyncWeb3

from settlement_engine.clients.chain_client import ChainCreditClient
from settlement_engine.clients.price_feed import ChainlinkRateSource
from settlement_engine.clients.transfer_client import FlutterwaveTransferClient
from settlement_engine.config import settings
from settlement_engine.database import AsyncSessionLocal, Base, engine
from settlement_engine.exceptions import register_exception_handlers
from settlement_engine.routers import chain_events, settlements, transactions, webhooks
from settlement_engine.services.chain_listener import ChainLogPoller
from settlement_engine.services.pricing import PriceConversionService
from settlement_engine.services.reconciliation import ReconciliationCoordinator
from settlement_engine.services.settlement import SettlementDispatcher
from settlement_engine.services.settlement_queue import SettlementQueue

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup:
      Configures logging, creates tables if they don't exist (use
      migrations in production), builds the engine components and starts
      the settlement workers and, if enabled, the chain log poller.

    Shutdown:
      Stops the poller, lets in-flight settlements finish, closes the HTTP
      client and disposes of the database engine.
    """
    # --- Startup ---
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    price_service = PriceConversionService(
        ChainlinkRateSource.from_settings(
            settings.PRICE_RPC_URL, settings.ETH_USD_FEED, settings.NGN_USD_RATE
        )
    )

    transfer_client = None
    if settings.FLUTTERWAVE_SECRET_KEY:
        transfer_client = FlutterwaveTransferClient(
            settings.FLUTTERWAVE_BASE_URL,
            settings.FLUTTERWAVE_SECRET_KEY,
            timeout=settings.TRANSFER_TIMEOUT_SECONDS,
        )
    else:
        logger.warning("FLUTTERWAVE_SECRET_KEY not set, fiat settlements will fail")

    chain_client = None
    if settings.CONTRACT_ADDRESS and settings.USDT_ADDRESS and settings.SIGNER_PRIVATE_KEY:
        chain_client = ChainCreditClient.from_rpc(
            settings.RPC_URL,
            settings.CONTRACT_ADDRESS,
            settings.USDT_ADDRESS,
            settings.SIGNER_PRIVATE_KEY,
        )
    else:
        logger.warning("Chain credit not configured, crypto settlements will fail")

    dispatcher = SettlementDispatcher(
        AsyncSessionLocal,
        price_service,
        transfer_client,
        chain_client,
        settlement_currency=settings.FIAT_SETTLEMENT_CURRENCY,
        token_decimals=settings.TOKEN_DECIMALS,
        fiat_decimals=settings.FIAT_DECIMALS,
    )
    queue = SettlementQueue(
        dispatcher,
        AsyncSessionLocal,
        workers=settings.SETTLEMENT_WORKERS,
        stale_after_seconds=settings.SETTLEMENT_STALE_AFTER_SECONDS,
        sweep_interval_seconds=settings.SETTLEMENT_SWEEP_INTERVAL_SECONDS,
        resubmit_failed=settings.SETTLEMENT_SWEEP_RESUBMIT,
    )
    coordinator = ReconciliationCoordinator(
        queue,
        token_decimals=settings.TOKEN_DECIMALS,
        fiat_decimals=settings.FIAT_DECIMALS,
        network=settings.CHAIN_NETWORK,
    )

    app.state.dispatcher = dispatcher
    app.state.settlement_queue = queue
    app.state.coordinator = coordinator
    app.state.transfer_client = transfer_client

    await queue.start()

    poller = None
    if settings.CHAIN_POLL_INTERVAL_SECONDS > 0 and settings.CONTRACT_ADDRESS:
        poller = ChainLogPoller(
            AsyncWeb3(AsyncHTTPProvider(settings.RPC_URL)),
            settings.CONTRACT_ADDRESS,
            coordinator,
            AsyncSessionLocal,
            interval_seconds=settings.CHAIN_POLL_INTERVAL_SECONDS,
            network=settings.CHAIN_NETWORK,
        )
        poller.start()

    yield

    # --- Shutdown ---
    if poller is not None:
        await poller.stop()
    await queue.stop()
    if transfer_client is not None:
        await transfer_client.aclose()
    await engine.dispose()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Reconciles fiat webhooks and chain events into one ledger and settles merchants",
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

register_exception_handlers(app)

# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(chain_events.router, prefix="/events", tags=["Chain events"])
app.include_router(transactions.router, prefix="/transactions", tags=["Transactions"])
app.include_router(settlements.router, prefix="/settlements", tags=["Settlements"])


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/health", tags=["Health"])
async def health_check():
    """Liveness probe; also reports whether the settlement workers are running."""
    queue = getattr(app.state, "settlement_queue", None)
    return {
        "status": "ok",
        "version": settings.APP_VERSION,
        "settlement_workers": bool(queue and queue.running),
    }
