"""
Application configuration using Pydantic Settings.

All configuration is loaded from environment variables, with an optional .env file
as a fallback. Secrets (webhook secret, operator key, signer key, payout
encryption key) never live in source code — .env is gitignored.

Pydantic Settings automatically:
  1. Reads from environment variables (highest priority)
  2. Falls back to .env file values
  3. Uses defaults defined here (lowest priority)

Usage:
    from settlement_engine.config import settings
    print(settings.FIAT_SETTLEMENT_CURRENCY)
"""

from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Central configuration for the settlement engine.

    Required fields (no defaults) MUST be set in .env or environment:
      - WEBHOOK_SECRET: Value the payment gateway sends in the verif-hash header
      - OPERATOR_API_KEY: Shared key for operator endpoints (retry, sweep, ingest)
      - PAYOUT_ENCRYPTION_KEY: Fernet key for merchant account numbers at rest
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # --- Application ---
    APP_NAME: str = "Settlement Engine"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # --- Database ---
    # SQLite for local runs; swap to a postgresql+asyncpg URL in production
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/ledger.db"

    # --- Inbound verification ---
    WEBHOOK_SECRET: str
    OPERATOR_API_KEY: str

    # --- Payout data at rest ---
    # Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    PAYOUT_ENCRYPTION_KEY: str

    # --- Fiat gateway (transfers) ---
    FLUTTERWAVE_BASE_URL: str = "https://api.flutterwave.com/v3"
    FLUTTERWAVE_SECRET_KEY: str = ""
    FIAT_SETTLEMENT_CURRENCY: str = "NGN"
    TRANSFER_TIMEOUT_SECONDS: float = 30.0

    # --- Chain (credit contract) ---
    RPC_URL: str = "https://rpc.sepolia-api.lisk.com"
    CONTRACT_ADDRESS: str = ""
    USDT_ADDRESS: str = ""
    SIGNER_PRIVATE_KEY: str = ""
    CHAIN_NETWORK: str = "lisk-sepolia"
    TOKEN_DECIMALS: int = 6
    FIAT_DECIMALS: int = 2
    CHAIN_POLL_INTERVAL_SECONDS: float = 0

    # --- Price feeds ---
    PRICE_RPC_URL: str = ""
    ETH_USD_FEED: str = ""
    # Naira per US dollar, maintained by operations
    NGN_USD_RATE: Decimal | None = None

    # --- Settlement workers ---
    SETTLEMENT_WORKERS: int = 2
    SETTLEMENT_STALE_AFTER_SECONDS: int = 900
    SETTLEMENT_SWEEP_INTERVAL_SECONDS: int = 300
    SETTLEMENT_SWEEP_RESUBMIT: bool = False


# Singleton: import this instance everywhere instead of creating new Settings()
settings = Settings()
