#!/usr/bin/env python3
"""
Demo seed script — populates the ledger with sample payments for demos.

!! NOT FOR PRODUCTION !!
This script inserts demo merchants straight into the database and then
replays fake gateway webhooks and chain events against a running server,
exactly as the real producers would deliver them.

Usage:
    # With the API server running on localhost:8000:
    python demo/seed.py

    # Reset the database and re-seed:
    python demo/seed.py --reset

    # Custom server URL:
    python demo/seed.py --base-url http://localhost:9000

The webhook secret and operator key are read from the same settings
(.env / environment) the server uses.

Demo merchants after seeding:
    ┌──────────────────────┬────────────────────────┬──────────┬──────┐
    │ Business             │ Wallet                 │ Payout   │ Curr │
    ├──────────────────────┼────────────────────────┼──────────┼──────┤
    │ Ada Stores           │ 0x1111…1111            │ bank     │ NGN  │
    │ Kola Crypto          │ 0x2222…2222            │ crypto   │ USDT │
    │ Lagos Bites          │ 0x3333…3333            │ bank     │ USD  │
    └──────────────────────┴────────────────────────┴──────────┴──────┘
"""

import argparse
import asyncio
import os
import random
import sys
import uuid
from datetime import datetime, timedelta, timezone

import httpx

BASE_URL = "http://localhost:8000"

# ---------------------------------------------------------------------------
# Demo merchants
# ---------------------------------------------------------------------------

MERCHANTS = [
    {
        "business_name": "Ada Stores",
        "wallet_address": "0x" + "1" * 40,
        "payout_method": "bank_transfer",
        "payout_currency": "NGN",
        "bank_name": "Access Bank",
        "bank_code": "044",
        "account_name": "Ada Stores Ltd",
        "account_number": "0690000031",
    },
    {
        "business_name": "Kola Crypto",
        "wallet_address": "0x" + "2" * 40,
        "payout_method": "crypto",
        "payout_currency": "USDT",
    },
    {
        "business_name": "Lagos Bites",
        "wallet_address": "0x" + "3" * 40,
        "payout_method": "bank_transfer",
        "payout_currency": "USD",
        "bank_name": "GTBank",
        "bank_code": "058",
        "account_name": "Lagos Bites Ventures",
        "account_number": "0123456789",
    },
]

CHANNELS = ["card", "bank_transfer", "ussd", "mobilemoneyghana"]

CUSTOMERS = [
    ("Yemi Desola", "yemi@example.com"),
    ("Chidi Okeke", "chidi@example.com"),
    ("Amaka Obi", "amaka@example.com"),
    ("Tunde Bello", "tunde@example.com"),
]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def log(msg: str) -> None:
    print(f"  {msg}")


async def create_merchants() -> dict[str, str]:
    """Insert the demo merchants directly; returns business name -> merchant id.

    This bypasses the API since merchants are owned by the merchant
    management service, which this engine only reads from.
    """
    from sqlalchemy import select
    from settlement_engine.database import AsyncSessionLocal, Base, engine
    from settlement_engine.models.merchant import Merchant
    from settlement_engine.security import encrypt_value

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    ids: dict[str, str] = {}
    async with AsyncSessionLocal() as session:
        for info in MERCHANTS:
            values = dict(info)
            account_number = values.pop("account_number", None)

            existing = await session.scalar(
                select(Merchant).where(Merchant.wallet_address == values["wallet_address"])
            )
            if existing is not None:
                ids[values["business_name"]] = str(existing.id)
                continue

            if account_number:
                values["account_number_encrypted"] = encrypt_value(account_number)
                values["account_number_last_four"] = account_number[-4:]
            merchant = Merchant(kyc_status="approved", **values)
            session.add(merchant)
            await session.flush()
            ids[values["business_name"]] = str(merchant.id)
        await session.commit()

    await engine.dispose()
    return ids


def webhook_payload(merchant_id: str, reference: str, amount: int, status: str, created_at: datetime) -> dict:
    name, email = random.choice(CUSTOMERS)
    fee = round(amount * 0.014, 2)
    return {
        "event": "charge.completed",
        "data": {
            "id": random.randint(100_000_000, 999_999_999),
            "tx_ref": reference,
            "flw_ref": f"FLW-MOCK-{uuid.uuid4().hex[:10]}",
            "amount": amount,
            "currency": "NGN",
            "charged_amount": amount + fee,
            "app_fee": fee,
            "status": status,
            "payment_type": random.choice(CHANNELS),
            "created_at": created_at.isoformat().replace("+00:00", "Z"),
            "customer": {"name": name, "email": email},
            "meta": {"merchantId": merchant_id},
        },
    }


def chain_payload(wallet: str, reference: str, usdt: float, status: str, created_at: datetime) -> dict:
    return {
        "payer": "0x" + uuid.uuid4().hex + uuid.uuid4().hex[:8],
        "merchant": wallet,
        "amount": int(round(usdt * 1_000_000)),
        "tokenSymbol": "USDT",
        "fiatEquivalent": 0,
        "txRef": reference,
        "timestamp": int(created_at.timestamp()),
        "paymentType": "CRYPTO_TO_CRYPTO",
        "status": status,
        "chargeFee": 0,
        "transactionHash": "0x" + uuid.uuid4().hex + uuid.uuid4().hex,
        "blockNumber": random.randint(1_000_000, 2_000_000),
    }


async def send_webhook(client: httpx.AsyncClient, secret: str, payload: dict) -> dict:
    resp = await client.post(
        f"{BASE_URL}/webhooks/flutterwave",
        json=payload,
        headers={"verif-hash": secret},
    )
    resp.raise_for_status()
    return resp.json()


async def send_chain_event(client: httpx.AsyncClient, operator_key: str, payload: dict) -> dict:
    resp = await client.post(
        f"{BASE_URL}/events/chain",
        json=payload,
        headers={"X-Operator-Key": operator_key},
    )
    resp.raise_for_status()
    return resp.json()


# ---------------------------------------------------------------------------
# Seed logic
# ---------------------------------------------------------------------------

async def seed(base_url: str, payments: int) -> None:
    global BASE_URL
    BASE_URL = base_url

    from settlement_engine.config import settings

    print("\n========================================")
    print("  DEMO SEED — NOT FOR PRODUCTION")
    print("========================================\n")

    print("Creating merchants...")
    merchant_ids = await create_merchants()
    for info in MERCHANTS:
        log(f"{info['business_name']}: {merchant_ids[info['business_name']]}")

    now = datetime.now(timezone.utc)
    recorded = 0
    ignored = 0

    async with httpx.AsyncClient(timeout=30.0) as client:
        try:
            health = await client.get(f"{BASE_URL}/health")
            health.raise_for_status()
        except (httpx.ConnectError, httpx.HTTPStatusError):
            print(f"  ERROR: Cannot connect to {BASE_URL}")
            print("  Start the server first: uvicorn settlement_engine.main:app --reload\n")
            sys.exit(1)

        print("\nReplaying gateway webhooks...")
        for info in MERCHANTS:
            if info["payout_method"] == "crypto":
                continue
            merchant_id = merchant_ids[info["business_name"]]
            for n in range(payments):
                reference = f"DEMO-{info['business_name'][:3].upper()}-{n:03d}"
                created_at = now - timedelta(days=random.randint(0, 60), minutes=random.randint(0, 1440))
                status = "successful" if random.random() < 0.85 else "failed"
                payload = webhook_payload(merchant_id, reference, random.randint(500, 250_000), status, created_at)
                result = await send_webhook(client, settings.WEBHOOK_SECRET, payload)
                if result["status"] == "success":
                    recorded += 1
                else:
                    ignored += 1

                # Gateways redeliver; the ledger keeps one record per reference
                if random.random() < 0.2:
                    await send_webhook(client, settings.WEBHOOK_SECRET, payload)
        log(f"{recorded} webhooks recorded, {ignored} ignored")

        print("\nReplaying chain events...")
        crypto_merchants = [m for m in MERCHANTS if m["payout_method"] == "crypto"]
        chain_count = 0
        for info in crypto_merchants:
            for n in range(payments):
                reference = f"KP-{n:04d}"
                created_at = now - timedelta(days=random.randint(0, 60))
                payload = chain_payload(
                    info["wallet_address"], reference, round(random.uniform(1, 500), 6), "successful", created_at
                )
                await send_chain_event(client, settings.OPERATOR_API_KEY, payload)
                chain_count += 1
        log(f"{chain_count} chain events recorded")

        # Give the settlement workers a moment before printing the summary
        await asyncio.sleep(2)

        print("\n========================================")
        print("  SEED COMPLETE — Settlement summary")
        print("========================================\n")
        for info in MERCHANTS:
            resp = await client.get(
                f"{BASE_URL}/transactions/wallet/{info['wallet_address']}/stats",
                params={"period": "90d"},
                headers={"X-Operator-Key": settings.OPERATOR_API_KEY},
            )
            if resp.status_code != 200:
                continue
            stats = resp.json()
            log(
                f"{info['business_name']:<14s} total={stats['total_transactions']:<4d} "
                f"settled={stats['settled_transactions']:<4d} failed={stats['failed_transactions']:<4d} "
                f"pending={stats['pending_transactions']}"
            )
        print()


def reset_database() -> None:
    """Delete the SQLite database file so the server recreates it on restart."""
    db_path = os.path.join(os.path.dirname(__file__), "..", "data", "ledger.db")
    db_path = os.path.normpath(db_path)

    if os.path.exists(db_path):
        os.remove(db_path)
        print(f"\n  Deleted {db_path}")
        print("  Restart the server to recreate empty tables.\n")
    else:
        print(f"\n  No database found at {db_path}\n")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

async def main() -> None:
    parser = argparse.ArgumentParser(
        description="Demo seed script — NOT FOR PRODUCTION",
        epilog="Creates sample merchants and replays webhooks and chain events.",
    )
    parser.add_argument(
        "--base-url", default="http://localhost:8000",
        help="Base URL of the running API (default: http://localhost:8000)",
    )
    parser.add_argument(
        "--payments", type=int, default=10,
        help="Payments to replay per merchant (default: 10)",
    )
    parser.add_argument(
        "--reset", action="store_true",
        help="Delete the database file and exit (restart server to recreate)",
    )
    args = parser.parse_args()

    if args.reset:
        reset_database()
        return

    await seed(args.base_url, args.payments)


if __name__ == "__main__":
    asyncio.run(main())
