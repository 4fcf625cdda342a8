"""
Tests for reconciliation and the idempotent ledger upsert.

THIS IS THE MOST IMPORTANT INGESTION TEST FILE. It verifies:
  - Exactly one record per (merchant, reference), whatever the delivery count
  - Webhook and chain log for the same reference merge into one record
  - Later events refine a PENDING record but never move its status
  - Once settlement has started, amounts are frozen and `settlement` untouched
  - Sparse re-deliveries never blank out earlier fields
  - Only successful PENDING records are handed to the settlement queue
  - Unknown merchants are refused before anything is written
"""

import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import CRYPTO_WALLET, chain_log, create_merchant, gateway_webhook
from settlement_engine.exceptions import MerchantMismatchError, MerchantNotFoundError
from settlement_engine.models.transaction import SourceKind, Transaction
from settlement_engine.services import ledger
from settlement_engine.services.reconciliation import ReconciliationCoordinator


class RecordingQueue:
    """Stands in for the settlement queue; remembers what was submitted."""

    def __init__(self):
        self.submitted: list[uuid.UUID] = []

    def submit(self, transaction_id):
        self.submitted.append(transaction_id)
        return True


@pytest.fixture
def queue() -> RecordingQueue:
    return RecordingQueue()


@pytest.fixture
def reconciler(queue) -> ReconciliationCoordinator:
    return ReconciliationCoordinator(queue, network="lisk-sepolia")


async def count_rows(db, reference: str) -> int:
    return await db.scalar(
        select(func.count()).select_from(Transaction).where(Transaction.reference == reference)
    )


async def settle_record(db, txn_id):
    """Drive a record to SETTLED through the ledger's own transitions."""
    assert await ledger.claim_for_settlement(db, txn_id)
    await ledger.record_settlement_success(db, txn_id, {"status": "SUCCESS", "reference": "PAID-1"})
    await db.commit()


class TestOneRecordPerReference:
    async def test_duplicate_delivery(self, db_session, reconciler, crypto_merchant):
        first = await reconciler.ingest(db_session, chain_log(status="pending"), SourceKind.CRYPTO)
        second = await reconciler.ingest(db_session, chain_log(status="pending"), SourceKind.CRYPTO)

        assert first.id == second.id
        assert await count_rows(db_session, "KP-1") == 1

    async def test_pending_record_takes_latest_values(self, db_session, reconciler, crypto_merchant):
        await reconciler.ingest(db_session, chain_log(status="pending"), SourceKind.CRYPTO)
        txn = await reconciler.ingest(
            db_session, chain_log(status="pending", amount=7_250_000), SourceKind.CRYPTO
        )

        assert txn.amount == Decimal("7.25")
        assert txn.amount_raw == "7250000"

    async def test_same_reference_other_merchant_is_separate(
        self, db_session, reconciler, crypto_merchant, session_factory
    ):
        other_wallet = "0x" + "c" * 40
        await create_merchant(session_factory, wallet_address=other_wallet, payout_method="crypto")

        await reconciler.ingest(db_session, chain_log(status="pending"), SourceKind.CRYPTO)
        await reconciler.ingest(
            db_session, chain_log(status="pending", merchant=other_wallet), SourceKind.CRYPTO
        )

        assert await count_rows(db_session, "KP-1") == 2

    @pytest.mark.parametrize("webhook_first", [True, False])
    async def test_webhook_and_chain_log_merge(self, db_session, reconciler, crypto_merchant, webhook_first):
        """Either producer may arrive first; the result is one record with both contexts."""
        webhook = gateway_webhook(wallet=CRYPTO_WALLET, tx_ref="KP-1", status="pending")
        log = chain_log(status="pending")

        deliveries = [(webhook, SourceKind.FIAT), (log, SourceKind.CRYPTO)]
        if not webhook_first:
            deliveries.reverse()
        for raw, kind in deliveries:
            txn = await reconciler.ingest(db_session, raw, kind)

        assert await count_rows(db_session, "KP-1") == 1
        assert txn.merchant_id == crypto_merchant.id
        assert txn.tx_hash == "0x" + "cd" * 32
        assert txn.block_number == 777
        assert txn.network == "lisk-sepolia"


class TestStatusNeverRegresses:
    async def test_settled_record_keeps_status_and_settlement(self, db_session, reconciler, crypto_merchant, queue):
        txn = await reconciler.ingest(db_session, chain_log(), SourceKind.CRYPTO)
        await settle_record(db_session, txn.id)
        queue.submitted.clear()

        redelivered = await reconciler.ingest(
            db_session, chain_log(status="pending", amount=1), SourceKind.CRYPTO
        )

        assert redelivered.status == "SETTLED"
        assert redelivered.settlement == {"status": "SUCCESS", "reference": "PAID-1"}
        assert redelivered.amount == Decimal("5")
        assert redelivered.source_status == "PENDING"
        assert queue.submitted == []

    async def test_processing_record_freezes_amounts(self, db_session, reconciler, crypto_merchant):
        txn = await reconciler.ingest(db_session, chain_log(status="pending"), SourceKind.CRYPTO)
        assert await ledger.claim_for_settlement(db_session, txn.id)
        await db_session.commit()

        refined = await reconciler.ingest(
            db_session,
            chain_log(status="confirmed", amount=9_000_000, transactionHash="0x" + "ef" * 32),
            SourceKind.CRYPTO,
        )

        assert refined.status == "PROCESSING"
        assert refined.amount == Decimal("5")
        assert refined.source_status == "CONFIRMED"
        assert refined.tx_hash == "0x" + "ef" * 32

    async def test_failed_record_is_not_resubmitted_by_events(self, db_session, reconciler, crypto_merchant, queue):
        txn = await reconciler.ingest(db_session, chain_log(status="pending"), SourceKind.CRYPTO)
        await ledger.claim_for_settlement(db_session, txn.id)
        await ledger.record_settlement_failure(db_session, txn.id, {"status": "FAILED", "error": "boom"})
        await db_session.commit()

        refined = await reconciler.ingest(db_session, chain_log(), SourceKind.CRYPTO)

        assert refined.status == "FAILED"
        assert refined.settlement["error"] == "boom"
        assert queue.submitted == []


class TestSparseRedelivery:
    async def test_missing_fields_do_not_blank_existing(self, db_session, reconciler, crypto_merchant):
        await reconciler.ingest(db_session, chain_log(status="pending"), SourceKind.CRYPTO)

        sparse = {"txRef": "KP-1", "merchant": CRYPTO_WALLET, "amount": 5_000_000}
        txn = await reconciler.ingest(db_session, sparse, SourceKind.CRYPTO)

        assert txn.payer == "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
        assert txn.tx_hash == "0x" + "cd" * 32
        assert txn.block_number == 777
        assert txn.payment_type == "CRYPTO_TO_CRYPTO"


class TestDefaults:
    async def test_fiat_currency_defaults_to_ngn_for_crypto_payout(self, db_session, reconciler, crypto_merchant):
        txn = await reconciler.ingest(db_session, chain_log(status="pending"), SourceKind.CRYPTO)
        assert txn.fiat_currency == "NGN"

    async def test_fiat_currency_defaults_to_merchant_preference(self, db_session, reconciler, session_factory):
        wallet = "0x" + "d" * 40
        await create_merchant(session_factory, wallet_address=wallet, payout_currency="USD")

        txn = await reconciler.ingest(
            db_session, chain_log(status="pending", merchant=wallet), SourceKind.CRYPTO
        )
        assert txn.fiat_currency == "USD"

    async def test_new_record_starts_pending(self, db_session, reconciler, crypto_merchant):
        txn = await reconciler.ingest(db_session, chain_log(status="pending"), SourceKind.CRYPTO)
        assert txn.status == "PENDING"
        assert txn.settlement is None
        assert txn.merchant_wallet_address == CRYPTO_WALLET


class TestSettlementTrigger:
    async def test_successful_event_is_submitted(self, db_session, reconciler, crypto_merchant, queue):
        txn = await reconciler.ingest(db_session, chain_log(), SourceKind.CRYPTO)
        assert queue.submitted == [txn.id]

    async def test_non_successful_event_waits(self, db_session, reconciler, crypto_merchant, queue):
        await reconciler.ingest(db_session, chain_log(status="pending"), SourceKind.CRYPTO)
        assert queue.submitted == []

    async def test_refinement_to_successful_submits(self, db_session, reconciler, crypto_merchant, queue):
        await reconciler.ingest(db_session, chain_log(status="pending"), SourceKind.CRYPTO)
        txn = await reconciler.ingest(db_session, chain_log(status="successful"), SourceKind.CRYPTO)
        assert queue.submitted == [txn.id]

    async def test_no_queue_leaves_record_pending(self, db_session, crypto_merchant):
        coordinator = ReconciliationCoordinator(None)
        txn = await coordinator.ingest(db_session, chain_log(), SourceKind.CRYPTO)
        assert txn.status == "PENDING"


class TestMerchantResolution:
    async def test_unknown_wallet_writes_nothing(self, db_session, reconciler, crypto_merchant):
        with pytest.raises(MerchantNotFoundError):
            await reconciler.ingest(
                db_session, chain_log(merchant="0x" + "9" * 40), SourceKind.CRYPTO
            )
        assert await count_rows(db_session, "KP-1") == 0

    async def test_id_wallet_mismatch(self, db_session, reconciler, crypto_merchant, bank_merchant):
        with pytest.raises(MerchantMismatchError):
            await reconciler.ingest(
                db_session, chain_log(merchantId=str(bank_merchant.id)), SourceKind.CRYPTO
            )
