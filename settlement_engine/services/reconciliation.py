"""
Reconciliation coordinator — one entry point for both producers.

    webhook   -> normalize(FIAT)   -\
                                     > reconcile() -> ledger upsert -> queue
    chain log -> normalize(CRYPTO) -/

reconcile(db, event):
  1. Resolve the owning merchant from the merchant id / wallet the event
     carries (hard error if unknown, before anything is written).
  2. Upsert by (merchant_id, reference) and COMMIT, so the record is
     durable before the producer is acknowledged.
  3. If the record is PENDING and the producer reports the payment as
     successful, submit it to the settlement queue. The producer never
     waits for, or hears about, the payout.

Errors that reach the caller are ledger-write errors only (validation,
merchant resolution). Settlement errors live on the record.
"""

import logging
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.models.transaction import SourceKind, Transaction
from settlement_engine.schemas.events import NormalizedEvent
from settlement_engine.services import ledger, merchant_resolver
from settlement_engine.services.normalizer import normalize
from settlement_engine.services.settlement_queue import SettlementQueue

logger = logging.getLogger(__name__)


class ReconciliationCoordinator:
    def __init__(
        self,
        queue: SettlementQueue | None,
        *,
        token_decimals: int = 6,
        fiat_decimals: int = 2,
        network: str | None = None,
    ):
        self._queue = queue
        self._token_decimals = token_decimals
        self._fiat_decimals = fiat_decimals
        self._network = network

    def normalize(self, raw_event: Mapping[str, Any], source_kind: SourceKind) -> NormalizedEvent:
        return normalize(
            raw_event,
            source_kind,
            token_decimals=self._token_decimals,
            fiat_decimals=self._fiat_decimals,
            network=self._network,
        )

    async def ingest(
        self,
        db: AsyncSession,
        raw_event: Mapping[str, Any],
        source_kind: SourceKind,
    ) -> Transaction:
        """Normalize a raw producer payload and reconcile it."""
        return await self.reconcile(db, self.normalize(raw_event, source_kind))

    async def reconcile(self, db: AsyncSession, event: NormalizedEvent) -> Transaction:
        """
        Record a normalized event in the ledger and trigger settlement.

        Args:
            db: Database session; committed here.
            event: Normalized event from either producer.

        Returns:
            The ledger record after the upsert.

        Raises:
            MerchantNotFoundError, InvalidMerchantIdError, MerchantMismatchError
        """
        merchant = await merchant_resolver.resolve(
            db,
            merchant_id=event.merchant_id,
            wallet_address=event.merchant_wallet_address,
        )
        txn = await ledger.upsert_event(db, merchant, event)
        await db.commit()

        logger.info(
            "Reconciled %s event %s for merchant %s: transaction %s is %s (source status %s)",
            event.provider.value, event.reference, merchant.merchant_id,
            txn.id, txn.status, txn.source_status,
        )

        if ledger.is_settleable(txn):
            if self._queue is None:
                logger.warning("No settlement queue configured, transaction %s left PENDING", txn.id)
            else:
                self._queue.submit(txn.id)
        return txn
