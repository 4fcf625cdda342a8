"""
Background settlement queue.

Producers never wait for a payout: the reconciliation coordinator submits
the transaction id here and returns as soon as the ledger write is
committed. Worker tasks pull ids off an asyncio.Queue and run
SettlementDispatcher.settle() for each; the outcome is observable only
through the stored `settlement` field.

Crash recovery (sweep):
  A process that dies mid-settlement leaves the record in PROCESSING.
  sweep() moves every PROCESSING record whose settlement started more than
  `stale_after_seconds` ago to FAILED with
  "settlement interrupted before completion". It never re-pays those by
  itself: whether the payout went out is unknown, so an operator decides,
  unless `resubmit_failed` is enabled.

  Settleable PENDING records older than the same cutoff (queued when the
  process stopped) are always resubmitted; a first attempt is safe because
  the dispatcher claims the record before paying.
"""

import asyncio
import contextlib
import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement_engine.schemas.transaction import SweepResponse
from settlement_engine.services import ledger

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "settlement interrupted before completion"


class SettlementQueue:
    def __init__(
        self,
        dispatcher,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        workers: int = 2,
        stale_after_seconds: int = 900,
        sweep_interval_seconds: int = 0,
        resubmit_failed: bool = False,
    ):
        self._dispatcher = dispatcher
        self._session_factory = session_factory
        self._worker_count = max(1, workers)
        self._stale_after = timedelta(seconds=stale_after_seconds)
        self._sweep_interval = sweep_interval_seconds
        self._resubmit_failed = resubmit_failed

        self._queue: asyncio.Queue[uuid.UUID | None] = asyncio.Queue()
        self._queued: set[uuid.UUID] = set()
        self._workers: list[asyncio.Task] = []
        self._sweeper: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            logger.warning("Settlement queue already running")
            return
        self._workers = [
            asyncio.create_task(self._work(n), name=f"settlement-worker-{n}")
            for n in range(self._worker_count)
        ]
        if self._sweep_interval > 0:
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="settlement-sweeper")
        logger.info(
            "Settlement queue started with %d workers (sweep every %ss)",
            self._worker_count, self._sweep_interval or "-",
        )

    async def stop(self) -> None:
        """
        Stop the workers.

        Settlements already running finish and record their outcome. Ids
        still waiting in the queue are dropped; their records stay PENDING
        and the next sweep resubmits them.
        """
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None

        dropped = 0
        while not self._queue.empty():
            item = self._queue.get_nowait()
            self._queue.task_done()
            if item is not None:
                dropped += 1
        self._queued.clear()
        if dropped:
            logger.warning("Dropped %d queued settlements on shutdown", dropped)

        for _ in self._workers:
            self._queue.put_nowait(None)
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Settlement queue stopped")

    def submit(self, transaction_id: uuid.UUID) -> bool:
        """Queue a settlement. Returns False if this id is already waiting."""
        if transaction_id in self._queued:
            logger.debug("Transaction %s already queued for settlement", transaction_id)
            return False
        self._queued.add(transaction_id)
        self._queue.put_nowait(transaction_id)
        logger.debug("Queued transaction %s for settlement", transaction_id)
        return True

    async def join(self) -> None:
        """Wait until every submitted settlement has been processed."""
        await self._queue.join()

    async def _work(self, n: int) -> None:
        while True:
            transaction_id = await self._queue.get()
            try:
                if transaction_id is None:
                    return
                self._queued.discard(transaction_id)
                result = await self._dispatcher.settle(transaction_id)
                logger.info(
                    "Worker %d: transaction %s settlement outcome %s",
                    n, transaction_id, result.outcome,
                )
            except Exception:
                logger.exception("Worker %d: settlement of transaction %s raised", n, transaction_id)
            finally:
                self._queue.task_done()

    async def sweep(self) -> SweepResponse:
        """
        Recover stale PROCESSING records and resubmit orphaned work.

        Returns:
            Ids moved to FAILED and ids submitted to the queue.
        """
        cutoff = datetime.now(timezone.utc) - self._stale_after
        recovered: list[uuid.UUID] = []

        async with self._session_factory() as db:
            for txn in await ledger.list_stale_processing(db, cutoff):
                settlement = {
                    "last_run_at": datetime.now(timezone.utc).isoformat(),
                    "method": (txn.settlement or {}).get("method"),
                    "provider": (txn.settlement or {}).get("provider"),
                    "reference": txn.reference,
                    "status": "FAILED",
                    "error": INTERRUPTED_ERROR,
                    "details": {
                        "settlement_started_at": (
                            txn.settlement_started_at.isoformat() if txn.settlement_started_at else None
                        ),
                    },
                }
                if await ledger.mark_interrupted(db, txn.id, cutoff, settlement):
                    recovered.append(txn.id)
                    logger.warning(
                        "Transaction %s (%s) stuck in PROCESSING since %s, marked FAILED",
                        txn.id, txn.reference, txn.settlement_started_at,
                    )
            await db.commit()

            candidates = [txn.id for txn in await ledger.list_orphaned_pending(db, cutoff)]
            if self._resubmit_failed:
                candidates += [txn.id for txn in await ledger.list_failed(db, limit=500)]

        resubmitted = [txn_id for txn_id in dict.fromkeys(candidates) if self.submit(txn_id)]

        if recovered or resubmitted:
            logger.info(
                "Sweep recovered %d stale settlements, resubmitted %d",
                len(recovered), len(resubmitted),
            )
        return SweepResponse(recovered=recovered, resubmitted=resubmitted)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Settlement sweep failed")
