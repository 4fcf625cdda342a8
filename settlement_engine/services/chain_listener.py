"""
Chain log listener — the CRYPTO producer.

Polls the payment contract for PaymentRecorded logs and feeds each decoded
log through the reconciliation coordinator, exactly like an event pushed to
POST /events/chain. It remembers the last block it processed; on restart
it begins at the current head unless a start block is given.

A log that cannot be reconciled (unknown merchant, malformed amount) is
logged and skipped; it never stops the poller.
"""

import asyncio
import contextlib
import logging
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from web3 import AsyncWeb3

from settlement_engine.clients.abi import PAYMENT_CONTRACT_ABI
from settlement_engine.exceptions import SettlementEngineError
from settlement_engine.models.transaction import SourceKind, Transaction
from settlement_engine.services.reconciliation import ReconciliationCoordinator

logger = logging.getLogger(__name__)


class ChainLogPoller:
    def __init__(
        self,
        w3: AsyncWeb3,
        contract_address: str,
        coordinator: ReconciliationCoordinator,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        interval_seconds: float = 15,
        network: str | None = None,
        start_block: int | None = None,
    ):
        self._w3 = w3
        self._contract = w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(contract_address),
            abi=PAYMENT_CONTRACT_ABI,
        )
        self._coordinator = coordinator
        self._session_factory = session_factory
        self._interval = interval_seconds
        self._network = network
        self._last_block = start_block - 1 if start_block is not None else None
        self._task: asyncio.Task | None = None

    @property
    def last_block(self) -> int | None:
        return self._last_block

    def start(self) -> None:
        if self._task is not None:
            logger.warning("Chain log poller already running")
            return
        self._task = asyncio.create_task(self._run(), name="chain-log-poller")
        logger.info("Chain log poller started (every %ss)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Chain log poller stopped at block %s", self._last_block)

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Chain log poll failed")
            await asyncio.sleep(self._interval)

    async def poll_once(self) -> int:
        """Fetch and reconcile new PaymentRecorded logs. Returns how many were recorded."""
        head = await self._w3.eth.block_number
        from_block = self._last_block + 1 if self._last_block is not None else head
        if from_block > head:
            return 0

        logs = await self._contract.events.PaymentRecorded.get_logs(from_block=from_block, to_block=head)
        recorded = 0
        for log in logs:
            if await self.handle_log(log) is not None:
                recorded += 1

        self._last_block = head
        if logs:
            logger.info("Processed %d PaymentRecorded logs in blocks %d-%d", len(logs), from_block, head)
        return recorded

    async def handle_log(self, log: Mapping[str, Any]) -> Transaction | None:
        """Reconcile one decoded log; returns None when it was skipped."""
        raw = dict(log["args"])
        raw["transactionHash"] = AsyncWeb3.to_hex(log["transactionHash"])
        raw["blockNumber"] = log["blockNumber"]
        if self._network:
            raw.setdefault("network", self._network)

        async with self._session_factory() as db:
            try:
                return await self._coordinator.ingest(db, raw, SourceKind.CRYPTO)
            except SettlementEngineError as exc:
                await db.rollback()
                logger.warning(
                    "Skipping PaymentRecorded log %s (txRef %s): %s",
                    raw["transactionHash"], raw.get("txRef"), exc.detail,
                )
                return None
