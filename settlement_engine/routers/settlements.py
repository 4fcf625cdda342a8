"""
Settlements router — operator controls over the settlement state machine.

Endpoints:
  POST /settlements/sweep             — recover stale PROCESSING records
  GET  /settlements/failed            — FAILED records awaiting a decision
  GET  /settlements/gateway/{tx_ref}  — the gateway's own view of a charge
  POST /settlements/{transaction_id}  — settle (or retry) one record now

The retry endpoint runs the dispatcher in the request and returns its
SettlementResult. It is safe to call repeatedly: a SETTLED record comes
back as ALREADY_SETTLED without any payout, a record another worker
holds comes back as IN_PROGRESS, and a charge the producer did not report
as successful comes back as NOT_SETTLEABLE.
"""

import uuid
from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.clients.transfer_client import FlutterwaveTransferClient
from settlement_engine.database import get_db
from settlement_engine.dependencies import (
    get_dispatcher,
    get_settlement_queue,
    get_transfer_client,
    require_operator,
)
from settlement_engine.schemas.transaction import SettlementResult, SweepResponse, TransactionResponse
from settlement_engine.services import ledger
from settlement_engine.services.settlement import SettlementDispatcher
from settlement_engine.services.settlement_queue import SettlementQueue

router = APIRouter(dependencies=[Depends(require_operator)])


@router.post(
    "/sweep",
    response_model=SweepResponse,
    summary="Recover settlements interrupted mid-flight",
)
async def sweep(queue: SettlementQueue = Depends(get_settlement_queue)):
    return await queue.sweep()


@router.get(
    "/failed",
    response_model=list[TransactionResponse],
    summary="List failed settlements",
)
async def list_failed(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    return await ledger.list_failed(db, limit=limit, offset=offset)


@router.get(
    "/gateway/{tx_ref}",
    summary="Verify a charge with the payment gateway",
)
async def verify_gateway_charge(
    tx_ref: str,
    transfer_client: FlutterwaveTransferClient = Depends(get_transfer_client),
) -> dict[str, Any]:
    """
    Look a charge up by its tx_ref on the gateway itself.

    Used to check a webhook that never arrived or a disputed status
    against the ledger record. Gateway errors come back as 502.
    """
    return await transfer_client.verify_transaction(tx_ref)


@router.post(
    "/{transaction_id}",
    response_model=SettlementResult,
    summary="Settle or retry one transaction",
)
async def settle_transaction(
    transaction_id: uuid.UUID,
    dispatcher: SettlementDispatcher = Depends(get_dispatcher),
):
    """
    Run one settlement attempt synchronously.

    A FAILED record is claimed back to PROCESSING and paid again; the
    outcome (including any error) is in the response and on the record.
    """
    return await dispatcher.settle(transaction_id)
