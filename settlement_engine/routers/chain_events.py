"""
Chain events router — ingestion point for an external chain-log subscriber.

Endpoints:
  POST /events/chain — record one decoded PaymentRecorded log

Unlike the webhook, this is an operator-authenticated internal call, so
ledger-write errors come back as proper HTTP errors (422 malformed,
404 unknown merchant) for the subscriber to act on. Settlement errors
never do: settlement runs later, in the background queue.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.database import get_db
from settlement_engine.dependencies import get_coordinator, require_operator
from settlement_engine.models.transaction import SourceKind
from settlement_engine.schemas.events import ChainEventRequest
from settlement_engine.schemas.transaction import TransactionResponse
from settlement_engine.services.reconciliation import ReconciliationCoordinator

router = APIRouter(dependencies=[Depends(require_operator)])


@router.post(
    "/chain",
    response_model=TransactionResponse,
    summary="Record a decoded PaymentRecorded log",
)
async def record_chain_event(
    request: ChainEventRequest,
    db: AsyncSession = Depends(get_db),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    """
    Reconcile one chain log into the ledger.

    - **amount / fiatEquivalent / chargeFee**: base-unit integers
    - **txRef**: the idempotency reference; re-sending merges, never duplicates
    - **merchant** or **merchantId**: identifies the owning merchant
    """
    raw = request.model_dump(by_alias=True, exclude_none=True)
    return await coordinator.ingest(db, raw, SourceKind.CRYPTO)
