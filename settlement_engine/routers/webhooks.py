"""
Webhooks router — fiat payment gateway notifications.

Endpoints:
  POST /webhooks/flutterwave — charge notifications from the gateway

Acknowledgement policy:
  Once the signature checks out, the gateway always gets a 200, so it
  stops redelivering. The body says what happened:

    {"status": "success", ...}  recorded (or merged into) the ledger
    {"status": "ignored", ...}  not recorded: no merchant context in
                                data.meta, malformed payload, or unknown
                                merchant; the reason is logged

  A bad signature is the one rejection (401). Settlement never runs inside
  this request; it is queued after the ledger write commits.
"""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.database import get_db
from settlement_engine.dependencies import get_coordinator, verify_gateway_signature
from settlement_engine.exceptions import SettlementEngineError
from settlement_engine.models.transaction import SourceKind
from settlement_engine.services.reconciliation import ReconciliationCoordinator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/flutterwave",
    dependencies=[Depends(verify_gateway_signature)],
    summary="Receive a payment-gateway webhook",
)
async def flutterwave_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Webhook body is not valid JSON, ignoring")
        return {"status": "ignored", "reason": "invalid JSON body"}
    if not isinstance(payload, dict):
        logger.warning("Webhook body is not a JSON object, ignoring")
        return {"status": "ignored", "reason": "body must be a JSON object"}

    try:
        event = coordinator.normalize(payload, SourceKind.FIAT)
    except SettlementEngineError as exc:
        logger.warning("Webhook %s could not be normalized: %s", payload.get("event"), exc.detail)
        return {"status": "ignored", "reason": exc.detail}

    if not event.merchant_id and not event.merchant_wallet_address:
        logger.warning("Webhook for %s has no merchant context in data.meta, not recorded", event.reference)
        return {"status": "ignored", "reference": event.reference, "reason": "missing merchant context"}

    try:
        txn = await coordinator.reconcile(db, event)
    except SettlementEngineError as exc:
        await db.rollback()
        logger.warning("Webhook for %s not recorded: %s", event.reference, exc.detail)
        return {"status": "ignored", "reference": event.reference, "reason": exc.detail}

    return {
        "status": "success",
        "reference": txn.reference,
        "transaction_id": str(txn.id),
        "transaction_status": txn.status,
    }
