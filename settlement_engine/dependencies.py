"""
FastAPI dependencies for inbound verification and engine components.

Two gates:

  verify_gateway_signature   `verif-hash` header == WEBHOOK_SECRET
      └── POST /webhooks/flutterwave

  require_operator           `X-Operator-Key` header == OPERATOR_API_KEY
      ├── POST /events/chain
      ├── /transactions/*     (reporting reads)
      └── /settlements/*      (retry, sweep, failed list, gateway lookup)

Engine components (coordinator, dispatcher, queue, transfer client) are built once in the
application lifespan and stored on app.state; the getters below hand them
to route handlers, and tests replace them by setting app.state directly.
"""

from fastapi import Header, Request

from settlement_engine.clients.transfer_client import FlutterwaveTransferClient
from settlement_engine.exceptions import ProviderError, WebhookSignatureError
from settlement_engine.models.transaction import Provider
from settlement_engine.security import verify_operator_key, verify_webhook_signature
from settlement_engine.services.reconciliation import ReconciliationCoordinator
from settlement_engine.services.settlement import SettlementDispatcher
from settlement_engine.services.settlement_queue import SettlementQueue


async def verify_gateway_signature(
    verif_hash: str | None = Header(None, alias="verif-hash"),
) -> None:
    """
    Reject webhooks whose `verif-hash` header does not match WEBHOOK_SECRET.

    Raises:
        WebhookSignatureError: Header missing or wrong (401).
    """
    if not verify_webhook_signature(verif_hash):
        raise WebhookSignatureError("Invalid webhook signature")


async def require_operator(
    x_operator_key: str | None = Header(None, alias="X-Operator-Key"),
) -> None:
    """
    Require the operator API key on internal endpoints.

    Raises:
        WebhookSignatureError: Header missing or wrong (401).
    """
    if not verify_operator_key(x_operator_key):
        raise WebhookSignatureError("Invalid or missing operator key")


def get_coordinator(request: Request) -> ReconciliationCoordinator:
    return request.app.state.coordinator


def get_dispatcher(request: Request) -> SettlementDispatcher:
    return request.app.state.dispatcher


def get_settlement_queue(request: Request) -> SettlementQueue:
    return request.app.state.settlement_queue


def get_transfer_client(request: Request) -> FlutterwaveTransferClient:
    """
    The gateway client built in the lifespan.

    Raises:
        ProviderError: FLUTTERWAVE_SECRET_KEY is not configured (502).
    """
    transfer_client = getattr(request.app.state, "transfer_client", None)
    if transfer_client is None:
        raise ProviderError(Provider.FLUTTERWAVE.value, "Fiat transfer client is not configured")
    return transfer_client
