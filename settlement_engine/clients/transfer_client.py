"""
Flutterwave transfers client (httpx).

Only the two calls the engine needs:
  - POST /transfers                              create a bank payout
  - GET  /transactions/verify_by_reference       look up a collection

Every failure, whether transport-level, an HTTP error status, or a 200
whose body says "status": "error", raises ProviderError carrying the
gateway's own message.
"""

import logging
from decimal import Decimal
from typing import Any

import httpx

from settlement_engine.exceptions import ProviderError
from settlement_engine.models.transaction import Provider

logger = logging.getLogger(__name__)


class FlutterwaveTransferClient:
    def __init__(
        self,
        base_url: str,
        secret_key: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def create_transfer(self, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Submit a transfer instruction.

        `payload["amount"]` may be a Decimal or decimal string; it is sent as
        a JSON number rounded to 2 places.

        Returns:
            The gateway's response body.

        Raises:
            ProviderError: "Flutterwave transfer failed: <gateway message>"
        """
        body = {**payload, "amount": float(Decimal(str(payload["amount"])).quantize(Decimal("0.01")))}
        logger.info("Submitting transfer %s (%s %s)", payload.get("reference"), body["amount"], payload.get("currency"))
        return await self._request("POST", "/transfers", "Flutterwave transfer failed", json=body)

    async def verify_transaction(self, tx_ref: str) -> dict[str, Any]:
        return await self._request(
            "GET",
            "/transactions/verify_by_reference",
            "Flutterwave verification failed",
            params={"tx_ref": tx_ref},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, failure: str, **kwargs) -> dict[str, Any]:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderError(Provider.FLUTTERWAVE.value, f"{failure}: {exc}", str(exc)) from exc

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.is_error or data.get("status") == "error":
            message = data.get("message") or response.reason_phrase or "Unknown error"
            raise ProviderError(Provider.FLUTTERWAVE.value, f"{failure}: {message}", message)
        return data
