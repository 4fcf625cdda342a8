"""
On-chain credit client (web3, async).

credit_merchant() pays a merchant in USDT through the payment contract:

  1. approve(contract, amount) on the USDT token, wait for the receipt
  2. creditMerchant(merchant, amount, chargeFee, txRef), wait for the receipt

Amounts are base-unit integers (6 decimals for USDT). Both transactions
are signed locally with the configured signer key. Any failure, including
a mined-but-reverted receipt, raises ProviderError("creditMerchant failed: ...").
"""

import logging
from typing import Any

from web3 import AsyncHTTPProvider, AsyncWeb3

from settlement_engine.clients.abi import ERC20_APPROVE_ABI, PAYMENT_CONTRACT_ABI
from settlement_engine.exceptions import ProviderError
from settlement_engine.models.transaction import Provider

logger = logging.getLogger(__name__)


class ChainCreditClient:
    def __init__(
        self,
        w3: AsyncWeb3,
        contract_address: str,
        usdt_address: str,
        signer_private_key: str,
        receipt_timeout: float = 120.0,
    ):
        self._w3 = w3
        self._contract = w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(contract_address),
            abi=PAYMENT_CONTRACT_ABI,
        )
        self._usdt = w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(usdt_address),
            abi=ERC20_APPROVE_ABI,
        )
        self._account = w3.eth.account.from_key(signer_private_key)
        self._receipt_timeout = receipt_timeout

    @classmethod
    def from_rpc(cls, rpc_url: str, contract_address: str, usdt_address: str, signer_private_key: str):
        return cls(AsyncWeb3(AsyncHTTPProvider(rpc_url)), contract_address, usdt_address, signer_private_key)

    async def credit_merchant(
        self,
        merchant_wallet: str,
        amount_units: int,
        charge_fee_units: int,
        tx_ref: str,
    ) -> dict[str, Any]:
        """
        Credit a merchant wallet.

        Returns:
            {"transaction_hash", "block_number", "status"} of the credit call.

        Raises:
            ProviderError: On any RPC error or reverted transaction.
        """
        try:
            await self._send(self._usdt.functions.approve(self._contract.address, amount_units))
            receipt = await self._send(
                self._contract.functions.creditMerchant(
                    AsyncWeb3.to_checksum_address(merchant_wallet),
                    amount_units,
                    charge_fee_units,
                    tx_ref,
                )
            )
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderError(Provider.CONTRACT.value, f"creditMerchant failed: {exc}", str(exc)) from exc

        result = {
            "transaction_hash": AsyncWeb3.to_hex(receipt["transactionHash"]),
            "block_number": receipt["blockNumber"],
            "status": receipt["status"],
        }
        logger.info("Merchant %s credited for %s in tx %s", merchant_wallet, tx_ref, result["transaction_hash"])
        return result

    async def _send(self, call) -> Any:
        tx = await call.build_transaction({
            "from": self._account.address,
            "nonce": await self._w3.eth.get_transaction_count(self._account.address, "pending"),
            "chainId": await self._w3.eth.chain_id,
        })
        signed = self._account.sign_transaction(tx)
        tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = await self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout)
        if receipt["status"] != 1:
            tx_hex = AsyncWeb3.to_hex(tx_hash)
            raise ProviderError(
                Provider.CONTRACT.value,
                f"creditMerchant failed: transaction {tx_hex} reverted",
                f"reverted: {tx_hex}",
            )
        return receipt
