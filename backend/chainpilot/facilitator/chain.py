# backend/chainpilot/facilitator/chain.py
"""
Async RPC client for one BNB Chain network.

Every read is bounded by RPC_TIMEOUT_SECONDS and retried with exponential
backoff on transient failures (timeouts, dropped connections, 429/5xx).
Failures that survive the retries surface as UpstreamError.

Sponsor transactions are serialized per client so two settlements never race
for the same sponsor account nonce.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from eth_account import Account
from eth_utils import to_checksum_address
from hexbytes import HexBytes
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from web3 import AsyncHTTPProvider, AsyncWeb3

from chainpilot.errors import FacilitatorUnconfigured, UpstreamError
from chainpilot.facilitator.networks import NetworkConfig

logger = logging.getLogger(__name__)


def is_retryable_rpc_error(exception):
    """Return True for transient RPC failures worth another attempt."""
    if isinstance(exception, (asyncio.TimeoutError, ConnectionError)):
        return True

    # HTTP errors from the provider carry the response status
    if hasattr(exception, 'status') and isinstance(exception.status, int):
        return exception.status == 429 or exception.status >= 500

    exc_name = type(exception).__name__
    if 'Timeout' in exc_name or 'Connect' in exc_name:
        return True

    return False


rpc_retry = retry(
    retry=retry_if_exception(is_retryable_rpc_error),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    stop=stop_after_attempt(3),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


class ChainClient:
    """
    Thin wrapper over AsyncWeb3 for the calls the facilitator needs.

    Usage:
        client = ChainClient(network, sponsor_private_key, timeout=15)
        balance = await client.get_balance(client.sponsor_address)
    """

    def __init__(
        self,
        network: NetworkConfig,
        sponsor_private_key: Optional[str] = None,
        timeout: float = 15.0,
        w3: Optional[AsyncWeb3] = None,
    ):
        self.network = network
        self.timeout = timeout
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(network.rpc_url, request_kwargs={"timeout": timeout}))
        self._account = Account.from_key(sponsor_private_key) if sponsor_private_key else None
        self._send_lock = asyncio.Lock()

    @property
    def sponsor_address(self) -> str:
        if self._account is None:
            raise FacilitatorUnconfigured(
                f"FACILITATOR_PRIVATE_KEY is required for {self.network.network_id}"
            )
        return self._account.address

    def contract(self, address: str, abi: List[Dict[str, Any]]):
        return self.w3.eth.contract(address=to_checksum_address(address), abi=abi)

    async def _bounded(self, operation: str, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"RPC {operation} timed out after {self.timeout}s on {self.network.network_id}")
            raise

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_balance(self, address: str) -> int:
        return await self._read("get_balance", lambda: self.w3.eth.get_balance(to_checksum_address(address)))

    async def get_gas_price(self) -> int:
        return await self._read("gas_price", lambda: self.w3.eth.gas_price)

    async def call_function(self, address: str, abi: List[Dict[str, Any]], name: str, *args) -> Any:
        """Call a view function, e.g. call_function(executor, ABI, "paused")."""
        contract = self.contract(address, abi)
        return await self._read(name, lambda: getattr(contract.functions, name)(*args).call())

    async def estimate_function_gas(
        self, address: str, abi: List[Dict[str, Any]], name: str, args: Sequence[Any]
    ) -> int:
        contract = self.contract(address, abi)
        return await self._read(
            f"estimate_gas:{name}",
            lambda: getattr(contract.functions, name)(*args).estimate_gas({"from": self.sponsor_address}),
        )

    async def _read(self, operation: str, call):
        try:
            return await self._read_with_retry(operation, call)
        except Exception as e:
            logger.error(f"RPC {operation} failed on {self.network.network_id}: {e}")
            raise UpstreamError("rpc", f"{operation} failed: {e}", {"network": self.network.network_id})

    @rpc_retry
    async def _read_with_retry(self, operation: str, call):
        return await self._bounded(operation, call())

    # =========================================================================
    # Writes (sponsor account)
    # =========================================================================

    async def send_function(
        self,
        address: str,
        abi: List[Dict[str, Any]],
        name: str,
        args: Sequence[Any],
        gas: int,
        gas_price: int,
    ) -> str:
        """Sign and broadcast a contract call paid by the sponsor. Returns the tx hash."""
        contract = self.contract(address, abi)

        async with self._send_lock:
            nonce = await self.w3.eth.get_transaction_count(self.sponsor_address, "pending")
            tx = await getattr(contract.functions, name)(*args).build_transaction({
                "from": self.sponsor_address,
                "nonce": nonce,
                "gas": gas,
                "gasPrice": gas_price,
                "value": 0,
                "chainId": self.network.chain_id,
            })
            return await self._sign_and_send(tx)

    async def send_raw_call(self, to: str, data: str, gas: int, gas_price: int, value: int = 0) -> str:
        async with self._send_lock:
            nonce = await self.w3.eth.get_transaction_count(self.sponsor_address, "pending")
            tx = {
                "from": self.sponsor_address,
                "to": to_checksum_address(to),
                "data": data or "0x",
                "value": value,
                "nonce": nonce,
                "gas": gas,
                "gasPrice": gas_price,
                "chainId": self.network.chain_id,
            }
            return await self._sign_and_send(tx)

    async def _sign_and_send(self, tx: Dict[str, Any]) -> str:
        signed = self._account.sign_transaction(tx)
        tx_hash = await self._bounded("send_raw_transaction", self.w3.eth.send_raw_transaction(signed.raw_transaction))
        return "0x" + HexBytes(tx_hash).hex().removeprefix("0x")

    async def wait_for_receipt(self, tx_hash: str, timeout: float = 120.0) -> Dict[str, Any]:
        receipt = await self.w3.eth.wait_for_transaction_receipt(HexBytes(tx_hash), timeout=timeout)
        return dict(receipt)
