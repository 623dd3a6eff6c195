# backend/chainpilot/facilitator/batch_settler.py
"""
Q402 batch settler.

Submits a signed batch to the BatchExecutor contract in one sponsored
transaction. Every swap router and call target is checked against the
executor's whitelists before anything is sent; a single miss rejects the whole
batch.
"""

import logging
import time
from typing import List, Optional, Tuple

from eth_utils import to_checksum_address
from hexbytes import HexBytes

from chainpilot.errors import ChainPilotError
from chainpilot.facilitator.abi import Q402_BATCH_EXECUTOR_ABI
from chainpilot.facilitator.batch_verifier import BatchSignatureVerifier
from chainpilot.facilitator.chain import ChainClient
from chainpilot.facilitator.settler import WEI_PER_GWEI, GasBudget, SettlementStats
from chainpilot.facilitator.types import (
    BatchOperation,
    BatchSettleRequest,
    FacilitatorConfig,
    FacilitatorErrorCode,
    SettleResult,
)

logger = logging.getLogger(__name__)

MIN_BATCH_SPONSOR_BALANCE_WEI = 10**16  # 0.01 BNB
BATCH_BASE_GAS = 300_000
BATCH_GAS_PER_OPERATION = 200_000

# op type -> whitelist view function on the executor
_WHITELIST_CHECKS = {
    "swap": ("isRouterWhitelisted", "router"),
    "call": ("isTargetWhitelisted", "target"),
}


class BatchTransactionSettler:
    def __init__(
        self,
        config: FacilitatorConfig,
        chain: ChainClient,
        verifier: BatchSignatureVerifier,
        budget: Optional[GasBudget] = None,
    ):
        self.config = config
        self.chain = chain
        self.verifier = verifier
        self.budget = budget or GasBudget(config)
        self.stats = SettlementStats()
        self.total_operations = 0

    @property
    def executor_address(self) -> str:
        return self.config.network.batch_executor

    async def get_nonce(self, owner: str) -> int:
        """Current on-chain batch nonce for owner. Falls back to 0 if the read fails."""
        try:
            return int(await self.chain.call_function(
                self.executor_address, Q402_BATCH_EXECUTOR_ABI, "getNonce", to_checksum_address(owner)
            ))
        except ChainPilotError as e:
            logger.error(f"Failed to fetch batch nonce for {owner}: {e.message}")
            return 0

    async def check_whitelist(self, operations: List[BatchOperation]) -> Optional[Tuple[int, str, str]]:
        """
        Return (index, kind, address) of the first operation whose router/target is
        not whitelisted, or None when every operation passes.
        """
        for index, op in enumerate(operations):
            check = _WHITELIST_CHECKS.get(op.op_type)
            if check is None:
                continue
            function, kind = check
            allowed = await self.chain.call_function(
                self.executor_address, Q402_BATCH_EXECUTOR_ABI, function, to_checksum_address(op.target)
            )
            if not allowed:
                return index, kind, op.target
        return None

    async def settle(self, request: BatchSettleRequest, skip_verification: bool = False) -> SettleResult:
        started = time.monotonic()
        operations = request.operations
        logger.info(
            f"Settling batch {request.request_id} for {request.signer_address}: {len(operations)} operations"
        )

        try:
            if not skip_verification:
                verification = await self.verifier.verify(
                    request.witness, operations, request.signature, request.signer_address
                )
                if not verification.valid:
                    logger.warning(f"Batch {request.request_id} rejected: {verification.reason}")
                    return SettleResult.failure(verification.reason, verification.error_code)

            miss = await self.check_whitelist(operations)
            if miss:
                index, kind, address = miss
                logger.warning(f"Batch {request.request_id} rejected: operation #{index + 1} {kind} {address} not whitelisted")
                return SettleResult.failure(
                    f"Operation #{index + 1} uses a {kind} that is not whitelisted: {address}",
                    FacilitatorErrorCode.NOT_WHITELISTED,
                )

            paused = await self.chain.call_function(self.executor_address, Q402_BATCH_EXECUTOR_ABI, "paused")
            if paused:
                return SettleResult.failure("Batch executor is paused", FacilitatorErrorCode.INVALID_IMPLEMENTATION)

            budget = self.budget.check(request.signer_address)
            if not budget.allowed:
                return SettleResult.failure(budget.reason, budget.error_code)

            balance = await self.chain.get_balance(self.chain.sponsor_address)
            if balance < MIN_BATCH_SPONSOR_BALANCE_WEI:
                logger.error(f"Sponsor balance too low for batch: {balance} wei")
                return SettleResult.failure(
                    "Facilitator has insufficient funds for batch gas sponsorship",
                    FacilitatorErrorCode.INSUFFICIENT_FUNDS,
                )

            max_gas_price = self.config.max_gas_price_gwei * WEI_PER_GWEI
            gas_price = await self.chain.get_gas_price() or max_gas_price
            if gas_price > max_gas_price:
                return SettleResult.failure(
                    f"Gas price too high: {gas_price / WEI_PER_GWEI:g} gwei",
                    FacilitatorErrorCode.BUDGET_EXCEEDED,
                )

            args = self._contract_args(request)
            try:
                estimate = await self.chain.estimate_function_gas(
                    self.executor_address, Q402_BATCH_EXECUTOR_ABI, "executeBatch", args
                )
                gas = estimate * 120 // 100
            except ChainPilotError as e:
                logger.error(f"Gas estimation failed for batch: {e.message}")
                gas = BATCH_BASE_GAS + len(operations) * BATCH_GAS_PER_OPERATION
            gas = min(gas, self.config.max_gas_limit)

            tx_hash = await self.chain.send_function(
                self.executor_address, Q402_BATCH_EXECUTOR_ABI, "executeBatch", args, gas=gas, gas_price=gas_price
            )
            receipt = await self.chain.wait_for_receipt(tx_hash)
            if receipt.get("status") != 1:
                self.stats.fail_count += 1
                return SettleResult.failure(
                    "Batch transaction failed on-chain", FacilitatorErrorCode.TRANSACTION_FAILED, tx_hash
                )

            gas_used = int(receipt.get("gasUsed", 0))
            effective_gas_price = int(receipt.get("effectiveGasPrice") or gas_price)
            self.verifier.mark_nonce_used(request.witness.owner, request.witness.nonce)
            self.budget.charge(request.signer_address, gas_used * effective_gas_price)
            self.stats.total_transactions += 1
            self.stats.total_gas_sponsored += gas_used * effective_gas_price
            self.stats.success_count += 1
            self.total_operations += len(operations)

            logger.info(
                f"Batch {request.request_id} settled: tx={tx_hash} block={receipt.get('blockNumber')} "
                f"gas={gas_used} in {time.monotonic() - started:.2f}s"
            )
            return SettleResult(
                success=True,
                tx_hash=tx_hash,
                block_number=receipt.get("blockNumber"),
                gas_used=gas_used,
                effective_gas_price=effective_gas_price,
            )
        except ChainPilotError as e:
            self.stats.fail_count += 1
            logger.error(f"Batch {request.request_id} failed: {e.message}")
            return SettleResult.failure(e.message, FacilitatorErrorCode.NETWORK_ERROR)
        except Exception as e:
            self.stats.fail_count += 1
            logger.error(f"Batch {request.request_id} failed: {e}")
            return SettleResult.failure(str(e) or "Batch settlement failed", FacilitatorErrorCode.TRANSACTION_FAILED)

    @staticmethod
    def _contract_args(request: BatchSettleRequest) -> list:
        witness = request.witness
        contract_witness = (
            to_checksum_address(witness.owner),
            HexBytes(witness.operations_hash),
            witness.deadline,
            HexBytes(witness.batch_id),
            witness.nonce,
        )
        contract_operations = [
            (
                op.op_code,
                to_checksum_address(op.token_in),
                op.amount_in,
                to_checksum_address(op.token_out),
                op.min_amount_out,
                to_checksum_address(op.target),
                HexBytes(op.data or "0x"),
            )
            for op in request.operations
        ]
        return [contract_witness, contract_operations, HexBytes(request.signature)]
