# backend/chainpilot/facilitator/settler.py
"""
Q402 transaction settler.

Submits verified witnesses on-chain with the sponsor wallet paying gas.

Flow:
1. Verify the signature (unless the caller already did)
2. Nonce not yet consumed on-chain (usedNonces), which catches settlements
   made by another facilitator process
3. Budget: daily gas budget, per-address daily count, per-minute rate
4. Sponsor balance >= 0.001 BNB
5. Gas price <= MAX_GAS_PRICE_GWEI and estimated cost <= PER_TX_MAX_GAS_WEI
6. executeTransfer (or a custom call), wait for the receipt
7. Mark the nonce used, charge the budget, update stats

Failures come back as SettleResult(success=False), never as exceptions.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, Optional

from eth_utils import to_checksum_address
from hexbytes import HexBytes

from chainpilot.errors import ChainPilotError
from chainpilot.facilitator.abi import Q402_IMPLEMENTATION_ABI
from chainpilot.facilitator.chain import ChainClient
from chainpilot.facilitator.types import (
    FacilitatorConfig,
    FacilitatorErrorCode,
    SettleRequest,
    SettleResult,
)
from chainpilot.facilitator.verifier import SignatureVerifier
from chainpilot.services.policy_models import NATIVE_TOKEN_ADDRESS

logger = logging.getLogger(__name__)

WEI_PER_GWEI = 10**9
MIN_SPONSOR_BALANCE_WEI = 10**15  # 0.001 BNB
DEFAULT_TRANSFER_GAS = 300_000
RATE_WINDOW_SECONDS = 60


@dataclass
class AddressBudget:
    gas_used_wei: int = 0
    transaction_count: int = 0
    window_started: float = 0.0
    requests_this_window: int = 0


@dataclass
class BudgetRecord:
    day: date
    total_gas_used_wei: int = 0
    transaction_count: int = 0
    addresses: Dict[str, AddressBudget] = field(default_factory=dict)


@dataclass
class BudgetCheck:
    allowed: bool
    reason: Optional[str] = None
    error_code: Optional[FacilitatorErrorCode] = None
    remaining_daily_budget_wei: Optional[int] = None
    address_transactions_today: Optional[int] = None


@dataclass
class SettlementStats:
    total_transactions: int = 0
    total_gas_sponsored: int = 0
    success_count: int = 0
    fail_count: int = 0

    @property
    def success_rate(self) -> float:
        attempts = self.success_count + self.fail_count
        return round(self.success_count / attempts * 100, 2) if attempts else 0.0

    def to_dict(self) -> dict:
        return {
            "totalTransactions": self.total_transactions,
            "totalGasSponsored": str(self.total_gas_sponsored),
            "successCount": self.success_count,
            "failCount": self.fail_count,
            "successRate": self.success_rate,
        }


class GasBudget:
    """In-memory daily gas budget and per-address rate tracking for one sponsor."""

    def __init__(self, config: FacilitatorConfig):
        self.config = config
        self._records: Dict[date, BudgetRecord] = {}

    def check(self, address: str) -> BudgetCheck:
        record = self._records.get(datetime.utcnow().date())
        if record is None:
            return BudgetCheck(
                allowed=True,
                remaining_daily_budget_wei=self.config.daily_gas_budget_wei,
                address_transactions_today=0,
            )

        if record.total_gas_used_wei >= self.config.daily_gas_budget_wei:
            return BudgetCheck(
                allowed=False,
                reason="Daily gas budget exceeded",
                error_code=FacilitatorErrorCode.BUDGET_EXCEEDED,
                remaining_daily_budget_wei=0,
            )

        budget = record.addresses.get(address.lower())
        if budget and budget.transaction_count >= self.config.max_requests_per_address:
            return BudgetCheck(
                allowed=False,
                reason=f"Address has exceeded daily transaction limit ({self.config.max_requests_per_address})",
                error_code=FacilitatorErrorCode.BUDGET_EXCEEDED,
                address_transactions_today=budget.transaction_count,
            )

        if budget and time.time() - budget.window_started < RATE_WINDOW_SECONDS:
            if budget.requests_this_window >= self.config.max_requests_per_minute:
                return BudgetCheck(
                    allowed=False,
                    reason="Rate limit exceeded - too many requests per minute",
                    error_code=FacilitatorErrorCode.RATE_LIMITED,
                )

        return BudgetCheck(
            allowed=True,
            remaining_daily_budget_wei=self.config.daily_gas_budget_wei - record.total_gas_used_wei,
            address_transactions_today=budget.transaction_count if budget else 0,
        )

    def charge(self, address: str, gas_cost_wei: int):
        today = datetime.utcnow().date()
        record = self._records.setdefault(today, BudgetRecord(day=today))
        record.total_gas_used_wei += gas_cost_wei
        record.transaction_count += 1

        budget = record.addresses.setdefault(address.lower(), AddressBudget())
        budget.gas_used_wei += gas_cost_wei
        budget.transaction_count += 1

        now = time.time()
        if now - budget.window_started > RATE_WINDOW_SECONDS:
            budget.window_started = now
            budget.requests_this_window = 1
        else:
            budget.requests_this_window += 1

        logger.info(
            f"Budget updated for {address.lower()}: +{gas_cost_wei} wei, "
            f"daily total {record.total_gas_used_wei} wei"
        )

    def cleanup(self, days_to_keep: int = 7) -> int:
        cutoff = datetime.utcnow().date() - timedelta(days=days_to_keep)
        stale = [day for day in self._records if day < cutoff]
        for day in stale:
            del self._records[day]
        return len(stale)


class TransactionSettler:
    """
    Settles single-payment witnesses for one network.

    Usage:
        settler = TransactionSettler(config, chain, verifier)
        result = await settler.settle(request)
    """

    def __init__(
        self,
        config: FacilitatorConfig,
        chain: ChainClient,
        verifier: SignatureVerifier,
        budget: Optional[GasBudget] = None,
    ):
        self.config = config
        self.chain = chain
        self.verifier = verifier
        self.budget = budget or GasBudget(config)
        self.stats = SettlementStats()

    @property
    def max_gas_price_wei(self) -> int:
        return self.config.max_gas_price_gwei * WEI_PER_GWEI

    async def get_sponsor_balance(self) -> int:
        return await self.chain.get_balance(self.chain.sponsor_address)

    async def get_nonce(self, owner: str) -> int:
        """Current on-chain payment nonce for owner. Falls back to 0 if the read fails."""
        try:
            return int(await self.chain.call_function(
                self.config.network.implementation_contract, Q402_IMPLEMENTATION_ABI, "getNonce",
                to_checksum_address(owner),
            ))
        except ChainPilotError as e:
            logger.error(f"Failed to fetch payment nonce for {owner}: {e.message}")
            return 0

    async def is_nonce_used(self, owner: str, nonce: int) -> bool:
        return bool(await self.chain.call_function(
            self.config.network.implementation_contract, Q402_IMPLEMENTATION_ABI, "usedNonces",
            to_checksum_address(owner), nonce,
        ))

    async def settle(self, request: SettleRequest, skip_verification: bool = False) -> SettleResult:
        started = time.monotonic()
        witness = request.witness
        logger.info(f"Settling {request.request_id} for {witness.owner} on {self.config.network.network_id}")

        try:
            if not skip_verification:
                verification = await self.verifier.verify(witness, request.signature, request.signer_address)
                if not verification.valid:
                    logger.warning(f"Settlement {request.request_id} rejected: {verification.reason}")
                    return SettleResult.failure(verification.reason, verification.error_code)

            if await self.is_nonce_used(witness.owner, witness.nonce):
                self.verifier.mark_nonce_used(witness.owner, witness.nonce)
                logger.warning(f"Settlement {request.request_id} rejected: nonce {witness.nonce} already used on-chain")
                return SettleResult.failure(
                    f"Nonce already used on-chain: {witness.nonce} for address {witness.owner}",
                    FacilitatorErrorCode.INVALID_NONCE,
                )

            budget = self.budget.check(request.signer_address)
            if not budget.allowed:
                logger.warning(f"Settlement {request.request_id} over budget: {budget.reason}")
                return SettleResult.failure(budget.reason, budget.error_code)

            balance = await self.get_sponsor_balance()
            if balance < MIN_SPONSOR_BALANCE_WEI:
                logger.error(f"Sponsor balance too low: {balance} wei (need {MIN_SPONSOR_BALANCE_WEI})")
                return SettleResult.failure(
                    "Facilitator has insufficient funds for gas sponsorship",
                    FacilitatorErrorCode.INSUFFICIENT_FUNDS,
                )

            gas_price = await self.chain.get_gas_price() or self.max_gas_price_wei
            if gas_price > self.max_gas_price_wei:
                logger.warning(f"Gas price too high: {gas_price / WEI_PER_GWEI:g} gwei")
                return SettleResult.failure(
                    f"Gas price too high: {gas_price / WEI_PER_GWEI:g} gwei",
                    FacilitatorErrorCode.BUDGET_EXCEEDED,
                )

            tx_hash = await self._submit(request, gas_price)
            if isinstance(tx_hash, SettleResult):
                return tx_hash

            receipt = await self.chain.wait_for_receipt(tx_hash)
            if receipt.get("status") != 1:
                self.stats.fail_count += 1
                logger.error(f"Settlement {request.request_id} reverted: {tx_hash}")
                return SettleResult.failure("Transaction reverted on-chain", FacilitatorErrorCode.TRANSACTION_FAILED, tx_hash)

            gas_used = int(receipt.get("gasUsed", 0))
            effective_gas_price = int(receipt.get("effectiveGasPrice") or gas_price)

            self.verifier.mark_nonce_used(witness.owner, witness.nonce)
            self.budget.charge(request.signer_address, gas_used * effective_gas_price)
            self.stats.total_transactions += 1
            self.stats.total_gas_sponsored += gas_used * effective_gas_price
            self.stats.success_count += 1

            logger.info(
                f"Settlement {request.request_id} succeeded: tx={tx_hash} block={receipt.get('blockNumber')} "
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
            logger.error(f"Settlement {request.request_id} failed: {e.message}")
            return SettleResult.failure(e.message, FacilitatorErrorCode.NETWORK_ERROR)
        except Exception as e:
            self.stats.fail_count += 1
            logger.error(f"Settlement {request.request_id} failed: {e}")
            return SettleResult.failure(str(e) or "Unknown settlement error", FacilitatorErrorCode.TRANSACTION_FAILED)

    async def _submit(self, request: SettleRequest, gas_price: int):
        """Route the witness to the right on-chain call. Returns a tx hash or a failure result."""
        witness = request.witness
        custom = request.transaction
        is_token_payment = witness.token.lower() != NATIVE_TOKEN_ADDRESS

        if not is_token_payment and custom and custom.data not in ("", "0x"):
            # Contract interaction paid from the user's approvals; the sponsor only pays gas
            gas = min(DEFAULT_TRANSFER_GAS, self.config.max_gas_limit)
            if not self._within_tx_cap(gas, gas_price):
                return self._over_tx_cap(gas, gas_price)
            return await self.chain.send_raw_call(custom.to, custom.data, gas, gas_price, value=0)

        if not is_token_payment and custom and custom.value > 0:
            logger.error(f"Refusing native value transfer via sponsor for {request.signer_address}")
            return SettleResult.failure(
                "Native BNB transfers require direct wallet execution. The facilitator can only "
                "sponsor gas for contract interactions the user has pre-approved.",
                FacilitatorErrorCode.INVALID_IMPLEMENTATION,
            )

        args = [
            to_checksum_address(witness.owner),
            self.chain.sponsor_address,
            to_checksum_address(witness.token),
            to_checksum_address(witness.to),
            witness.amount,
            witness.nonce,
            witness.deadline,
            HexBytes(request.signature),
        ]
        try:
            estimate = await self.chain.estimate_function_gas(
                self.config.network.implementation_contract, Q402_IMPLEMENTATION_ABI, "executeTransfer", args
            )
            gas = min(estimate * 120 // 100, self.config.max_gas_limit)
        except ChainPilotError as e:
            logger.warning(f"executeTransfer gas estimate failed, using default: {e.message}")
            gas = min(DEFAULT_TRANSFER_GAS, self.config.max_gas_limit)

        if not self._within_tx_cap(gas, gas_price):
            return self._over_tx_cap(gas, gas_price)

        return await self.chain.send_function(
            self.config.network.implementation_contract,
            Q402_IMPLEMENTATION_ABI,
            "executeTransfer",
            args,
            gas=gas,
            gas_price=gas_price,
        )

    def _within_tx_cap(self, gas: int, gas_price: int) -> bool:
        return gas * gas_price <= self.config.per_tx_max_gas_wei

    def _over_tx_cap(self, gas: int, gas_price: int) -> SettleResult:
        logger.warning(f"Estimated gas cost {gas * gas_price} wei exceeds per-transaction cap")
        return SettleResult.failure(
            f"Estimated gas cost exceeds per-transaction limit ({self.config.per_tx_max_gas_wei} wei)",
            FacilitatorErrorCode.BUDGET_EXCEEDED,
        )

    def get_stats(self) -> SettlementStats:
        return self.stats

    def cleanup_old_budgets(self, days_to_keep: int = 7) -> int:
        cleaned = self.budget.cleanup(days_to_keep)
        if cleaned:
            logger.info(f"Cleaned up {cleaned} old budget records")
        return cleaned
