# backend/chainpilot/services/transaction_executor.py
"""
Sign-to-pay orchestration.

prepare:  policy decision -> nonce -> witness -> typed data -> pending request
execute:  stored request -> signed -> facilitator settle -> executed | failed

The witness is built exactly once, at prepare time, and persisted with the
request. Execution always settles the stored witness; rebuilding it would
produce a different paymentId and the user's signature would no longer match.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from eth_utils import is_address, to_checksum_address
from sqlalchemy.ext.asyncio import AsyncSession

from chainpilot.config import Settings, get_settings
from chainpilot.errors import InvalidStateTransition, SignatureError, ValidationError
from chainpilot.facilitator.networks import NetworkConfig
from chainpilot.facilitator.service import FacilitatorRegistry, FacilitatorService
from chainpilot.facilitator.types import (
    BatchOperation,
    BatchSettleRequest,
    BatchWitness,
    SettleRequest,
    SettleResult,
    TransactionData,
    Witness,
)
from chainpilot.facilitator.witness import (
    build_batch_typed_data,
    build_payment_typed_data,
    generate_batch_id,
    generate_payment_id,
    generate_request_id,
    operations_hash,
)
from chainpilot.models import PaymentRequest
from chainpilot.services.activity_log import ActivityLog
from chainpilot.services.nonce_allocator import NonceAllocator
from chainpilot.services.policy_models import (
    NATIVE_TOKEN_ADDRESS,
    PolicyEvaluationResult,
    PolicyRules,
    PolicyViolation,
    RiskLevel,
    Severity,
    ViolationType,
)
from chainpilot.services.policy_validators import validate_transaction_value
from chainpilot.services.request_store import RequestStore, serialize_request

logger = logging.getLogger(__name__)

PAYMENT_SCHEME = "evm/eip7702-delegated-payment"


@dataclass
class PaymentMeta:
    """Caller-supplied facts about the payment being prepared."""
    owner_address: str
    session_id: Optional[str] = None
    value_usd: Optional[Decimal] = None
    token_address: Optional[str] = None
    amount: Optional[str] = None
    amount_wei: Optional[int] = None
    recipient_address: Optional[str] = None


@dataclass
class PreparationResult:
    allowed: bool
    risk_level: RiskLevel
    warnings: List[str] = field(default_factory=list)
    request: Optional[PaymentRequest] = None
    typed_data: Optional[Dict[str, Any]] = None
    operations: Optional[List[Dict[str, Any]]] = None
    rejection_reason: Optional[str] = None
    # Effective decision, including checks made after the policy engine ran
    decision: Optional[PolicyEvaluationResult] = None


@dataclass
class ExecutionResult:
    success: bool
    request_id: str
    status: str
    settlement: Optional[SettleResult] = None
    error: Optional[str] = None

    @property
    def tx_hash(self) -> Optional[str]:
        return self.settlement.tx_hash if self.settlement else None

    def to_dict(self) -> Dict[str, Any]:
        body = self.settlement.to_dict() if self.settlement else {"success": self.success, "txHash": None}
        body.update({
            "success": self.success,
            "status": self.status,
            "error": self.error,
            "q402RequestId": self.request_id,
        })
        return body


def resolve_amount(meta: PaymentMeta, network: NetworkConfig, prepared_tx: Optional[Dict[str, Any]] = None) -> int:
    """
    Amount in the token's smallest unit.

    Precedence: explicit amount_wei, then a human-readable amount scaled by
    the token's decimals (18 for unknown tokens), then the prepared tx value.
    """
    if meta.amount_wei is not None:
        amount = int(meta.amount_wei)
    elif meta.amount not in (None, ""):
        token = network.token_by_address(meta.token_address or NATIVE_TOKEN_ADDRESS)
        decimals = token.decimals if token else 18
        try:
            amount = int(Decimal(str(meta.amount)) * (Decimal(10) ** decimals))
        except InvalidOperation:
            raise ValidationError(f"Invalid amount: {meta.amount}")
    else:
        raw = (prepared_tx or {}).get("value") or 0
        try:
            amount = int(raw, 16) if isinstance(raw, str) and raw.startswith("0x") else int(raw)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid transaction value: {raw}")

    if amount < 0:
        raise ValidationError("Amount must not be negative")
    return amount


def _stored_transaction(request: PaymentRequest) -> Optional[TransactionData]:
    tx = (request.request_metadata or {}).get("transaction")
    if not tx or not tx.get("to"):
        return None
    return TransactionData.from_dict(tx)


def _rejected(decision: PolicyEvaluationResult) -> PreparationResult:
    return PreparationResult(
        allowed=False,
        risk_level=decision.risk_level,
        warnings=[w.message for w in decision.warnings],
        rejection_reason="; ".join(decision.reasons) or "Transaction rejected by policy",
        decision=decision,
    )


class TransactionExecutor:
    """
    Prepares and executes Q402 requests for one network.

    Usage:
        executor = TransactionExecutor(db, registry, "bsc-testnet")
        prep = await executor.prepare_for_execution(tx, "transfer", "transfer: 1 USDT", decision, meta)
        result = await executor.execute(prep.request.id, signature, signer)
    """

    def __init__(
        self,
        session: AsyncSession,
        registry: FacilitatorRegistry,
        network_id: str,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.registry = registry
        self.network = registry.network(network_id)
        self.settings = settings or get_settings()
        self.requests = RequestStore(session)
        self.nonces = NonceAllocator(session, registry.nonce_locks)

    @property
    def facilitator(self) -> Optional[FacilitatorService]:
        return self.registry.services.get(self.network.network_id)

    def _deadline(self) -> int:
        return int(time.time()) + self.settings.REQUEST_TTL_SECONDS

    async def prepare_for_execution(
        self,
        prepared_tx: Optional[Dict[str, Any]],
        action_type: str,
        description: str,
        policy_decision: PolicyEvaluationResult,
        meta: PaymentMeta,
    ) -> PreparationResult:
        if not policy_decision.allowed:
            self.registry.counters.increment("rejected")
            logger.warning(f"Prepare {action_type} for {meta.owner_address} rejected: {policy_decision.reasons}")
            return _rejected(policy_decision)

        if not is_address(meta.owner_address or ""):
            raise ValidationError("Invalid owner address")

        if meta.token_address and not is_address(meta.token_address):
            raise ValidationError("Invalid token address")

        network = self.network
        owner = to_checksum_address(meta.owner_address)
        token = to_checksum_address(meta.token_address or NATIVE_TOKEN_ADDRESS)
        recipient = meta.recipient_address or network.facilitator_wallet
        if not is_address(recipient):
            raise ValidationError("Invalid recipient address")
        amount = resolve_amount(meta, network, prepared_tx)

        request_id = generate_request_id()
        floor = await self.facilitator.get_payment_nonce(owner) if self.facilitator else 0
        nonce = await self.nonces.allocate(owner, network.verifying_contract, request_id, floor)

        deadline = self._deadline()
        witness = Witness(
            owner=owner,
            token=token,
            amount=amount,
            to=to_checksum_address(recipient),
            deadline=deadline,
            payment_id=generate_payment_id(),
            nonce=nonce,
        )
        typed_data = build_payment_typed_data(witness, network.chain_id, network.verifying_contract)

        request = await self.requests.create(
            id=request_id,
            session_id=meta.session_id,
            kind="payment",
            network_id=network.network_id,
            owner=owner.lower(),
            verifying_contract=network.verifying_contract.lower(),
            nonce=nonce,
            typed_data=typed_data,
            payment_details={
                "scheme": PAYMENT_SCHEME,
                "networkId": network.network_id,
                "token": token,
                "amount": str(amount),
                "to": witness.to,
                "implementationContract": network.implementation_contract,
                "verifyingContract": network.verifying_contract,
                "description": description,
            },
            request_metadata={
                "action": action_type,
                "description": description,
                "valueUsd": float(meta.value_usd) if meta.value_usd is not None else None,
                "transaction": prepared_tx,
            },
            policy_decision=policy_decision.to_dict(),
            expires_at=datetime.utcfromtimestamp(deadline),
        )

        self.registry.counters.increment("prepared")
        logger.info(
            f"Prepared {action_type} {request_id} for {owner}: nonce={nonce} amount={amount} "
            f"risk={policy_decision.risk_level.value}"
        )
        return PreparationResult(
            allowed=True,
            risk_level=policy_decision.risk_level,
            warnings=[w.message for w in policy_decision.warnings],
            request=request,
            typed_data=typed_data,
        )

    async def prepare_batch_for_execution(
        self,
        operations: List[BatchOperation],
        owner_address: str,
        policy_decision: PolicyEvaluationResult,
        meta: Optional[PaymentMeta] = None,
        description: str = "",
    ) -> PreparationResult:
        if not policy_decision.allowed:
            self.registry.counters.increment("rejected")
            logger.warning(f"Batch prepare for {owner_address} rejected: {policy_decision.reasons}")
            return _rejected(policy_decision)

        max_ops = self.settings.MAX_BATCH_OPERATIONS
        if not operations:
            raise ValidationError("Batch must contain at least one operation")
        if len(operations) > max_ops:
            raise ValidationError(f"Batch exceeds maximum of {max_ops} operations")
        if not is_address(owner_address or ""):
            raise ValidationError("Invalid owner address")

        network = self.network
        owner = to_checksum_address(owner_address)

        if self.facilitator:
            miss = await self.facilitator.batch_settler.check_whitelist(operations)
            if miss:
                index, kind, address = miss
                self.registry.counters.increment("rejected")
                violation = PolicyViolation(
                    ViolationType.NOT_WHITELISTED,
                    f"Operation #{index + 1} uses a {kind} that is not whitelisted: {address}",
                    Severity.BLOCKING,
                    {"operationIndex": index, kind: address},
                )
                logger.warning(f"Batch prepare for {owner} rejected: {violation.message}")
                return _rejected(PolicyEvaluationResult.build(
                    list(policy_decision.violations) + [violation],
                    list(policy_decision.warnings),
                    policy_decision.risk_level,
                ))

        request_id = generate_request_id()
        floor = await self.facilitator.get_batch_nonce(owner) if self.facilitator else 0
        nonce = await self.nonces.allocate(owner, network.batch_executor, request_id, floor)

        deadline = self._deadline()
        witness = BatchWitness(
            owner=owner,
            operations_hash=operations_hash(operations),
            deadline=deadline,
            batch_id=generate_batch_id(),
            nonce=nonce,
        )
        typed_data = build_batch_typed_data(witness, network.chain_id, network.batch_executor)
        serialized_ops = [op.to_dict() for op in operations]
        description = description or f"Batch of {len(operations)} operations"

        request = await self.requests.create(
            id=request_id,
            session_id=meta.session_id if meta else None,
            kind="batch",
            network_id=network.network_id,
            owner=owner.lower(),
            verifying_contract=network.batch_executor.lower(),
            nonce=nonce,
            typed_data=typed_data,
            operations=serialized_ops,
            request_metadata={
                "action": "batch",
                "description": description,
                "valueUsd": float(meta.value_usd) if meta and meta.value_usd is not None else None,
            },
            policy_decision=policy_decision.to_dict(),
            expires_at=datetime.utcfromtimestamp(deadline),
        )

        self.registry.counters.increment("prepared")
        logger.info(f"Prepared batch {request_id} for {owner}: {len(operations)} operations, nonce={nonce}")
        return PreparationResult(
            allowed=True,
            risk_level=policy_decision.risk_level,
            warnings=[w.message for w in policy_decision.warnings],
            request=request,
            typed_data=typed_data,
            operations=serialized_ops,
        )

    async def execute(
        self,
        request_id: str,
        signature: str,
        signer_address: str,
        rules: Optional[PolicyRules] = None,
    ) -> ExecutionResult:
        """
        Settle a prepared request.

        The pending -> signed claim is committed before any RPC call, so a
        request settles at most once across sessions and processes. When
        `rules` is given the spend caps are checked again, after the claim,
        against today's spend plus every other request of the session still
        in flight.
        """
        request = await self.requests.require(request_id)
        counters = self.registry.counters

        if request.status != "pending":
            raise InvalidStateTransition(request.id, request.status, "signed")

        if not is_address(signer_address or "") or signer_address.lower() != request.owner:
            raise SignatureError(f"Signer {signer_address} does not own request {request_id}")

        if request.expires_at <= datetime.utcnow():
            await self.requests.claim(request, "pending", "expired")
            counters.increment("expired")
            logger.warning(f"Request {request_id} expired before execution")
            return ExecutionResult(False, request_id, "expired", error="Payment request expired")

        facilitator = self.registry.get(request.network_id)
        await self.requests.claim(request, "pending", "signed")
        await self.session.commit()

        if rules is not None:
            refusal = await self._check_spend(request, rules)
            if refusal:
                await self.requests.transition(request, "failed", error_message=refusal)
                counters.increment("rejected")
                logger.warning(f"Request {request_id} refused at execution: {refusal}")
                return ExecutionResult(False, request_id, "failed", error=refusal)

        if request.kind == "batch":
            settlement = await facilitator.settle_batch(BatchSettleRequest(
                network_id=request.network_id,
                request_id=request.id,
                witness=BatchWitness.from_dict(request.typed_data["message"]),
                operations=[BatchOperation.from_dict(op) for op in request.operations or []],
                signature=signature,
                signer_address=signer_address,
            ))
        else:
            settlement = await facilitator.settle(SettleRequest(
                network_id=request.network_id,
                request_id=request.id,
                witness=Witness.from_dict(request.typed_data["message"]),
                signature=signature,
                signer_address=signer_address,
                transaction=_stored_transaction(request),
            ))

        if settlement.success:
            await self.requests.transition(request, "executed", tx_hash=settlement.tx_hash)
            counters.increment("executed")
            logger.info(f"Request {request_id} executed: {settlement.tx_hash}")
            return ExecutionResult(True, request_id, "executed", settlement=settlement)

        await self.requests.transition(request, "failed", tx_hash=settlement.tx_hash, error_message=settlement.error)
        counters.increment("failed")
        logger.warning(f"Request {request_id} failed: {settlement.error}")
        return ExecutionResult(False, request_id, "failed", settlement=settlement, error=settlement.error)

    async def _check_spend(self, request: PaymentRequest, rules: PolicyRules) -> Optional[str]:
        value = (request.request_metadata or {}).get("valueUsd")
        if value is None or not request.session_id:
            return None
        spent_today = await ActivityLog(self.session).spent_today(request.session_id)
        in_flight = await self.requests.in_flight_value_usd(request.session_id, exclude_id=request.id)
        ok, errors = validate_transaction_value(Decimal(str(value)), spent_today + in_flight, rules)
        return None if ok else "; ".join(errors)

    async def get_status(self, request_id: str) -> Dict[str, Any]:
        request = await self.requests.require(request_id)
        status = serialize_request(request)
        network = self.registry.networks.get(request.network_id, self.network)
        status["explorerUrl"] = network.explorer_tx_url(request.tx_hash) if request.tx_hash else None
        return status
