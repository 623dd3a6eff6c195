"""
Transactions API Router.

Sign-to-pay flow:
- POST /prepare/q402   evaluate policy, build the witness, return typed data
- POST /prepare/batch  same for a batch of transfer/swap/call operations
- POST /execute        settle the stored witness with the user's signature
- GET  /execute        request status

Policy is always evaluated server-side from the stored policy and today's
spend. A blocked action is answered with 403 and the full decision, and is
recorded in the activity log as rejected. Spend caps are checked once more at
execute, against the spend and in-flight requests at that moment.
"""

from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional, Union

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from chainpilot.database import get_db
from chainpilot.errors import PolicyRejection, ValidationError
from chainpilot.facilitator.service import FacilitatorRegistry
from chainpilot.facilitator.types import BatchOperation
from chainpilot.models import PaymentRequest
from chainpilot.routers.dependencies import get_registry, load_session
from chainpilot.services.activity_log import ActivityLog, serialize_action_log
from chainpilot.services.policy_engine import PolicyEngine
from chainpilot.services.policy_enforcer import apply_token_policy, merge_decisions
from chainpilot.services.policy_models import ActionContext, PolicyEvaluationResult, RiskLevel
from chainpilot.services.policy_store import PolicyStore
from chainpilot.services.session_store import network_id_for, network_type
from chainpilot.services.transaction_executor import PaymentMeta, PreparationResult, TransactionExecutor

router = APIRouter(tags=["Transactions"])

ActionType = Literal["transfer", "token_transfer", "swap", "contract_call", "deploy"]


class TransactionPreview(BaseModel):
    """What the client is about to do, as shown to the user."""
    type: ActionType
    network: Literal["testnet", "mainnet"] = "testnet"
    tokenAddress: Optional[str] = None
    tokenInAddress: Optional[str] = None
    tokenOutAddress: Optional[str] = None
    contractAddress: Optional[str] = None
    to: Optional[str] = None
    tokenAmount: Optional[str] = None
    nativeValue: Optional[str] = None
    amountWei: Optional[int] = None
    tokenSymbol: Optional[str] = None
    slippageBps: Optional[int] = None
    valueUsd: Optional[float] = None
    contractVerified: Optional[bool] = None
    holdingsPercentage: Optional[float] = None
    auditRisk: Optional[RiskLevel] = None
    preparedTx: Optional[Dict[str, Any]] = None

    class Config:
        extra = "forbid"


class PrepareQ402Request(BaseModel):
    sessionId: str
    signerAddress: str
    preview: TransactionPreview
    # Client-side decision, informational only; the server re-evaluates
    policyDecision: Optional[Dict[str, Any]] = None


class BatchOperationRequest(BaseModel):
    type: Literal["transfer", "swap", "call"]
    target: str
    tokenIn: Optional[str] = None
    amountIn: Union[str, int] = "0"
    tokenOut: Optional[str] = None
    minAmountOut: Union[str, int] = "0"
    data: str = "0x"
    valueUsd: Optional[float] = None
    slippageBps: Optional[int] = None
    contractVerified: Optional[bool] = None

    class Config:
        extra = "forbid"


class PrepareBatchRequest(BaseModel):
    sessionId: str
    signerAddress: str
    network: Literal["testnet", "mainnet"] = "testnet"
    operations: List[BatchOperationRequest]
    description: Optional[str] = None


class ExecuteRequest(BaseModel):
    sessionId: str
    requestId: str
    signature: str
    signerAddress: str


def _usd(value: Optional[float]) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


def _blocked_response(decision: PolicyEvaluationResult) -> JSONResponse:
    # Returned, not raised, so the rejected activity entry is committed
    rejection = PolicyRejection(decision.reasons, decision.to_dict())
    return JSONResponse(status_code=rejection.status_code, content=rejection.to_dict())


def _preview_context(preview: TransactionPreview) -> ActionContext:
    return ActionContext(
        token_address=preview.tokenAddress or preview.tokenInAddress,
        target_address=preview.contractAddress or preview.to,
        slippage_bps=preview.slippageBps,
        value_usd=_usd(preview.valueUsd),
        contract_verified=preview.contractVerified,
        holdings_percentage=preview.holdingsPercentage,
        audit_risk=preview.auditRisk,
    )


def _describe(preview: TransactionPreview) -> str:
    amount = preview.tokenAmount or preview.nativeValue or preview.amountWei or 0
    return f"{preview.type}: {amount} {preview.tokenSymbol or 'BNB'}"


@router.post("/prepare/q402")
async def prepare_q402(
    body: PrepareQ402Request,
    db: AsyncSession = Depends(get_db),
    registry: FacilitatorRegistry = Depends(get_registry),
):
    session = await load_session(body.sessionId, db)
    preview = body.preview
    network_id = network_id_for(preview.network)
    activity = ActivityLog(db)

    rules = await PolicyStore(db).get_rules(session.id)
    spent_today = await activity.spent_today(session.id)
    base = PolicyEngine(rules).evaluate(preview.type, _preview_context(preview), spent_today, body.signerAddress)
    decision = apply_token_policy(base, rules, [preview.tokenAddress, preview.tokenInAddress, preview.tokenOutAddress])

    executor = TransactionExecutor(db, registry, network_id)
    preparation = await executor.prepare_for_execution(
        preview.preparedTx,
        preview.type,
        _describe(preview),
        decision,
        PaymentMeta(
            owner_address=body.signerAddress,
            session_id=session.id,
            value_usd=_usd(preview.valueUsd),
            token_address=preview.tokenAddress,
            amount=preview.tokenAmount or preview.nativeValue,
            amount_wei=preview.amountWei,
            recipient_address=preview.to,
        ),
    )

    decision = preparation.decision or decision
    await activity.record(
        session_id=session.id,
        intent_type=preview.type,
        network=preview.network,
        status="pending" if preparation.allowed else "rejected",
        prepared_tx=preview.preparedTx,
        policy_decision=decision.to_dict(),
        estimated_value_usd=_usd(preview.valueUsd),
        q402_request_id=preparation.request.id if preparation.request else None,
        error_message=preparation.rejection_reason,
    )

    if not preparation.allowed:
        return _blocked_response(decision)

    return {
        "success": True,
        "requestId": preparation.request.id,
        "typedData": preparation.typed_data,
        "expiresAt": preparation.request.expires_at.isoformat() + "Z",
        "policyDecision": decision.to_dict(),
    }


def _evaluate_batch(engine: PolicyEngine, rules, operations: List[BatchOperationRequest], spent_today: Decimal, signer: str):
    """Evaluate each operation against the spend accumulated by the ones before it."""
    decisions = []
    running = spent_today
    for op in operations:
        value = _usd(op.valueUsd)
        decisions.append(engine.evaluate(
            op.type,
            ActionContext(
                token_address=op.tokenIn,
                target_address=op.target,
                slippage_bps=op.slippageBps,
                value_usd=value,
                contract_verified=op.contractVerified,
            ),
            running,
            signer,
        ))
        running += value or 0
    merged = merge_decisions(decisions)
    tokens = [address for op in operations for address in (op.tokenIn, op.tokenOut)]
    return apply_token_policy(merged, rules, tokens)


@router.post("/prepare/batch")
async def prepare_batch(
    body: PrepareBatchRequest,
    db: AsyncSession = Depends(get_db),
    registry: FacilitatorRegistry = Depends(get_registry),
):
    session = await load_session(body.sessionId, db)
    activity = ActivityLog(db)
    operations = [BatchOperation.from_dict(op.model_dump()) for op in body.operations]

    rules = await PolicyStore(db).get_rules(session.id)
    spent_today = await activity.spent_today(session.id)
    decision = _evaluate_batch(PolicyEngine(rules), rules, body.operations, spent_today, body.signerAddress)

    total_usd = sum((_usd(op.valueUsd) or Decimal("0") for op in body.operations), Decimal("0"))
    executor = TransactionExecutor(db, registry, network_id_for(body.network))
    preparation: PreparationResult = await executor.prepare_batch_for_execution(
        operations,
        body.signerAddress,
        decision,
        PaymentMeta(owner_address=body.signerAddress, session_id=session.id, value_usd=total_usd),
        body.description or "",
    )

    decision = preparation.decision or decision
    await activity.record(
        session_id=session.id,
        intent_type="batch",
        network=body.network,
        status="pending" if preparation.allowed else "rejected",
        prepared_tx={"operations": [op.to_dict() for op in operations]},
        policy_decision=decision.to_dict(),
        estimated_value_usd=total_usd,
        q402_request_id=preparation.request.id if preparation.request else None,
        error_message=preparation.rejection_reason,
    )

    if not preparation.allowed:
        return _blocked_response(decision)

    return {
        "success": True,
        "requestId": preparation.request.id,
        "typedData": preparation.typed_data,
        "operations": preparation.operations,
        "expiresAt": preparation.request.expires_at.isoformat() + "Z",
        "policyDecision": decision.to_dict(),
    }


def _request_value_usd(request: PaymentRequest) -> Optional[Decimal]:
    value = (request.request_metadata or {}).get("valueUsd")
    return _usd(value)


@router.post("/execute")
async def execute_transaction(
    body: ExecuteRequest,
    db: AsyncSession = Depends(get_db),
    registry: FacilitatorRegistry = Depends(get_registry),
):
    session = await load_session(body.sessionId, db)
    executor = TransactionExecutor(db, registry, network_id_for(session.current_network))

    request = await executor.requests.require(body.requestId)
    if request.session_id and request.session_id != session.id:
        raise ValidationError("Request does not belong to this session")
    if request.network_id != executor.network.network_id:
        executor = TransactionExecutor(db, registry, request.network_id)

    rules = await PolicyStore(db).get_rules(session.id)
    result = await executor.execute(body.requestId, body.signature, body.signerAddress, rules=rules)

    activity = ActivityLog(db)
    value_usd = _request_value_usd(request)
    action_log = await activity.record(
        session_id=session.id,
        intent_type=(request.request_metadata or {}).get("action") or "transfer",
        network=network_type(request.network_id),
        status="executed" if result.success else "failed",
        prepared_tx=(request.request_metadata or {}).get("transaction"),
        policy_decision=request.policy_decision,
        estimated_value_usd=value_usd,
        tx_hash=result.tx_hash,
        q402_request_id=request.id,
        error_message=result.error,
    )
    if result.success and value_usd:
        await activity.add_spend(session.id, value_usd)

    network = registry.network(request.network_id)
    return {
        "success": result.success,
        "result": result.to_dict(),
        "actionLog": serialize_action_log(action_log),
        "explorerUrl": network.explorer_tx_url(result.tx_hash) if result.tx_hash else None,
    }


@router.get("/execute")
async def get_transaction_status(
    requestId: str = Query(...),
    network: str = Query("testnet"),
    db: AsyncSession = Depends(get_db),
    registry: FacilitatorRegistry = Depends(get_registry),
):
    executor = TransactionExecutor(db, registry, network_id_for(network))
    status = await executor.get_status(requestId)
    return {"success": True, **status}
