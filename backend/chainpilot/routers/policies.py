"""
Policies API Router.

GET returns the session's policy, creating the default one on first read.
PUT applies a partial update; list fields that are sent replace the stored
list, in the same transaction as the scalar changes.
"""

from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from chainpilot.database import get_db
from chainpilot.services.policy_store import PolicyStore, serialize_policy

router = APIRouter(tags=["Policies"])

# camelCase request field -> snake_case policy field
_FIELD_MAP = {
    "securityLevel": "security_level",
    "maxPerTxUsd": "max_per_tx_usd",
    "maxDailyUsd": "max_daily_usd",
    "requireVerifiedContracts": "require_verified_contracts",
    "largeTransactionThresholdPct": "large_transaction_threshold_pct",
    "maxSlippageBps": "max_slippage_bps",
    "allowedTokens": "allowed_tokens",
    "deniedTokens": "denied_tokens",
    "allowedContracts": "allowed_contracts",
    "deniedContracts": "denied_contracts",
}


class UpdatePolicyRequest(BaseModel):
    """Only fields that are sent are changed. An explicit null limit means unlimited."""
    sessionId: str
    securityLevel: Optional[str] = None
    maxPerTxUsd: Optional[float] = None
    maxDailyUsd: Optional[float] = None
    requireVerifiedContracts: Optional[bool] = None
    largeTransactionThresholdPct: Optional[int] = None
    maxSlippageBps: Optional[int] = None
    allowedTokens: Optional[List[str]] = None
    deniedTokens: Optional[List[str]] = None
    allowedContracts: Optional[List[str]] = None
    deniedContracts: Optional[List[str]] = None


@router.get("")
async def get_policy(sessionId: str = Query(...), db: AsyncSession = Depends(get_db)):
    store = PolicyStore(db)
    policy = await store.get_or_create(sessionId)
    rules = await store.to_rules(policy)
    return {"policy": serialize_policy(policy, rules)}


@router.put("")
async def update_policy(body: UpdatePolicyRequest, db: AsyncSession = Depends(get_db)):
    sent = body.model_dump(exclude_unset=True)
    updates = {_FIELD_MAP[key]: value for key, value in sent.items() if key in _FIELD_MAP}

    # Non-nullable fields: a null means "leave unchanged"
    for name in ("security_level", "require_verified_contracts", "large_transaction_threshold_pct", "max_slippage_bps"):
        if name in updates and updates[name] is None:
            del updates[name]
    for name in ("max_per_tx_usd", "max_daily_usd"):
        if updates.get(name) is not None:
            updates[name] = Decimal(str(updates[name]))

    store = PolicyStore(db)
    rules = await store.update(body.sessionId, updates)
    policy = await store.get_or_create(body.sessionId)
    return {"success": True, "policy": serialize_policy(policy, rules)}
