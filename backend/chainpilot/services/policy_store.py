# backend/chainpilot/services/policy_store.py
"""
Policy persistence.

- Default policy is created lazily on first read for a session
- Scalar fields are updated partially (only provided fields change)
- Allow/deny lists are replaced wholesale, inside the caller's transaction,
  so a failure between delete and insert never leaves a list half-written
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from chainpilot.errors import ValidationError
from chainpilot.models import Policy, PolicyContractList, PolicyTokenList
from chainpilot.services.policy_models import DEFAULT_POLICY, PolicyRules, SecurityLevel
from chainpilot.services.policy_validators import (
    LIST_FIELDS,
    merge_policy_update,
    validate_list_addresses,
    validate_policy,
)
from chainpilot.services.session_store import SessionStore

logger = logging.getLogger(__name__)


def _decimal_or_none(value) -> Any:
    return Decimal(str(value)) if value is not None else None


class PolicyStore:
    """
    Reads and writes a session's policy and its lists.

    Usage:
        store = PolicyStore(db)
        rules = await store.get_rules(session_id)
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.sessions = SessionStore(session)

    async def get_or_create(self, session_id: str) -> Policy:
        """Return the session's policy, creating the default one if absent."""
        await self.sessions.require(session_id)

        policy = await self._find(session_id)
        if policy:
            return policy

        policy = Policy(
            session_id=session_id,
            security_level=DEFAULT_POLICY.security_level.value,
            max_per_tx_usd=DEFAULT_POLICY.max_per_tx_usd,
            max_daily_usd=DEFAULT_POLICY.max_daily_usd,
            require_verified_contracts=DEFAULT_POLICY.require_verified_contracts,
            large_transaction_threshold_pct=DEFAULT_POLICY.large_transaction_threshold_pct,
            max_slippage_bps=DEFAULT_POLICY.max_slippage_bps,
        )
        self.session.add(policy)
        await self.session.flush()
        logger.info(f"Created default policy for session {session_id}")
        return policy

    async def get_rules(self, session_id: str) -> PolicyRules:
        policy = await self.get_or_create(session_id)
        return await self.to_rules(policy)

    async def update(self, session_id: str, updates: Mapping[str, Any]) -> PolicyRules:
        """
        Apply a partial update and return the resulting rules.

        `updates` uses snake_case keys. List keys that are present (not None)
        replace the stored list of that kind.
        """
        policy = await self.get_or_create(session_id)
        current = await self.to_rules(policy)

        list_errors = validate_list_addresses(
            address for name in LIST_FIELDS for address in (updates.get(name) or [])
        )
        if list_errors:
            raise ValidationError("; ".join(list_errors), details={"errors": list_errors})

        try:
            merged = merge_policy_update(current, updates)
        except ValueError:
            raise ValidationError("Security level must be STRICT, NORMAL, or PERMISSIVE")

        valid, errors = validate_policy(self._scalar_values(merged))
        if not valid:
            raise ValidationError("; ".join(errors), details={"errors": errors})

        policy.security_level = merged.security_level.value
        policy.max_per_tx_usd = merged.max_per_tx_usd
        policy.max_daily_usd = merged.max_daily_usd
        policy.require_verified_contracts = merged.require_verified_contracts
        policy.large_transaction_threshold_pct = merged.large_transaction_threshold_pct
        policy.max_slippage_bps = merged.max_slippage_bps
        policy.updated_at = datetime.utcnow()

        if updates.get("allowed_tokens") is not None or updates.get("denied_tokens") is not None:
            await self._replace_lists(
                PolicyTokenList, PolicyTokenList.token_address, "token_address", policy.id,
                merged.allowed_tokens, merged.denied_tokens,
            )
        if updates.get("allowed_contracts") is not None or updates.get("denied_contracts") is not None:
            await self._replace_lists(
                PolicyContractList, PolicyContractList.contract_address, "contract_address", policy.id,
                merged.allowed_contracts, merged.denied_contracts,
            )

        await self.session.flush()
        logger.info(f"Updated policy for session {session_id}: {sorted(updates.keys())}")
        return merged

    async def to_rules(self, policy: Policy) -> PolicyRules:
        tokens = await self._load_list(PolicyTokenList, PolicyTokenList.token_address, policy.id)
        contracts = await self._load_list(PolicyContractList, PolicyContractList.contract_address, policy.id)
        return PolicyRules(
            security_level=SecurityLevel.parse(policy.security_level),
            max_per_tx_usd=_decimal_or_none(policy.max_per_tx_usd),
            max_daily_usd=_decimal_or_none(policy.max_daily_usd),
            require_verified_contracts=bool(policy.require_verified_contracts),
            large_transaction_threshold_pct=policy.large_transaction_threshold_pct,
            max_slippage_bps=policy.max_slippage_bps,
        ).with_lists(
            allowed_tokens=tokens["allowed"],
            denied_tokens=tokens["denied"],
            allowed_contracts=contracts["allowed"],
            denied_contracts=contracts["denied"],
        )

    async def _find(self, session_id: str):
        result = await self.session.execute(select(Policy).where(Policy.session_id == session_id))
        return result.scalar_one_or_none()

    async def _load_list(self, model, address_column, policy_id: str) -> Dict[str, List[str]]:
        result = await self.session.execute(
            select(address_column, model.list_type).where(model.policy_id == policy_id)
        )
        lists: Dict[str, List[str]] = {"allowed": [], "denied": []}
        for address, list_type in result.all():
            lists.setdefault(list_type, []).append(address)
        return lists

    async def _replace_lists(self, model, address_column, address_field: str, policy_id: str, allowed, denied):
        """Delete-then-insert both list types for one kind, in one transaction."""
        try:
            await self.session.execute(delete(model).where(model.policy_id == policy_id))
            for list_type, addresses in (("allowed", allowed), ("denied", denied)):
                for address in sorted(addresses):
                    self.session.add(model(policy_id=policy_id, list_type=list_type, **{address_field: address}))
            await self.session.flush()
        except Exception:
            await self.session.rollback()
            raise

    @staticmethod
    def _scalar_values(rules: PolicyRules) -> Dict[str, Any]:
        return {
            "security_level": rules.security_level,
            "max_per_tx_usd": rules.max_per_tx_usd,
            "max_daily_usd": rules.max_daily_usd,
            "large_transaction_threshold_pct": rules.large_transaction_threshold_pct,
            "max_slippage_bps": rules.max_slippage_bps,
        }


def serialize_policy(policy: Policy, rules: PolicyRules) -> Dict[str, Any]:
    """PolicyWithLists as returned by the API."""
    return {
        "id": policy.id,
        "sessionId": policy.session_id,
        "securityLevel": rules.security_level.value,
        "maxPerTxUsd": float(rules.max_per_tx_usd) if rules.max_per_tx_usd is not None else None,
        "maxDailyUsd": float(rules.max_daily_usd) if rules.max_daily_usd is not None else None,
        "requireVerifiedContracts": rules.require_verified_contracts,
        "largeTransactionThresholdPct": rules.large_transaction_threshold_pct,
        "maxSlippageBps": rules.max_slippage_bps,
        "allowedTokens": sorted(rules.allowed_tokens),
        "deniedTokens": sorted(rules.denied_tokens),
        "allowedContracts": sorted(rules.allowed_contracts),
        "deniedContracts": sorted(rules.denied_contracts),
        "createdAt": policy.created_at.isoformat() if policy.created_at else None,
        "updatedAt": policy.updated_at.isoformat() if policy.updated_at else None,
    }
