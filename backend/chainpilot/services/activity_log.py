# backend/chainpilot/services/activity_log.py
"""
Action log and daily spend.

Action logs are append-only. Daily spend is a per-session, per-UTC-day
counter that is only ever incremented, and feeds the daily cap check of the
policy engine.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import desc, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chainpilot.models import ActionLog, DailySpend

logger = logging.getLogger(__name__)

ACTION_STATUSES = ("pending", "approved", "rejected", "executed", "failed", "cancelled")


class ActivityLog:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self,
        session_id: str,
        intent_type: str,
        network: str,
        status: str,
        prepared_tx: Optional[dict] = None,
        policy_decision: Optional[dict] = None,
        estimated_value_usd: Optional[Decimal] = None,
        tx_hash: Optional[str] = None,
        q402_request_id: Optional[str] = None,
        error_message: Optional[str] = None,
        user_message: Optional[str] = None,
    ) -> ActionLog:
        if status not in ACTION_STATUSES:
            raise ValueError(f"Unknown action status: {status}")

        entry = ActionLog(
            session_id=session_id,
            intent_type=intent_type,
            network=network,
            user_message=user_message,
            prepared_tx=prepared_tx,
            policy_decision=policy_decision,
            estimated_value_usd=estimated_value_usd,
            tx_hash=tx_hash,
            q402_request_id=q402_request_id,
            status=status,
            error_message=error_message,
            executed_at=datetime.utcnow() if status == "executed" else None,
        )
        self.session.add(entry)
        await self.session.flush()

        log = logger.warning if status in ("rejected", "failed") else logger.info
        log(f"Activity {entry.id}: {intent_type} {status} for session {session_id}")
        return entry

    async def list_recent(
        self,
        session_id: str,
        limit: int = 20,
        offset: int = 0,
        status: Optional[str] = None,
        intent_type: Optional[str] = None,
    ) -> Tuple[List[ActionLog], int]:
        """Newest first. Returns (page, total matching)."""
        filters = [ActionLog.session_id == session_id]
        if status:
            filters.append(ActionLog.status == status)
        if intent_type:
            filters.append(ActionLog.intent_type == intent_type)

        total = (await self.session.execute(select(func.count(ActionLog.id)).where(*filters))).scalar_one()
        result = await self.session.execute(
            select(ActionLog)
            .where(*filters)
            .order_by(desc(ActionLog.created_at))
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total

    async def spent_today(self, session_id: str) -> Decimal:
        result = await self.session.execute(
            select(DailySpend.total_spent_usd).where(
                DailySpend.session_id == session_id,
                DailySpend.date == datetime.utcnow().date(),
            )
        )
        spent = result.scalar_one_or_none()
        return Decimal(str(spent)) if spent is not None else Decimal("0")

    async def add_spend(self, session_id: str, amount_usd: Decimal) -> None:
        """Increment today's counter, creating the row on first spend."""
        if amount_usd is None or amount_usd <= 0:
            return
        today = datetime.utcnow().date()

        if await self._increment(session_id, today, amount_usd):
            return

        try:
            async with self.session.begin_nested():
                self.session.add(DailySpend(
                    session_id=session_id,
                    date=today,
                    total_spent_usd=amount_usd,
                    transaction_count=1,
                ))
        except IntegrityError:
            # Row created concurrently; fall back to the increment
            await self._increment(session_id, today, amount_usd)
        logger.info(f"Session {session_id} spent ${amount_usd} today")

    async def _increment(self, session_id: str, today, amount_usd: Decimal) -> bool:
        result = await self.session.execute(
            update(DailySpend)
            .where(DailySpend.session_id == session_id, DailySpend.date == today)
            .values(
                total_spent_usd=DailySpend.total_spent_usd + amount_usd,
                transaction_count=DailySpend.transaction_count + 1,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)


def serialize_action_log(entry: ActionLog) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "sessionId": entry.session_id,
        "intentType": entry.intent_type,
        "network": entry.network,
        "userMessage": entry.user_message,
        "preparedTx": entry.prepared_tx,
        "policyDecision": entry.policy_decision,
        "estimatedValueUsd": float(entry.estimated_value_usd) if entry.estimated_value_usd is not None else None,
        "txHash": entry.tx_hash,
        "q402RequestId": entry.q402_request_id,
        "status": entry.status,
        "errorMessage": entry.error_message,
        "createdAt": entry.created_at.isoformat() if entry.created_at else None,
        "executedAt": entry.executed_at.isoformat() if entry.executed_at else None,
    }
