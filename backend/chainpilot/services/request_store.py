# backend/chainpilot/services/request_store.py
"""
Prepared Q402 request persistence and lifecycle.

State machine:
    pending -> signed | expired | rejected
    signed  -> executed | failed | expired

executed, failed, expired and rejected are terminal.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chainpilot.errors import InvalidStateTransition, NotFoundError
from chainpilot.models import PaymentRequest

logger = logging.getLogger(__name__)

TRANSITIONS = {
    "pending": {"signed", "expired", "rejected"},
    "signed": {"executed", "failed", "expired"},
}

OPEN_STATUSES = tuple(TRANSITIONS)


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, set())


class RequestStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **fields) -> PaymentRequest:
        request = PaymentRequest(status="pending", **fields)
        self.session.add(request)
        await self.session.flush()
        logger.info(f"Stored {request.kind} request {request.id} for {request.owner} (nonce {request.nonce})")
        return request

    async def get(self, request_id: str) -> Optional[PaymentRequest]:
        return await self.session.get(PaymentRequest, request_id)

    async def require(self, request_id: str) -> PaymentRequest:
        request = await self.get(request_id)
        if request is None:
            raise NotFoundError("Payment request")
        return request

    async def transition(
        self,
        request: PaymentRequest,
        target: str,
        tx_hash: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> PaymentRequest:
        if not can_transition(request.status, target):
            raise InvalidStateTransition(request.id, request.status, target)

        logger.info(f"Request {request.id}: {request.status} -> {target}")
        request.status = target
        if tx_hash:
            request.tx_hash = tx_hash
        if error_message:
            request.error_message = error_message
        request.updated_at = datetime.utcnow()
        await self.session.flush()
        return request

    async def claim(self, request: PaymentRequest, expected: str, target: str) -> PaymentRequest:
        """
        Move a request from `expected` to `target` with a conditional UPDATE.

        Exactly one caller can win the claim even when several sessions hold
        the same row. The loser gets InvalidStateTransition with the status the
        winner left behind.
        """
        if not can_transition(expected, target):
            raise InvalidStateTransition(request.id, expected, target)

        result = await self.session.execute(
            update(PaymentRequest)
            .where(PaymentRequest.id == request.id, PaymentRequest.status == expected)
            .values(status=target, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.refresh(request)
        if result.rowcount != 1:
            logger.warning(f"Request {request.id}: claim {expected} -> {target} lost, now {request.status}")
            raise InvalidStateTransition(request.id, request.status, target)

        logger.info(f"Request {request.id}: {expected} -> {target}")
        return request

    async def in_flight_value_usd(self, session_id: Optional[str], exclude_id: Optional[str] = None) -> Decimal:
        """USD value of the session's requests that are signed but not yet settled."""
        if not session_id:
            return Decimal("0")
        query = select(PaymentRequest.request_metadata).where(
            PaymentRequest.session_id == session_id,
            PaymentRequest.status == "signed",
        )
        if exclude_id:
            query = query.where(PaymentRequest.id != exclude_id)
        result = await self.session.execute(query)
        total = Decimal("0")
        for metadata in result.scalars():
            value = (metadata or {}).get("valueUsd")
            if value is not None:
                total += Decimal(str(value))
        return total

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Mark every open request past its expiry as expired. Returns the count."""
        now = now or datetime.utcnow()
        result = await self.session.execute(
            update(PaymentRequest)
            .where(PaymentRequest.status.in_(OPEN_STATUSES), PaymentRequest.expires_at < now)
            .values(status="expired", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(f"Expired {result.rowcount} stale payment requests")
        return result.rowcount or 0


async def sweep_expired_requests(session_maker: async_sessionmaker) -> int:
    """One expiry sweep in its own transaction."""
    async with session_maker() as session:
        try:
            expired = await RequestStore(session).expire_stale()
            await session.commit()
            return expired
        except Exception:
            await session.rollback()
            raise


def serialize_request(request: PaymentRequest) -> Dict[str, Any]:
    return {
        "requestId": request.id,
        "kind": request.kind,
        "networkId": request.network_id,
        "owner": request.owner,
        "nonce": request.nonce,
        "status": request.status,
        "txHash": request.tx_hash,
        "error": request.error_message,
        "createdAt": request.created_at.isoformat() if request.created_at else None,
        "expiresAt": request.expires_at.isoformat() if request.expires_at else None,
    }
