"""
Sessions API Router.

A session is a connected wallet on one network. Policies, activity and daily
spend all hang off it.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from chainpilot.database import get_db
from chainpilot.models import Session
from chainpilot.routers.dependencies import load_session
from chainpilot.services.session_store import SessionStore

router = APIRouter(tags=["Sessions"])


class CreateSessionRequest(BaseModel):
    walletAddress: str
    network: str = "testnet"


def serialize_session(session: Session) -> dict:
    return {
        "id": session.id,
        "walletAddress": session.wallet_address,
        "currentNetwork": session.current_network,
        "createdAt": session.created_at.isoformat() if session.created_at else None,
        "updatedAt": session.updated_at.isoformat() if session.updated_at else None,
    }


@router.post("")
async def create_session(body: CreateSessionRequest, db: AsyncSession = Depends(get_db)):
    """Get or create the session for a wallet on a network."""
    session = await SessionStore(db).get_or_create(body.walletAddress, body.network)
    return {"session": serialize_session(session)}


@router.get("/{session_id}")
async def get_session(session_id: str, db: AsyncSession = Depends(get_db)):
    session = await load_session(session_id, db)
    return {"session": serialize_session(session)}
