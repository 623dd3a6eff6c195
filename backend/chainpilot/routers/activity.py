"""
Activity API Router.

Recent action log entries for a session, newest first.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from chainpilot.database import get_db
from chainpilot.routers.dependencies import load_session
from chainpilot.services.activity_log import ActivityLog, serialize_action_log

router = APIRouter(tags=["Activity"])


@router.get("")
async def list_activity(
    sessionId: str = Query(...),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    status: Optional[str] = Query(None),
    intentType: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    await load_session(sessionId, db)
    logs, total = await ActivityLog(db).list_recent(sessionId, limit, offset, status, intentType)
    return {
        "logs": [serialize_action_log(entry) for entry in logs],
        "total": total,
        "hasMore": offset + limit < total,
    }
