"""
Router Dependencies
====================

Shared FastAPI dependencies for the API routers.
"""

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from chainpilot.errors import FacilitatorUnconfigured
from chainpilot.facilitator.service import FacilitatorRegistry
from chainpilot.models import Session
from chainpilot.services.session_store import SessionStore


def get_registry(request: Request) -> FacilitatorRegistry:
    """
    The process-wide facilitator registry, built in the app lifespan.

    Raises:
        FacilitatorUnconfigured(503): If the lifespan has not run.
    """
    registry = getattr(request.app.state, "facilitator_registry", None)
    if registry is None:
        raise FacilitatorUnconfigured("Facilitator registry is not initialized")
    return registry


async def load_session(session_id: str, db: AsyncSession) -> Session:
    """Fetch a wallet session or raise NotFoundError(404)."""
    return await SessionStore(db).require(session_id)
