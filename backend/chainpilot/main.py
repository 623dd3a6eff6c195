"""
ChainPilot Backend - FastAPI Application Entry Point.

Policy-checked, sign-to-pay transaction backend. Intents are evaluated against
the session's risk policy, turned into Q402 EIP-712 witnesses, and settled on
BNB Chain by a gas-sponsoring facilitator.
"""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from chainpilot.config import get_settings
from chainpilot.database import Base, async_session_maker, engine, get_db
from chainpilot.errors import ChainPilotError
from chainpilot.facilitator.service import FacilitatorRegistry
from chainpilot.routers import activity, facilitator, policies, portfolio, sessions, transactions
from chainpilot.services.request_store import sweep_expired_requests

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


async def _expiry_sweeper(registry: FacilitatorRegistry, interval: int):
    """Expire stale sign-to-pay requests and prune in-memory facilitator records."""
    while True:
        await asyncio.sleep(interval)
        try:
            expired = await sweep_expired_requests(async_session_maker)
            if expired:
                registry.counters.increment("expired", expired)
            registry.cleanup()
        except (SQLAlchemyError, ChainPilotError) as e:
            logger.error(f"Expiry sweep failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")

    registry = FacilitatorRegistry.from_settings(settings)
    app.state.facilitator_registry = registry
    await registry.verify_domains()
    sweeper = asyncio.create_task(_expiry_sweeper(registry, settings.EXPIRY_SWEEP_INTERVAL_SECONDS))

    yield

    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    await engine.dispose()
    logger.info("Database connection closed")


app = FastAPI(
    title=settings.APP_NAME,
    description="Policy-checked, gas-sponsored Q402 transactions on BNB Chain",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS Middleware (for the web frontend)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        settings.FRONTEND_URL,
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChainPilotError)
async def chainpilot_error_handler(request: Request, exc: ChainPilotError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "error": "Invalid request",
            "code": "VALIDATION_ERROR",
            "details": {"errors": jsonable_encoder(exc.errors())},
        },
    )


# Include Routers
app.include_router(sessions.router, prefix="/api/sessions", tags=["Sessions"])
app.include_router(policies.router, prefix="/api/policies", tags=["Policies"])
app.include_router(transactions.router, prefix="/api/transactions", tags=["Transactions"])
app.include_router(facilitator.router, prefix="/api/facilitator", tags=["Facilitator"])
app.include_router(activity.router, prefix="/api/activity", tags=["Activity"])
app.include_router(portfolio.router, prefix="/api/portfolio", tags=["Portfolio"])


@app.get("/health")
async def health_check(db=Depends(get_db)):
    """Deep Health Check: Verifies Database Connectivity."""
    try:
        await db.execute(text("SELECT 1"))
        return {"status": "healthy", "database": "connected"}
    except SQLAlchemyError as e:
        logger.error(f"Health check failed: {e}")
        # Return 503 so load balancers know to stop sending traffic
        raise HTTPException(status_code=503, detail="Database disconnected")


@app.get("/")
async def root():
    """Root endpoint with system info."""
    return {
        "name": settings.APP_NAME,
        "status": "operational",
        "networks": settings.enabled_networks,
    }
