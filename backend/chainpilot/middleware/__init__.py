"""Middleware package for FastAPI."""

from .idempotency import IdempotencyMiddleware, SettlementInProgress, get_idempotency_middleware

__all__ = ["IdempotencyMiddleware", "SettlementInProgress", "get_idempotency_middleware"]
