# backend/chainpilot/middleware/idempotency.py
"""
Idempotency for settlement requests.

A client that retries POST /api/facilitator/settle with the same
Idempotency-Key gets the first outcome back instead of a second on-chain
submission. Results are cached in Redis for 24 hours, scoped per signer and
endpoint. While the first attempt is still running, a retry is refused with
409 rather than racing it to the chain.

Usage:
    @router.post("/settle")
    async def settle(body: SettleBody, idempotency_key: str = Header(None, alias="Idempotency-Key")):
        return await get_idempotency_middleware().ensure_idempotent(
            idempotency_key, body.signerAddress, "/facilitator/settle", settle_internal, body,
        )
"""

import json
import hashlib
import logging
from datetime import timedelta
from typing import Callable, Any, Optional

from chainpilot.errors import ChainPilotError
from chainpilot.redis import get_redis_client

logger = logging.getLogger(__name__)


class SettlementInProgress(ChainPilotError):
    status_code = 409
    code = "SETTLEMENT_IN_PROGRESS"


class IdempotencyMiddleware:
    """
    Redis-backed idempotency for settlement endpoints.

    - Caches handler results by idempotency key
    - 24-hour TTL for cached results
    - Per-signer + endpoint scoping
    - In-flight marker so concurrent retries cannot double-submit
    - Requests without a key run the handler directly
    """

    TTL_HOURS = 24
    # Covers a receipt wait plus RPC retries
    IN_FLIGHT_SECONDS = 180

    def __init__(self):
        self.redis = get_redis_client()

    async def ensure_idempotent(
        self,
        key: Optional[str],
        scope: str,
        endpoint: str,
        handler: Callable,
        *args,
        **kwargs
    ) -> Any:
        """
        Execute handler with idempotency protection.

        Args:
            key: Client-provided idempotency key, or None
            scope: Who is asking (signer address)
            endpoint: API endpoint being called
            handler: Async function returning a JSON-serializable result
            *args, **kwargs: Arguments for handler

        Returns:
            Result from handler (or cached result if duplicate)

        Raises:
            SettlementInProgress: another request with this key is still running
        """
        if not key:
            return await handler(*args, **kwargs)

        cache_key = self._build_cache_key(key, scope, endpoint)

        cached_result = self.redis.get(cache_key)
        if cached_result:
            logger.info(f"Idempotency cache hit for key {key[:8]}... - returning cached result")
            return json.loads(cached_result)

        lock_key = f"{cache_key}:in-flight"
        if not self.redis.set(lock_key, "1", nx=True, ex=self.IN_FLIGHT_SECONDS):
            logger.warning(f"Settlement for key {key[:8]}... already in progress")
            raise SettlementInProgress("A settlement with this Idempotency-Key is already in progress")

        try:
            result = await handler(*args, **kwargs)
            self.redis.setex(
                cache_key,
                int(timedelta(hours=self.TTL_HOURS).total_seconds()),
                json.dumps(result, default=str)
            )
            logger.debug(f"Idempotency cached result for key {key[:8]}...")
            return result
        except Exception as e:
            # Exceptions are not cached so the client can retry
            logger.error(f"Idempotency handler failed: {e}")
            raise
        finally:
            self.redis.delete(lock_key)

    def _build_cache_key(self, key: str, scope: str, endpoint: str) -> str:
        """
        Format: idempotency:{scope}:{endpoint_hash}:{key}
        """
        endpoint_hash = hashlib.sha256(endpoint.encode()).hexdigest()[:8]
        return f"idempotency:{scope.lower()}:{endpoint_hash}:{key}"


# Singleton instance
_idempotency_middleware = None


def get_idempotency_middleware() -> IdempotencyMiddleware:
    """Get or create the idempotency middleware singleton."""
    global _idempotency_middleware
    if _idempotency_middleware is None:
        _idempotency_middleware = IdempotencyMiddleware()
    return _idempotency_middleware
