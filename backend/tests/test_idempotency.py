# backend/tests/test_idempotency.py
"""
Tests for settlement idempotency.
"""

import json

import pytest
from unittest.mock import MagicMock, patch

from chainpilot.middleware.idempotency import IdempotencyMiddleware, SettlementInProgress

SIGNER = "0xAbCdEf0000000000000000000000000000000001"


@pytest.fixture
def mock_redis():
    """Create a mock Redis client."""
    redis = MagicMock()
    redis.get.return_value = None
    redis.set.return_value = True
    redis.setex.return_value = True
    redis.delete.return_value = 1
    return redis


@pytest.fixture
def idempotency_middleware(mock_redis):
    """Create middleware with mocked Redis."""
    with patch('chainpilot.middleware.idempotency.get_redis_client', return_value=mock_redis):
        return IdempotencyMiddleware()


@pytest.mark.asyncio
async def test_first_request_executes_handler(idempotency_middleware, mock_redis):
    """First request should execute handler and cache result."""
    async def handler():
        return {"success": True, "txHash": "0xabc"}

    result = await idempotency_middleware.ensure_idempotent("settle-key-1", SIGNER, "/facilitator/settle", handler)

    assert result["txHash"] == "0xabc"
    mock_redis.setex.assert_called_once()
    mock_redis.delete.assert_called_once()


@pytest.mark.asyncio
async def test_duplicate_request_returns_cached_result(idempotency_middleware, mock_redis):
    """Duplicate request should return cached result without settling again."""
    cached_result = {"success": True, "txHash": "0xabc"}
    mock_redis.get.return_value = json.dumps(cached_result)

    handler_called = False

    async def handler():
        nonlocal handler_called
        handler_called = True
        return {"success": False}

    result = await idempotency_middleware.ensure_idempotent("settle-key-1", SIGNER, "/facilitator/settle", handler)

    assert result == cached_result
    assert not handler_called


@pytest.mark.asyncio
async def test_in_flight_duplicate_is_refused(idempotency_middleware, mock_redis):
    """A retry while the first attempt still runs gets 409, not a second submission."""
    mock_redis.set.return_value = None

    async def handler():
        raise AssertionError("handler must not run")

    with pytest.raises(SettlementInProgress) as exc:
        await idempotency_middleware.ensure_idempotent("settle-key-1", SIGNER, "/facilitator/settle", handler)

    assert exc.value.status_code == 409
    mock_redis.delete.assert_not_called()


@pytest.mark.asyncio
async def test_missing_key_skips_cache(idempotency_middleware, mock_redis):
    async def handler(value):
        return {"value": value}

    result = await idempotency_middleware.ensure_idempotent(None, SIGNER, "/facilitator/settle", handler, 7)

    assert result == {"value": 7}
    mock_redis.get.assert_not_called()
    mock_redis.setex.assert_not_called()


@pytest.mark.asyncio
async def test_handler_error_not_cached(idempotency_middleware, mock_redis):
    """Errors should NOT be cached, and the in-flight marker is released."""
    async def failing_handler():
        raise ValueError("Something went wrong")

    with pytest.raises(ValueError):
        await idempotency_middleware.ensure_idempotent("key-1", SIGNER, "/facilitator/settle", failing_handler)

    mock_redis.setex.assert_not_called()
    mock_redis.delete.assert_called_once()


def test_cache_key_includes_signer_and_endpoint(idempotency_middleware):
    """Cache key should be unique per signer AND endpoint, ignoring address case."""
    key1 = idempotency_middleware._build_cache_key("same-key", SIGNER, "/facilitator/settle")
    key2 = idempotency_middleware._build_cache_key("same-key", "0x" + "22" * 20, "/facilitator/settle")
    key3 = idempotency_middleware._build_cache_key("same-key", SIGNER, "/facilitator/verify")

    assert key1 != key2
    assert key1 != key3
    assert key1 == idempotency_middleware._build_cache_key("same-key", SIGNER.lower(), "/facilitator/settle")
