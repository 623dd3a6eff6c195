# backend/tests/test_request_store.py
"""
Tests for the payment request lifecycle.
"""

from datetime import datetime, timedelta

import pytest

from chainpilot.errors import InvalidStateTransition, NotFoundError
from chainpilot.services.request_store import (
    RequestStore,
    can_transition,
    serialize_request,
    sweep_expired_requests,
)


def _fields(request_id, expires_in=timedelta(minutes=20)):
    return dict(
        id=request_id,
        network_id="bsc-testnet",
        owner="0x" + "aa" * 20,
        verifying_contract="0x0000000000000000000000000000000000000002",
        nonce=0,
        typed_data={"primaryType": "Witness", "message": {}},
        expires_at=datetime.utcnow() + expires_in,
    )


@pytest.mark.asyncio
async def test_created_request_is_pending(db):
    request = await RequestStore(db).create(**_fields("q402_a"))

    assert request.status == "pending"
    assert serialize_request(request)["requestId"] == "q402_a"


@pytest.mark.asyncio
async def test_happy_path_transitions(db):
    store = RequestStore(db)
    request = await store.create(**_fields("q402_b"))

    await store.transition(request, "signed")
    await store.transition(request, "executed", tx_hash="0x" + "ab" * 32)

    assert request.status == "executed"
    assert request.tx_hash == "0x" + "ab" * 32


@pytest.mark.asyncio
async def test_terminal_states_cannot_move(db):
    """A settled request can never be executed again."""
    store = RequestStore(db)
    request = await store.create(**_fields("q402_c"))
    await store.transition(request, "signed")
    await store.transition(request, "failed", error_message="reverted")

    with pytest.raises(InvalidStateTransition) as exc:
        await store.transition(request, "signed")

    assert exc.value.current == "failed"
    assert exc.value.status_code == 409


def test_transition_table():
    assert can_transition("pending", "signed")
    assert can_transition("signed", "expired")
    assert not can_transition("pending", "executed")
    assert not can_transition("expired", "pending")


@pytest.mark.asyncio
async def test_require_missing_request(db):
    with pytest.raises(NotFoundError):
        await RequestStore(db).require("q402_missing")


@pytest.mark.asyncio
async def test_expire_stale_only_touches_open_requests(db):
    store = RequestStore(db)
    stale = await store.create(**_fields("q402_stale", timedelta(minutes=-1)))
    fresh = await store.create(**_fields("q402_fresh"))
    done = await store.create(**_fields("q402_done", timedelta(minutes=-1)))
    await store.transition(done, "signed")
    await store.transition(done, "executed", tx_hash="0x01")

    assert await store.expire_stale() == 1

    await db.refresh(stale)
    await db.refresh(fresh)
    await db.refresh(done)
    assert (stale.status, fresh.status, done.status) == ("expired", "pending", "executed")


@pytest.mark.asyncio
async def test_sweep_runs_in_its_own_transaction(session_maker):
    async with session_maker() as session:
        await RequestStore(session).create(**_fields("q402_sweep", timedelta(seconds=-5)))
        await session.commit()

    assert await sweep_expired_requests(session_maker) == 1
    assert await sweep_expired_requests(session_maker) == 0
