# backend/tests/test_transaction_executor.py
"""
Tests for the sign-to-pay flow: prepare a witness, sign it like a wallet
would, execute it through the facilitator.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from unittest.mock import AsyncMock

from chainpilot.errors import InvalidStateTransition, SignatureError, ValidationError
from chainpilot.facilitator.service import FacilitatorRegistry, FacilitatorService
from chainpilot.facilitator.types import BatchOperation
from chainpilot.facilitator.witness import recover_typed_signer, sign_typed_message
from chainpilot.services.activity_log import ActivityLog
from chainpilot.services.policy_engine import PolicyEngine
from chainpilot.services.policy_models import ActionContext, NATIVE_TOKEN_ADDRESS, PolicyRules, RiskLevel, ViolationType
from chainpilot.services.request_store import RequestStore
from chainpilot.services.session_store import SessionStore
from chainpilot.services.transaction_executor import PaymentMeta, TransactionExecutor, resolve_amount

USER_KEY = "0x" + "11" * 32
USDT = "0x337610d27c682E347C9cD60BD4b3b107C9d34dDd"
ROUTER = "0x10ED43C718714eb63d5aA57B78B54704E256024E"


@pytest.fixture
def executor(db, registry, settings):
    return TransactionExecutor(db, registry, "bsc-testnet", settings)


def _allowed():
    return PolicyEngine(PolicyRules()).evaluate("token_transfer", ActionContext(value_usd=Decimal("25")))


def _meta(user, **extra):
    return PaymentMeta(owner_address=user.address, value_usd=Decimal("25"), token_address=USDT, amount="25", **extra)


@pytest.mark.asyncio
async def test_prepare_builds_signable_witness(executor, registry, user):
    prep = await executor.prepare_for_execution(None, "token_transfer", "token_transfer: 25 USDT", _allowed(), _meta(user))

    assert prep.allowed is True
    assert prep.request.status == "pending"
    message = prep.typed_data["message"]
    assert message["owner"] == user.address
    assert message["amount"] == str(25 * 10**18)
    assert message["nonce"] == 0
    assert prep.request.payment_details["scheme"] == "evm/eip7702-delegated-payment"
    assert registry.counters.prepared == 1

    signature = sign_typed_message(prep.typed_data, USER_KEY)
    assert recover_typed_signer(prep.typed_data, signature) == user.address


@pytest.mark.asyncio
async def test_consecutive_prepares_get_new_nonces(executor, user):
    first = await executor.prepare_for_execution(None, "transfer", "a", _allowed(), _meta(user))
    second = await executor.prepare_for_execution(None, "transfer", "b", _allowed(), _meta(user))

    assert (first.request.nonce, second.request.nonce) == (0, 1)
    assert first.typed_data["message"]["paymentId"] != second.typed_data["message"]["paymentId"]


@pytest.mark.asyncio
async def test_blocked_decision_creates_nothing(executor, registry, user):
    blocked = PolicyEngine(PolicyRules()).evaluate("transfer", ActionContext(value_usd=Decimal("1500")))

    prep = await executor.prepare_for_execution(None, "transfer", "too much", blocked, _meta(user))

    assert prep.allowed is False
    assert prep.request is None
    assert prep.risk_level == RiskLevel.BLOCKED
    assert "per-transaction limit" in prep.rejection_reason
    assert registry.counters.rejected == 1


@pytest.mark.asyncio
async def test_invalid_owner_is_rejected(executor):
    with pytest.raises(ValidationError):
        await executor.prepare_for_execution(None, "transfer", "x", _allowed(), PaymentMeta(owner_address="0xnope"))


@pytest.mark.asyncio
async def test_execute_settles_stored_witness(executor, registry, mock_chain, user):
    """The signature over the returned typed data settles and marks the request executed."""
    prep = await executor.prepare_for_execution(None, "token_transfer", "pay", _allowed(), _meta(user))
    signature = sign_typed_message(prep.typed_data, USER_KEY)

    result = await executor.execute(prep.request.id, signature, user.address)

    assert result.success is True
    assert result.status == "executed"
    assert result.tx_hash == "0x" + "ab" * 32
    assert prep.request.status == "executed"
    assert registry.counters.executed == 1
    assert result.to_dict()["q402RequestId"] == prep.request.id

    status = await executor.get_status(prep.request.id)
    assert status["explorerUrl"] == f"https://testnet.bscscan.com/tx/{'0x' + 'ab' * 32}"


@pytest.mark.asyncio
async def test_execute_twice_is_refused(executor, user):
    prep = await executor.prepare_for_execution(None, "token_transfer", "pay", _allowed(), _meta(user))
    signature = sign_typed_message(prep.typed_data, USER_KEY)
    await executor.execute(prep.request.id, signature, user.address)

    with pytest.raises(InvalidStateTransition):
        await executor.execute(prep.request.id, signature, user.address)


@pytest.mark.asyncio
async def test_wrong_signature_marks_request_failed(executor, registry, mock_chain, user):
    prep = await executor.prepare_for_execution(None, "token_transfer", "pay", _allowed(), _meta(user))
    signature = sign_typed_message(prep.typed_data, "0x" + "44" * 32)

    result = await executor.execute(prep.request.id, signature, user.address)

    assert result.success is False
    assert result.status == "failed"
    assert prep.request.status == "failed"
    assert "Signature mismatch" in prep.request.error_message
    assert registry.counters.failed == 1
    mock_chain.send_function.assert_not_awaited()


@pytest.mark.asyncio
async def test_expired_request_is_not_settled(executor, db, registry, mock_chain, user):
    prep = await executor.prepare_for_execution(None, "token_transfer", "pay", _allowed(), _meta(user))
    prep.request.expires_at = datetime.utcnow() - timedelta(seconds=1)
    await db.flush()

    result = await executor.execute(prep.request.id, "0x" + "00" * 65, user.address)

    assert result.success is False
    assert result.status == "expired"
    assert prep.request.status == "expired"
    assert registry.counters.expired == 1
    mock_chain.send_function.assert_not_awaited()


@pytest.mark.asyncio
async def test_batch_prepare_and_execute(executor, mock_chain, user):
    async def _call(address, abi, name, *args):
        if name == "isRouterWhitelisted":
            return args[0].lower() == ROUTER.lower()
        return False if name == "paused" else 0
    mock_chain.call_function = AsyncMock(side_effect=_call)
    operations = [
        BatchOperation("transfer", USDT, 10**18, NATIVE_TOKEN_ADDRESS, 0, "0x" + "12" * 20),
        BatchOperation("swap", USDT, 10**18, NATIVE_TOKEN_ADDRESS, 1, ROUTER, "0x38ed1739"),
    ]

    prep = await executor.prepare_batch_for_execution(operations, user.address, _allowed())
    result = await executor.execute(prep.request.id, sign_typed_message(prep.typed_data, USER_KEY), user.address)

    assert prep.request.kind == "batch"
    assert prep.typed_data["primaryType"] == "BatchWitness"
    assert len(prep.operations) == 2
    assert result.success is True
    assert mock_chain.send_function.await_args.args[2] == "executeBatch"


@pytest.mark.asyncio
async def test_batch_with_unlisted_target_is_rejected_at_prepare(executor, registry, mock_chain, user):
    mock_chain.call_function = AsyncMock(return_value=False)
    operations = [
        BatchOperation("transfer", USDT, 1, NATIVE_TOKEN_ADDRESS, 0, "0x" + "12" * 20),
        BatchOperation("call", NATIVE_TOKEN_ADDRESS, 0, NATIVE_TOKEN_ADDRESS, 0, ROUTER, "0x01"),
    ]

    prep = await executor.prepare_batch_for_execution(operations, user.address, _allowed())

    assert prep.allowed is False
    assert prep.risk_level == RiskLevel.BLOCKED
    assert prep.rejection_reason == f"Operation #2 uses a target that is not whitelisted: {ROUTER}"
    assert prep.decision.allowed is False
    assert prep.decision.violations[-1].type == ViolationType.NOT_WHITELISTED
    assert registry.counters.rejected == 1


@pytest.mark.asyncio
async def test_batch_size_limits(executor, user):
    with pytest.raises(ValidationError):
        await executor.prepare_batch_for_execution([], user.address, _allowed())

    too_many = [BatchOperation("transfer", USDT, 1, NATIVE_TOKEN_ADDRESS, 0, "0x" + "12" * 20)] * 11
    with pytest.raises(ValidationError):
        await executor.prepare_batch_for_execution(too_many, user.address, _allowed())


def test_resolve_amount_precedence(network):
    owner = "0x" + "aa" * 20

    assert resolve_amount(PaymentMeta(owner, amount_wei=5, amount="1"), network) == 5
    assert resolve_amount(PaymentMeta(owner, amount="1.5", token_address=USDT), network) == 15 * 10**17
    assert resolve_amount(PaymentMeta(owner), network, {"value": "0x10"}) == 16
    with pytest.raises(ValidationError):
        resolve_amount(PaymentMeta(owner, amount="lots"), network)


@pytest.mark.asyncio
async def test_execute_by_non_owner_leaves_request_pending(executor, user, other_user):
    """Another wallet cannot execute the request; the owner still can afterwards."""
    prep = await executor.prepare_for_execution(None, "token_transfer", "pay", _allowed(), _meta(user))

    with pytest.raises(SignatureError):
        await executor.execute(prep.request.id, "0x" + "00" * 65, other_user.address)

    assert prep.request.status == "pending"


@pytest.mark.asyncio
async def test_concurrent_execute_settles_once(session_maker, registry, facilitator_config, mock_chain, settings, user):
    """A second session holding the same pending row cannot settle it again."""
    # Separate facilitator state, as in a second worker process
    other_registry = FacilitatorRegistry(
        registry.networks, {"bsc-testnet": FacilitatorService(facilitator_config, chain=mock_chain)}
    )

    async with session_maker() as first_db, session_maker() as second_db:
        first = TransactionExecutor(first_db, registry, "bsc-testnet", settings)
        second = TransactionExecutor(second_db, other_registry, "bsc-testnet", settings)

        prep = await first.prepare_for_execution(None, "token_transfer", "pay", _allowed(), _meta(user))
        await first_db.commit()
        signature = sign_typed_message(prep.typed_data, USER_KEY)

        # Loaded while still pending, the way the execute route loads it
        held = await second.requests.require(prep.request.id)
        assert held.status == "pending"

        result = await first.execute(prep.request.id, signature, user.address)
        await first_db.commit()
        assert result.status == "executed"

        with pytest.raises(InvalidStateTransition) as exc_info:
            await second.execute(prep.request.id, signature, user.address)
        await second_db.rollback()

    assert exc_info.value.current == "executed"
    assert mock_chain.send_function.await_count == 1

    async with session_maker() as check_db:
        stored = await RequestStore(check_db).require(prep.request.id)
        assert stored.status == "executed"
        assert stored.tx_hash == "0x" + "ab" * 32


@pytest.fixture
async def wallet_session(db, user):
    return await SessionStore(db).get_or_create(user.address, "testnet")


def _capped_rules():
    return PolicyRules(max_per_tx_usd=Decimal("5000"), max_daily_usd=Decimal("5000"))


async def _prepare_capped(executor, wallet_session, user, value):
    rules = _capped_rules()
    decision = PolicyEngine(rules).evaluate("token_transfer", ActionContext(value_usd=value), Decimal("0"))
    assert decision.allowed is True
    return await executor.prepare_for_execution(
        None, "token_transfer", "pay", decision,
        PaymentMeta(
            owner_address=user.address,
            session_id=wallet_session.id,
            value_usd=value,
            token_address=USDT,
            amount=str(value),
        ),
    )


@pytest.mark.asyncio
async def test_daily_cap_is_enforced_again_at_execute(executor, db, mock_chain, wallet_session, user):
    """Two $3000 requests prepared against a $5000 cap: only the first settles."""
    first = await _prepare_capped(executor, wallet_session, user, Decimal("3000"))
    second = await _prepare_capped(executor, wallet_session, user, Decimal("3000"))

    result = await executor.execute(
        first.request.id, sign_typed_message(first.typed_data, USER_KEY), user.address, rules=_capped_rules()
    )
    assert result.success is True
    await ActivityLog(db).add_spend(wallet_session.id, Decimal("3000"))

    result = await executor.execute(
        second.request.id, sign_typed_message(second.typed_data, USER_KEY), user.address, rules=_capped_rules()
    )

    assert result.success is False
    assert result.status == "failed"
    assert result.error == "Would exceed daily limit of $5000.00"
    assert second.request.status == "failed"
    assert mock_chain.send_function.await_count == 1


@pytest.mark.asyncio
async def test_in_flight_requests_count_toward_daily_cap(executor, mock_chain, wallet_session, user):
    first = await _prepare_capped(executor, wallet_session, user, Decimal("3000"))
    second = await _prepare_capped(executor, wallet_session, user, Decimal("3000"))
    # First one claimed and mid-settlement elsewhere
    await executor.requests.claim(first.request, "pending", "signed")

    result = await executor.execute(
        second.request.id, sign_typed_message(second.typed_data, USER_KEY), user.address, rules=_capped_rules()
    )

    assert result.success is False
    assert "daily limit" in result.error
    mock_chain.send_function.assert_not_awaited()


@pytest.mark.asyncio
async def test_claim_is_conditional_on_current_status(executor, user):
    prep = await executor.prepare_for_execution(None, "token_transfer", "pay", _allowed(), _meta(user))

    await executor.requests.claim(prep.request, "pending", "signed")

    with pytest.raises(InvalidStateTransition):
        await executor.requests.claim(prep.request, "pending", "signed")
    assert prep.request.status == "signed"
