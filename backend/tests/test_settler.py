# backend/tests/test_settler.py
"""
Tests for sponsored settlement of single payments and batches.

The chain client is a mock; these tests cover the checks that run before a
transaction is sent and the bookkeeping after the receipt comes back.
"""

import time

import pytest
from unittest.mock import AsyncMock

from chainpilot.errors import UpstreamError
from chainpilot.facilitator.settler import GasBudget
from chainpilot.facilitator.types import (
    BatchOperation,
    BatchSettleRequest,
    BatchWitness,
    FacilitatorErrorCode,
    SettleRequest,
    TransactionData,
)
from chainpilot.facilitator.witness import build_batch_typed_data, generate_batch_id, operations_hash, sign_typed_message
from chainpilot.services.policy_models import NATIVE_TOKEN_ADDRESS

USER_KEY = "0x" + "11" * 32
USDT = "0x337610d27c682E347C9cD60BD4b3b107C9d34dDd"
ROUTER = "0x10ED43C718714eb63d5aA57B78B54704E256024E"
BAD_ROUTER = "0x" + "66" * 20
CALL_TARGET = "0x" + "77" * 20


def _request(witness, signature, signer, transaction=None):
    return SettleRequest(
        network_id="bsc-testnet",
        request_id="q402_test_1",
        witness=witness,
        signature=signature,
        signer_address=signer,
        transaction=transaction,
    )


@pytest.mark.asyncio
async def test_settle_success_marks_nonce_and_charges_budget(facilitator_service, mock_chain, signed_payment, user):
    """A good witness is sent once, its nonce burned and the gas charged."""
    witness, signature = signed_payment(nonce=0)

    result = await facilitator_service.settle(_request(witness, signature, user.address))

    assert result.success is True
    assert result.tx_hash == "0x" + "ab" * 32
    assert result.block_number == 123
    mock_chain.send_function.assert_awaited_once()
    assert mock_chain.send_function.await_args.args[2] == "executeTransfer"
    # 100k estimate plus 20% headroom
    assert mock_chain.send_function.await_args.kwargs["gas"] == 120_000
    assert facilitator_service.verifier.current_nonce(user.address) == 1
    assert facilitator_service.settler.stats.success_count == 1

    replay = await facilitator_service.settle(_request(witness, signature, user.address))

    assert replay.success is False
    assert replay.error_code == FacilitatorErrorCode.INVALID_NONCE


@pytest.mark.asyncio
async def test_nonce_consumed_on_chain_is_rejected_before_send(facilitator_service, mock_chain, signed_payment, user):
    """Another process settled this nonce; nothing is sent and the nonce is burned locally."""
    witness, signature = signed_payment(nonce=4)
    mock_chain.call_function = AsyncMock(side_effect=lambda address, abi, name, *args: name == "usedNonces")

    result = await facilitator_service.settle(_request(witness, signature, user.address))

    assert result.success is False
    assert result.error_code == FacilitatorErrorCode.INVALID_NONCE
    assert "already used on-chain" in result.error
    assert mock_chain.call_function.await_args.args[2:] == ("usedNonces", witness.owner, 4)
    mock_chain.send_function.assert_not_awaited()
    assert facilitator_service.verifier.current_nonce(user.address) == 5


@pytest.mark.asyncio
async def test_gas_price_above_cap_is_rejected(facilitator_service, mock_chain, signed_payment, user):
    mock_chain.get_gas_price = AsyncMock(return_value=50 * 10**9)
    witness, signature = signed_payment()

    result = await facilitator_service.settle(_request(witness, signature, user.address))

    assert result.success is False
    assert result.error_code == FacilitatorErrorCode.BUDGET_EXCEEDED
    mock_chain.send_function.assert_not_awaited()


@pytest.mark.asyncio
async def test_low_sponsor_balance_is_rejected(facilitator_service, mock_chain, signed_payment, user):
    mock_chain.get_balance = AsyncMock(return_value=10**14)
    witness, signature = signed_payment()

    result = await facilitator_service.settle(_request(witness, signature, user.address))

    assert result.error_code == FacilitatorErrorCode.INSUFFICIENT_FUNDS


@pytest.mark.asyncio
async def test_per_tx_gas_cap(facilitator_service, mock_chain, signed_payment, user):
    """A transfer whose estimated cost exceeds the per-tx cap is not sent."""
    mock_chain.estimate_function_gas = AsyncMock(return_value=4_000_000)
    witness, signature = signed_payment()

    result = await facilitator_service.settle(_request(witness, signature, user.address))

    assert result.success is False
    assert result.error_code == FacilitatorErrorCode.BUDGET_EXCEEDED
    mock_chain.send_function.assert_not_awaited()


@pytest.mark.asyncio
async def test_estimate_failure_falls_back_to_default_gas(facilitator_service, mock_chain, signed_payment, user):
    mock_chain.estimate_function_gas = AsyncMock(side_effect=UpstreamError("rpc", "execution reverted"))
    witness, signature = signed_payment()

    result = await facilitator_service.settle(_request(witness, signature, user.address))

    assert result.success is True
    assert mock_chain.send_function.await_args.kwargs["gas"] == 300_000


@pytest.mark.asyncio
async def test_native_value_transfer_is_refused(facilitator_service, mock_chain, signed_payment, user):
    witness, signature = signed_payment(token=NATIVE_TOKEN_ADDRESS)
    transaction = TransactionData(to="0x" + "12" * 20, value=10**17)

    result = await facilitator_service.settle(_request(witness, signature, user.address, transaction))

    assert result.success is False
    assert result.error_code == FacilitatorErrorCode.INVALID_IMPLEMENTATION
    mock_chain.send_function.assert_not_awaited()
    mock_chain.send_raw_call.assert_not_awaited()


@pytest.mark.asyncio
async def test_custom_call_goes_through_raw_send(facilitator_service, mock_chain, signed_payment, user):
    witness, signature = signed_payment(token=NATIVE_TOKEN_ADDRESS)
    transaction = TransactionData(to=ROUTER, data="0x38ed1739")

    result = await facilitator_service.settle(_request(witness, signature, user.address, transaction))

    assert result.success is True
    assert result.tx_hash == "0x" + "cd" * 32
    mock_chain.send_raw_call.assert_awaited_once()


@pytest.mark.asyncio
async def test_reverted_receipt_keeps_nonce_unused(facilitator_service, mock_chain, signed_payment, user):
    mock_chain.wait_for_receipt = AsyncMock(return_value={"status": 0, "gasUsed": 50_000})
    witness, signature = signed_payment(nonce=4)

    result = await facilitator_service.settle(_request(witness, signature, user.address))

    assert result.success is False
    assert result.error_code == FacilitatorErrorCode.TRANSACTION_FAILED
    assert result.tx_hash == "0x" + "ab" * 32
    assert facilitator_service.verifier.current_nonce(user.address) == 0
    assert facilitator_service.settler.stats.fail_count == 1


@pytest.mark.asyncio
async def test_rpc_error_becomes_network_failure(facilitator_service, mock_chain, signed_payment, user):
    mock_chain.send_function = AsyncMock(side_effect=UpstreamError("rpc", "connection reset"))
    witness, signature = signed_payment()

    result = await facilitator_service.settle(_request(witness, signature, user.address))

    assert result.success is False
    assert result.error_code == FacilitatorErrorCode.NETWORK_ERROR


def test_gas_budget_limits(facilitator_config):
    """Daily budget, per-address count and per-minute rate each stop an address."""
    facilitator_config.max_requests_per_minute = 2
    budget = GasBudget(facilitator_config)
    address = "0x" + "aa" * 20

    assert budget.check(address).allowed is True
    budget.charge(address, 1000)
    budget.charge(address, 1000)

    limited = budget.check(address)
    assert limited.allowed is False
    assert limited.error_code == FacilitatorErrorCode.RATE_LIMITED

    budget.charge("0x" + "bb" * 20, facilitator_config.daily_gas_budget_wei)
    exhausted = budget.check("0x" + "cc" * 20)
    assert exhausted.allowed is False
    assert exhausted.reason == "Daily gas budget exceeded"


def _batch(network, user, operations):
    witness = BatchWitness(
        owner=user.address,
        operations_hash=operations_hash(operations),
        deadline=int(time.time()) + 600,
        batch_id=generate_batch_id(),
        nonce=0,
    )
    signature = sign_typed_message(build_batch_typed_data(witness, network.chain_id, network.batch_executor), USER_KEY)
    return BatchSettleRequest(
        network_id="bsc-testnet",
        request_id="q402_batch_1",
        witness=witness,
        operations=operations,
        signature=signature,
        signer_address=user.address,
    )


def _whitelist(allowed):
    """call_function stub: whitelist lookups answer from `allowed`, paused is False."""
    async def _call(address, abi, name, *args):
        if name in ("isRouterWhitelisted", "isTargetWhitelisted"):
            return args[0].lower() in allowed
        if name == "paused":
            return False
        return 0
    return AsyncMock(side_effect=_call)


@pytest.mark.asyncio
async def test_batch_with_unlisted_router_is_rejected(facilitator_service, facilitator_config, mock_chain, network, user):
    """Operation #2 of three uses an unlisted router: nothing is estimated, sent or charged."""
    mock_chain.call_function = _whitelist({ROUTER.lower(), CALL_TARGET.lower()})
    operations = [
        BatchOperation("transfer", USDT, 10**18, NATIVE_TOKEN_ADDRESS, 0, "0x" + "12" * 20),
        BatchOperation("swap", USDT, 10**18, NATIVE_TOKEN_ADDRESS, 1, BAD_ROUTER, "0x38ed1739"),
        BatchOperation("call", NATIVE_TOKEN_ADDRESS, 0, NATIVE_TOKEN_ADDRESS, 0, CALL_TARGET, "0xd0e30db0"),
    ]

    result = await facilitator_service.settle_batch(_batch(network, user, operations))

    assert result.success is False
    assert result.error_code == FacilitatorErrorCode.NOT_WHITELISTED
    assert result.error == f"Operation #2 uses a router that is not whitelisted: {BAD_ROUTER}"
    mock_chain.estimate_function_gas.assert_not_awaited()
    mock_chain.send_function.assert_not_awaited()
    mock_chain.wait_for_receipt.assert_not_awaited()
    checked = [c.args[2] for c in mock_chain.call_function.await_args_list]
    assert "isTargetWhitelisted" not in checked
    assert "paused" not in checked

    assert facilitator_service.batch_verifier.next_nonce(user.address) == 0
    budget = facilitator_service.batch_settler.budget.check(user.address)
    assert budget.remaining_daily_budget_wei == facilitator_config.daily_gas_budget_wei
    assert budget.address_transactions_today == 0
    assert facilitator_service.batch_settler.total_operations == 0


@pytest.mark.asyncio
async def test_batch_success(facilitator_service, mock_chain, network, user):
    mock_chain.call_function = _whitelist({ROUTER.lower()})
    operations = [
        BatchOperation("transfer", USDT, 10**18, NATIVE_TOKEN_ADDRESS, 0, "0x" + "12" * 20),
        BatchOperation("swap", USDT, 10**18, NATIVE_TOKEN_ADDRESS, 1, ROUTER, "0x38ed1739"),
    ]

    result = await facilitator_service.settle_batch(_batch(network, user, operations))

    assert result.success is True
    assert mock_chain.send_function.await_args.args[2] == "executeBatch"
    assert facilitator_service.batch_verifier.next_nonce(user.address) == 1
    assert facilitator_service.batch_settler.total_operations == 2


@pytest.mark.asyncio
async def test_paused_executor_rejects_batch(facilitator_service, mock_chain, network, user):
    async def _call(address, abi, name, *args):
        return name == "paused"
    mock_chain.call_function = AsyncMock(side_effect=_call)
    operations = [BatchOperation("transfer", USDT, 1, NATIVE_TOKEN_ADDRESS, 0, "0x" + "12" * 20)]

    result = await facilitator_service.settle_batch(_batch(network, user, operations))

    assert result.success is False
    assert result.error == "Batch executor is paused"
