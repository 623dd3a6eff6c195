# backend/tests/conftest.py
"""
Shared fixtures: in-memory database, signing keys, mocked chain client and a
facilitator registry wired to it.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from eth_account import Account
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from chainpilot.config import Settings
from chainpilot.facilitator.networks import get_network
from chainpilot.facilitator.service import FacilitatorRegistry, FacilitatorService
from chainpilot.facilitator.types import FacilitatorConfig
from chainpilot.models import Base

USER_KEY = "0x" + "11" * 32
OTHER_KEY = "0x" + "33" * 32
SPONSOR_KEY = "0x" + "22" * 32


@pytest.fixture
def settings():
    return Settings(FACILITATOR_PRIVATE_KEY=SPONSOR_KEY, ENABLED_NETWORKS="bsc-testnet")


@pytest.fixture
def network(settings):
    return get_network("bsc-testnet", settings)


@pytest.fixture
def user():
    return Account.from_key(USER_KEY)


@pytest.fixture
def other_user():
    return Account.from_key(OTHER_KEY)


@pytest.fixture
async def session_maker():
    """Fresh in-memory SQLite database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def mock_chain():
    """Chain client with a funded sponsor and successful transactions."""
    chain = MagicMock()
    chain.sponsor_address = Account.from_key(SPONSOR_KEY).address
    chain.get_balance = AsyncMock(return_value=10**18)
    chain.get_gas_price = AsyncMock(return_value=5 * 10**9)
    chain.call_function = AsyncMock(return_value=0)
    chain.estimate_function_gas = AsyncMock(return_value=100_000)
    chain.send_function = AsyncMock(return_value="0x" + "ab" * 32)
    chain.send_raw_call = AsyncMock(return_value="0x" + "cd" * 32)
    chain.wait_for_receipt = AsyncMock(return_value={
        "status": 1,
        "blockNumber": 123,
        "gasUsed": 90_000,
        "effectiveGasPrice": 5 * 10**9,
    })
    return chain


@pytest.fixture
def facilitator_config(network, settings):
    return FacilitatorConfig.from_settings(network, settings)


@pytest.fixture
def facilitator_service(facilitator_config, mock_chain):
    return FacilitatorService(facilitator_config, chain=mock_chain)


@pytest.fixture
def registry(network, facilitator_service):
    return FacilitatorRegistry({"bsc-testnet": network}, {"bsc-testnet": facilitator_service})


@pytest.fixture
def signed_payment(network, user):
    """Factory for a Witness signed by `user` against the test network."""
    import time

    from chainpilot.facilitator.types import Witness
    from chainpilot.facilitator.witness import build_payment_typed_data, generate_payment_id, sign_typed_message

    def _build(nonce=0, amount=10**18, token="0x337610d27c682E347C9cD60BD4b3b107C9d34dDd", deadline=None, key=USER_KEY):
        witness = Witness(
            owner=Account.from_key(key).address,
            token=token,
            amount=amount,
            to=network.facilitator_wallet,
            deadline=deadline or int(time.time()) + 600,
            payment_id=generate_payment_id(),
            nonce=nonce,
        )
        typed_data = build_payment_typed_data(witness, network.chain_id, network.verifying_contract)
        return witness, sign_typed_message(typed_data, key)

    return _build
