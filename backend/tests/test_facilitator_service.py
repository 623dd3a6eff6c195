# backend/tests/test_facilitator_service.py
"""
Tests for the facilitator registry: network lookup, health and nonces.
"""

import pytest
from unittest.mock import AsyncMock

from hexbytes import HexBytes

from chainpilot.config import Settings
from chainpilot.errors import FacilitatorUnconfigured, UpstreamError, ValidationError
from chainpilot.facilitator.service import FacilitatorRegistry
from chainpilot.facilitator.witness import batch_domain, domain_separator, payment_domain


@pytest.mark.asyncio
async def test_health_is_healthy_with_funded_sponsor(registry):
    report = await registry.get_health()

    assert report["status"] == "healthy"
    assert {check["name"] for check in report["checks"]} == {"bsc-testnet_sponsor_balance", "initialization"}


@pytest.mark.asyncio
async def test_health_degrades_on_low_balance(registry, mock_chain):
    mock_chain.get_balance = AsyncMock(return_value=5 * 10**16)

    report = await registry.get_health()

    assert report["status"] == "degraded"


@pytest.mark.asyncio
async def test_health_unhealthy_when_rpc_fails(registry, mock_chain):
    mock_chain.get_balance = AsyncMock(side_effect=UpstreamError("rpc", "timeout"))

    report = await registry.get_health()

    assert report["status"] == "unhealthy"
    assert report["checks"][0]["name"] == "bsc-testnet_rpc"


@pytest.mark.asyncio
async def test_registry_without_sponsor_key_is_unhealthy():
    """No FACILITATOR_PRIVATE_KEY means networks are known but nothing can settle."""
    registry = FacilitatorRegistry.from_settings(Settings(FACILITATOR_PRIVATE_KEY=None, ENABLED_NETWORKS="bsc-testnet"))

    report = await registry.get_health()

    assert report["status"] == "unhealthy"
    assert registry.network("bsc-testnet").chain_id == 97
    with pytest.raises(FacilitatorUnconfigured):
        registry.get("bsc-testnet")


def test_unknown_and_disabled_networks(registry):
    with pytest.raises(ValidationError):
        registry.get("ethereum")
    with pytest.raises(FacilitatorUnconfigured):
        registry.get("bsc-mainnet")


def test_supported_lists_configured_networks(registry):
    supported = registry.get_supported()

    assert [n["chainId"] for n in supported["networks"]] == [97]
    assert any(t["symbol"] == "USDT" for t in supported["networks"][0]["tokens"])


@pytest.mark.asyncio
async def test_payment_nonce_floor_uses_local_settlements(facilitator_service, mock_chain):
    """The floor is the higher of the on-chain nonce and the next one settled here."""
    owner = "0x" + "aa" * 20
    mock_chain.call_function = AsyncMock(return_value=2)

    assert await facilitator_service.get_payment_nonce(owner) == 2

    facilitator_service.verifier.mark_nonce_used(owner, 6)

    assert await facilitator_service.get_payment_nonce(owner) == 7


@pytest.mark.asyncio
async def test_nonce_read_failure_falls_back_to_zero(facilitator_service, mock_chain):
    mock_chain.call_function = AsyncMock(side_effect=UpstreamError("rpc", "boom"))

    assert await facilitator_service.get_payment_nonce("0x" + "aa" * 20) == 0


def test_stats_and_counters(registry):
    registry.counters.increment("prepared")
    registry.counters.increment("expired", 3)

    stats = registry.get_stats()

    assert stats["requests"]["prepared"] == 1
    assert stats["requests"]["expired"] == 3
    assert stats["networks"]["bsc-testnet"]["successRate"] == 0.0


def _domain_separators(network):
    return {
        network.verifying_contract.lower(): domain_separator(payment_domain(network.chain_id, network.verifying_contract)),
        network.batch_executor.lower(): domain_separator(batch_domain(network.chain_id, network.batch_executor)),
    }


@pytest.mark.asyncio
async def test_domains_matching_contracts_pass(registry, mock_chain, network):
    separators = _domain_separators(network)
    mock_chain.call_function = AsyncMock(
        side_effect=lambda address, abi, name, *args: HexBytes(separators[address.lower()])
    )

    checks = await registry.verify_domains()

    assert [(c.name, c.status) for c in checks] == [
        ("bsc-testnet_payment_domain", "pass"),
        ("bsc-testnet_batch_domain", "pass"),
    ]
    assert {c.args[2] for c in mock_chain.call_function.await_args_list} == {"domainSeparator"}
    assert (await registry.get_health())["status"] == "healthy"


@pytest.mark.asyncio
async def test_domain_mismatch_makes_health_unhealthy(registry, mock_chain, network):
    """A contract deployed under another name or chain would reject every signature."""
    separators = _domain_separators(network)
    separators[network.batch_executor.lower()] = "0x" + "00" * 32
    mock_chain.call_function = AsyncMock(
        side_effect=lambda address, abi, name, *args: HexBytes(separators[address.lower()])
    )

    await registry.verify_domains()
    report = await registry.get_health()

    assert report["status"] == "unhealthy"
    statuses = {check["name"]: check["status"] for check in report["checks"]}
    assert statuses["bsc-testnet_payment_domain"] == "pass"
    assert statuses["bsc-testnet_batch_domain"] == "fail"


@pytest.mark.asyncio
async def test_unreadable_domain_only_degrades(registry, mock_chain):
    mock_chain.call_function = AsyncMock(side_effect=UpstreamError("rpc", "timeout"))

    checks = await registry.verify_domains()

    assert {c.status for c in checks} == {"warn"}
    assert (await registry.get_health())["status"] == "degraded"
