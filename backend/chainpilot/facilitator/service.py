# backend/chainpilot/facilitator/service.py
"""
Facilitator service and registry.

One FacilitatorService per enabled network bundles the chain client, both
verifiers and both settlers. The FacilitatorRegistry is built once in the app
lifespan, stored on app.state and handed to routes through a dependency.
"""

import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Dict, List, Optional

from hexbytes import HexBytes

from chainpilot.config import Settings
from chainpilot.errors import ChainPilotError, FacilitatorUnconfigured, ValidationError
from chainpilot.facilitator.abi import Q402_BATCH_EXECUTOR_ABI, Q402_IMPLEMENTATION_ABI
from chainpilot.facilitator.batch_settler import BatchTransactionSettler
from chainpilot.facilitator.batch_verifier import BatchSignatureVerifier
from chainpilot.facilitator.chain import ChainClient
from chainpilot.facilitator.networks import NETWORK_IDS, NetworkConfig, get_network
from chainpilot.facilitator.settler import GasBudget, TransactionSettler
from chainpilot.facilitator.types import (
    BatchOperation,
    BatchSettleRequest,
    BatchWitness,
    FacilitatorConfig,
    SettleRequest,
    SettleResult,
    VerifyResult,
    Witness,
)
from chainpilot.facilitator.verifier import SignatureVerifier
from chainpilot.facilitator.witness import batch_domain, domain_separator, payment_domain
from chainpilot.services.nonce_allocator import NonceLocks

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
WEI_PER_BNB = 10**18
FAIL_BALANCE_WEI = 10**16  # 0.01 BNB
WARN_BALANCE_WEI = 10**17  # 0.1 BNB


@dataclass
class HealthCheck:
    name: str
    status: str  # pass, warn, fail
    message: Optional[str] = None


@dataclass
class RequestCounters:
    prepared: int = 0
    verified: int = 0
    executed: int = 0
    rejected: int = 0
    expired: int = 0
    failed: int = 0

    def increment(self, name: str, amount: int = 1):
        setattr(self, name, getattr(self, name) + amount)


class FacilitatorService:
    """Verification and settlement for a single network."""

    def __init__(self, config: FacilitatorConfig, chain: Optional[ChainClient] = None):
        network = config.network
        self.config = config
        self.network = network
        self.chain = chain or ChainClient(network, config.sponsor_private_key, timeout=config.rpc_timeout_seconds)
        self.verifier = SignatureVerifier(network.chain_id, network.verifying_contract)
        self.batch_verifier = BatchSignatureVerifier(network.chain_id, network.batch_executor)

        # Both settlers spend from the same sponsor wallet, so they share one budget
        budget = GasBudget(config)
        self.settler = TransactionSettler(config, self.chain, self.verifier, budget)
        self.batch_settler = BatchTransactionSettler(config, self.chain, self.batch_verifier, budget)

    async def verify(self, witness: Witness, signature: str, signer_address: str) -> VerifyResult:
        return await self.verifier.verify(witness, signature, signer_address)

    async def verify_batch(
        self, witness: BatchWitness, operations: List[BatchOperation], signature: str, signer_address: str
    ) -> VerifyResult:
        return await self.batch_verifier.verify(witness, operations, signature, signer_address)

    async def settle(self, request: SettleRequest, skip_verification: bool = False) -> SettleResult:
        return await self.settler.settle(request, skip_verification)

    async def settle_batch(self, request: BatchSettleRequest, skip_verification: bool = False) -> SettleResult:
        return await self.batch_settler.settle(request, skip_verification)

    async def get_payment_nonce(self, owner: str) -> int:
        """Lowest nonce a new payment witness may use: on-chain nonce or past the last one settled here."""
        return max(await self.settler.get_nonce(owner), self.verifier.current_nonce(owner))

    async def get_batch_nonce(self, owner: str) -> int:
        return max(await self.batch_settler.get_nonce(owner), self.batch_verifier.next_nonce(owner))

    async def check_balance(self) -> HealthCheck:
        name = f"{self.network.network_id}_sponsor_balance"
        try:
            balance = await self.settler.get_sponsor_balance()
        except ChainPilotError as e:
            return HealthCheck(f"{self.network.network_id}_rpc", "fail", f"RPC error: {e.message}")

        bnb = balance / WEI_PER_BNB
        if balance < FAIL_BALANCE_WEI:
            return HealthCheck(name, "fail", f"Low balance: {bnb:.4f} BNB")
        if balance < WARN_BALANCE_WEI:
            return HealthCheck(name, "warn", f"Balance getting low: {bnb:.4f} BNB")
        return HealthCheck(name, "pass", f"Balance: {bnb:.4f} BNB")

    async def check_domains(self) -> List[HealthCheck]:
        """Compare the EIP-712 domains witnesses are signed under with each contract's domainSeparator()."""
        network = self.network
        domains = [
            ("payment_domain", network.verifying_contract, Q402_IMPLEMENTATION_ABI,
             payment_domain(network.chain_id, network.verifying_contract)),
            ("batch_domain", network.batch_executor, Q402_BATCH_EXECUTOR_ABI,
             batch_domain(network.chain_id, network.batch_executor)),
        ]
        checks = []
        for label, contract, abi, domain in domains:
            name = f"{network.network_id}_{label}"
            expected = domain_separator(domain)
            try:
                actual = "0x" + bytes(HexBytes(await self.chain.call_function(contract, abi, "domainSeparator"))).hex()
            except ChainPilotError as e:
                checks.append(HealthCheck(name, "warn", f"Could not read domainSeparator: {e.message}"))
                continue
            if actual != expected:
                checks.append(HealthCheck(name, "fail", f"Domain mismatch at {contract}: contract {actual}, local {expected}"))
            else:
                checks.append(HealthCheck(name, "pass", "Domain matches contract"))
        return checks

    def get_stats(self) -> dict:
        stats = self.settler.stats.to_dict()
        stats["batch"] = dict(self.batch_settler.stats.to_dict(), totalOperations=self.batch_settler.total_operations)
        return stats

    def get_supported(self) -> dict:
        return self.network.to_dict()

    def cleanup(self) -> int:
        return self.verifier.cleanup_old_records() + self.settler.cleanup_old_budgets()


class FacilitatorRegistry:
    """
    All facilitator services for the process, plus request counters.

    Usage:
        registry = FacilitatorRegistry.from_settings(get_settings())
        service = registry.get("bsc-testnet")
    """

    def __init__(
        self,
        networks: Dict[str, NetworkConfig],
        services: Dict[str, FacilitatorService],
        rpc_timeout_seconds: float = 15.0,
    ):
        self.networks = networks
        self.services = services
        self.counters = RequestCounters()
        self.nonce_locks = NonceLocks()
        self.domain_checks: List[HealthCheck] = []
        self.started_at = time.time()
        self.rpc_timeout_seconds = rpc_timeout_seconds
        self._readers: Dict[str, ChainClient] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "FacilitatorRegistry":
        networks: Dict[str, NetworkConfig] = {}
        services: Dict[str, FacilitatorService] = {}
        for network_id in settings.enabled_networks:
            network = get_network(network_id, settings)
            networks[network_id] = network
            if not settings.FACILITATOR_PRIVATE_KEY:
                logger.warning(f"FACILITATOR_PRIVATE_KEY not set; {network_id} settlement disabled")
                continue
            services[network_id] = FacilitatorService(FacilitatorConfig.from_settings(network, settings))
            logger.info(f"Facilitator initialized for {network_id} (chain {network.chain_id})")
        return cls(networks, services, settings.RPC_TIMEOUT_SECONDS)

    def network(self, network_id: str) -> NetworkConfig:
        if network_id not in NETWORK_IDS:
            raise ValidationError(f"Unsupported network: {network_id}")
        if network_id not in self.networks:
            raise FacilitatorUnconfigured(f"Network {network_id} is not enabled")
        return self.networks[network_id]

    def chain_for(self, network_id: str) -> ChainClient:
        """Read-only chain client for a network, shared with its facilitator when one exists."""
        network = self.network(network_id)
        if network_id in self.services:
            return self.services[network_id].chain
        if network_id not in self._readers:
            self._readers[network_id] = ChainClient(network, timeout=self.rpc_timeout_seconds)
        return self._readers[network_id]

    def get(self, network_id: str) -> FacilitatorService:
        self.network(network_id)
        service = self.services.get(network_id)
        if service is None:
            raise FacilitatorUnconfigured(f"Facilitator not initialized for {network_id}")
        return service

    async def verify_domains(self) -> List[HealthCheck]:
        """Run once at startup; the results stay in the health report."""
        checks: List[HealthCheck] = []
        for service in self.services.values():
            checks.extend(await service.check_domains())
        for check in checks:
            if check.status == "fail":
                logger.error(f"{check.name}: {check.message}")
            elif check.status == "warn":
                logger.warning(f"{check.name}: {check.message}")
        self.domain_checks = checks
        return checks

    async def get_health(self) -> dict:
        checks: List[HealthCheck] = []
        for service in self.services.values():
            checks.append(await service.check_balance())
        checks.extend(self.domain_checks)

        if self.services:
            checks.append(HealthCheck("initialization", "pass", "Facilitator initialized"))
        else:
            checks.append(HealthCheck("initialization", "fail", "Facilitator not initialized"))

        statuses = {check.status for check in checks}
        if "fail" in statuses:
            status = "unhealthy"
        elif "warn" in statuses:
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "version": VERSION,
            "uptime": round(time.time() - self.started_at, 3),
            "checks": [asdict(check) for check in checks],
        }

    def get_stats(self) -> dict:
        return {
            "networks": {network_id: service.get_stats() for network_id, service in self.services.items()},
            "requests": asdict(self.counters),
        }

    def get_supported(self) -> dict:
        return {"networks": [self.networks[network_id].to_dict() for network_id in self.services]}

    def cleanup(self) -> int:
        return sum(service.cleanup() for service in self.services.values())
