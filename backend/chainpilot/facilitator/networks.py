# backend/chainpilot/facilitator/networks.py
"""
BNB Chain network table.

Static chain facts (chain ids, explorers, well-known tokens) live here.
Anything deployment-specific (RPC URLs, Q402 contract addresses) comes from
Settings so it can be overridden per environment.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from chainpilot.config import Settings
from chainpilot.errors import ValidationError
from chainpilot.services.policy_models import NATIVE_TOKEN_ADDRESS


@dataclass(frozen=True)
class TokenInfo:
    address: str
    symbol: str
    decimals: int
    name: str

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "symbol": self.symbol,
            "decimals": self.decimals,
            "name": self.name,
        }


@dataclass(frozen=True)
class NetworkConfig:
    network_id: str  # bsc-testnet, bsc-mainnet
    network_type: str  # testnet, mainnet
    chain_id: int
    name: str
    rpc_url: str
    explorer_url: str
    native_symbol: str
    implementation_contract: str
    verifying_contract: str
    facilitator_wallet: str
    batch_executor: str
    tokens: List[TokenInfo] = field(default_factory=list)

    def explorer_tx_url(self, tx_hash: str) -> str:
        return f"{self.explorer_url}/tx/{tx_hash}"

    def token_by_address(self, address: Optional[str]) -> Optional[TokenInfo]:
        if not address:
            return None
        wanted = address.lower()
        for token in self.tokens:
            if token.address.lower() == wanted:
                return token
        return None

    def to_dict(self) -> dict:
        return {
            "network": self.network_id,
            "chainId": self.chain_id,
            "rpcUrl": self.rpc_url,
            "explorerUrl": self.explorer_url,
            "implementationContract": self.implementation_contract,
            "verifyingContract": self.verifying_contract,
            "batchExecutor": self.batch_executor,
            "tokens": [t.to_dict() for t in self.tokens],
        }


_TESTNET_TOKENS = [
    TokenInfo(NATIVE_TOKEN_ADDRESS, "tBNB", 18, "Test BNB"),
    TokenInfo("0x337610d27c682E347C9cD60BD4b3b107C9d34dDd", "USDT", 18, "Tether USD"),
    TokenInfo("0x64544969ed7EBf5f083679233325356EbE738930", "USDC", 18, "USD Coin"),
    TokenInfo("0xeD24FC36d5Ee211Ea25A80239Fb8C4Cfd80f12Ee", "BUSD", 18, "Binance USD"),
]

_MAINNET_TOKENS = [
    TokenInfo(NATIVE_TOKEN_ADDRESS, "BNB", 18, "BNB"),
    TokenInfo("0x55d398326f99059fF775485246999027B3197955", "USDT", 18, "Tether USD"),
    TokenInfo("0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d", "USDC", 18, "USD Coin"),
    TokenInfo("0xe9e7CEA3DedcA5984780Bafc599bD69ADd087D56", "BUSD", 18, "Binance USD"),
]

NETWORK_IDS = ("bsc-testnet", "bsc-mainnet")


def get_network(network_id: str, settings: Settings) -> NetworkConfig:
    """Build the config for 'bsc-testnet' or 'bsc-mainnet'."""
    if network_id == "bsc-testnet":
        return NetworkConfig(
            network_id="bsc-testnet",
            network_type="testnet",
            chain_id=97,
            name="BNB Smart Chain Testnet",
            rpc_url=settings.BSC_TESTNET_RPC_URL,
            explorer_url="https://testnet.bscscan.com",
            native_symbol="tBNB",
            implementation_contract=settings.Q402_IMPLEMENTATION_TESTNET,
            verifying_contract=settings.Q402_VERIFIER_TESTNET,
            facilitator_wallet=settings.Q402_FACILITATOR_WALLET_TESTNET,
            batch_executor=settings.Q402_BATCH_EXECUTOR_TESTNET,
            tokens=list(_TESTNET_TOKENS),
        )
    if network_id == "bsc-mainnet":
        return NetworkConfig(
            network_id="bsc-mainnet",
            network_type="mainnet",
            chain_id=56,
            name="BNB Smart Chain",
            rpc_url=settings.BSC_MAINNET_RPC_URL,
            explorer_url="https://bscscan.com",
            native_symbol="BNB",
            implementation_contract=settings.Q402_IMPLEMENTATION_MAINNET,
            verifying_contract=settings.Q402_VERIFIER_MAINNET,
            facilitator_wallet=settings.Q402_FACILITATOR_WALLET_MAINNET,
            batch_executor=settings.Q402_BATCH_EXECUTOR_MAINNET,
            tokens=list(_MAINNET_TOKENS),
        )
    raise ValidationError(f"Unsupported network: {network_id}")

