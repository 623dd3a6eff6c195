# backend/chainpilot/services/portfolio.py
"""
Wallet portfolio: native balance plus known token balances.

Token balances are fetched concurrently, bounded by PORTFOLIO_MAX_CONCURRENCY
so a large token list cannot flood the RPC node. A token that fails to load
is logged and left out; zero balances are left out too.
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from eth_utils import to_checksum_address

from chainpilot.errors import ChainPilotError
from chainpilot.facilitator.abi import ERC20_ABI
from chainpilot.facilitator.chain import ChainClient
from chainpilot.facilitator.networks import NetworkConfig, TokenInfo
from chainpilot.services.policy_models import NATIVE_TOKEN_ADDRESS

logger = logging.getLogger(__name__)


def format_units(raw: int, decimals: int, places: int = 4) -> str:
    value = Decimal(raw) / (Decimal(10) ** decimals)
    return f"{value:.{places}f}"


class PortfolioService:
    def __init__(self, chain: ChainClient, network: NetworkConfig, max_concurrency: int = 5):
        self.chain = chain
        self.network = network
        self.max_concurrency = max(1, max_concurrency)

    async def get_portfolio(self, address: str) -> Dict[str, Any]:
        owner = to_checksum_address(address)
        native = await self.chain.get_balance(owner)

        tokens = [t for t in self.network.tokens if t.address.lower() != NATIVE_TOKEN_ADDRESS]
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _load(token: TokenInfo) -> Optional[Dict[str, Any]]:
            async with semaphore:
                balance = await self.chain.call_function(
                    token.address, ERC20_ABI, "balanceOf", owner
                )
            balance = int(balance)
            if balance <= 0:
                return None
            return {
                "address": token.address,
                "symbol": token.symbol,
                "name": token.name,
                "decimals": token.decimals,
                "balance": str(balance),
                "balanceFormatted": format_units(balance, token.decimals),
            }

        results = await asyncio.gather(*(_load(t) for t in tokens), return_exceptions=True)

        balances: List[Dict[str, Any]] = []
        for token, result in zip(tokens, results):
            if isinstance(result, ChainPilotError):
                logger.warning(f"Failed to load {token.symbol} balance for {owner}: {result.message}")
            elif isinstance(result, Exception):
                logger.warning(f"Failed to load {token.symbol} balance for {owner}: {result}")
            elif result:
                balances.append(result)

        logger.info(f"Portfolio for {owner} on {self.network.network_id}: {len(balances)} tokens with balance")
        return {
            "address": owner,
            "network": self.network.network_type,
            "nativeBalance": str(native),
            "nativeBalanceFormatted": format_units(native, 18),
            "nativeSymbol": self.network.native_symbol,
            "tokens": balances,
            "updatedAt": datetime.utcnow().isoformat() + "Z",
        }
