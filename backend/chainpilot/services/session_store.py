# backend/chainpilot/services/session_store.py
"""
Wallet session lookup and creation.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chainpilot.errors import NotFoundError, ValidationError
from chainpilot.models import Session
from chainpilot.services.policy_models import normalize_address
from chainpilot.services.policy_validators import validate_list_address

logger = logging.getLogger(__name__)

VALID_NETWORKS = ("testnet", "mainnet")


def network_type(network_id: str) -> str:
    """Map a chain id like 'bsc-mainnet' to the session network type."""
    return "mainnet" if network_id in ("mainnet", "bsc-mainnet") else "testnet"


def network_id_for(network: str) -> str:
    """Inverse of network_type."""
    return "bsc-mainnet" if network_type(network) == "mainnet" else "bsc-testnet"


class SessionStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, session_id: str) -> Optional[Session]:
        return await self.session.get(Session, session_id)

    async def require(self, session_id: str) -> Session:
        record = await self.get(session_id)
        if record is None:
            raise NotFoundError("Session")
        return record

    async def get_or_create(self, wallet_address: str, network: str) -> Session:
        error = validate_list_address(wallet_address)
        if error:
            raise ValidationError(error.replace("Address", "Wallet address", 1))
        if network not in VALID_NETWORKS:
            raise ValidationError("network must be 'testnet' or 'mainnet'")

        wallet = normalize_address(wallet_address)
        result = await self.session.execute(
            select(Session).where(
                Session.wallet_address == wallet,
                Session.current_network == network,
            )
        )
        record = result.scalar_one_or_none()
        if record:
            return record

        record = Session(wallet_address=wallet, current_network=network)
        self.session.add(record)
        await self.session.flush()
        logger.info(f"Created session {record.id} for {wallet} on {network}")
        return record
