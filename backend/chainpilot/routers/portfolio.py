"""
Portfolio API Router.
"""

from fastapi import APIRouter, Depends, Query
from eth_utils import is_address

from chainpilot.config import get_settings
from chainpilot.errors import ValidationError
from chainpilot.facilitator.service import FacilitatorRegistry
from chainpilot.routers.dependencies import get_registry
from chainpilot.services.portfolio import PortfolioService
from chainpilot.services.session_store import VALID_NETWORKS, network_id_for

settings = get_settings()

router = APIRouter(tags=["Portfolio"])


@router.get("")
async def get_portfolio(
    address: str = Query(...),
    network: str = Query(...),
    registry: FacilitatorRegistry = Depends(get_registry),
):
    if not is_address(address):
        raise ValidationError("Invalid address format")
    if network not in VALID_NETWORKS:
        raise ValidationError("Valid network (testnet or mainnet) is required")

    network_id = network_id_for(network)
    service = PortfolioService(
        registry.chain_for(network_id),
        registry.network(network_id),
        settings.PORTFOLIO_MAX_CONCURRENCY,
    )
    return {"portfolio": await service.get_portfolio(address)}
