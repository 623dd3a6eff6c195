"""
Facilitator API Router.

Direct access to the Q402 facilitator: verify and settle signed witnesses,
health, supported networks and settlement stats. A witness carrying an
operationsHash is treated as a batch witness.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from chainpilot.facilitator.service import FacilitatorRegistry
from chainpilot.facilitator.types import (
    BatchOperation,
    BatchSettleRequest,
    BatchWitness,
    SettleRequest,
    TransactionData,
    Witness,
)
from chainpilot.facilitator.witness import generate_request_id
from chainpilot.middleware import get_idempotency_middleware
from chainpilot.routers.dependencies import get_registry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Facilitator"])


class VerifyBody(BaseModel):
    networkId: str
    witness: Dict[str, Any]
    signature: str
    signerAddress: str
    operations: Optional[List[Dict[str, Any]]] = None


class SettleBody(VerifyBody):
    requestId: str
    transaction: Optional[Dict[str, Any]] = None


def _is_batch(witness: Dict[str, Any]) -> bool:
    return "operationsHash" in witness


@router.post("/verify")
async def verify(body: VerifyBody, registry: FacilitatorRegistry = Depends(get_registry)):
    service = registry.get(body.networkId)

    if _is_batch(body.witness):
        result = await service.verify_batch(
            BatchWitness.from_dict(body.witness),
            [BatchOperation.from_dict(op) for op in body.operations or []],
            body.signature,
            body.signerAddress,
        )
    else:
        result = await service.verify(Witness.from_dict(body.witness), body.signature, body.signerAddress)

    if not result.valid:
        logger.warning(f"Verify failed for {body.signerAddress} on {body.networkId}: {result.reason}")
        return JSONResponse(status_code=400, content=result.to_dict())

    registry.counters.increment("verified")
    return result.to_dict()


async def _settle(body: SettleBody, registry: FacilitatorRegistry) -> Dict[str, Any]:
    service = registry.get(body.networkId)
    request_id = body.requestId or generate_request_id()

    if _is_batch(body.witness):
        result = await service.settle_batch(BatchSettleRequest(
            network_id=body.networkId,
            request_id=request_id,
            witness=BatchWitness.from_dict(body.witness),
            operations=[BatchOperation.from_dict(op) for op in body.operations or []],
            signature=body.signature,
            signer_address=body.signerAddress,
        ))
    else:
        result = await service.settle(SettleRequest(
            network_id=body.networkId,
            request_id=request_id,
            witness=Witness.from_dict(body.witness),
            signature=body.signature,
            signer_address=body.signerAddress,
            transaction=TransactionData.from_dict(body.transaction),
        ))

    registry.counters.increment("executed" if result.success else "failed")
    return result.to_dict()


@router.post("/settle")
async def settle(
    body: SettleBody,
    registry: FacilitatorRegistry = Depends(get_registry),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    """Settle a signed witness. Retries with the same Idempotency-Key replay the first result."""
    result = await get_idempotency_middleware().ensure_idempotent(
        idempotency_key, body.signerAddress, "/facilitator/settle", _settle, body, registry,
    )
    return JSONResponse(status_code=200 if result.get("success") else 400, content=result)


@router.get("/health")
async def health(registry: FacilitatorRegistry = Depends(get_registry)):
    report = await registry.get_health()
    return JSONResponse(status_code=503 if report["status"] == "unhealthy" else 200, content=report)


@router.get("/supported")
async def supported(registry: FacilitatorRegistry = Depends(get_registry)):
    return registry.get_supported()


@router.get("/stats")
async def stats(registry: FacilitatorRegistry = Depends(get_registry)):
    return registry.get_stats()
