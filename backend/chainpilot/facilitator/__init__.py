# backend/chainpilot/facilitator/__init__.py
"""Q402 facilitator: witness verification and gas-sponsored settlement."""

from .service import FacilitatorRegistry, FacilitatorService
from .types import (
    BatchOperation,
    BatchSettleRequest,
    BatchWitness,
    FacilitatorErrorCode,
    SettleRequest,
    SettleResult,
    VerifyResult,
    Witness,
)

__all__ = [
    "FacilitatorRegistry",
    "FacilitatorService",
    "BatchOperation",
    "BatchSettleRequest",
    "BatchWitness",
    "FacilitatorErrorCode",
    "SettleRequest",
    "SettleResult",
    "VerifyResult",
    "Witness",
]
