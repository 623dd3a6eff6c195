# backend/chainpilot/facilitator/verifier.py
"""
Q402 payment signature verifier.

Checks, in order:
1. Address formats (signer, owner, token, recipient)
2. Deadline is still in the future
3. Nonce has not been settled before
4. EIP-712 recovery matches both the claimed signer and the witness owner

Verification never consumes a nonce. Only a successful settlement does, via
mark_nonce_used().
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Set

from eth_keys.exceptions import ValidationError as KeyValidationError
from eth_utils import is_address, to_checksum_address

from chainpilot.facilitator.types import FacilitatorErrorCode, VerifyResult, Witness
from chainpilot.facilitator.witness import build_payment_typed_data, recover_typed_signer

logger = logging.getLogger(__name__)

NONCE_RECORD_MAX_AGE_SECONDS = 24 * 60 * 60


@dataclass
class NonceRecord:
    current_nonce: int = 0
    used_nonces: Set[int] = field(default_factory=set)
    last_updated: float = field(default_factory=time.time)


class SignatureVerifier:
    """Verifies single-payment witnesses for one chain + verifying contract."""

    def __init__(self, chain_id: int, verifying_contract: str):
        self.chain_id = chain_id
        self.verifying_contract = to_checksum_address(verifying_contract)
        self._nonces: Dict[str, NonceRecord] = {}

    async def verify(self, witness: Witness, signature: str, signer_address: str) -> VerifyResult:
        for value, message in (
            (signer_address, "Invalid signer address format"),
            (witness.owner, "Invalid owner address in witness"),
            (witness.token, "Invalid token address in witness"),
            (witness.to, "Invalid recipient address in witness"),
        ):
            if not value or not is_address(value):
                return VerifyResult.invalid(message, FacilitatorErrorCode.INVALID_SIGNATURE)

        now = int(time.time())
        if witness.deadline <= now:
            return VerifyResult.invalid(
                f"Witness expired. Deadline: {witness.deadline}, Current: {now}",
                FacilitatorErrorCode.EXPIRED_DEADLINE,
            )

        nonce_error = self.validate_nonce(witness.owner, witness.nonce)
        if nonce_error:
            return VerifyResult.invalid(nonce_error, FacilitatorErrorCode.INVALID_NONCE)

        recovered = self.recover_signer(witness, signature)
        if recovered is None:
            return VerifyResult.invalid(
                "Failed to recover signer from signature", FacilitatorErrorCode.INVALID_SIGNATURE
            )

        signer = to_checksum_address(signer_address)
        owner = to_checksum_address(witness.owner)
        if recovered != signer:
            return VerifyResult.invalid(
                f"Signature mismatch. Recovered: {recovered}, Claimed: {signer}",
                FacilitatorErrorCode.INVALID_SIGNATURE,
                recovered=recovered,
            )
        if recovered != owner:
            return VerifyResult.invalid(
                f"Signer is not the owner. Signer: {recovered}, Owner: {owner}",
                FacilitatorErrorCode.UNAUTHORIZED,
                recovered=recovered,
            )

        logger.info(f"Signature verified for {owner} nonce={witness.nonce} amount={witness.amount}")
        return VerifyResult(
            valid=True,
            payer=owner,
            amount=witness.amount,
            token=witness.token,
            nonce=witness.nonce,
            deadline=witness.deadline,
            recovered=recovered,
        )

    def recover_signer(self, witness: Witness, signature: str) -> Optional[str]:
        typed_data = build_payment_typed_data(witness, self.chain_id, self.verifying_contract)
        try:
            return recover_typed_signer(typed_data, signature)
        except (ValueError, TypeError, KeyValidationError) as e:
            logger.warning(f"Failed to recover signer: {e}")
            return None

    def validate_nonce(self, owner: str, nonce: int) -> Optional[str]:
        """Return an error message if the nonce cannot be used, else None."""
        record = self._nonces.get(owner.lower())
        if record is None:
            return None
        if nonce in record.used_nonces:
            return f"Nonce already used: {nonce} for address {owner}"
        if nonce < record.current_nonce:
            return f"Nonce already used: {nonce} is less than current nonce {record.current_nonce}"
        return None

    def mark_nonce_used(self, owner: str, nonce: int):
        record = self._nonces.setdefault(owner.lower(), NonceRecord())
        record.used_nonces.add(nonce)
        record.current_nonce = max(record.current_nonce, nonce + 1)
        record.last_updated = time.time()
        logger.info(f"Nonce {nonce} marked used for {owner.lower()} (next {record.current_nonce})")

    def current_nonce(self, owner: str) -> int:
        record = self._nonces.get(owner.lower())
        return record.current_nonce if record else 0

    def cleanup_old_records(self, max_age_seconds: int = NONCE_RECORD_MAX_AGE_SECONDS) -> int:
        cutoff = time.time() - max_age_seconds
        stale = [owner for owner, record in self._nonces.items() if record.last_updated < cutoff]
        for owner in stale:
            del self._nonces[owner]
        if stale:
            logger.info(f"Cleaned up {len(stale)} old nonce records")
        return len(stale)
