# backend/chainpilot/facilitator/batch_verifier.py
"""
Q402 batch signature verifier.

The signer authorizes a batch by signing operationsHash, so the hash is
recomputed from the submitted operations before anything else is trusted.
"""

import logging
import time
from typing import Dict, List, Set

from eth_keys.exceptions import ValidationError as KeyValidationError
from eth_utils import is_address, to_checksum_address

from chainpilot.facilitator.types import BatchOperation, BatchWitness, FacilitatorErrorCode, VerifyResult
from chainpilot.facilitator.witness import build_batch_typed_data, operations_hash, recover_typed_signer

logger = logging.getLogger(__name__)

# Keep at most this many used nonces per owner in memory
MAX_TRACKED_NONCES = 1000


class BatchSignatureVerifier:
    def __init__(self, chain_id: int, batch_executor: str):
        self.chain_id = chain_id
        self.batch_executor = to_checksum_address(batch_executor)
        self._used_nonces: Dict[str, Set[int]] = {}

    async def verify(
        self,
        witness: BatchWitness,
        operations: List[BatchOperation],
        signature: str,
        signer_address: str,
    ) -> VerifyResult:
        # 65-byte signature, hex encoded
        if not signature or len(signature.removeprefix("0x")) < 130:
            return VerifyResult.invalid("Invalid signature format", FacilitatorErrorCode.INVALID_SIGNATURE)

        if not signer_address or not is_address(signer_address) or not is_address(witness.owner):
            return VerifyResult.invalid("Invalid signer or owner address", FacilitatorErrorCode.INVALID_SIGNATURE)

        if not operations:
            return VerifyResult.invalid("Batch contains no operations", FacilitatorErrorCode.INVALID_SIGNATURE)

        computed = operations_hash(operations)
        if computed.lower() != witness.operations_hash.lower():
            logger.warning(f"Operations hash mismatch: computed={computed} provided={witness.operations_hash}")
            return VerifyResult.invalid(
                "Operations hash does not match witness",
                FacilitatorErrorCode.INVALID_SIGNATURE,
                operations_hash_valid=False,
            )

        now = int(time.time())
        if witness.deadline <= now:
            return VerifyResult.invalid(
                f"Batch witness expired. Deadline: {witness.deadline}, Current: {now}",
                FacilitatorErrorCode.EXPIRED_DEADLINE,
            )

        if self.is_nonce_used(witness.owner, witness.nonce):
            return VerifyResult.invalid(
                f"Nonce already used: {witness.nonce}", FacilitatorErrorCode.INVALID_NONCE
            )

        typed_data = build_batch_typed_data(witness, self.chain_id, self.batch_executor)
        try:
            recovered = recover_typed_signer(typed_data, signature)
        except (ValueError, TypeError, KeyValidationError) as e:
            logger.warning(f"Batch signature recovery failed: {e}")
            return VerifyResult.invalid(f"Verification failed: {e}", FacilitatorErrorCode.INVALID_SIGNATURE)

        if recovered != to_checksum_address(signer_address):
            logger.warning(f"Batch signer mismatch: recovered={recovered} expected={signer_address}")
            return VerifyResult.invalid(
                "Signature does not match signer address",
                FacilitatorErrorCode.INVALID_SIGNATURE,
                recovered=recovered,
            )
        if recovered != to_checksum_address(witness.owner):
            logger.warning(f"Batch owner mismatch: recovered={recovered} owner={witness.owner}")
            return VerifyResult.invalid(
                "Signature does not match witness owner",
                FacilitatorErrorCode.UNAUTHORIZED,
                recovered=recovered,
            )

        logger.info(
            f"Batch signature verified: signer={recovered} batch={witness.batch_id} "
            f"ops={len(operations)} nonce={witness.nonce}"
        )
        return VerifyResult(
            valid=True,
            payer=recovered,
            nonce=witness.nonce,
            deadline=witness.deadline,
            recovered=recovered,
            operations_hash_valid=True,
        )

    def mark_nonce_used(self, owner: str, nonce: int):
        used = self._used_nonces.setdefault(owner.lower(), set())
        used.add(nonce)
        if len(used) > MAX_TRACKED_NONCES:
            for old in sorted(used)[: len(used) - MAX_TRACKED_NONCES]:
                used.discard(old)

    def is_nonce_used(self, owner: str, nonce: int) -> bool:
        return nonce in self._used_nonces.get(owner.lower(), set())

    def next_nonce(self, owner: str) -> int:
        used = self._used_nonces.get(owner.lower())
        return max(used) + 1 if used else 0
