# backend/chainpilot/services/nonce_allocator.py
"""
Witness nonce allocation.

Nonces are unique per (owner, verifying_contract). Inside one process,
allocation for a pair is serialized with an asyncio.Lock from NonceLocks, which
the facilitator registry owns. Across processes the unique constraint on
nonce_allocations is the arbiter: a losing insert is retried with the next
nonce.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chainpilot.errors import UpstreamError
from chainpilot.models import NonceAllocation

logger = logging.getLogger(__name__)

MAX_ALLOCATION_ATTEMPTS = 3


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class NonceLocks:
    """
    Per-(owner, contract) locks for one process.

    An entry exists only while a task holds or waits on it, so the map never
    grows past the number of allocations in flight.
    """

    def __init__(self):
        self._entries: Dict[Tuple[str, str], _LockEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    @asynccontextmanager
    async def hold(self, key: Tuple[str, str]):
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _LockEntry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._entries[key]


class NonceAllocator:
    def __init__(self, session: AsyncSession, locks: NonceLocks):
        self.session = session
        self.locks = locks

    async def allocate(self, owner: str, verifying_contract: str, request_id: str, floor: int = 0) -> int:
        """
        Reserve the next nonce for (owner, verifying_contract).

        `floor` is the lowest acceptable value, typically the on-chain nonce.
        """
        key = (owner.lower(), verifying_contract.lower())
        async with self.locks.hold(key):
            for attempt in range(1, MAX_ALLOCATION_ATTEMPTS + 1):
                highest = await self._highest(*key)
                nonce = max(floor, highest + 1 if highest is not None else 0)
                try:
                    async with self.session.begin_nested():
                        self.session.add(NonceAllocation(
                            owner=key[0],
                            verifying_contract=key[1],
                            nonce=nonce,
                            request_id=request_id,
                        ))
                except IntegrityError:
                    # Another process took this nonce first
                    logger.warning(f"Nonce {nonce} for {key[0]} already taken (attempt {attempt})")
                    floor = nonce + 1
                    continue
                logger.debug(f"Allocated nonce {nonce} for {key[0]} on {key[1]}")
                return nonce

        raise UpstreamError("database", f"Could not allocate a nonce for {owner} after {MAX_ALLOCATION_ATTEMPTS} attempts")

    async def _highest(self, owner: str, verifying_contract: str):
        result = await self.session.execute(
            select(func.max(NonceAllocation.nonce)).where(
                NonceAllocation.owner == owner,
                NonceAllocation.verifying_contract == verifying_contract,
            )
        )
        return result.scalar_one_or_none()
