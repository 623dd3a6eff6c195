"""
SQLAlchemy Models for ChainPilot.

This package is organized by domain:
- base.py: Base class and mixins
- session.py: Wallet sessions
- policy.py: Policies and allow/deny lists
- payment.py: Prepared Q402 requests and nonce allocations
- activity.py: Action logs and daily spend
"""

from chainpilot.models.base import Base, UUIDMixin, TimestampMixin, CreatedAtMixin
from chainpilot.models.session import Session
from chainpilot.models.policy import Policy, PolicyTokenList, PolicyContractList
from chainpilot.models.payment import PaymentRequest, NonceAllocation
from chainpilot.models.activity import ActionLog, DailySpend

__all__ = [
    "Base",
    "UUIDMixin",
    "TimestampMixin",
    "CreatedAtMixin",
    "Session",
    "Policy",
    "PolicyTokenList",
    "PolicyContractList",
    "PaymentRequest",
    "NonceAllocation",
    "ActionLog",
    "DailySpend",
]
