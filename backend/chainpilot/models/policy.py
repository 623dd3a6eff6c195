"""
Policy models - per-session risk configuration and allow/deny lists.
"""

from decimal import Decimal
from typing import Optional

from sqlalchemy import String, ForeignKey, Numeric, Boolean, Integer, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from chainpilot.models.base import Base, UUIDMixin, TimestampMixin, CreatedAtMixin


class Policy(Base, UUIDMixin, TimestampMixin):
    """
    Risk policy for a session.

    NULL limits mean unlimited. Lists live in the two child tables, keyed by
    list_type ('allowed' | 'denied').
    """
    __tablename__ = "policies"

    session_id: Mapped[str] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, unique=True
    )

    security_level: Mapped[str] = mapped_column(String(20), default="NORMAL", nullable=False)
    max_per_tx_usd: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 8), nullable=True)
    max_daily_usd: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 8), nullable=True)
    require_verified_contracts: Mapped[bool] = mapped_column(Boolean, default=False)
    large_transaction_threshold_pct: Mapped[int] = mapped_column(Integer, default=30)
    max_slippage_bps: Mapped[int] = mapped_column(Integer, default=300)


class PolicyTokenList(Base, UUIDMixin, CreatedAtMixin):
    """Allowed/denied token addresses for a policy."""
    __tablename__ = "policy_token_lists"
    __table_args__ = (
        UniqueConstraint("policy_id", "token_address", "list_type", name="uq_policy_token_entry"),
    )

    policy_id: Mapped[str] = mapped_column(ForeignKey("policies.id", ondelete="CASCADE"), nullable=False, index=True)
    token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    list_type: Mapped[str] = mapped_column(String(10), nullable=False)


class PolicyContractList(Base, UUIDMixin, CreatedAtMixin):
    """Allowed/denied contract addresses for a policy."""
    __tablename__ = "policy_contract_lists"
    __table_args__ = (
        UniqueConstraint("policy_id", "contract_address", "list_type", name="uq_policy_contract_entry"),
    )

    policy_id: Mapped[str] = mapped_column(ForeignKey("policies.id", ondelete="CASCADE"), nullable=False, index=True)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    list_type: Mapped[str] = mapped_column(String(10), nullable=False)
