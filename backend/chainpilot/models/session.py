"""
Session models - a connected wallet on a given network.
"""

from sqlalchemy import String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from chainpilot.models.base import Base, UUIDMixin, TimestampMixin


class Session(Base, UUIDMixin, TimestampMixin):
    """A wallet session. Policies, activity and spend are scoped to it."""
    __tablename__ = "sessions"
    __table_args__ = (
        UniqueConstraint("wallet_address", "current_network", name="uq_session_wallet_network"),
    )

    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    current_network: Mapped[str] = mapped_column(String(20), nullable=False)  # testnet, mainnet
