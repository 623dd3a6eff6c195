"""
Sign-to-pay models - prepared Q402 requests and issued nonces.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, DateTime, ForeignKey, Integer, JSON, Text, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from chainpilot.models.base import Base, UUIDMixin, TimestampMixin, CreatedAtMixin


class PaymentRequest(Base, TimestampMixin):
    """
    A pending/settled Q402 request.

    The typed data stored here is the exact payload the client was asked to
    sign. Execution always reuses it instead of rebuilding the witness.
    """
    __tablename__ = "payment_requests"
    __table_args__ = (
        Index("idx_payment_requests_status_expiry", "status", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    session_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("sessions.id", ondelete="SET NULL"), nullable=True, index=True
    )
    kind: Mapped[str] = mapped_column(String(10), default="payment")  # payment, batch
    network_id: Mapped[str] = mapped_column(String(20), nullable=False)
    owner: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    verifying_contract: Mapped[str] = mapped_column(String(42), nullable=False)
    nonce: Mapped[int] = mapped_column(Integer, nullable=False)

    typed_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    operations: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    payment_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    request_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)
    policy_decision: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class NonceAllocation(Base, UUIDMixin, CreatedAtMixin):
    """One row per issued witness nonce. The unique key is the serialization point."""
    __tablename__ = "nonce_allocations"
    __table_args__ = (
        UniqueConstraint("owner", "verifying_contract", "nonce", name="uq_nonce_owner_contract"),
    )

    owner: Mapped[str] = mapped_column(String(42), nullable=False)
    verifying_contract: Mapped[str] = mapped_column(String(42), nullable=False)
    nonce: Mapped[int] = mapped_column(Integer, nullable=False)
    request_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
