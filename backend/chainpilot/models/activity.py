"""
Activity models - action lifecycle log and daily spend counters.
"""

from datetime import datetime, date as date_type
from decimal import Decimal
from typing import Optional

from sqlalchemy import String, DateTime, Date, ForeignKey, Integer, JSON, Numeric, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from chainpilot.models.base import Base, UUIDMixin, TimestampMixin, CreatedAtMixin


class ActionLog(Base, UUIDMixin, CreatedAtMixin):
    """Append-only record of an on-chain action's lifecycle."""
    __tablename__ = "action_logs"

    session_id: Mapped[str] = mapped_column(ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    intent_type: Mapped[str] = mapped_column(String(30), nullable=False)
    network: Mapped[str] = mapped_column(String(20), nullable=False)
    user_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    prepared_tx: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    policy_decision: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    estimated_value_usd: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 8), nullable=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    q402_request_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # pending, approved, rejected, executed, failed, cancelled
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class DailySpend(Base, UUIDMixin, TimestampMixin):
    """Running USD spend per session per UTC day. Only ever incremented."""
    __tablename__ = "daily_spend"
    __table_args__ = (
        UniqueConstraint("session_id", "date", name="uq_daily_spend_session_date"),
    )

    session_id: Mapped[str] = mapped_column(ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[date_type] = mapped_column(Date, nullable=False)
    total_spent_usd: Mapped[Decimal] = mapped_column(Numeric(20, 8), default=Decimal("0"))
    transaction_count: Mapped[int] = mapped_column(Integer, default=0)
