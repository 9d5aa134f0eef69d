"""Trade execution database models."""

from sqlalchemy import String, Float, Boolean, Index, Text, JSON, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from typing import Optional, Dict, Any, List
import enum

from brokerhub.models.base import Base, TimestampMixin, utc_now


class ExecutionStatus(str, enum.Enum):
    """Outcome of one order attempt against one broker."""
    EXECUTED = "executed"
    FAILED = "failed"


class ExecutionLog(Base):
    """
    Append-only audit trail of execution decisions.

    One row per (signal, broker) attempt in a processing pass. Rows are
    never updated; a retry is a new row.
    """
    __tablename__ = "execution_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    signal_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    broker_id: Mapped[str] = mapped_column(String(50), nullable=False)

    status: Mapped[ExecutionStatus] = mapped_column(
        SQLEnum(ExecutionStatus, native_enum=False),
        nullable=False
    )

    symbol: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    side: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    quantity: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    broker_order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Raw venue response or error payload
    response: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    timestamp: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    __table_args__ = (
        Index("ix_execution_log_signal_broker", "signal_id", "broker_id"),
    )

    def __repr__(self) -> str:
        return f"<ExecutionLog {self.signal_id} {self.broker_id} {self.status.value}>"


class UserTradeSettingsRecord(Base, TimestampMixin):
    """Per-user auto-trade configuration."""
    __tablename__ = "user_trade_settings"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    auto_trade_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    risk_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    max_position_size: Mapped[float] = mapped_column(Float, nullable=False, default=100.0)

    # Ordered list of broker ids
    enabled_brokers: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    def __repr__(self) -> str:
        return f"<UserTradeSettings {self.user_id} auto={self.auto_trade_enabled}>"
