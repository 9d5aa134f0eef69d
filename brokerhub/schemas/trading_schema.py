from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from brokerhub.models.base import utc_now
from brokerhub.models.execution import ExecutionStatus


class SignalSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class TradingSignal(BaseModel):
    """An issued trading signal. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    signal_id: str
    symbol: str
    side: SignalSide
    entry_price: Decimal
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None
    provider_id: Optional[str] = None

    @field_validator("side", mode="before")
    @classmethod
    def normalize_side(cls, v):
        if isinstance(v, str):
            return v.lower()
        return v


class ExecutionRequest(BaseModel):
    """Unit of work consumed by the trade execution processor."""
    model_config = ConfigDict(frozen=True)

    signal_id: str
    user_id: str
    signal: TradingSignal


class UserTradeSettings(BaseModel):
    user_id: str
    auto_trade_enabled: bool = False
    risk_percentage: Decimal = Field(default=Decimal("1"), ge=0, le=100)
    max_position_size: Decimal = Field(default=Decimal("100"), ge=0)
    enabled_brokers: List[str] = Field(default_factory=list)


class ExecutionLogEntry(BaseModel):
    """One audited execution decision for a (signal, broker) pair."""
    user_id: str
    signal_id: str
    broker_id: str
    status: ExecutionStatus
    symbol: Optional[str] = None
    side: Optional[str] = None
    quantity: Optional[Decimal] = None
    broker_order_id: Optional[str] = None
    error_message: Optional[str] = None
    response: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.EXECUTED
