from brokerhub.schemas.broker_schema import BrokerCredentials
from brokerhub.schemas.trading_schema import (
    SignalSide,
    TradingSignal,
    ExecutionRequest,
    UserTradeSettings,
    ExecutionLogEntry,
)

__all__ = [
    "BrokerCredentials",
    "SignalSide",
    "TradingSignal",
    "ExecutionRequest",
    "UserTradeSettings",
    "ExecutionLogEntry",
]
