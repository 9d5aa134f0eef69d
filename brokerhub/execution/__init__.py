"""
Execution package - multi-broker trade execution.

This package provides:
- BaseBrokerAdapter: Broker capability contract every venue implements
- Venue adapters: Alpaca, Tradovate, OANDA, MatchTrader, Kraken and a mock
- PositionSizer: Risk-based order sizing
- TradeExecutionProcessor: Queue consumer fanning signals out to brokers

Importing this package registers every adapter in BROKER_REGISTRY.
"""

from .errors import (
    BrokerError,
    BrokerConnectionError,
    BrokerAuthenticationError,
    BrokerConfigurationError,
    OrderError,
    BrokerTimeoutError,
    SizingError,
)
from .base_broker import (
    BaseBrokerAdapter,
    BrokerAccountInfo,
    BrokerCapabilities,
    BrokerPosition,
    ConnectionState,
    OrderRequest,
    OrderResponse,
    OrderSide,
    OrderStatus,
    OrderType,
    Quote,
    TimeInForce,
)
from .registry import BROKER_REGISTRY, register_broker, get_broker_class, list_brokers, create_adapter
from .alpaca_broker import AlpacaBroker
from .tradovate_broker import TradovateBroker
from .oanda_broker import OandaBroker
from .matchtrader_broker import MatchTraderBroker
from .kraken_broker import KrakenBroker
from .mock_broker import MockBroker
from .sizing import PositionSizer
from .work_queue import WorkQueue
from .connections import BrokerConnectionPool, PooledConnection
from .processor import ActiveTrade, ExecutionState, TradeExecutionProcessor


__all__ = [
    # Errors
    "BrokerError",
    "BrokerConnectionError",
    "BrokerAuthenticationError",
    "BrokerConfigurationError",
    "OrderError",
    "BrokerTimeoutError",
    "SizingError",
    # Broker contract
    "BaseBrokerAdapter",
    "BrokerAccountInfo",
    "BrokerCapabilities",
    "BrokerPosition",
    "ConnectionState",
    "OrderRequest",
    "OrderResponse",
    "OrderSide",
    "OrderStatus",
    "OrderType",
    "Quote",
    "TimeInForce",
    # Registry
    "BROKER_REGISTRY",
    "register_broker",
    "get_broker_class",
    "list_brokers",
    "create_adapter",
    # Adapters
    "AlpacaBroker",
    "TradovateBroker",
    "OandaBroker",
    "MatchTraderBroker",
    "KrakenBroker",
    "MockBroker",
    # Processing
    "PositionSizer",
    "WorkQueue",
    "BrokerConnectionPool",
    "PooledConnection",
    "ActiveTrade",
    "ExecutionState",
    "TradeExecutionProcessor",
]
