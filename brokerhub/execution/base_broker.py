"""
Broker capability contract.

Every venue integration implements BaseBrokerAdapter. Callers depend only
on this interface and on the normalized models defined here, never on a
concrete venue class.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from brokerhub.models.base import utc_now
from brokerhub.observability.metrics import set_broker_connected
from brokerhub.schemas.broker_schema import BrokerCredentials
from .errors import BrokerConfigurationError, BrokerConnectionError, BrokerError, OrderError

logger = logging.getLogger(__name__)


def as_decimal(value: Any, default: Optional[Decimal] = Decimal("0")) -> Optional[Decimal]:
    """Convert a vendor numeric (str, int, float) to Decimal."""
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderType(str, Enum):
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"
    STOP_LIMIT = "stop_limit"


class TimeInForce(str, Enum):
    DAY = "day"
    GTC = "gtc"
    IOC = "ioc"
    FOK = "fok"


class OrderStatus(str, Enum):
    """Normalized order status shared by every adapter."""
    PENDING = "pending"
    OPEN = "open"
    FILLED = "filled"
    CANCELED = "canceled"
    REJECTED = "rejected"
    EXPIRED = "expired"
    UNKNOWN = "unknown"  # venue status with no mapping


@dataclass(frozen=True)
class BrokerCapabilities:
    """Describes what a broker can do."""
    asset_classes: tuple[str, ...] = ("stock",)
    supports_fractional: bool = False
    supports_short: bool = True
    supports_stop_loss: bool = False
    supports_take_profit: bool = False
    market_hours_24_7: bool = False


class OrderRequest(BaseModel):
    """Standard order request format for all brokers."""
    symbol: str
    side: OrderSide
    quantity: Decimal
    order_type: OrderType = OrderType.MARKET
    time_in_force: TimeInForce = TimeInForce.GTC
    limit_price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None
    client_order_id: Optional[str] = None
    # Opaque to adapters: signal id, user id, provider
    metadata: dict[str, Any] = Field(default_factory=dict)


class OrderResponse(BaseModel):
    """Normalized result of an order call."""
    order_id: str
    symbol: str
    side: OrderSide
    quantity: Decimal
    filled_quantity: Decimal = Decimal("0")
    order_type: OrderType = OrderType.MARKET
    status: OrderStatus
    average_fill_price: Optional[Decimal] = None
    limit_price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    client_order_id: Optional[str] = None
    submitted_at: datetime = Field(default_factory=utc_now)
    metadata: dict[str, Any] = Field(default_factory=dict)
    raw: Optional[Any] = None


class BrokerPosition(BaseModel):
    """Open position as reported by the venue. Quantity is signed."""
    symbol: str
    quantity: Decimal
    average_price: Decimal
    current_price: Decimal
    unrealized_pnl: Decimal
    unrealized_pnl_percent: Decimal

    @property
    def side(self) -> str:
        return "long" if self.quantity >= 0 else "short"

    @classmethod
    def derive(
        cls,
        symbol: str,
        quantity: Decimal,
        average_price: Decimal,
        current_price: Decimal,
        unrealized_pnl: Optional[Decimal] = None,
    ) -> "BrokerPosition":
        """Build a position, computing P&L from the price delta if not given."""
        if unrealized_pnl is None:
            unrealized_pnl = (current_price - average_price) * quantity
        cost_basis = abs(average_price * quantity)
        pnl_percent = (unrealized_pnl / cost_basis * 100) if cost_basis else Decimal("0")
        return cls(
            symbol=symbol,
            quantity=quantity,
            average_price=average_price,
            current_price=current_price,
            unrealized_pnl=unrealized_pnl,
            unrealized_pnl_percent=pnl_percent,
        )


class BrokerAccountInfo(BaseModel):
    """Account information from broker."""
    account_id: Optional[str] = None
    balance: Decimal
    equity: Decimal
    margin_used: Decimal = Decimal("0")
    buying_power: Decimal = Decimal("0")
    unrealized_pnl: Decimal = Decimal("0")
    currency: str = "USD"


class Quote(BaseModel):
    symbol: str
    bid: Decimal
    ask: Decimal
    last: Optional[Decimal] = None
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def mid(self) -> Decimal:
        return (self.bid + self.ask) / 2


class BaseBrokerAdapter(ABC):
    """
    Abstract base class for all broker adapters.

    Public operations make sure a session exists before delegating to the
    venue-specific hooks. Authentication failures are never swallowed:
    they leave the adapter disconnected and raise BrokerConnectionError.
    """

    BROKER_ID: str = ""
    DISPLAY_NAME: str = ""
    CAPABILITIES = BrokerCapabilities()
    REQUIRED_CREDENTIALS: tuple[str, ...] = ()
    # Lower-cased venue status -> normalized status
    STATUS_MAP: dict[str, OrderStatus] = {}

    def __init__(self, credentials: Optional[BrokerCredentials] = None, broker_id: Optional[str] = None):
        """
        Initialize broker adapter.

        Args:
            credentials: Read-only credentials from the vault
            broker_id: Registry id, defaults to the class BROKER_ID
        """
        self.broker_id = broker_id or self.BROKER_ID
        self.credentials = credentials
        self.is_paper = credentials.is_paper if credentials else True
        self.state = ConnectionState.DISCONNECTED
        self.session_token: Optional[str] = None
        self.account_id: Optional[str] = credentials.account_id if credentials else None
        self.last_used_at: Optional[datetime] = None

        if self.REQUIRED_CREDENTIALS and (credentials is None or not credentials.has_fields(self.REQUIRED_CREDENTIALS)):
            missing = ", ".join(self.REQUIRED_CREDENTIALS)
            raise BrokerConfigurationError(
                f"{self.broker_id} requires credentials: {missing}",
                broker_id=self.broker_id,
            )

    @classmethod
    def from_settings(cls, credentials: Optional[BrokerCredentials], broker_id: Optional[str] = None, settings=None):
        """Build an adapter from vault credentials and application settings."""
        return cls(credentials, broker_id=broker_id)

    @property
    def display_name(self) -> str:
        return self.DISPLAY_NAME or self.broker_id

    @property
    def is_connected(self) -> bool:
        """Check if broker connection is active."""
        return self.state == ConnectionState.CONNECTED

    def _set_state(self, state: ConnectionState) -> None:
        self.state = state
        set_broker_connected(self.broker_id, state == ConnectionState.CONNECTED)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """
        Establish a session with the venue.

        Returns:
            True once connected

        Raises:
            BrokerConnectionError: authentication or network failure
        """
        if self.is_connected:
            return True

        self._set_state(ConnectionState.CONNECTING)
        try:
            await self._authenticate()
        except BrokerConnectionError:
            self._set_state(ConnectionState.DISCONNECTED)
            raise
        except BrokerError as e:
            self._set_state(ConnectionState.DISCONNECTED)
            raise BrokerConnectionError(
                f"{self.broker_id} connection failed: {e.message}",
                broker_id=self.broker_id,
                raw_response=e.raw_response,
                status_code=e.status_code,
            ) from e

        self._set_state(ConnectionState.CONNECTED)
        self.last_used_at = utc_now()
        logger.info(f"Connected to {self.display_name} (account={self.account_id}, paper={self.is_paper})")
        return True

    async def disconnect(self) -> None:
        """Close the venue session. Safe to call when already disconnected."""
        if self.state == ConnectionState.DISCONNECTED:
            return
        try:
            await self._logout()
        finally:
            self.session_token = None
            self._set_state(ConnectionState.DISCONNECTED)
            logger.info(f"Disconnected from {self.display_name}")

    async def ensure_connected(self) -> None:
        """Connect transparently if needed and mark the connection as used."""
        if not self.is_connected:
            await self.connect()
        self.last_used_at = utc_now()

    def mark_session_lost(self) -> None:
        """Drop the current session so the next call re-authenticates."""
        self.session_token = None
        self._set_state(ConnectionState.DISCONNECTED)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def get_account_info(self) -> BrokerAccountInfo:
        await self.ensure_connected()
        return await self._get_account_info()

    async def get_positions(self) -> list[BrokerPosition]:
        await self.ensure_connected()
        return await self._get_positions()

    async def get_position(self, symbol: str) -> Optional[BrokerPosition]:
        for position in await self.get_positions():
            if position.symbol == symbol:
                return position
        return None

    async def get_quote(self, symbol: str) -> Quote:
        await self.ensure_connected()
        return await self._get_quote(symbol)

    async def place_order(self, order: OrderRequest) -> OrderResponse:
        """
        Submit an order to the venue.

        Raises:
            BrokerConnectionError: no session could be established
            OrderError: validation failed or the venue rejected the order
        """
        await self.ensure_connected()
        self.validate_order(order)
        response = await self._submit_order(order)
        logger.info(
            f"{self.display_name} order {response.order_id}: {order.side.value} {order.quantity} "
            f"{order.symbol} -> {response.status.value}"
        )
        return response

    async def cancel_order(self, order_id: str) -> bool:
        await self.ensure_connected()
        return await self._cancel_order(order_id)

    async def get_order_status(self, order_id: str) -> OrderResponse:
        await self.ensure_connected()
        return await self._get_order_status(order_id)

    async def close_position(self, symbol: str, quantity: Optional[Decimal] = None) -> OrderResponse:
        """Close all of a position, or `quantity` of it."""
        await self.ensure_connected()
        return await self._close_position(symbol, quantity)

    async def health_check(self) -> bool:
        """
        Check if broker connection is healthy.

        Returns:
            True if account info can be fetched
        """
        try:
            await self.get_account_info()
            return True
        except BrokerError as e:
            logger.warning(f"{self.display_name} health check failed: {e}")
            return False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def normalize_status(self, raw_status: Any) -> OrderStatus:
        """Map a venue status onto OrderStatus. Unmapped values become UNKNOWN."""
        if raw_status is None:
            return OrderStatus.UNKNOWN
        status = self.STATUS_MAP.get(str(raw_status).strip().lower())
        if status is None:
            logger.warning(f"{self.display_name}: unmapped order status '{raw_status}'")
            return OrderStatus.UNKNOWN
        return status

    def validate_order(self, order: OrderRequest) -> None:
        """
        Basic order validation before submission.

        Raises:
            OrderError: describing the first problem found
        """
        problem = None
        if not order.symbol:
            problem = "Symbol is required"
        elif order.quantity <= 0:
            problem = "Quantity must be positive"
        elif order.order_type in (OrderType.LIMIT, OrderType.STOP_LIMIT) and not order.limit_price:
            problem = f"{order.order_type.value} order requires limit_price"
        elif order.order_type in (OrderType.STOP, OrderType.STOP_LIMIT) and not order.stop_price:
            problem = f"{order.order_type.value} order requires stop_price"
        elif not self.CAPABILITIES.supports_fractional and order.quantity != order.quantity.to_integral_value():
            problem = f"{self.display_name} does not support fractional quantity {order.quantity}"

        if problem:
            raise OrderError(problem, broker_id=self.broker_id)

    # ------------------------------------------------------------------
    # Venue hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _authenticate(self) -> None:
        """Open a session and cache session token / account id."""

    async def _logout(self) -> None:
        """End the venue session. Default is a no-op."""

    @abstractmethod
    async def _get_account_info(self) -> BrokerAccountInfo:
        ...

    @abstractmethod
    async def _get_positions(self) -> list[BrokerPosition]:
        ...

    @abstractmethod
    async def _get_quote(self, symbol: str) -> Quote:
        ...

    @abstractmethod
    async def _submit_order(self, order: OrderRequest) -> OrderResponse:
        """Resolve the instrument, translate vocabulary, submit."""

    @abstractmethod
    async def _cancel_order(self, order_id: str) -> bool:
        ...

    @abstractmethod
    async def _get_order_status(self, order_id: str) -> OrderResponse:
        ...

    @abstractmethod
    async def _close_position(self, symbol: str, quantity: Optional[Decimal]) -> OrderResponse:
        ...
