"""
Deterministic in-memory broker.

Used as a default broker when no venue is configured and as a test double.
It follows the same contract as the real adapters: orders fill
immediately, positions average in at weighted cost, and prices drift by a
small seeded random walk whenever positions are read.
"""

import random
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .base_broker import (
    BaseBrokerAdapter,
    BrokerAccountInfo,
    BrokerCapabilities,
    BrokerPosition,
    OrderRequest,
    OrderResponse,
    OrderSide,
    OrderStatus,
    OrderType,
    Quote,
)
from .errors import OrderError
from .registry import register_broker

PRICE_QUANTUM = Decimal("0.01")


def base_price(symbol: str) -> Decimal:
    """Stable pseudo-price derived from the symbol's characters."""
    return Decimal((sum(ord(c) for c in symbol) % 1000) + 50)


@dataclass
class _Holding:
    quantity: Decimal
    average_price: Decimal
    current_price: Decimal


@register_broker("mock")
class MockBroker(BaseBrokerAdapter):
    BROKER_ID = "mock"
    DISPLAY_NAME = "Mock Broker"
    CAPABILITIES = BrokerCapabilities(
        asset_classes=("stock", "crypto", "forex", "futures"),
        supports_fractional=True,
        supports_short=True,
        supports_stop_loss=True,
        supports_take_profit=True,
        market_hours_24_7=True,
    )

    def __init__(
        self,
        credentials=None,
        broker_id: Optional[str] = None,
        initial_balance: Decimal = Decimal("10000"),
        seed: int = 42,
        reject_orders_with: Optional[str] = None,
    ):
        """
        Initialize mock broker.

        Args:
            initial_balance: Starting cash
            seed: Seed for the price random walk
            reject_orders_with: If set, every order is rejected with this message
        """
        super().__init__(credentials, broker_id)
        self.initial_balance = initial_balance
        self.balance = initial_balance
        self.reject_orders_with = reject_orders_with
        self.account_id = self.account_id or f"MOCK-{self.broker_id.upper()}"

        self._rng = random.Random(seed)
        self._prices: dict[str, Decimal] = {}
        self._positions: dict[str, _Holding] = {}
        self._orders: dict[str, OrderResponse] = {}
        self._last_order_id = 1000
        self.order_count = 0

    @classmethod
    def from_settings(cls, credentials, broker_id=None, settings=None):
        if settings is None:
            return cls(credentials, broker_id=broker_id)
        return cls(
            credentials,
            broker_id=broker_id,
            initial_balance=Decimal(str(settings.mock_initial_balance)),
            seed=settings.mock_seed,
        )

    def set_price(self, symbol: str, price: Decimal) -> None:
        """Pin the simulated price for a symbol."""
        self._prices[symbol] = Decimal(str(price))

    def current_price(self, symbol: str) -> Decimal:
        if symbol not in self._prices:
            self._prices[symbol] = base_price(symbol)
        return self._prices[symbol]

    def _walk_prices(self) -> None:
        """Move each held symbol by up to +/-0.5%."""
        for symbol, holding in self._positions.items():
            drift = Decimal(str(self._rng.uniform(-0.005, 0.005)))
            price = (self.current_price(symbol) * (1 + drift)).quantize(PRICE_QUANTUM)
            self._prices[symbol] = price
            holding.current_price = price

    async def _authenticate(self) -> None:
        self.session_token = f"mock-session-{self.broker_id}"

    async def _get_account_info(self) -> BrokerAccountInfo:
        unrealized = sum(
            ((h.current_price - h.average_price) * h.quantity for h in self._positions.values()),
            Decimal("0"),
        )
        equity = self.balance + sum(
            (h.quantity * h.current_price for h in self._positions.values()),
            Decimal("0"),
        )
        return BrokerAccountInfo(
            account_id=self.account_id,
            balance=self.balance,
            equity=equity,
            buying_power=equity,
            unrealized_pnl=unrealized,
        )

    async def _get_positions(self) -> list[BrokerPosition]:
        self._walk_prices()
        return [
            BrokerPosition.derive(
                symbol=symbol,
                quantity=h.quantity,
                average_price=h.average_price,
                current_price=h.current_price,
            )
            for symbol, h in self._positions.items()
        ]

    async def _get_quote(self, symbol: str) -> Quote:
        price = self.current_price(symbol)
        spread = price * Decimal("0.0005")
        return Quote(
            symbol=symbol,
            bid=(price - spread).quantize(PRICE_QUANTUM),
            ask=(price + spread).quantize(PRICE_QUANTUM),
            last=price,
        )

    def _update_position(self, symbol: str, signed_quantity: Decimal, price: Decimal) -> None:
        """Apply a fill; adds in the same direction average in at weighted cost."""
        existing = self._positions.get(symbol)
        if existing is None:
            self._positions[symbol] = _Holding(signed_quantity, price, price)
            return

        new_quantity = existing.quantity + signed_quantity
        if new_quantity == 0:
            del self._positions[symbol]
            return

        if existing.quantity * signed_quantity > 0:
            existing.average_price = (
                existing.average_price * abs(existing.quantity) + price * abs(signed_quantity)
            ) / abs(new_quantity)
        elif existing.quantity * new_quantity < 0:
            # Flipped through flat: remainder opened at this price
            existing.average_price = price
        existing.quantity = new_quantity
        existing.current_price = price

    def _fill_price(self, order: OrderRequest) -> Decimal:
        if order.order_type == OrderType.LIMIT or order.order_type == OrderType.STOP_LIMIT:
            return order.limit_price
        if order.order_type == OrderType.STOP:
            return order.stop_price
        return self.current_price(order.symbol)

    def _fill(self, order: OrderRequest) -> OrderResponse:
        price = self._fill_price(order)
        signed = order.quantity if order.side == OrderSide.BUY else -order.quantity

        self.balance -= signed * price
        self._update_position(order.symbol, signed, price)
        self._prices[order.symbol] = price

        self._last_order_id += 1
        self.order_count += 1
        order_id = str(self._last_order_id)
        response = OrderResponse(
            order_id=order_id,
            symbol=order.symbol,
            side=order.side,
            quantity=order.quantity,
            filled_quantity=order.quantity,
            order_type=order.order_type,
            status=OrderStatus.FILLED,
            average_fill_price=price,
            limit_price=order.limit_price,
            stop_price=order.stop_price,
            client_order_id=order.client_order_id or f"client-{order_id}",
            metadata=dict(order.metadata),
            raw={
                "orderId": order_id,
                "status": "filled",
                "stopLoss": str(order.stop_loss) if order.stop_loss is not None else None,
                "takeProfit": str(order.take_profit) if order.take_profit is not None else None,
            },
        )
        self._orders[order_id] = response
        return response

    async def _submit_order(self, order: OrderRequest) -> OrderResponse:
        if self.reject_orders_with:
            raise OrderError(
                self.reject_orders_with,
                broker_id=self.broker_id,
                raw_response={"status": "rejected", "reason": self.reject_orders_with},
            )
        return self._fill(order)

    async def _cancel_order(self, order_id: str) -> bool:
        order = self._orders.get(order_id)
        if order is None:
            raise OrderError(f"Order {order_id} not found", broker_id=self.broker_id)
        # Orders fill on submission, so nothing is ever left to cancel
        return order.status not in (OrderStatus.FILLED, OrderStatus.CANCELED)

    async def _get_order_status(self, order_id: str) -> OrderResponse:
        order = self._orders.get(order_id)
        if order is None:
            raise OrderError(f"Order {order_id} not found", broker_id=self.broker_id)
        return order

    async def _close_position(self, symbol: str, quantity: Optional[Decimal]) -> OrderResponse:
        holding = self._positions.get(symbol)
        if holding is None:
            raise OrderError(f"No position in {symbol}", broker_id=self.broker_id)

        close_quantity = quantity if quantity is not None else abs(holding.quantity)
        side = OrderSide.SELL if holding.quantity > 0 else OrderSide.BUY
        return self._fill(OrderRequest(symbol=symbol, side=side, quantity=close_quantity))
