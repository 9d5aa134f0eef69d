"""
Unit tests for the deterministic mock broker.

Tests cover:
- Immediate fills and sequential order ids
- Weighted-average position accounting
- Seeded price random walk
- Rejections and the full capability contract
"""

import pytest
from decimal import Decimal

from brokerhub.execution.base_broker import OrderRequest, OrderSide, OrderStatus, OrderType
from brokerhub.execution.errors import OrderError
from brokerhub.execution.mock_broker import MockBroker, base_price


def buy(symbol: str, qty: str, **kwargs) -> OrderRequest:
    return OrderRequest(symbol=symbol, side=OrderSide.BUY, quantity=Decimal(qty), **kwargs)


def sell(symbol: str, qty: str, **kwargs) -> OrderRequest:
    return OrderRequest(symbol=symbol, side=OrderSide.SELL, quantity=Decimal(qty), **kwargs)


class TestMockBroker:
    """Test mock broker behavior."""

    @pytest.fixture
    def broker(self) -> MockBroker:
        return MockBroker(initial_balance=Decimal("10000"), seed=7)

    @pytest.mark.asyncio
    async def test_connect(self, broker: MockBroker):
        assert not broker.is_connected
        assert await broker.connect() is True
        assert broker.is_connected
        assert broker.session_token == "mock-session-mock"

    @pytest.mark.asyncio
    async def test_place_order_connects_transparently(self, broker: MockBroker):
        """Orders on a disconnected adapter open the session first."""
        response = await broker.place_order(buy("AAPL", "1"))
        assert broker.is_connected
        assert response.status == OrderStatus.FILLED

    @pytest.mark.asyncio
    async def test_market_fill_at_base_price(self, broker: MockBroker):
        # A=65, A=65, P=80, L=76 -> 286 + 50
        assert base_price("AAPL") == Decimal("336")

        response = await broker.place_order(buy("AAPL", "2"))

        assert response.order_id == "1001"
        assert response.filled_quantity == Decimal("2")
        assert response.average_fill_price == Decimal("336")

    @pytest.mark.asyncio
    async def test_order_ids_increment(self, broker: MockBroker):
        first = await broker.place_order(buy("AAPL", "1"))
        second = await broker.place_order(buy("MSFT", "1"))
        assert (first.order_id, second.order_id) == ("1001", "1002")
        assert broker.order_count == 2

    @pytest.mark.asyncio
    async def test_limit_order_fills_at_limit(self, broker: MockBroker):
        order = buy("AAPL", "1", order_type=OrderType.LIMIT, limit_price=Decimal("300"))
        response = await broker.place_order(order)
        assert response.average_fill_price == Decimal("300")

    @pytest.mark.asyncio
    async def test_weighted_average_on_add(self, broker: MockBroker):
        broker.set_price("AAPL", Decimal("100"))
        await broker.place_order(buy("AAPL", "10"))
        broker.set_price("AAPL", Decimal("110"))
        await broker.place_order(buy("AAPL", "10"))

        position = await broker.get_position("AAPL")
        assert position.quantity == Decimal("20")
        assert position.average_price == Decimal("105")
        assert position.side == "long"

    @pytest.mark.asyncio
    async def test_partial_reduce_keeps_average(self, broker: MockBroker):
        broker.set_price("AAPL", Decimal("100"))
        await broker.place_order(buy("AAPL", "10"))
        await broker.place_order(sell("AAPL", "4"))

        position = await broker.get_position("AAPL")
        assert position.quantity == Decimal("6")
        assert position.average_price == Decimal("100")

    @pytest.mark.asyncio
    async def test_flip_resets_average(self, broker: MockBroker):
        broker.set_price("AAPL", Decimal("100"))
        await broker.place_order(buy("AAPL", "5"))
        broker.set_price("AAPL", Decimal("90"))
        await broker.place_order(sell("AAPL", "8"))

        position = await broker.get_position("AAPL")
        assert position.quantity == Decimal("-3")
        assert position.average_price == Decimal("90")
        assert position.side == "short"

    @pytest.mark.asyncio
    async def test_cash_and_equity_accounting(self, broker: MockBroker):
        broker.set_price("AAPL", Decimal("100"))
        await broker.place_order(buy("AAPL", "10"))

        account = await broker.get_account_info()
        assert account.balance == Decimal("9000")
        assert account.equity == Decimal("10000")
        assert account.unrealized_pnl == Decimal("0")

    @pytest.mark.asyncio
    async def test_random_walk_is_bounded(self, broker: MockBroker):
        broker.set_price("AAPL", Decimal("100"))
        await broker.place_order(buy("AAPL", "1"))

        previous = Decimal("100")
        for _ in range(20):
            position = (await broker.get_positions())[0]
            assert abs(position.current_price - previous) <= previous * Decimal("0.005") + Decimal("0.01")
            previous = position.current_price

    @pytest.mark.asyncio
    async def test_random_walk_is_seeded(self):
        prices = []
        for _ in range(2):
            broker = MockBroker(seed=99)
            broker.set_price("AAPL", Decimal("100"))
            await broker.place_order(buy("AAPL", "1"))
            await broker.get_positions()
            position = (await broker.get_positions())[0]
            prices.append(position.current_price)
        assert prices[0] == prices[1]

    @pytest.mark.asyncio
    async def test_close_position(self, broker: MockBroker):
        broker.set_price("AAPL", Decimal("100"))
        await broker.place_order(buy("AAPL", "10"))

        response = await broker.close_position("AAPL")

        assert response.side == OrderSide.SELL
        assert response.quantity == Decimal("10")
        assert await broker.get_position("AAPL") is None

    @pytest.mark.asyncio
    async def test_close_missing_position_raises(self, broker: MockBroker):
        with pytest.raises(OrderError, match="No position"):
            await broker.close_position("AAPL")

    @pytest.mark.asyncio
    async def test_rejecting_broker(self):
        broker = MockBroker(broker_id="mock_b", reject_orders_with="Insufficient margin")
        with pytest.raises(OrderError) as exc_info:
            await broker.place_order(buy("AAPL", "1"))
        assert exc_info.value.message == "Insufficient margin"
        assert exc_info.value.broker_id == "mock_b"
        assert broker.order_count == 0

    @pytest.mark.asyncio
    async def test_invalid_quantity_rejected_before_fill(self, broker: MockBroker):
        with pytest.raises(OrderError, match="Quantity must be positive"):
            await broker.place_order(buy("AAPL", "0"))

    @pytest.mark.asyncio
    async def test_cancel_and_status(self, broker: MockBroker):
        response = await broker.place_order(buy("AAPL", "1"))

        assert await broker.cancel_order(response.order_id) is False
        status = await broker.get_order_status(response.order_id)
        assert status.status == OrderStatus.FILLED

        with pytest.raises(OrderError, match="not found"):
            await broker.cancel_order("9999")
        with pytest.raises(OrderError, match="not found"):
            await broker.get_order_status("9999")

    @pytest.mark.asyncio
    async def test_quote_spread(self, broker: MockBroker):
        broker.set_price("EUR/USD", Decimal("100"))
        quote = await broker.get_quote("EUR/USD")
        assert quote.bid == Decimal("99.95")
        assert quote.ask == Decimal("100.05")
        assert quote.mid == Decimal("100")

    @pytest.mark.asyncio
    async def test_disconnect(self, broker: MockBroker):
        await broker.connect()
        await broker.disconnect()
        assert not broker.is_connected
        assert broker.session_token is None

    @pytest.mark.asyncio
    async def test_health_check(self, broker: MockBroker):
        assert await broker.health_check() is True

    def test_from_settings(self, settings):
        broker = MockBroker.from_settings(None, broker_id="mock", settings=settings)
        assert broker.balance == Decimal(str(settings.mock_initial_balance))
        assert broker.account_id == "MOCK-MOCK"
