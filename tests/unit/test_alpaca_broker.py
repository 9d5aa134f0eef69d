"""
Unit tests for the Alpaca adapter.

The HTTP layer is replaced by a route table; assertions are made on the
exact paths and payloads sent to the venue.
"""

import pytest
from decimal import Decimal

from brokerhub.execution.alpaca_broker import AlpacaBroker
from brokerhub.execution.base_broker import (
    ConnectionState,
    OrderRequest,
    OrderSide,
    OrderStatus,
    TimeInForce,
)
from brokerhub.execution.errors import (
    BrokerAuthenticationError,
    BrokerConfigurationError,
    BrokerConnectionError,
    BrokerError,
)
from brokerhub.schemas.broker_schema import BrokerCredentials


ACCOUNT = {
    "id": "acc-1",
    "account_blocked": False,
    "trading_blocked": False,
    "cash": "5000",
    "equity": "10000",
    "last_equity": "9900",
    "buying_power": "20000",
    "initial_margin": "1500",
    "currency": "USD",
}


class TestAlpacaBroker:
    """Test Alpaca wire protocol."""

    @pytest.fixture
    def broker(self, settings) -> AlpacaBroker:
        credentials = BrokerCredentials(broker_id="alpaca", api_key="AKTEST", api_secret="SKTEST")
        return AlpacaBroker(credentials, settings=settings)

    def test_requires_key_pair(self, settings):
        with pytest.raises(BrokerConfigurationError):
            AlpacaBroker(BrokerCredentials(broker_id="alpaca", api_key="AKTEST"), settings=settings)

    def test_paper_and_live_urls(self, settings):
        live = AlpacaBroker(
            BrokerCredentials(broker_id="alpaca", api_key="k", api_secret="s", is_paper=False),
            settings=settings,
        )
        paper = AlpacaBroker(BrokerCredentials(broker_id="alpaca", api_key="k", api_secret="s"), settings=settings)
        assert live.base_url == settings.alpaca_live_url
        assert paper.base_url == settings.alpaca_paper_url

    def test_auth_headers(self, broker: AlpacaBroker):
        assert broker._auth_headers() == {
            "APCA-API-KEY-ID": "AKTEST",
            "APCA-API-SECRET-KEY": "SKTEST",
        }

    @pytest.mark.asyncio
    async def test_connect(self, broker: AlpacaBroker, venue):
        venue(broker, {("GET", "/v2/account"): ACCOUNT})
        assert await broker.connect() is True
        assert broker.is_connected
        assert broker.account_id == "acc-1"

    @pytest.mark.asyncio
    async def test_blocked_account_fails_connect(self, broker: AlpacaBroker, venue):
        venue(broker, {("GET", "/v2/account"): {**ACCOUNT, "trading_blocked": True}})
        with pytest.raises(BrokerConnectionError, match="blocked"):
            await broker.connect()
        assert broker.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_rejected_key_propagates(self, broker: AlpacaBroker, venue):
        venue(broker, {
            ("GET", "/v2/account"): BrokerAuthenticationError("forbidden", broker_id="alpaca", status_code=403),
        })
        with pytest.raises(BrokerAuthenticationError):
            await broker.connect()
        assert not broker.is_connected

    @pytest.mark.asyncio
    async def test_account_info(self, broker: AlpacaBroker, venue):
        venue(broker, {("GET", "/v2/account"): ACCOUNT})
        account = await broker.get_account_info()
        assert account.equity == Decimal("10000")
        assert account.balance == Decimal("5000")
        assert account.margin_used == Decimal("1500")
        assert account.unrealized_pnl == Decimal("100")

    @pytest.mark.asyncio
    async def test_bracket_order_payload(self, broker: AlpacaBroker, venue):
        fake = venue(broker, {
            ("GET", "/v2/account"): ACCOUNT,
            ("POST", "/v2/orders"): {
                "id": "o-1", "symbol": "AAPL", "side": "buy", "qty": "10",
                "filled_qty": "0", "type": "market", "status": "accepted",
            },
        })
        order = OrderRequest(
            symbol="AAPL",
            side=OrderSide.BUY,
            quantity=Decimal("10"),
            stop_loss=Decimal("145"),
            take_profit=Decimal("160"),
            metadata={"signal_id": "sig-1"},
        )

        response = await broker.place_order(order)

        call = fake.calls_to("POST", "/v2/orders")[0]
        assert call["order_call"] is True
        assert call["json_body"] == {
            "symbol": "AAPL",
            "qty": "10",
            "side": "buy",
            "type": "market",
            "time_in_force": "gtc",
            "order_class": "bracket",
            "stop_loss": {"stop_price": "145"},
            "take_profit": {"limit_price": "160"},
        }
        assert response.order_id == "o-1"
        assert response.status == OrderStatus.PENDING
        assert response.metadata == {"signal_id": "sig-1"}

    @pytest.mark.asyncio
    async def test_stop_only_is_oto(self, broker: AlpacaBroker, venue):
        fake = venue(broker, {
            ("GET", "/v2/account"): ACCOUNT,
            ("POST", "/v2/orders"): {"id": "o-2", "symbol": "AAPL", "side": "sell", "qty": "5", "status": "new"},
        })
        await broker.place_order(
            OrderRequest(symbol="AAPL", side=OrderSide.SELL, quantity=Decimal("5"), stop_loss=Decimal("160"))
        )
        body = fake.calls_to("POST", "/v2/orders")[0]["json_body"]
        assert body["order_class"] == "oto"
        assert body["side"] == "sell"
        assert "take_profit" not in body

    @pytest.mark.asyncio
    async def test_crypto_order_forces_gtc_and_skips_brackets(self, broker: AlpacaBroker, venue):
        fake = venue(broker, {
            ("GET", "/v2/account"): ACCOUNT,
            ("POST", "/v2/orders"): {"id": "o-3", "symbol": "BTC/USD", "side": "buy", "qty": "0.1", "status": "filled"},
        })
        response = await broker.place_order(OrderRequest(
            symbol="BTC/USD",
            side=OrderSide.BUY,
            quantity=Decimal("0.1"),
            time_in_force=TimeInForce.DAY,
            stop_loss=Decimal("59000"),
        ))

        body = fake.calls_to("POST", "/v2/orders")[0]["json_body"]
        assert body["time_in_force"] == "gtc"
        assert "order_class" not in body
        assert "stop_loss" not in body
        assert response.status == OrderStatus.FILLED

    @pytest.mark.asyncio
    async def test_positions_signed_for_short(self, broker: AlpacaBroker, venue):
        venue(broker, {
            ("GET", "/v2/account"): ACCOUNT,
            ("GET", "/v2/positions"): [{
                "symbol": "TSLA", "qty": "5", "side": "short",
                "avg_entry_price": "200", "current_price": "190",
                "unrealized_pl": "50", "unrealized_plpc": "0.05",
            }],
        })
        positions = await broker.get_positions()
        assert positions[0].quantity == Decimal("-5")
        assert positions[0].unrealized_pnl == Decimal("50")
        assert positions[0].unrealized_pnl_percent == Decimal("5")

    @pytest.mark.asyncio
    async def test_stock_quote_uses_data_host(self, broker: AlpacaBroker, venue, settings):
        fake = venue(broker, {
            ("GET", "/v2/account"): ACCOUNT,
            ("GET", "/v2/stocks/AAPL/quotes/latest"): {"quote": {"bp": "189.5", "ap": "189.7"}},
        })
        quote = await broker.get_quote("AAPL")
        assert quote.bid == Decimal("189.5")
        assert quote.mid == Decimal("189.6")
        assert fake.calls_to("GET", "/v2/stocks/AAPL/quotes/latest")[0]["base_url"] == settings.alpaca_data_url

    @pytest.mark.asyncio
    async def test_crypto_quote(self, broker: AlpacaBroker, venue):
        venue(broker, {
            ("GET", "/v2/account"): ACCOUNT,
            ("GET", "/v1beta3/crypto/us/latest/quotes"): {"quotes": {"BTC/USD": {"bp": "59990", "ap": "60010"}}},
        })
        quote = await broker.get_quote("BTC/USD")
        assert quote.mid == Decimal("60000")

    @pytest.mark.asyncio
    async def test_missing_quote_raises(self, broker: AlpacaBroker, venue):
        venue(broker, {
            ("GET", "/v2/account"): ACCOUNT,
            ("GET", "/v2/stocks/ZZZZ/quotes/latest"): {"quote": None},
        })
        with pytest.raises(BrokerError, match="No Alpaca quote"):
            await broker.get_quote("ZZZZ")

    @pytest.mark.asyncio
    async def test_cancel_not_cancelable(self, broker: AlpacaBroker, venue):
        venue(broker, {
            ("GET", "/v2/account"): ACCOUNT,
            ("DELETE", "/v2/orders/o-1"): BrokerError("order is not cancelable", broker_id="alpaca", status_code=422),
        })
        assert await broker.cancel_order("o-1") is False

    @pytest.mark.asyncio
    async def test_order_status_normalized(self, broker: AlpacaBroker, venue):
        venue(broker, {
            ("GET", "/v2/account"): ACCOUNT,
            ("GET", "/v2/orders/o-1"): {
                "id": "o-1", "symbol": "AAPL", "side": "buy", "qty": "10",
                "filled_qty": "4", "type": "limit", "limit_price": "150", "status": "partially_filled",
            },
        })
        status = await broker.get_order_status("o-1")
        assert status.status == OrderStatus.OPEN
        assert status.filled_quantity == Decimal("4")
        assert status.limit_price == Decimal("150")

    @pytest.mark.asyncio
    async def test_close_position_strips_slash(self, broker: AlpacaBroker, venue):
        fake = venue(broker, {
            ("GET", "/v2/account"): ACCOUNT,
            ("DELETE", "/v2/positions/BTCUSD"): {
                "id": "o-9", "symbol": "BTC/USD", "side": "sell", "qty": "0.05", "status": "accepted",
            },
        })
        response = await broker.close_position("BTC/USD", Decimal("0.05"))
        assert fake.calls_to("DELETE", "/v2/positions/BTCUSD")[0]["params"] == {"qty": "0.05"}
        assert response.side == OrderSide.SELL
