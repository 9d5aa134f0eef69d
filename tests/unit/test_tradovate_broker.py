"""
Unit tests for the Tradovate adapter.

Tests cover:
- Username/password token exchange and transparent renewal
- Contract resolution with suggest fallback and caching
- OSO bracket orders
- Tick-based P&L
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from brokerhub.execution.base_broker import ConnectionState, OrderRequest, OrderSide, OrderStatus
from brokerhub.execution.errors import BrokerAuthenticationError, BrokerConfigurationError, OrderError
from brokerhub.execution.tradovate_broker import TradovateBroker, contract_root
from brokerhub.models.base import utc_now
from brokerhub.schemas.broker_schema import BrokerCredentials


TOKEN = {"accessToken": "tok-1", "expirationTime": "2099-01-01T00:00:00Z"}
ACCOUNTS = [{"id": 12345, "name": "DEMO12345"}]
CONTRACT = {"id": 987, "name": "ESZ4", "contractMaturityId": 55}


def base_routes(extra: dict = None) -> dict:
    routes = {
        ("POST", "/auth/accesstokenrequest"): TOKEN,
        ("GET", "/account/list"): ACCOUNTS,
    }
    routes.update(extra or {})
    return routes


class TestContractRoot:

    @pytest.mark.parametrize("name,root", [
        ("ESZ4", "ES"),
        ("MNQH25", "MNQ"),
        ("6EM5", "6E"),
        ("ES", "ES"),
        ("clf5", "CL"),
    ])
    def test_contract_root(self, name, root):
        assert contract_root(name) == root


class TestTradovateBroker:
    """Test Tradovate wire protocol."""

    @pytest.fixture
    def broker(self, settings) -> TradovateBroker:
        credentials = BrokerCredentials(broker_id="tradovate", username="trader", password="pw")
        return TradovateBroker(credentials, settings=settings)

    def test_requires_username_password(self, settings):
        with pytest.raises(BrokerConfigurationError):
            TradovateBroker(BrokerCredentials(broker_id="tradovate", username="trader"), settings=settings)

    def test_demo_url_for_paper(self, broker: TradovateBroker, settings):
        assert broker.base_url == settings.tradovate_demo_url

    @pytest.mark.asyncio
    async def test_connect_exchanges_credentials_for_token(self, broker: TradovateBroker, venue):
        fake = venue(broker, base_routes())

        await broker.connect()

        login = fake.calls_to("POST", "/auth/accesstokenrequest")[0]
        assert login["json_body"] == {
            "name": "trader",
            "password": "pw",
            "appId": "BrokerHub",
            "appVersion": "1.0",
        }
        assert login["authenticated"] is False
        assert broker.session_token == "tok-1"
        assert broker._auth_headers() == {"Authorization": "Bearer tok-1"}
        assert broker.account_id == "12345"
        assert broker.account_spec == "DEMO12345"

    @pytest.mark.asyncio
    async def test_selects_configured_account(self, settings, venue):
        credentials = BrokerCredentials(
            broker_id="tradovate", username="trader", password="pw", account_id="222",
        )
        broker = TradovateBroker(credentials, settings=settings)
        venue(broker, base_routes({
            ("GET", "/account/list"): [{"id": 111, "name": "A"}, {"id": 222, "name": "B"}],
        }))
        await broker.connect()
        assert broker.account_id == "222"
        assert broker.account_spec == "B"

    @pytest.mark.asyncio
    async def test_login_failure_leaves_disconnected(self, broker: TradovateBroker, venue):
        venue(broker, {
            ("POST", "/auth/accesstokenrequest"): {"errorText": "Incorrect username or password"},
        })
        with pytest.raises(BrokerAuthenticationError, match="Incorrect username"):
            await broker.connect()
        assert broker.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_token_renewed_before_expiry(self, broker: TradovateBroker, venue):
        fake = venue(broker, base_routes({
            ("GET", "/auth/renewaccesstoken"): {"accessToken": "tok-2", "expirationTime": "2099-01-01T00:00:00Z"},
            ("POST", "/cashBalance/getcashbalancesnapshot"): {
                "totalCashValue": 50000, "openPnL": 250, "netLiq": 50250, "initialMargin": 1000,
            },
        }))
        await broker.connect()
        broker.token_expires_at = utc_now() + timedelta(seconds=10)

        account = await broker.get_account_info()

        assert broker.session_token == "tok-2"
        assert len(fake.calls_to("GET", "/auth/renewaccesstoken")) == 1
        assert len(fake.calls_to("POST", "/auth/accesstokenrequest")) == 1
        assert account.equity == Decimal("50250")
        assert account.unrealized_pnl == Decimal("250")
        assert account.buying_power == Decimal("49250")
        snapshot = fake.calls_to("POST", "/cashBalance/getcashbalancesnapshot")[0]
        assert snapshot["json_body"] == {"accountId": 12345}

    @pytest.mark.asyncio
    async def test_failed_renewal_falls_back_to_login(self, broker: TradovateBroker, venue):
        fake = venue(broker, base_routes({
            ("GET", "/auth/renewaccesstoken"): BrokerAuthenticationError("expired", broker_id="tradovate", status_code=401),
            ("GET", "/position/list"): [],
        }))
        await broker.connect()
        broker.token_expires_at = utc_now() - timedelta(minutes=1)

        assert await broker.get_positions() == []
        assert len(fake.calls_to("POST", "/auth/accesstokenrequest")) == 2
        assert broker.is_connected

    @pytest.mark.asyncio
    async def test_failed_relogin_drops_session(self, broker: TradovateBroker, venue):
        fake = venue(broker, base_routes({
            ("GET", "/auth/renewaccesstoken"): {},
            ("GET", "/position/list"): [],
        }))
        await broker.connect()
        broker.token_expires_at = utc_now() - timedelta(minutes=1)
        fake.routes[("POST", "/auth/accesstokenrequest")] = {"errorText": "Session limit reached"}

        with pytest.raises(BrokerAuthenticationError, match="Session limit reached"):
            await broker.get_positions()

        assert broker.state == ConnectionState.DISCONNECTED
        assert broker.session_token is None
        assert fake.calls_to("GET", "/position/list") == []

    @pytest.mark.asyncio
    async def test_contract_suggest_fallback_and_cache(self, broker: TradovateBroker, venue):
        fake = venue(broker, base_routes({
            ("GET", "/contract/find"): None,
            ("GET", "/contract/suggest"): [CONTRACT],
        }))
        await broker.connect()

        first = await broker.resolve_contract("es")
        second = await broker.resolve_contract("ES")

        assert first == second == CONTRACT
        assert fake.calls_to("GET", "/contract/find")[0]["params"] == {"name": "ES"}
        assert fake.calls_to("GET", "/contract/suggest")[0]["params"] == {"t": "ES", "l": "1"}
        assert len(fake.calls_to("GET", "/contract/find")) == 1

    @pytest.mark.asyncio
    async def test_unknown_contract_raises(self, broker: TradovateBroker, venue):
        venue(broker, base_routes({
            ("GET", "/contract/find"): None,
            ("GET", "/contract/suggest"): [],
        }))
        await broker.connect()
        with pytest.raises(OrderError, match="Unknown Tradovate contract"):
            await broker.resolve_contract("NOPE")

    @pytest.mark.asyncio
    async def test_bracket_order_uses_oso(self, broker: TradovateBroker, venue):
        fake = venue(broker, base_routes({
            ("GET", "/contract/find"): CONTRACT,
            ("POST", "/order/placeoso"): {"orderId": 777},
        }))
        order = OrderRequest(
            symbol="ESZ4",
            side=OrderSide.BUY,
            quantity=Decimal("2"),
            stop_loss=Decimal("4990"),
            take_profit=Decimal("5020"),
        )

        response = await broker.place_order(order)

        body = fake.calls_to("POST", "/order/placeoso")[0]["json_body"]
        assert body == {
            "accountSpec": "DEMO12345",
            "accountId": 12345,
            "action": "Buy",
            "symbol": "ESZ4",
            "orderQty": 2,
            "orderType": "Market",
            "timeInForce": "GTC",
            "isAutomated": True,
            "bracket1": {"action": "Sell", "orderType": "Stop", "stopPrice": 4990.0},
            "bracket2": {"action": "Sell", "orderType": "Limit", "price": 5020.0},
        }
        assert response.order_id == "777"
        assert response.status == OrderStatus.PENDING
        assert response.metadata["contract_id"] == 987

    @pytest.mark.asyncio
    async def test_plain_order_uses_placeorder(self, broker: TradovateBroker, venue):
        fake = venue(broker, base_routes({
            ("GET", "/contract/find"): CONTRACT,
            ("POST", "/order/placeorder"): {"orderId": 778},
        }))
        await broker.place_order(OrderRequest(symbol="ESZ4", side=OrderSide.SELL, quantity=Decimal("1")))
        body = fake.calls_to("POST", "/order/placeorder")[0]["json_body"]
        assert body["action"] == "Sell"
        assert "bracket1" not in body

    @pytest.mark.asyncio
    async def test_fractional_contracts_rejected(self, broker: TradovateBroker, venue):
        fake = venue(broker, base_routes())
        with pytest.raises(OrderError, match="fractional"):
            await broker.place_order(OrderRequest(symbol="ESZ4", side=OrderSide.BUY, quantity=Decimal("1.5")))
        assert fake.calls_to("POST", "/order/placeorder") == []

    @pytest.mark.asyncio
    async def test_rejected_order_carries_venue_message(self, broker: TradovateBroker, venue):
        venue(broker, base_routes({
            ("GET", "/contract/find"): CONTRACT,
            ("POST", "/order/placeorder"): {"failureReason": "RiskCheck", "failureText": "Insufficient margin"},
        }))
        with pytest.raises(OrderError, match="Insufficient margin") as exc_info:
            await broker.place_order(OrderRequest(symbol="ESZ4", side=OrderSide.BUY, quantity=Decimal("1")))
        assert exc_info.value.raw_response["failureReason"] == "RiskCheck"

    @pytest.mark.asyncio
    async def test_position_pnl_from_ticks(self, broker: TradovateBroker, venue):
        venue(broker, base_routes({
            ("GET", "/position/list"): [
                {"accountId": 12345, "contractId": 987, "netPos": 2, "netPrice": 5000},
                {"accountId": 99999, "contractId": 987, "netPos": 1, "netPrice": 5000},
            ],
            ("GET", "/contract/item"): CONTRACT,
            ("GET", "/md/getQuote"): {
                "entries": {"Bid": {"price": 5009.75}, "Offer": {"price": 5010.25}, "Trade": {"price": 5010}},
            },
        }))

        positions = await broker.get_positions()

        assert len(positions) == 1
        position = positions[0]
        assert position.symbol == "ESZ4"
        assert position.current_price == Decimal("5010")
        # 10 points = 40 ticks x $12.50 x 2 contracts
        assert position.unrealized_pnl == Decimal("1000")
        assert position.unrealized_pnl_percent == Decimal("0.2")

    @pytest.mark.asyncio
    async def test_tick_spec_from_product(self, broker: TradovateBroker, venue):
        venue(broker, base_routes({
            ("GET", "/contractMaturity/item"): {"id": 9, "productId": 3},
            ("GET", "/product/item"): {"id": 3, "tickSize": 0.025, "valuePerPoint": 400},
        }))
        await broker.connect()
        tick_size, tick_value = await broker.tick_spec({"id": 1, "name": "HEZ4", "contractMaturityId": 9})
        assert tick_size == Decimal("0.025")
        assert tick_value == Decimal("10")

    @pytest.mark.asyncio
    async def test_order_status_with_fills(self, broker: TradovateBroker, venue):
        venue(broker, base_routes({
            ("GET", "/order/item"): {"id": 777, "contractId": 987, "action": "Buy", "ordStatus": "Filled"},
            ("GET", "/contract/item"): CONTRACT,
            ("GET", "/orderVersion/deps"): [{"orderQty": 2, "orderType": "Market"}],
            ("GET", "/fill/deps"): [{"qty": 1, "price": 5000}, {"qty": 1, "price": 5001}],
        }))
        status = await broker.get_order_status("777")
        assert status.status == OrderStatus.FILLED
        assert status.filled_quantity == Decimal("2")
        assert status.average_fill_price == Decimal("5000.5")

    @pytest.mark.asyncio
    async def test_cancel_refused(self, broker: TradovateBroker, venue):
        venue(broker, base_routes({
            ("POST", "/order/cancelorder"): {"failureReason": "TooLate", "failureText": "Order already filled"},
        }))
        assert await broker.cancel_order("777") is False
