"""
Tradovate adapter for CME futures.

Username/password are exchanged for a short-lived access token which is
renewed ahead of expiry. Human symbols ("ES", "ESZ4") are resolved to a
contract id before every order or quote, and P&L is computed in ticks.
"""

import logging
import re
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from brokerhub.models.base import utc_now
from .base_broker import (
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
    as_decimal,
)
from .errors import BrokerAuthenticationError, BrokerConnectionError, BrokerError, OrderError
from .http_broker import HttpBrokerAdapter
from .registry import register_broker

logger = logging.getLogger(__name__)

# Contract root -> (tick size, value per tick in USD)
TICK_SPECS: dict[str, tuple[Decimal, Decimal]] = {
    "ES": (Decimal("0.25"), Decimal("12.50")),
    "MES": (Decimal("0.25"), Decimal("1.25")),
    "NQ": (Decimal("0.25"), Decimal("5.00")),
    "MNQ": (Decimal("0.25"), Decimal("0.50")),
    "YM": (Decimal("1"), Decimal("5.00")),
    "MYM": (Decimal("1"), Decimal("0.50")),
    "RTY": (Decimal("0.1"), Decimal("5.00")),
    "M2K": (Decimal("0.1"), Decimal("0.50")),
    "CL": (Decimal("0.01"), Decimal("10.00")),
    "MCL": (Decimal("0.01"), Decimal("1.00")),
    "GC": (Decimal("0.1"), Decimal("10.00")),
    "MGC": (Decimal("0.1"), Decimal("1.00")),
    "SI": (Decimal("0.005"), Decimal("25.00")),
    "ZB": (Decimal("0.03125"), Decimal("31.25")),
    "ZN": (Decimal("0.015625"), Decimal("15.625")),
    "ZC": (Decimal("0.25"), Decimal("12.50")),
    "6E": (Decimal("0.00005"), Decimal("6.25")),
}

# Root, month code, 1-2 digit year: ESZ4, MNQH25, 6EM5
_CONTRACT_NAME = re.compile(r"^([A-Z0-9]+?)([FGHJKMNQUVXZ])(\d{1,2})$")


def contract_root(name: str) -> str:
    match = _CONTRACT_NAME.match(name.upper())
    return match.group(1) if match else name.upper()


@register_broker("tradovate")
class TradovateBroker(HttpBrokerAdapter):
    BROKER_ID = "tradovate"
    DISPLAY_NAME = "Tradovate"
    CAPABILITIES = BrokerCapabilities(
        asset_classes=("futures",),
        supports_fractional=False,
        supports_short=True,
        supports_stop_loss=True,
        supports_take_profit=True,
    )
    REQUIRED_CREDENTIALS = ("username", "password")

    STATUS_MAP = {
        "pendingnew": OrderStatus.PENDING,
        "suspended": OrderStatus.PENDING,
        "working": OrderStatus.OPEN,
        "pendingcancel": OrderStatus.OPEN,
        "pendingreplace": OrderStatus.OPEN,
        "completed": OrderStatus.FILLED,
        "filled": OrderStatus.FILLED,
        "canceled": OrderStatus.CANCELED,
        "rejected": OrderStatus.REJECTED,
        "expired": OrderStatus.EXPIRED,
    }

    ORDER_TYPES = {
        OrderType.MARKET: "Market",
        OrderType.LIMIT: "Limit",
        OrderType.STOP: "Stop",
        OrderType.STOP_LIMIT: "StopLimit",
    }
    TIME_IN_FORCE = {
        TimeInForce.DAY: "Day",
        TimeInForce.GTC: "GTC",
        TimeInForce.IOC: "IOC",
        TimeInForce.FOK: "FOK",
    }

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.token_expires_at: Optional[datetime] = None
        self.account_spec: Optional[str] = None
        self._contracts: dict[str, dict] = {}
        self._contracts_by_id: dict[int, dict] = {}
        self._tick_specs: dict[str, tuple[Decimal, Decimal]] = dict(TICK_SPECS)

    def default_base_url(self) -> str:
        return self.settings.tradovate_demo_url if self.is_paper else self.settings.tradovate_live_url

    def _auth_headers(self) -> dict[str, str]:
        if not self.session_token:
            return {}
        return {"Authorization": f"Bearer {self.session_token}"}

    # ------------------------------------------------------------------
    # Token handling
    # ------------------------------------------------------------------

    def _store_token(self, data: dict) -> None:
        self.session_token = data["accessToken"]
        expiration = data.get("expirationTime")
        if expiration:
            self.token_expires_at = datetime.fromisoformat(expiration.replace("Z", "+00:00"))
        else:
            # Tradovate tokens last 90 minutes
            self.token_expires_at = utc_now() + timedelta(minutes=90)

    async def _login(self) -> None:
        body = {
            "name": self.credentials.username,
            "password": self.credentials.secret("password"),
            "appId": self.settings.tradovate_app_id,
            "appVersion": self.settings.tradovate_app_version,
        }
        if self.credentials.api_key:
            body["cid"] = self.credentials.api_key
        if self.credentials.api_secret:
            body["sec"] = self.credentials.secret("api_secret")

        data = await self._request("POST", "/auth/accesstokenrequest", json_body=body, authenticated=False)
        if not data or "accessToken" not in data:
            message = (data or {}).get("errorText") or "access token not issued"
            raise BrokerAuthenticationError(
                f"Tradovate login failed: {message}",
                broker_id=self.broker_id,
                raw_response=data,
            )
        self._store_token(data)
        logger.info(f"Tradovate token issued, expires {self.token_expires_at.isoformat()}")

    def _token_expiring(self) -> bool:
        if not self.session_token or self.token_expires_at is None:
            return True
        margin = timedelta(seconds=self.settings.tradovate_token_refresh_margin_seconds)
        return self.token_expires_at - utc_now() <= margin

    async def _ensure_token(self) -> None:
        """Renew the access token ahead of expiry; log in again if renewal fails."""
        if not self._token_expiring():
            return
        if self.session_token:
            try:
                data = await self._request("GET", "/auth/renewaccesstoken")
                if data and data.get("accessToken"):
                    self._store_token(data)
                    logger.info("Tradovate token renewed")
                    return
            except BrokerError as e:
                logger.warning(f"Tradovate token renewal failed, logging in again: {e}")
        try:
            await self._login()
        except BrokerAuthenticationError:
            self.mark_session_lost()
            raise
        if self.state == ConnectionState.DISCONNECTED and self.account_id:
            # Session dropped by a rejected renewal; the fresh login restores it
            self._set_state(ConnectionState.CONNECTED)

    async def _api(self, method: str, path: str, **kwargs) -> Any:
        await self._ensure_token()
        return await self._request(method, path, **kwargs)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def _authenticate(self) -> None:
        await self._login()
        accounts = await self._api("GET", "/account/list") or []
        if not accounts:
            raise BrokerConnectionError("Tradovate login has no trading accounts", broker_id=self.broker_id)

        account = accounts[0]
        if self.credentials.account_id:
            account = next(
                (a for a in accounts if str(a.get("id")) == str(self.credentials.account_id)),
                account,
            )
        self.account_id = str(account["id"])
        self.account_spec = account.get("name")

    async def _logout(self) -> None:
        self.token_expires_at = None

    # ------------------------------------------------------------------
    # Contracts
    # ------------------------------------------------------------------

    def _remember_contract(self, key: str, contract: dict) -> dict:
        self._contracts[key] = contract
        self._contracts_by_id[contract["id"]] = contract
        return contract

    async def resolve_contract(self, symbol: str) -> dict:
        """Resolve a human symbol to a Tradovate contract ({id, name, ...})."""
        key = symbol.upper()
        if key in self._contracts:
            return self._contracts[key]

        contract = await self._api("GET", "/contract/find", params={"name": key})
        if not contract or not contract.get("id"):
            # Bare roots ("ES") resolve to the front month
            suggestions = await self._api("GET", "/contract/suggest", params={"t": key, "l": "1"})
            if not suggestions:
                raise OrderError(f"Unknown Tradovate contract: {symbol}", broker_id=self.broker_id)
            contract = suggestions[0]
        return self._remember_contract(key, contract)

    async def _contract_by_id(self, contract_id: int) -> dict:
        if contract_id in self._contracts_by_id:
            return self._contracts_by_id[contract_id]
        contract = await self._api("GET", "/contract/item", params={"id": str(contract_id)})
        return self._remember_contract(contract["name"].upper(), contract)

    async def tick_spec(self, contract: dict) -> tuple[Decimal, Decimal]:
        """(tick size, value per tick) for a contract."""
        root = contract_root(contract["name"])
        if root in self._tick_specs:
            return self._tick_specs[root]

        maturity = await self._api("GET", "/contractMaturity/item", params={"id": str(contract["contractMaturityId"])})
        product = await self._api("GET", "/product/item", params={"id": str(maturity["productId"])})
        tick_size = as_decimal(product.get("tickSize"))
        tick_value = tick_size * as_decimal(product.get("valuePerPoint"))
        self._tick_specs[root] = (tick_size, tick_value)
        return tick_size, tick_value

    # ------------------------------------------------------------------
    # Account and market data
    # ------------------------------------------------------------------

    async def _get_account_info(self) -> BrokerAccountInfo:
        snapshot = await self._api(
            "POST", "/cashBalance/getcashbalancesnapshot", json_body={"accountId": int(self.account_id)}
        )
        cash = as_decimal(snapshot.get("totalCashValue"))
        open_pnl = as_decimal(snapshot.get("openPnL"))
        equity = as_decimal(snapshot.get("netLiq"), cash + open_pnl)
        margin = as_decimal(snapshot.get("initialMargin"))
        return BrokerAccountInfo(
            account_id=self.account_id,
            balance=cash,
            equity=equity,
            margin_used=margin,
            buying_power=equity - margin,
            unrealized_pnl=open_pnl,
        )

    async def _quote_for_contract(self, contract: dict) -> Quote:
        data = await self._api("GET", "/md/getQuote", params={"contractId": str(contract["id"])})
        if not data:
            raise BrokerError(f"No Tradovate quote for {contract['name']}", broker_id=self.broker_id)

        entries = data.get("entries")
        if entries:
            bid = as_decimal(entries.get("Bid", {}).get("price"))
            ask = as_decimal(entries.get("Offer", {}).get("price"))
            last = as_decimal(entries.get("Trade", {}).get("price"), None)
        else:
            bid = as_decimal(data.get("bid"))
            ask = as_decimal(data.get("ask"))
            last = as_decimal(data.get("last"), None)
        return Quote(symbol=contract["name"], bid=bid, ask=ask, last=last)

    async def _get_quote(self, symbol: str) -> Quote:
        contract = await self.resolve_contract(symbol)
        return await self._quote_for_contract(contract)

    async def _get_positions(self) -> list[BrokerPosition]:
        positions = await self._api("GET", "/position/list") or []
        result = []
        for pos in positions:
            if str(pos.get("accountId")) != str(self.account_id) or not pos.get("netPos"):
                continue

            contract = await self._contract_by_id(pos["contractId"])
            quote = await self._quote_for_contract(contract)
            tick_size, tick_value = await self.tick_spec(contract)

            quantity = as_decimal(pos["netPos"])
            average_price = as_decimal(pos.get("netPrice"))
            current_price = quote.last if quote.last is not None else quote.mid

            ticks = (current_price - average_price) / tick_size
            pnl = ticks * tick_value * quantity
            notional = average_price / tick_size * tick_value * abs(quantity)
            result.append(BrokerPosition(
                symbol=contract["name"],
                quantity=quantity,
                average_price=average_price,
                current_price=current_price,
                unrealized_pnl=pnl,
                unrealized_pnl_percent=(pnl / notional * 100) if notional else Decimal("0"),
            ))
        return result

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def _order_body(self, order: OrderRequest, contract: dict) -> dict[str, Any]:
        body: dict[str, Any] = {
            "accountSpec": self.account_spec or self.credentials.username,
            "accountId": int(self.account_id),
            "action": "Buy" if order.side == OrderSide.BUY else "Sell",
            "symbol": contract["name"],
            "orderQty": int(order.quantity),
            "orderType": self.ORDER_TYPES[order.order_type],
            "timeInForce": self.TIME_IN_FORCE[order.time_in_force],
            "isAutomated": True,
        }
        if order.limit_price is not None:
            body["price"] = float(order.limit_price)
        if order.stop_price is not None:
            body["stopPrice"] = float(order.stop_price)
        if order.client_order_id:
            body["text"] = order.client_order_id[:64]
        return body

    def _bracket(self, order: OrderRequest, order_type: str, price: Decimal) -> dict[str, Any]:
        bracket: dict[str, Any] = {
            "action": "Buy" if order.side.opposite == OrderSide.BUY else "Sell",
            "orderType": order_type,
        }
        if order_type == "Stop":
            bracket["stopPrice"] = float(price)
        else:
            bracket["price"] = float(price)
        return bracket

    async def _submit_order(self, order: OrderRequest) -> OrderResponse:
        contract = await self.resolve_contract(order.symbol)
        body = self._order_body(order, contract)

        path = "/order/placeorder"
        brackets = []
        if order.stop_loss is not None:
            brackets.append(self._bracket(order, "Stop", order.stop_loss))
        if order.take_profit is not None:
            brackets.append(self._bracket(order, "Limit", order.take_profit))
        if brackets:
            path = "/order/placeoso"
            for index, bracket in enumerate(brackets, start=1):
                body[f"bracket{index}"] = bracket

        data = await self._api("POST", path, json_body=body, order_call=True)
        if not data or data.get("failureReason") or not data.get("orderId"):
            reason = (data or {}).get("failureText") or (data or {}).get("failureReason") or "order not accepted"
            raise OrderError(f"Tradovate rejected order: {reason}", broker_id=self.broker_id, raw_response=data)

        return OrderResponse(
            order_id=str(data["orderId"]),
            symbol=contract["name"],
            side=order.side,
            quantity=order.quantity,
            order_type=order.order_type,
            status=OrderStatus.PENDING,
            limit_price=order.limit_price,
            stop_price=order.stop_price,
            client_order_id=order.client_order_id,
            metadata={**order.metadata, "contract_id": contract["id"]},
            raw=data,
        )

    async def _cancel_order(self, order_id: str) -> bool:
        data = await self._api("POST", "/order/cancelorder", json_body={"orderId": int(order_id)})
        if data and data.get("failureReason"):
            logger.info(f"Tradovate cancel of {order_id} refused: {data.get('failureText') or data['failureReason']}")
            return False
        return True

    async def _get_order_status(self, order_id: str) -> OrderResponse:
        data = await self._api("GET", "/order/item", params={"id": order_id})
        contract = await self._contract_by_id(data["contractId"])
        versions = await self._api("GET", "/orderVersion/deps", params={"masterid": order_id}) or [{}]
        version = versions[-1]
        fills = await self._api("GET", "/fill/deps", params={"masterid": order_id}) or []

        filled = sum((as_decimal(f.get("qty")) for f in fills), Decimal("0"))
        average = None
        if filled:
            average = sum((as_decimal(f.get("qty")) * as_decimal(f.get("price")) for f in fills), Decimal("0")) / filled

        order_type = next(
            (k for k, v in self.ORDER_TYPES.items() if v == version.get("orderType")),
            OrderType.MARKET,
        )
        return OrderResponse(
            order_id=str(data["id"]),
            symbol=contract["name"],
            side=OrderSide.BUY if data.get("action") == "Buy" else OrderSide.SELL,
            quantity=as_decimal(version.get("orderQty"), filled),
            filled_quantity=filled,
            order_type=order_type,
            status=self.normalize_status(data.get("ordStatus")),
            average_fill_price=average,
            raw=data,
        )

    async def _close_position(self, symbol: str, quantity: Optional[Decimal]) -> OrderResponse:
        contract = await self.resolve_contract(symbol)
        positions = await self._api("GET", "/position/list") or []
        position = next(
            (p for p in positions if p.get("contractId") == contract["id"] and str(p.get("accountId")) == str(self.account_id)),
            None,
        )
        if not position or not position.get("netPos"):
            raise OrderError(f"No open Tradovate position in {symbol}", broker_id=self.broker_id)

        net = as_decimal(position["netPos"])
        side = OrderSide.SELL if net > 0 else OrderSide.BUY
        close_qty = quantity if quantity is not None else abs(net)
        order = OrderRequest(symbol=contract["name"], side=side, quantity=close_qty)
        return await self._submit_order(order)
