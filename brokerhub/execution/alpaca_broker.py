"""
Alpaca adapter for US equities and crypto.

Authentication is a long-lived API key pair sent as headers on every call.
Quantities may be fractional. Stop-loss / take-profit ride along as a
bracket (or one-triggers-other) order on equities.
"""

import logging
from decimal import Decimal
from typing import Any, Optional
from urllib.parse import quote

from .base_broker import (
    BrokerAccountInfo,
    BrokerCapabilities,
    BrokerPosition,
    OrderRequest,
    OrderResponse,
    OrderSide,
    OrderStatus,
    OrderType,
    Quote,
    TimeInForce,
    as_decimal,
)
from .errors import BrokerConnectionError, BrokerError
from .http_broker import HttpBrokerAdapter
from .registry import register_broker

logger = logging.getLogger(__name__)


@register_broker("alpaca")
class AlpacaBroker(HttpBrokerAdapter):
    BROKER_ID = "alpaca"
    DISPLAY_NAME = "Alpaca"
    CAPABILITIES = BrokerCapabilities(
        asset_classes=("stock", "crypto"),
        supports_fractional=True,
        supports_short=True,
        supports_stop_loss=True,
        supports_take_profit=True,
    )
    REQUIRED_CREDENTIALS = ("api_key", "api_secret")

    STATUS_MAP = {
        "new": OrderStatus.OPEN,
        "accepted": OrderStatus.PENDING,
        "pending_new": OrderStatus.PENDING,
        "accepted_for_bidding": OrderStatus.PENDING,
        "held": OrderStatus.PENDING,
        "suspended": OrderStatus.PENDING,
        "partially_filled": OrderStatus.OPEN,
        "done_for_day": OrderStatus.OPEN,
        "pending_cancel": OrderStatus.OPEN,
        "pending_replace": OrderStatus.OPEN,
        "stopped": OrderStatus.OPEN,
        "filled": OrderStatus.FILLED,
        "canceled": OrderStatus.CANCELED,
        "replaced": OrderStatus.CANCELED,
        "expired": OrderStatus.EXPIRED,
        "rejected": OrderStatus.REJECTED,
    }

    ORDER_TYPES = {
        "market": OrderType.MARKET,
        "limit": OrderType.LIMIT,
        "stop": OrderType.STOP,
        "stop_limit": OrderType.STOP_LIMIT,
    }

    def default_base_url(self) -> str:
        return self.settings.alpaca_paper_url if self.is_paper else self.settings.alpaca_live_url

    def _auth_headers(self) -> dict[str, str]:
        return {
            "APCA-API-KEY-ID": self.credentials.api_key,
            "APCA-API-SECRET-KEY": self.credentials.secret("api_secret"),
        }

    @staticmethod
    def is_crypto(symbol: str) -> bool:
        return "/" in symbol

    async def _authenticate(self) -> None:
        account = await self._request("GET", "/v2/account")
        if account.get("account_blocked") or account.get("trading_blocked"):
            raise BrokerConnectionError(
                f"Alpaca account {account.get('id')} is blocked from trading",
                broker_id=self.broker_id,
                raw_response=account,
            )
        self.account_id = account.get("id")

    async def _get_account_info(self) -> BrokerAccountInfo:
        account = await self._request("GET", "/v2/account")
        equity = as_decimal(account.get("equity"))
        last_equity = as_decimal(account.get("last_equity"), equity)
        return BrokerAccountInfo(
            account_id=account.get("id"),
            balance=as_decimal(account.get("cash")),
            equity=equity,
            margin_used=as_decimal(account.get("initial_margin")),
            buying_power=as_decimal(account.get("buying_power")),
            unrealized_pnl=equity - last_equity,
            currency=account.get("currency", "USD"),
        )

    async def _get_positions(self) -> list[BrokerPosition]:
        positions = await self._request("GET", "/v2/positions") or []
        result = []
        for pos in positions:
            quantity = as_decimal(pos.get("qty"))
            if pos.get("side") == "short" and quantity > 0:
                quantity = -quantity
            result.append(BrokerPosition(
                symbol=pos["symbol"],
                quantity=quantity,
                average_price=as_decimal(pos.get("avg_entry_price")),
                current_price=as_decimal(pos.get("current_price")),
                unrealized_pnl=as_decimal(pos.get("unrealized_pl")),
                # Alpaca reports a fraction
                unrealized_pnl_percent=as_decimal(pos.get("unrealized_plpc")) * 100,
            ))
        return result

    async def _get_quote(self, symbol: str) -> Quote:
        data_url = self.settings.alpaca_data_url
        if self.is_crypto(symbol):
            data = await self._request(
                "GET", "/v1beta3/crypto/us/latest/quotes", params={"symbols": symbol}, base_url=data_url
            )
            raw = (data or {}).get("quotes", {}).get(symbol)
        else:
            data = await self._request("GET", f"/v2/stocks/{quote(symbol)}/quotes/latest", base_url=data_url)
            raw = (data or {}).get("quote")

        if not raw:
            raise BrokerError(f"No Alpaca quote for {symbol}", broker_id=self.broker_id, raw_response=data)

        return Quote(symbol=symbol, bid=as_decimal(raw.get("bp")), ask=as_decimal(raw.get("ap")))

    def _build_order_payload(self, order: OrderRequest) -> dict[str, Any]:
        time_in_force = order.time_in_force
        if self.is_crypto(order.symbol) and time_in_force not in (TimeInForce.GTC, TimeInForce.IOC):
            # Crypto only accepts gtc / ioc
            time_in_force = TimeInForce.GTC

        payload: dict[str, Any] = {
            "symbol": order.symbol,
            "qty": str(order.quantity),
            "side": order.side.value,  # Alpaca only accepts lowercase sides
            "type": order.order_type.value,
            "time_in_force": time_in_force.value,
        }
        if order.limit_price is not None:
            payload["limit_price"] = str(order.limit_price)
        if order.stop_price is not None:
            payload["stop_price"] = str(order.stop_price)
        if order.client_order_id:
            payload["client_order_id"] = order.client_order_id

        if self.is_crypto(order.symbol):
            if order.stop_loss or order.take_profit:
                logger.warning(f"Alpaca crypto orders do not take brackets; ignoring SL/TP on {order.symbol}")
            return payload

        if order.stop_loss is not None and order.take_profit is not None:
            payload["order_class"] = "bracket"
        elif order.stop_loss is not None or order.take_profit is not None:
            payload["order_class"] = "oto"
        if order.stop_loss is not None:
            payload["stop_loss"] = {"stop_price": str(order.stop_loss)}
        if order.take_profit is not None:
            payload["take_profit"] = {"limit_price": str(order.take_profit)}
        return payload

    def _to_response(self, data: dict) -> OrderResponse:
        return OrderResponse(
            order_id=str(data["id"]),
            symbol=data.get("symbol", ""),
            side=OrderSide(str(data.get("side", "buy")).lower()),
            quantity=as_decimal(data.get("qty")),
            filled_quantity=as_decimal(data.get("filled_qty")),
            order_type=self.ORDER_TYPES.get(data.get("type") or data.get("order_type"), OrderType.MARKET),
            status=self.normalize_status(data.get("status")),
            average_fill_price=as_decimal(data.get("filled_avg_price"), None),
            limit_price=as_decimal(data.get("limit_price"), None),
            stop_price=as_decimal(data.get("stop_price"), None),
            client_order_id=data.get("client_order_id"),
            raw=data,
        )

    async def _submit_order(self, order: OrderRequest) -> OrderResponse:
        payload = self._build_order_payload(order)
        data = await self._request("POST", "/v2/orders", json_body=payload, order_call=True)
        response = self._to_response(data)
        response.metadata = dict(order.metadata)
        return response

    async def _cancel_order(self, order_id: str) -> bool:
        try:
            await self._request("DELETE", f"/v2/orders/{order_id}")
        except BrokerError as e:
            # 422: order is no longer cancelable
            if e.status_code == 422:
                logger.info(f"Alpaca order {order_id} not cancelable: {e.message}")
                return False
            raise
        return True

    async def _get_order_status(self, order_id: str) -> OrderResponse:
        data = await self._request("GET", f"/v2/orders/{order_id}")
        return self._to_response(data)

    async def _close_position(self, symbol: str, quantity: Optional[Decimal]) -> OrderResponse:
        params = {"qty": str(quantity)} if quantity is not None else None
        data = await self._request(
            "DELETE", f"/v2/positions/{quote(symbol.replace('/', ''))}", params=params, order_call=True
        )
        return self._to_response(data)
