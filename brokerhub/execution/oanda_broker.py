"""
OANDA v20 adapter for spot forex.

Uses a personal access token as a bearer credential. Instruments are
written EUR_USD on the wire and units are signed (negative = sell).
"""

import logging
from decimal import Decimal
from typing import Any, Optional

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
from .errors import BrokerConnectionError, BrokerError, OrderError
from .http_broker import HttpBrokerAdapter
from .registry import register_broker

logger = logging.getLogger(__name__)


def to_oanda_instrument(symbol: str) -> str:
    """EUR/USD, EURUSD or EUR_USD -> EUR_USD."""
    cleaned = symbol.upper().replace("/", "_").replace("-", "_")
    if "_" not in cleaned and len(cleaned) == 6:
        cleaned = f"{cleaned[:3]}_{cleaned[3:]}"
    return cleaned


def from_oanda_instrument(instrument: str) -> str:
    return instrument.replace("_", "/")


@register_broker("oanda")
class OandaBroker(HttpBrokerAdapter):
    BROKER_ID = "oanda"
    DISPLAY_NAME = "OANDA"
    CAPABILITIES = BrokerCapabilities(
        asset_classes=("forex",),
        supports_fractional=False,
        supports_short=True,
        supports_stop_loss=True,
        supports_take_profit=True,
    )
    REQUIRED_CREDENTIALS = ("access_token",)

    STATUS_MAP = {
        "pending": OrderStatus.OPEN,
        "triggered": OrderStatus.FILLED,
        "filled": OrderStatus.FILLED,
        "cancelled": OrderStatus.CANCELED,
    }

    ORDER_TYPES = {
        OrderType.MARKET: "MARKET",
        OrderType.LIMIT: "LIMIT",
        OrderType.STOP: "STOP",
        OrderType.STOP_LIMIT: "STOP",
    }

    def default_base_url(self) -> str:
        return self.settings.oanda_practice_url if self.is_paper else self.settings.oanda_live_url

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.credentials.secret('access_token')}"}

    def _account_path(self, suffix: str = "") -> str:
        return f"/accounts/{self.account_id}{suffix}"

    async def _authenticate(self) -> None:
        if not self.account_id:
            data = await self._request("GET", "/accounts")
            accounts = (data or {}).get("accounts") or []
            if not accounts:
                raise BrokerConnectionError("OANDA token has no accounts", broker_id=self.broker_id, raw_response=data)
            self.account_id = accounts[0]["id"]
        await self._request("GET", self._account_path("/summary"))

    async def _get_account_info(self) -> BrokerAccountInfo:
        data = await self._request("GET", self._account_path("/summary"))
        account = data["account"]
        return BrokerAccountInfo(
            account_id=account.get("id"),
            balance=as_decimal(account.get("balance")),
            equity=as_decimal(account.get("NAV")),
            margin_used=as_decimal(account.get("marginUsed")),
            buying_power=as_decimal(account.get("marginAvailable")),
            unrealized_pnl=as_decimal(account.get("unrealizedPL")),
            currency=account.get("currency", "USD"),
        )

    async def _pricing(self, instruments: list[str]) -> dict[str, Quote]:
        data = await self._request(
            "GET", self._account_path("/pricing"), params={"instruments": ",".join(instruments)}
        )
        quotes = {}
        for price in (data or {}).get("prices", []):
            bids = price.get("bids") or [{"price": price.get("closeoutBid")}]
            asks = price.get("asks") or [{"price": price.get("closeoutAsk")}]
            quotes[price["instrument"]] = Quote(
                symbol=from_oanda_instrument(price["instrument"]),
                bid=as_decimal(bids[0].get("price")),
                ask=as_decimal(asks[0].get("price")),
            )
        return quotes

    async def _get_quote(self, symbol: str) -> Quote:
        instrument = to_oanda_instrument(symbol)
        quotes = await self._pricing([instrument])
        if instrument not in quotes:
            raise BrokerError(f"No OANDA price for {symbol}", broker_id=self.broker_id)
        return quotes[instrument]

    async def _get_positions(self) -> list[BrokerPosition]:
        data = await self._request("GET", self._account_path("/openPositions"))
        positions = (data or {}).get("positions", [])
        if not positions:
            return []

        quotes = await self._pricing([p["instrument"] for p in positions])
        result = []
        for pos in positions:
            long_units = as_decimal(pos.get("long", {}).get("units"))
            short_units = as_decimal(pos.get("short", {}).get("units"))
            quantity = long_units + short_units
            side = pos.get("long", {}) if long_units else pos.get("short", {})
            average_price = as_decimal(side.get("averagePrice"))
            quote = quotes.get(pos["instrument"])
            result.append(BrokerPosition.derive(
                symbol=from_oanda_instrument(pos["instrument"]),
                quantity=quantity,
                average_price=average_price,
                current_price=quote.mid if quote else average_price,
                unrealized_pnl=as_decimal(pos.get("unrealizedPL")),
            ))
        return result

    def _order_body(self, order: OrderRequest) -> dict[str, Any]:
        units = order.quantity if order.side == OrderSide.BUY else -order.quantity
        body: dict[str, Any] = {
            "type": self.ORDER_TYPES[order.order_type],
            "instrument": to_oanda_instrument(order.symbol),
            "units": str(units),
            "positionFill": "DEFAULT",
        }

        if order.order_type == OrderType.MARKET:
            # Market orders only accept FOK / IOC
            body["timeInForce"] = "IOC" if order.time_in_force == TimeInForce.IOC else "FOK"
        else:
            body["timeInForce"] = order.time_in_force.value.upper()
            if order.order_type == OrderType.LIMIT:
                body["price"] = str(order.limit_price)
            else:
                body["price"] = str(order.stop_price)
                if order.order_type == OrderType.STOP_LIMIT:
                    body["priceBound"] = str(order.limit_price)

        if order.stop_loss is not None:
            body["stopLossOnFill"] = {"price": str(order.stop_loss), "timeInForce": "GTC"}
        if order.take_profit is not None:
            body["takeProfitOnFill"] = {"price": str(order.take_profit), "timeInForce": "GTC"}
        if order.client_order_id:
            body["clientExtensions"] = {"id": order.client_order_id}
        return body

    async def _submit_order(self, order: OrderRequest) -> OrderResponse:
        data = await self._request(
            "POST", self._account_path("/orders"), json_body={"order": self._order_body(order)}, order_call=True
        )

        cancel = data.get("orderCancelTransaction")
        if cancel:
            raise OrderError(
                f"OANDA cancelled order: {cancel.get('reason', 'unknown reason')}",
                broker_id=self.broker_id,
                raw_response=data,
            )

        created = data.get("orderCreateTransaction") or {}
        fill = data.get("orderFillTransaction")
        return OrderResponse(
            order_id=str(created.get("id") or (fill or {}).get("orderID")),
            symbol=order.symbol,
            side=order.side,
            quantity=order.quantity,
            filled_quantity=abs(as_decimal(fill.get("units"))) if fill else Decimal("0"),
            order_type=order.order_type,
            status=OrderStatus.FILLED if fill else OrderStatus.PENDING,
            average_fill_price=as_decimal(fill.get("price"), None) if fill else None,
            limit_price=order.limit_price,
            stop_price=order.stop_price,
            client_order_id=order.client_order_id,
            metadata=dict(order.metadata),
            raw=data,
        )

    async def _cancel_order(self, order_id: str) -> bool:
        try:
            await self._request("PUT", self._account_path(f"/orders/{order_id}/cancel"))
        except BrokerError as e:
            if e.status_code == 404:
                logger.info(f"OANDA order {order_id} not cancelable: {e.message}")
                return False
            raise
        return True

    async def _get_order_status(self, order_id: str) -> OrderResponse:
        data = await self._request("GET", self._account_path(f"/orders/{order_id}"))
        raw = data["order"]
        units = as_decimal(raw.get("units"))
        status = self.normalize_status(raw.get("state"))
        if status == OrderStatus.CANCELED and "EXPIRED" in str(raw.get("cancelledReason", "")):
            status = OrderStatus.EXPIRED

        order_type = next((k for k, v in self.ORDER_TYPES.items() if v == raw.get("type")), OrderType.MARKET)
        return OrderResponse(
            order_id=str(raw["id"]),
            symbol=from_oanda_instrument(raw.get("instrument", "")),
            side=OrderSide.BUY if units >= 0 else OrderSide.SELL,
            quantity=abs(units),
            filled_quantity=abs(units) if status == OrderStatus.FILLED else Decimal("0"),
            order_type=order_type,
            status=status,
            limit_price=as_decimal(raw.get("price"), None),
            raw=data,
        )

    async def _close_position(self, symbol: str, quantity: Optional[Decimal]) -> OrderResponse:
        position = await self.get_position(from_oanda_instrument(to_oanda_instrument(symbol)))
        if position is None or not position.quantity:
            raise OrderError(f"No open OANDA position in {symbol}", broker_id=self.broker_id)

        units = str(quantity) if quantity is not None else "ALL"
        body = {"longUnits": units} if position.quantity > 0 else {"shortUnits": units}
        instrument = to_oanda_instrument(symbol)
        data = await self._request(
            "PUT", self._account_path(f"/positions/{instrument}/close"), json_body=body, order_call=True
        )

        fill = data.get("longOrderFillTransaction") or data.get("shortOrderFillTransaction") or {}
        return OrderResponse(
            order_id=str(fill.get("orderID") or fill.get("id") or ""),
            symbol=position.symbol,
            side=OrderSide.SELL if position.quantity > 0 else OrderSide.BUY,
            quantity=quantity if quantity is not None else abs(position.quantity),
            filled_quantity=abs(as_decimal(fill.get("units"))),
            status=OrderStatus.FILLED if fill else OrderStatus.PENDING,
            average_fill_price=as_decimal(fill.get("price"), None),
            raw=data,
        )
