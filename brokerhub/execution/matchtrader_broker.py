"""
MatchTrader adapter for forex / CFD venues.

Several prop firms and brokers run the same MatchTrader platform behind
different hosts, so one adapter instance serves one venue (base URL and
account). Sessions are obtained with an API key plus login and sent as
X-SESSION. Stop-loss / take-profit are attached to the resulting position
with a separate protection update after the fill.
"""

import json
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
    as_decimal,
)
from .errors import BrokerAuthenticationError, BrokerConnectionError, BrokerError, OrderError
from .http_broker import HttpBrokerAdapter
from .registry import register_broker

logger = logging.getLogger(__name__)


@register_broker("matchtrader")
class MatchTraderBroker(HttpBrokerAdapter):
    BROKER_ID = "matchtrader"
    DISPLAY_NAME = "MatchTrader"
    CAPABILITIES = BrokerCapabilities(
        asset_classes=("forex", "cfd"),
        supports_fractional=True,
        supports_short=True,
        supports_stop_loss=True,
        supports_take_profit=True,
    )
    REQUIRED_CREDENTIALS = ("api_key",)

    STATUS_MAP = {
        "new": OrderStatus.PENDING,
        "pending": OrderStatus.PENDING,
        "active": OrderStatus.OPEN,
        "working": OrderStatus.OPEN,
        "partially_filled": OrderStatus.OPEN,
        "filled": OrderStatus.FILLED,
        "executed": OrderStatus.FILLED,
        "cancelled": OrderStatus.CANCELED,
        "canceled": OrderStatus.CANCELED,
        "rejected": OrderStatus.REJECTED,
        "expired": OrderStatus.EXPIRED,
    }

    ORDER_TYPES = {
        OrderType.MARKET: "MARKET",
        OrderType.LIMIT: "LIMIT",
        OrderType.STOP: "STOP",
        OrderType.STOP_LIMIT: "STOP_LIMIT",
    }

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._instruments: dict[str, dict] = {}

    @classmethod
    def from_settings(cls, credentials, broker_id=None, settings=None):
        base_url = None
        if settings is not None and broker_id and not (credentials and credentials.base_url):
            base_url = settings.matchtrader_venues.get(broker_id)
        return cls(credentials, broker_id=broker_id, base_url=base_url, settings=settings)

    @property
    def display_name(self) -> str:
        if self.broker_id and self.broker_id != self.BROKER_ID:
            return f"MatchTrader ({self.broker_id})"
        return self.DISPLAY_NAME

    def default_base_url(self) -> str:
        return self.settings.matchtrader_base_url

    def _auth_headers(self) -> dict[str, str]:
        headers = {"X-API-KEY": self.credentials.api_key}
        if self.session_token:
            headers["X-SESSION"] = self.session_token
        return headers

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def _login(self) -> None:
        if not (self.credentials.username and self.credentials.password):
            raise BrokerAuthenticationError(
                f"{self.display_name} needs username/password or a session token",
                broker_id=self.broker_id,
            )
        data = await self._request(
            "POST",
            "/user/login",
            json_body={"username": self.credentials.username, "password": self.credentials.secret("password")},
        )
        token = (data or {}).get("sessionToken")
        if not token:
            raise BrokerAuthenticationError(
                f"{self.display_name} login returned no session token",
                broker_id=self.broker_id,
                raw_response=data,
            )
        self.session_token = token

    async def _authenticate(self) -> None:
        existing = self.credentials.secret("access_token")
        if existing and not self.session_token:
            self.session_token = existing

        if self.session_token:
            try:
                await self._request("GET", "/user/profile")
            except BrokerAuthenticationError:
                logger.info(f"{self.display_name} session expired, logging in again")
                self.session_token = None
                await self._login()
        else:
            await self._login()

        if not self.account_id:
            accounts = await self._request("GET", "/trading/accounts") or []
            if not accounts:
                raise BrokerConnectionError(f"{self.display_name} has no trading accounts", broker_id=self.broker_id)
            self.account_id = str(accounts[0]["id"])

    async def _logout(self) -> None:
        if not self.session_token:
            return
        try:
            await self._request("POST", "/user/logout")
        except BrokerError as e:
            logger.warning(f"{self.display_name} logout failed: {e}")

    # ------------------------------------------------------------------
    # Instruments and market data
    # ------------------------------------------------------------------

    async def resolve_instrument(self, symbol: str) -> dict:
        if symbol in self._instruments:
            return self._instruments[symbol]
        instruments = await self._request("GET", "/trading/instruments", params={"symbol": symbol})
        if not instruments:
            raise OrderError(f"{self.display_name} instrument not found: {symbol}", broker_id=self.broker_id)
        self._instruments[symbol] = instruments[0]
        return instruments[0]

    async def _get_quote(self, symbol: str) -> Quote:
        instrument = await self.resolve_instrument(symbol)
        data = await self._request("GET", f"/trading/instruments/{instrument['id']}/quote")
        return Quote(
            symbol=symbol,
            bid=as_decimal(data.get("bid")),
            ask=as_decimal(data.get("ask")),
            last=as_decimal(data.get("last"), None),
        )

    async def _get_account_info(self) -> BrokerAccountInfo:
        data = await self._request("GET", f"/trading/accounts/{self.account_id}")
        return BrokerAccountInfo(
            account_id=str(data.get("id", self.account_id)),
            balance=as_decimal(data.get("balance")),
            equity=as_decimal(data.get("equity")),
            margin_used=as_decimal(data.get("margin")),
            buying_power=as_decimal(data.get("freeMargin")),
            unrealized_pnl=as_decimal(data.get("profitLoss")),
            currency=data.get("currency", "USD"),
        )

    async def _raw_positions(self) -> list[dict]:
        return await self._request("GET", f"/trading/accounts/{self.account_id}/positions") or []

    async def _get_positions(self) -> list[BrokerPosition]:
        result = []
        for pos in await self._raw_positions():
            volume = as_decimal(pos.get("volume"))
            quantity = -volume if str(pos.get("direction", "BUY")).upper() == "SELL" else volume
            result.append(BrokerPosition.derive(
                symbol=pos["instrument"]["symbol"],
                quantity=quantity,
                average_price=as_decimal(pos.get("openPrice")),
                current_price=as_decimal(pos.get("marketPrice")),
                unrealized_pnl=as_decimal(pos.get("profit")),
            ))
        return result

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def update_protection(
        self,
        position_id: str,
        stop_loss: Optional[Decimal],
        take_profit: Optional[Decimal],
    ) -> Any:
        """Attach stop-loss / take-profit to an open position."""
        body = {}
        if stop_loss is not None:
            body["stopLoss"] = float(stop_loss)
        if take_profit is not None:
            body["takeProfit"] = float(take_profit)
        if not body:
            return None
        return await self._request("PUT", f"/trading/positions/{position_id}/protection", json_body=body)

    async def _submit_order(self, order: OrderRequest) -> OrderResponse:
        instrument = await self.resolve_instrument(order.symbol)
        body: dict[str, Any] = {
            "accountId": self.account_id,
            "instrumentId": instrument["id"],
            "orderType": self.ORDER_TYPES[order.order_type],
            "orderSide": order.side.value.upper(),
            "volume": float(order.quantity),
            "comment": json.dumps(order.metadata, default=str) if order.metadata else "",
        }
        if order.limit_price is not None:
            body["price"] = float(order.limit_price)
        if order.stop_price is not None:
            body["stopPrice"] = float(order.stop_price)

        data = await self._request("POST", "/trading/orders", json_body=body, order_call=True)
        if not data or not data.get("orderId"):
            raise OrderError(f"{self.display_name} did not accept order", broker_id=self.broker_id, raw_response=data)

        position_id = data.get("positionId")
        if data.get("status"):
            status = self.normalize_status(data["status"])
        else:
            status = OrderStatus.FILLED if position_id else OrderStatus.PENDING

        metadata = dict(order.metadata)
        if order.stop_loss is not None or order.take_profit is not None:
            metadata["protection_applied"] = False
            if position_id:
                try:
                    await self.update_protection(position_id, order.stop_loss, order.take_profit)
                    metadata["protection_applied"] = True
                except BrokerError as e:
                    # The order itself stands; record that SL/TP are missing
                    logger.warning(f"{self.display_name} protection update failed for position {position_id}: {e}")
                    metadata["protection_error"] = e.message

        return OrderResponse(
            order_id=str(data["orderId"]),
            symbol=order.symbol,
            side=order.side,
            quantity=order.quantity,
            filled_quantity=order.quantity if status == OrderStatus.FILLED else Decimal("0"),
            order_type=order.order_type,
            status=status,
            average_fill_price=as_decimal(data.get("price"), None),
            limit_price=order.limit_price,
            stop_price=order.stop_price,
            client_order_id=order.client_order_id,
            metadata={**metadata, "position_id": position_id},
            raw=data,
        )

    async def _cancel_order(self, order_id: str) -> bool:
        try:
            await self._request("DELETE", f"/trading/orders/{order_id}")
        except BrokerError as e:
            if e.status_code in (404, 409):
                return False
            raise
        return True

    async def _get_order_status(self, order_id: str) -> OrderResponse:
        data = await self._request("GET", f"/trading/orders/{order_id}")
        order_type = next((k for k, v in self.ORDER_TYPES.items() if v == data.get("orderType")), OrderType.MARKET)
        return OrderResponse(
            order_id=str(data.get("id", order_id)),
            symbol=(data.get("instrument") or {}).get("symbol", data.get("symbol", "")),
            side=OrderSide.SELL if str(data.get("orderSide", "BUY")).upper() == "SELL" else OrderSide.BUY,
            quantity=as_decimal(data.get("volume")),
            filled_quantity=as_decimal(data.get("filledVolume")),
            order_type=order_type,
            status=self.normalize_status(data.get("status")),
            average_fill_price=as_decimal(data.get("price"), None),
            raw=data,
        )

    async def _close_position(self, symbol: str, quantity: Optional[Decimal]) -> OrderResponse:
        position = next(
            (p for p in await self._raw_positions() if p.get("instrument", {}).get("symbol") == symbol),
            None,
        )
        if position is None:
            raise OrderError(f"No open {self.display_name} position in {symbol}", broker_id=self.broker_id)

        volume = quantity if quantity is not None else as_decimal(position.get("volume"))
        data = await self._request(
            "POST",
            f"/trading/positions/{position['id']}/close",
            json_body={"volume": float(volume)},
            order_call=True,
        )
        opened_side = str(position.get("direction", "BUY")).upper()
        return OrderResponse(
            order_id=str((data or {}).get("orderId", position["id"])),
            symbol=symbol,
            side=OrderSide.SELL if opened_side == "BUY" else OrderSide.BUY,
            quantity=volume,
            filled_quantity=volume,
            status=OrderStatus.FILLED,
            average_fill_price=as_decimal((data or {}).get("price"), None),
            raw=data,
        )
