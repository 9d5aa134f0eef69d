"""
Kraken adapter for spot crypto.

Private calls are form-encoded POSTs signed with HMAC-SHA512 over the URI
path and SHA256(nonce + postdata), keyed by the base64-decoded API secret.
Kraken names assets with legacy codes (XXBT, ZUSD), so symbols are
translated in both directions, and per-asset balances are valued in the
configured currency through live tickers.
"""

import base64
import hashlib
import hmac
import logging
import time
from decimal import Decimal
from typing import Any, Optional
from urllib.parse import urlencode

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
from .errors import BrokerAuthenticationError, BrokerError, OrderError
from .http_broker import HttpBrokerAdapter
from .registry import register_broker

logger = logging.getLogger(__name__)

# Common asset -> Kraken legacy asset code
ASSET_CODES: dict[str, str] = {
    "BTC": "XXBT",
    "ETH": "XETH",
    "LTC": "XLTC",
    "XRP": "XXRP",
    "XLM": "XXLM",
    "XMR": "XXMR",
    "ZEC": "XZEC",
    "ETC": "XETC",
    "DOGE": "XXDG",
    "USD": "ZUSD",
    "EUR": "ZEUR",
    "GBP": "ZGBP",
    "JPY": "ZJPY",
    "CAD": "ZCAD",
    "AUD": "ZAUD",
}
KRAKEN_ASSETS: dict[str, str] = {code: asset for asset, code in ASSET_CODES.items()}

# Short forms Kraken uses inside newer pair names (XBTUSDT, XDGUSD)
SHORT_CODES: dict[str, str] = {"BTC": "XBT", "DOGE": "XDG"}
SHORT_ASSETS: dict[str, str] = {code: asset for asset, code in SHORT_CODES.items()}

QUOTE_SUFFIXES = ("USDT", "USDC", "USD", "EUR", "GBP", "JPY", "CAD", "AUD", "XBT", "ETH")

AUTH_ERRORS = ("EAPI:Invalid key", "EAPI:Invalid signature", "EAPI:Invalid nonce", "EGeneral:Permission denied")


def from_kraken_asset(code: str) -> str:
    """XXBT -> BTC, XBT.F -> BTC, SOL -> SOL."""
    base = code.upper().split(".")[0]
    return KRAKEN_ASSETS.get(base) or SHORT_ASSETS.get(base) or base


def to_kraken_pair(symbol: str) -> str:
    """BTC/USD -> XXBTZUSD, SOL/USD -> SOLUSD, BTC/USDT -> XBTUSDT."""
    if "/" not in symbol:
        return symbol.upper()
    base, quote = (part.upper() for part in symbol.split("/", 1))
    if base in ASSET_CODES and quote in ASSET_CODES:
        return ASSET_CODES[base] + ASSET_CODES[quote]
    return SHORT_CODES.get(base, base) + SHORT_CODES.get(quote, quote)


def from_kraken_pair(pair: str) -> str:
    """XXBTZUSD -> BTC/USD, SOLUSD -> SOL/USD."""
    pair = pair.upper()
    if len(pair) == 8 and pair[:4] in KRAKEN_ASSETS and pair[4:] in KRAKEN_ASSETS:
        return f"{KRAKEN_ASSETS[pair[:4]]}/{KRAKEN_ASSETS[pair[4:]]}"
    for quote in QUOTE_SUFFIXES:
        if pair.endswith(quote) and len(pair) > len(quote):
            return f"{from_kraken_asset(pair[:-len(quote)])}/{from_kraken_asset(quote)}"
    return pair


def sign_request(uri_path: str, data: dict[str, Any], secret: str) -> str:
    """Kraken API-Sign header value."""
    postdata = urlencode(data)
    encoded = (str(data["nonce"]) + postdata).encode()
    message = uri_path.encode() + hashlib.sha256(encoded).digest()
    mac = hmac.new(base64.b64decode(secret), message, hashlib.sha512)
    return base64.b64encode(mac.digest()).decode()


@register_broker("kraken")
class KrakenBroker(HttpBrokerAdapter):
    BROKER_ID = "kraken"
    DISPLAY_NAME = "Kraken"
    CAPABILITIES = BrokerCapabilities(
        asset_classes=("crypto",),
        supports_fractional=True,
        supports_short=False,
        supports_stop_loss=True,
        supports_take_profit=True,
        market_hours_24_7=True,
    )
    REQUIRED_CREDENTIALS = ("api_key", "api_secret")

    STATUS_MAP = {
        "pending": OrderStatus.PENDING,
        "open": OrderStatus.OPEN,
        "closed": OrderStatus.FILLED,
        "canceled": OrderStatus.CANCELED,
        "expired": OrderStatus.EXPIRED,
    }

    ORDER_TYPES = {
        OrderType.MARKET: "market",
        OrderType.LIMIT: "limit",
        OrderType.STOP: "stop-loss",
        OrderType.STOP_LIMIT: "stop-loss-limit",
    }

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._last_nonce = 0

    def default_base_url(self) -> str:
        return self.settings.kraken_base_url

    @property
    def valuation_currency(self) -> str:
        return self.settings.kraken_valuation_currency.upper()

    def _next_nonce(self) -> int:
        """Millisecond nonce, strictly increasing per key."""
        self._last_nonce = max(int(time.time() * 1000), self._last_nonce + 1)
        return self._last_nonce

    def _unwrap(self, payload: Any, order_call: bool = False) -> Any:
        errors = (payload or {}).get("error") or []
        if errors:
            message = "; ".join(errors)
            if any(err.startswith(AUTH_ERRORS) for err in errors):
                self.mark_session_lost()
                raise BrokerAuthenticationError(f"Kraken rejected request: {message}", broker_id=self.broker_id, raw_response=payload)
            error_cls = OrderError if order_call or any(err.startswith("EOrder") for err in errors) else BrokerError
            raise error_cls(f"Kraken error: {message}", broker_id=self.broker_id, raw_response=payload)
        return (payload or {}).get("result")

    async def _private(self, method: str, params: Optional[dict[str, Any]] = None, order_call: bool = False) -> Any:
        path = f"/0/private/{method}"
        data = {"nonce": self._next_nonce(), **(params or {})}
        headers = {
            "API-Key": self.credentials.api_key,
            "API-Sign": sign_request(path, data, self.credentials.secret("api_secret")),
            "Content-Type": "application/x-www-form-urlencoded; charset=utf-8",
        }
        payload = await self._request(
            "POST", path, data=urlencode(data), headers=headers, authenticated=False, order_call=order_call
        )
        return self._unwrap(payload, order_call)

    async def _public(self, method: str, params: Optional[dict[str, Any]] = None) -> Any:
        payload = await self._request("GET", f"/0/public/{method}", params=params, authenticated=False)
        return self._unwrap(payload)

    async def _authenticate(self) -> None:
        # Kraken has no session; a signed balance call proves the key works
        await self._private("Balance")

    # ------------------------------------------------------------------
    # Market data and valuation
    # ------------------------------------------------------------------

    async def _ticker(self, symbol: str) -> Quote:
        pair = to_kraken_pair(symbol)
        result = await self._public("Ticker", {"pair": pair})
        if not result:
            raise BrokerError(f"No Kraken ticker for {symbol}", broker_id=self.broker_id)
        ticker = result.get(pair) or next(iter(result.values()))
        return Quote(
            symbol=symbol,
            bid=as_decimal(ticker["b"][0]),
            ask=as_decimal(ticker["a"][0]),
            last=as_decimal(ticker["c"][0], None),
        )

    async def _get_quote(self, symbol: str) -> Quote:
        return await self._ticker(symbol)

    async def _asset_prices(self, assets: list[str]) -> dict[str, Decimal]:
        """Price of each asset in the valuation currency. Unpriced assets are omitted."""
        prices = {}
        for asset in assets:
            if asset == self.valuation_currency:
                prices[asset] = Decimal("1")
                continue
            try:
                quote = await self._ticker(f"{asset}/{self.valuation_currency}")
            except BrokerError as e:
                logger.warning(f"Kraken: no {self.valuation_currency} price for {asset}, excluded from equity: {e}")
                continue
            prices[asset] = quote.last if quote.last is not None else quote.mid
        return prices

    async def _balances(self) -> dict[str, Decimal]:
        raw = await self._private("Balance") or {}
        balances: dict[str, Decimal] = {}
        for code, amount in raw.items():
            value = as_decimal(amount)
            if value:
                asset = from_kraken_asset(code)
                balances[asset] = balances.get(asset, Decimal("0")) + value
        return balances

    async def _get_account_info(self) -> BrokerAccountInfo:
        balances = await self._balances()
        prices = await self._asset_prices(list(balances))
        equity = sum((balances[a] * prices[a] for a in balances if a in prices), Decimal("0"))
        cash = balances.get(self.valuation_currency, Decimal("0"))
        return BrokerAccountInfo(
            balance=cash,
            equity=equity,
            buying_power=cash,
            currency=self.valuation_currency,
        )

    async def _get_positions(self) -> list[BrokerPosition]:
        balances = await self._balances()
        holdings = {a: q for a, q in balances.items() if a != self.valuation_currency}
        prices = await self._asset_prices(list(holdings))

        # Spot holdings carry no cost basis on Kraken
        result = [
            BrokerPosition.derive(
                symbol=f"{asset}/{self.valuation_currency}",
                quantity=quantity,
                average_price=prices[asset],
                current_price=prices[asset],
            )
            for asset, quantity in holdings.items()
            if asset in prices
        ]

        margin = await self._private("OpenPositions") or {}
        for pos in margin.values():
            volume = as_decimal(pos.get("vol")) - as_decimal(pos.get("vol_closed"))
            if not volume:
                continue
            quantity = volume if pos.get("type") == "buy" else -volume
            result.append(BrokerPosition.derive(
                symbol=from_kraken_pair(pos["pair"]),
                quantity=quantity,
                average_price=as_decimal(pos.get("cost")) / as_decimal(pos.get("vol")),
                current_price=as_decimal(pos.get("value")) / volume,
                unrealized_pnl=as_decimal(pos.get("net")),
            ))
        return result

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def _order_params(self, order: OrderRequest) -> dict[str, Any]:
        params: dict[str, Any] = {
            "pair": to_kraken_pair(order.symbol),
            "type": order.side.value,
            "ordertype": self.ORDER_TYPES[order.order_type],
            "volume": str(order.quantity),
        }
        if order.order_type == OrderType.LIMIT:
            params["price"] = str(order.limit_price)
        elif order.order_type == OrderType.STOP:
            params["price"] = str(order.stop_price)
        elif order.order_type == OrderType.STOP_LIMIT:
            params["price"] = str(order.stop_price)
            params["price2"] = str(order.limit_price)

        if order.time_in_force == TimeInForce.IOC and order.order_type == OrderType.LIMIT:
            params["timeinforce"] = "IOC"

        # One conditional close per order: stop-loss wins over take-profit
        if order.stop_loss is not None:
            params["close[ordertype]"] = "stop-loss"
            params["close[price]"] = str(order.stop_loss)
        elif order.take_profit is not None:
            params["close[ordertype]"] = "take-profit"
            params["close[price]"] = str(order.take_profit)
        return params

    async def _submit_order(self, order: OrderRequest) -> OrderResponse:
        result = await self._private("AddOrder", self._order_params(order), order_call=True)
        txids = (result or {}).get("txid") or []
        if not txids:
            raise OrderError("Kraken returned no transaction id", broker_id=self.broker_id, raw_response=result)

        metadata = dict(order.metadata)
        if order.stop_loss is not None and order.take_profit is not None:
            metadata["take_profit_ignored"] = True

        return OrderResponse(
            order_id=txids[0],
            symbol=order.symbol,
            side=order.side,
            quantity=order.quantity,
            order_type=order.order_type,
            status=OrderStatus.PENDING,
            limit_price=order.limit_price,
            stop_price=order.stop_price,
            client_order_id=order.client_order_id,
            metadata=metadata,
            raw=result,
        )

    async def _cancel_order(self, order_id: str) -> bool:
        result = await self._private("CancelOrder", {"txid": order_id})
        return bool((result or {}).get("count"))

    async def _get_order_status(self, order_id: str) -> OrderResponse:
        result = await self._private("QueryOrders", {"txid": order_id}) or {}
        raw = result.get(order_id)
        if raw is None:
            raise OrderError(f"Kraken order {order_id} not found", broker_id=self.broker_id, raw_response=result)

        descr = raw.get("descr", {})
        order_type = next((k for k, v in self.ORDER_TYPES.items() if v == descr.get("ordertype")), OrderType.MARKET)
        filled = as_decimal(raw.get("vol_exec"))
        return OrderResponse(
            order_id=order_id,
            symbol=from_kraken_pair(descr.get("pair", "")),
            side=OrderSide(descr.get("type", "buy")),
            quantity=as_decimal(raw.get("vol")),
            filled_quantity=filled,
            order_type=order_type,
            status=self.normalize_status(raw.get("status")),
            average_fill_price=as_decimal(raw.get("price"), None) if filled else None,
            raw=raw,
        )

    async def _close_position(self, symbol: str, quantity: Optional[Decimal]) -> OrderResponse:
        position = await self.get_position(symbol)
        if position is None or not position.quantity:
            raise OrderError(f"No Kraken holding in {symbol}", broker_id=self.broker_id)

        side = OrderSide.SELL if position.quantity > 0 else OrderSide.BUY
        order = OrderRequest(
            symbol=symbol,
            side=side,
            quantity=quantity if quantity is not None else abs(position.quantity),
        )
        return await self._submit_order(order)
