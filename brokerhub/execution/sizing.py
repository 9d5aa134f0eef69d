"""
Position sizing.

Turns a signal's stop distance and a user's risk tolerance into an order
quantity for one broker account. Pure computation: no network, no broker.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional

from brokerhub.config import Settings, get_settings
from brokerhub.schemas.trading_schema import TradingSignal
from .errors import SizingError

logger = logging.getLogger(__name__)

WILDCARD = "*"


class PositionSizer:
    """
    Risk-based position sizer.

    quantity = (equity * risk% / 100) / |entry - stop|, clamped to the
    user's max position size and rounded half-up to the precision
    configured for the symbol (and venue).
    """

    def __init__(
        self,
        precision: Optional[Dict[str, int]] = None,
        default_precision: Optional[int] = None,
        venue_precision: Optional[Dict[str, Dict[str, int]]] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        table = settings.size_precision if precision is None else precision
        venues = settings.venue_size_precision if venue_precision is None else venue_precision

        self.precision = {k.upper(): v for k, v in table.items()}
        self.default_precision = settings.default_size_precision if default_precision is None else default_precision
        self.venue_precision = {
            venue.lower(): {k.upper(): v for k, v in overrides.items()}
            for venue, overrides in venues.items()
        }

    @staticmethod
    def _match(table: Dict[str, int], symbol: str) -> Optional[int]:
        """Exact symbol first, then the longest fragment contained in it."""
        if symbol in table:
            return table[symbol]
        fragments = [f for f in table if f != WILDCARD and f in symbol]
        if fragments:
            return table[max(fragments, key=len)]
        return table.get(WILDCARD)

    def precision_for(self, symbol: str, broker_id: Optional[str] = None) -> int:
        """Decimal places allowed for `symbol` on `broker_id`."""
        symbol = symbol.upper()
        if broker_id and broker_id.lower() in self.venue_precision:
            places = self._match(self.venue_precision[broker_id.lower()], symbol)
            if places is not None:
                return places
        places = self._match(self.precision, symbol)
        return self.default_precision if places is None else places

    @staticmethod
    def risk_per_unit(signal: TradingSignal) -> Decimal:
        """Stop distance per unit; zero when the stop is missing."""
        if signal.stop_loss is None:
            return Decimal("0")
        return abs(signal.entry_price - signal.stop_loss)

    def check_sizeable(self, signal: TradingSignal) -> None:
        """
        Raises:
            SizingError: the signal has no usable stop distance
        """
        if self.risk_per_unit(signal) <= 0:
            reason = "missing stop loss" if signal.stop_loss is None else "stop loss equals entry price"
            raise SizingError(f"Signal {signal.signal_id} cannot be sized: {reason}")

    def size(
        self,
        signal: TradingSignal,
        risk_percentage: Decimal,
        max_position_size: Decimal,
        account_equity: Decimal,
        broker_id: Optional[str] = None,
        whole_units: bool = False,
    ) -> Decimal:
        """
        Compute the order quantity for one broker account.

        Args:
            whole_units: the venue only accepts integral quantities

        Returns:
            Quantity rounded to venue precision, or 0 when the signal
            cannot be sized or the account has nothing to risk
        """
        risk_per_unit = self.risk_per_unit(signal)
        if risk_per_unit <= 0:
            return Decimal("0")

        risk_amount = Decimal(str(account_equity)) * (Decimal(str(risk_percentage)) / 100)
        if risk_amount <= 0:
            return Decimal("0")

        quantity = risk_amount / risk_per_unit
        quantity = min(quantity, Decimal(str(max_position_size)))

        places = 0 if whole_units else self.precision_for(signal.symbol, broker_id)
        rounded = quantity.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)
        logger.debug(
            f"Sized {signal.symbol} for {broker_id or 'default'}: risk={risk_amount} "
            f"per_unit={risk_per_unit} raw={quantity} -> {rounded}"
        )
        return rounded
