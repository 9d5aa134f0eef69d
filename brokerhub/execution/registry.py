"""
Broker lookup table.

Adapter classes register themselves under a broker id at import time:

    @register_broker("alpaca")
    class AlpacaBroker(HttpBrokerAdapter):
        ...

Callers resolve ids to classes here and never import venue modules directly.
"""

from typing import Optional

from brokerhub.config import Settings, get_settings
from brokerhub.schemas.broker_schema import BrokerCredentials
from .base_broker import BaseBrokerAdapter
from .errors import BrokerConfigurationError


BROKER_REGISTRY: dict[str, type[BaseBrokerAdapter]] = {}


def register_broker(name: str):
    """Decorator to register a broker implementation."""
    def decorator(cls: type[BaseBrokerAdapter]):
        BROKER_REGISTRY[name.lower()] = cls
        return cls
    return decorator


def get_broker_class(name: str, settings: Optional[Settings] = None) -> type[BaseBrokerAdapter]:
    """Get a broker class by id.

    Venue ids listed in `matchtrader_venues` resolve to the MatchTrader adapter.
    """
    settings = settings or get_settings()
    name_lower = name.lower()
    if name_lower in BROKER_REGISTRY:
        return BROKER_REGISTRY[name_lower]
    if name_lower in settings.matchtrader_venues and "matchtrader" in BROKER_REGISTRY:
        return BROKER_REGISTRY["matchtrader"]

    available = ", ".join(list_brokers(settings))
    raise BrokerConfigurationError(f"Unknown broker: {name}. Available: {available}", broker_id=name)


def list_brokers(settings: Optional[Settings] = None) -> list[str]:
    """List all broker ids, including configured MatchTrader venues."""
    settings = settings or get_settings()
    return list(BROKER_REGISTRY.keys()) + [v for v in settings.matchtrader_venues if v not in BROKER_REGISTRY]


def create_adapter(
    broker_id: str,
    credentials: Optional[BrokerCredentials],
    settings: Optional[Settings] = None,
) -> BaseBrokerAdapter:
    """Instantiate the adapter registered for `broker_id`."""
    settings = settings or get_settings()
    broker_class = get_broker_class(broker_id, settings)
    return broker_class.from_settings(credentials, broker_id=broker_id.lower(), settings=settings)
