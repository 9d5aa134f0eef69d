"""
Typed errors raised by broker adapters and the execution core.

Adapters never retry; they raise one of these and let the caller decide.
"""

from typing import Any, Optional


class BrokerError(Exception):
    """Base class for all broker-side failures."""

    def __init__(
        self,
        message: str,
        broker_id: Optional[str] = None,
        raw_response: Optional[Any] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.broker_id = broker_id
        self.raw_response = raw_response
        self.status_code = status_code

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "error_type": type(self).__name__,
            "broker_id": self.broker_id,
            "status_code": self.status_code,
            "raw_response": self.raw_response,
        }


class BrokerConnectionError(BrokerError):
    """Could not establish or keep a broker session (auth or network)."""


class BrokerAuthenticationError(BrokerConnectionError):
    """Credentials or session token rejected by the venue."""


class BrokerConfigurationError(BrokerError):
    """Broker id is unknown or has no usable credentials."""


class OrderError(BrokerError):
    """The venue rejected the order or failed to process it."""


class BrokerTimeoutError(BrokerError):
    """A broker call exceeded its time bound."""


class SizingError(Exception):
    """A signal cannot be sized (missing or zero stop distance)."""
