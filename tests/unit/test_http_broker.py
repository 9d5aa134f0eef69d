"""
Unit tests for the shared HTTP adapter plumbing.

The aiohttp session is replaced by a MagicMock whose `request` returns a
fake response context manager.
"""

import asyncio
import aiohttp
import pytest
from unittest.mock import AsyncMock, MagicMock

from brokerhub.execution.base_broker import ConnectionState
from brokerhub.execution.errors import (
    BrokerAuthenticationError,
    BrokerConnectionError,
    BrokerError,
    BrokerTimeoutError,
    OrderError,
)
from brokerhub.execution.oanda_broker import OandaBroker
from brokerhub.schemas.broker_schema import BrokerCredentials


class FakeResponse:
    def __init__(self, status: int, text: str = ""):
        self.status = status
        self._text = text

    async def text(self) -> str:
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


def fake_session(response=None, error=None) -> MagicMock:
    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()
    if error is not None:
        session.request = MagicMock(side_effect=error)
    else:
        session.request = MagicMock(return_value=response)
    return session


class TestHttpBrokerAdapter:
    """Test error mapping in the HTTP layer."""

    @pytest.fixture
    def broker(self, settings) -> OandaBroker:
        credentials = BrokerCredentials(broker_id="oanda", access_token="tok", account_id="101")
        return OandaBroker(credentials, settings=settings)

    @pytest.mark.asyncio
    async def test_success_returns_json(self, broker: OandaBroker):
        broker._session = fake_session(FakeResponse(200, '{"ok": true}'))
        assert await broker._request("GET", "/ping") == {"ok": True}

    @pytest.mark.asyncio
    async def test_auth_headers_and_url(self, broker: OandaBroker, settings):
        session = fake_session(FakeResponse(200, "{}"))
        broker._session = session

        await broker._request("POST", "/orders", json_body={"a": 1}, params={"b": "2"})

        args, kwargs = session.request.call_args
        assert args == ("POST", f"{settings.oanda_practice_url}/orders")
        assert kwargs["headers"]["Authorization"] == "Bearer tok"
        assert kwargs["headers"]["Accept"] == "application/json"
        assert kwargs["json"] == {"a": 1}
        assert kwargs["params"] == {"b": "2"}

    @pytest.mark.asyncio
    async def test_unauthenticated_call_skips_auth_headers(self, broker: OandaBroker):
        session = fake_session(FakeResponse(200, "{}"))
        broker._session = session
        await broker._request("GET", "/public", authenticated=False)
        assert "Authorization" not in session.request.call_args.kwargs["headers"]

    @pytest.mark.asyncio
    async def test_empty_body_is_none(self, broker: OandaBroker):
        broker._session = fake_session(FakeResponse(204, ""))
        assert await broker._request("DELETE", "/thing") is None

    @pytest.mark.asyncio
    async def test_non_json_body_is_wrapped(self, broker: OandaBroker):
        broker._session = fake_session(FakeResponse(200, "<html>ok</html>"))
        assert await broker._request("GET", "/page") == {"raw": "<html>ok</html>"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_rejected_credentials_drop_session(self, broker: OandaBroker, status):
        broker._set_state(ConnectionState.CONNECTED)
        broker.session_token = "stale"
        broker._session = fake_session(FakeResponse(status, '{"errorMessage": "Insufficient authorization"}'))

        with pytest.raises(BrokerAuthenticationError) as exc_info:
            await broker._request("GET", "/accounts")

        assert exc_info.value.status_code == status
        assert broker.state == ConnectionState.DISCONNECTED
        assert broker.session_token is None

    @pytest.mark.asyncio
    async def test_order_rejection_is_order_error(self, broker: OandaBroker):
        broker._session = fake_session(FakeResponse(422, '{"message": "insufficient buying power"}'))
        with pytest.raises(OrderError, match="insufficient buying power") as exc_info:
            await broker._request("POST", "/orders", order_call=True)
        assert exc_info.value.raw_response == {"message": "insufficient buying power"}

    @pytest.mark.asyncio
    async def test_server_error_is_plain_broker_error(self, broker: OandaBroker):
        broker._session = fake_session(FakeResponse(500, "boom"))
        with pytest.raises(BrokerError) as exc_info:
            await broker._request("GET", "/accounts")
        assert type(exc_info.value) is BrokerError
        assert exc_info.value.status_code == 500
        assert "boom" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_transport_error(self, broker: OandaBroker):
        broker._session = fake_session(error=aiohttp.ClientConnectionError("connection refused"))
        with pytest.raises(BrokerConnectionError, match="unreachable"):
            await broker._request("GET", "/accounts")

    @pytest.mark.asyncio
    async def test_timeout(self, broker: OandaBroker):
        broker._session = fake_session(error=asyncio.TimeoutError())
        with pytest.raises(BrokerTimeoutError):
            await broker._request("GET", "/accounts")

    @pytest.mark.asyncio
    async def test_connect_wraps_venue_error(self, broker: OandaBroker):
        broker._session = fake_session(FakeResponse(500, '{"errorMessage": "maintenance"}'))
        with pytest.raises(BrokerConnectionError, match="maintenance") as exc_info:
            await broker.connect()
        assert exc_info.value.status_code == 500
        assert broker.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_closes_session(self, broker: OandaBroker):
        session = fake_session(FakeResponse(200, "{}"))
        broker._session = session
        await broker.connect()

        await broker.disconnect()

        session.close.assert_awaited_once()
        assert broker._session is None
        assert not broker.is_connected
