"""
Shared aiohttp plumbing for REST broker adapters.

Maps transport and HTTP failures onto the typed broker errors. No retries
happen here; retry policy belongs to the caller.
"""

import asyncio
import json
import logging
from typing import Any, Optional

import aiohttp

from brokerhub.config import Settings, get_settings
from brokerhub.schemas.broker_schema import BrokerCredentials
from .base_broker import BaseBrokerAdapter
from .errors import (
    BrokerAuthenticationError,
    BrokerConnectionError,
    BrokerError,
    BrokerTimeoutError,
    OrderError,
)

logger = logging.getLogger(__name__)


class HttpBrokerAdapter(BaseBrokerAdapter):
    """Base for adapters that talk to a venue over HTTP."""

    def __init__(
        self,
        credentials: Optional[BrokerCredentials] = None,
        broker_id: Optional[str] = None,
        base_url: Optional[str] = None,
        settings: Optional[Settings] = None,
    ):
        super().__init__(credentials, broker_id)
        self.settings = settings or get_settings()
        url = base_url or (credentials.base_url if credentials else None) or self.default_base_url()
        self.base_url = url.rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_settings(cls, credentials, broker_id=None, settings=None):
        return cls(credentials, broker_id=broker_id, settings=settings)

    def default_base_url(self) -> str:
        raise NotImplementedError

    def _auth_headers(self) -> dict[str, str]:
        """Headers sent on authenticated calls."""
        return {}

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.settings.http_timeout_seconds)
            )
        return self._session

    async def disconnect(self) -> None:
        try:
            await super().disconnect()
        finally:
            if self._session and not self._session.closed:
                await self._session.close()
            self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json_body: Optional[Any] = None,
        data: Optional[Any] = None,
        headers: Optional[dict] = None,
        base_url: Optional[str] = None,
        authenticated: bool = True,
        order_call: bool = False,
    ) -> Any:
        """
        Make an HTTP request to the venue.

        Args:
            method: HTTP verb
            path: Path relative to the base URL
            order_call: Raise OrderError instead of BrokerError on rejection

        Returns:
            Decoded JSON body (None for empty bodies)
        """
        url = f"{base_url or self.base_url}{path}"
        request_headers = {"Accept": "application/json"}
        if authenticated:
            request_headers.update(self._auth_headers())
        if headers:
            request_headers.update(headers)

        session = await self._get_session()
        try:
            async with session.request(
                method, url, params=params, json=json_body, data=data, headers=request_headers
            ) as response:
                payload = self._decode(await response.text())

                if response.status in (401, 403):
                    self.mark_session_lost()
                    raise BrokerAuthenticationError(
                        f"{self.display_name} rejected credentials ({response.status})",
                        broker_id=self.broker_id,
                        raw_response=payload,
                        status_code=response.status,
                    )

                if response.status >= 400:
                    error_cls = OrderError if order_call else BrokerError
                    raise error_cls(
                        f"{self.display_name} {method} {path} failed ({response.status}): {self._error_text(payload)}",
                        broker_id=self.broker_id,
                        raw_response=payload,
                        status_code=response.status,
                    )

                return payload
        except asyncio.TimeoutError as e:
            logger.error(f"{self.display_name} {method} {path} timed out")
            raise BrokerTimeoutError(
                f"{self.display_name} {method} {path} timed out",
                broker_id=self.broker_id,
            ) from e
        except aiohttp.ClientError as e:
            logger.error(f"{self.display_name} {method} {path} transport error: {e}")
            raise BrokerConnectionError(
                f"{self.display_name} unreachable: {e}",
                broker_id=self.broker_id,
            ) from e

    @staticmethod
    def _decode(text: str) -> Any:
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError:
            return {"raw": text}

    @staticmethod
    def _error_text(payload: Any) -> str:
        """Pull the venue's error message out of a response body."""
        if isinstance(payload, dict):
            for key in ("message", "errorMessage", "errorText", "failureText", "error", "raw"):
                if payload.get(key):
                    return str(payload[key])
        return str(payload)
