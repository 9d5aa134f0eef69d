"""
Broker connection pool.

One adapter (one live session) per (broker id, owner, credential
fingerprint). The owner is "system" for system-level credentials, which
are shared across users, and the user id otherwise. Adapters are built
lazily on first use and are not connected until the caller asks.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Tuple

from brokerhub.config import Settings, get_settings
from brokerhub.models.base import utc_now
from brokerhub.secrets_manager import CredentialVault, get_credential_vault
from .base_broker import BaseBrokerAdapter
from .errors import BrokerConfigurationError, BrokerError
from .registry import create_adapter, get_broker_class

logger = logging.getLogger(__name__)

SYSTEM_OWNER = "system"

ConnectionKey = Tuple[str, str, str]


@dataclass
class PooledConnection:
    """A pooled adapter. Hold `lock` while issuing calls through it."""
    broker_id: str
    owner: str
    adapter: BaseBrokerAdapter
    key: ConnectionKey
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    created_at: datetime = field(default_factory=utc_now)


class BrokerConnectionPool:
    """Creates, shares and tears down broker adapters."""

    def __init__(self, vault: Optional[CredentialVault] = None, settings: Optional[Settings] = None):
        self.vault = vault or get_credential_vault()
        self.settings = settings or get_settings()
        self._connections: Dict[ConnectionKey, PooledConnection] = {}
        self._registered: Dict[str, PooledConnection] = {}

    def __len__(self) -> int:
        return len(self._connections) + len(self._registered)

    def register(self, broker_id: str, adapter: BaseBrokerAdapter) -> PooledConnection:
        """Install a fixed system-level adapter for `broker_id`."""
        broker_id = broker_id.lower()
        key = (broker_id, SYSTEM_OWNER, "registered")
        connection = PooledConnection(broker_id=broker_id, owner=SYSTEM_OWNER, adapter=adapter, key=key)
        self._registered[broker_id] = connection
        logger.info(f"Registered {adapter.display_name} as '{broker_id}'")
        return connection

    def acquire(self, broker_id: str, user_id: Optional[str] = None) -> PooledConnection:
        """
        Get the pooled connection for a broker and user, creating it if needed.

        Raises:
            BrokerConfigurationError: unknown broker id or missing credentials
        """
        broker_id = broker_id.lower()
        if broker_id in self._registered:
            return self._registered[broker_id]

        broker_class = get_broker_class(broker_id, self.settings)
        credentials = self.vault.get_credentials(broker_id, user_id)
        if credentials is None and broker_class.REQUIRED_CREDENTIALS:
            raise BrokerConfigurationError(
                f"No credentials configured for {broker_id}",
                broker_id=broker_id,
            )

        if credentials is None or credentials.is_system or user_id is None:
            owner = SYSTEM_OWNER
        else:
            owner = user_id
        fingerprint = credentials.fingerprint() if credentials else "anonymous"
        key = (broker_id, owner, fingerprint)

        connection = self._connections.get(key)
        if connection is None:
            adapter = create_adapter(broker_id, credentials, self.settings)
            connection = PooledConnection(broker_id=broker_id, owner=owner, adapter=adapter, key=key)
            self._connections[key] = connection
            logger.debug(f"Created connection {broker_id} owner={owner}")
        return connection

    async def discard(self, connection: PooledConnection) -> None:
        """Disconnect and forget a connection so the next acquire starts fresh."""
        if self._connections.get(connection.key) is connection:
            del self._connections[connection.key]
        try:
            await connection.adapter.disconnect()
        except BrokerError as e:
            logger.warning(f"Error disconnecting {connection.broker_id}: {e}")
        logger.info(f"Discarded connection {connection.broker_id} owner={connection.owner}")

    async def close_all(self) -> None:
        connections = list(self._connections.values()) + list(self._registered.values())
        self._connections.clear()
        for connection in connections:
            try:
                await connection.adapter.disconnect()
            except BrokerError as e:
                logger.warning(f"Error disconnecting {connection.broker_id}: {e}")
        logger.info(f"Closed {len(connections)} broker connections")
