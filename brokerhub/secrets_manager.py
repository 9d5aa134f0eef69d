"""
Credential vault for BrokerHub.

Provides:
- Per-user and system-level broker credentials
- Environment variable fallback for system credentials
- Secret masking for logs
"""

import os
import logging
from typing import Optional, Dict, Tuple
from functools import lru_cache

from brokerhub.schemas.broker_schema import BrokerCredentials

logger = logging.getLogger(__name__)


class CredentialVault:
    """Hands out read-only broker credentials on demand."""

    # Environment variable suffix -> BrokerCredentials field
    ENV_FIELDS: Dict[str, str] = {
        "API_KEY": "api_key",
        "API_SECRET": "api_secret",
        "USERNAME": "username",
        "PASSWORD": "password",
        "ACCESS_TOKEN": "access_token",
        "ACCOUNT_ID": "account_id",
        "BASE_URL": "base_url",
    }

    def __init__(self, environ: Optional[Dict[str, str]] = None):
        self._environ = environ if environ is not None else os.environ
        self._user_credentials: Dict[Tuple[str, str], BrokerCredentials] = {}
        self._system_credentials: Dict[str, BrokerCredentials] = {}

    def register_credentials(
        self,
        credentials: BrokerCredentials,
        user_id: Optional[str] = None,
    ) -> None:
        """Store credentials for a user, or system-wide when no user is given."""
        broker_id = credentials.broker_id.lower()
        if user_id is None:
            self._system_credentials[broker_id] = credentials.model_copy(update={"is_system": True})
            logger.info(f"Registered system credentials for {broker_id}")
        else:
            self._user_credentials[(broker_id, user_id)] = credentials.model_copy(update={"is_system": False})
            logger.info(f"Registered credentials for {broker_id} user={user_id}")

    def remove_credentials(self, broker_id: str, user_id: Optional[str] = None) -> bool:
        broker_id = broker_id.lower()
        if user_id is None:
            return self._system_credentials.pop(broker_id, None) is not None
        return self._user_credentials.pop((broker_id, user_id), None) is not None

    def get_credentials(self, broker_id: str, user_id: Optional[str] = None) -> Optional[BrokerCredentials]:
        """Resolve credentials for a broker.

        Lookup order: the user's own credentials, registered system
        credentials, then system credentials from the environment.

        Returns:
            Credentials or None if the broker is not configured
        """
        broker_id = broker_id.lower()

        if user_id is not None and (broker_id, user_id) in self._user_credentials:
            return self._user_credentials[(broker_id, user_id)]

        if broker_id in self._system_credentials:
            return self._system_credentials[broker_id]

        return self._from_environment(broker_id)

    def _from_environment(self, broker_id: str) -> Optional[BrokerCredentials]:
        prefix = broker_id.upper().replace("-", "_")
        values = {}
        for suffix, field in self.ENV_FIELDS.items():
            value = self._environ.get(f"{prefix}_{suffix}")
            if value:
                values[field] = value

        if not values:
            return None

        paper = self._environ.get(f"{prefix}_PAPER")
        if paper is not None:
            values["is_paper"] = paper.lower() in ("1", "true", "yes")

        if values.get("api_key"):
            logger.debug(f"Loaded {broker_id} credentials from environment (key {self.mask_secret(values['api_key'])})")
        return BrokerCredentials(broker_id=broker_id, is_system=True, **values)

    @staticmethod
    def mask_secret(value: str, visible_chars: int = 4) -> str:
        """Mask a secret value for safe logging.

        Args:
            value: The secret value to mask
            visible_chars: Number of characters to show at end

        Returns:
            Masked string like '****xyz'
        """
        if not value or len(value) <= visible_chars:
            return "****"
        return "*" * (len(value) - visible_chars) + value[-visible_chars:]


@lru_cache()
def get_credential_vault() -> CredentialVault:
    """Get cached CredentialVault instance."""
    return CredentialVault()
