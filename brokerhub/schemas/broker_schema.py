"""Credential value types handed out by the credential vault."""

import hashlib
from typing import Optional

from pydantic import BaseModel, ConfigDict, SecretStr


class BrokerCredentials(BaseModel):
    """
    Secrets for one broker connection.

    Which fields are populated depends on the venue: API key/secret,
    username/password, or a pre-issued access/session token.
    """
    model_config = ConfigDict(frozen=True)

    broker_id: str
    api_key: Optional[str] = None
    api_secret: Optional[SecretStr] = None
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    access_token: Optional[SecretStr] = None
    account_id: Optional[str] = None
    base_url: Optional[str] = None
    is_paper: bool = True
    # System-level credentials may be shared across users
    is_system: bool = False

    def secret(self, field: str) -> Optional[str]:
        """Return the plain value of a secret field, or None."""
        value = getattr(self, field)
        if value is None:
            return None
        if isinstance(value, SecretStr):
            return value.get_secret_value()
        return str(value)

    def has_fields(self, fields: tuple[str, ...]) -> bool:
        return all(self.secret(name) for name in fields)

    def fingerprint(self) -> str:
        """Stable digest identifying this credential set without exposing it."""
        parts = [
            self.broker_id,
            self.api_key or "",
            self.secret("api_secret") or "",
            self.username or "",
            self.secret("password") or "",
            self.secret("access_token") or "",
            self.account_id or "",
            self.base_url or "",
            str(self.is_paper),
        ]
        return hashlib.sha256("\x1f".join(parts).encode()).hexdigest()[:16]
