"""
Application configuration for BrokerHub.

Provides:
- Environment-aware settings
- Processor timing and fan-out limits
- Position sizing precision table
- Per-venue endpoints
"""

from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache


class Settings(BaseSettings):
    # Environment
    app_env: str = "development"
    environment: str = ""  # Alias for app_env

    # Database
    database_url: str = "sqlite+aiosqlite:///./brokerhub.db"
    debug: bool = False

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    # Metrics
    metrics_enabled: bool = False
    metrics_port: int = 9108

    # Trade execution processor
    processor_poll_interval_seconds: float = 0.1
    message_timeout_seconds: float = 30.0
    broker_call_timeout_seconds: float = 10.0
    http_timeout_seconds: float = 30.0
    fan_out_concurrency: int = 1  # 1 = brokers contacted sequentially

    # Defaults for users without stored trade settings
    default_auto_trade_enabled: bool = False
    default_risk_percentage: float = 1.0
    default_max_position_size: float = 100.0
    default_enabled_brokers: list[str] = ["alpaca"]

    # Position sizing precision (decimal places)
    size_precision: dict[str, int] = {"BTC": 3, "ETH": 2}
    default_size_precision: int = 1
    venue_size_precision: dict[str, dict[str, int]] = {"tradovate": {"*": 0}, "oanda": {"*": 0}}

    # Alpaca
    alpaca_paper_url: str = "https://paper-api.alpaca.markets"
    alpaca_live_url: str = "https://api.alpaca.markets"
    alpaca_data_url: str = "https://data.alpaca.markets"

    # Tradovate
    tradovate_demo_url: str = "https://demo.tradovateapi.com/v1"
    tradovate_live_url: str = "https://live.tradovateapi.com/v1"
    tradovate_app_id: str = "BrokerHub"
    tradovate_app_version: str = "1.0"
    tradovate_token_refresh_margin_seconds: int = 60

    # OANDA
    oanda_practice_url: str = "https://api-fxpractice.oanda.com/v3"
    oanda_live_url: str = "https://api-fxtrade.oanda.com/v3"

    # MatchTrader (several venues share the platform)
    matchtrader_base_url: str = "https://mtr.matchtrader.com/api"
    matchtrader_venues: dict[str, str] = {}

    # Kraken
    kraken_base_url: str = "https://api.kraken.com"
    kraken_valuation_currency: str = "USD"

    # Mock broker
    mock_initial_balance: float = 10000.0
    mock_seed: int = 42

    @field_validator("fan_out_concurrency")
    @classmethod
    def validate_fan_out(cls, v: int) -> int:
        if v < 1:
            raise ValueError("fan_out_concurrency must be at least 1")
        return v

    @property
    def effective_env(self) -> str:
        """Get effective environment name."""
        return self.environment or self.app_env

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.effective_env in ("production", "prod")

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.effective_env in ("development", "dev", "")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra env vars not defined in Settings


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
