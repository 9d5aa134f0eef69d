"""
Global pytest configuration and fixtures for BrokerHub testing.

Broker adapters are never pointed at a real venue: adapter tests replace
the adapter's `_request` with a route table (see `venue`).
"""
import copy
import pytest
import pytest_asyncio
from decimal import Decimal
from unittest.mock import AsyncMock
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from brokerhub.config import Settings
from brokerhub.models.base import Base
from brokerhub.schemas.trading_schema import TradingSignal
from brokerhub.secrets_manager import CredentialVault


# Test database URL (in-memory SQLite for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as unit test (fast, no dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (database required)"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow (> 1 second)"
    )


@pytest_asyncio.fixture
async def test_db():
    """Create an isolated in-memory test database."""
    engine = create_async_engine(TEST_DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with maker() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from any .env file, with fast processor timings."""
    return Settings(
        _env_file=None,
        app_env="test",
        processor_poll_interval_seconds=0.01,
        message_timeout_seconds=30.0,
        broker_call_timeout_seconds=5.0,
        matchtrader_venues={"ftmo_mt": "https://mt.ftmo.example/api"},
    )


@pytest.fixture
def vault() -> CredentialVault:
    """Vault that ignores the process environment."""
    return CredentialVault(environ={})


@pytest.fixture
def btc_signal() -> TradingSignal:
    return TradingSignal(
        signal_id="sig-btc-1",
        symbol="BTC/USD",
        side="buy",
        entry_price=Decimal("60000"),
        stop_loss=Decimal("59000"),
        take_profit=Decimal("63000"),
        provider_id="provider-1",
    )


class FakeVenue:
    """
    Route table standing in for a venue's HTTP API.

    Routes map (method, path) to a response body, an exception instance to
    raise, or a callable receiving the request kwargs.
    """

    def __init__(self, routes: dict):
        self.routes = routes
        self.calls = []

    async def __call__(self, method, path, **kwargs):
        self.calls.append((method, path, kwargs))
        if (method, path) not in self.routes:
            raise AssertionError(f"Unexpected venue call: {method} {path}")
        handler = self.routes[(method, path)]
        if isinstance(handler, Exception):
            raise handler
        if callable(handler):
            return handler(**kwargs)
        return copy.deepcopy(handler)

    def calls_to(self, method, path) -> list:
        return [kwargs for m, p, kwargs in self.calls if m == method and p == path]


@pytest.fixture
def venue():
    """Factory: venue(adapter, routes) patches the adapter's HTTP layer."""
    def install(adapter, routes: dict) -> FakeVenue:
        fake = FakeVenue(routes)
        adapter._request = AsyncMock(side_effect=fake.__call__)
        return fake
    return install
