"""
BrokerHub service entry point.

Wires settings, logging, metrics, the database, the credential vault and
the broker connection pool into a TradeExecutionProcessor and runs its
loop until SIGINT/SIGTERM.
"""

import asyncio
import signal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from brokerhub.config import Settings, get_settings
from brokerhub.database import AsyncSessionLocal, init_db
from brokerhub.execution import BrokerConnectionPool, MockBroker, TradeExecutionProcessor
from brokerhub.observability.logging_config import setup_logging, get_logger
from brokerhub.observability.metrics import start_metrics_server
from brokerhub.secrets_manager import CredentialVault, get_credential_vault
from brokerhub.services.execution_store import SqlExecutionStore

logger = get_logger(__name__)


def build_processor(
    db: AsyncSession,
    settings: Optional[Settings] = None,
    vault: Optional[CredentialVault] = None,
) -> TradeExecutionProcessor:
    """Assemble a processor around one database session."""
    settings = settings or get_settings()
    connections = BrokerConnectionPool(vault or get_credential_vault(), settings)
    connections.register(
        "mock",
        MockBroker.from_settings(None, broker_id="mock", settings=settings),
    )
    return TradeExecutionProcessor(
        store=SqlExecutionStore(db, settings),
        connections=connections,
        settings=settings,
    )


async def run() -> None:
    settings = get_settings()
    setup_logging(
        log_level=settings.log_level,
        log_format=settings.log_format if settings.is_production else "text",
    )
    start_metrics_server()
    await init_db()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    async with AsyncSessionLocal() as db:
        processor = build_processor(db, settings)
        await processor.start()
        logger.info(
            "BrokerHub started",
            extra={"environment": settings.effective_env},
        )
        try:
            await stop_event.wait()
        finally:
            await processor.stop()
            await processor.connections.close_all()
            logger.info("BrokerHub stopped")


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
