"""
Execution Store - persistence contract for the execution core.

The processor only needs three things from storage: append an audit log
entry, load a user's trade settings (falling back to configured defaults)
and, for operators and tests, read logs back. Execution log rows are
insert-only.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import List, Optional
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from brokerhub.config import Settings, get_settings
from brokerhub.models.execution import ExecutionLog, UserTradeSettingsRecord
from brokerhub.schemas.trading_schema import ExecutionLogEntry, UserTradeSettings

logger = logging.getLogger(__name__)


class ExecutionStore(ABC):
    """Storage used by the trade execution processor."""

    @abstractmethod
    async def append_execution_log(self, entry: ExecutionLogEntry) -> None:
        ...

    @abstractmethod
    async def load_user_trade_settings(self, user_id: str) -> UserTradeSettings:
        """Stored settings, or configured defaults when the user has none."""

    @abstractmethod
    async def save_user_trade_settings(self, settings: UserTradeSettings) -> UserTradeSettings:
        ...

    @abstractmethod
    async def list_execution_logs(
        self,
        signal_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[ExecutionLogEntry]:
        ...


class SqlExecutionStore(ExecutionStore):
    """ExecutionStore backed by an async SQLAlchemy session."""

    def __init__(self, db: AsyncSession, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    def default_trade_settings(self, user_id: str) -> UserTradeSettings:
        return UserTradeSettings(
            user_id=user_id,
            auto_trade_enabled=self.settings.default_auto_trade_enabled,
            risk_percentage=Decimal(str(self.settings.default_risk_percentage)),
            max_position_size=Decimal(str(self.settings.default_max_position_size)),
            enabled_brokers=list(self.settings.default_enabled_brokers),
        )

    async def append_execution_log(self, entry: ExecutionLogEntry) -> None:
        row = ExecutionLog(
            user_id=entry.user_id,
            signal_id=entry.signal_id,
            broker_id=entry.broker_id,
            status=entry.status,
            symbol=entry.symbol,
            side=entry.side,
            quantity=float(entry.quantity) if entry.quantity is not None else None,
            broker_order_id=entry.broker_order_id,
            error_message=entry.error_message,
            response=entry.response,
            timestamp=entry.timestamp,
        )
        self.db.add(row)
        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        logger.debug(f"Logged {entry.status.value} for signal {entry.signal_id} on {entry.broker_id}")

    async def _get_record(self, user_id: str) -> Optional[UserTradeSettingsRecord]:
        stmt = select(UserTradeSettingsRecord).where(UserTradeSettingsRecord.user_id == user_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def load_user_trade_settings(self, user_id: str) -> UserTradeSettings:
        record = await self._get_record(user_id)
        if record is None:
            return self.default_trade_settings(user_id)

        return UserTradeSettings(
            user_id=record.user_id,
            auto_trade_enabled=record.auto_trade_enabled,
            risk_percentage=Decimal(str(record.risk_percentage)),
            max_position_size=Decimal(str(record.max_position_size)),
            enabled_brokers=list(record.enabled_brokers or []),
        )

    async def save_user_trade_settings(self, settings: UserTradeSettings) -> UserTradeSettings:
        record = await self._get_record(settings.user_id)
        if record is None:
            record = UserTradeSettingsRecord(user_id=settings.user_id)
            self.db.add(record)

        record.auto_trade_enabled = settings.auto_trade_enabled
        record.risk_percentage = float(settings.risk_percentage)
        record.max_position_size = float(settings.max_position_size)
        record.enabled_brokers = list(settings.enabled_brokers)

        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        logger.info(f"Saved trade settings for user {settings.user_id}")
        return settings

    async def list_execution_logs(
        self,
        signal_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[ExecutionLogEntry]:
        stmt = select(ExecutionLog).order_by(ExecutionLog.id)
        if signal_id is not None:
            stmt = stmt.where(ExecutionLog.signal_id == signal_id)
        if user_id is not None:
            stmt = stmt.where(ExecutionLog.user_id == user_id)

        result = await self.db.execute(stmt)
        return [
            ExecutionLogEntry(
                user_id=row.user_id,
                signal_id=row.signal_id,
                broker_id=row.broker_id,
                status=row.status,
                symbol=row.symbol,
                side=row.side,
                quantity=Decimal(str(row.quantity)) if row.quantity is not None else None,
                broker_order_id=row.broker_order_id,
                error_message=row.error_message,
                response=row.response,
                timestamp=row.timestamp,
            )
            for row in result.scalars().all()
        ]
