from brokerhub.models.base import Base, TimestampMixin
from brokerhub.models.execution import (
    ExecutionLog,
    ExecutionStatus,
    UserTradeSettingsRecord,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "ExecutionLog",
    "ExecutionStatus",
    "UserTradeSettingsRecord",
]
