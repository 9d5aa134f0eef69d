from brokerhub.services.execution_store import ExecutionStore, SqlExecutionStore

__all__ = ["ExecutionStore", "SqlExecutionStore"]
