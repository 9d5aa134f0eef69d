"""Observability module for BrokerHub - logging and metrics."""

from brokerhub.observability.logging_config import setup_logging, get_logger
from brokerhub.observability.metrics import (
    start_metrics_server,
    orders_executed_total,
    orders_failed_total,
    queue_depth,
    queue_errors_total,
    broker_connected,
)

__all__ = [
    "setup_logging",
    "get_logger",
    "start_metrics_server",
    "orders_executed_total",
    "orders_failed_total",
    "queue_depth",
    "queue_errors_total",
    "broker_connected",
]
