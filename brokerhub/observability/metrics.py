"""
Prometheus metrics collection for BrokerHub.

Provides:
- Order execution metrics (executed, failed, dispatch duration)
- Work queue metrics (depth, errors)
- Broker connection state
- Standalone /metrics HTTP endpoint for Prometheus scraping
"""

import logging

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from brokerhub.config import get_settings

logger = logging.getLogger(__name__)


# ============================================================================
# Metrics Definitions
# ============================================================================

orders_executed_total = Counter(
    'brokerhub_orders_executed_total',
    'Total orders accepted by a broker',
    ['broker', 'symbol', 'side']
)

orders_failed_total = Counter(
    'brokerhub_orders_failed_total',
    'Total failed order attempts',
    ['broker', 'reason']
)

signals_skipped_total = Counter(
    'brokerhub_signals_skipped_total',
    'Execution requests dropped before any order was attempted',
    ['reason']
)

queue_depth = Gauge(
    'brokerhub_queue_depth',
    'Items currently waiting in a work queue',
    ['queue']
)

queue_errors_total = Counter(
    'brokerhub_queue_errors_total',
    'Processing faults recorded against a work queue',
    ['queue']
)

broker_connected = Gauge(
    'brokerhub_broker_connected',
    'Broker connection state (1 = connected)',
    ['broker']
)

broker_dispatch_seconds = Histogram(
    'brokerhub_broker_dispatch_seconds',
    'Time spent dispatching one order to one broker',
    ['broker'],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
)


# ============================================================================
# Setup Function
# ============================================================================

def start_metrics_server(port: int | None = None) -> bool:
    """Expose metrics over HTTP when enabled.

    Returns:
        True if the exporter was started
    """
    settings = get_settings()
    if not settings.metrics_enabled:
        return False

    port = port or settings.metrics_port
    start_http_server(port)
    logger.info(f"Metrics exporter listening on :{port}")
    return True


# ============================================================================
# Helper Functions
# ============================================================================

def record_order_executed(broker: str, symbol: str, side: str) -> None:
    """Record an order accepted by a broker."""
    orders_executed_total.labels(broker=broker, symbol=symbol, side=side).inc()


def record_order_failure(broker: str, reason: str) -> None:
    """Record a failed order attempt."""
    orders_failed_total.labels(broker=broker, reason=reason).inc()


def record_signal_skipped(reason: str) -> None:
    """Record an execution request that produced no orders."""
    signals_skipped_total.labels(reason=reason).inc()


def set_queue_depth(queue: str, depth: int) -> None:
    queue_depth.labels(queue=queue).set(depth)


def record_queue_error(queue: str) -> None:
    queue_errors_total.labels(queue=queue).inc()


def set_broker_connected(broker: str, connected: bool) -> None:
    broker_connected.labels(broker=broker).set(1 if connected else 0)


def observe_dispatch(broker: str, seconds: float) -> None:
    broker_dispatch_seconds.labels(broker=broker).observe(seconds)
