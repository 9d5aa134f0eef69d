"""
Trade Execution Processor.

Consumes execution requests from a work queue and fans each signal out to
every broker the user has enabled:

    queued -> sizing -> dispatching -> completed

For each broker, independently: acquire the pooled connection, make sure
it is connected, size the position against that broker's equity, place
the order and append an audit log entry. A failure at one broker becomes
a failed log entry and never stops the remaining brokers.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Dict, List, Optional, TypeVar

from brokerhub.config import Settings, get_settings
from brokerhub.models.base import utc_now
from brokerhub.models.execution import ExecutionStatus
from brokerhub.observability.metrics import (
    observe_dispatch,
    record_order_executed,
    record_order_failure,
    record_signal_skipped,
)
from brokerhub.schemas.trading_schema import (
    ExecutionLogEntry,
    ExecutionRequest,
    TradingSignal,
    UserTradeSettings,
)
from brokerhub.services.execution_store import ExecutionStore
from .base_broker import OrderRequest, OrderResponse, OrderSide, OrderStatus, OrderType
from .connections import BrokerConnectionPool, PooledConnection
from .errors import BrokerAuthenticationError, BrokerError, BrokerTimeoutError, SizingError
from .sizing import PositionSizer
from .work_queue import WorkQueue

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ExecutionState(str, Enum):
    QUEUED = "queued"
    SIZING = "sizing"
    DISPATCHING = "dispatching"
    COMPLETED = "completed"
    SKIPPED = "skipped"  # auto-trade off, no brokers or unsizeable signal
    FAILED = "failed"    # infrastructure fault aborted the request


@dataclass
class ActiveTrade:
    """In-memory aggregate of one signal's per-broker outcomes."""
    signal_id: str
    user_id: str
    signal: TradingSignal
    executions: List[ExecutionLogEntry] = field(default_factory=list)
    skipped_brokers: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)

    @property
    def executed_brokers(self) -> List[str]:
        return [e.broker_id for e in self.executions if e.status == ExecutionStatus.EXECUTED]

    @property
    def failed_brokers(self) -> List[str]:
        return [e.broker_id for e in self.executions if e.status == ExecutionStatus.FAILED]


class TradeExecutionProcessor:
    """
    Serial consumer of execution requests.

    The user-settings cache and active-trades map are owned by the
    instance, so separate processors never share hidden state.
    """

    def __init__(
        self,
        store: ExecutionStore,
        connections: Optional[BrokerConnectionPool] = None,
        queue: Optional[WorkQueue[ExecutionRequest]] = None,
        sizer: Optional[PositionSizer] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize processor.

        Args:
            store: Audit log and user settings persistence
            connections: Broker connection pool
            queue: Source of execution requests
            sizer: Position sizing engine
            settings: Application settings
        """
        self.settings = settings or get_settings()
        self.store = store
        self.connections = connections or BrokerConnectionPool(settings=self.settings)
        self.queue = queue if queue is not None else WorkQueue("execution")
        self.sizer = sizer or PositionSizer(settings=self.settings)

        self._settings_cache: Dict[str, UserTradeSettings] = {}
        self._active_trades: Dict[str, ActiveTrade] = {}
        self._states: Dict[str, ExecutionState] = {}

        self._running = False
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def submit(self, request: ExecutionRequest) -> None:
        """Enqueue an execution request. Duplicates are processed independently."""
        self.queue.enqueue(request)
        self._states[request.signal_id] = ExecutionState.QUEUED
        logger.debug(f"Queued signal {request.signal_id} for user {request.user_id}")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_execution_state(self, signal_id: str) -> Optional[ExecutionState]:
        return self._states.get(signal_id)

    def get_active_trade(self, signal_id: str) -> Optional[ActiveTrade]:
        return self._active_trades.get(signal_id)

    @property
    def active_trades(self) -> Dict[str, ActiveTrade]:
        return dict(self._active_trades)

    @property
    def is_running(self) -> bool:
        return self._running

    def invalidate_user_settings(self, user_id: Optional[str] = None) -> None:
        """Drop cached trade settings for one user, or for everyone."""
        if user_id is None:
            self._settings_cache.clear()
        else:
            self._settings_cache.pop(user_id, None)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the polling loop in the background."""
        if self._running:
            logger.warning("Trade execution processor already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            f"Trade execution processor started (poll={self.settings.processor_poll_interval_seconds}s, "
            f"fan_out={self.settings.fan_out_concurrency})"
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Trade execution processor stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await self.process_next()
            await asyncio.sleep(self.settings.processor_poll_interval_seconds)

    async def process_next(self) -> bool:
        """
        Process at most one queued request.

        Returns:
            True if a request was dequeued
        """
        request = self.queue.dequeue()
        if request is None:
            return False

        try:
            await self.handle_execution(request)
        except Exception:
            # Infrastructure fault: abandon this request, keep the loop alive
            logger.exception(f"Processing failed for signal {request.signal_id}")
            self._states[request.signal_id] = ExecutionState.FAILED
            self.queue.record_error()
        return True

    async def drain(self) -> int:
        """Process queued requests until the queue is empty."""
        processed = 0
        while await self.process_next():
            processed += 1
        return processed

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _load_settings(self, user_id: str) -> UserTradeSettings:
        cached = self._settings_cache.get(user_id)
        if cached is None:
            cached = await self.store.load_user_trade_settings(user_id)
            self._settings_cache[user_id] = cached
        return cached

    async def handle_execution(self, request: ExecutionRequest) -> Optional[ActiveTrade]:
        """
        Execute one request against every enabled broker.

        Returns:
            The aggregated trade, or None if nothing was attempted

        Raises:
            Exception: persistence faults propagate to the caller
        """
        deadline = time.monotonic() + self.settings.message_timeout_seconds
        signal = request.signal
        user_settings = await self._load_settings(request.user_id)

        if not user_settings.auto_trade_enabled:
            logger.info(f"Auto-trade disabled for user {request.user_id}, discarding signal {request.signal_id}")
            self._states[request.signal_id] = ExecutionState.SKIPPED
            record_signal_skipped("auto_trade_disabled")
            return None

        if not user_settings.enabled_brokers:
            logger.info(f"No brokers enabled for user {request.user_id}, discarding signal {request.signal_id}")
            self._states[request.signal_id] = ExecutionState.SKIPPED
            record_signal_skipped("no_brokers")
            return None

        self._states[request.signal_id] = ExecutionState.SIZING
        try:
            self.sizer.check_sizeable(signal)
        except SizingError as e:
            logger.info(f"{e}; no broker contacted")
            self._states[request.signal_id] = ExecutionState.SKIPPED
            record_signal_skipped("unsizeable")
            return None

        self._states[request.signal_id] = ExecutionState.DISPATCHING
        trade = ActiveTrade(signal_id=request.signal_id, user_id=request.user_id, signal=signal)
        brokers = list(user_settings.enabled_brokers)

        if self.settings.fan_out_concurrency <= 1:
            for broker_id in brokers:
                entry = await self._dispatch(request, user_settings, broker_id, deadline)
                await self._record(trade, broker_id, entry)
        else:
            semaphore = asyncio.Semaphore(self.settings.fan_out_concurrency)

            async def bounded(broker_id: str) -> Optional[ExecutionLogEntry]:
                async with semaphore:
                    return await self._dispatch(request, user_settings, broker_id, deadline)

            entries = await asyncio.gather(*(bounded(b) for b in brokers))
            # Written after the join, in configured broker order
            for broker_id, entry in zip(brokers, entries):
                await self._record(trade, broker_id, entry)

        self._active_trades[request.signal_id] = trade
        self._states[request.signal_id] = ExecutionState.COMPLETED
        logger.info(
            f"Signal {request.signal_id} completed: executed={trade.executed_brokers} "
            f"failed={trade.failed_brokers} skipped={trade.skipped_brokers}"
        )
        return trade

    async def _record(self, trade: ActiveTrade, broker_id: str, entry: Optional[ExecutionLogEntry]) -> None:
        if entry is None:
            trade.skipped_brokers.append(broker_id)
            return
        await self.store.append_execution_log(entry)
        trade.executions.append(entry)

    async def _call(self, awaitable: Awaitable[T], broker_id: str) -> T:
        """Await a broker call under the per-call time bound."""
        timeout = self.settings.broker_call_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            raise BrokerTimeoutError(f"{broker_id} call timed out after {timeout}s", broker_id=broker_id)

    def _build_order(self, request: ExecutionRequest, quantity: Decimal) -> OrderRequest:
        signal = request.signal
        return OrderRequest(
            symbol=signal.symbol,
            side=OrderSide(signal.side.value),
            quantity=quantity,
            order_type=OrderType.MARKET,
            stop_loss=signal.stop_loss,
            take_profit=signal.take_profit,
            metadata={
                "signal_id": request.signal_id,
                "user_id": request.user_id,
                "provider_id": signal.provider_id,
            },
        )

    def _entry(
        self,
        request: ExecutionRequest,
        broker_id: str,
        status: ExecutionStatus,
        quantity: Optional[Decimal] = None,
        **kwargs,
    ) -> ExecutionLogEntry:
        return ExecutionLogEntry(
            user_id=request.user_id,
            signal_id=request.signal_id,
            broker_id=broker_id,
            status=status,
            symbol=request.signal.symbol,
            side=request.signal.side.value,
            quantity=quantity,
            **kwargs,
        )

    def _failed(
        self,
        request: ExecutionRequest,
        broker_id: str,
        error: Exception,
        quantity: Optional[Decimal] = None,
    ) -> ExecutionLogEntry:
        if isinstance(error, BrokerError):
            message, payload = error.message, error.to_dict()
        else:
            message = str(error) or type(error).__name__
            payload = {"error": message, "error_type": type(error).__name__}
        record_order_failure(broker_id, type(error).__name__)
        return self._entry(
            request, broker_id, ExecutionStatus.FAILED, quantity,
            error_message=message, response=payload,
        )

    async def _dispatch(
        self,
        request: ExecutionRequest,
        user_settings: UserTradeSettings,
        broker_id: str,
        deadline: float,
    ) -> Optional[ExecutionLogEntry]:
        """
        Run one broker's share of a request.

        Returns:
            A log entry, or None when the computed size is zero
        """
        context = {"signal_id": request.signal_id, "user_id": request.user_id, "broker_id": broker_id}
        if time.monotonic() >= deadline:
            error = BrokerTimeoutError(
                f"Message timeout elapsed before {broker_id} was contacted",
                broker_id=broker_id,
            )
            logger.warning(f"Signal {request.signal_id}: {error.message}", extra=context)
            return self._failed(request, broker_id, error)

        started = time.monotonic()
        connection: Optional[PooledConnection] = None
        quantity: Optional[Decimal] = None
        try:
            connection = self.connections.acquire(broker_id, request.user_id)
            async with connection.lock:
                adapter = connection.adapter
                await self._call(adapter.ensure_connected(), broker_id)
                account = await self._call(adapter.get_account_info(), broker_id)

                quantity = self.sizer.size(
                    request.signal,
                    user_settings.risk_percentage,
                    user_settings.max_position_size,
                    account.equity,
                    broker_id=broker_id,
                    whole_units=not adapter.CAPABILITIES.supports_fractional,
                )
                if quantity <= 0:
                    logger.info(
                        f"Signal {request.signal_id}: size for {broker_id} is {quantity} "
                        f"(equity={account.equity}), skipping",
                        extra=context,
                    )
                    record_signal_skipped("zero_size")
                    return None

                response = await self._call(adapter.place_order(self._build_order(request, quantity)), broker_id)
        except BrokerAuthenticationError as e:
            logger.warning(f"Signal {request.signal_id}: {broker_id} authentication failed: {e.message}", extra=context)
            if connection is not None:
                await self.connections.discard(connection)
            return self._failed(request, broker_id, e, quantity)
        except BrokerError as e:
            logger.warning(f"Signal {request.signal_id}: {broker_id} failed: {e.message}", extra=context)
            return self._failed(request, broker_id, e, quantity)
        except Exception as e:
            logger.exception(f"Signal {request.signal_id}: unexpected error on {broker_id}", extra=context)
            return self._failed(request, broker_id, e, quantity)
        finally:
            observe_dispatch(broker_id, time.monotonic() - started)

        return self._order_entry(request, broker_id, quantity, response)

    def _order_entry(
        self,
        request: ExecutionRequest,
        broker_id: str,
        quantity: Decimal,
        response: OrderResponse,
    ) -> ExecutionLogEntry:
        payload = response.model_dump(mode="json")
        if response.status == OrderStatus.REJECTED:
            record_order_failure(broker_id, "rejected")
            return self._entry(
                request, broker_id, ExecutionStatus.FAILED, quantity,
                broker_order_id=response.order_id,
                error_message=f"Order {response.order_id} rejected by {broker_id}",
                response=payload,
            )

        record_order_executed(broker_id, request.signal.symbol, request.signal.side.value)
        return self._entry(
            request, broker_id, ExecutionStatus.EXECUTED, quantity,
            broker_order_id=response.order_id,
            response=payload,
        )
