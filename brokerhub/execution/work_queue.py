"""FIFO buffer between signal ingestion and the execution processor."""

import logging
from collections import deque
from typing import Deque, Generic, Optional, TypeVar

from brokerhub.observability.metrics import record_queue_error, set_queue_depth

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WorkQueue(Generic[T]):
    """
    Unbounded FIFO queue with simple counters.

    No priority and no deduplication: the same item enqueued twice is
    dequeued twice.
    """

    def __init__(self, name: str = "execution"):
        self.name = name
        self._items: Deque[T] = deque()
        self.enqueued_count = 0
        self.dequeued_count = 0
        self.error_count = 0

    def __len__(self) -> int:
        return len(self._items)

    @property
    def is_empty(self) -> bool:
        return not self._items

    def enqueue(self, item: T) -> None:
        self._items.append(item)
        self.enqueued_count += 1
        set_queue_depth(self.name, len(self._items))

    def dequeue(self) -> Optional[T]:
        """Pop the oldest item, or None when empty."""
        if not self._items:
            return None
        item = self._items.popleft()
        self.dequeued_count += 1
        set_queue_depth(self.name, len(self._items))
        return item

    def record_error(self) -> None:
        self.error_count += 1
        record_queue_error(self.name)
        logger.warning(f"Queue '{self.name}' error recorded (total={self.error_count})")

    def stats(self) -> dict:
        return {
            "name": self.name,
            "depth": len(self._items),
            "enqueued": self.enqueued_count,
            "dequeued": self.dequeued_count,
            "errors": self.error_count,
        }
