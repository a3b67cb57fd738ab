"""In-process publish/subscribe for operation status updates."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

SUBSCRIPTION_BUFFER = 100


@dataclass(frozen=True)
class OperationEvent:
    type: str
    operation: dict[str, Any]
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(timespec="microseconds")
    )


class Subscription:
    def __init__(self, subscription_id: int, buffer_size: int = SUBSCRIPTION_BUFFER) -> None:
        self.subscription_id = subscription_id
        self.queue: queue.Queue[OperationEvent] = queue.Queue(maxsize=buffer_size)
        self.closed = False

    def get(self, timeout: float | None = None) -> OperationEvent | None:
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[OperationEvent]:
        items: list[OperationEvent] = []
        while True:
            try:
                items.append(self.queue.get_nowait())
            except queue.Empty:
                return items


class OperationEvents:
    def __init__(self, buffer_size: int = SUBSCRIPTION_BUFFER) -> None:
        self.buffer_size = buffer_size
        self._lock = threading.Lock()
        self._next_id = 1
        self._subscriptions: dict[int, Subscription] = {}

    def subscribe(self) -> Subscription:
        with self._lock:
            subscription = Subscription(self._next_id, self.buffer_size)
            self._subscriptions[subscription.subscription_id] = subscription
            self._next_id += 1
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(subscription.subscription_id, None)
        subscription.closed = True

    def publish(self, event_type: str, operation: dict[str, Any]) -> OperationEvent:
        event = OperationEvent(type=event_type, operation=dict(operation))
        with self._lock:
            subscribers = list(self._subscriptions.values())
        for subscription in subscribers:
            try:
                subscription.queue.put_nowait(event)
            except queue.Full:
                logger.warning(
                    "Dropping %s event for %s: subscriber %s buffer full",
                    event_type,
                    operation.get("id", ""),
                    subscription.subscription_id,
                )
        return event

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)
