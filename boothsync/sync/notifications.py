"""
Notification bus for sync lifecycle events.

Fan-out publish/subscribe: every subscriber owns a FIFO queue drained by its
own worker thread, so events arrive in publish order per subscriber and a
slow handler never holds up publication or other subscribers. Delivery is
best-effort; handler exceptions are logged and dropped.
"""

import itertools
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from boothsync.types import EntityKind, ErrorKind, SyncResult

logger = logging.getLogger(__name__)


# === Event vocabulary ===


class SyncEvent:
    """Marker base class for everything published on the bus."""


@dataclass(frozen=True)
class SyncStarted(SyncEvent):
    device_id: str


@dataclass(frozen=True)
class SyncProgress(SyncEvent):
    message: str
    percent: int


@dataclass(frozen=True)
class EntityUpdating(SyncEvent):
    """An entity is being changed locally because of remote data."""

    kind: EntityKind
    natural_key: str
    update_type: str  # "added", "modified" or "deleted"
    message: str = ""


@dataclass(frozen=True)
class SyncCompleted(SyncEvent):
    result: SyncResult


@dataclass(frozen=True)
class SyncFailed(SyncEvent):
    """Published as soon as a run aborts (auth failure, unreachable store)."""

    error_kind: ErrorKind
    message: str


Handler = Callable[[Any], None]

_STOP = object()


class Subscription:
    """Handle returned by NotificationBus.subscribe."""

    def __init__(self, subscription_id: int, handler: Handler, name: str):
        self.id = subscription_id
        self.handler = handler
        self.name = name
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._pending = 0
        self._idle = threading.Condition()
        self._thread = threading.Thread(
            target=self._drain, name=f"boothsync-notify-{name}", daemon=True
        )
        self._thread.start()

    @property
    def active(self) -> bool:
        return self._thread.is_alive()

    def _enqueue(self, item: Any) -> None:
        with self._idle:
            self._pending += 1
        self._queue.put_nowait(item)

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self.handler(item)
            except Exception as exc:
                logger.debug(
                    f"Subscriber {self.name} raised {type(exc).__name__} handling "
                    f"{type(item).__name__}: {exc}",
                    exc_info=True,
                )
            finally:
                with self._idle:
                    self._pending -= 1
                    self._idle.notify_all()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    def _stop(self, timeout: Optional[float]) -> None:
        self._enqueue(_STOP)
        if threading.current_thread() is not self._thread:
            self._thread.join(timeout)


class NotificationBus:
    """Non-blocking fan-out channel for SyncEvent instances."""

    def __init__(self):
        self._subscriptions: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(self, handler: Handler, name: Optional[str] = None) -> Subscription:
        subscription_id = next(self._ids)
        subscription = Subscription(
            subscription_id, handler, name or getattr(handler, "__name__", str(subscription_id))
        )
        with self._lock:
            self._subscriptions[subscription_id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription, timeout: Optional[float] = 5.0) -> bool:
        """Stop delivery. Events already queued are delivered first."""
        with self._lock:
            removed = self._subscriptions.pop(subscription.id, None)
        if removed is None:
            return False
        removed._stop(timeout)
        return True

    def publish(self, event: Any) -> None:
        """Queue ``event`` for every current subscriber and return immediately."""
        with self._lock:
            targets = list(self._subscriptions.values())
        for subscription in targets:
            subscription._enqueue(event)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every subscriber has handled everything published so far."""
        with self._lock:
            targets = list(self._subscriptions.values())
        return all(subscription.wait_idle(timeout) for subscription in targets)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def close(self, timeout: Optional[float] = 5.0) -> None:
        with self._lock:
            targets = list(self._subscriptions.values())
            self._subscriptions.clear()
        for subscription in targets:
            subscription._stop(timeout)
