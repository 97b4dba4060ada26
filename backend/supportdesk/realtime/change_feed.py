"""
In-process change feed.
Delivers row-level change events keyed by table and an optional row predicate.

Version: 1.0.0
"""
import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..utils.timeutils import utcnow

logger = logging.getLogger(__name__)

RowPredicate = Callable[[Dict[str, Any]], bool]
EventCallback = Callable[["ChangeEvent"], None]


@dataclass
class ChangeEvent:
    """One insert/update/delete on a table."""
    table: str
    event_type: str  # INSERT, UPDATE, DELETE
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None
    timestamp: str = field(default_factory=lambda: utcnow().isoformat())

    @property
    def row(self) -> Dict[str, Any]:
        """Row the event is about: the new values, or the old ones for deletes."""
        return self.new or self.old or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "event_type": self.event_type,
            "new": self.new,
            "old": self.old,
            "timestamp": self.timestamp,
        }


def column_equals(column: str, value: Any) -> RowPredicate:
    """Predicate matching rows whose ``column`` equals ``value``."""
    def _predicate(row: Dict[str, Any]) -> bool:
        return row.get(column) == value
    return _predicate


class Subscription:
    """
    A single subscriber.

    Callback subscriptions are invoked synchronously on publish. Queue
    subscriptions buffer events for an async consumer; when the buffer is
    full the oldest event is dropped.
    """

    def __init__(
        self,
        table: str,
        predicate: Optional[RowPredicate] = None,
        callback: Optional[EventCallback] = None,
        max_queue_size: int = 100
    ):
        self.id = str(uuid.uuid4())
        self.table = table
        self.predicate = predicate
        self.callback = callback
        self.queue: Optional[asyncio.Queue] = None if callback else asyncio.Queue(maxsize=max_queue_size)
        self.dropped = 0
        self.closed = False

        try:
            self._loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

    def matches(self, event: ChangeEvent) -> bool:
        if self.closed or event.table != self.table:
            return False
        if self.predicate is None:
            return True
        return bool(self.predicate(event.row))

    def deliver(self, event: ChangeEvent) -> None:
        if self.callback is not None:
            self.callback(event)
            return

        if self._loop is not None and _current_loop() is not self._loop:
            self._loop.call_soon_threadsafe(self._enqueue, event)
        else:
            self._enqueue(event)

    def _enqueue(self, event: ChangeEvent) -> None:
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
            logger.warning(
                f"Change feed subscriber {self.id} is lagging, dropped oldest event",
                extra={"table": self.table, "dropped": self.dropped}
            )
        self.queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> ChangeEvent:
        """Wait for the next event. Raises asyncio.TimeoutError on timeout."""
        if self.queue is None:
            raise RuntimeError("Callback subscriptions have no event queue")
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)


def _current_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class ChangeFeed:
    """
    Publish/subscribe hub for row changes.

    Services publish after their transaction commits, so subscribers never
    observe rolled-back state.
    """

    def __init__(self):
        self._subscriptions: Dict[str, Subscription] = {}
        self._lock = threading.Lock()

    def subscribe(
        self,
        table: str,
        predicate: Optional[RowPredicate] = None,
        callback: Optional[EventCallback] = None,
        max_queue_size: int = 100
    ) -> Subscription:
        """
        Register a subscriber for one table.

        Args:
            table: Table name to listen on
            predicate: Optional row filter
            callback: Synchronous handler; when omitted events are queued
            max_queue_size: Buffer size for queued subscriptions

        Returns:
            Subscription handle
        """
        subscription = Subscription(table, predicate, callback, max_queue_size)
        with self._lock:
            self._subscriptions[subscription.id] = subscription

        logger.debug(f"Change feed subscription {subscription.id} on '{table}'")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.closed = True
        with self._lock:
            self._subscriptions.pop(subscription.id, None)

    def publish(self, event: ChangeEvent) -> int:
        """
        Deliver an event to every matching subscriber.

        Returns:
            Number of subscribers the event was delivered to
        """
        with self._lock:
            subscriptions = list(self._subscriptions.values())

        delivered = 0
        for subscription in subscriptions:
            try:
                if not subscription.matches(event):
                    continue
                subscription.deliver(event)
                delivered += 1
            except Exception as e:
                logger.error(
                    f"Change feed delivery failed for subscriber {subscription.id}: {e}",
                    exc_info=True,
                    extra={"table": event.table, "event_type": event.event_type}
                )

        return delivered

    def publish_all(self, events: Iterable[ChangeEvent]) -> int:
        return sum(self.publish(event) for event in events)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def clear(self) -> None:
        with self._lock:
            for subscription in self._subscriptions.values():
                subscription.closed = True
            self._subscriptions.clear()


class EventBuffer:
    """
    Collects events during a transaction and publishes them after commit.

    Usage:
        events = EventBuffer(feed)
        with get_db_context() as db:
            ...
            events.add("tasks", "UPDATE", new=task.to_dict())
        events.flush()
    """

    def __init__(self, feed: Optional[ChangeFeed]):
        self.feed = feed
        self.events: List[ChangeEvent] = []

    def add(self, table: str, event_type: str, new=None, old=None) -> None:
        self.events.append(ChangeEvent(table=table, event_type=event_type, new=new, old=old))

    def flush(self) -> int:
        events, self.events = self.events, []
        if self.feed is None:
            return 0
        return self.feed.publish_all(events)
