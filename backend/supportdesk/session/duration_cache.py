"""
Task duration cache.
One subscription manager for all viewers of task durations.
"""
import logging
import threading
from collections import OrderedDict
from typing import Dict, List, Optional

from ..realtime import ChangeEvent, ChangeFeed, Subscription
from ..utils.telemetry import track_duration_cache
from .recorder import SessionRecorder

logger = logging.getLogger(__name__)


class DurationCache:
    """
    Cached task totals keyed by task id, least recently used evicted first.

    Refresh contract:
    - push: ``tasks`` change events carrying a total overwrite the entry;
      closed or deleted sessions invalidate it
    - pull: a read of a missing entry asks the recorder, which serves the
      stored total or recomputes it

    A change that arrives while a pull is in flight wins over the pulled
    value: each task being pulled carries a generation that every change
    bumps, and the pulled total is only stored if its generation is unchanged.
    """

    def __init__(
        self,
        recorder: SessionRecorder,
        change_feed: ChangeFeed,
        enabled: bool = True,
        max_entries: int = 10000
    ):
        self.recorder = recorder
        self.change_feed = change_feed
        self.enabled = enabled
        self.max_entries = max_entries
        self._values: "OrderedDict[str, int]" = OrderedDict()
        self._generations: Dict[str, int] = {}
        self._readers: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._subscriptions: List[Subscription] = []

        if enabled:
            self._subscriptions = [
                change_feed.subscribe("tasks", callback=self._on_change),
                change_feed.subscribe("task_sessions", callback=self._on_change),
            ]

    def _bump(self, task_id: str) -> None:
        # Caller holds the lock
        if task_id in self._readers:
            self._generations[task_id] = self._generations.get(task_id, 0) + 1

    def _store(self, task_id: str, total: int) -> None:
        # Caller holds the lock
        self._values[task_id] = total
        self._values.move_to_end(task_id)
        while len(self._values) > self.max_entries:
            evicted, _ = self._values.popitem(last=False)
            track_duration_cache("evict")
            logger.debug(f"Evicted cached duration for task {evicted}")

    def _on_change(self, event: ChangeEvent) -> None:
        row = event.row

        if event.table == "tasks":
            task_id = row.get("id")
            total = (event.new or {}).get("total_duration_seconds")
            if task_id is None:
                return
            if total is None or event.event_type == "DELETE":
                self.invalidate(task_id)
            else:
                with self._lock:
                    self._bump(task_id)
                    self._store(task_id, int(total))
                track_duration_cache("push")
            return

        # Open sessions never count, so an INSERT cannot change the total.
        if event.event_type in ("UPDATE", "DELETE") and row.get("task_id"):
            self.invalidate(row["task_id"])

    def get(self, task_id: str) -> int:
        """Total duration of a task, served from cache when fresh."""
        if not self.enabled:
            track_duration_cache("get", hit=False)
            return self.recorder.get_task_total_duration(task_id)

        with self._lock:
            cached = self._values.get(task_id)
            if cached is not None:
                self._values.move_to_end(task_id)
            else:
                self._readers[task_id] = self._readers.get(task_id, 0) + 1
                generation = self._generations.get(task_id, 0)

        if cached is not None:
            track_duration_cache("get", hit=True)
            return cached

        track_duration_cache("get", hit=False)
        try:
            total = self.recorder.get_task_total_duration(task_id)
        finally:
            with self._lock:
                fresh = self._generations.get(task_id, 0) == generation
                self._readers[task_id] -= 1
                if not self._readers[task_id]:
                    del self._readers[task_id]
                    self._generations.pop(task_id, None)

        with self._lock:
            if fresh:
                self._store(task_id, total)
                return total
            pushed = self._values.get(task_id)

        logger.debug(f"Discarded stale duration read for task {task_id}")
        return pushed if pushed is not None else total

    def peek(self, task_id: str) -> Optional[int]:
        with self._lock:
            return self._values.get(task_id)

    def invalidate(self, task_id: str) -> None:
        with self._lock:
            self._bump(task_id)
            removed = self._values.pop(task_id, None)
        if removed is not None:
            track_duration_cache("invalidate")
            logger.debug(f"Invalidated cached duration for task {task_id}")

    def clear(self) -> None:
        with self._lock:
            for task_id in self._readers:
                self._bump(task_id)
            self._values.clear()

    def close(self) -> None:
        """Drop the change feed subscriptions."""
        for subscription in self._subscriptions:
            self.change_feed.unsubscribe(subscription)
        self._subscriptions = []
        self.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)
