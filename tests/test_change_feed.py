"""
Tests for the in-process change feed.
"""
import asyncio

import pytest

from supportdesk.exceptions import InvalidTransitionError
from supportdesk.realtime import ChangeEvent, ChangeFeed, EventBuffer, column_equals


def _event(table="tasks", event_type="UPDATE", **row):
    return ChangeEvent(table=table, event_type=event_type, new=row or {"id": "t1"})


def test_callback_receives_matching_table_only():
    feed = ChangeFeed()
    received = []
    feed.subscribe("tasks", callback=received.append)

    feed.publish(_event("tasks"))
    feed.publish(_event("task_sessions"))

    assert [event.table for event in received] == ["tasks"]


def test_predicate_filters_rows():
    feed = ChangeFeed()
    received = []
    feed.subscribe("tasks", predicate=column_equals("id", "t2"), callback=received.append)

    assert feed.publish(_event(id="t1")) == 0
    assert feed.publish(_event(id="t2")) == 1
    assert received[0].row["id"] == "t2"


def test_delete_events_match_on_old_row():
    feed = ChangeFeed()
    received = []
    feed.subscribe("task_comments", predicate=column_equals("task_id", "t1"), callback=received.append)

    feed.publish(ChangeEvent(table="task_comments", event_type="DELETE", old={"id": "c1", "task_id": "t1"}))

    assert len(received) == 1


def test_unsubscribe_stops_delivery():
    feed = ChangeFeed()
    received = []
    subscription = feed.subscribe("tasks", callback=received.append)

    feed.unsubscribe(subscription)
    feed.publish(_event())

    assert received == []
    assert feed.subscriber_count == 0


def test_failing_subscriber_does_not_block_others():
    feed = ChangeFeed()
    received = []

    def broken(event):
        raise RuntimeError("boom")

    feed.subscribe("tasks", callback=broken)
    feed.subscribe("tasks", callback=received.append)

    feed.publish(_event())

    assert len(received) == 1


async def test_queue_subscription_delivers_in_order():
    feed = ChangeFeed()
    subscription = feed.subscribe("tasks")

    feed.publish(_event(id="t1"))
    feed.publish(_event(id="t2"))

    first = await subscription.get(timeout=1)
    second = await subscription.get(timeout=1)
    assert [first.row["id"], second.row["id"]] == ["t1", "t2"]


async def test_queue_subscription_drops_oldest_when_full():
    feed = ChangeFeed()
    subscription = feed.subscribe("tasks", max_queue_size=2)

    for task_id in ("t1", "t2", "t3"):
        feed.publish(_event(id=task_id))

    assert subscription.dropped == 1
    assert (await subscription.get(timeout=1)).row["id"] == "t2"


async def test_queue_get_times_out():
    feed = ChangeFeed()
    subscription = feed.subscribe("tasks")

    with pytest.raises(asyncio.TimeoutError):
        await subscription.get(timeout=0.01)


def test_event_buffer_publishes_only_on_flush():
    feed = ChangeFeed()
    received = []
    feed.subscribe("tasks", callback=received.append)

    buffer = EventBuffer(feed)
    buffer.add("tasks", "INSERT", new={"id": "t1"})
    assert received == []

    assert buffer.flush() == 1
    assert len(received) == 1
    assert buffer.flush() == 0


def test_event_buffer_without_feed_discards():
    buffer = EventBuffer(None)
    buffer.add("tasks", "INSERT", new={"id": "t1"})

    assert buffer.flush() == 0
    assert buffer.events == []


def test_rejected_transition_publishes_nothing(lifecycle, change_feed, task, agent):
    lifecycle.set_status(task.id, "cancelled", agent.id)

    received = []
    change_feed.subscribe("tasks", callback=received.append)
    change_feed.subscribe("task_activities", callback=received.append)

    with pytest.raises(InvalidTransitionError):
        lifecycle.set_status(task.id, "in_progress", agent.id)

    assert received == []
