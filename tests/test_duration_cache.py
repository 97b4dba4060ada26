"""
Tests for the task duration cache and its change feed refresh.
"""
import pytest

from supportdesk.models import Task
from supportdesk.realtime import ChangeEvent
from supportdesk.session import DurationCache


@pytest.fixture
def cache(recorder, change_feed):
    duration_cache = DurationCache(recorder, change_feed)
    yield duration_cache
    duration_cache.close()


def test_miss_reads_through_recorder(cache, task):
    assert cache.peek(task.id) is None
    assert cache.get(task.id) == 0
    assert cache.peek(task.id) == 0


def test_closed_session_pushes_new_total(cache, recorder, task, agent, clock):
    cache.get(task.id)

    recorder.start_session(task.id, agent.id)
    clock.advance(seconds=75)
    recorder.end_session(task.id, agent.id)

    assert cache.peek(task.id) == 75
    assert cache.get(task.id) == 75


def test_session_update_without_total_invalidates(cache, change_feed, task):
    cache.get(task.id)

    change_feed.publish(ChangeEvent(
        table="task_sessions",
        event_type="UPDATE",
        new={"id": "s1", "task_id": task.id, "duration_seconds": 10}
    ))

    assert cache.peek(task.id) is None


def test_session_insert_keeps_entry(cache, recorder, task, agent):
    cache.get(task.id)
    recorder.start_session(task.id, agent.id)

    assert cache.peek(task.id) == 0


def test_recompute_publishes_corrected_total(cache, recorder, task, db_factory):
    with db_factory() as db:
        db.get(Task, task.id).total_duration_seconds = 300

    assert cache.get(task.id) == 300

    recorder.recompute_task_total_duration(task.id)

    assert cache.peek(task.id) == 0


def test_disabled_cache_always_reads_through(recorder, change_feed, task, agent, clock):
    cache = DurationCache(recorder, change_feed, enabled=False)

    assert change_feed.subscriber_count == 0
    assert cache.get(task.id) == 0
    assert len(cache) == 0

    recorder.start_session(task.id, agent.id)
    clock.advance(seconds=12)
    recorder.end_session(task.id, agent.id)

    assert cache.get(task.id) == 12


def test_close_drops_subscriptions(recorder, change_feed):
    cache = DurationCache(recorder, change_feed)
    assert change_feed.subscriber_count == 2

    cache.close()

    assert change_feed.subscriber_count == 0


def test_push_during_pull_is_not_overwritten(cache, recorder, change_feed, task, monkeypatch):
    read_total = recorder.get_task_total_duration

    def read_then_session_closes(task_id):
        stale = read_total(task_id)
        change_feed.publish(ChangeEvent(
            table="tasks",
            event_type="UPDATE",
            new={"id": task_id, "total_duration_seconds": 60}
        ))
        return stale

    monkeypatch.setattr(recorder, "get_task_total_duration", read_then_session_closes)

    assert cache.get(task.id) == 60
    assert cache.peek(task.id) == 60


def test_invalidation_during_pull_skips_store(cache, recorder, change_feed, task, monkeypatch):
    read_total = recorder.get_task_total_duration

    def read_then_invalidate(task_id):
        stale = read_total(task_id)
        change_feed.publish(ChangeEvent(
            table="task_sessions",
            event_type="UPDATE",
            new={"id": "s1", "task_id": task_id, "duration_seconds": 5}
        ))
        return stale

    monkeypatch.setattr(recorder, "get_task_total_duration", read_then_invalidate)

    assert cache.get(task.id) == 0
    assert cache.peek(task.id) is None


def test_least_recently_used_entry_is_evicted(recorder, change_feed, lifecycle, task):
    second = lifecycle.create_task(title="Zweite Aufgabe")
    third = lifecycle.create_task(title="Dritte Aufgabe")
    cache = DurationCache(recorder, change_feed, max_entries=2)

    cache.get(task.id)
    cache.get(second.id)
    cache.get(task.id)
    cache.get(third.id)

    assert len(cache) == 2
    assert cache.peek(second.id) is None
    assert cache.peek(task.id) == 0
    cache.close()
