"""
Tests for the task lifecycle controller: status machine, session side
effects, assignment, follow-up and completion.
"""
from datetime import datetime

import pytest

from supportdesk.exceptions import (
    InvalidStatusError,
    InvalidTransitionError,
    NotFoundError,
    TaskNotFoundError,
    TaskValidationError,
)
from supportdesk.models import AuditAction, Notification, TaskStatus


def _actions(lifecycle, task_id):
    return [entry.action for entry in lifecycle.list_activities(task_id)]


# ===========================
# Records
# ===========================

def test_create_task_starts_new(lifecycle, agent):
    task = lifecycle.create_task(title="  Rechnung fehlt  ", created_by=agent.id)

    assert task.status == TaskStatus.NEW.value
    assert task.title == "Rechnung fehlt"
    assert task.readable_id.startswith("TASK-")
    assert task.total_duration_seconds is None


def test_create_task_rejects_blank_title(lifecycle):
    with pytest.raises(TaskValidationError):
        lifecycle.create_task(title="   ")


def test_get_unknown_task_raises(lifecycle):
    with pytest.raises(TaskNotFoundError):
        lifecycle.get_task("does-not-exist")


def test_list_tasks_filters_by_status(lifecycle, task, agent):
    lifecycle.create_task(title="Zweite Aufgabe")
    lifecycle.set_status(task.id, "waiting_for_customer", agent.id)

    waiting = lifecycle.list_tasks(status="waiting_for_customer")

    assert [t.id for t in waiting] == [task.id]
    with pytest.raises(InvalidStatusError):
        lifecycle.list_tasks(status="archived")


# ===========================
# set_status
# ===========================

def test_in_progress_opens_session_for_acting_user(lifecycle, recorder, task, agent):
    lifecycle.set_status(task.id, "in_progress", agent.id)

    assert recorder.get_active_session(task.id, agent.id) is not None


def test_in_progress_keeps_existing_session(lifecycle, recorder, task, agent):
    existing = recorder.start_session(task.id, agent.id)

    lifecycle.set_status(task.id, TaskStatus.IN_PROGRESS, agent.id)

    assert recorder.get_active_session(task.id, agent.id).id == existing.id
    assert len(recorder.list_sessions(task.id)) == 1


@pytest.mark.parametrize("closing_status", ["completed", "followup"])
def test_closing_statuses_end_session(lifecycle, recorder, task, agent, clock, closing_status):
    lifecycle.set_status(task.id, "in_progress", agent.id)
    clock.advance(seconds=120)

    updated = lifecycle.set_status(task.id, closing_status, agent.id)

    assert recorder.get_active_session(task.id, agent.id) is None
    assert updated.total_duration_seconds == 120


def test_waiting_for_customer_keeps_session(lifecycle, recorder, task, agent):
    lifecycle.set_status(task.id, "in_progress", agent.id)
    lifecycle.set_status(task.id, "waiting_for_customer", agent.id)

    assert recorder.get_active_session(task.id, agent.id) is not None


def test_unknown_status_rejected(lifecycle, task, agent):
    with pytest.raises(InvalidStatusError):
        lifecycle.set_status(task.id, "done", agent.id)

    assert lifecycle.get_task(task.id).status == "new"


@pytest.mark.parametrize("terminal", ["completed", "cancelled"])
def test_terminal_tasks_reject_status_changes(lifecycle, task, agent, terminal):
    lifecycle.set_status(task.id, terminal, agent.id)

    with pytest.raises(InvalidTransitionError):
        lifecycle.set_status(task.id, "in_progress", agent.id)

    assert lifecycle.get_task(task.id).status == terminal


def test_status_change_is_audited(lifecycle, task, agent):
    lifecycle.set_status(task.id, "in_progress", agent.id)

    entry = lifecycle.list_activities(task.id)[-1]
    assert entry.action == AuditAction.STATUS_CHANGE.value
    assert entry.status_from == "new"
    assert entry.status_to == "in_progress"
    assert entry.user_id == agent.id
    assert entry.previous_value == {"status": "new"}


# ===========================
# reopen
# ===========================

def test_reopen_completed_task(lifecycle, recorder, task, agent, clock):
    lifecycle.set_status(task.id, "completed", agent.id)
    clock.advance(seconds=1)

    reopened = lifecycle.reopen(task.id, agent.id)

    assert reopened.status == "in_progress"
    assert recorder.get_active_session(task.id, agent.id) is not None
    assert _actions(lifecycle, task.id)[-1] == AuditAction.REOPEN.value


@pytest.mark.parametrize("status", ["new", "cancelled", "followup"])
def test_reopen_requires_completed(lifecycle, task, agent, status):
    if status != "new":
        lifecycle.set_status(task.id, status, agent.id)

    with pytest.raises(InvalidTransitionError):
        lifecycle.reopen(task.id, agent.id)


# ===========================
# Viewing
# ===========================

def test_open_auto_starts_new_task_of_assignee(lifecycle, recorder, task, agent):
    opened = lifecycle.open_task(task.id, agent.id)

    assert opened.status == "in_progress"
    assert recorder.get_active_session(task.id, agent.id) is not None
    assert sorted(_actions(lifecycle, task.id)) == [AuditAction.OPEN.value, AuditAction.STATUS_CHANGE.value]


def test_open_by_other_user_does_not_change_status(lifecycle, recorder, task, other_agent):
    opened = lifecycle.open_task(task.id, other_agent.id)

    assert opened.status == "new"
    assert recorder.get_active_session(task.id, other_agent.id) is not None


def test_open_closes_sessions_on_other_tasks(lifecycle, recorder, task, agent, clock):
    previous = lifecycle.create_task(title="Vorherige Aufgabe", assigned_to=agent.id)
    lifecycle.open_task(previous.id, agent.id)
    clock.advance(seconds=45)

    lifecycle.open_task(task.id, agent.id)

    assert recorder.get_active_session(previous.id, agent.id) is None
    assert recorder.get_task_total_duration(previous.id) == 45


def test_open_completed_task_records_no_session(lifecycle, recorder, task, agent):
    lifecycle.set_status(task.id, "completed", agent.id)

    lifecycle.open_task(task.id, agent.id)

    assert recorder.get_active_session(task.id, agent.id) is None


def test_close_view_returns_recorded_seconds(lifecycle, task, agent, clock):
    lifecycle.open_task(task.id, agent.id)
    clock.advance(seconds=33)

    assert lifecycle.close_task_view(task.id, agent.id) == 33
    assert lifecycle.close_task_view(task.id, agent.id) is None
    assert _actions(lifecycle, task.id)[-2:] == [AuditAction.CLOSE.value, AuditAction.CLOSE.value]


# ===========================
# Assignment
# ===========================

def test_assign_to_self_starts_work(lifecycle, recorder, other_agent, agent):
    task = lifecycle.create_task(title="Unzugewiesen")

    assigned = lifecycle.assign_to_self(task.id, other_agent.id)

    assert assigned.assigned_to == other_agent.id
    assert assigned.status == "in_progress"
    assert recorder.get_active_session(task.id, other_agent.id) is not None
    assert AuditAction.ASSIGN.value in _actions(lifecycle, task.id)


def test_assign_to_other_user_notifies_and_keeps_actor_idle(
    lifecycle, recorder, task, agent, other_agent, db_session
):
    assigned = lifecycle.assign_to(task.id, other_agent.id, agent.id, note="Bitte Rückruf")

    assert assigned.assigned_to == other_agent.id
    assert assigned.forwarded_to == "Bitte Rückruf"
    assert assigned.status == "in_progress"
    assert recorder.get_active_session(task.id, agent.id) is None

    notification = db_session.query(Notification).filter(Notification.user_id == other_agent.id).one()
    assert notification.task_id == task.id
    assert "weitergeleitet" in notification.message
    assert notification.message.endswith("Notiz: Bitte Rückruf")


def test_assign_without_note_says_assigned(lifecycle, task, agent, other_agent, db_session):
    lifecycle.assign_to(task.id, other_agent.id, agent.id)

    notification = db_session.query(Notification).one()
    assert "zugewiesen" in notification.message
    assert "Notiz" not in notification.message


def test_assign_to_unknown_user_raises(lifecycle, task, agent):
    with pytest.raises(NotFoundError):
        lifecycle.assign_to(task.id, "ghost", agent.id)

    assert lifecycle.get_task(task.id).assigned_to == agent.id


# ===========================
# Follow-up and completion
# ===========================

def test_schedule_follow_up(lifecycle, recorder, task, agent, clock):
    lifecycle.open_task(task.id, agent.id)
    clock.advance(minutes=2)
    when = datetime(2026, 1, 12, 10, 0, 0)

    parked = lifecycle.schedule_follow_up(task.id, when, "Rückruf vereinbart", agent.id)

    assert parked.status == "followup"
    assert parked.follow_up_date == when
    assert recorder.get_active_session(task.id, agent.id) is None

    entry = lifecycle.list_activities(task.id)[-1]
    assert entry.action == AuditAction.FOLLOW_UP.value
    assert entry.new_value["note"] == "Rückruf vereinbart"


def test_follow_up_requires_date(lifecycle, task, agent):
    with pytest.raises(TaskValidationError):
        lifecycle.schedule_follow_up(task.id, None, None, agent.id)


def test_follow_up_on_closed_task_rejected(lifecycle, task, agent):
    lifecycle.set_status(task.id, "cancelled", agent.id)

    with pytest.raises(InvalidTransitionError):
        lifecycle.schedule_follow_up(task.id, datetime(2026, 2, 1), None, agent.id)


def test_complete_with_comment(lifecycle, task, agent, clock):
    lifecycle.open_task(task.id, agent.id)
    clock.advance(minutes=5)

    completed = lifecycle.complete_with_comment(task.id, "Neuer Schlüssel bestellt", agent.id)

    assert completed.status == "completed"
    assert completed.closing_comment == "Neuer Schlüssel bestellt"
    assert completed.total_duration_seconds == 300


def test_complete_requires_comment(lifecycle, task, agent):
    with pytest.raises(TaskValidationError):
        lifecycle.complete_with_comment(task.id, "  ", agent.id)

    assert lifecycle.get_task(task.id).status == "new"


def test_find_next_task_prefers_new_then_oldest(lifecycle, agent, clock):
    older_progress = lifecycle.create_task(title="A", assigned_to=agent.id)
    lifecycle.set_status(older_progress.id, "in_progress", None)
    clock.advance(seconds=1)
    first_new = lifecycle.create_task(title="B", assigned_to=agent.id)
    clock.advance(seconds=1)
    lifecycle.create_task(title="C", assigned_to=agent.id)

    assert lifecycle.find_next_task(agent.id).id == first_new.id

    lifecycle.set_status(first_new.id, "cancelled", None)
    lifecycle.set_status(lifecycle.find_next_task(agent.id).id, "completed", None)

    assert lifecycle.find_next_task(agent.id).id == older_progress.id


def test_find_next_task_none_left(lifecycle, other_agent):
    assert lifecycle.find_next_task(other_agent.id) is None


# ===========================
# Comments
# ===========================

def test_comments_roundtrip(lifecycle, task, agent, clock):
    comment = lifecycle.add_comment(task.id, agent.id, "Kunde informiert")

    assert [c.content for c in lifecycle.list_comments(task.id)] == ["Kunde informiert"]

    clock.advance(seconds=1)

    lifecycle.delete_comment(task.id, comment.id, agent.id)

    assert lifecycle.list_comments(task.id) == []
    assert _actions(lifecycle, task.id) == [
        AuditAction.COMMENT_ADDED.value,
        AuditAction.COMMENT_DELETED.value,
    ]


def test_delete_unknown_comment_raises(lifecycle, task, agent):
    with pytest.raises(NotFoundError):
        lifecycle.delete_comment(task.id, "missing", agent.id)


def test_start_timing_switches_task(lifecycle, recorder, task, agent):
    other = lifecycle.create_task(title="Andere Aufgabe")
    lifecycle.start_timing(other.id, agent.id)

    session = lifecycle.start_timing(task.id, agent.id)

    assert session.task_id == task.id
    assert recorder.get_active_session(other.id, agent.id) is None


@pytest.mark.parametrize("closed_status", ["completed", "cancelled"])
def test_start_timing_rejects_closed_task(lifecycle, recorder, task, agent, closed_status):
    lifecycle.set_status(task.id, closed_status, agent.id)
    recorder.end_session(task.id, agent.id)

    with pytest.raises(InvalidTransitionError):
        lifecycle.start_timing(task.id, agent.id)

    assert recorder.get_active_session(task.id, agent.id) is None
