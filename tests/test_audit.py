"""
Tests for the append-only audit log.
"""
import pytest

from supportdesk.exceptions import AuditLogImmutableError, InvalidTransitionError
from supportdesk.models import AuditAction, AuditLogEntry


def test_every_action_leaves_an_entry(lifecycle, task, agent, other_agent, clock):
    lifecycle.open_task(task.id, agent.id)
    clock.advance(seconds=1)
    lifecycle.assign_to(task.id, other_agent.id, agent.id)
    clock.advance(seconds=1)
    lifecycle.complete_with_comment(task.id, "Erledigt", other_agent.id)

    actions = [entry.action for entry in lifecycle.list_activities(task.id)]

    assert actions[-2:] == [AuditAction.ASSIGN.value, AuditAction.STATUS_CHANGE.value]
    assert AuditAction.OPEN.value in actions


def test_completion_entry_carries_closing_comment(lifecycle, task, agent):
    lifecycle.complete_with_comment(task.id, "Erledigt", agent.id)

    entry = lifecycle.list_activities(task.id)[-1]
    assert entry.status_to == "completed"
    assert entry.new_value == {"status": "completed", "closing_comment": "Erledigt"}


def test_failed_transition_writes_no_entry(lifecycle, task, agent):
    lifecycle.set_status(task.id, "cancelled", agent.id)

    with pytest.raises(InvalidTransitionError):
        lifecycle.set_status(task.id, "followup", agent.id)

    assert len(lifecycle.list_activities(task.id)) == 1


def test_entries_cannot_be_updated(lifecycle, task, agent, db_factory):
    lifecycle.set_status(task.id, "in_progress", agent.id)

    with pytest.raises(AuditLogImmutableError):
        with db_factory() as db:
            entry = db.query(AuditLogEntry).filter(AuditLogEntry.task_id == task.id).one()
            entry.status_to = "cancelled"

    assert lifecycle.list_activities(task.id)[0].status_to == "in_progress"


def test_entries_cannot_be_deleted(lifecycle, task, agent, db_factory):
    lifecycle.set_status(task.id, "in_progress", agent.id)

    with pytest.raises(AuditLogImmutableError):
        with db_factory() as db:
            db.delete(db.query(AuditLogEntry).filter(AuditLogEntry.task_id == task.id).one())

    assert len(lifecycle.list_activities(task.id)) == 1
