"""
Task lifecycle controller.

Enforces the task status vocabulary and the side effects of each
transition. Every operation runs as one transaction: the status write, its
audit entry and the session adjustment commit together or not at all.
Change events are published only after the commit.

Version: 1.0.0
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.orm import Session

from ..database import get_db_context
from ..exceptions import (
    InvalidStatusError,
    InvalidTransitionError,
    NotFoundError,
    TaskNotFoundError,
    TaskValidationError,
)
from ..models import (
    SESSION_CLOSING_STATUSES,
    TERMINAL_STATUSES,
    AuditAction,
    AuditLogEntry,
    Notification,
    Profile,
    Task,
    TaskComment,
    TaskSession,
    TaskSource,
    TaskStatus,
)
from ..realtime import ChangeFeed, EventBuffer
from ..session.recorder import DbFactory, SessionRecorder
from ..utils.telemetry import metrics_collector
from ..utils.timeutils import Clock, utcnow
from .audit_service import AuditLog

logger = logging.getLogger(__name__)


def parse_status(value: Union[str, TaskStatus]) -> TaskStatus:
    try:
        return TaskStatus.parse(value)
    except ValueError:
        raise InvalidStatusError(str(value))


class TaskLifecycleController:
    """
    Status machine for tasks.

    States: new, in_progress, followup, waiting_for_customer, completed,
    cancelled, forwarded. ``completed`` and ``cancelled`` are terminal; only
    ``reopen`` leaves ``completed``.
    """

    def __init__(
        self,
        recorder: SessionRecorder,
        db_factory: DbFactory = get_db_context,
        change_feed: Optional[ChangeFeed] = None,
        clock: Clock = utcnow
    ):
        self.recorder = recorder
        self.db_factory = db_factory
        self.change_feed = change_feed
        self.clock = clock
        self.audit = AuditLog(clock=clock)

    # ===========================
    # Helpers
    # ===========================

    @staticmethod
    def _get_task(db: Session, task_id: str) -> Task:
        task = db.get(Task, task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _apply_status(
        self,
        db: Session,
        task: Task,
        new_status: TaskStatus,
        acting_user_id: Optional[str],
        events: EventBuffer,
        action: AuditAction = AuditAction.STATUS_CHANGE,
        extra: Optional[Dict[str, Any]] = None,
        adjust_sessions: bool = True,
        allow_terminal_exit: bool = False
    ) -> Task:
        old_status = task.task_status

        if old_status in TERMINAL_STATUSES and new_status != old_status and not allow_terminal_exit:
            raise InvalidTransitionError(
                task.id, old_status.value, new_status.value,
                reason="task is closed, reopen it first"
            )

        previous = task.to_dict()

        task.status = new_status.value
        task.updated_at = self.clock()
        db.flush()

        new_value = {"status": new_status.value}
        if extra:
            new_value.update(extra)

        self.audit.record(
            db,
            task_id=task.id,
            user_id=acting_user_id,
            action=action,
            status_from=old_status.value,
            status_to=new_status.value,
            previous_value={"status": old_status.value},
            new_value=new_value,
            events=events
        )

        if adjust_sessions and acting_user_id:
            if new_status == TaskStatus.IN_PROGRESS:
                self.recorder.open_session(db, task.id, acting_user_id, events)
            elif new_status in SESSION_CLOSING_STATUSES:
                self.recorder.close_sessions(db, task.id, acting_user_id, events)

        events.add("tasks", "UPDATE", new=task.to_dict(), old=previous)

        logger.info(
            f"Task {task.readable_id} status {old_status.value} -> {new_status.value}",
            extra={
                "task_id": task.id,
                "user_id": acting_user_id,
                "status_from": old_status.value,
                "status_to": new_status.value
            }
        )
        return task

    def _commit(self, events: EventBuffer) -> None:
        for event in events.events:
            if event.table == "task_activities" and event.new and event.new.get("status_to"):
                metrics_collector.record_transition(
                    event.new.get("status_from"),
                    event.new["status_to"]
                )
        events.flush()

    # ===========================
    # Task records
    # ===========================

    def create_task(
        self,
        title: str,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
        assigned_to: Optional[str] = None,
        customer_id: Optional[str] = None,
        endkunde_id: Optional[str] = None,
        endkunde_email: Optional[str] = None,
        matched_use_case_id: Optional[str] = None,
        match_confidence: Optional[float] = None,
        source: Union[str, TaskSource] = TaskSource.MANUAL
    ) -> Task:
        if not title or not title.strip():
            raise TaskValidationError("title", "Title must not be empty")

        events = EventBuffer(self.change_feed)
        with self.db_factory() as db:
            now = self.clock()
            task = Task(
                title=title.strip(),
                description=description,
                status=TaskStatus.NEW.value,
                source=TaskSource(source).value,
                created_by=created_by,
                assigned_to=assigned_to,
                customer_id=customer_id,
                endkunde_id=endkunde_id,
                endkunde_email=endkunde_email,
                matched_use_case_id=matched_use_case_id,
                match_confidence=match_confidence,
                created_at=now,
                updated_at=now
            )
            db.add(task)
            db.flush()
            events.add("tasks", "INSERT", new=task.to_dict())

        events.flush()
        logger.info(f"Task created: {task.readable_id}", extra={"task_id": task.id})
        return task

    def get_task(self, task_id: str) -> Task:
        with self.db_factory() as db:
            return self._get_task(db, task_id)

    def list_tasks(
        self,
        status: Optional[str] = None,
        assigned_to: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Task]:
        with self.db_factory() as db:
            query = db.query(Task)
            if status is not None:
                query = query.filter(Task.status == parse_status(status).value)
            if assigned_to is not None:
                query = query.filter(Task.assigned_to == assigned_to)
            return query.order_by(Task.created_at.desc()).offset(offset).limit(limit).all()

    def list_activities(self, task_id: str) -> List[AuditLogEntry]:
        with self.db_factory() as db:
            self._get_task(db, task_id)
            return self.audit.list_for_task(db, task_id)

    # ===========================
    # Status transitions
    # ===========================

    def set_status(
        self,
        task_id: str,
        new_status: Union[str, TaskStatus],
        acting_user_id: Optional[str]
    ) -> Task:
        """
        Change a task's status.

        Opens a session for the acting user on ``in_progress`` (unless one is
        active) and closes it on ``completed`` or ``followup``.

        Raises:
            InvalidStatusError: Unknown status value
            TaskNotFoundError: Task does not exist
            InvalidTransitionError: Task is in a terminal state
        """
        status = parse_status(new_status)

        events = EventBuffer(self.change_feed)
        with self.db_factory() as db:
            task = self._get_task(db, task_id)
            self._apply_status(db, task, status, acting_user_id, events)

        self._commit(events)
        return task

    def reopen(self, task_id: str, acting_user_id: Optional[str]) -> Task:
        """Force ``completed -> in_progress``."""
        events = EventBuffer(self.change_feed)
        with self.db_factory() as db:
            task = self._get_task(db, task_id)
            if task.task_status != TaskStatus.COMPLETED:
                raise InvalidTransitionError(
                    task.id, task.status, TaskStatus.IN_PROGRESS.value,
                    reason="only completed tasks can be reopened"
                )
            self._apply_status(
                db, task, TaskStatus.IN_PROGRESS, acting_user_id, events,
                action=AuditAction.REOPEN,
                allow_terminal_exit=True
            )

        self._commit(events)
        return task

    # ===========================
    # Viewing
    # ===========================

    def open_task(self, task_id: str, user_id: str) -> Task:
        """
        The user activated a task (opened its detail view).

        Closes the user's sessions on other tasks, then either applies the
        auto-transition (``new`` and assigned to this user becomes
        ``in_progress``) or opens a session if the task is not terminal.
        """
        events = EventBuffer(self.change_feed)
        with self.db_factory() as db:
            task = self._get_task(db, task_id)

            self.recorder.close_other_sessions(db, user_id, except_task_id=task.id, events=events)

            if task.task_status == TaskStatus.NEW and task.assigned_to == user_id:
                logger.info(f"Auto-starting task {task.readable_id} for assignee", extra={"task_id": task.id})
                self._apply_status(db, task, TaskStatus.IN_PROGRESS, user_id, events)
            elif not task.is_terminal:
                self.recorder.open_session(db, task.id, user_id, events)

            self.audit.record(db, task.id, user_id, AuditAction.OPEN, events=events)

        self._commit(events)
        return task

    def start_timing(self, task_id: str, user_id: str) -> Optional[TaskSession]:
        """
        Start the user's time segment on a task, closing their other ones.

        Closed tasks take no more time; repeated starts return the active
        session.

        Raises:
            TaskNotFoundError: unknown task
            InvalidTransitionError: task is completed or cancelled
        """
        task = self.get_task(task_id)
        if task.is_terminal:
            raise InvalidTransitionError(
                task.id, task.status, TaskStatus.IN_PROGRESS.value,
                reason="cannot time a closed task"
            )

        self.recorder.end_sessions_for_user(user_id, except_task_id=task_id)
        return self.recorder.start_session(task_id, user_id)

    def close_task_view(self, task_id: str, user_id: str) -> Optional[int]:
        """
        The user left the task (navigated away or unloaded the page).

        Returns:
            Seconds recorded by the closed session, or None if none was active
        """
        events = EventBuffer(self.change_feed)
        with self.db_factory() as db:
            task = self._get_task(db, task_id)
            closed = self.recorder.close_sessions(db, task.id, user_id, events)
            self.audit.record(
                db, task.id, user_id, AuditAction.CLOSE,
                new_value={"duration_seconds": sum(s.duration_seconds for s in closed)} if closed else None,
                events=events
            )

        self._commit(events)
        if not closed:
            return None
        return sum(session.duration_seconds for session in closed)

    # ===========================
    # Assignment
    # ===========================

    def assign_to_self(self, task_id: str, user_id: str) -> Task:
        """Take over a task; the user starts working it immediately."""
        events = EventBuffer(self.change_feed)
        with self.db_factory() as db:
            task = self._get_task(db, task_id)
            previous_assignee = task.assigned_to

            task.assigned_to = user_id
            task.forwarded_to = None
            task.updated_at = self.clock()
            db.flush()

            self.audit.record(
                db, task.id, user_id, AuditAction.ASSIGN,
                previous_value={"assigned_to": previous_assignee},
                new_value={"assigned_to": user_id},
                events=events
            )

            if not task.is_terminal:
                if task.task_status != TaskStatus.IN_PROGRESS:
                    self._apply_status(db, task, TaskStatus.IN_PROGRESS, user_id, events)
                else:
                    self.recorder.open_session(db, task.id, user_id, events)
                    events.add("tasks", "UPDATE", new=task.to_dict())
            else:
                events.add("tasks", "UPDATE", new=task.to_dict())

        self._commit(events)
        return task

    def assign_to(
        self,
        task_id: str,
        assignee_id: str,
        acting_user_id: Optional[str],
        note: str = ""
    ) -> Task:
        """
        Hand a task to another user and notify them.

        The acting user does not start a session; the assignee will when
        they open the task.
        """
        note = (note or "").strip()

        events = EventBuffer(self.change_feed)
        with self.db_factory() as db:
            task = self._get_task(db, task_id)
            assignee = db.get(Profile, assignee_id)
            if assignee is None:
                raise NotFoundError(f"User not found: {assignee_id}")

            previous_assignee = task.assigned_to
            task.assigned_to = assignee_id
            task.forwarded_to = note or None
            task.updated_at = self.clock()
            db.flush()

            self.audit.record(
                db, task.id, acting_user_id, AuditAction.ASSIGN,
                previous_value={"assigned_to": previous_assignee},
                new_value={"assigned_to": assignee_id, "note": note or None},
                events=events
            )

            if not task.is_terminal and task.task_status != TaskStatus.IN_PROGRESS:
                self._apply_status(
                    db, task, TaskStatus.IN_PROGRESS, acting_user_id, events,
                    adjust_sessions=False
                )
            else:
                events.add("tasks", "UPDATE", new=task.to_dict())

            verb = "weitergeleitet" if note else "zugewiesen"
            message = f'Aufgabe "{task.readable_id or task.title}" wurde Ihnen {verb}.'
            if note:
                message += f" Notiz: {note}"

            notification = Notification(
                user_id=assignee_id,
                task_id=task.id,
                message=message,
                created_at=self.clock()
            )
            db.add(notification)
            db.flush()
            events.add("notifications", "INSERT", new=notification.to_dict())

        self._commit(events)
        logger.info(
            f"Task {task.readable_id} assigned to {assignee_id}",
            extra={"task_id": task.id, "user_id": acting_user_id, "assignee_id": assignee_id}
        )
        return task

    # ===========================
    # Follow-up and completion
    # ===========================

    def schedule_follow_up(
        self,
        task_id: str,
        follow_up_at: datetime,
        note: Optional[str],
        acting_user_id: Optional[str]
    ) -> Task:
        """
        Park the task until ``follow_up_at``.

        Raises:
            InvalidTransitionError: Task is completed or cancelled
        """
        if follow_up_at is None:
            raise TaskValidationError("follow_up_date", "Follow-up date is required")

        events = EventBuffer(self.change_feed)
        with self.db_factory() as db:
            task = self._get_task(db, task_id)
            if task.is_terminal:
                raise InvalidTransitionError(
                    task.id, task.status, TaskStatus.FOLLOWUP.value,
                    reason="cannot schedule a follow-up on a closed task"
                )

            task.follow_up_date = follow_up_at
            self._apply_status(
                db, task, TaskStatus.FOLLOWUP, acting_user_id, events,
                action=AuditAction.FOLLOW_UP,
                extra={"follow_up_date": follow_up_at.isoformat(), "note": note or None}
            )

        self._commit(events)
        return task

    def complete_with_comment(self, task_id: str, comment: str, acting_user_id: Optional[str]) -> Task:
        """Complete a task with a closing comment."""
        comment = (comment or "").strip()
        if not comment:
            raise TaskValidationError("closing_comment", "Closing comment must not be empty")

        events = EventBuffer(self.change_feed)
        with self.db_factory() as db:
            task = self._get_task(db, task_id)
            task.closing_comment = comment
            self._apply_status(
                db, task, TaskStatus.COMPLETED, acting_user_id, events,
                extra={"closing_comment": comment}
            )

        self._commit(events)
        return task

    def find_next_task(self, user_id: str) -> Optional[Task]:
        """Oldest ``new`` task assigned to the user, else the oldest ``in_progress`` one."""
        with self.db_factory() as db:
            for status in (TaskStatus.NEW, TaskStatus.IN_PROGRESS):
                task = (
                    db.query(Task)
                    .filter(Task.assigned_to == user_id, Task.status == status.value)
                    .order_by(Task.created_at)
                    .first()
                )
                if task is not None:
                    return task
        return None

    # ===========================
    # Comments
    # ===========================

    def add_comment(self, task_id: str, user_id: Optional[str], content: str) -> TaskComment:
        content = (content or "").strip()
        if not content:
            raise TaskValidationError("content", "Comment must not be empty")

        events = EventBuffer(self.change_feed)
        with self.db_factory() as db:
            task = self._get_task(db, task_id)
            comment = TaskComment(task_id=task.id, user_id=user_id, content=content, created_at=self.clock())
            db.add(comment)
            db.flush()

            self.audit.record(
                db, task.id, user_id, AuditAction.COMMENT_ADDED,
                new_value={"comment_id": comment.id, "content": content},
                events=events
            )
            events.add("task_comments", "INSERT", new=comment.to_dict())

        self._commit(events)
        return comment

    def delete_comment(self, task_id: str, comment_id: str, user_id: Optional[str]) -> None:
        events = EventBuffer(self.change_feed)
        with self.db_factory() as db:
            comment = db.get(TaskComment, comment_id)
            if comment is None or comment.task_id != task_id:
                raise NotFoundError(f"Comment not found: {comment_id}")

            snapshot = comment.to_dict()
            db.delete(comment)
            db.flush()

            self.audit.record(
                db, task_id, user_id, AuditAction.COMMENT_DELETED,
                previous_value={"comment_id": comment_id, "content": snapshot["content"]},
                events=events
            )
            events.add("task_comments", "DELETE", old=snapshot)

        self._commit(events)

    def list_comments(self, task_id: str) -> List[TaskComment]:
        with self.db_factory() as db:
            self._get_task(db, task_id)
            return (
                db.query(TaskComment)
                .filter(TaskComment.task_id == task_id)
                .order_by(TaskComment.created_at)
                .all()
            )
