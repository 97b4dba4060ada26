"""
Session recorder: time accounting for (task, user) pairs.

A session is one continuous interval during which a user had a task open.
The recorder opens and closes sessions and maintains the task's cached
total duration.

Version: 1.0.0
"""
import logging
import math
from collections import defaultdict
from contextlib import AbstractContextManager
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..database import get_db_context
from ..exceptions import TaskNotFoundError
from ..models import Task, TaskSession
from ..realtime import ChangeFeed, EventBuffer
from ..utils.telemetry import track_session_closed, track_session_opened
from ..utils.timeutils import Clock, format_duration, utcnow

logger = logging.getLogger(__name__)

DbFactory = Callable[[], AbstractContextManager]


class SessionRecorder:
    """
    Opens and closes task sessions and accumulates durations.

    Methods taking a ``db`` argument run inside the caller's transaction, so
    the lifecycle controller can combine a status change, its audit entry
    and the session adjustment into one commit. The remaining public
    methods open their own transaction and are best-effort: storage failures
    are logged and reported as ``None``.
    """

    def __init__(
        self,
        db_factory: DbFactory = get_db_context,
        change_feed: Optional[ChangeFeed] = None,
        clock: Clock = utcnow
    ):
        self.db_factory = db_factory
        self.change_feed = change_feed
        self.clock = clock

    # ===========================
    # Transactional primitives
    # ===========================

    def find_active_sessions(self, db: Session, task_id: str, user_id: str) -> List[TaskSession]:
        return (
            db.query(TaskSession)
            .filter(
                TaskSession.task_id == task_id,
                TaskSession.user_id == user_id,
                TaskSession.end_time.is_(None)
            )
            .order_by(TaskSession.start_time)
            .all()
        )

    def open_session(
        self,
        db: Session,
        task_id: str,
        user_id: str,
        events: Optional[EventBuffer] = None
    ) -> Tuple[TaskSession, bool]:
        """
        Open a session unless the pair already has an active one.

        Returns:
            (session, created) where ``created`` is False when an existing
            active session was returned instead
        """
        active = self.find_active_sessions(db, task_id, user_id)
        if active:
            logger.debug(f"Session already active for task {task_id}, user {user_id}")
            return active[0], False

        session = TaskSession(task_id=task_id, user_id=user_id, start_time=self.clock())

        try:
            with db.begin_nested():
                db.add(session)
        except IntegrityError:
            # A concurrent start won the race on uq_task_sessions_active.
            active = self.find_active_sessions(db, task_id, user_id)
            if not active:
                raise
            logger.info(
                f"Concurrent session start resolved to existing session {active[0].id}",
                extra={"task_id": task_id, "user_id": user_id}
            )
            return active[0], False

        if events is not None:
            events.add("task_sessions", "INSERT", new=session.to_dict())
        track_session_opened()

        logger.info(
            f"Session started for task {task_id}",
            extra={"task_id": task_id, "user_id": user_id, "session_id": session.id}
        )
        return session, True

    def close_sessions(
        self,
        db: Session,
        task_id: str,
        user_id: str,
        events: Optional[EventBuffer] = None
    ) -> List[TaskSession]:
        """Close every active session of the pair. Returns the closed rows."""
        return self._close(db, self.find_active_sessions(db, task_id, user_id), events)

    def close_other_sessions(
        self,
        db: Session,
        user_id: str,
        except_task_id: Optional[str] = None,
        events: Optional[EventBuffer] = None
    ) -> List[TaskSession]:
        """Close the user's active sessions on every task except ``except_task_id``."""
        query = db.query(TaskSession).filter(
            TaskSession.user_id == user_id,
            TaskSession.end_time.is_(None)
        )
        if except_task_id is not None:
            query = query.filter(TaskSession.task_id != except_task_id)

        return self._close(db, query.all(), events)

    def _close(
        self,
        db: Session,
        sessions: List[TaskSession],
        events: Optional[EventBuffer]
    ) -> List[TaskSession]:
        if not sessions:
            return []

        now = self.clock()
        added_per_task: Dict[str, int] = defaultdict(int)

        for session in sessions:
            duration = max(0, math.floor((now - session.start_time).total_seconds()))
            session.end_time = now
            session.duration_seconds = duration
            added_per_task[session.task_id] += duration
            track_session_closed(duration)

            if events is not None:
                events.add("task_sessions", "UPDATE", new=session.to_dict())

        db.flush()

        for task_id, added in added_per_task.items():
            task = db.get(Task, task_id)
            if task is None:
                continue

            if task.total_duration_seconds is None:
                task.total_duration_seconds = self._sum_closed_durations(db, task_id)
            else:
                task.total_duration_seconds += added

            if events is not None:
                events.add("tasks", "UPDATE", new=task.to_dict())

            logger.info(
                f"Closed session(s) on task {task_id}: +{added}s "
                f"(total {format_duration(task.total_duration_seconds)})",
                extra={"task_id": task_id, "added_seconds": added}
            )

        db.flush()
        return sessions

    def _sum_closed_durations(self, db: Session, task_id: str) -> int:
        total = (
            db.query(func.coalesce(func.sum(TaskSession.duration_seconds), 0))
            .filter(
                TaskSession.task_id == task_id,
                TaskSession.end_time.isnot(None)
            )
            .scalar()
        )
        return int(total or 0)

    # ===========================
    # Best-effort operations
    # ===========================

    def start_session(self, task_id: str, user_id: str) -> Optional[TaskSession]:
        """
        Open a session for the pair.

        A repeated start while a session is active returns that session
        unchanged. Closing the user's session on a previously viewed task is
        the caller's job (see ``end_sessions_for_user``).

        Returns:
            The active session, or None if the write failed
        """
        events = EventBuffer(self.change_feed)
        try:
            with self.db_factory() as db:
                session, _ = self.open_session(db, task_id, user_id, events)
        except SQLAlchemyError as e:
            logger.error(
                f"Failed to start session for task {task_id}: {e}",
                extra={"task_id": task_id, "user_id": user_id}
            )
            return None

        events.flush()
        return session

    def end_session(self, task_id: str, user_id: str) -> Optional[int]:
        """
        Close the pair's active session.

        Calling this without an active session is a no-op.

        Returns:
            Seconds added to the task total, or None when nothing was closed
            or the write failed
        """
        events = EventBuffer(self.change_feed)
        try:
            with self.db_factory() as db:
                closed = self.close_sessions(db, task_id, user_id, events)
        except SQLAlchemyError as e:
            logger.error(
                f"Failed to end session for task {task_id}: {e}",
                extra={"task_id": task_id, "user_id": user_id}
            )
            return None

        events.flush()

        if not closed:
            logger.debug(f"No active session to end for task {task_id}, user {user_id}")
            return None

        return sum(session.duration_seconds for session in closed)

    def end_sessions_for_user(self, user_id: str, except_task_id: Optional[str] = None) -> int:
        """
        Close the user's active sessions on other tasks.

        Returns:
            Number of sessions closed (0 on failure)
        """
        events = EventBuffer(self.change_feed)
        try:
            with self.db_factory() as db:
                closed = self.close_other_sessions(db, user_id, except_task_id, events)
        except SQLAlchemyError as e:
            logger.error(f"Failed to end sessions for user {user_id}: {e}", extra={"user_id": user_id})
            return 0

        events.flush()
        return len(closed)

    # ===========================
    # Duration queries
    # ===========================

    def get_task_total_duration(self, task_id: str) -> int:
        """
        Accumulated duration of all closed sessions of a task.

        Returns the cached total when present; otherwise recomputes it from
        the closed sessions of all users and stores the result. Open sessions
        never count.
        """
        with self.db_factory() as db:
            task = db.get(Task, task_id)
            if task is None:
                raise TaskNotFoundError(task_id)

            if task.total_duration_seconds is not None:
                return task.total_duration_seconds

            total = self._sum_closed_durations(db, task_id)
            task.total_duration_seconds = total
            logger.debug(f"Cached total duration for task {task_id}: {total}s")
            return total

    def recompute_task_total_duration(self, task_id: str) -> int:
        """Recompute the total from closed sessions and overwrite the cached value."""
        events = EventBuffer(self.change_feed)
        with self.db_factory() as db:
            task = db.get(Task, task_id)
            if task is None:
                raise TaskNotFoundError(task_id)

            total = self._sum_closed_durations(db, task_id)
            if task.total_duration_seconds != total:
                logger.info(
                    f"Recomputed total duration for task {task_id}: "
                    f"{task.total_duration_seconds} -> {total}",
                    extra={"task_id": task_id}
                )
            task.total_duration_seconds = total
            events.add("tasks", "UPDATE", new=task.to_dict())

        events.flush()
        return total

    def get_active_session(self, task_id: str, user_id: str) -> Optional[TaskSession]:
        with self.db_factory() as db:
            active = self.find_active_sessions(db, task_id, user_id)
            return active[0] if active else None

    def list_sessions(self, task_id: str) -> List[TaskSession]:
        with self.db_factory() as db:
            return (
                db.query(TaskSession)
                .filter(TaskSession.task_id == task_id)
                .order_by(TaskSession.start_time)
                .all()
            )

    def get_time_summary(self, task_id: str) -> List[Dict[str, object]]:
        """
        Per-user time summary for a task.

        Returns:
            Rows of {user_id, session_count, total_seconds, formatted, active}
        """
        with self.db_factory() as db:
            rows = (
                db.query(
                    TaskSession.user_id,
                    func.count(TaskSession.id),
                    func.coalesce(func.sum(TaskSession.duration_seconds), 0),
                    func.sum(case((TaskSession.end_time.is_(None), 1), else_=0))
                )
                .filter(TaskSession.task_id == task_id)
                .group_by(TaskSession.user_id)
                .order_by(TaskSession.user_id)
                .all()
            )

        return [
            {
                "user_id": user_id,
                "session_count": int(count),
                "total_seconds": int(total or 0),
                "formatted": format_duration(int(total or 0)),
                "active": bool(active_count)
            }
            for user_id, count, total, active_count in rows
        ]
