"""
Task session model: one continuous interval of a user working a task.
"""
from typing import Any, Dict
import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, text

from ..database import Base
from ..utils.timeutils import utcnow


class TaskSession(Base):
    """
    Time segment bound to a (task, user) pair.

    A row with ``end_time IS NULL`` is the pair's active session. The partial
    unique index below allows at most one of those per pair.
    """
    __tablename__ = "task_sessions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    task_id = Column(String(36), ForeignKey("tasks.id"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)

    start_time = Column(DateTime, nullable=False, default=utcnow)
    end_time = Column(DateTime, nullable=True)
    duration_seconds = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "duration_seconds IS NULL OR duration_seconds >= 0",
            name="ck_task_sessions_duration_non_negative"
        ),
        Index(
            "uq_task_sessions_active",
            "task_id",
            "user_id",
            unique=True,
            sqlite_where=text("end_time IS NULL"),
            postgresql_where=text("end_time IS NULL"),
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.end_time is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "user_id": self.user_id,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": self.duration_seconds,
        }

    def __repr__(self):
        return (
            f"<TaskSession(id={self.id}, task={self.task_id}, user={self.user_id}, "
            f"active={self.is_active})>"
        )
