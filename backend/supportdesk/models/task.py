"""
Task model: one unit of customer-support work.
"""
from enum import Enum
from typing import Any, Dict, FrozenSet
import uuid

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)

from ..database import Base
from ..utils.timeutils import utcnow


class TaskStatus(str, Enum):
    """Task status vocabulary."""
    NEW = "new"
    IN_PROGRESS = "in_progress"
    FOLLOWUP = "followup"
    WAITING_FOR_CUSTOMER = "waiting_for_customer"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FORWARDED = "forwarded"

    @classmethod
    def values(cls) -> list:
        return [member.value for member in cls]

    @classmethod
    def parse(cls, value: Any) -> "TaskStatus":
        """Coerce a raw value; raises ValueError for anything outside the vocabulary."""
        if isinstance(value, cls):
            return value
        return cls(str(value))


TERMINAL_STATUSES: FrozenSet[TaskStatus] = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})

# Leaving either of these closes the acting user's running session.
SESSION_CLOSING_STATUSES: FrozenSet[TaskStatus] = frozenset({TaskStatus.COMPLETED, TaskStatus.FOLLOWUP})


class TaskSource(str, Enum):
    """Channel a task arrived through."""
    MANUAL = "manual"
    EMAIL = "email"
    CHAT = "chat"
    PHONE = "phone"
    API = "api"


def _status_check() -> str:
    allowed = ", ".join(f"'{value}'" for value in TaskStatus.values())
    return f"status IN ({allowed})"


def generate_readable_id() -> str:
    return f"TASK-{uuid.uuid4().hex[:8].upper()}"


class Task(Base):
    """
    Customer-support task.

    ``total_duration_seconds`` is a denormalized cache of all closed session
    durations. NULL means "not computed yet"; the session recorder fills it
    on first read.
    """
    __tablename__ = "tasks"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    readable_id = Column(String(32), unique=True, nullable=False, default=generate_readable_id)

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(32), nullable=False, default=TaskStatus.NEW.value, index=True)
    source = Column(String(32), nullable=False, default=TaskSource.MANUAL.value)

    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=True, index=True)
    endkunde_id = Column(String(36), ForeignKey("endkunden.id"), nullable=True)
    endkunde_email = Column(String(255), nullable=True)
    matched_use_case_id = Column(String(36), ForeignKey("use_cases.id"), nullable=True)
    match_confidence = Column(Float, nullable=True)

    assigned_to = Column(String(36), ForeignKey("profiles.id"), nullable=True, index=True)
    created_by = Column(String(36), ForeignKey("profiles.id"), nullable=True)
    forwarded_to = Column(Text, nullable=True)  # note attached to the last hand-over

    follow_up_date = Column(DateTime, nullable=True)
    closing_comment = Column(Text, nullable=True)

    total_duration_seconds = Column(Integer, nullable=True)
    last_message_id = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(_status_check(), name="ck_tasks_status"),
        CheckConstraint(
            "total_duration_seconds IS NULL OR total_duration_seconds >= 0",
            name="ck_tasks_total_duration_non_negative"
        ),
        Index("ix_tasks_assignee_status_created", "assigned_to", "status", "created_at"),
    )

    @property
    def task_status(self) -> TaskStatus:
        return TaskStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.task_status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "readable_id": self.readable_id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "source": self.source,
            "customer_id": self.customer_id,
            "endkunde_id": self.endkunde_id,
            "endkunde_email": self.endkunde_email,
            "matched_use_case_id": self.matched_use_case_id,
            "match_confidence": self.match_confidence,
            "assigned_to": self.assigned_to,
            "created_by": self.created_by,
            "forwarded_to": self.forwarded_to,
            "follow_up_date": self.follow_up_date.isoformat() if self.follow_up_date else None,
            "closing_comment": self.closing_comment,
            "total_duration_seconds": self.total_duration_seconds,
            "last_message_id": self.last_message_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Task(id={self.id}, readable_id={self.readable_id}, status={self.status})>"
