"""
Task message model for the conversation record of a task.
"""
from enum import Enum
from typing import Any, Dict
import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, String, Text

from ..database import Base
from ..utils.timeutils import utcnow


class MessageRole(str, Enum):
    """Message role enumeration."""
    USER = "user"
    ASSISTANT = "assistant"
    AGENT = "agent"
    SYSTEM = "system"


class TaskMessage(Base):
    """
    One conversation turn.

    Assistant content is stored verbatim as the JSON envelope text, so a
    re-fetch reproduces exactly what was written.
    """
    __tablename__ = "task_messages"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    task_id = Column(String(36), ForeignKey("tasks.id"), nullable=False)

    role = Column(String(20), nullable=False)
    content = Column(Text, nullable=False)

    created_by = Column(String(36), ForeignKey("profiles.id"), nullable=True)
    previous_message_id = Column(String(36), ForeignKey("task_messages.id"), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "role IN ('user', 'assistant', 'agent', 'system')",
            name="ck_task_messages_role"
        ),
        Index("ix_task_messages_task_created", "task_id", "created_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "role": self.role,
            "content": self.content,
            "created_by": self.created_by,
            "previous_message_id": self.previous_message_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<TaskMessage(id={self.id}, task={self.task_id}, role={self.role})>"
