"""
Audit log model. Rows are append-only.
"""
from enum import Enum
from typing import Any, Dict
import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, String, event

from ..database import Base
from ..exceptions import AuditLogImmutableError
from ..utils.timeutils import utcnow


class AuditAction(str, Enum):
    """Action tags written to the audit log."""
    STATUS_CHANGE = "status_change"
    REOPEN = "reopen"
    OPEN = "open"
    CLOSE = "close"
    ASSIGN = "assign"
    FOLLOW_UP = "follow_up"
    COMMENT_ADDED = "comment_added"
    COMMENT_DELETED = "comment_deleted"
    ATTACHMENT_ADDED = "attachment_added"
    ATTACHMENT_DELETED = "attachment_deleted"


class AuditLogEntry(Base):
    """
    Immutable record of one state-changing action on a task.
    """
    __tablename__ = "task_activities"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    task_id = Column(String(36), ForeignKey("tasks.id"), nullable=False)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=True)

    action = Column(String(32), nullable=False)
    status_from = Column(String(32), nullable=True)
    status_to = Column(String(32), nullable=True)
    previous_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)

    timestamp = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_task_activities_task_timestamp", "task_id", "timestamp"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "user_id": self.user_id,
            "action": self.action,
            "status_from": self.status_from,
            "status_to": self.status_to,
            "previous_value": self.previous_value,
            "new_value": self.new_value,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLogEntry(id={self.id}, task={self.task_id}, action={self.action})>"


@event.listens_for(AuditLogEntry, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise AuditLogImmutableError(f"Audit log entry {target.id} cannot be modified")


@event.listens_for(AuditLogEntry, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise AuditLogImmutableError(f"Audit log entry {target.id} cannot be deleted")
