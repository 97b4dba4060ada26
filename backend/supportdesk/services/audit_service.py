"""
Audit log writer.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..models import AuditAction, AuditLogEntry
from ..realtime import EventBuffer
from ..utils.timeutils import Clock, utcnow

logger = logging.getLogger(__name__)


class AuditLog:
    """Appends audit entries inside the caller's transaction."""

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock

    def record(
        self,
        db: Session,
        task_id: str,
        user_id: Optional[str],
        action: AuditAction,
        status_from: Optional[str] = None,
        status_to: Optional[str] = None,
        previous_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        events: Optional[EventBuffer] = None
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            task_id=task_id,
            user_id=user_id,
            action=AuditAction(action).value,
            status_from=status_from,
            status_to=status_to,
            previous_value=previous_value,
            new_value=new_value,
            timestamp=self.clock()
        )
        db.add(entry)
        db.flush()

        if events is not None:
            events.add("task_activities", "INSERT", new=entry.to_dict())

        logger.debug(
            f"Audit: {entry.action} on task {task_id}",
            extra={"task_id": task_id, "user_id": user_id, "action": entry.action}
        )
        return entry

    @staticmethod
    def list_for_task(db: Session, task_id: str, limit: int = 200) -> List[AuditLogEntry]:
        return (
            db.query(AuditLogEntry)
            .filter(AuditLogEntry.task_id == task_id)
            .order_by(AuditLogEntry.timestamp)
            .limit(limit)
            .all()
        )
