"""
Task attachment service.
Uploads files to blob storage and keeps the attachment rows and audit trail.
"""
import logging
import re
import uuid
from typing import Any, Dict, List, Optional

from ..config import settings
from ..database import get_db_context
from ..exceptions import NotFoundError, TaskNotFoundError, TaskValidationError
from ..models import AuditAction, Task, TaskAttachment
from ..realtime import ChangeFeed, EventBuffer
from ..session.recorder import DbFactory
from ..storage import LocalBlobStorage
from ..utils.timeutils import Clock, utcnow
from .audit_service import AuditLog

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_file_name(file_name: str) -> str:
    name = _UNSAFE_CHARS.sub("_", file_name.strip()).strip("._")
    return name or "file"


class AttachmentService:
    """Attachments of a task."""

    def __init__(
        self,
        storage: LocalBlobStorage,
        db_factory: DbFactory = get_db_context,
        change_feed: Optional[ChangeFeed] = None,
        clock: Clock = utcnow,
        max_file_size: Optional[int] = None
    ):
        self.storage = storage
        self.db_factory = db_factory
        self.change_feed = change_feed
        self.clock = clock
        self.audit = AuditLog(clock=clock)
        self.max_file_size = max_file_size or settings.max_file_size

    async def add_attachment(
        self,
        task_id: str,
        user_id: Optional[str],
        file_name: str,
        data: bytes,
        content_type: Optional[str] = None
    ) -> TaskAttachment:
        """
        Upload a file and attach it to a task.

        Raises:
            TaskNotFoundError: Task does not exist
            TaskValidationError: Empty or oversized file
            StorageError: Upload failed
        """
        if not file_name:
            raise TaskValidationError("file_name", "File name is required")
        if not data:
            raise TaskValidationError("file", "File is empty")
        if len(data) > self.max_file_size:
            raise TaskValidationError(
                "file", f"File exceeds maximum size of {self.max_file_size} bytes"
            )

        with self.db_factory() as db:
            if db.get(Task, task_id) is None:
                raise TaskNotFoundError(task_id)

        path = f"tasks/{task_id}/{uuid.uuid4()}_{sanitize_file_name(file_name)}"
        await self.storage.upload(path, data, cache_control=settings.storage_cache_control, upsert=False)

        events = EventBuffer(self.change_feed)
        try:
            with self.db_factory() as db:
                attachment = TaskAttachment(
                    task_id=task_id,
                    uploaded_by=user_id,
                    file_name=file_name,
                    storage_path=path,
                    content_type=content_type,
                    size_bytes=len(data),
                    created_at=self.clock()
                )
                db.add(attachment)
                db.flush()

                self.audit.record(
                    db, task_id, user_id, AuditAction.ATTACHMENT_ADDED,
                    new_value={"attachment_id": attachment.id, "file_name": file_name},
                    events=events
                )
                events.add("task_attachments", "INSERT", new=attachment.to_dict())
        except Exception:
            # Row was not written; do not leave an orphaned blob behind.
            self.storage.remove([path])
            raise

        events.flush()
        logger.info(
            f"Attachment {file_name} added to task {task_id}",
            extra={"task_id": task_id, "user_id": user_id, "size_bytes": len(data)}
        )
        return attachment

    def delete_attachment(self, task_id: str, attachment_id: str, user_id: Optional[str]) -> None:
        events = EventBuffer(self.change_feed)
        with self.db_factory() as db:
            attachment = db.get(TaskAttachment, attachment_id)
            if attachment is None or attachment.task_id != task_id:
                raise NotFoundError(f"Attachment not found: {attachment_id}")

            snapshot = attachment.to_dict()
            db.delete(attachment)
            db.flush()

            self.audit.record(
                db, task_id, user_id, AuditAction.ATTACHMENT_DELETED,
                previous_value={"attachment_id": attachment_id, "file_name": snapshot["file_name"]},
                events=events
            )
            events.add("task_attachments", "DELETE", old=snapshot)

        # The blob outlives its row until the delete has committed
        self.storage.remove([snapshot["storage_path"]])
        events.flush()

    def list_attachments(self, task_id: str) -> List[TaskAttachment]:
        with self.db_factory() as db:
            return (
                db.query(TaskAttachment)
                .filter(TaskAttachment.task_id == task_id)
                .order_by(TaskAttachment.created_at)
                .all()
            )

    def _storage_path(self, task_id: str, attachment_id: str) -> str:
        with self.db_factory() as db:
            attachment = db.get(TaskAttachment, attachment_id)
            if attachment is None or attachment.task_id != task_id:
                raise NotFoundError(f"Attachment not found: {attachment_id}")
            return attachment.storage_path

    def get_attachment_url(self, task_id: str, attachment_id: str) -> str:
        return self.storage.get_public_url(self._storage_path(task_id, attachment_id))

    def get_attachment_access(self, task_id: str, attachment_id: str) -> Dict[str, Any]:
        """Public URL plus the size and cache-control recorded for the blob."""
        path = self._storage_path(task_id, attachment_id)
        return {"url": self.storage.get_public_url(path), **self.storage.get_metadata(path)}
