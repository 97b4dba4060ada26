"""
Domain exceptions raised by the task services.
Routes translate these into HTTP responses.
"""
from typing import Optional


class SupportDeskError(Exception):
    """Base exception for support desk domain errors."""
    pass


class TaskNotFoundError(SupportDeskError):
    """Referenced task does not exist."""

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class InvalidStatusError(SupportDeskError):
    """Status value is not part of the task status vocabulary."""

    def __init__(self, status: str):
        super().__init__(f"Invalid task status: {status!r}")
        self.status = status


class InvalidTransitionError(SupportDeskError):
    """Requested status change is not allowed from the current state."""

    def __init__(self, task_id: str, status_from: str, status_to: str, reason: Optional[str] = None):
        message = f"Cannot change task {task_id} from '{status_from}' to '{status_to}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.task_id = task_id
        self.status_from = status_from
        self.status_to = status_to


class TaskValidationError(SupportDeskError):
    """Input failed validation before reaching the store."""

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field


class AuditLogImmutableError(SupportDeskError):
    """Audit log entries are append-only."""
    pass


class StorageError(SupportDeskError):
    """Blob storage operation failed."""
    pass


class NotFoundError(SupportDeskError):
    """Generic lookup failure for non-task records (comments, attachments)."""
    pass
