"""
Database models package.
Exports all SQLAlchemy models for the application.

Version: 1.0.0
"""

from .profile import Profile, UserRole
from .customer import Customer, EndCustomer, EndCustomerContact
from .use_case import UseCase
from .task import Task, TaskStatus, TaskSource, TERMINAL_STATUSES, SESSION_CLOSING_STATUSES
from .task_session import TaskSession
from .message import TaskMessage, MessageRole
from .audit import AuditLogEntry, AuditAction
from .task_extras import TaskComment, TaskAttachment, Notification

__all__ = [
    'Profile',
    'UserRole',
    'Customer',
    'EndCustomer',
    'EndCustomerContact',
    'UseCase',
    'Task',
    'TaskStatus',
    'TaskSource',
    'TERMINAL_STATUSES',
    'SESSION_CLOSING_STATUSES',
    'TaskSession',
    'TaskMessage',
    'MessageRole',
    'AuditLogEntry',
    'AuditAction',
    'TaskComment',
    'TaskAttachment',
    'Notification'
]
