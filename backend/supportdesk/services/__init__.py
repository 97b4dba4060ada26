"""
Services module.
Business logic for task lifecycle, audit, attachments and authentication.
"""

from .audit_service import AuditLog
from .lifecycle_service import TaskLifecycleController
from .attachment_service import AttachmentService
from .auth_service import (
    AuthService,
    auth_service,
    get_current_user,
    require_auth,
    require_supervisor
)

__all__ = [
    'AuditLog',
    'TaskLifecycleController',
    'AttachmentService',

    # Auth
    'AuthService',
    'auth_service',
    'get_current_user',
    'require_auth',
    'require_supervisor',
]
