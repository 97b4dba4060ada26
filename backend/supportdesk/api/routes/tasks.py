"""
Task API routes: records, lifecycle transitions, comments and attachments.
"""
from fastapi import APIRouter, Depends, File, UploadFile, status
from typing import Any, Dict, List, Optional
import logging

from ...config import settings
from ...dialog import TaskChatOrchestrator
from ...exceptions import TaskValidationError
from ...models.schemas import (
    AssignRequest,
    CommentCreateRequest,
    CompleteRequest,
    FollowUpRequest,
    StatusUpdateRequest,
    TaskCreateRequest,
)
from ...services import AttachmentService, TaskLifecycleController
from ...services.auth_service import require_auth
from ..dependencies import get_attachments, get_lifecycle, get_task_chat

logger = logging.getLogger(__name__)

router = APIRouter()


# ===========================
# Records
# ===========================

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_task(
    body: TaskCreateRequest,
    user_id: str = Depends(require_auth),
    lifecycle: TaskLifecycleController = Depends(get_lifecycle)
) -> Dict[str, Any]:
    task = lifecycle.create_task(created_by=user_id, **body.model_dump())
    return task.to_dict()


@router.get("")
async def list_tasks(
    status: Optional[str] = None,
    assigned_to: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    user_id: str = Depends(require_auth),
    lifecycle: TaskLifecycleController = Depends(get_lifecycle)
) -> Dict[str, Any]:
    limit = max(1, min(limit, 200))
    tasks = lifecycle.list_tasks(status=status, assigned_to=assigned_to, limit=limit, offset=offset)
    return {"tasks": [task.to_dict() for task in tasks], "limit": limit, "offset": offset}


@router.get("/next")
async def next_task(
    user_id: str = Depends(require_auth),
    lifecycle: TaskLifecycleController = Depends(get_lifecycle)
) -> Dict[str, Any]:
    """Next task to work on after finishing one."""
    task = lifecycle.find_next_task(user_id)
    return {"task": task.to_dict() if task else None}


@router.get("/{task_id}")
async def get_task(
    task_id: str,
    user_id: str = Depends(require_auth),
    lifecycle: TaskLifecycleController = Depends(get_lifecycle)
) -> Dict[str, Any]:
    return lifecycle.get_task(task_id).to_dict()


# ===========================
# Lifecycle
# ===========================

@router.patch("/{task_id}/status")
async def update_status(
    task_id: str,
    body: StatusUpdateRequest,
    user_id: str = Depends(require_auth),
    lifecycle: TaskLifecycleController = Depends(get_lifecycle)
) -> Dict[str, Any]:
    return lifecycle.set_status(task_id, body.status, user_id).to_dict()


@router.post("/{task_id}/reopen")
async def reopen_task(
    task_id: str,
    user_id: str = Depends(require_auth),
    lifecycle: TaskLifecycleController = Depends(get_lifecycle)
) -> Dict[str, Any]:
    return lifecycle.reopen(task_id, user_id).to_dict()


@router.post("/{task_id}/open")
async def open_task(
    task_id: str,
    user_id: str = Depends(require_auth),
    lifecycle: TaskLifecycleController = Depends(get_lifecycle)
) -> Dict[str, Any]:
    """The user opened the task detail view."""
    return lifecycle.open_task(task_id, user_id).to_dict()


@router.post("/{task_id}/close-view")
async def close_task_view(
    task_id: str,
    user_id: str = Depends(require_auth),
    lifecycle: TaskLifecycleController = Depends(get_lifecycle)
) -> Dict[str, Any]:
    """The user left the task detail view."""
    duration = lifecycle.close_task_view(task_id, user_id)
    return {"task_id": task_id, "duration_seconds": duration}


@router.post("/{task_id}/assign")
async def assign_task(
    task_id: str,
    body: AssignRequest,
    user_id: str = Depends(require_auth),
    lifecycle: TaskLifecycleController = Depends(get_lifecycle)
) -> Dict[str, Any]:
    return lifecycle.assign_to(task_id, body.assignee_id, user_id, note=body.note or "").to_dict()


@router.post("/{task_id}/assign-to-me")
async def assign_to_me(
    task_id: str,
    user_id: str = Depends(require_auth),
    lifecycle: TaskLifecycleController = Depends(get_lifecycle)
) -> Dict[str, Any]:
    return lifecycle.assign_to_self(task_id, user_id).to_dict()


@router.post("/{task_id}/follow-up")
async def schedule_follow_up(
    task_id: str,
    body: FollowUpRequest,
    user_id: str = Depends(require_auth),
    lifecycle: TaskLifecycleController = Depends(get_lifecycle)
) -> Dict[str, Any]:
    return lifecycle.schedule_follow_up(task_id, body.follow_up_date, body.note, user_id).to_dict()


@router.post("/{task_id}/complete")
async def complete_task(
    task_id: str,
    body: CompleteRequest,
    user_id: str = Depends(require_auth),
    lifecycle: TaskLifecycleController = Depends(get_lifecycle)
) -> Dict[str, Any]:
    task = lifecycle.complete_with_comment(task_id, body.closing_comment, user_id)
    next_up = lifecycle.find_next_task(user_id)
    return {"task": task.to_dict(), "next_task": next_up.to_dict() if next_up else None}


@router.get("/{task_id}/activities")
async def list_activities(
    task_id: str,
    user_id: str = Depends(require_auth),
    lifecycle: TaskLifecycleController = Depends(get_lifecycle)
) -> Dict[str, Any]:
    return {"activities": [entry.to_dict() for entry in lifecycle.list_activities(task_id)]}


@router.get("/{task_id}/messages")
async def list_messages(
    task_id: str,
    user_id: str = Depends(require_auth),
    task_chat: TaskChatOrchestrator = Depends(get_task_chat)
) -> Dict[str, Any]:
    return {"messages": [msg.to_dict() for msg in task_chat.list_messages(task_id)]}


# ===========================
# Comments
# ===========================

@router.get("/{task_id}/comments")
async def list_comments(
    task_id: str,
    user_id: str = Depends(require_auth),
    lifecycle: TaskLifecycleController = Depends(get_lifecycle)
) -> Dict[str, Any]:
    return {"comments": [comment.to_dict() for comment in lifecycle.list_comments(task_id)]}


@router.post("/{task_id}/comments", status_code=status.HTTP_201_CREATED)
async def add_comment(
    task_id: str,
    body: CommentCreateRequest,
    user_id: str = Depends(require_auth),
    lifecycle: TaskLifecycleController = Depends(get_lifecycle)
) -> Dict[str, Any]:
    return lifecycle.add_comment(task_id, user_id, body.content).to_dict()


@router.delete("/{task_id}/comments/{comment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_comment(
    task_id: str,
    comment_id: str,
    user_id: str = Depends(require_auth),
    lifecycle: TaskLifecycleController = Depends(get_lifecycle)
) -> None:
    lifecycle.delete_comment(task_id, comment_id, user_id)


# ===========================
# Attachments
# ===========================

@router.get("/{task_id}/attachments")
async def list_attachments(
    task_id: str,
    user_id: str = Depends(require_auth),
    lifecycle: TaskLifecycleController = Depends(get_lifecycle),
    attachments: AttachmentService = Depends(get_attachments)
) -> Dict[str, List[Dict[str, Any]]]:
    lifecycle.get_task(task_id)
    return {
        "attachments": [
            {**attachment.to_dict(), "url": attachments.storage.get_public_url(attachment.storage_path)}
            for attachment in attachments.list_attachments(task_id)
        ]
    }


@router.post("/{task_id}/attachments", status_code=status.HTTP_201_CREATED)
async def upload_attachment(
    task_id: str,
    file: UploadFile = File(...),
    user_id: str = Depends(require_auth),
    attachments: AttachmentService = Depends(get_attachments)
) -> Dict[str, Any]:
    content = await file.read()
    if len(content) > settings.max_file_size:
        raise TaskValidationError("file", f"File {file.filename} exceeds maximum size")

    attachment = await attachments.add_attachment(
        task_id,
        user_id,
        file_name=file.filename or "file",
        data=content,
        content_type=file.content_type
    )
    return {**attachment.to_dict(), "url": attachments.storage.get_public_url(attachment.storage_path)}


@router.get("/{task_id}/attachments/{attachment_id}/url")
async def get_attachment_url(
    task_id: str,
    attachment_id: str,
    user_id: str = Depends(require_auth),
    attachments: AttachmentService = Depends(get_attachments)
) -> Dict[str, Any]:
    return attachments.get_attachment_access(task_id, attachment_id)


@router.delete("/{task_id}/attachments/{attachment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_attachment(
    task_id: str,
    attachment_id: str,
    user_id: str = Depends(require_auth),
    attachments: AttachmentService = Depends(get_attachments)
) -> None:
    attachments.delete_attachment(task_id, attachment_id, user_id)
