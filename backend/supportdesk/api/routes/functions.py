"""
Dialog function endpoints (handle-task-chat, intelligent-dialog-api).

Both keep the error payload shape their callers expect instead of the
standard ``{"detail": ...}`` body.
"""
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
import logging

from ...dialog import (
    DialogRequestError,
    FlowAuthoringService,
    TaskChatOrchestrator,
    is_rate_limit_error
)
from ...dialog.flow_authoring import INTERNAL_ERROR
from ...models.schemas import IntelligentDialogRequest, TaskChatRequest
from ...services.auth_service import get_current_user
from ...utils.telemetry import metrics_collector
from ..dependencies import get_flow_authoring, get_task_chat

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/handle-task-chat")
async def handle_task_chat(
    body: TaskChatRequest,
    user_id: str = Depends(get_current_user),
    task_chat: TaskChatOrchestrator = Depends(get_task_chat)
):
    """
    Next guidance turn for an agent working a task.

    Returns:
        ``{response, response_id}``, or ``{error, is_rate_limit}`` with 500
    """
    try:
        return await task_chat.next_turn(body, acting_user_id=user_id)
    except Exception as e:
        logger.error(
            f"Error in handle-task-chat: {e}",
            exc_info=True,
            extra={"task_id": body.task_id}
        )
        metrics_collector.record_error()
        return JSONResponse(
            status_code=500,
            content={"error": str(e), "is_rate_limit": is_rate_limit_error(e)}
        )


@router.post("/intelligent-dialog-api")
async def intelligent_dialog_api(
    body: IntelligentDialogRequest,
    flow_authoring: FlowAuthoringService = Depends(get_flow_authoring)
):
    """
    Dialog-flow authoring turn for admins.

    Returns:
        ``{message, response_id, dialog_flow, flow_extracted}``
    """
    try:
        return await flow_authoring.author(body)
    except DialogRequestError as e:
        logger.warning(f"Rejected dialog authoring request: {e}")
        return JSONResponse(status_code=e.status_code, content={"error": str(e)})
    except Exception as e:
        logger.error(f"Error in intelligent-dialog-api: {e}", exc_info=True)
        metrics_collector.record_error()
        return JSONResponse(
            status_code=500,
            content={"error": INTERNAL_ERROR, "message": str(e)}
        )
