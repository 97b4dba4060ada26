"""
Task session routes: time segments of the current user on a task.
"""
from fastapi import APIRouter, Depends
from typing import Any, Dict, List
import logging

from ...models.schemas import DurationResponse, SessionEndResponse, TimeSummaryEntry
from ...services import TaskLifecycleController
from ...services.auth_service import require_auth, require_supervisor
from ...session import DurationCache, SessionRecorder
from ...utils.timeutils import format_duration
from ..dependencies import get_beacon_user, get_duration_cache, get_lifecycle, get_recorder

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/start")
async def start_session(
    task_id: str,
    user_id: str = Depends(require_auth),
    lifecycle: TaskLifecycleController = Depends(get_lifecycle)
) -> Dict[str, Any]:
    """
    Start timing the task for the current user.

    The user's sessions on other tasks are closed first. A repeated start
    returns the already active session; completed or cancelled tasks are
    rejected with 409.
    """
    session = lifecycle.start_timing(task_id, user_id)

    return {
        "task_id": task_id,
        "started": session is not None,
        "session": session.to_dict() if session else None
    }


@router.post("/end", response_model=SessionEndResponse)
async def end_session(
    task_id: str,
    user_id: str = Depends(get_beacon_user),
    recorder: SessionRecorder = Depends(get_recorder)
) -> SessionEndResponse:
    """
    Stop timing the task for the current user.

    Accepts ``navigator.sendBeacon`` requests (token in the body). Ending
    without an active session is a no-op.
    """
    duration = recorder.end_session(task_id, user_id)
    return SessionEndResponse(task_id=task_id, ended=duration is not None, duration_seconds=duration)


@router.get("/duration", response_model=DurationResponse)
async def get_duration(
    task_id: str,
    user_id: str = Depends(require_auth),
    cache: DurationCache = Depends(get_duration_cache)
) -> DurationResponse:
    total = cache.get(task_id)
    return DurationResponse(task_id=task_id, total_seconds=total, formatted=format_duration(total))


@router.post("/recompute", response_model=DurationResponse)
async def recompute_duration(
    task_id: str,
    user_id: str = Depends(require_supervisor),
    recorder: SessionRecorder = Depends(get_recorder)
) -> DurationResponse:
    total = recorder.recompute_task_total_duration(task_id)
    return DurationResponse(task_id=task_id, total_seconds=total, formatted=format_duration(total))


@router.get("/summary", response_model=List[TimeSummaryEntry])
async def get_time_summary(
    task_id: str,
    user_id: str = Depends(require_auth),
    recorder: SessionRecorder = Depends(get_recorder),
    lifecycle: TaskLifecycleController = Depends(get_lifecycle)
) -> List[Dict[str, Any]]:
    lifecycle.get_task(task_id)
    return recorder.get_time_summary(task_id)


@router.get("/list")
async def list_sessions(
    task_id: str,
    user_id: str = Depends(require_auth),
    recorder: SessionRecorder = Depends(get_recorder)
) -> Dict[str, Any]:
    return {"sessions": [session.to_dict() for session in recorder.list_sessions(task_id)]}
