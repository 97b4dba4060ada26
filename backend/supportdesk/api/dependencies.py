"""
FastAPI dependencies: services from application state and error mapping.
"""
import json
import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials

from ..dialog import FlowAuthoringService, TaskChatOrchestrator
from ..exceptions import (
    AuditLogImmutableError,
    InvalidStatusError,
    InvalidTransitionError,
    NotFoundError,
    StorageError,
    SupportDeskError,
    TaskNotFoundError,
    TaskValidationError,
)
from ..services import AttachmentService, TaskLifecycleController
from ..services.auth_service import auth_service, security
from ..session import DurationCache, SessionRecorder

logger = logging.getLogger(__name__)


def _state(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=500, detail=f"{name} not initialized")
    return service


def get_recorder(request: Request) -> SessionRecorder:
    return _state(request, "recorder")


def get_duration_cache(request: Request) -> DurationCache:
    return _state(request, "duration_cache")


def get_lifecycle(request: Request) -> TaskLifecycleController:
    return _state(request, "lifecycle")


def get_attachments(request: Request) -> AttachmentService:
    return _state(request, "attachments")


def get_task_chat(request: Request) -> TaskChatOrchestrator:
    return _state(request, "task_chat")


def get_flow_authoring(request: Request) -> FlowAuthoringService:
    return _state(request, "flow_authoring")


async def get_beacon_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> str:
    """
    Acting user for requests that may come from ``navigator.sendBeacon``.

    Beacons cannot set headers, so the token may also travel in the body as
    ``{"access_token": "..."}`` (any content type).
    """
    token = credentials.credentials if credentials else None

    if token is None:
        body = await request.body()
        if body:
            try:
                payload = json.loads(body)
            except ValueError:
                payload = None
            if isinstance(payload, dict):
                token = payload.get("access_token")

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"}
        )

    user_id = auth_service.verify_token(token).get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return user_id


def status_for_error(exc: SupportDeskError) -> int:
    """HTTP status for a domain error."""
    if isinstance(exc, (TaskNotFoundError, NotFoundError)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, InvalidStatusError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, (InvalidTransitionError, AuditLogImmutableError)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, TaskValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, StorageError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_400_BAD_REQUEST
