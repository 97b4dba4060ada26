"""
Pydantic schemas for request/response validation.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .task import TaskSource


# ===========================
# Task requests
# ===========================

class TaskCreateRequest(BaseModel):
    """Request to create a task."""
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    assigned_to: Optional[str] = None
    customer_id: Optional[str] = None
    endkunde_id: Optional[str] = None
    endkunde_email: Optional[str] = None
    matched_use_case_id: Optional[str] = None
    match_confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    source: TaskSource = TaskSource.MANUAL

    @field_validator('title')
    @classmethod
    def validate_title(cls, v: str) -> str:
        if not v.strip():
            raise ValueError('Title cannot be empty')
        return v.strip()

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "title": "Schlüssel verloren",
                "description": "Mieterin hat den Wohnungsschlüssel verloren",
                "source": "email"
            }
        }
    )


class StatusUpdateRequest(BaseModel):
    """Request to change a task's status."""
    status: str = Field(..., min_length=1, max_length=32)


class AssignRequest(BaseModel):
    """Hand a task to another user."""
    assignee_id: str = Field(..., min_length=1)
    note: Optional[str] = Field(None, max_length=2000)


class FollowUpRequest(BaseModel):
    """Schedule a follow-up."""
    follow_up_date: datetime
    note: Optional[str] = Field(None, max_length=2000)

    @field_validator('follow_up_date')
    @classmethod
    def to_naive_utc(cls, v: datetime) -> datetime:
        """Timestamps are stored as naive UTC."""
        if v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v


class CompleteRequest(BaseModel):
    """Complete a task with a closing comment."""
    closing_comment: str = Field(..., max_length=5000)


class CommentCreateRequest(BaseModel):
    content: str = Field(..., max_length=5000)


# ===========================
# Task responses
# ===========================

class DurationResponse(BaseModel):
    task_id: str
    total_seconds: int
    formatted: str


class SessionEndResponse(BaseModel):
    task_id: str
    ended: bool
    duration_seconds: Optional[int] = None


class TimeSummaryEntry(BaseModel):
    user_id: str
    session_count: int
    total_seconds: int
    formatted: str
    active: bool


# ===========================
# Dialog functions
# ===========================

class TaskChatRequest(BaseModel):
    """
    Body of ``handle-task-chat``.

    Field names follow the callers' camelCase; snake_case is accepted too.
    ``taskId`` is optional at the schema level so a missing id produces the
    function's own error payload rather than a validation error.
    """
    task_id: Optional[str] = Field(None, alias="taskId")
    use_case_id: Optional[str] = Field(None, alias="useCaseId")
    message: Optional[str] = Field(None, max_length=10000)
    button_choice: Optional[str] = Field(None, alias="buttonChoice", max_length=1000)
    previous_response_id: Optional[str] = Field(None, alias="previousResponseId")
    selected_options: List[str] = Field(default_factory=list, alias="selectedOptions")
    is_auto_initialization: bool = Field(False, alias="isAutoInitialization")
    generate_summary_on_demand: bool = False

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator('selected_options', mode='before')
    @classmethod
    def coerce_options(cls, v: Any) -> List[str]:
        if v is None:
            return []
        return [str(option) for option in v]


class DialogCustomer(BaseModel):
    name: Optional[str] = None
    industry: Optional[str] = None


class IntelligentDialogRequest(BaseModel):
    """
    Body of ``intelligent-dialog-api``.

    ``messages`` is validated by the handler so a malformed value gets the
    function's German 400 payload.
    """
    messages: Any = None
    previous_response_id: Optional[str] = Field(None, alias="previousResponseId")
    mode: str = "generate"
    parameters: Dict[str, Any] = Field(default_factory=dict)
    customer: Optional[DialogCustomer] = None
    current_steps: Optional[List[Any]] = None
    use_case_description: Optional[str] = None
    routing_info: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ===========================
# Auth
# ===========================

class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=255)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str
    role: str
