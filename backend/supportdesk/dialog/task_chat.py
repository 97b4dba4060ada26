"""
Task chat orchestrator (handle-task-chat).

Builds the prompt for the next guidance turn from the task's use case,
end customer, contacts and message history, calls the completion API and
persists the agent input and the normalized assistant reply.

Version: 1.0.0
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..database import get_db_context
from ..exceptions import TaskNotFoundError, TaskValidationError
from ..models import (
    Customer,
    EndCustomer,
    EndCustomerContact,
    MessageRole,
    Task,
    TaskMessage,
    UseCase,
)
from ..models.schemas import TaskChatRequest
from ..realtime import ChangeFeed, EventBuffer
from ..session.recorder import DbFactory
from ..utils.telemetry import metrics_collector
from ..utils.timeutils import Clock, utcnow
from .completion_client import CompletionClient
from .envelope import parse_envelope
from .prompts import SUMMARY_INSTRUCTION, build_auto_init_prompt, build_task_chat_system_prompt

logger = logging.getLogger(__name__)

ALREADY_INITIALIZED = "Task already has messages, no auto-initialization needed"


@dataclass
class ChatContext:
    """Everything the prompt needs, detached from the database session."""
    task: Dict[str, Any]
    history: List[Dict[str, Any]] = field(default_factory=list)
    use_case: Optional[Dict[str, Any]] = None
    end_customer: Optional[Dict[str, Any]] = None
    contacts: List[Dict[str, Any]] = field(default_factory=list)
    customer_name: Optional[str] = None

    @property
    def has_assistant_messages(self) -> bool:
        return any(msg["role"] == MessageRole.ASSISTANT.value for msg in self.history)

    @property
    def last_message_id(self) -> Optional[str]:
        if self.task.get("last_message_id"):
            return self.task["last_message_id"]
        return self.history[-1]["id"] if self.history else None


def history_role(role: str) -> str:
    """Completion API role for a stored message; agent turns are user turns."""
    if role == MessageRole.AGENT.value:
        return MessageRole.USER.value
    return role


class TaskChatOrchestrator:
    """Produces the next assistant turn of a task conversation."""

    def __init__(
        self,
        client: CompletionClient,
        db_factory: DbFactory = get_db_context,
        change_feed: Optional[ChangeFeed] = None,
        clock: Clock = utcnow
    ):
        self.client = client
        self.db_factory = db_factory
        self.change_feed = change_feed
        self.clock = clock

    def load_context(self, task_id: str, use_case_id: Optional[str] = None) -> ChatContext:
        with self.db_factory() as db:
            task = db.get(Task, task_id)
            if task is None:
                raise TaskNotFoundError(task_id)

            history = (
                db.query(TaskMessage)
                .filter(TaskMessage.task_id == task_id)
                .order_by(TaskMessage.created_at)
                .all()
            )

            context = ChatContext(task=task.to_dict(), history=[msg.to_dict() for msg in history])

            use_case_id = use_case_id or task.matched_use_case_id
            if use_case_id:
                use_case = db.get(UseCase, use_case_id)
                context.use_case = use_case.to_dict() if use_case else None

            if task.endkunde_id:
                end_customer = db.get(EndCustomer, task.endkunde_id)
                context.end_customer = end_customer.to_dict() if end_customer else None

            if task.customer_id:
                customer = db.get(Customer, task.customer_id)
                context.customer_name = customer.name if customer else None
                context.contacts = [
                    contact.to_dict()
                    for contact in db.query(EndCustomerContact)
                    .filter(EndCustomerContact.customer_id == task.customer_id)
                    .order_by(EndCustomerContact.name)
                    .all()
                ]

        return context

    def build_messages(self, request: TaskChatRequest, context: ChatContext) -> List[Dict[str, str]]:
        agent_input = request.button_choice or request.message
        auto_init = request.is_auto_initialization or (not agent_input and not context.history)

        messages = [{
            "role": "system",
            "content": build_task_chat_system_prompt(
                use_case=context.use_case,
                end_customer=context.end_customer,
                contacts=context.contacts,
                selected_options=request.selected_options,
                is_auto_initialization=request.is_auto_initialization
            )
        }]

        for msg in context.history:
            messages.append({"role": history_role(msg["role"]), "content": msg["content"]})

        if auto_init:
            messages.append({
                "role": "system",
                "content": build_auto_init_prompt(
                    context.task,
                    use_case=context.use_case,
                    end_customer=context.end_customer,
                    customer_name=context.customer_name
                )
            })

        if agent_input:
            messages.append({"role": "user", "content": agent_input})

        if request.generate_summary_on_demand:
            messages.append({"role": "user", "content": SUMMARY_INSTRUCTION})

        return messages

    async def next_turn(self, request: TaskChatRequest, acting_user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Run one chat turn.

        Returns:
            ``{response, response_id}``; for an on-demand summary ``response``
            is ``{summary_text}`` and nothing is persisted

        Raises:
            TaskValidationError: ``taskId`` missing
            TaskNotFoundError: Task does not exist
            CompletionAPIError: Completion call failed
        """
        if not request.task_id:
            raise TaskValidationError("taskId", "Task ID is required")

        logger.info(
            f"Task chat request for task {request.task_id}",
            extra={
                "task_id": request.task_id,
                "use_case_id": request.use_case_id,
                "has_message": bool(request.message),
                "button_choice": request.button_choice,
                "auto_init": request.is_auto_initialization
            }
        )

        context = self.load_context(request.task_id, request.use_case_id)

        if request.is_auto_initialization and context.has_assistant_messages:
            logger.info(f"Task {request.task_id} already has assistant messages, skipping auto-initialization")
            return {"message": ALREADY_INITIALIZED}

        messages = self.build_messages(request, context)
        result = await self.client.chat_completion(messages, response_format="json_object")

        if request.generate_summary_on_demand:
            return {
                "response": {"summary_text": self._summary_text(result.content)},
                "response_id": result.response_id
            }

        parsed = parse_envelope(result.content)
        envelope_json = parsed.to_json()
        assistant_id = self._persist_turn(
            context,
            agent_input=request.button_choice or request.message,
            envelope_json=envelope_json,
            acting_user_id=acting_user_id
        )
        metrics_collector.record_dialog_turn()

        return {"response": envelope_json, "response_id": assistant_id}

    @staticmethod
    def _summary_text(content: str) -> str:
        try:
            data = json.loads(content)
        except ValueError:
            return content
        if isinstance(data, dict) and isinstance(data.get("summary_text"), str):
            return data["summary_text"]
        return content

    def _persist_turn(
        self,
        context: ChatContext,
        agent_input: Optional[str],
        envelope_json: str,
        acting_user_id: Optional[str]
    ) -> str:
        events = EventBuffer(self.change_feed)
        task_id = context.task["id"]

        with self.db_factory() as db:
            task = db.get(Task, task_id)
            if task is None:
                raise TaskNotFoundError(task_id)

            previous_id = context.last_message_id
            created_at = self.clock()

            if agent_input:
                agent_message = TaskMessage(
                    task_id=task_id,
                    role=MessageRole.AGENT.value,
                    content=agent_input,
                    created_by=acting_user_id,
                    previous_message_id=previous_id,
                    created_at=created_at
                )
                db.add(agent_message)
                db.flush()
                events.add("task_messages", "INSERT", new=agent_message.to_dict())
                previous_id = agent_message.id

            # Reply sorts after the input it answers
            assistant_created_at = max(self.clock(), created_at + timedelta(microseconds=1))
            assistant_message = TaskMessage(
                task_id=task_id,
                role=MessageRole.ASSISTANT.value,
                content=envelope_json,
                previous_message_id=previous_id,
                created_at=assistant_created_at
            )
            db.add(assistant_message)
            db.flush()
            events.add("task_messages", "INSERT", new=assistant_message.to_dict())

            previous_task = task.to_dict()
            task.last_message_id = assistant_message.id
            task.updated_at = self.clock()
            db.flush()
            events.add("tasks", "UPDATE", new=task.to_dict(), old=previous_task)

            assistant_id = assistant_message.id

        events.flush()
        logger.info(
            f"Task chat turn stored for task {task_id}",
            extra={"task_id": task_id, "message_id": assistant_id}
        )
        return assistant_id

    def list_messages(self, task_id: str) -> List[TaskMessage]:
        with self.db_factory() as db:
            if db.get(Task, task_id) is None:
                raise TaskNotFoundError(task_id)
            return (
                db.query(TaskMessage)
                .filter(TaskMessage.task_id == task_id)
                .order_by(TaskMessage.created_at)
                .all()
            )
