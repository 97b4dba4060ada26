"""
Tests for the task chat orchestrator (handle-task-chat).
"""
import json

import pytest

from supportdesk.dialog import CompletionAPIError, TaskChatOrchestrator
from supportdesk.dialog.task_chat import ALREADY_INITIALIZED, history_role
from supportdesk.exceptions import TaskNotFoundError, TaskValidationError
from supportdesk.models import MessageRole, Task, UseCase
from supportdesk.models.schemas import TaskChatRequest


REPLY = json.dumps({
    "text": "Welche Art von Schlüssel wurde verloren?",
    "options": ["Haustür", "Wohnung"],
    "action": "clarification_needed",
})


@pytest.fixture
def use_case(db_factory):
    with db_factory() as db:
        use_case = UseCase(
            title="Schlüsselverlust",
            type="direct_request",
            information_needed="Art des Schlüssels",
            steps="1. Art klären 2. Ersatz bestellen",
        )
        db.add(use_case)
        db.flush()
    return use_case


@pytest.fixture
def chat_task(lifecycle, agent, use_case):
    return lifecycle.create_task(
        title="Schlüssel verloren",
        description="Mieterin hat den Wohnungsschlüssel verloren",
        assigned_to=agent.id,
        matched_use_case_id=use_case.id
    )


def _orchestrator(client, db_factory, change_feed, clock):
    return TaskChatOrchestrator(client, db_factory=db_factory, change_feed=change_feed, clock=clock)


def test_agent_role_is_sent_as_user():
    assert history_role("agent") == "user"
    assert history_role("assistant") == "assistant"


async def test_auto_initialization_stores_only_the_reply(make_completion, db_factory, change_feed, clock, chat_task):
    client = make_completion([REPLY])
    chat = _orchestrator(client, db_factory, change_feed, clock)

    result = await chat.next_turn(TaskChatRequest(taskId=chat_task.id, isAutoInitialization=True))

    call = client.chat_calls[0]
    assert call["response_format"] == "json_object"
    assert [m["role"] for m in call["messages"]] == ["system", "system"]
    assert "Schlüsselverlust" in call["messages"][0]["content"]
    assert "automatisch initiiert" in call["messages"][1]["content"]

    messages = chat.list_messages(chat_task.id)
    assert [m.role for m in messages] == [MessageRole.ASSISTANT.value]
    assert messages[0].content == result["response"]
    assert result["response_id"] == messages[0].id
    assert json.loads(result["response"])["options"] == ["Haustür", "Wohnung"]


async def test_empty_first_turn_is_treated_as_auto_initialization(make_completion, db_factory, change_feed, clock, chat_task):
    client = make_completion([REPLY])
    chat = _orchestrator(client, db_factory, change_feed, clock)

    await chat.next_turn(TaskChatRequest(taskId=chat_task.id))

    assert "automatisch initiiert" in client.chat_calls[0]["messages"][-1]["content"]


async def test_agent_input_and_reply_are_chained(make_completion, db_factory, change_feed, clock, chat_task, agent):
    client = make_completion([REPLY, '{"text": "Danke", "options": []}'])
    chat = _orchestrator(client, db_factory, change_feed, clock)

    await chat.next_turn(TaskChatRequest(taskId=chat_task.id, isAutoInitialization=True))
    clock.advance(seconds=10)
    result = await chat.next_turn(
        TaskChatRequest(taskId=chat_task.id, buttonChoice="Wohnung", message="ignored"),
        acting_user_id=agent.id
    )

    sent = client.chat_calls[1]["messages"]
    assert sent[-1] == {"role": "user", "content": "Wohnung"}
    assert sent[1]["role"] == "assistant"

    first_reply, agent_turn, second_reply = chat.list_messages(chat_task.id)
    assert agent_turn.role == MessageRole.AGENT.value
    assert agent_turn.created_by == agent.id
    assert agent_turn.previous_message_id == first_reply.id
    assert second_reply.previous_message_id == agent_turn.id
    assert second_reply.created_at > agent_turn.created_at
    assert result["response_id"] == second_reply.id


async def test_history_agent_turns_are_replayed_as_user(make_completion, db_factory, change_feed, clock, chat_task):
    client = make_completion([REPLY, REPLY])
    chat = _orchestrator(client, db_factory, change_feed, clock)

    await chat.next_turn(TaskChatRequest(taskId=chat_task.id, message="Hausschlüssel"))
    clock.advance(seconds=1)
    await chat.next_turn(TaskChatRequest(taskId=chat_task.id, message="Bitte nachbestellen"))

    roles = [m["role"] for m in client.chat_calls[1]["messages"]]
    assert roles == ["system", "user", "assistant", "user"]


async def test_prose_reply_is_normalized_before_storing(make_completion, db_factory, change_feed, clock, chat_task):
    client = make_completion(["Bitte wählen: [Haus, Auto]"])
    chat = _orchestrator(client, db_factory, change_feed, clock)

    result = await chat.next_turn(TaskChatRequest(taskId=chat_task.id, message="Hilfe"))

    envelope = json.loads(result["response"])
    assert envelope["options"] == ["Haus", "Auto"]
    assert envelope["action"] == "next_step"


async def test_auto_initialization_skipped_when_assistant_already_spoke(make_completion, db_factory, change_feed, clock, chat_task):
    client = make_completion([REPLY])
    chat = _orchestrator(client, db_factory, change_feed, clock)
    await chat.next_turn(TaskChatRequest(taskId=chat_task.id, isAutoInitialization=True))

    result = await chat.next_turn(TaskChatRequest(taskId=chat_task.id, isAutoInitialization=True))

    assert result == {"message": ALREADY_INITIALIZED}
    assert len(client.chat_calls) == 1


async def test_summary_on_demand_is_not_persisted(make_completion, db_factory, change_feed, clock, chat_task):
    client = make_completion(['{"summary_text": "Schlüssel wurde nachbestellt."}'])
    chat = _orchestrator(client, db_factory, change_feed, clock)

    result = await chat.next_turn(TaskChatRequest(taskId=chat_task.id, generate_summary_on_demand=True))

    assert result["response"] == {"summary_text": "Schlüssel wurde nachbestellt."}
    assert chat.list_messages(chat_task.id) == []


async def test_turn_publishes_message_and_task_events(make_completion, db_factory, change_feed, clock, chat_task):
    received = []
    change_feed.subscribe("task_messages", callback=received.append)
    change_feed.subscribe("tasks", callback=received.append)
    chat = _orchestrator(make_completion([REPLY]), db_factory, change_feed, clock)

    result = await chat.next_turn(TaskChatRequest(taskId=chat_task.id, message="Hallo"))

    assert [(e.table, e.event_type) for e in received] == [
        ("task_messages", "INSERT"),
        ("task_messages", "INSERT"),
        ("tasks", "UPDATE"),
    ]
    assert received[-1].new["last_message_id"] == result["response_id"]


async def test_missing_task_id_rejected(make_completion, db_factory, change_feed, clock):
    chat = _orchestrator(make_completion([REPLY]), db_factory, change_feed, clock)

    with pytest.raises(TaskValidationError):
        await chat.next_turn(TaskChatRequest(message="Hallo"))


async def test_unknown_task_rejected(make_completion, db_factory, change_feed, clock):
    chat = _orchestrator(make_completion([REPLY]), db_factory, change_feed, clock)

    with pytest.raises(TaskNotFoundError):
        await chat.next_turn(TaskChatRequest(taskId="missing", message="Hallo"))


async def test_completion_failure_persists_nothing(make_completion, db_factory, change_feed, clock, chat_task, db_session):
    client = make_completion([CompletionAPIError("upstream down", status=502)])
    chat = _orchestrator(client, db_factory, change_feed, clock)

    with pytest.raises(CompletionAPIError):
        await chat.next_turn(TaskChatRequest(taskId=chat_task.id, message="Hallo"))

    assert chat.list_messages(chat_task.id) == []
    assert db_session.get(Task, chat_task.id).last_message_id is None
