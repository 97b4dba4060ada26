"""
Dialog-flow authoring assistant (intelligent-dialog-api).

Helps admins design use case structures. Conversation turns are flattened
into one labelled transcript and sent to the Responses API; a structured
dialog flow is extracted from JSON replies.
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from ..models.schemas import IntelligentDialogRequest
from .completion_client import CompletionClient
from .prompts import JSON_REQUEST, build_authoring_prompt, is_complexity_candidate

logger = logging.getLogger(__name__)

FLOW_CREATED = "Ich habe einen Dialog-Flow für dich erstellt. Du kannst ihn in der Vorschau-Ansicht sehen."
NO_ANSWER = "Ich konnte keine passende Antwort generieren. Bitte versuche es mit einer anderen Anfrage."
MISSING_API_KEY = "OpenAI API-Schlüssel fehlt. Bitte setzen Sie die Umgebungsvariable 'OPENAI_API_KEY'."
INVALID_MESSAGES = "Fehlende oder ungültige Nachrichten. Bitte stellen Sie ein Array von Nachrichten bereit."
INTERNAL_ERROR = "Interner Serverfehler"

_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_OBJECT = re.compile(r"\{[\s\S]*\}")


class DialogRequestError(Exception):
    """Request rejected before reaching the completion API."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


def build_conversation_text(messages: List[Dict[str, Any]], mode: str) -> str:
    lines = []
    for msg in messages:
        label = "Benutzer" if msg.get("role") == "user" else "Assistent"
        lines.append(f"{label}: {msg.get('content', '')}")

    text = "\n\n".join(lines)
    # json_object replies require the word JSON in the input
    if mode == "generate":
        text += JSON_REQUEST
    return text


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Decode the first JSON object in ``text``, looking inside code fences."""
    cleaned = _FENCE.sub(lambda m: m.group(1), text)
    match = _OBJECT.search(cleaned)
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def is_dialog_flow(data: Any) -> bool:
    return isinstance(data, dict) and bool(data.get("steps") or data.get("nodes"))


def extract_dialog_flow(content: str) -> Tuple[Optional[Dict[str, Any]], bool]:
    """
    Returns:
        (flow, extracted) where ``flow`` is set only for objects carrying
        ``steps`` or ``nodes``
    """
    if "{" not in content or "}" not in content:
        return None, False

    try:
        data = json.loads(content)
    except ValueError:
        logger.warning("Dialog flow reply is not pure JSON, searching embedded object")
        data = extract_json_object(content)

    if is_dialog_flow(data):
        return data, True

    logger.info("JSON reply carries no dialog flow, keeping the original answer")
    return None, False


class FlowAuthoringService:
    """Guided-dialog authoring turns."""

    def __init__(self, client: CompletionClient):
        self.client = client

    async def author(self, request: IntelligentDialogRequest) -> Dict[str, Any]:
        """
        Run one authoring turn.

        Returns:
            ``{message, response_id, dialog_flow, flow_extracted}``

        Raises:
            DialogRequestError: Missing API key (500) or invalid messages (400)
            CompletionAPIError: Completion call failed
        """
        if not self.client.is_configured:
            raise DialogRequestError(MISSING_API_KEY, status_code=500)

        if not isinstance(request.messages, list):
            raise DialogRequestError(INVALID_MESSAGES, status_code=400)

        mode = request.mode or "generate"
        logger.info(
            f"Dialog authoring request ({mode}) with {len(request.messages)} messages",
            extra={"mode": mode, "previous_response_id": request.previous_response_id}
        )

        messages = [msg for msg in request.messages if isinstance(msg, dict)]
        conversation = build_conversation_text(messages, mode)

        metadata: Dict[str, str] = {}
        if request.customer and request.customer.name:
            metadata["customer_name"] = request.customer.name
        if request.customer and request.customer.industry:
            metadata["customer_industry"] = request.customer.industry

        full_context = f"{conversation} {request.use_case_description or ''}"
        is_complex = is_complexity_candidate(full_context)
        is_first_step = not request.current_steps
        use_text_format = is_complex and is_first_step and mode == "generate"

        text_format = "json_object" if mode == "generate" and not use_text_format else "text"

        logger.debug(
            f"Complexity check: complex={is_complex}, first_step={is_first_step}, "
            f"text_format={text_format}"
        )

        result = await self.client.create_response(
            instructions=build_authoring_prompt(mode, request.routing_info),
            input_text=conversation,
            previous_response_id=request.previous_response_id,
            text_format=text_format,
            metadata=metadata or None
        )

        message = result.content
        if not message:
            logger.warning("Responses API payload carried no output text")
            message = NO_ANSWER

        dialog_flow = None
        flow_extracted = False
        if mode == "generate" and not use_text_format and message != NO_ANSWER:
            dialog_flow, flow_extracted = extract_dialog_flow(message)
            if flow_extracted:
                message = FLOW_CREATED

        return {
            "message": message,
            "response_id": result.response_id or "",
            "dialog_flow": dialog_flow,
            "flow_extracted": flow_extracted
        }
