"""
Assistant reply envelope parser.

Every assistant reply is normalized into ``{text, options, action, ...}``.
The parser returns a tagged result so callers can tell a well-formed reply
from a recovered one:

- ``ok``: the reply is a JSON object with a string ``text``
- ``fallback``: the reply is prose; heuristics recovered what they could
- ``malformed``: the reply is empty, or JSON of the wrong shape
"""
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..utils.telemetry import track_envelope_result

logger = logging.getLogger(__name__)

OK = "ok"
FALLBACK = "fallback"
MALFORMED = "malformed"

DEFAULT_ACTION = "next_step"
ALLOWED_ACTIONS = (
    "next_step",
    "propose_completion",
    "clarification_needed",
    "human_handoff_suggested",
)
OPTIONAL_TEXT_FIELDS = ("summary_draft", "text_to_agent", "suggested_confirmation_text")

KEY_OPTIONS = ["Hausschlüssel", "Wohnungsschlüssel", "Briefkastenschlüssel"]

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_EMBEDDED_OBJECT = re.compile(r"\{[\s\S]*\}")
_BRACKET_LIST = re.compile(r"\[(.*?)\]")


@dataclass
class EnvelopeResult:
    kind: str
    envelope: Dict[str, Any]
    reason: Optional[str] = None
    heuristic: Optional[str] = None

    @property
    def is_ok(self) -> bool:
        return self.kind == OK

    def to_json(self) -> str:
        return json.dumps(self.envelope, ensure_ascii=False)


def _coerce_options(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(option) for option in value if option is not None and str(option).strip()]
    if isinstance(value, str) and value.strip():
        return [value]
    return []


def normalize_envelope(data: Dict[str, Any]) -> Dict[str, Any]:
    """Build a clean envelope from a decoded object that has a string ``text``."""
    action = data.get("action")
    if action not in ALLOWED_ACTIONS:
        action = DEFAULT_ACTION

    envelope: Dict[str, Any] = {
        "text": data["text"],
        "options": _coerce_options(data.get("options")),
        "action": action,
    }
    for key in OPTIONAL_TEXT_FIELDS:
        if isinstance(data.get(key), str):
            envelope[key] = data[key]
    return envelope


def _plain(text: str, options: Optional[List[str]] = None) -> Dict[str, Any]:
    return {"text": text, "options": options or [], "action": DEFAULT_ACTION}


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return None


def _embedded_envelope(raw: str) -> Optional[Dict[str, Any]]:
    candidates = [m.group(1) for m in _FENCED_JSON.finditer(raw)]
    embedded = _EMBEDDED_OBJECT.search(raw)
    if embedded:
        candidates.append(embedded.group(0))

    for candidate in candidates:
        data = _loads(candidate)
        if isinstance(data, dict) and isinstance(data.get("text"), str):
            return normalize_envelope(data)
    return None


def _bracket_options(raw: str) -> Optional[List[str]]:
    match = _BRACKET_LIST.search(raw)
    if not match:
        return None
    options = [
        option.strip().strip('"').strip("'").strip()
        for option in match.group(1).split(",")
    ]
    options = [option for option in options if option]
    return options or None


def _mentions_lost_key(raw: str) -> bool:
    lowered = raw.lower()
    return "schlüssel" in lowered and ("verloren" in lowered or "art von schlüssel" in lowered)


def _parse(raw: Optional[str]) -> EnvelopeResult:
    if raw is None or not raw.strip():
        return EnvelopeResult(MALFORMED, _plain(raw or ""), reason="empty reply")

    stripped = raw.strip()
    data = _loads(stripped)

    if data is not None:
        if isinstance(data, dict) and isinstance(data.get("text"), str):
            return EnvelopeResult(OK, normalize_envelope(data))
        if isinstance(data, dict):
            reason = "object without string 'text'"
        else:
            reason = f"JSON {type(data).__name__} instead of object"
        return EnvelopeResult(MALFORMED, _plain(raw), reason=reason)

    envelope = _embedded_envelope(stripped)
    if envelope is not None:
        return EnvelopeResult(FALLBACK, envelope, reason="reply is not pure JSON", heuristic="embedded_json")

    options = _bracket_options(stripped)
    if options:
        return EnvelopeResult(FALLBACK, _plain(raw, options), reason="reply is not JSON", heuristic="bracket_options")

    if _mentions_lost_key(stripped):
        return EnvelopeResult(FALLBACK, _plain(raw, list(KEY_OPTIONS)), reason="reply is not JSON", heuristic="lost_key")

    return EnvelopeResult(FALLBACK, _plain(raw), reason="reply is not JSON", heuristic="plain_text")


def parse_envelope(raw: Optional[str]) -> EnvelopeResult:
    """
    Parse an assistant reply into an envelope.

    The returned envelope always has a string ``text`` and a list ``options``.
    Non-ok results are logged and counted as a data-quality signal.
    """
    result = _parse(raw)

    track_envelope_result(result.kind, result.heuristic or "none")
    if not result.is_ok:
        logger.warning(
            f"Assistant reply normalized as {result.kind}: {result.reason}",
            extra={"envelope_kind": result.kind, "heuristic": result.heuristic}
        )
    return result
