"""
Client for an OpenAI-compatible completion API.

Two endpoints are used: ``/chat/completions`` for the task chat and
``/responses`` for dialog authoring. HTTP 429 is retried with exponential
backoff; every other failure surfaces immediately.

Version: 1.0.0
"""
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp
from aiobreaker import CircuitBreakerError

from ..config.llm_settings import LLMSettings, llm_settings
from ..utils.telemetry import track_completion_request
from .call_wrapper import (
    CircuitBreakerConfig,
    RetryConfig,
    completion_call_context,
    create_retry_decorator,
    get_circuit_breaker,
)

logger = logging.getLogger(__name__)

CHAT_COMPLETIONS = "chat_completions"
RESPONSES = "responses"

_RETRY_AFTER = re.compile(r"try again in (\d+(?:\.\d+)?)s", re.IGNORECASE)


class CompletionAPIError(Exception):
    """Completion API returned an error or could not be reached."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class CompletionRateLimitError(CompletionAPIError):
    """HTTP 429 from the completion API."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, status=429)
        self.retry_after = retry_after


class MissingAPIKeyError(CompletionAPIError):
    """No API key configured."""
    pass


def is_rate_limit_error(exc: BaseException) -> bool:
    """Classify an error as a rate limit by its message."""
    return "rate limit" in str(exc).lower()


@dataclass
class CompletionResult:
    """Text of one completion plus the upstream identifiers."""
    content: str
    response_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def _error_message(data: Any) -> str:
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if error:
            return str(error)
    return str(data)


def extract_response_text(data: Dict[str, Any]) -> str:
    """First ``output_text`` of a Responses API payload, or ``""``."""
    if data.get("output_text"):
        return str(data["output_text"])

    for item in data.get("output") or []:
        for part in item.get("content") or []:
            if part.get("text"):
                return str(part["text"])

    # Some compatible servers answer in chat-completions shape
    choices = data.get("choices") or []
    if choices:
        return str((choices[0].get("message") or {}).get("content") or "")

    return ""


class CompletionClient:
    """
    Async HTTP client with rate-limit retry and a circuit breaker per endpoint.

    The aiohttp session is created lazily and must be released with ``close()``.
    """

    def __init__(
        self,
        config: Optional[LLMSettings] = None,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.config = config or llm_settings
        self._session = session
        self._owns_session = session is None

        self.retry_config = RetryConfig(
            max_attempts=self.config.llm_rate_limit_retries,
            wait_min=self.config.llm_retry_wait_min,
            wait_max=self.config.llm_retry_wait_max,
            retry_exceptions=(CompletionRateLimitError,)
        )
        self._retry = create_retry_decorator(self.retry_config)

    @property
    def is_configured(self) -> bool:
        return bool(self.config.get_api_key())

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.llm_timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _breaker(self, endpoint: str):
        return get_circuit_breaker(
            f"completion.{endpoint}",
            CircuitBreakerConfig(
                fail_max=self.config.llm_circuit_breaker_fail_max,
                timeout=self.config.llm_circuit_breaker_timeout,
                exclude=[MissingAPIKeyError],
                name=f"completion.{endpoint}"
            )
        )

    async def _post_once(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        api_key = self.config.get_api_key()
        if not api_key:
            raise MissingAPIKeyError("Completion API key is not configured")

        url = f"{self.config.llm_api_base_url.rstrip('/')}/{path}"
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json"
        }

        session = await self._get_session()
        try:
            async with session.post(url, json=payload, headers=headers) as response:
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = {"error": await response.text()}

                if response.status == 429:
                    message = _error_message(data)
                    match = _RETRY_AFTER.search(message)
                    raise CompletionRateLimitError(
                        f"Completion API rate limit exceeded: {message}",
                        retry_after=float(match.group(1)) if match else None
                    )

                if response.status >= 400:
                    raise CompletionAPIError(
                        f"API error: {_error_message(data)}",
                        status=response.status
                    )

                if not isinstance(data, dict):
                    raise CompletionAPIError(f"Unexpected response payload: {data!r}")

                return data

        except aiohttp.ClientError as e:
            raise CompletionAPIError(f"Completion API request failed: {e}") from e

    async def _post(self, endpoint: str, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        start = time.time()
        breaker = self._breaker(endpoint)

        try:
            async with completion_call_context(endpoint, payload.get("model", "")):
                data = await breaker.call_async(self._retry(self._post_once), path, payload)
        except CircuitBreakerError as e:
            track_completion_request(endpoint, "circuit_open", time.time() - start)
            raise CompletionAPIError(f"Completion API temporarily unavailable: {e}") from e
        except CompletionRateLimitError:
            track_completion_request(endpoint, "rate_limited", time.time() - start)
            raise
        except CompletionAPIError:
            track_completion_request(endpoint, "error", time.time() - start)
            raise

        track_completion_request(endpoint, "success", time.time() - start)
        return data

    async def chat_completion(
        self,
        messages: List[Dict[str, str]],
        response_format: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None
    ) -> CompletionResult:
        """
        Call ``/chat/completions``.

        Args:
            messages: Chat messages ({role, content})
            response_format: ``"json_object"`` to request a JSON reply
            temperature: Sampling temperature (defaults to task chat settings)
            max_tokens: Completion token limit
            model: Model override

        Returns:
            CompletionResult with the first choice's content
        """
        payload: Dict[str, Any] = {
            "model": model or self.config.task_chat_model,
            "messages": messages,
            "temperature": self.config.task_chat_temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.config.task_chat_max_tokens
        }
        if response_format:
            payload["response_format"] = {"type": response_format}

        data = await self._post(CHAT_COMPLETIONS, "chat/completions", payload)

        choices = data.get("choices") or []
        if not choices:
            raise CompletionAPIError("Completion API returned no choices")

        content = (choices[0].get("message") or {}).get("content") or ""
        return CompletionResult(content=content, response_id=data.get("id"), raw=data)

    async def create_response(
        self,
        instructions: str,
        input_text: str,
        previous_response_id: Optional[str] = None,
        text_format: str = "text",
        metadata: Optional[Dict[str, str]] = None,
        temperature: Optional[float] = None,
        model: Optional[str] = None
    ) -> CompletionResult:
        """
        Call ``/responses``.

        Returns:
            CompletionResult whose content is empty when the payload carried
            no output text
        """
        payload: Dict[str, Any] = {
            "model": model or self.config.dialog_model,
            "instructions": instructions,
            "input": input_text,
            "temperature": self.config.dialog_temperature if temperature is None else temperature,
            "text": {"format": {"type": text_format}}
        }
        if metadata:
            payload["metadata"] = metadata
        if previous_response_id:
            payload["previous_response_id"] = previous_response_id

        data = await self._post(RESPONSES, "responses", payload)

        return CompletionResult(
            content=extract_response_text(data),
            response_id=data.get("id") or data.get("response_id") or "",
            raw=data
        )
