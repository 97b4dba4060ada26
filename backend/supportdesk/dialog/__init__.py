"""
Dialog orchestration: task chat guidance and dialog-flow authoring.
"""

from .completion_client import (
    CompletionAPIError,
    CompletionClient,
    CompletionRateLimitError,
    CompletionResult,
    MissingAPIKeyError,
    is_rate_limit_error
)
from .envelope import EnvelopeResult, parse_envelope
from .task_chat import TaskChatOrchestrator
from .flow_authoring import DialogRequestError, FlowAuthoringService

__all__ = [
    'CompletionAPIError',
    'CompletionClient',
    'CompletionRateLimitError',
    'CompletionResult',
    'MissingAPIKeyError',
    'is_rate_limit_error',
    'EnvelopeResult',
    'parse_envelope',
    'TaskChatOrchestrator',
    'DialogRequestError',
    'FlowAuthoringService'
]
