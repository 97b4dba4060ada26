"""
Resilience helpers for completion API calls.

Each upstream endpoint (chat completions, responses) gets its own aiobreaker
circuit breaker; rate-limited calls are retried with tenacity, honouring the
wait hint the API puts into its 429 message.
"""
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple, Type

from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)
from aiobreaker import CircuitBreaker

logger = logging.getLogger(__name__)


@dataclass
class CircuitBreakerConfig:
    """
    Breaker settings for one endpoint.

    ``exclude`` lists exception types that pass through without counting as
    upstream failures (a missing API key is our fault, not the API's).
    """
    fail_max: int = 5
    timeout: int = 60
    exclude: List[Type[BaseException]] = field(default_factory=list)
    name: str = "completion"


# Keyed by endpoint name, shared by every client in the process
_circuit_breakers: Dict[str, CircuitBreaker] = {}


def get_circuit_breaker(
    name: str,
    config: Optional[CircuitBreakerConfig] = None
) -> CircuitBreaker:
    """Breaker for ``name``; the first caller's config wins."""
    breaker = _circuit_breakers.get(name)
    if breaker is not None:
        return breaker

    config = config or CircuitBreakerConfig(name=name)
    breaker = CircuitBreaker(
        fail_max=config.fail_max,
        timeout_duration=timedelta(seconds=config.timeout),
        exclude=config.exclude,
        name=config.name
    )
    _circuit_breakers[name] = breaker
    logger.info(f"Circuit breaker '{name}' armed (fail_max={config.fail_max}, reset after {config.timeout}s)")
    return breaker


def get_breaker_metrics() -> Dict[str, Any]:
    """State and failure count per endpoint, for the readiness probe."""
    return {
        name: {"state": str(breaker.current_state), "fail_counter": breaker.fail_counter}
        for name, breaker in _circuit_breakers.items()
    }


@dataclass
class RetryConfig:
    """Retry budget for rate-limited calls. ``max_attempts`` includes the first call."""
    max_attempts: int = 3
    wait_multiplier: float = 1.0
    wait_min: float = 1.0
    wait_max: float = 10.0
    retry_exceptions: Tuple[Type[BaseException], ...] = (Exception,)


def _retry_wait(config: RetryConfig):
    backoff = wait_exponential(multiplier=config.wait_multiplier, min=config.wait_min, max=config.wait_max)

    def wait(retry_state) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        hint = getattr(error, "retry_after", None)
        if hint is not None:
            return min(max(hint, config.wait_min), config.wait_max)
        return backoff(retry_state)

    return wait


def create_retry_decorator(config: RetryConfig):
    """tenacity decorator that re-raises the last error once attempts run out."""
    return retry(
        stop=stop_after_attempt(config.max_attempts),
        wait=_retry_wait(config),
        retry=retry_if_exception_type(config.retry_exceptions),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )


@asynccontextmanager
async def completion_call_context(endpoint: str, model: str, **metadata):
    """
    Log start, duration and outcome of one upstream call.

    Example:
        async with completion_call_context("chat_completions", "gpt-4o-mini", task_id=task_id):
            data = await post(...)
    """
    context = {"endpoint": endpoint, "model": model, **metadata}
    started = time.time()
    logger.debug(f"Completion call -> {endpoint} ({model})", extra=context)

    try:
        yield context
    except Exception as e:
        logger.error(
            f"Completion call to {endpoint} failed after {time.time() - started:.3f}s: {e}",
            extra={**context, "status": "error", "error_type": type(e).__name__}
        )
        raise

    elapsed = time.time() - started
    logger.info(
        f"Completion call to {endpoint} finished in {elapsed:.3f}s",
        extra={**context, "status": "success", "duration_seconds": elapsed}
    )
