"""
HTTP middleware: request correlation, timing, per-user rate limiting and a
JSON 500 fallback.
"""
from fastapi import HTTPException, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
import time
import uuid
import logging
from collections import deque
from typing import Callable, Deque, Dict, Optional, Tuple

from ..config import settings
from ..services.auth_service import auth_service

logger = logging.getLogger(__name__)

# Paths that must stay reachable even for a throttled user
UNTHROTTLED_SUFFIXES: Tuple[str, ...] = ("/session/end", "/close-view")


def acting_user_hint(request: Request) -> Optional[str]:
    """
    ``sub`` claim of a valid bearer token, ``None`` otherwise.

    Only tokens signed with our key count, so a client cannot dodge the rate
    limit by inventing subjects.
    """
    header = request.headers.get("Authorization", "")
    if not header.lower().startswith("bearer "):
        return None
    try:
        claims = auth_service.verify_token(header[7:])
    except HTTPException:
        return None
    sub = claims.get("sub")
    return str(sub) if sub else None


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tag each request with an ID and the acting user for log correlation."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        request.state.user_hint = acting_user_hint(request)

        logger.debug(
            f"{request.method} {request.url.path} [{request_id}]",
            extra={"request_id": request_id, "user_id": request.state.user_hint}
        )

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class TimingMiddleware(BaseHTTPMiddleware):
    """
    Report processing time in ``X-Process-Time``.

    Dialog functions wait on the completion API, so they get their own
    (higher) slow-request threshold.
    """

    def __init__(self, app, slow_threshold: float = 1.0, dialog_slow_threshold: float = 30.0):
        super().__init__(app)
        self.slow_threshold = slow_threshold
        self.dialog_slow_threshold = dialog_slow_threshold

    def _threshold(self, path: str) -> float:
        if path.startswith(settings.functions_prefix):
            return self.dialog_slow_threshold
        return self.slow_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start

        response.headers["X-Process-Time"] = f"{elapsed:.4f}"

        if elapsed > self._threshold(request.url.path):
            logger.warning(
                f"Slow request: {request.method} {request.url.path} took {elapsed:.2f}s",
                extra={
                    "request_id": getattr(request.state, "request_id", None),
                    "duration_seconds": elapsed
                }
            )
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window limit per verified user (client address otherwise).

    Health probes and the calls that close a user's running session are
    never throttled, otherwise a limited user would leave sessions open.
    Windows with no request inside the period are dropped on a sweep that
    runs at most once per period.
    """

    def __init__(self, app, calls: int = 100, period: int = 60):
        super().__init__(app)
        self.calls = calls
        self.period = period
        self.windows: Dict[str, Deque[float]] = {}
        self._last_sweep = time.monotonic()

    @staticmethod
    def _key(request: Request) -> str:
        user = getattr(request.state, "user_hint", None) or acting_user_hint(request)
        if user:
            return f"user:{user}"
        return f"addr:{request.client.host if request.client else 'unknown'}"

    @staticmethod
    def _exempt(path: str) -> bool:
        return path.startswith("/health") or path.endswith(UNTHROTTLED_SUFFIXES)

    def _sweep(self, now: float) -> None:
        cutoff = now - self.period
        stale = [key for key, window in self.windows.items() if not window or window[-1] <= cutoff]
        for key in stale:
            del self.windows[key]
        self._last_sweep = now

    def _admit(self, key: str) -> bool:
        now = time.monotonic()
        if now - self._last_sweep >= self.period:
            self._sweep(now)

        window = self.windows.setdefault(key, deque())
        while window and window[0] <= now - self.period:
            window.popleft()

        if len(window) >= self.calls:
            return False
        window.append(now)
        return True

    def remaining(self, key: str) -> int:
        return max(0, self.calls - len(self.windows.get(key, ())))

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if self._exempt(path):
            return await call_next(request)

        key = self._key(request)
        if not self._admit(key):
            logger.warning(f"Rate limit exceeded for {key} on {path}")
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Please try again later."},
                headers={"Retry-After": str(self.period), "X-RateLimit-Limit": str(self.calls)}
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.calls)
        response.headers["X-RateLimit-Remaining"] = str(self.remaining(key))
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Last-resort JSON 500 for exceptions that escaped the route handlers."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as e:
            request_id = getattr(request.state, "request_id", "unknown")
            logger.error(
                f"Unhandled exception on {request.method} {request.url.path} [{request_id}]: {e}",
                exc_info=True,
                extra={"request_id": request_id, "user_id": getattr(request.state, "user_hint", None)}
            )
            return JSONResponse(
                status_code=500,
                content={
                    "error": "Internal server error",
                    "message": str(e) if settings.debug else "An unexpected error occurred",
                    "request_id": request_id
                }
            )
