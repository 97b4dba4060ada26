"""
FastAPI application entry point.
Wires the session recorder, lifecycle controller and dialog orchestrators
into application state and mounts the API.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from .config import settings
from .api.routes import auth, functions, health, sessions, tasks
from .api.dependencies import status_for_error
from .api.websocket import task_updates_endpoint
from .database import init_db, cleanup_db, check_db_connection, check_tables_exist
from .dialog import CompletionClient, FlowAuthoringService, TaskChatOrchestrator
from .exceptions import SupportDeskError
from .realtime import ChangeFeed
from .services import AttachmentService, TaskLifecycleController
from .session import DurationCache, SessionRecorder
from .storage import LocalBlobStorage
from .utils.telemetry import setup_telemetry
from .utils.middleware import (
    RequestIDMiddleware,
    TimingMiddleware,
    RateLimitMiddleware,
    ErrorHandlingMiddleware
)

# Configure structured logging
logging.basicConfig(
    level=logging.INFO if not settings.debug else logging.DEBUG,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def build_services(app: FastAPI) -> None:
    """Create the service graph and attach it to ``app.state``."""
    change_feed = ChangeFeed()
    recorder = SessionRecorder(change_feed=change_feed)

    app.state.change_feed = change_feed
    app.state.recorder = recorder
    app.state.duration_cache = DurationCache(
        recorder,
        change_feed,
        enabled=settings.duration_cache_enabled,
        max_entries=settings.duration_cache_max_entries
    )
    app.state.lifecycle = TaskLifecycleController(recorder, change_feed=change_feed)

    storage = LocalBlobStorage()
    app.state.storage = storage
    app.state.attachments = AttachmentService(storage, change_feed=change_feed)

    completion_client = CompletionClient()
    app.state.completion_client = completion_client
    app.state.task_chat = TaskChatOrchestrator(completion_client, change_feed=change_feed)
    app.state.flow_authoring = FlowAuthoringService(completion_client)

    logger.info(f"Completion client: {completion_client.config.get_client_config()}")
    if not completion_client.is_configured:
        logger.warning("✗ Completion API key not set - dialog functions will fail")


def _verify_task_store() -> None:
    init_db()
    if not check_db_connection():
        raise RuntimeError("Database connection check failed")
    if not check_tables_exist():
        raise RuntimeError("Required database tables are missing")


async def _release_services(app: FastAPI) -> None:
    completion_client = getattr(app.state, "completion_client", None)
    if completion_client is not None:
        await completion_client.close()

    duration_cache = getattr(app.state, "duration_cache", None)
    if duration_cache is not None:
        duration_cache.close()

    change_feed = getattr(app.state, "change_feed", None)
    if change_feed is not None:
        change_feed.clear()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Bring up the task store and service graph, tear both down on shutdown.

    Open time segments are left as they are on shutdown; agents' clients end
    them through the session beacon.
    """
    logger.info(f"Starting {settings.app_name} v{settings.app_version} ({settings.environment})")

    try:
        _verify_task_store()
        build_services(app)
    except Exception as e:
        logger.error(f"Failed to start application: {e}", exc_info=True)
        raise

    logger.info("Support desk backend ready")

    yield

    logger.info("Shutting down support desk backend")
    try:
        await _release_services(app)
    finally:
        cleanup_db()


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Task lifecycle, time accounting and guided task dialogs for support agents",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None
)

# Middleware runs in reverse order of registration
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(TimingMiddleware)
app.add_middleware(RequestIDMiddleware)

if settings.rate_limit_enabled:
    app.add_middleware(
        RateLimitMiddleware,
        calls=settings.rate_limit_requests,
        period=settings.rate_limit_period
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Process-Time"]
)

if settings.enable_telemetry:
    setup_telemetry(app)

# Include routers
app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(auth.router, prefix=f"{settings.api_prefix}/auth", tags=["auth"])
app.include_router(tasks.router, prefix=f"{settings.api_prefix}/tasks", tags=["tasks"])
app.include_router(
    sessions.router,
    prefix=f"{settings.api_prefix}/tasks/{{task_id}}/session",
    tags=["sessions"]
)
app.include_router(functions.router, prefix=settings.functions_prefix, tags=["functions"])

app.add_api_websocket_route("/ws/tasks/{task_id}", task_updates_endpoint)


@app.exception_handler(SupportDeskError)
async def domain_exception_handler(request: Request, exc: SupportDeskError):
    """Map domain errors to HTTP responses."""
    code = status_for_error(exc)
    if code >= 500:
        logger.error(f"{type(exc).__name__}: {exc}")
    else:
        logger.info(f"{type(exc).__name__}: {exc}")
    return JSONResponse(status_code=code, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions globally."""
    request_id = getattr(request.state, "request_id", "unknown")
    logger.error(f"Unhandled exception [{request_id}]: {exc}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": str(exc) if settings.debug else "An unexpected error occurred",
            "request_id": request_id
        }
    )


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "status": "running",
        "environment": settings.environment
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "supportdesk.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info"
    )
