"""
Pytest configuration and shared fixtures for testing.
Provides an in-memory database per test, a controllable clock, service
instances wired to both, and a fake completion client.
"""
import pytest
import os
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set testing environment before importing the application
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["ENVIRONMENT"] = "testing"
os.environ["DEBUG"] = "false"
os.environ["ENABLE_TELEMETRY"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SECRET_KEY"] = "test-secret-key"

from supportdesk.database import Base, configure_sqlite_transactions, import_models
from supportdesk.dialog import CompletionAPIError, CompletionResult
from supportdesk.dialog import call_wrapper
from supportdesk.models import Profile, UserRole
from supportdesk.realtime import ChangeFeed
from supportdesk.services import TaskLifecycleController
from supportdesk.session import SessionRecorder


# ===========================
# Clock Fixtures
# ===========================

class FakeClock:
    """Manually advanced clock returning naive UTC datetimes."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 5, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ===========================
# Database Fixtures
# ===========================

@pytest.fixture
def db_engine():
    """
    In-memory SQLite engine for one test.
    Uses the same transaction handling as the application engine.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False  # Set to True for SQL debugging
    )
    configure_sqlite_transactions(engine)

    import_models()
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=db_engine,
        expire_on_commit=False
    )


@pytest.fixture
def db_factory(session_factory):
    """Transactional scope bound to the test engine (mirrors get_db_context)."""
    @contextmanager
    def _factory():
        db = session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    return _factory


@pytest.fixture
def db_session(session_factory):
    """Plain session for assertions and test data."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# ===========================
# Service Fixtures
# ===========================

@pytest.fixture
def change_feed() -> ChangeFeed:
    feed = ChangeFeed()
    yield feed
    feed.clear()


@pytest.fixture
def recorder(db_factory, change_feed, clock) -> SessionRecorder:
    return SessionRecorder(db_factory=db_factory, change_feed=change_feed, clock=clock)


@pytest.fixture
def lifecycle(recorder, db_factory, change_feed, clock) -> TaskLifecycleController:
    return TaskLifecycleController(recorder, db_factory=db_factory, change_feed=change_feed, clock=clock)


@pytest.fixture
def make_profile(db_factory):
    """Create a profile. Usage: make_profile("agent@example.com", role="admin")."""
    def _make(email: str, role: str = UserRole.AGENT.value, full_name: Optional[str] = None) -> Profile:
        with db_factory() as db:
            profile = Profile(email=email, role=role, full_name=full_name)
            db.add(profile)
            db.flush()
        return profile

    return _make


@pytest.fixture
def agent(make_profile) -> Profile:
    return make_profile("agent@example.com", full_name="Anna Agent")


@pytest.fixture
def other_agent(make_profile) -> Profile:
    return make_profile("other@example.com", full_name="Otto Other")


@pytest.fixture
def task(lifecycle, agent):
    """New task assigned to ``agent``."""
    return lifecycle.create_task(
        title="Schlüssel verloren",
        description="Mieterin hat den Wohnungsschlüssel verloren",
        created_by=agent.id,
        assigned_to=agent.id
    )


# ===========================
# Completion Client Fixtures
# ===========================

class FakeCompletionClient:
    """
    Stand-in for CompletionClient.

    Replies are consumed in order; an exception instance in the list is
    raised instead of returned.
    """

    def __init__(self, replies: Optional[List[Any]] = None, configured: bool = True):
        self.replies = list(replies or [])
        self.configured = configured
        self.chat_calls: List[Dict[str, Any]] = []
        self.response_calls: List[Dict[str, Any]] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    def _next(self) -> Any:
        if not self.replies:
            raise CompletionAPIError("No fake reply queued")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def chat_completion(self, messages, response_format=None, **kwargs) -> CompletionResult:
        self.chat_calls.append({"messages": messages, "response_format": response_format, **kwargs})
        return CompletionResult(content=self._next(), response_id="chatcmpl-test")

    async def create_response(self, instructions, input_text, **kwargs) -> CompletionResult:
        self.response_calls.append({"instructions": instructions, "input_text": input_text, **kwargs})
        return CompletionResult(content=self._next(), response_id="resp_test")

    async def close(self) -> None:
        pass


@pytest.fixture
def fake_completion() -> FakeCompletionClient:
    return FakeCompletionClient()


@pytest.fixture
def make_completion():
    """Build a fake client with queued replies. Usage: make_completion(['{"text": "Hi"}'])."""
    return FakeCompletionClient


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Circuit breakers are module-global; isolate them per test."""
    call_wrapper._circuit_breakers.clear()
    yield
    call_wrapper._circuit_breakers.clear()


# ===========================
# Pytest Configuration
# ===========================

def pytest_collection_modifyitems(config, items):
    """Auto-mark tests based on their location."""
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
