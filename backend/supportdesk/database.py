"""
Engine and session handling for the task store.

One synchronous engine serves the whole process. SQLite runs in WAL mode with
foreign keys on; PostgreSQL gets a pre-pinged connection pool. Service code
writes through ``get_db_context()`` so that a task change, its audit entry
and any session bookkeeping commit together.
"""
from sqlalchemy import create_engine, text, inspect, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool, QueuePool
from sqlalchemy.exc import SQLAlchemyError, DisconnectionError, OperationalError
import logging
import time
import threading
from contextlib import contextmanager
from typing import Generator, Dict, Any, List, Optional
from pathlib import Path

from .config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

REQUIRED_TABLES: List[str] = [
    "profiles",
    "customers",
    "endkunden",
    "endkunden_contacts",
    "use_cases",
    "tasks",
    "task_sessions",
    "task_messages",
    "task_activities",
    "task_comments",
    "task_attachments",
    "notifications",
]

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None
_init_lock = threading.RLock()
_initialized = False


def configure_sqlite_transactions(engine: Engine) -> None:
    """
    Make SQLAlchemy, not the sqlite3 driver, emit BEGIN.

    Without this a SAVEPOINT issued before the first write opens and commits a
    transaction of its own instead of nesting inside the outer one.
    """
    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


def _sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


def _ping_connection(dbapi_connection, connection_record, connection_proxy):
    try:
        dbapi_connection.cursor().execute("SELECT 1")
    except Exception as e:
        logger.warning(f"Stale database connection dropped: {e}")
        raise DisconnectionError("Connection lost")


def _build_sqlite_engine(url: str) -> Engine:
    path = url.replace("sqlite:///", "")
    in_memory = path == ":memory:"
    if not in_memory:
        Path(path).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": 20},
        # In-memory databases only exist on the connection that created them
        poolclass=StaticPool if in_memory else QueuePool,
        echo=settings.database_echo
    )
    event.listen(engine, "connect", _sqlite_pragmas)
    configure_sqlite_transactions(engine)
    logger.info(f"Task store: SQLite at {path}")
    return engine


def _build_postgres_engine(url: str) -> Engine:
    engine = create_engine(
        url,
        poolclass=QueuePool,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_pool_overflow,
        pool_timeout=settings.database_pool_timeout,
        pool_recycle=settings.database_pool_recycle,
        pool_pre_ping=True,
        pool_use_lifo=True,
        echo=settings.database_echo,
        connect_args={
            "application_name": settings.app_name,
            "connect_timeout": 10,
            # Session timestamps are stored and compared in UTC
            "options": "-c timezone=UTC"
        }
    )
    logger.info(
        f"Task store: PostgreSQL pool_size={settings.database_pool_size} "
        f"max_overflow={settings.database_pool_overflow}"
    )
    return engine


def create_database_engine() -> None:
    """Create the engine and session factory once per process."""
    global _engine, _SessionLocal

    with _init_lock:
        if _engine is not None:
            return

        url = settings.database_url
        if settings.database_is_sqlite:
            engine = _build_sqlite_engine(url)
        elif settings.database_is_postgresql:
            engine = _build_postgres_engine(url)
        else:
            engine = create_engine(url, pool_pre_ping=True, echo=settings.database_echo)
            logger.info("Task store: generic SQLAlchemy engine")

        event.listen(engine, "checkout", _ping_connection)

        _engine = engine
        _SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_engine() -> Engine:
    if _engine is None:
        create_database_engine()
    return _engine


def _new_session() -> Session:
    if _SessionLocal is None:
        create_database_engine()
    return _SessionLocal()


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency: a read-mostly session closed after the request."""
    db = _new_session()
    try:
        yield db
    except SQLAlchemyError as e:
        logger.error(f"Request session error: {e}")
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """
    Unit of work for service code.

    Commits when the block exits normally and rolls back on any exception,
    so a failed transition leaves neither the task row nor its audit entry
    behind.
    """
    db = _new_session()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def import_models() -> None:
    """Register every mapped class on ``Base.metadata``."""
    from . import models  # noqa: F401


def _missing_tables(engine: Engine) -> List[str]:
    existing = set(inspect(engine).get_table_names())
    return [name for name in REQUIRED_TABLES if name not in existing]


def init_db() -> None:
    """Create missing tables and verify the task store schema is complete."""
    global _initialized

    with _init_lock:
        engine = get_engine()
        import_models()

        started = time.time()
        Base.metadata.create_all(bind=engine, checkfirst=True)

        missing = _missing_tables(engine)
        if missing:
            _initialized = False
            raise RuntimeError(f"Failed to create required tables: {missing}")

        _initialized = True
        logger.info(f"Task store schema ready in {time.time() - started:.2f}s")


def cleanup_db() -> None:
    """Dispose of the pool; the next ``get_db`` call rebuilds it."""
    global _engine, _SessionLocal, _initialized

    with _init_lock:
        if _engine is not None:
            _engine.dispose()
        _engine = None
        _SessionLocal = None
        _initialized = False
        logger.info("Database connections closed")


def check_db_connection(max_retries: int = 3, retry_delay: float = 1.0) -> bool:
    """``SELECT 1`` with doubling back-off between attempts."""
    if _engine is None:
        logger.error("Database engine not initialized")
        return False

    delay = retry_delay
    for attempt in range(1, max_retries + 1):
        try:
            with _engine.connect() as connection:
                return connection.execute(text("SELECT 1")).scalar() == 1
        except (DisconnectionError, OperationalError) as e:
            logger.warning(f"Database not reachable (attempt {attempt}/{max_retries}): {e}")
            if attempt < max_retries:
                time.sleep(delay)
                delay *= 2

    return False


def check_tables_exist() -> bool:
    if _engine is None:
        logger.error("Database engine not initialized")
        return False

    try:
        missing = _missing_tables(_engine)
    except SQLAlchemyError as e:
        logger.error(f"Could not inspect schema: {e}")
        return False

    if missing:
        logger.error(f"Missing tables: {missing}")
    return not missing


def get_database_info() -> Dict[str, Any]:
    """Backend, host and pool usage for the readiness probe."""
    if _engine is None:
        return {"status": "not_initialized"}

    url = settings.database_url
    info: Dict[str, Any] = {
        "status": "connected",
        "type": "postgresql" if settings.database_is_postgresql else "sqlite",
        "url": url.split("@")[-1] if "@" in url else "sqlite",
        "initialized": _initialized
    }
    if isinstance(_engine.pool, QueuePool):
        info["checked_out"] = _engine.pool.checkedout()
    return info
