import time
from dataclasses import dataclass
from threading import Lock
from typing import Any

import structlog
from sqlalchemy import event
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from app.shared.core.config import get_settings

logger = structlog.get_logger()

# Ensure ORM mappings are registered for scripts that import the DB layer
# without importing `app/main.py`.
import app.models  # noqa: F401, E402


@dataclass(slots=True)
class _DBRuntime:
    settings: Any
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    effective_url: str


_db_runtime: _DBRuntime | None = None
_db_runtime_lock = Lock()


def _normalize_db_url(raw_url: str) -> str:
    url = (raw_url or "").strip()
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _resolve_effective_url(settings_obj: Any) -> str:
    db_url = _normalize_db_url(str(getattr(settings_obj, "DATABASE_URL", "") or ""))
    if bool(getattr(settings_obj, "TESTING", False)) and not db_url:
        return "sqlite+aiosqlite:///:memory:"
    return db_url


def _build_pool_config(settings_obj: Any, effective_url: str) -> dict[str, Any]:
    pool_config: dict[str, Any] = {
        "pool_recycle": getattr(settings_obj, "DB_POOL_RECYCLE", 3600),
        "pool_pre_ping": True,
        "echo": bool(getattr(settings_obj, "DB_ECHO", False)),
    }

    if "sqlite" in effective_url:
        pool_config["poolclass"] = StaticPool
        return pool_config

    pool_config.update(
        {
            "pool_size": int(getattr(settings_obj, "DB_POOL_SIZE", 20)),
            "max_overflow": int(getattr(settings_obj, "DB_MAX_OVERFLOW", 10)),
            "pool_timeout": int(getattr(settings_obj, "DB_POOL_TIMEOUT", 30)),
        }
    )
    if bool(getattr(settings_obj, "TESTING", False)):
        pool_config.update({"pool_size": 2, "max_overflow": 2, "pool_timeout": 5})
    return pool_config


def enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """
    Let SQLAlchemy own BEGIN on SQLite so SAVEPOINT/RELEASE nest inside the
    session transaction instead of committing it.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection: Any, _connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn: Connection) -> None:
        conn.exec_driver_sql("BEGIN")


def _register_engine_event_listeners(engine: AsyncEngine) -> None:
    sync_engine = getattr(engine, "sync_engine", None)
    # Test doubles/mocks may not support SQLAlchemy event registration.
    if sync_engine is None or type(sync_engine).__module__.startswith("unittest.mock"):
        logger.debug("db_engine_listener_registration_skipped_non_engine_target")
        return
    event.listen(sync_engine, "before_cursor_execute", before_cursor_execute)
    event.listen(sync_engine, "after_cursor_execute", after_cursor_execute)
    if sync_engine.dialect.name == "sqlite":
        enable_sqlite_savepoints(engine)


def _build_db_runtime() -> _DBRuntime:
    settings_obj = get_settings()
    effective_url = _resolve_effective_url(settings_obj)
    if not effective_url:
        raise ValueError("DATABASE_URL is not set. The application cannot start.")

    engine = create_async_engine(
        effective_url,
        **_build_pool_config(settings_obj, effective_url),
    )
    _register_engine_event_listeners(engine)
    session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return _DBRuntime(
        settings=settings_obj,
        engine=engine,
        session_maker=session_maker,
        effective_url=effective_url,
    )


def _get_db_runtime() -> _DBRuntime:
    global _db_runtime
    runtime = _db_runtime
    if runtime is not None:
        return runtime
    with _db_runtime_lock:
        runtime = _db_runtime
        if runtime is None:
            runtime = _build_db_runtime()
            _db_runtime = runtime
    return runtime


def reset_db_runtime() -> None:
    """Test helper for forcing runtime re-initialization on next access."""
    global _db_runtime
    runtime = _db_runtime
    _db_runtime = None

    if runtime is None:
        return

    try:
        # Use sync disposal so reset can be called from non-async test fixtures.
        runtime.engine.sync_engine.dispose()
    except Exception as exc:
        logger.debug("db_runtime_dispose_skipped", error=str(exc), exc_info=True)


def get_engine() -> AsyncEngine:
    """Return the active async engine."""
    return _get_db_runtime().engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Return the active session factory."""
    return _get_db_runtime().session_maker


def _get_slow_query_threshold_seconds() -> float:
    """Return configurable slow-query threshold with a safe fallback."""
    try:
        threshold = float(
            getattr(get_settings(), "DB_SLOW_QUERY_THRESHOLD_SECONDS", 0.2)
        )
    except (TypeError, ValueError):
        threshold = 0.2
    return threshold if threshold > 0 else 0.2


def before_cursor_execute(
    conn: Connection,
    _cursor: Any,
    _statement: str,
    _parameters: Any,
    _context: Any,
    _executemany: bool,
) -> None:
    """Record query start time."""
    conn.info.setdefault("query_start_time", []).append(time.perf_counter())


def after_cursor_execute(
    conn: Connection,
    _cursor: Any,
    statement: str,
    parameters: Any,
    _context: Any,
    _executemany: bool,
) -> None:
    """Log slow queries."""
    starts = conn.info.get("query_start_time")
    if not starts:
        return
    total = time.perf_counter() - starts.pop(-1)
    threshold = _get_slow_query_threshold_seconds()
    if total > threshold:
        logger.warning(
            "slow_query_detected",
            duration_seconds=round(total, 3),
            threshold_seconds=threshold,
            statement=statement[:200] + "..." if len(statement) > 200 else statement,
        )
