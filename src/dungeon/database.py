"""Async SQLAlchemy engine and session management."""

from collections.abc import Sequence
from typing import Any

from sqlalchemy import event
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _install_sqlite_hooks(engine: AsyncEngine) -> None:
    """Let SQLAlchemy own BEGIN so SAVEPOINTs work, and enforce foreign keys."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN")


def create_engine_for(url: str, *, echo: bool = False, pool_size: int = 10) -> AsyncEngine:
    """Build an async engine with per-dialect options."""
    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=echo)
        _install_sqlite_hooks(engine)
        return engine
    return create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=10,
        pool_pre_ping=True,
        echo=echo,
        connect_args={"statement_cache_size": 0},
    )


async def init_db(url: str, *, echo: bool = False, pool_size: int = 10) -> None:
    """Initialize the database engine and session factory."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = create_engine_for(url, echo=echo, pool_size=pool_size)
    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def close_db() -> None:
    """Dispose of the database engine."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the session factory (for batch runners that open one session per unit of work)."""
    if _session_factory is None:
        msg = "Database not initialized. Call init_db() first."
        raise RuntimeError(msg)
    return _session_factory


def dialect_insert(db: AsyncSession, model: Any):  # type: ignore[no-untyped-def]
    """Return an INSERT construct supporting ON CONFLICT for the session's dialect."""
    name = db.get_bind().dialect.name
    if name == "postgresql":
        return pg_insert(model)
    if name == "sqlite":
        return sqlite_insert(model)
    msg = f"Upsert not supported for dialect {name!r}"
    raise NotImplementedError(msg)


async def upsert(
    db: AsyncSession,
    model: Any,
    values: dict[str, Any],
    index_elements: Sequence[str],
    update_columns: Sequence[str] | None = None,
) -> None:
    """INSERT ... ON CONFLICT (index_elements) DO UPDATE/NOTHING.

    With ``update_columns`` empty or None the conflicting row is left untouched.
    """
    stmt = dialect_insert(db, model).values(**values)
    if update_columns:
        stmt = stmt.on_conflict_do_update(
            index_elements=list(index_elements),
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=list(index_elements))
    await db.execute(stmt)
