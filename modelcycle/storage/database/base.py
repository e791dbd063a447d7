"""Database base configuration and session management."""

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Integer, MetaData, create_engine, event
from sqlalchemy.engine import Dialect, Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from ...utils.datetime import ensure_utc, utc_now

# Naming convention for constraints (helps with migrations)
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=convention)


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware datetime that always round-trips as UTC.

    SQLite drops tzinfo on ``DateTime(timezone=True)``; this decorator
    normalizes on the way in and re-attaches UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        return ensure_utc(value)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        return ensure_utc(value)


class Base(DeclarativeBase):
    """Base class for all database models."""

    metadata = metadata

    def to_dict(self) -> dict[str, Any]:
        """Convert model to dictionary."""
        return {c.name: getattr(self, c.name) for c in self.__table__.columns}


class IntPKMixin:
    """Autoincrement integer primary key for append-style tables."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)


class TimestampMixin:
    """Creation and update timestamps."""

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False
    )


# Database engine and session (configured at runtime)
engine: Engine | None = None
SessionLocal: sessionmaker[Session] | None = None


def _begin_immediate(sqlite_engine: Engine) -> None:
    """Take the SQLite write lock when a transaction begins.

    Deferred transactions that read and then write fail immediately with
    "database is locked" when two connections upgrade at once; immediate ones
    wait on the busy timeout instead.
    """

    @event.listens_for(sqlite_engine, "connect")
    def _disable_driver_begin(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _emit_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def is_memory_url(database_url: str) -> bool:
    """True for in-memory SQLite URLs (one connection shared by every session)."""
    return ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///")


def create_db_engine(database_url: str) -> Engine:
    """Create an engine with settings suited to concurrent lifecycle workers."""
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
        if is_memory_url(database_url):
            # One shared connection, otherwise every session sees an empty database
            return create_engine(
                database_url, connect_args=connect_args, poolclass=StaticPool, echo=False
            )
        sqlite_engine = create_engine(database_url, connect_args=connect_args, echo=False)
        _begin_immediate(sqlite_engine)
        return sqlite_engine

    return create_engine(
        database_url,
        echo=False,  # Set to True for SQL debug logging
        pool_pre_ping=True,  # Verify connections before using
    )


def create_session_factory(database_url: str) -> sessionmaker[Session]:
    """Create tables and return a session factory bound to a new engine."""
    from . import models  # noqa: F401  (register tables on the metadata)

    db_engine = create_db_engine(database_url)
    Base.metadata.create_all(bind=db_engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine, expire_on_commit=False)


def init_db(database_url: str = "sqlite:///./modelcycle.db") -> None:
    """Initialize the global engine and session factory."""
    global engine, SessionLocal

    SessionLocal = create_session_factory(database_url)
    engine = SessionLocal.kw["bind"]


def get_session() -> Session:
    """Get a new session from the global factory."""
    if SessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return SessionLocal()
