"""Database connection and session management for the Card Gateway."""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

# Base class for all ORM models
Base = declarative_base()


def create_db_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 20,
    statement_timeout_ms: int = 30000,
) -> Engine:
    """
    Create a SQLAlchemy engine.

    PostgreSQL gets a connection pool and UTC/statement-timeout session
    settings. SQLite (tests) shares a single in-memory connection.

    Args:
        database_url: Database connection URL
        echo: Log SQL statements
        pool_size: Connections kept open (PostgreSQL only)
        max_overflow: Extra connections allowed under load
        statement_timeout_ms: Server-side cap on any single statement

    Returns:
        Configured SQLAlchemy engine
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=echo,
        )

    engine = create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        echo=echo,
    )

    @event.listens_for(engine, "connect")
    def set_postgresql_session(dbapi_conn, connection_record):  # type: ignore
        cursor = dbapi_conn.cursor()
        cursor.execute("SET timezone='UTC'")
        cursor.execute(f"SET statement_timeout='{int(statement_timeout_ms)}'")
        cursor.close()

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Unit of work around one database transaction.

    Usage:
        with session_scope(factory) as session:
            CardRepository(session).add(card)

    Automatically commits on success, rolls back on exception.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Engine) -> None:
    """
    Create all tables.

    WARNING: This should only be used for testing. In production, use Alembic migrations.
    """
    # Importing models registers them on Base.metadata
    from card_gateway.infrastructure import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def drop_all_tables(engine: Engine) -> None:
    """
    Drop all tables in the database.

    WARNING: This is destructive and should only be used for testing.
    """
    Base.metadata.drop_all(bind=engine)
