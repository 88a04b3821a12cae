"""Database engine and session setup.

Production Pattern:
- One engine (connection pool) per process, handed to the services
- Bounded waits: pool acquisition timeout, SQLite busy timeout,
  PostgreSQL connect timeout
- Automatic table creation via init_database()
"""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from clinic_booking import config
from clinic_booking.api.database_models import Base


def create_db_engine(database_url: str = None, pool_timeout: int = None) -> Engine:
    """
    Create the SQLAlchemy engine for the booking store.

    SQLite (development/tests):
    - check_same_thread disabled: FastAPI serves sync endpoints from a thread pool
    - busy timeout so concurrent writers wait instead of failing
    - ":memory:" databases share one connection (StaticPool)

    Args:
        database_url: SQLAlchemy connection string (default: config.DATABASE_URL)
        pool_timeout: Seconds to wait for a pooled connection

    Returns:
        Engine instance
    """
    database_url = database_url or config.DATABASE_URL
    pool_timeout = pool_timeout or config.DB_POOL_TIMEOUT

    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": pool_timeout}
        if ":memory:" in database_url:
            return create_engine(
                database_url,
                connect_args=connect_args,
                poolclass=StaticPool,
            )
        return create_engine(
            database_url,
            connect_args=connect_args,
            pool_pre_ping=True,
            pool_timeout=pool_timeout,
        )

    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        pool_timeout=pool_timeout,
        connect_args={"connect_timeout": 10},
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory shared by all services of one application."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_database(engine: Engine):
    """
    Create all tables and indexes (including the active-slot unique index).

    Safe to call multiple times (idempotent).
    """
    Base.metadata.create_all(engine)
