"""
Database configuration and session management.
Uses SQLAlchemy with SQLite for development and supports Postgres for production.

Production features:
- Connection pool configuration
- SQLite WAL mode on connect
- create_all schema bootstrap
"""
import logging
import os
from typing import Generator, Optional
from sqlalchemy import create_engine, text, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from config.paths import default_database_url

logger = logging.getLogger(__name__)

# Database URL configuration
# Default to app-data SQLite location for standalone runtime.
DATABASE_URL = os.getenv("DATABASE_URL") or default_database_url()


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create a SQLAlchemy engine tuned for the target backend.

    Args:
        database_url: SQLAlchemy connection URL
        echo: Log emitted SQL

    Returns:
        Configured engine
    """
    connect_args = {}
    pool_kwargs = {}
    if database_url.startswith("sqlite"):
        # The rule engine thread and callers share the engine.
        connect_args["check_same_thread"] = False
        pool_kwargs["pool_pre_ping"] = True
    else:
        # PostgreSQL connection pool tuning
        pool_kwargs.update({
            "pool_size": 5,
            "max_overflow": 10,
            "pool_timeout": 30,
            "pool_recycle": 1800,
            "pool_pre_ping": True,
        })

    built = create_engine(
        database_url,
        connect_args=connect_args,
        echo=echo,
        **pool_kwargs,
    )

    # Enable WAL mode for file-backed SQLite on first connect
    if database_url.startswith("sqlite") and ":memory:" not in database_url:
        @event.listens_for(built, "connect")
        def _set_sqlite_wal_mode(dbapi_conn, _connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

    return built


engine = build_engine(DATABASE_URL, echo=os.getenv("SQL_ECHO", "false").lower() == "true")

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for declarative models
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """
    Yield a database session and close it afterwards.

    Usage:
        db = next(get_db())
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Optional[Engine] = None) -> None:
    """
    Create any missing tables on the given engine (defaults to the module engine).
    """
    from storage import models  # noqa: F401  # Import to register models
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database schema ensured")


def check_db_connection(bind: Optional[Engine] = None) -> bool:
    """
    Verify database connectivity with a lightweight query.
    Returns True if the database is reachable.
    """
    try:
        with (bind or engine).connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError:
        logger.exception("Database connectivity check failed")
        return False
