"""
Database Configuration

Sets up the SQLAlchemy engine and session factory. Both are built explicitly
(at application startup or by the scheduler runner) and handed to the code
that needs them; nothing here connects at import time.
"""

import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, Optional

from fastapi import Request
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, DBAPIError
from sqlalchemy.orm import sessionmaker, declarative_base, Session

logger = logging.getLogger(__name__)

# Retry configuration
MAX_RETRIES = 3
RETRY_DELAY_BASE = 1.0  # seconds
RETRY_DELAY_MAX = 10.0  # seconds

# Base class for models
Base = declarative_base()


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _engine_kwargs(database_url: str, echo: bool) -> dict:
    if database_url.startswith("sqlite"):
        return {"echo": echo, "connect_args": {"check_same_thread": False}}
    return {
        "echo": echo,
        # Connection pool settings
        "pool_size": 20,
        "max_overflow": 10,
        "pool_pre_ping": True,     # Verify connections before using
        "pool_recycle": 3600,      # Recycle connections after 1 hour
        "pool_timeout": 30,        # Seconds to wait for a connection from pool
    }


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Create SQLAlchemy engine with retry logic for initial connection."""
    last_error = None

    for attempt in range(MAX_RETRIES):
        try:
            eng = create_engine(database_url, **_engine_kwargs(database_url, echo))

            # Test the connection
            with eng.connect() as conn:
                conn.execute(text("SELECT 1"))

            logger.info("Database connection established successfully")
            _register_error_listener(eng)
            return eng

        except OperationalError as e:
            last_error = e
            delay = min(RETRY_DELAY_BASE * (2 ** attempt), RETRY_DELAY_MAX)
            logger.warning(
                f"Database connection failed (attempt {attempt + 1}/{MAX_RETRIES}), "
                f"retrying in {delay:.1f}s: {e}"
            )
            if attempt < MAX_RETRIES - 1:
                time.sleep(delay)

    # If all retries failed, create engine anyway (it might work later)
    logger.error(f"Database connection failed after {MAX_RETRIES} attempts: {last_error}")
    eng = create_engine(database_url, **_engine_kwargs(database_url, echo))
    _register_error_listener(eng)
    return eng


def _register_error_listener(eng: Engine) -> None:
    @event.listens_for(eng, "handle_error")
    def handle_connection_error(exception_context):
        """Handle database connection errors with logging."""
        if isinstance(exception_context.original_exception, (OperationalError, DBAPIError)):
            logger.warning(
                f"Database connection error handled: {exception_context.original_exception}"
            )


def create_session_factory(eng: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=eng)


def get_db(request: Request) -> Generator[Session, None, None]:
    """
    Dependency for getting database sessions.

    Uses the session factory stored on the application state by the
    lifespan handler and closes the session after the request.
    """
    factory: sessionmaker = request.app.state.session_factory
    db = factory()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Context manager for database sessions outside of request handling.

    Usage:
        with session_scope(factory) as db:
            user = db.query(User).first()
    """
    db = factory()
    try:
        yield db
    finally:
        db.close()


def init_db(eng: Engine) -> None:
    """
    Initialize database tables.
    Called on application startup.
    Includes retry logic for connection failures during startup.
    """
    # Make sure every model is registered on the metadata
    import app.models  # noqa: F401

    last_error = None

    for attempt in range(MAX_RETRIES):
        try:
            Base.metadata.create_all(bind=eng)
            logger.info("Database tables initialized successfully")
            return
        except OperationalError as e:
            last_error = e
            delay = min(RETRY_DELAY_BASE * (2 ** attempt), RETRY_DELAY_MAX)
            logger.warning(
                f"Database initialization failed (attempt {attempt + 1}/{MAX_RETRIES}), "
                f"retrying in {delay:.1f}s: {e}"
            )
            if attempt < MAX_RETRIES - 1:
                time.sleep(delay)

    logger.error(f"Database initialization failed after {MAX_RETRIES} attempts: {last_error}")
    raise last_error
