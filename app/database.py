"""
Database Configuration and Session Management

One engine and one sessionmaker per process. Reservation and catalog access
open short-lived sessions from the factory; nothing holds a session across
an upstream call.
"""

from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from app.config import settings
import logging

logger = logging.getLogger(__name__)

engine = None
SessionLocal: Optional[sessionmaker] = None


def sqlalchemy_url(database_url: str) -> str:
    """Point bare postgresql:// URLs at the psycopg 3 driver."""
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+psycopg://", 1)
    return database_url


def init_db():
    """Create the engine and session factory (no-op without DATABASE_URL)"""
    global engine, SessionLocal

    if not settings.database_url:
        logger.warning("DATABASE_URL not configured - checkout reservations disabled")
        return

    db_url = sqlalchemy_url(settings.database_url)

    logger.info("Connecting to database...")
    if db_url.startswith("sqlite"):
        # Local development only: the orchestrator shares the factory across threads
        engine = create_engine(db_url, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(
            db_url,
            pool_pre_ping=True,  # Verify connections before using them
            pool_size=5,
            max_overflow=10
        )

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    logger.info("Database connection established")


def get_session_factory() -> Optional[sessionmaker]:
    """
    Session factory for callers outside a request (actors, scheduler) and for
    the checkout orchestrator. Initializes lazily.

    Returns None if the database is not configured.
    """
    if SessionLocal is None:
        init_db()
    return SessionLocal


# Base class for all models
Base = declarative_base()
