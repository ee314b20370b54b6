"""
Database connection and session management.
"""

from pathlib import Path
from typing import Optional

import structlog
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = structlog.get_logger()

# Base class for models
Base = declarative_base()


def make_engine(database_url: str) -> Engine:
    """
    Create an engine for database_url.

    SQLite connections are shared across worker threads; an in-memory SQLite
    database is pinned to a single connection so every session sees it.
    """
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True)

    connect_args = {"check_same_thread": False}  # Needed for SQLite
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(database_url, connect_args=connect_args, poolclass=StaticPool)

    db_path = database_url.replace("sqlite:///", "", 1)
    if db_path:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(database_url, connect_args=connect_args)


def make_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine, database_url: Optional[str] = None) -> None:
    """
    Initialize database tables.
    Creates all tables defined in models if they don't exist.
    """
    from db import models  # noqa: F401 - Import to register models

    logger.info("Initializing database", database_url=database_url or str(engine.url))
    Base.metadata.create_all(bind=engine)
    logger.info("Database initialized successfully")
