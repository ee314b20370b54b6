"""Database module for the local status backend."""

from db.database import Base, init_db, make_engine, make_session_factory
from db.models import MatchRecord, SearchStatusRecord

__all__ = [
    "Base",
    "init_db",
    "make_engine",
    "make_session_factory",
    "MatchRecord",
    "SearchStatusRecord",
]
