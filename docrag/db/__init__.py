"""Database utilities and session management."""

from docrag.db.base import Base, TimestampMixin
from docrag.db.session import (
    check_db_health,
    close_db,
    get_engine,
    get_session_factory,
    init_db,
)

__all__ = [
    # Base classes
    "Base",
    "TimestampMixin",
    # Session management
    "get_engine",
    "get_session_factory",
    "init_db",
    "close_db",
    "check_db_health",
]
