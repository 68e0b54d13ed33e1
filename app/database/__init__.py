"""
Database Package
Handles database connection, session management, and base models.
"""

from app.database.connection import (
    async_engine,
    async_session_factory,
    close_db,
)
from app.database.base import Base, TimestampMixin, UUIDMixin, as_utc

__all__ = [
    # Connection
    "async_engine",
    "async_session_factory",
    "close_db",
    # Base classes
    "Base",
    "TimestampMixin",
    "UUIDMixin",
    "as_utc",
]
