"""hm_database - Database models and session management for hubmirror."""

from hm_database.session import async_session_factory, engine, get_async_session
from hm_database.base import Base

__all__ = [
    "async_session_factory",
    "engine",
    "get_async_session",
    "Base",
]
