"""PostgreSQL database module."""

from .client import init_db, close_db, get_db_session, get_async_engine
from .rls import rls_context, set_rls_context

__all__ = [
    "init_db",
    "close_db",
    "get_db_session",
    "get_async_engine",
    "rls_context",
    "set_rls_context",
]
