"""Row-level security (RLS) context helpers.

The acting user id is forwarded to Postgres as `app.current_user_id`; policies
only expose rows of teams the user belongs to. Internal (scheduler/background)
work sets `app.is_internal` instead and runs on the privileged connection.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar

_user_id_var: ContextVar[int | None] = ContextVar("rls_user_id", default=None)
_internal_var: ContextVar[bool] = ContextVar("rls_internal", default=False)


def set_rls_context(user_id: int | None, is_internal: bool = False) -> None:
    """Set the acting user id for RLS policies."""
    _user_id_var.set(user_id)
    _internal_var.set(is_internal)


def get_rls_context() -> int | None:
    """Get the acting user id for RLS policies."""
    return _user_id_var.get()


def is_rls_internal() -> bool:
    """Whether the current context is internal (bypasses team membership filter)."""
    return _internal_var.get()


@contextmanager
def rls_context(user_id: int | None, is_internal: bool = False):
    """Context manager to set and restore RLS context."""
    token_user = _user_id_var.set(user_id)
    token_internal = _internal_var.set(is_internal)
    try:
        yield
    finally:
        _user_id_var.reset(token_user)
        _internal_var.reset(token_internal)
