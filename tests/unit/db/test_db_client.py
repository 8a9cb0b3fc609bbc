"""
Unit tests for session handling: RLS settings, engine selection and cleanup.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from engimetric.db import client
from engimetric.db.rls import rls_context

pytestmark = pytest.mark.unit


def _factory():
    session = AsyncMock()
    return MagicMock(return_value=session), session


def _executed_sql(session) -> list[str]:
    return [str(call.args[0]) for call in session.execute.await_args_list]


@pytest.mark.asyncio
async def test_user_session_sets_current_user_and_commits():
    user_factory, session = _factory()
    scheduler_factory, _ = _factory()

    with patch.object(client, "_session_factory", user_factory), patch.object(
        client, "_scheduler_session_factory", scheduler_factory
    ):
        with rls_context(7):
            async with client.get_db_session() as yielded:
                assert yielded is session

    scheduler_factory.assert_not_called()
    statements = _executed_sql(session)
    assert any("app.current_user_id" in sql for sql in statements)
    assert not any("app.is_internal" in sql for sql in statements)
    assert session.execute.await_args_list[0].args[1] == {"user_id": "7"}
    session.commit.assert_awaited_once()
    session.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_internal_session_uses_privileged_factory():
    user_factory, _ = _factory()
    scheduler_factory, session = _factory()

    with patch.object(client, "_session_factory", user_factory), patch.object(
        client, "_scheduler_session_factory", scheduler_factory
    ):
        with rls_context(None, is_internal=True):
            async with client.get_db_session():
                pass

    user_factory.assert_not_called()
    assert any("app.is_internal" in sql for sql in _executed_sql(session))


@pytest.mark.asyncio
async def test_internal_session_falls_back_without_privileged_engine():
    user_factory, session = _factory()

    with patch.object(client, "_session_factory", user_factory), patch.object(
        client, "_scheduler_session_factory", None
    ):
        with rls_context(None, is_internal=True):
            async with client.get_db_session():
                pass

    user_factory.assert_called_once()
    session.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_error_rolls_back_and_closes():
    user_factory, session = _factory()

    with patch.object(client, "_session_factory", user_factory):
        with pytest.raises(RuntimeError):
            async with client.get_db_session():
                raise RuntimeError("boom")

    session.rollback.assert_awaited_once()
    session.commit.assert_not_awaited()
    session.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_uninitialized_database_raises():
    with patch.object(client, "_session_factory", None):
        with pytest.raises(RuntimeError, match="not initialized"):
            async with client.get_db_session():
                pass
