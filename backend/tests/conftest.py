"""Stable shared fixtures for tests.

Design goal: avoid async fixture loop injection and keep test boundaries explicit.
Store-backed tests open a temporary sqlite file inside their own asyncio.run.
"""
import os
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, patch

import pytest

# Must be set before importing app modules.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["LLM_API_KEY"] = "test_key"
os.environ["LLM_MODEL_ANALYZE"] = "test-model"
os.environ["TELEGRAM_BOT_TOKEN"] = "test_bot_token"
os.environ["TELEGRAM_WEBHOOK_SECRET"] = "test_secret"
os.environ["TODOIST_TOKEN"] = "test_todoist_token"

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from api.main import app, get_db
from common.db import create_schema


@pytest.fixture
def sqlite_db(tmp_path):
    """Async context manager yielding a sessionmaker bound to a fresh sqlite file."""
    @asynccontextmanager
    async def _open():
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'discussions.db'}")

        # Take the write lock at BEGIN so concurrent writers queue on the busy
        # timeout instead of failing with "database is locked".
        @event.listens_for(engine.sync_engine, "connect")
        def _no_implicit_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        try:
            await create_schema(engine)
            yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        finally:
            await engine.dispose()

    return _open


@pytest.fixture
def mock_redis():
    r = AsyncMock()
    r.set = AsyncMock(return_value=True)
    r.ping = AsyncMock(return_value=True)
    return r


@pytest.fixture
def mock_send():
    with patch("api.dispatcher.send_message", new_callable=AsyncMock) as m:
        m.return_value = {"ok": True, "result": {"message_id": 777}}
        yield m


@pytest.fixture
def mock_answer():
    with patch("api.dispatcher.answer_callback_query", new_callable=AsyncMock) as m:
        m.return_value = {"ok": True}
        yield m


@pytest.fixture
def mock_clear_markup():
    with patch("api.dispatcher.clear_reply_markup", new_callable=AsyncMock) as m:
        m.return_value = {"ok": True}
        yield m


@pytest.fixture
def mock_db():
    db = AsyncMock()
    result = AsyncMock()
    result.rowcount = 1
    db.execute = AsyncMock(return_value=result)
    db.commit = AsyncMock(return_value=None)
    return db


@pytest.fixture
def app_no_db(mock_redis, mock_send, mock_db):
    async def _stub_get_db():
        yield mock_db

    app.dependency_overrides[get_db] = _stub_get_db
    with patch("api.main.redis_client", mock_redis):
        yield app
    app.dependency_overrides.clear()
