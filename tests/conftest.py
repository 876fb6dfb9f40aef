"""
Pytest configuration and shared fixtures.

Settings come from the environment; test defaults are set here before any
wa_store import so that the module-level engine points at a test database.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_wa_store.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

# Clear settings cache before any app imports to ensure test env vars are used
from wa_store.config import get_settings
get_settings.cache_clear()

from wa_store.events import EventEmitter, EventSink
from wa_store.message_handler import MessageHandler
from wa_store.models import Message
from wa_store.storage import init_db, make_engine


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Fresh SQLite database per test."""
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(bind=db_engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
def events():
    return EventEmitter()


@pytest.fixture
def sink():
    return EventSink()


@pytest.fixture
def outcomes(sink):
    """Every outcome event published on the test sink, in order."""
    received = []
    sink.subscribe(received.append)
    return received


@pytest.fixture
def store(events, sink, session_factory):
    """Listening message store for session "s1"."""
    handler = MessageHandler("s1", events, sink=sink, session_factory=session_factory)
    handler.listen()
    yield handler
    handler.unlisten()


@pytest.fixture
def fetch_rows(session_factory):
    """Return the stored rows of a session ordered by pk_id."""

    async def _fetch(session_id: str = "s1"):
        async with session_factory() as db:
            result = await db.execute(
                select(Message).where(Message.session_id == session_id).order_by(Message.pk_id)
            )
            return list(result.scalars().all())

    return _fetch
