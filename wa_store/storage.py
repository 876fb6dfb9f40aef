import logging
from typing import Any, AsyncGenerator, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from wa_store.config import settings

logger = logging.getLogger(__name__)


def make_engine(database_url: str):
    """
    Create the async engine for a database URL.

    SQLite connections are not pooled so that a connection never outlives the
    event loop it was opened on.
    """
    options = {"echo": False}
    if database_url.startswith("sqlite"):
        options["poolclass"] = NullPool
    return create_async_engine(database_url, **options)


engine = make_engine(settings.DATABASE_URL)

# Session factory used by the REST layer and by every session's message handler
SessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)

# Base class for SQLAlchemy models
Base = declarative_base()


async def init_db(bind=None) -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    bind = bind or engine
    logger.debug(f"Initializing database with URL: {bind.url}")
    try:
        # Import models to register them with Base.metadata
        from wa_store.models import Chat, Message  # noqa: F401

        async with bind.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


async def drop_db(bind=None) -> None:
    """Drop all tables. Only used by tests."""
    bind = bind or engine
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    async with SessionLocal() as db:
        yield db


async def check_db_health() -> bool:
    """
    Check if the database is reachable and the messages table exists.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    from wa_store.models import Message

    logger.debug("Checking database health...")
    try:
        async with SessionLocal() as db:
            await db.execute(text("SELECT 1"))
            await db.execute(select(func.count()).select_from(Message.__table__))
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Repository Functions
# =============================================================================

def _dialect_insert(db: AsyncSession):
    if db.bind.dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


async def delete_session_messages(db: AsyncSession, session_id: str) -> int:
    """Delete every stored message of a session. Returns the row count."""
    from wa_store.models import Message

    result = await db.execute(delete(Message).where(Message.session_id == session_id))
    logger.debug(f"Deleted {result.rowcount} messages of session {session_id}")
    return result.rowcount


async def create_messages(db: AsyncSession, rows: Sequence[Dict[str, Any]]) -> None:
    """
    Bulk insert message rows.

    Duplicate composite keys raise IntegrityError; the caller's transaction
    decides what to roll back.
    """
    from wa_store.models import Message
    from wa_store.utils import PAYLOAD_COLUMNS

    if not rows:
        return
    # executemany needs the same columns in every parameter set
    columns = ("session_id", "remote_jid", "id", *PAYLOAD_COLUMNS)
    params = [{column: row.get(column) for column in columns} for row in rows]
    await db.execute(Message.__table__.insert(), params)


async def upsert_message(db: AsyncSession, row: Dict[str, Any]) -> int:
    """
    Insert a message or update it in place by (session_id, remote_jid, id).

    Only payload columns present in ``row`` are overwritten on conflict.

    Returns:
        The pk_id of the stored row
    """
    from wa_store.models import Message

    insert = _dialect_insert(db)
    stmt = insert(Message).values(**row)
    stmt = stmt.on_conflict_do_update(
        index_elements=["session_id", "remote_jid", "id"],
        set_={
            column: stmt.excluded[column]
            for column in row
            if column not in ("session_id", "remote_jid", "id")
        },
    ).returning(Message.pk_id)
    result = await db.execute(stmt)
    return result.scalar_one()


async def get_message(db: AsyncSession, session_id: str, remote_jid: str, message_id: str):
    """
    Point lookup by composite key.

    Returns:
        Message object if found, None otherwise
    """
    from wa_store.models import Message

    result = await db.execute(
        select(Message).where(
            Message.session_id == session_id,
            Message.remote_jid == remote_jid,
            Message.id == message_id,
        )
    )
    return result.scalar_one_or_none()


async def replace_message(db: AsyncSession, pk_id: int, row: Dict[str, Any]) -> None:
    """
    Overwrite every column of the row with the given pk_id.

    Payload columns missing from ``row`` are reset to NULL, so the stored row
    is exactly ``row``.
    """
    from wa_store.models import Message
    from wa_store.utils import PAYLOAD_COLUMNS

    values = {column: row.get(column) for column in PAYLOAD_COLUMNS}
    values.update(
        session_id=row["session_id"],
        remote_jid=row["remote_jid"],
        id=row["id"],
    )
    await db.execute(update(Message).where(Message.pk_id == pk_id).values(**values))


async def update_message_fields(
    db: AsyncSession, session_id: str, remote_jid: str, message_id: str, **fields: Any
) -> int:
    """Partial update of selected columns by composite key. Returns the row count."""
    from wa_store.models import Message

    result = await db.execute(
        update(Message)
        .where(
            Message.session_id == session_id,
            Message.remote_jid == remote_jid,
            Message.id == message_id,
        )
        .values(**fields)
    )
    return result.rowcount


async def delete_chat_messages(db: AsyncSession, session_id: str, remote_jid: str) -> int:
    """Delete every message of one chat in one session."""
    from wa_store.models import Message

    result = await db.execute(
        delete(Message).where(Message.session_id == session_id, Message.remote_jid == remote_jid)
    )
    return result.rowcount


async def delete_messages(
    db: AsyncSession, session_id: str, remote_jid: str, message_ids: Sequence[str]
) -> int:
    """Delete the given message ids of one chat in one session."""
    from wa_store.models import Message

    if not message_ids:
        return 0
    result = await db.execute(
        delete(Message).where(
            Message.session_id == session_id,
            Message.remote_jid == remote_jid,
            Message.id.in_(list(message_ids)),
        )
    )
    return result.rowcount


async def chat_exists(db: AsyncSession, session_id: str, jid: str) -> bool:
    """Check whether a chat row exists for (session_id, jid)."""
    from wa_store.models import Chat

    count = await db.scalar(
        select(func.count()).select_from(Chat).where(Chat.session_id == session_id, Chat.id == jid)
    )
    return (count or 0) > 0


async def list_messages(
    db: AsyncSession,
    session_id: str,
    cursor: Optional[int] = None,
    limit: int = 25,
) -> List[Any]:
    """
    Cursor-paginated messages of a session, ordered by pk_id.

    Args:
        db: Database session
        session_id: Session whose messages are listed
        cursor: pk_id of the last row of the previous page (exclusive)
        limit: Maximum number of rows to return

    Returns:
        List of Message objects
    """
    from wa_store.models import Message

    logger.debug(f"Querying messages: session={session_id}, cursor={cursor}, limit={limit}")

    query = select(Message).where(Message.session_id == session_id)
    if cursor is not None:
        query = query.where(Message.pk_id > cursor)
    query = query.order_by(Message.pk_id.asc()).limit(limit)

    result = await db.execute(query)
    messages = list(result.scalars().all())
    logger.debug(f"Retrieved {len(messages)} messages for session {session_id}")
    return messages
