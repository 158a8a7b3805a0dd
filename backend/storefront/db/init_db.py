"""
Database Initialization

Builds the async SQLite engine and session factory and creates the store
tables: users, products, transactions, grants, audit_logs.

WAL mode and a busy timeout are enabled on every connection so concurrent
webhook deliveries wait for the write lock instead of failing.
"""
import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker

from .models import Base

logger = logging.getLogger(__name__)


def _set_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")  # 30 second timeout
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine(database_url: str) -> AsyncEngine:
    """
    Create async engine with settings tuned for SQLite concurrency.

    Args:
        database_url: SQLAlchemy URL, e.g. sqlite+aiosqlite:///./storefront.db

    Returns:
        AsyncEngine with pragmas applied on connect
    """
    if database_url.startswith("sqlite") and ":memory:" not in database_url:
        db_file = database_url.split(":///", 1)[-1]
        Path(db_file).parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(
        database_url,
        echo=False,
        connect_args={
            "timeout": 30,  # 30 second timeout for lock acquisition
            "check_same_thread": False
        },
        pool_pre_ping=True,
    )
    event.listen(engine.sync_engine, "connect", _set_sqlite_pragmas)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory shared by the ledger; sessions keep objects usable after commit."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


async def initialize_database(engine: AsyncEngine) -> None:
    """
    Create all tables and indexes if they do not exist.

    Called during FastAPI startup.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Database initialized: {engine.url}")
