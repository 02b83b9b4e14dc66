"""Database setup with SQLModel and async SQLite.

User settings and not-yet-uploaded rips are persisted; jobs live in memory
for the lifetime of the process (see services/job_registry.py).
"""

import logging
from collections.abc import AsyncGenerator

import sqlalchemy
from sqlalchemy import text as sa_text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from reelix.config import settings

# Import all models so their tables are registered with SQLModel.metadata
from reelix.models import AppConfig, PendingUpload  # noqa: F401

logger = logging.getLogger(__name__)

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    future=True,
    connect_args={"check_same_thread": False},  # Needed for SQLite
)


@sqlalchemy.event.listens_for(engine.sync_engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


async_session = sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def init_db() -> None:
    """Initialize the database, creating all tables."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    await _add_missing_columns(engine)

    logger.info("Database initialized successfully")


async def _add_missing_columns(target_engine: AsyncEngine) -> None:
    """Add columns introduced by newer AppConfig versions to an existing table.

    Settings rows are never dropped; new columns get the model default.
    """
    table = SQLModel.metadata.tables["app_config"]

    async with target_engine.begin() as conn:
        result = await conn.execute(sa_text("PRAGMA table_info('app_config')"))
        actual_cols = {row[1] for row in result.fetchall()}

        for column in table.columns:
            if column.name in actual_cols:
                continue
            default = column.default.arg if column.default is not None else None
            column_type = column.type.compile(dialect=conn.dialect)
            ddl = f"ALTER TABLE app_config ADD COLUMN {column.name} {column_type}"
            if default is not None and not callable(default):
                ddl += f" DEFAULT {default!r}" if isinstance(default, str) else f" DEFAULT {int(default)}"
            logger.info(f"Adding missing app_config column: {column.name}")
            await conn.execute(sa_text(ddl))


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session."""
    async with async_session() as session:
        yield session
