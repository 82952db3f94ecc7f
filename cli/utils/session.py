"""Database session helper for commands that read the ledger directly"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession

from jobledger.config.settings import get_settings
from jobledger.infra.database import Database


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """Open a session against the configured database and dispose the engine after"""
    database = Database(get_settings())
    try:
        async with database.SessionLocal() as session:
            yield session
    finally:
        await database.close()
