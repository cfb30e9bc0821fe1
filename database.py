from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlmodel import SQLModel

import config
import models  # noqa: F401  registers the tables on SQLModel.metadata


def get_database_url() -> str:
    # Fail fast when the SQL store is requested without a database
    if not config.DATABASE_URL:
        raise ValueError("DATABASE_URL is not set. Please check your .env file.")
    return config.DATABASE_URL


def create_engine(url: Optional[str] = None) -> AsyncEngine:
    return create_async_engine(url or get_database_url(), echo=config.SQL_ECHO, future=True)


async def init_db(engine: AsyncEngine):
    async with engine.begin() as conn:
        # This creates the tables if they don't exist
        await conn.run_sync(SQLModel.metadata.create_all)
