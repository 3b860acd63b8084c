from typing import Optional

from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine
from sqlalchemy.orm import sessionmaker
from .config import get_settings
from . import models  # noqa: F401  registers tables on SQLModel.metadata

DATABASE_URL = get_settings().database_url

# async engine
engine: AsyncEngine = create_async_engine(
    DATABASE_URL,
    echo=False,
    future=True,
)

async_session = sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


def get_session_factory() -> sessionmaker:
    """FastAPI dependency; handlers open their own sessions from it."""
    return async_session


# helper to create tables (call at startup)
async def init_db(bind: Optional[AsyncEngine] = None):
    async with (bind or engine).begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
