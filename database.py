# database.py
# Async engine, session factory and declarative base for the membership tables.

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from config import settings

SQLALCHEMY_DATABASE_URL = settings.DATABASE_URL


def _engine_options(url: str) -> dict:
    # asyncpg takes server settings; sqlite (tests, local runs) takes none
    if url.startswith("postgresql+asyncpg"):
        return {
            "poolclass": NullPool,
            "connect_args": {
                "timeout": 30,
                "server_settings": {"application_name": "membership_lifecycle"},
            },
        }
    return {}


engine = create_async_engine(SQLALCHEMY_DATABASE_URL, echo=False, **_engine_options(SQLALCHEMY_DATABASE_URL))

SessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False
)

Base = declarative_base()


async def create_db_and_tables():
    """Create all tables that do not exist yet."""
    import models  # noqa: F401  registers the mappers on Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
