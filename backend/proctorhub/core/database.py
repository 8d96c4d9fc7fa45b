from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool
import logging
from .config import settings

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # aiosqlite connections are tied to the event loop that opened them
        return {"poolclass": NullPool, "echo": False}
    return {
        "pool_size": 20,
        "max_overflow": 40,
        "pool_pre_ping": True,
        "pool_recycle": 1800,
        "pool_timeout": 20,
        "echo": False,
        "connect_args": {
            "server_settings": {
                "application_name": "proctorhub_api"
            }
        },
    }


async_engine = create_async_engine(
    settings.async_database_url,
    **_engine_options(settings.async_database_url)
)
AsyncSessionLocal = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

Base = declarative_base()


async def get_async_db() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        yield session


async def create_db_and_tables():
    # register every mapped class before create_all
    from .. import models  # noqa: F401

    try:
        async with async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Database tables creation error (may be normal if tables exist): {e}")
