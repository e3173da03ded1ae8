"""
Database configuration and session management

Only the shipment creation records live here; orders themselves belong
to the order-management collaborator.
"""

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from shipping_engine.core.config import settings

# SQLite picks its own pool; pooling knobs only apply to server databases
pool_config = {}

if not settings.DATABASE_URL.startswith("sqlite"):
    pool_config = {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_recycle": settings.DB_POOL_RECYCLE,
        "pool_pre_ping": True,
    }

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    **pool_config,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

Base = declarative_base()


async def init_db() -> None:
    """Create tables that do not exist yet."""
    from shipping_engine.models import shipment_record  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
