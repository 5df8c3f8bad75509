"""Database configuration and async SQLAlchemy setup."""
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base
from app.config import settings

engine_options = {"echo": settings.DATABASE_ECHO, "pool_pre_ping": True}
if settings.DATABASE_URL.startswith("postgresql"):
    # Sweeps and webhook handlers hold row locks; size the pool for both.
    engine_options.update(
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_recycle=1800,
    )

engine = create_async_engine(settings.DATABASE_URL, **engine_options)

AsyncSessionLocal = sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

# Base class for models
Base = declarative_base()


async def get_db():
    """Request-scoped session; anything not committed is rolled back on close."""
    async with AsyncSessionLocal() as session:
        yield session


def get_session_factory():
    """Dependency for work that outlives the request (background webhook processing)."""
    return AsyncSessionLocal
