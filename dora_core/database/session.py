from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from ..config import settings


def _engine_options(url: str) -> dict:
    options = {
        "echo": settings.DEBUG,
        "pool_pre_ping": True,  # Check connection liveness before checkout
    }
    if url.startswith("postgresql"):
        # Production tuning
        options.update(pool_size=20, max_overflow=10)
    return options


# Async Engine
engine = create_async_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

# Session Factory
async_session_maker = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False
)
