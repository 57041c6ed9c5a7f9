from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from app.core.config import settings
import logging

# Initialize logger for this module
logger = logging.getLogger(__name__)

# Dictionary to hold database connection arguments
connect_args = {}

# Check if we are using SQLite via the DATABASE_URL
if "sqlite" in settings.DATABASE_URL:
    # SQLite-specific: disable check_same_thread because the connection
    # is used from the event loop and aiosqlite's worker thread
    connect_args = {"check_same_thread": False}

# Create the async SQLAlchemy engine
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    connect_args=connect_args,
)

# Session factory; one session per request (get_db) or per unit of
# background work (the analysis orchestrator)
AsyncSessionLocal = async_sessionmaker(
    bind=engine,              # Bind to our async engine
    class_=AsyncSession,      # Specify usage of AsyncSession
    expire_on_commit=False,   # Prevent objects from expiring after commit (kept in memory)
    autoflush=False,          # Disable autoflush for better manual control
)

async def get_db() -> AsyncSession:
    """
    Dependency generator for FastAPI to provide a database session.
    Yields an AsyncSession and ensures it's closed after the request is processed.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            # Ensure the session is closed, returning the connection to the pool
            await session.close()


async def init_models() -> None:
    """Create missing tables. Used for local SQLite runs; deployments use Alembic."""
    from app.db.base import Base
    import app.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
