"""
Database session management with SQLAlchemy async
"""

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from core.config import settings
from core.exceptions import DatabaseConnectionError, MissingTableError
import logging

logger = logging.getLogger(__name__)

# Create async engine
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    poolclass=NullPool,  # Each worker opens its own connection
    future=True
)

# Create session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False
)


async def get_session() -> AsyncSession:
    """Get database session"""
    async with async_session_maker() as session:
        yield session


async def check_connection(session: AsyncSession):
    """Fail the run early when the spatial store is unreachable."""
    try:
        await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        raise DatabaseConnectionError(
            "Database connection check failed",
            context={"operation": "SELECT 1"},
            original_exception=e
        )


async def table_exists(session: AsyncSession, table_name: str) -> bool:
    result = await session.execute(
        text("SELECT to_regclass(:name) IS NOT NULL"),
        {"name": f"public.{table_name}"}
    )
    return bool(result.scalar())


async def require_table(session: AsyncSession, table_name: str):
    if not await table_exists(session, table_name):
        raise MissingTableError(
            f"Target table {table_name} does not exist",
            context={"table_name": table_name}
        )
    logger.debug(f"Target table {table_name} exists")
