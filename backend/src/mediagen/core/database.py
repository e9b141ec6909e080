"""Database session factory setup."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def setup_db_session(db_url: str, pool_size: int = 20) -> async_sessionmaker[AsyncSession]:
    """Create async database session factory.

    Args:
        db_url: Database connection URL (postgresql+psycopg://... in deployments,
            sqlite+aiosqlite://... for local runs and tests)
        pool_size: Maximum number of connections in the pool (ignored for SQLite)

    Returns:
        Async session factory for creating database sessions
    """
    if db_url.startswith("sqlite"):
        # SQLite serializes writers; a busy timeout lets concurrent writers queue
        engine = create_async_engine(db_url, connect_args={"timeout": 30}, echo=False)
    else:
        engine = create_async_engine(
            db_url,
            pool_size=pool_size,
            max_overflow=0,
            pool_pre_ping=True,
            echo=False,
        )

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Prevent lazy loading issues after commit
    )

    return session_factory
